"""Routes a composed message to both agents, a single agent, or a helper command."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

from . import review as review_helpers
from .agents import AgentError, AgentGateway
from .config import DEFAULTS
from .models import AGENTS, Author, ChatMessage, Plan, new_message, now_ms

logger = logging.getLogger(__name__)


@dataclass
class DispatchOutcome:
    """Messages to append after the user's message, plus an optional error toast."""

    messages: List[ChatMessage] = field(default_factory=list)
    error: Optional[str] = None


def parse_command(text: str) -> Tuple[Optional[str], str]:
    """Split ``/command rest`` into its parts; plain text has no command."""
    text = (text or "").strip()
    if not text.startswith("/"):
        return None, text
    command, _, rest = text.partition(" ")
    return command, rest.strip()


class Dispatcher:
    """Turns one composed message into agent calls.

    ``typing`` holds the authors with a call in flight. It is always cleared
    once the call settles, whether or not it succeeded.
    """

    def __init__(self, gateway: AgentGateway, names: Optional[Mapping[str, str]] = None) -> None:
        self.gateway = gateway
        self.names: Mapping[str, str] = names or DEFAULTS["agents"]["names"]
        self.typing: Set[Author] = set()
        self._agent_tokens: Dict[str, Author] = {}
        for author in AGENTS:
            self._agent_tokens[author.value.lower()] = author
            self._agent_tokens[self.names[author.value].lower()] = author

    def resolve_agent(self, token: str) -> Optional[Author]:
        return self._agent_tokens.get((token or "").strip().lower())

    @property
    def busy(self) -> bool:
        return bool(self.typing)

    async def dispatch(
        self,
        text: str,
        history: Sequence[ChatMessage],
        plan: Plan | str | None = None,
    ) -> DispatchOutcome:
        """Handle ``text``; ``history`` already ends with the user's message."""
        command, rest = parse_command(text)
        if command is None:
            return await self._ask_both(rest, history, plan)

        agent = self.resolve_agent(command[1:])
        if agent is not None:
            return await self._ask_one(agent, command, rest, history, plan)
        if command.lower() == "/review":
            target = self.resolve_agent(rest) or Author.AGENT_A
            return await self._review(target, history, plan)
        if command.lower() == "/summarize":
            return await self._summarize(history, plan)
        return DispatchOutcome([new_message(Author.MODERATOR, f"Unknown command: {command}")])

    # -------------------------
    # Handlers
    # -------------------------
    async def _ask_both(self, text: str, history: Sequence[ChatMessage], plan) -> DispatchOutcome:
        self.typing.update(AGENTS)
        try:
            # both calls always settle before either result is used
            results = await asyncio.gather(
                self.gateway.ask_agent_a(text, plan),
                self.gateway.ask_agent_b(text, plan),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            answer_a, answer_b = results
        except AgentError as e:
            logger.error("dual-agent query failed: %s", e)
            return DispatchOutcome(error="Failed to get a response from the agents.")
        finally:
            self.typing.difference_update(AGENTS)

        ts = _after(history)
        return DispatchOutcome([
            new_message(Author.AGENT_A, answer_a, ts),
            new_message(Author.AGENT_B, answer_b, ts + 1),
        ])

    async def _ask_one(self, agent: Author, command: str, text: str, history: Sequence[ChatMessage], plan) -> DispatchOutcome:
        if not text:
            return DispatchOutcome([new_message(Author.MODERATOR, f"Usage: {command} <message>")])
        self.typing.add(agent)
        try:
            answer = await self.gateway.ask(agent, text, plan)
        except AgentError as e:
            logger.error("%s query failed: %s", agent.value, e)
            return DispatchOutcome(error=f"Failed to get a response from {self.names[agent.value]}.")
        finally:
            self.typing.discard(agent)
        return DispatchOutcome([new_message(agent, answer, _after(history))])

    async def _review(self, target: Author, history: Sequence[ChatMessage], plan) -> DispatchOutcome:
        reviewer = review_helpers.other_agent(target)
        self.typing.add(reviewer)
        try:
            msg = await review_helpers.review(_before_command(history), target, self.gateway, plan, names=self.names)
        except AgentError as e:
            logger.error("review by %s failed: %s", reviewer.value, e)
            return DispatchOutcome(error=f"Failed to get review from {self.names[reviewer.value]}.")
        finally:
            self.typing.discard(reviewer)
        return DispatchOutcome([msg.model_copy(update={"created_at": max(msg.created_at, _after(history))})])

    async def _summarize(self, history: Sequence[ChatMessage], plan) -> DispatchOutcome:
        if any(review_helpers.last_by_author(history, a) is None for a in AGENTS):
            return DispatchOutcome([new_message(Author.MODERATOR, review_helpers.summary_notice(self.names))])
        self.typing.add(Author.MODERATOR)
        try:
            msg = await review_helpers.summarize(history, self.gateway, plan, names=self.names)
        except AgentError as e:
            logger.error("summary failed: %s", e)
            return DispatchOutcome(error="Failed to summarize.")
        finally:
            self.typing.discard(Author.MODERATOR)
        return DispatchOutcome([msg.model_copy(update={"created_at": max(msg.created_at, _after(history))})])


def _before_command(history: Sequence[ChatMessage]) -> Sequence[ChatMessage]:
    """Drop the trailing slash-command message so it is not taken as the user's question."""
    if history and history[-1].author == Author.USER and history[-1].content.lstrip().startswith("/"):
        return history[:-1]
    return history


def _after(history: Sequence[ChatMessage]) -> int:
    """A timestamp strictly later than every message in ``history``."""
    latest = max((m.created_at for m in history), default=0)
    return max(now_ms(), latest + 1)
