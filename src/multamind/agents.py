"""Gateway to the chat-completion endpoint serving both agents and the moderator."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import httpx

from .config import DEFAULTS
from .models import Author, Plan

logger = logging.getLogger(__name__)


class AgentError(RuntimeError):
    """The completion endpoint failed or returned something unusable."""


# -----------------------------
# Types & defaults
# -----------------------------

@dataclass(frozen=True)
class PlanModels:
    agent_a: str
    agent_b: str
    moderator: str

    def for_role(self, role: str) -> str:
        return getattr(self, role)


_ROLE_BY_AUTHOR = {
    Author.AGENT_A: "agent_a",
    Author.AGENT_B: "agent_b",
    Author.MODERATOR: "moderator",
}


def _plan_key(plan: Plan | str | None) -> str:
    if isinstance(plan, Plan):
        return plan.value
    return str(plan or Plan.FREE.value)


# -----------------------------
# Gateway
# -----------------------------

class AgentGateway:
    """Thin async wrapper around an OpenAI-compatible ``/chat/completions`` API.

    Each plan tier maps the three roles (``agent_a``, ``agent_b``,
    ``moderator``) to concrete model ids. Calls are single-shot: no retry,
    no streaming.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        plans: Mapping[str, PlanModels],
        *,
        timeout: float = 60.0,
        headers: Optional[Dict[str, str]] = None,
        moderator_prompt: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if "free" not in plans:
            raise ValueError("plans must define at least the 'free' tier")
        self.plans = dict(plans)
        self.moderator_prompt = moderator_prompt or DEFAULTS["agents"]["moderator_prompt"]
        hdrs = {"Content-Type": "application/json"}
        if api_key:
            hdrs["Authorization"] = f"Bearer {api_key}"
        hdrs.update(headers or {})
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=hdrs,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def models_for(self, plan: Plan | str | None) -> PlanModels:
        return self.plans.get(_plan_key(plan)) or self.plans["free"]

    async def aclose(self) -> None:
        await self._client.aclose()

    # -------------------------
    # Low-level completion
    # -------------------------
    async def complete(self, role: str, messages: List[Dict[str, str]], plan: Plan | str | None = None) -> str:
        """POST the messages to the model configured for ``role`` under ``plan``."""
        model = self.models_for(plan).for_role(role)
        try:
            res = await self._client.post("/chat/completions", json={"model": model, "messages": messages})
            res.raise_for_status()
            payload = res.json()
        except httpx.HTTPStatusError as e:
            logger.error("completion for %s (%s) failed with HTTP %s", role, model, e.response.status_code)
            raise AgentError(f"{model} returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("completion for %s (%s) failed: %s", role, model, e)
            raise AgentError(f"{model} request failed: {e}") from e
        except ValueError as e:
            raise AgentError(f"{model} returned invalid JSON") from e

        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            logger.warning("completion for %s (%s) had no choices", role, model)
            return ""
        return content or ""

    # -------------------------
    # Role helpers
    # -------------------------
    async def ask(self, author: Author | str, text: str, plan: Plan | str | None = None) -> str:
        author = Author(author)
        if author not in _ROLE_BY_AUTHOR:
            raise ValueError(f"{author.value} is not an agent")
        return await self.complete(_ROLE_BY_AUTHOR[author], [{"role": "user", "content": text}], plan)

    async def ask_agent_a(self, text: str, plan: Plan | str | None = None) -> str:
        return await self.ask(Author.AGENT_A, text, plan)

    async def ask_agent_b(self, text: str, plan: Plan | str | None = None) -> str:
        return await self.ask(Author.AGENT_B, text, plan)

    async def ask_moderator(
        self,
        question: str,
        answer_a: str,
        answer_b: str,
        plan: Plan | str | None = None,
        *,
        names: Optional[Mapping[str, str]] = None,
    ) -> str:
        """Ask the moderator to compare both agents' answers."""
        names = names or DEFAULTS["agents"]["names"]
        prompt = (
            f"User question:\n{question}\n\n"
            f"Answer A ({names['agentA']} side):\n{answer_a}\n\n"
            f"Answer B ({names['agentB']} side):\n{answer_b}\n\n"
            "1) Summarize key points from both.\n"
            "2) Explain where they agree and where they disagree.\n"
            "3) Give a practical recommendation for the user.\n"
            "Keep it concise and natural, not robotic."
        )
        messages = [
            {"role": "system", "content": self.moderator_prompt},
            {"role": "user", "content": prompt},
        ]
        return await self.complete("moderator", messages, plan)


# -----------------------------
# Convenience factory
# -----------------------------

def create_from_config(cfg: Dict[str, Any], transport: Optional[httpx.AsyncBaseTransport] = None) -> AgentGateway:
    """Create an AgentGateway from a config dict (e.g., loaded YAML)."""
    agents_cfg = (cfg or {}).get("agents", {}) if isinstance(cfg, dict) else {}
    plans_cfg = agents_cfg.get("plans") or DEFAULTS["agents"]["plans"]
    plans = {
        name: PlanModels(
            agent_a=str(models["agent_a"]),
            agent_b=str(models["agent_b"]),
            moderator=str(models["moderator"]),
        )
        for name, models in plans_cfg.items()
    }
    site_url = (cfg.get("server", {}) or {}).get("site_url") or DEFAULTS["server"]["site_url"]
    headers = {
        "HTTP-Referer": str(site_url),
        "X-Title": str(agents_cfg.get("app_title") or "MultaMind"),
    }
    if not agents_cfg.get("api_key"):
        logger.warning("agents.api_key is not set; completion calls will be rejected upstream")
    return AgentGateway(
        base_url=str(agents_cfg.get("base_url") or DEFAULTS["agents"]["base_url"]),
        api_key=str(agents_cfg.get("api_key") or ""),
        plans=plans,
        timeout=float(agents_cfg.get("timeout", 60.0)),
        headers=headers,
        moderator_prompt=str(agents_cfg.get("moderator_prompt") or ""),
        transport=transport,
    )
