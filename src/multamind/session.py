"""Client-side chat session: composer, typing indicators and agent columns."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .chat_state import ChatStateStore, PersistenceError
from .dispatcher import DispatchOutcome, Dispatcher
from .models import AGENTS, Author, ChatMessage, Plan, new_message

logger = logging.getLogger(__name__)


class ChatSession:
    """What a chat UI drives: one composer feeding two agent columns.

    Example:
        store = ChatStateStore(LocalChatBackend("~/.multamind"))
        store.load()
        session = ChatSession(store, Dispatcher(gateway))
        outcome = await session.send("What is a monad?")
    """

    def __init__(self, store: ChatStateStore, dispatcher: Dispatcher, plan: Plan = Plan.FREE) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.plan = plan

    @property
    def busy(self) -> bool:
        return self.dispatcher.busy

    def is_typing(self, author: Author) -> bool:
        return author in self.dispatcher.typing

    async def send(self, text: str) -> Optional[DispatchOutcome]:
        """Send one composed message. Blank input, or input while busy, is ignored.

        The user's message is shown at once and written together with the
        replies once the exchange completes. A failed exchange leaves it
        unsaved; it is written with the next successful one.
        """
        text = (text or "").strip()
        if not text or self.busy:
            return None

        self.store.add_local(new_message(Author.USER, text))
        outcome = await self.dispatcher.dispatch(text, list(self.store.messages), self.plan)
        if outcome.error:
            return outcome
        try:
            self.store.append_and_persist(*outcome.messages)
        except PersistenceError as e:
            logger.warning("exchange shown but not saved: %s", e)
            outcome.error = str(e)
        return outcome

    def columns(self) -> Dict[Author, List[ChatMessage]]:
        """Per-agent view: that agent's replies plus user and moderator messages."""
        shared = {Author.USER, Author.MODERATOR}
        return {
            agent: [m for m in self.store.messages if m.author == agent or m.author in shared]
            for agent in AGENTS
        }
