"""Active chat and chat index, kept in sync with a persistence backend.

Mutations are applied to the in-memory state first and then written to the
backend. When the write fails the in-memory change is rolled back and
:class:`PersistenceError` is raised, so the caller can tell the user.
"""
from __future__ import annotations

import logging
import re
import uuid
from typing import Callable, Dict, List, Optional, Sequence, Set

from .backends import BackendError, ChatBackend
from .models import Author, ChatIndexItem, ChatMessage, now_ms, sort_chats

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"


class InvalidTitle(ValueError):
    pass


class PersistenceError(RuntimeError):
    """A backend write failed; the optimistic change was reverted."""


def derive_title(messages: Sequence[ChatMessage], limit: int = 40) -> str:
    """Title from the first user message, collapsed and truncated."""
    for m in messages:
        if m.author == Author.USER:
            text = re.sub(r"\s+", " ", m.content).strip()
            if not text:
                continue
            if len(text) <= limit:
                return text
            return text[: max(limit - 3, 1)].rstrip() + "..."
    return DEFAULT_TITLE


def _new_chat_id() -> str:
    return uuid.uuid4().hex


class ChatStateStore:
    """In-memory messages of the active chat plus the full chat index.

    A chat whose id is not in the index is a draft: it lives only in memory
    until its first messages are persisted.
    """

    def __init__(
        self,
        backend: ChatBackend,
        *,
        title_chars: int = 40,
        title_max: int = 60,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.backend = backend
        self.title_chars = title_chars
        self.title_max = title_max
        self._new_id = id_factory or _new_chat_id
        self._index: Dict[str, ChatIndexItem] = {}
        self.active_chat_id: Optional[str] = None
        self.messages: List[ChatMessage] = []
        self._saved: Set[str] = set()

    # --------- views ----------
    @property
    def chats(self) -> List[ChatIndexItem]:
        return sort_chats(self._index.values())

    def get(self, chat_id: str) -> Optional[ChatIndexItem]:
        return self._index.get(chat_id)

    def is_draft(self, chat_id: Optional[str] = None) -> bool:
        chat_id = chat_id or self.active_chat_id
        return chat_id is not None and chat_id not in self._index

    @property
    def unsaved(self) -> List[ChatMessage]:
        return [m for m in self.messages if m.id not in self._saved]

    # --------- lifecycle ----------
    def load(self) -> None:
        """Read the index; select the newest chat, or open a draft if there is none."""
        self._index = {c.id: c for c in self.backend.load_index()}
        if self.active_chat_id is not None:
            return
        chats = self.chats
        if chats:
            self.select_chat(chats[0].id)
        else:
            self.create_draft()

    def create_draft(self) -> str:
        chat_id = self._new_id()
        self.active_chat_id = chat_id
        self.messages = []
        self._saved = set()
        return chat_id

    def select_chat(self, chat_id: str) -> None:
        # Clear first so the previous chat's messages are never shown under the new id.
        self.messages = []
        self._saved = set()
        self.active_chat_id = chat_id
        if self.is_draft(chat_id):
            return
        try:
            loaded = self.backend.load_messages(chat_id)
        except BackendError as e:
            logger.error("loading messages for %s failed: %s", chat_id, e)
            raise PersistenceError(f"Could not load chat {chat_id}") from e
        if self.active_chat_id == chat_id:
            self.messages = list(loaded)
            self._saved = {m.id for m in loaded}

    # --------- messages ----------
    def add_local(self, message: ChatMessage) -> None:
        """Show ``message`` immediately; it is written on the next persist."""
        if self.active_chat_id is None:
            self.create_draft()
        self.messages.append(message)

    def append_and_persist(self, *messages: ChatMessage) -> None:
        """Append ``messages`` and write every not-yet-saved message.

        For a draft this creates the index entry; otherwise only the delta is
        written and ``updatedAt`` is bumped.
        """
        if self.active_chat_id is None:
            self.create_draft()
        self.messages.extend(messages)
        pending = self.unsaved
        if not pending:
            return

        chat_id = self.active_chat_id
        now = now_ms()
        if self.is_draft(chat_id):
            item = ChatIndexItem(
                id=chat_id,
                title=derive_title(self.messages, self.title_chars),
                updated_at=now,
                pinned=False,
            )
            try:
                self.backend.create_chat(item, pending)
            except BackendError as e:
                logger.error("saving new chat %s failed: %s", chat_id, e)
                raise PersistenceError("Failed to save chat.") from e
            self._index[chat_id] = item
        else:
            previous = self._index[chat_id]
            self._index[chat_id] = previous.model_copy(update={"updated_at": now})
            try:
                self.backend.append_messages(chat_id, pending, now)
            except BackendError as e:
                self._index[chat_id] = previous
                logger.error("saving messages to %s failed: %s", chat_id, e)
                raise PersistenceError("Failed to save messages.") from e
        self._saved.update(m.id for m in pending)

    # --------- index mutations ----------
    def _update(self, chat_id: str, **changes) -> ChatIndexItem:
        previous = self._index.get(chat_id)
        if previous is None:
            raise KeyError(chat_id)
        updated = previous.model_copy(update={**changes, "updated_at": now_ms()})
        self._index[chat_id] = updated
        try:
            self.backend.update_chat(chat_id, **changes, updated_at=updated.updated_at)
        except BackendError as e:
            self._index[chat_id] = previous
            logger.error("updating chat %s failed, reverted: %s", chat_id, e)
            raise PersistenceError(f"Failed to update chat {chat_id}.") from e
        return updated

    def toggle_pin(self, chat_id: str) -> ChatIndexItem:
        current = self._index.get(chat_id)
        if current is None:
            raise KeyError(chat_id)
        return self._update(chat_id, pinned=not current.pinned)

    def rename(self, chat_id: str, title: str) -> ChatIndexItem:
        trimmed = (title or "").strip()
        if not 1 <= len(trimmed) <= self.title_max:
            raise InvalidTitle(f"Title must be between 1 and {self.title_max} characters.")
        return self._update(chat_id, title=trimmed)

    def delete(self, chat_id: str) -> None:
        """Delete a chat; deleting the active one moves to the newest remaining chat."""
        previous = self._index.pop(chat_id, None)
        if previous is None:
            raise KeyError(chat_id)
        try:
            self.backend.delete_chat(chat_id)
        except BackendError as e:
            self._index[chat_id] = previous
            logger.error("deleting chat %s failed, reverted: %s", chat_id, e)
            raise PersistenceError(f"Failed to delete chat {chat_id}.") from e

        if self.active_chat_id != chat_id:
            return
        remaining = list(self._index.values())
        if not remaining:
            self.create_draft()
            return
        next_id = max(remaining, key=lambda c: c.updated_at).id
        try:
            self.select_chat(next_id)
        except PersistenceError:
            # the delete itself succeeded; the next chat just shows empty until reselected
            logger.warning("chat %s deleted, but loading %s afterwards failed", chat_id, next_id)
