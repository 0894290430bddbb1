"""Persistence backends for the client-side chat store.

Two implementations share the :class:`ChatBackend` interface:

- :class:`~multamind.backends.local.LocalChatBackend` keeps anonymous chats
  on the local disk.
- :class:`~multamind.backends.remote.RemoteChatBackend` talks to the
  authenticated chat REST API.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, List, Sequence

from ..models import ChatIndexItem, ChatMessage

__all__ = ["BackendError", "ChatBackend", "LocalChatBackend", "RemoteChatBackend"]


class BackendError(RuntimeError):
    """A backend read or write failed."""


class ChatBackend(ABC):
    @abstractmethod
    def load_index(self) -> List[ChatIndexItem]: ...

    @abstractmethod
    def load_messages(self, chat_id: str) -> List[ChatMessage]: ...

    @abstractmethod
    def create_chat(self, item: ChatIndexItem, messages: Sequence[ChatMessage]) -> None: ...

    @abstractmethod
    def append_messages(self, chat_id: str, messages: Sequence[ChatMessage], updated_at: int) -> None: ...

    @abstractmethod
    def update_chat(self, chat_id: str, **fields: Any) -> None: ...

    @abstractmethod
    def delete_chat(self, chat_id: str) -> None: ...


from .local import LocalChatBackend  # noqa: E402
from .remote import RemoteChatBackend  # noqa: E402
