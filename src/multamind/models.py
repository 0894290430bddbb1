"""Pydantic models shared by the chat store, the dispatcher and the server.

JSON on the wire and on disk uses camelCase keys (``createdAt``,
``updatedAt``, ``billingCustomerId``...). Python code uses snake_case
attribute names; both are accepted on input.
"""
from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Author(str, Enum):
    USER = "user"
    AGENT_A = "agentA"
    AGENT_B = "agentB"
    MODERATOR = "moderator"


class Plan(str, Enum):
    FREE = "free"
    STANDARD = "standard"
    PRO = "pro"


AGENTS: Tuple[Author, Author] = (Author.AGENT_A, Author.AGENT_B)


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class ChatMessage(CamelModel):
    """A single message in a chat. Immutable once created."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    author: Author
    content: str
    created_at: int = Field(default_factory=now_ms)
    is_typing: Optional[bool] = None


def new_message(author: Author | str, content: str, created_at: Optional[int] = None) -> ChatMessage:
    author = Author(author)
    return ChatMessage(
        id=f"{author.value}-{uuid.uuid4().hex[:12]}",
        author=author,
        content=content,
        created_at=now_ms() if created_at is None else created_at,
    )


class ChatIndexItem(CamelModel):
    """One entry of the chat sidebar."""

    id: str
    title: str
    updated_at: int = Field(default_factory=now_ms)
    pinned: bool = False


def chat_sort_key(item: ChatIndexItem) -> Tuple[bool, int]:
    # pinned first, then most recently updated
    return (not item.pinned, -item.updated_at)


def sort_chats(items: Iterable[ChatIndexItem]) -> List[ChatIndexItem]:
    return sorted(items, key=chat_sort_key)


class UserProfile(CamelModel):
    id: str
    email: Optional[str] = None
    plan: Plan = Plan.FREE
    billing_customer_id: Optional[str] = None
    billing_subscription_id: Optional[str] = None
    plan_status: Optional[str] = None
    current_period_end: Optional[int] = None  # epoch seconds, as reported by the processor
    cancel_at_period_end: bool = False
    grace_until: Optional[int] = None  # epoch seconds
