"""Chat and user-profile records on top of :class:`DocumentStore`."""
from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional, Sequence

from .documents import DocumentStore
from .models import ChatIndexItem, ChatMessage, UserProfile, now_ms, sort_chats


class ChatRepository:
    """Chats live in ``chats/<id>`` tagged with their owner's ``userId``."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    @staticmethod
    def _item(chat_id: str, doc: Dict[str, Any]) -> ChatIndexItem:
        return ChatIndexItem(
            id=chat_id,
            title=doc.get("title") or "New Chat",
            updated_at=int(doc.get("updatedAt") or doc.get("createdAt") or 0),
            pinned=bool(doc.get("pinned", False)),
        )

    def owner_of(self, chat_id: str) -> Optional[str]:
        doc = self.store.get(f"chats/{chat_id}")
        return doc.get("userId") if doc else None

    def get(self, chat_id: str) -> Optional[ChatIndexItem]:
        doc = self.store.get(f"chats/{chat_id}")
        return self._item(chat_id, doc) if doc else None

    def list_chats(self, uid: str) -> List[ChatIndexItem]:
        return sort_chats(
            self._item(doc.get("id", doc_id), doc)
            for doc_id, doc in self.store.list("chats")
            if doc.get("userId") == uid
        )

    def create_chat(self, uid: str, chat_id: Optional[str], title: str, messages: Sequence[ChatMessage]) -> ChatIndexItem:
        if not messages:
            raise ValueError("a chat needs at least one message")
        chat_id = chat_id or uuid.uuid4().hex
        now = now_ms()
        existing = self.store.get(f"chats/{chat_id}")
        if existing is not None:
            # a repeated create keeps title, pin and creation time; it only adds messages
            self.store.update(f"chats/{chat_id}", {"updatedAt": now})
        else:
            self.store.set(f"chats/{chat_id}", {
                "id": chat_id,
                "userId": uid,
                "title": title,
                "createdAt": now,
                "updatedAt": now,
                "pinned": False,
            })
        for m in messages:
            self.store.set(f"chats/{chat_id}/messages/{m.id}", m.to_json())
        return self._item(chat_id, self.store.get(f"chats/{chat_id}") or {})

    def list_messages(self, chat_id: str) -> List[ChatMessage]:
        msgs = [ChatMessage.model_validate(doc) for _, doc in self.store.list(f"chats/{chat_id}/messages")]
        return sorted(msgs, key=lambda m: m.created_at)

    def add_message(self, chat_id: str, message: ChatMessage) -> ChatMessage:
        self.store.set(f"chats/{chat_id}/messages/{message.id}", message.to_json())
        self.store.update(f"chats/{chat_id}", {"updatedAt": now_ms()})
        return message

    def update_chat(self, chat_id: str, *, title: Optional[str] = None, pinned: Optional[bool] = None) -> ChatIndexItem:
        fields: Dict[str, Any] = {"updatedAt": now_ms()}
        if title is not None:
            fields["title"] = title
        if pinned is not None:
            fields["pinned"] = pinned
        return self._item(chat_id, self.store.update(f"chats/{chat_id}", fields))

    def delete_chat(self, chat_id: str) -> bool:
        return self.store.delete(f"chats/{chat_id}")


class ProfileRepository:
    """User profiles in ``users/<uid>``."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def get(self, uid: str) -> Optional[UserProfile]:
        doc = self.store.get(f"users/{uid}")
        return UserProfile.model_validate(doc) if doc else None

    def get_or_create(self, uid: str, email: Optional[str] = None) -> UserProfile:
        profile = self.get(uid)
        if profile is not None:
            if email and not profile.email:
                profile = self.update(uid, email=email)
            return profile
        profile = UserProfile(id=uid, email=email)
        self.store.set(f"users/{uid}", profile.to_json())
        return profile

    def update(self, uid: str, **fields: Any) -> UserProfile:
        """Apply snake_case field changes; ``None`` clears a field."""
        current = self.get(uid) or UserProfile(id=uid)
        updated = UserProfile.model_validate({**current.model_dump(), **fields})
        self.store.set(f"users/{uid}", updated.model_dump(by_alias=True, mode="json"))
        return updated

    def _find(self, key: str, value: str) -> Optional[UserProfile]:
        for _, doc in self.store.list("users"):
            if doc.get(key) == value:
                return UserProfile.model_validate(doc)
        return None

    def find_by_customer(self, customer_id: str) -> Optional[UserProfile]:
        return self._find("billingCustomerId", customer_id)

    def find_by_subscription(self, subscription_id: str) -> Optional[UserProfile]:
        return self._find("billingSubscriptionId", subscription_id)
