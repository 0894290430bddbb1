"""Chat storage behind the authenticated chat REST API."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..models import ChatIndexItem, ChatMessage, sort_chats
from . import BackendError, ChatBackend

logger = logging.getLogger(__name__)

_FIELD_ALIASES = {"title": "title", "pinned": "pinned"}


class RemoteChatBackend(ChatBackend):
    """Reads and writes chats through ``/api/chats`` with a bearer token.

    ``updatedAt`` is assigned by the server on every write, so the
    timestamps passed in by the store are only used locally.
    """

    def __init__(self, client: httpx.Client, token: str, *, prefix: str = "/api") -> None:
        self._client = client
        self._headers = {"Authorization": f"Bearer {token}"}
        self._prefix = prefix.rstrip("/")

    @classmethod
    def connect(cls, base_url: str, token: str, *, timeout: float = 15.0) -> "RemoteChatBackend":
        return cls(httpx.Client(base_url=base_url, timeout=timeout), token)

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self._prefix}{path}"
        try:
            res = self._client.request(method, url, json=json, headers=self._headers)
            res.raise_for_status()
        except httpx.HTTPStatusError as e:
            detail = _error_detail(e.response)
            logger.error("%s %s -> %s %s", method, url, e.response.status_code, detail)
            raise BackendError(f"{method} {url} failed with HTTP {e.response.status_code}: {detail}") from e
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, url, e)
            raise BackendError(f"{method} {url} failed: {e}") from e
        return res.json() if res.content else None

    # --------- ChatBackend ----------
    def load_index(self) -> List[ChatIndexItem]:
        return sort_chats(ChatIndexItem.model_validate(c) for c in self._request("GET", "/chats") or [])

    def load_messages(self, chat_id: str) -> List[ChatMessage]:
        raw = self._request("GET", f"/chats/{chat_id}/messages") or []
        return [ChatMessage.model_validate(m) for m in raw]

    def create_chat(self, item: ChatIndexItem, messages: Sequence[ChatMessage]) -> None:
        self._request("POST", "/chats", {
            "id": item.id,
            "title": item.title,
            "messages": [m.to_json() for m in messages],
        })

    def append_messages(self, chat_id: str, messages: Sequence[ChatMessage], updated_at: int) -> None:
        for m in messages:
            self._request("POST", f"/chats/{chat_id}/messages", m.to_json())

    def update_chat(self, chat_id: str, **fields: Any) -> None:
        body = {_FIELD_ALIASES[k]: v for k, v in fields.items() if k in _FIELD_ALIASES}
        self._request("PATCH", f"/chats/{chat_id}", body)

    def delete_chat(self, chat_id: str) -> None:
        self._request("DELETE", f"/chats/{chat_id}")


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and "error" in body:
        return str(body["error"])
    return str(body)[:200]
