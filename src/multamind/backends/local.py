"""Disk-backed chat storage for anonymous use (thread-safe, atomic)."""
from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Sequence

from ..models import ChatIndexItem, ChatMessage, sort_chats
from . import BackendError, ChatBackend

logger = logging.getLogger(__name__)


# -----------------------------
# Helpers
# -----------------------------
def safe_key(name: str) -> str:
    # Keep it readable but filesystem-safe.
    s = re.sub(r"[^\w.\-@]+", "_", name.strip() or "default")
    return s[:128]


def atomic_write_json(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        json.dump(obj, tmp, ensure_ascii=False, indent=2)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


def read_json(path: Path, default: Any) -> Any:
    """Read JSON from ``path``; a corrupt file is moved aside and ``default`` returned."""
    if not path.exists():
        return default
    try:
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("corrupt JSON at %s (%s), moving it aside", path, e)
        try:
            path.rename(path.with_suffix(".corrupt.json"))
        except OSError:
            logger.exception("could not move corrupt file %s", path)
        return default


# -----------------------------
# LocalChatBackend
# -----------------------------
class LocalChatBackend(ChatBackend):
    """JSON chat index plus one JSON message array per chat.

    Layout:
        data_dir/
          chats_index.json        # list of ChatIndexItem
          chats/<chat_id>.json    # list of ChatMessage, ascending createdAt
    """

    def __init__(self, data_dir: str | Path) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.index_path = self.root / "chats_index.json"
        self._lock = threading.RLock()

    def _chat_path(self, chat_id: str) -> Path:
        # ids must already be filesystem-safe so two ids never share a file
        key = safe_key(chat_id)
        if key != chat_id:
            raise BackendError(f"invalid chat id {chat_id!r}")
        return self.root / "chats" / f"{key}.json"

    def _read_index(self) -> List[Dict[str, Any]]:
        data = read_json(self.index_path, [])
        return data if isinstance(data, list) else []

    def _write(self, path: Path, obj: Any) -> None:
        try:
            atomic_write_json(path, obj)
        except OSError as e:
            raise BackendError(f"failed to write {path}: {e}") from e

    # --------- ChatBackend ----------
    def load_index(self) -> List[ChatIndexItem]:
        with self._lock:
            return sort_chats(ChatIndexItem.model_validate(c) for c in self._read_index())

    def load_messages(self, chat_id: str) -> List[ChatMessage]:
        with self._lock:
            raw = read_json(self._chat_path(chat_id), [])
        msgs = [ChatMessage.model_validate(m) for m in raw or []]
        return sorted(msgs, key=lambda m: m.created_at)

    def create_chat(self, item: ChatIndexItem, messages: Sequence[ChatMessage]) -> None:
        if not messages:
            raise ValueError("a chat is only persisted once it has messages")
        with self._lock:
            index = [c for c in self._read_index() if c.get("id") != item.id]
            self._write(self._chat_path(item.id), [m.to_json() for m in messages])
            self._write(self.index_path, [item.to_json()] + index)

    def append_messages(self, chat_id: str, messages: Sequence[ChatMessage], updated_at: int) -> None:
        with self._lock:
            index = self._read_index()
            if not any(c.get("id") == chat_id for c in index):
                raise BackendError(f"unknown chat {chat_id!r}")
            existing = read_json(self._chat_path(chat_id), [])
            known = {m.get("id") for m in existing}
            existing.extend(m.to_json() for m in messages if m.id not in known)
            self._write(self._chat_path(chat_id), existing)
            for c in index:
                if c.get("id") == chat_id:
                    c["updatedAt"] = updated_at
            self._write(self.index_path, index)

    def update_chat(self, chat_id: str, **fields: Any) -> None:
        with self._lock:
            index = self._read_index()
            found = False
            for c in index:
                if c.get("id") == chat_id:
                    found = True
                    current = ChatIndexItem.model_validate(c)
                    c.update(current.model_copy(update=fields).to_json())
            if not found:
                raise BackendError(f"unknown chat {chat_id!r}")
            self._write(self.index_path, index)

    def delete_chat(self, chat_id: str) -> None:
        with self._lock:
            index = [c for c in self._read_index() if c.get("id") != chat_id]
            self._write(self.index_path, index)
            self._chat_path(chat_id).unlink(missing_ok=True)
