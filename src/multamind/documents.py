"""File-backed document database used by the server (thread-safe, atomic).

Documents are addressed by slash paths that alternate collection and
document ids, e.g. ``users/u1`` or ``chats/c1/messages/m1``.

Layout:
    root/
      users/<uid>.json
      chats/<chat_id>.json
      chats/<chat_id>/messages/<message_id>.json
"""
from __future__ import annotations

import shutil
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .backends.local import atomic_write_json, read_json, safe_key


def _split(path: str) -> List[str]:
    parts = [p for p in path.strip("/").split("/") if p]
    if not parts:
        raise ValueError("empty document path")
    return [safe_key(p) for p in parts]


class DocumentStore:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    # --------- paths ----------
    def _doc_path(self, path: str) -> Path:
        parts = _split(path)
        if len(parts) % 2:
            raise ValueError(f"{path!r} is a collection, not a document")
        return self.root.joinpath(*parts[:-1]) / f"{parts[-1]}.json"

    def _collection_dir(self, collection: str) -> Path:
        parts = _split(collection)
        if not len(parts) % 2:
            raise ValueError(f"{collection!r} is a document, not a collection")
        return self.root.joinpath(*parts)

    # --------- core API ----------
    def get(self, path: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            data = read_json(self._doc_path(path), None)
        return data if isinstance(data, dict) else None

    def set(self, path: str, data: Dict[str, Any], *, merge: bool = False) -> Dict[str, Any]:
        with self._lock:
            doc = dict(data)
            if merge:
                doc = {**(self.get(path) or {}), **doc}
            atomic_write_json(self._doc_path(path), doc)
            return doc

    def update(self, path: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``fields`` into an existing document; KeyError if it is missing."""
        with self._lock:
            current = self.get(path)
            if current is None:
                raise KeyError(path)
            current.update(fields)
            atomic_write_json(self._doc_path(path), current)
            return current

    def delete(self, path: str) -> bool:
        """Delete a document together with its subcollections."""
        with self._lock:
            doc_path = self._doc_path(path)
            existed = doc_path.exists()
            doc_path.unlink(missing_ok=True)
            sub = doc_path.with_suffix("")
            if sub.is_dir():
                shutil.rmtree(sub)
            return existed

    def list(self, collection: str) -> List[Tuple[str, Dict[str, Any]]]:
        """Return ``(doc_id, data)`` for every document in ``collection``."""
        folder = self._collection_dir(collection)
        out: List[Tuple[str, Dict[str, Any]]] = []
        with self._lock:
            if not folder.is_dir():
                return out
            for p in sorted(folder.glob("*.json")):
                if p.name.endswith(".corrupt.json"):
                    continue
                data = read_json(p, None)
                if isinstance(data, dict):
                    out.append((p.stem, data))
        return out

    def delete_collection(self, collection: str) -> None:
        with self._lock:
            folder = self._collection_dir(collection)
            if folder.is_dir():
                shutil.rmtree(folder)
