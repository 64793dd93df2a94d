from __future__ import annotations

import copy
import uuid
from typing import Any, Mapping

from ..exceptions import StoreError
from .base import (
    ChangeCallback,
    Document,
    ErrorCallback,
    ListenerRegistry,
    Unsubscribe,
    resolve_server_values,
    utc_now,
)


class MemoryCollectionStore:
    """In-process collection store used by tests and ``memory://`` deployments."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._listeners = ListenerRegistry()

    def _items(self, path: str) -> list[Document]:
        docs = self._collections.get(path, {})
        return [{"id": doc_id, **copy.deepcopy(fields)} for doc_id, fields in docs.items()]

    def subscribe(self, path: str, on_change: ChangeCallback, on_error: ErrorCallback) -> Unsubscribe:
        unsubscribe = self._listeners.add(path, on_change, on_error)
        on_change(self._items(path))
        return unsubscribe

    async def create(self, path: str, fields: Mapping[str, Any]) -> str:
        doc_id = uuid.uuid4().hex[:20]
        self._collections.setdefault(path, {})[doc_id] = resolve_server_values(fields, utc_now())
        self._listeners.notify(path, self._items(path))
        return doc_id

    async def put(self, path: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        self._collections.setdefault(path, {})[doc_id] = resolve_server_values(fields, utc_now())
        self._listeners.notify(path, self._items(path))

    async def update(self, path: str, doc_id: str, partial: Mapping[str, Any]) -> None:
        docs = self._collections.get(path, {})
        if doc_id not in docs:
            raise StoreError(f"Document {doc_id} not found in {path}.")
        docs[doc_id].update(resolve_server_values(partial, utc_now()))
        self._listeners.notify(path, self._items(path))

    async def delete(self, path: str, doc_id: str) -> None:
        self._collections.get(path, {}).pop(doc_id, None)
        self._listeners.notify(path, self._items(path))

    async def get(self, path: str, doc_id: str) -> Document | None:
        fields = self._collections.get(path, {}).get(doc_id)
        if fields is None:
            return None
        return {"id": doc_id, **copy.deepcopy(fields)}

    async def list(self, path: str) -> list[Document]:
        return self._items(path)

    def close(self) -> None:
        return None
