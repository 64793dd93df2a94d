from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Protocol

Document = dict[str, Any]
ChangeCallback = Callable[[list[Document]], None]
ErrorCallback = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


class _ServerTimestamp:
    """Field value resolved to the store's own clock at commit time."""

    _instance: "_ServerTimestamp | None" = None

    def __new__(cls) -> "_ServerTimestamp":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"

    def __deepcopy__(self, memo: dict) -> "_ServerTimestamp":
        return self


SERVER_TIMESTAMP = _ServerTimestamp()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_server_values(fields: Mapping[str, Any], now: datetime) -> dict[str, Any]:
    resolved = copy.deepcopy(dict(fields))
    for key, value in resolved.items():
        if value is SERVER_TIMESTAMP:
            resolved[key] = now
    resolved.pop("id", None)
    return resolved


class CollectionStore(Protocol):
    """Document collections with realtime change feeds.

    Every mutation is atomic per document; subscribers receive the full item
    list of the collection after each committed change.
    """

    def subscribe(self, path: str, on_change: ChangeCallback, on_error: ErrorCallback) -> Unsubscribe:
        ...

    async def create(self, path: str, fields: Mapping[str, Any]) -> str:
        ...

    async def put(self, path: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        ...

    async def update(self, path: str, doc_id: str, partial: Mapping[str, Any]) -> None:
        ...

    async def delete(self, path: str, doc_id: str) -> None:
        ...

    async def get(self, path: str, doc_id: str) -> Document | None:
        ...

    async def list(self, path: str) -> list[Document]:
        ...

    def close(self) -> None:
        ...


class ListenerRegistry:
    """Per-collection subscriber bookkeeping shared by the store implementations."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[tuple[ChangeCallback, ErrorCallback]]] = {}

    def add(self, path: str, on_change: ChangeCallback, on_error: ErrorCallback) -> Unsubscribe:
        entry = (on_change, on_error)
        self._listeners.setdefault(path, []).append(entry)

        def _unsubscribe() -> None:
            listeners = self._listeners.get(path, [])
            if entry in listeners:
                listeners.remove(entry)
            if not listeners:
                self._listeners.pop(path, None)

        return _unsubscribe

    def has(self, path: str) -> bool:
        return bool(self._listeners.get(path))

    def notify(self, path: str, items: list[Document]) -> None:
        for on_change, _ in list(self._listeners.get(path, [])):
            on_change(copy.deepcopy(items))

    def fail(self, path: str, error: Exception) -> None:
        for _, on_error in list(self._listeners.get(path, [])):
            on_error(error)
