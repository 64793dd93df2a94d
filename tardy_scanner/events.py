from __future__ import annotations

import asyncio
from typing import Any

from fastapi import WebSocket

from .descriptor_store import RosterSnapshot
from .logger import setup_logger
from .recognition import RecognitionSnapshot


def recognition_event(snapshot: RecognitionSnapshot) -> dict[str, Any]:
    return {"type": "recognition", "data": snapshot.to_dict()}


def roster_event(snapshot: RosterSnapshot) -> dict[str, Any]:
    return {
        "type": "roster",
        "data": {
            "students": len(snapshot.students),
            "enrolled": len(snapshot.enrolled),
            "version": snapshot.version,
        },
    }


class EventHub:
    """Pushes recognition and roster changes to every connected scanner screen."""

    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self.logger = setup_logger(self.__class__.__name__)

    async def join(self, websocket: WebSocket, recognition: RecognitionSnapshot) -> None:
        await websocket.accept()
        async with self._lock:
            self._clients.add(websocket)
        await websocket.send_json(recognition_event(recognition))

    async def leave(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(websocket)

    async def publish(self, event: dict[str, Any]) -> None:
        async with self._lock:
            clients = list(self._clients)
        for websocket in clients:
            try:
                await websocket.send_json(event)
            except Exception as exc:
                self.logger.debug("Dropping scanner screen after failed send: %s", exc)
                await self.leave(websocket)
