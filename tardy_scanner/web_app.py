from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.routes import auth, health, incidents, scanner, students, users
from .config import Settings, get_settings
from .context import ServiceContext
from .exceptions import (
    AuthError,
    ExportError,
    FaceNotDetected,
    InvalidInput,
    NoActiveSubject,
    NotAuthenticated,
    PermissionDenied,
    ResourceUnavailable,
    StoreError,
    SubmissionInProgress,
    SubscriptionFailure,
    TrackerError,
    WriteFailure,
)
from .logger import setup_logger
from .scanner import ScannerSession
from .events import EventHub, recognition_event, roster_event

logger = setup_logger("web_app")

_STATUS_CODES: list[tuple[type[TrackerError], int]] = [
    (InvalidInput, 400),
    (NoActiveSubject, 400),
    (ExportError, 400),
    (FaceNotDetected, 400),
    (NotAuthenticated, 401),
    (PermissionDenied, 403),
    (AuthError, 401),
    (SubmissionInProgress, 409),
    (ResourceUnavailable, 503),
    (WriteFailure, 503),
    (StoreError, 503),
    (SubscriptionFailure, 503),
]


def status_for(exc: TrackerError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


def create_web_app(
    context: Optional[ServiceContext] = None,
    settings: Optional[Settings] = None,
    scanner_session: Optional[ScannerSession] = None,
) -> FastAPI:
    settings = context.settings if context is not None else (settings or get_settings())
    context = context or ServiceContext.from_settings(settings)
    session = scanner_session or ScannerSession(context)
    hub = EventHub()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await context.init()
        loop = asyncio.get_running_loop()
        pending: set[asyncio.Task] = set()

        def _schedule(message: dict[str, Any]) -> None:
            task = loop.create_task(hub.publish(message))
            pending.add(task)
            task.add_done_callback(pending.discard)

        def _send(message: dict[str, Any]) -> None:
            # State listeners may fire off the event loop thread.
            loop.call_soon_threadsafe(_schedule, message)

        remove_recognition = session.recognition.subscribe(lambda snapshot: _send(recognition_event(snapshot)))
        remove_roster = context.roster.add_listener(lambda snapshot: _send(roster_event(snapshot)))
        logger.info("%s ready", settings.app_name)
        try:
            yield
        finally:
            remove_recognition()
            remove_roster()
            await session.stop()
            context.close()

    app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)
    app.state.context = context
    app.state.scanner = session
    app.state.events = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for module in (health, auth, scanner, incidents, students, users):
        app.include_router(module.router, prefix=settings.api_prefix)

    @app.exception_handler(TrackerError)
    async def _tracker_error(request: Request, exc: TrackerError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.websocket("/ws/events")
    async def events_socket(websocket: WebSocket):
        token = websocket.query_params.get("token")
        if not token:
            await websocket.close(code=4401)
            return
        try:
            await context.auth.authenticate_token(token)
        except NotAuthenticated:
            await websocket.close(code=4401)
            return

        try:
            await hub.join(websocket, session.recognition.snapshot())
            while True:
                message = await websocket.receive_text()
                if message.lower() == "ping":
                    await websocket.send_json({"type": "pong"})
        except WebSocketDisconnect:
            await hub.leave(websocket)
        except Exception:
            logger.exception("Websocket client failed")
            await hub.leave(websocket)

    return app
