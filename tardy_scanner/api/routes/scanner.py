from __future__ import annotations

import asyncio
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from ..deps import get_scanner, require_roles
from ...config import ROLE_ADMIN, ROLE_TEACHER
from ...scanner import ScannerSession
from ...schemas import DraftRequest
from ...types import Operator

router = APIRouter(tags=["scanner"])

operator_roles = require_roles(ROLE_TEACHER, ROLE_ADMIN)


async def _mjpeg_frames(request: Request, scanner: ScannerSession) -> AsyncIterator[bytes]:
    last = None
    while scanner.running and not await request.is_disconnected():
        frame = scanner.overlay.latest_jpeg()
        if frame is None or frame is last:
            await asyncio.sleep(0.05)
            continue
        last = frame
        yield (
            b"--frame\r\n"
            b"Content-Type: image/jpeg\r\n\r\n" + frame + b"\r\n"
        )


@router.post("/scanner/start")
async def start_scanner(
    _operator: Operator = Depends(operator_roles),
    scanner: ScannerSession = Depends(get_scanner),
):
    await scanner.start()
    return scanner.state()


@router.post("/scanner/stop")
async def stop_scanner(
    _operator: Operator = Depends(operator_roles),
    scanner: ScannerSession = Depends(get_scanner),
):
    await scanner.stop()
    return scanner.state()


@router.get("/scanner/state")
def scanner_state(
    _operator: Operator = Depends(operator_roles),
    scanner: ScannerSession = Depends(get_scanner),
):
    return scanner.state()


@router.get("/stream/camera")
def camera_stream(
    request: Request,
    _operator: Operator = Depends(operator_roles),
    scanner: ScannerSession = Depends(get_scanner),
):
    return StreamingResponse(
        _mjpeg_frames(request, scanner),
        media_type="multipart/x-mixed-replace; boundary=frame",
    )


@router.post("/scanner/draft")
def open_draft(
    payload: DraftRequest,
    _operator: Operator = Depends(operator_roles),
    scanner: ScannerSession = Depends(get_scanner),
):
    scanner.recorder.open_draft(payload.kind)
    if payload.minutes_late is not None or payload.reason is not None:
        scanner.recorder.update_draft(minutes_late=payload.minutes_late, reason=payload.reason)
    return scanner.state()


@router.delete("/scanner/draft")
def discard_draft(
    _operator: Operator = Depends(operator_roles),
    scanner: ScannerSession = Depends(get_scanner),
):
    scanner.recorder.discard_draft()
    return scanner.state()
