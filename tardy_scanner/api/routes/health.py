from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from ..deps import get_context
from ...context import ServiceContext

router = APIRouter(tags=["health"])


@router.get("/health")
def health(context: ServiceContext = Depends(get_context)) -> dict:
    return {
        "ok": True,
        "service": context.settings.app_name,
        "models_loaded": context.vision.loaded,
        "roster_loaded": context.roster.loaded,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
