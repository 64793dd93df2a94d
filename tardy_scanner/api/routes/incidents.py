from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from ..deps import get_context, get_scanner, require_roles
from ...config import ROLE_ADMIN, ROLE_TEACHER
from ...context import ServiceContext
from ...reports import dashboard_summary, history_entries, incidents_excel, incidents_to_csv, sort_history
from ...scanner import ScannerSession
from ...schemas import IncidentCreated, IncidentResponse, LateIncidentRequest
from ...types import Operator

router = APIRouter(tags=["incidents"])

operator_roles = require_roles(ROLE_TEACHER, ROLE_ADMIN)


def _export_name(extension: str) -> str:
    return f"tardy_log_{datetime.now(timezone.utc):%Y-%m-%d}.{extension}"


@router.post("/incidents/late", response_model=IncidentCreated)
async def record_late(
    payload: LateIncidentRequest,
    operator: Operator = Depends(operator_roles),
    scanner: ScannerSession = Depends(get_scanner),
):
    incident_id = await scanner.recorder.record_late(operator, payload.minutes_late, payload.reason)
    return IncidentCreated(id=incident_id)


@router.post("/incidents/leave", response_model=IncidentCreated)
async def record_leave(
    operator: Operator = Depends(operator_roles),
    scanner: ScannerSession = Depends(get_scanner),
):
    incident_id = await scanner.recorder.record_leave(operator)
    return IncidentCreated(id=incident_id)


@router.get("/incidents", response_model=list[IncidentResponse])
async def list_incidents(
    _operator: Operator = Depends(operator_roles),
    context: ServiceContext = Depends(get_context),
):
    docs = await context.incident_documents()
    return [IncidentResponse.from_incident(incident) for incident in history_entries(docs)]


@router.get("/incidents/export.csv")
async def export_csv(
    _operator: Operator = Depends(operator_roles),
    context: ServiceContext = Depends(get_context),
):
    docs = sort_history(await context.incident_documents())
    return Response(
        content=incidents_to_csv(docs),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{_export_name("csv")}"'},
    )


@router.get("/incidents/export.xlsx")
async def export_excel(
    _operator: Operator = Depends(operator_roles),
    context: ServiceContext = Depends(get_context),
):
    docs = sort_history(await context.incident_documents())
    return Response(
        content=incidents_excel(docs),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{_export_name("xlsx")}"'},
    )


@router.get("/dashboard")
async def dashboard(
    _operator: Operator = Depends(operator_roles),
    context: ServiceContext = Depends(get_context),
):
    return dashboard_summary(await context.incident_documents())
