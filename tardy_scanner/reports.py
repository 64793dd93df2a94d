from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta, timezone
from io import BytesIO
from typing import Any, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from .exceptions import ExportError
from .logger import setup_logger
from .types import Incident, IncidentKind

logger = setup_logger("reports")

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    value = _as_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def sort_history(docs: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    """Newest first; records still waiting for a timestamp go last."""

    def _key(doc: Mapping[str, Any]) -> tuple[int, datetime]:
        stamp = doc.get("timestamp")
        if isinstance(stamp, datetime):
            return (1, _as_utc(stamp))
        return (0, _EPOCH)

    return sorted(docs, key=_key, reverse=True)


def history_entries(docs: Iterable[Mapping[str, Any]]) -> List[Incident]:
    entries: List[Incident] = []
    for doc in sort_history(docs):
        try:
            entries.append(Incident.from_document(doc))
        except (KeyError, ValueError) as exc:
            logger.warning("Skipping malformed incident %s: %s", doc.get("id"), exc)
    return entries


def dashboard_summary(docs: Sequence[Mapping[str, Any]], now: Optional[datetime] = None) -> dict[str, Any]:
    now = _as_utc(now or datetime.now(timezone.utc))
    tardies = [doc for doc in docs if doc.get("type") == IncidentKind.LATE.value]

    per_student: dict[str, dict[str, Any]] = {}
    for doc in tardies:
        entry = per_student.setdefault(
            str(doc.get("studentId") or ""),
            {"name": doc.get("studentName"), "class": doc.get("studentClass"), "tardies": 0},
        )
        entry["tardies"] += 1
    top_students = sorted(per_student.values(), key=lambda item: item["tardies"], reverse=True)[:5]

    days = [(now - timedelta(days=29 - offset)).date() for offset in range(30)]
    day_counts: Counter[str] = Counter()
    for doc in tardies:
        stamp = doc.get("timestamp")
        if isinstance(stamp, datetime):
            day_counts[_as_utc(stamp).date().isoformat()] += 1
    by_date = [
        {"date": day.isoformat(), "label": day.strftime("%d %b"), "tardies": day_counts.get(day.isoformat(), 0)}
        for day in days
    ]

    reasons: Counter[str] = Counter()
    for doc in tardies:
        reasons[str(doc.get("reason") or "").strip() or "Unspecified"] += 1

    leave_count = sum(1 for doc in docs if doc.get("type") == IncidentKind.PERIOD_LEAVE.value)

    return {
        "top_students": top_students,
        "tardies_by_date": by_date,
        "reason_distribution": [{"name": name, "value": value} for name, value in reasons.items()],
        "type_distribution": [
            {"name": "Tardy", "value": len(tardies)},
            {"name": "Period Leave", "value": leave_count},
        ],
    }


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return iso_timestamp(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def export_rows(docs: Sequence[Mapping[str, Any]]) -> tuple[List[str], List[List[str]]]:
    if not docs:
        raise ExportError("No data available to export.")
    headers = [key for key in docs[0].keys() if key != "id"]
    rows = [[_cell(doc.get(header)) for header in headers] for doc in docs]
    return headers, rows


def incidents_to_csv(docs: Sequence[Mapping[str, Any]]) -> str:
    headers, rows = export_rows(docs)
    lines = [",".join(headers)]
    for row in rows:
        lines.append(",".join('"' + value.replace('"', '""') + '"' for value in row))
    return "\n".join(lines)


def incidents_excel(docs: Sequence[Mapping[str, Any]]) -> bytes:
    headers, rows = export_rows(docs)
    df = pd.DataFrame(rows, columns=headers)
    output = BytesIO()
    with pd.ExcelWriter(output, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name="Incidents")
        ws = writer.sheets["Incidents"]
        ws.freeze_panes = "A2"

    output.seek(0)
    return output.read()
