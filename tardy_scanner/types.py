from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Sequence

import numpy as np

from .config import DESCRIPTOR_SIZE, ROLE_ADMIN, ROLE_TEACHER, UNKNOWN_EMAIL
from .exceptions import InvalidInput


def parse_descriptor(raw: Any) -> Optional[np.ndarray]:
    """Turn a stored or submitted descriptor into a read-only float vector.

    Accepts the JSON array string kept in the roster collection, a plain
    sequence of numbers or an ndarray. Empty values mean "not enrolled".
    """
    if raw is None:
        return None
    if isinstance(raw, str):
        if not raw.strip():
            return None
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise InvalidInput(f"Face descriptor is not valid JSON: {exc}") from exc

    try:
        vector = np.asarray(raw, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"Face descriptor must be numeric: {exc}") from exc

    if vector.ndim != 1 or vector.size != DESCRIPTOR_SIZE:
        raise InvalidInput(f"Face descriptor must contain exactly {DESCRIPTOR_SIZE} values.")
    if not np.all(np.isfinite(vector)):
        raise InvalidInput("Face descriptor contains non-finite values.")

    vector = vector.copy()
    vector.flags.writeable = False
    return vector


def descriptor_to_json(descriptor: Sequence[float] | np.ndarray) -> str:
    return json.dumps([float(v) for v in np.asarray(descriptor, dtype=np.float64)])


class Role(str, Enum):
    TEACHER = ROLE_TEACHER
    ADMIN = ROLE_ADMIN


class IncidentKind(str, Enum):
    LATE = "late"
    PERIOD_LEAVE = "period-leave"


@dataclass(frozen=True)
class Student:
    id: str
    name: str
    class_name: str
    gender: str
    descriptor: Optional[np.ndarray] = field(default=None, compare=False, repr=False)

    @property
    def enrolled(self) -> bool:
        return self.descriptor is not None

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "Student":
        return cls(
            id=str(doc["id"]),
            name=str(doc.get("name") or ""),
            class_name=str(doc.get("class") or ""),
            gender=str(doc.get("gender") or "L"),
            descriptor=parse_descriptor(doc.get("faceDescriptor")),
        )

    def to_fields(self) -> dict[str, Any]:
        fields: dict[str, Any] = {"name": self.name, "class": self.class_name, "gender": self.gender}
        if self.descriptor is not None:
            fields["faceDescriptor"] = descriptor_to_json(self.descriptor)
        return fields


@dataclass(frozen=True)
class Detection:
    box: tuple[int, int, int, int]
    descriptor: np.ndarray = field(compare=False, repr=False)
    confidence: float = 0.0
    landmarks: tuple[tuple[int, int], ...] = field(default=(), compare=False, repr=False)


@dataclass(frozen=True)
class MatchResult:
    identity_id: Optional[str]
    distance: float = math.inf

    @property
    def matched(self) -> bool:
        return self.identity_id is not None

    @classmethod
    def unknown(cls, distance: float = math.inf) -> "MatchResult":
        return cls(identity_id=None, distance=distance)


@dataclass(frozen=True)
class Operator:
    uid: str
    email: Optional[str] = None
    role: str = ROLE_TEACHER
    anonymous: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def display_email(self) -> str:
        return self.email or UNKNOWN_EMAIL


@dataclass(frozen=True)
class Incident:
    id: str
    student_id: str
    student_name: str
    student_class: str
    student_gender: str
    kind: IncidentKind
    minutes_late: int
    reason: str
    logged_by_email: str
    timestamp: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "Incident":
        timestamp = doc.get("timestamp")
        return cls(
            id=str(doc["id"]),
            student_id=str(doc.get("studentId") or ""),
            student_name=str(doc.get("studentName") or ""),
            student_class=str(doc.get("studentClass") or ""),
            student_gender=str(doc.get("studentGender") or ""),
            kind=IncidentKind(doc.get("type", IncidentKind.LATE.value)),
            minutes_late=int(doc.get("minutesLate") or 0),
            reason=str(doc.get("reason") or ""),
            logged_by_email=str(doc.get("loggedByEmail") or UNKNOWN_EMAIL),
            timestamp=timestamp if isinstance(timestamp, datetime) else None,
        )

    def describe(self) -> str:
        if self.kind is IncidentKind.LATE:
            suffix = f" - {self.reason}" if self.reason else ""
            return f"{self.minutes_late} minutes late{suffix}"
        return self.reason or "Period leave"
