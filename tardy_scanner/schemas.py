from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from .types import Incident, Operator, Student


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=256)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: str
    email: Optional[str] = None


class OperatorResponse(BaseModel):
    uid: str
    email: Optional[str] = None
    role: str
    anonymous: bool = False

    @classmethod
    def from_operator(cls, operator: Operator) -> "OperatorResponse":
        return cls(uid=operator.uid, email=operator.email, role=operator.role, anonymous=operator.anonymous)


class RoleUpdate(BaseModel):
    role: str


class OperatorCreate(BaseModel):
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=6, max_length=256)
    role: str = "teacher"


class StudentPayload(BaseModel):
    name: str
    class_name: str = Field(alias="class")
    gender: str = "L"
    face_descriptor: Union[str, list[float], None] = Field(default=None, alias="faceDescriptor")

    model_config = {"populate_by_name": True}


class StudentResponse(BaseModel):
    id: str
    name: str
    class_name: str = Field(serialization_alias="class")
    gender: str
    enrolled: bool

    @classmethod
    def from_student(cls, student: Student) -> "StudentResponse":
        return cls(
            id=student.id,
            name=student.name,
            class_name=student.class_name,
            gender=student.gender,
            enrolled=student.enrolled,
        )


class ScanResponse(BaseModel):
    face_descriptor: list[float] = Field(serialization_alias="faceDescriptor")
    message: str = "Face scanned successfully!"


class DraftRequest(BaseModel):
    kind: str = "late"
    minutes_late: Any = None
    reason: Optional[str] = None


class LateIncidentRequest(BaseModel):
    # Raw value; the recorder decides what counts as a positive whole number.
    minutes_late: Any = None
    reason: Optional[str] = None


class IncidentCreated(BaseModel):
    id: str


class IncidentResponse(BaseModel):
    id: str
    student_id: str
    student_name: str
    student_class: str
    student_gender: str
    type: str
    minutes_late: int
    reason: str
    logged_by_email: str
    timestamp: Optional[datetime] = None
    description: str

    @classmethod
    def from_incident(cls, incident: Incident) -> "IncidentResponse":
        return cls(
            id=incident.id,
            student_id=incident.student_id,
            student_name=incident.student_name,
            student_class=incident.student_class,
            student_gender=incident.student_gender,
            type=incident.kind.value,
            minutes_late=incident.minutes_late,
            reason=incident.reason,
            logged_by_email=incident.logged_by_email,
            timestamp=incident.timestamp,
            description=incident.describe(),
        )
