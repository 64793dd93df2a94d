from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Any, Iterable, Optional

from .config import LATE_REASON_DEFAULT, LEAVE_REASON
from .exceptions import (
    InvalidInput,
    NoActiveSubject,
    NotAuthenticated,
    StoreError,
    SubmissionInProgress,
    WriteFailure,
)
from .logger import setup_logger
from .recognition import RecognitionState
from .store import SERVER_TIMESTAMP, CollectionStore
from .types import IncidentKind, Operator, Student

_DIGITS = re.compile(r"^[0-9]+$")


def parse_minutes_late(value: Any) -> int:
    """Accept a positive int or a string holding one; reject everything else."""
    if isinstance(value, bool):
        raise InvalidInput("Minutes late must be a positive whole number.")
    if isinstance(value, int):
        minutes = value
    elif isinstance(value, str) and _DIGITS.match(value.strip()):
        minutes = int(value.strip())
    else:
        raise InvalidInput("Minutes late must be a positive whole number.")
    if minutes <= 0:
        raise InvalidInput("Minutes late must be greater than zero.")
    return minutes


@dataclass(frozen=True)
class IncidentDraft:
    kind: IncidentKind
    student: Student
    minutes_late: Any = None
    reason: str = ""


class IncidentRecorder:
    """Writes late and period-leave incidents for the identified student.

    Holds at most one compose-then-commit draft. A submission is accepted only
    while a draft of its kind is open for the identified student. A successful
    or abandoned action discards the draft; a failed write leaves it in place
    for a manual retry.
    Writes are never retried in the background.
    """

    def __init__(
        self,
        store: CollectionStore,
        path: str,
        recognition: RecognitionState,
        leave_genders: Iterable[str] = ("P",),
    ):
        self.store = store
        self.path = path
        self.recognition = recognition
        self.leave_genders = frozenset(leave_genders)
        self.logger = setup_logger(self.__class__.__name__)

        self._draft: Optional[IncidentDraft] = None
        self._submitting = False

    @property
    def draft(self) -> Optional[IncidentDraft]:
        return self._draft

    @property
    def submitting(self) -> bool:
        return self._submitting

    def leave_allowed(self, student: Student) -> bool:
        return student.gender in self.leave_genders

    def open_draft(self, kind: IncidentKind | str) -> IncidentDraft:
        try:
            kind = IncidentKind(kind)
        except ValueError as exc:
            raise InvalidInput(f"Unknown incident type '{kind}'.") from exc
        subject = self.recognition.subject
        if subject is None:
            self.discard_draft()
            raise NoActiveSubject("No student is identified.")
        if kind is IncidentKind.PERIOD_LEAVE:
            self._check_leave_allowed(subject)
        self._draft = IncidentDraft(kind=kind, student=subject)
        return self._draft

    def update_draft(self, minutes_late: Any = None, reason: Optional[str] = None) -> IncidentDraft:
        if self._draft is None:
            raise NoActiveSubject("No incident is being composed.")
        changes: dict[str, Any] = {}
        if minutes_late is not None:
            changes["minutes_late"] = minutes_late
        if reason is not None:
            changes["reason"] = reason
        self._draft = replace(self._draft, **changes)
        return self._draft

    def discard_draft(self) -> None:
        self._draft = None

    async def record_late(
        self,
        operator: Optional[Operator],
        minutes_late: Any = None,
        reason: Optional[str] = None,
    ) -> str:
        self._check_submittable(operator)
        subject, draft = self._current_subject(IncidentKind.LATE)

        if minutes_late is None:
            minutes_late = draft.minutes_late
        if reason is None:
            reason = draft.reason
        minutes = parse_minutes_late(minutes_late)
        reason = (reason or "").strip() or LATE_REASON_DEFAULT

        return await self._write(subject, IncidentKind.LATE, minutes, reason, operator)

    async def record_leave(self, operator: Optional[Operator]) -> str:
        self._check_submittable(operator)
        subject, _ = self._current_subject(IncidentKind.PERIOD_LEAVE)
        self._check_leave_allowed(subject)
        return await self._write(subject, IncidentKind.PERIOD_LEAVE, 0, LEAVE_REASON, operator)

    def _check_submittable(self, operator: Optional[Operator]) -> None:
        if self._submitting:
            raise SubmissionInProgress("An incident is already being saved.")
        if operator is None:
            raise NotAuthenticated("Sign in before logging incidents.")

    def _check_leave_allowed(self, student: Student) -> None:
        if not self.leave_allowed(student):
            raise InvalidInput(f"Period leave is not available for {student.name}.")

    def _current_subject(self, kind: IncidentKind) -> tuple[Student, IncidentDraft]:
        subject = self.recognition.subject
        if subject is None:
            self.discard_draft()
            raise NoActiveSubject("No student is identified.")
        draft = self._draft
        if draft is None:
            raise NoActiveSubject("Open the incident form for the identified student first.")
        if draft.student.id != subject.id:
            self.discard_draft()
            raise NoActiveSubject("The identified student changed; start again.")
        if draft.kind is not kind:
            raise InvalidInput(f"The open form is for {draft.kind.value}, not {kind.value}.")
        return subject, draft

    async def _write(
        self,
        subject: Student,
        kind: IncidentKind,
        minutes: int,
        reason: str,
        operator: Operator,
    ) -> str:
        # Denormalized copy of the student as identified right now.
        fields = {
            "studentId": subject.id,
            "studentName": subject.name,
            "studentClass": subject.class_name,
            "studentGender": subject.gender,
            "type": kind.value,
            "minutesLate": minutes,
            "reason": reason,
            "loggedByEmail": operator.display_email,
            "timestamp": SERVER_TIMESTAMP,
        }

        self._submitting = True
        try:
            incident_id = await self.store.create(self.path, fields)
        except StoreError as exc:
            self.logger.error("Failed to save %s incident for %s: %s", kind.value, subject.id, exc)
            raise WriteFailure(f"Failed to save log: {exc}") from exc
        finally:
            self._submitting = False

        self.discard_draft()
        self.logger.info(
            "Logged %s for %s (%s) by %s",
            kind.value,
            subject.name,
            subject.id,
            operator.display_email,
        )
        return incident_id
