from __future__ import annotations

import asyncio
from typing import Any, List, Optional

import numpy as np

from .camera import VideoSource
from .config import DEFAULT_MIN_CONFIDENCE, GENDERS, ROLE_TEACHER, ROLES
from .exceptions import (
    CameraError,
    DetectionTransientFailure,
    FaceNotDetected,
    InvalidInput,
    ModelLoadError,
    ResourceUnavailable,
)
from .face_engine import VisionService
from .logger import setup_logger
from .store import CollectionStore
from .types import Operator, Student, parse_descriptor


class StudentAdmin:
    def __init__(self, store: CollectionStore, path: str, vision: VisionService):
        self.store = store
        self.path = path
        self.vision = vision
        self.logger = setup_logger(self.__class__.__name__)

    async def list_students(self) -> List[Student]:
        students: List[Student] = []
        for doc in await self.store.list(self.path):
            try:
                students.append(Student.from_document(doc))
            except InvalidInput:
                students.append(Student.from_document({**doc, "faceDescriptor": None}))
        return sorted(students, key=lambda item: (item.class_name.lower(), item.name.lower()))

    async def save_student(
        self,
        name: str,
        class_name: str,
        descriptor: Any,
        gender: str = "L",
        student_id: Optional[str] = None,
    ) -> str:
        """Create a student, or overwrite one when ``student_id`` is given.

        A saved student always carries a freshly scanned descriptor.
        """
        name = (name or "").strip()
        class_name = (class_name or "").strip()
        if not name or not class_name:
            raise InvalidInput("Name and class are required.")
        gender = (gender or "L").strip().upper()
        if gender not in GENDERS:
            raise InvalidInput(f"Gender must be one of {', '.join(GENDERS)}.")
        vector = parse_descriptor(descriptor)
        if vector is None:
            raise InvalidInput("Please scan the student face before saving.")

        student = Student(id=student_id or "", name=name, class_name=class_name, gender=gender, descriptor=vector)
        if student_id:
            await self.store.put(self.path, student_id, student.to_fields())
            self.logger.info("Updated student %s (%s)", name, student_id)
            return student_id

        new_id = await self.store.create(self.path, student.to_fields())
        self.logger.info("Enrolled student %s (%s)", name, new_id)
        return new_id

    async def delete_student(self, student_id: str) -> None:
        student_id = (student_id or "").strip()
        if not student_id:
            raise InvalidInput("Student id is required.")
        if await self.store.get(self.path, student_id) is None:
            raise InvalidInput(f"Student {student_id} not found.")
        await self.store.delete(self.path, student_id)
        self.logger.info("Deleted student %s", student_id)

    async def scan_face(self, frame: np.ndarray, min_confidence: float = DEFAULT_MIN_CONFIDENCE) -> np.ndarray:
        if not self.vision.loaded:
            raise ModelLoadError("Models not loaded yet.")
        try:
            detection = await self.vision.detect_single(frame, min_confidence)
        except DetectionTransientFailure as exc:
            self.logger.warning("Enrollment scan failed: %s", exc)
            raise FaceNotDetected("Face scan failed. Please retry.") from exc
        if detection is None:
            raise FaceNotDetected("Face not detected. Please try again.")
        return np.asarray(detection.descriptor, dtype=np.float64)


class EnrollmentSession:
    """Owns the camera for one enrollment form; released when the form closes."""

    def __init__(self, source: VideoSource, admin: StudentAdmin):
        self.source = source
        self.admin = admin
        self.logger = setup_logger(self.__class__.__name__)
        self._open = False

    async def __aenter__(self) -> "EnrollmentSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        if self._open:
            return
        try:
            await asyncio.to_thread(self.source.open)
        except ResourceUnavailable:
            raise
        except Exception as exc:
            raise CameraError(f"Unable to access camera: {exc}") from exc
        self._open = True

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        await asyncio.to_thread(self.source.close)

    async def capture_descriptor(self) -> np.ndarray:
        if not self._open or not self.source.is_ready():
            raise CameraError("Camera not ready.")
        frame = await asyncio.to_thread(self.source.read)
        if frame is None:
            raise CameraError("Camera not ready.")
        return await self.admin.scan_face(frame)


class UserAdmin:
    def __init__(self, store: CollectionStore, path: str):
        self.store = store
        self.path = path
        self.logger = setup_logger(self.__class__.__name__)

    async def list_users(self) -> List[Operator]:
        users = [
            Operator(uid=str(doc["id"]), email=doc.get("email"), role=str(doc.get("role") or ROLE_TEACHER))
            for doc in await self.store.list(self.path)
        ]
        return sorted(users, key=lambda item: item.display_email.lower())

    async def change_role(self, uid: str, role: str) -> Operator:
        role = (role or "").strip().lower()
        if role not in ROLES:
            raise InvalidInput(f"Role must be one of {', '.join(ROLES)}.")
        doc = await self.store.get(self.path, uid)
        if doc is None:
            raise InvalidInput(f"Operator {uid} not found.")
        await self.store.update(self.path, uid, {"role": role})
        self.logger.info("Operator %s role changed to %s", doc.get("email") or uid, role)
        return Operator(uid=uid, email=doc.get("email"), role=role)
