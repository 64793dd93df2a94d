from __future__ import annotations

import asyncio
from typing import Any, Mapping, Optional

import numpy as np
import pytest

from tardy_scanner.config import DESCRIPTOR_SIZE, Settings
from tardy_scanner.context import ServiceContext
from tardy_scanner.exceptions import CameraError, ModelLoadError, StoreError
from tardy_scanner.store import MemoryCollectionStore
from tardy_scanner.types import Detection, Student


def basis(axis: int, scale: float = 1.0) -> np.ndarray:
    vector = np.zeros(DESCRIPTOR_SIZE, dtype=np.float64)
    vector[axis] = scale
    return vector


def shifted(base: np.ndarray, distance: float, axis: int = DESCRIPTOR_SIZE - 1) -> np.ndarray:
    """A probe exactly ``distance`` away from ``base`` along an axis where ``base`` is zero."""
    probe = np.array(base, dtype=np.float64)
    assert probe[axis] == 0.0
    probe[axis] = distance
    return probe


def make_student(student_id: str, name: str, axis: Optional[int], gender: str = "L", class_name: str = "7A") -> Student:
    descriptor = basis(axis) if axis is not None else None
    return Student(id=student_id, name=name, class_name=class_name, gender=gender, descriptor=descriptor)


def detection_for(descriptor: np.ndarray, confidence: float = 0.9) -> Detection:
    return Detection(box=(10, 10, 40, 40), descriptor=np.asarray(descriptor, dtype=np.float64), confidence=confidence)


class FakeVideoSource:
    def __init__(self, ready: bool = True, fail_open: bool = False):
        self.ready = ready
        self.fail_open = fail_open
        self.opened = 0
        self.closed = 0
        self.reads = 0
        self._open = False
        self.frame = np.zeros((48, 64, 3), dtype=np.uint8)

    def open(self) -> None:
        if self.fail_open:
            raise CameraError("Unable to open webcam index 0.")
        self.opened += 1
        self._open = True

    def is_ready(self) -> bool:
        return self._open and self.ready

    def read(self) -> Optional[np.ndarray]:
        self.reads += 1
        if not self.is_ready():
            return None
        return self.frame.copy()

    def close(self) -> None:
        self.closed += 1
        self._open = False


class FakeVision:
    """Scriptable vision service that records how many detections overlap."""

    def __init__(self, detections=None, fail_load: bool = False, delay: float = 0.0):
        self.detections = list(detections or [])
        self.fail_load = fail_load
        self.delay = delay
        self.gate: Optional[asyncio.Event] = None
        self.error: Optional[Exception] = None
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self.load_calls = 0
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def ensure_loaded(self) -> None:
        self.load_calls += 1
        if self.fail_load:
            raise ModelLoadError("Failed to load face models: missing weights")
        self._loaded = True

    async def detect_all(self, frame, min_confidence: float = 0.6):
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.gate is not None:
                await self.gate.wait()
            if self.error is not None:
                raise self.error
            return list(self.detections)
        finally:
            self.active -= 1

    async def detect_single(self, frame, min_confidence: float = 0.6):
        detections = await self.detect_all(frame, min_confidence)
        return detections[0] if detections else None


class FlakyStore(MemoryCollectionStore):
    """Memory store whose writes and reads can be made to fail or to hang."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_creates = 0
        self.fail_gets = False
        self.create_calls = 0
        self.create_gate: Optional[asyncio.Event] = None

    async def create(self, path: str, fields: Mapping[str, Any]) -> str:
        self.create_calls += 1
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.fail_creates > 0:
            self.fail_creates -= 1
            raise StoreError("network unavailable")
        return await super().create(path, fields)

    async def get(self, path: str, doc_id: str):
        if self.fail_gets:
            raise StoreError("permission denied")
        return await super().get(path, doc_id)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="memory://",
        jwt_secret="test-secret-key",
        bootstrap_admin_email="admin@school.test",
        bootstrap_admin_password="admin-pass-123",
        capture_interval_ms=50,
        cors_origins_raw="http://localhost:5173",
    )


@pytest.fixture
def store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture
def vision() -> FakeVision:
    return FakeVision()


@pytest.fixture
def camera() -> FakeVideoSource:
    return FakeVideoSource()


@pytest.fixture
def context(settings, store, vision, camera) -> ServiceContext:
    return ServiceContext(settings, store, vision, camera_factory=lambda: camera)
