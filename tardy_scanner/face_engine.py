from __future__ import annotations

import asyncio
import threading
from typing import List, Optional, Protocol

import cv2
import numpy as np

from .config import DEFAULT_MIN_CONFIDENCE, DESCRIPTOR_SIZE
from .exceptions import DetectionTransientFailure, ModelLoadError
from .logger import setup_logger
from .types import Detection

try:
    import mediapipe as mp
except Exception:  # pragma: no cover - runtime dependency guard
    mp = None

try:
    import face_recognition
except Exception:  # pragma: no cover - runtime dependency guard
    face_recognition = None


class VisionService(Protocol):
    """Face detection and 128-d descriptor extraction.

    ``ensure_loaded`` must complete before any detection call.
    """

    @property
    def loaded(self) -> bool:
        ...

    async def ensure_loaded(self) -> None:
        ...

    async def detect_all(self, frame: np.ndarray, min_confidence: float = DEFAULT_MIN_CONFIDENCE) -> List[Detection]:
        ...

    async def detect_single(
        self,
        frame: np.ndarray,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    ) -> Optional[Detection]:
        ...


class FaceEngine:
    """mediapipe boxes plus dlib landmarks/descriptors, computed in one pass per frame."""

    def __init__(self, min_detection_confidence: float = DEFAULT_MIN_CONFIDENCE, model_selection: int = 0):
        self.min_detection_confidence = float(min_detection_confidence)
        self.model_selection = model_selection
        self.logger = setup_logger(self.__class__.__name__)

        self._detector = None
        self._loaded = False
        self._load_task: Optional[asyncio.Future] = None
        self._infer_lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def ensure_loaded(self) -> None:
        if self._loaded:
            return
        if self._load_task is None:
            self._load_task = asyncio.ensure_future(asyncio.to_thread(self._load_models))
        await asyncio.shield(self._load_task)

    def _load_models(self) -> None:
        if mp is None or face_recognition is None:
            raise ModelLoadError("mediapipe and face_recognition are required. Install the vision extra.")
        try:
            self._detector = mp.solutions.face_detection.FaceDetection(
                model_selection=self.model_selection,
                min_detection_confidence=self.min_detection_confidence,
            )
        except Exception as exc:
            self.logger.exception("Failed to load face models")
            raise ModelLoadError(f"Failed to load face models: {exc}") from exc
        self._loaded = True
        self.logger.info("Face models loaded")

    async def detect_all(self, frame: np.ndarray, min_confidence: float = DEFAULT_MIN_CONFIDENCE) -> List[Detection]:
        if not self._loaded:
            raise ModelLoadError("Face models are not loaded yet.")
        return await asyncio.to_thread(self._detect, frame, float(min_confidence))

    async def detect_single(
        self,
        frame: np.ndarray,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    ) -> Optional[Detection]:
        detections = await self.detect_all(frame, min_confidence)
        return detections[0] if detections else None

    def _detect(self, frame: np.ndarray, min_confidence: float) -> List[Detection]:
        try:
            rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            with self._infer_lock:
                result = self._detector.process(rgb)
        except Exception as exc:
            raise DetectionTransientFailure(f"Face detection failed: {exc}") from exc

        if not result.detections:
            return []

        h, w = rgb.shape[:2]
        boxes: List[tuple[int, int, int, int]] = []
        scores: List[float] = []
        for det in result.detections:
            score = float(det.score[0]) if det.score else 0.0
            if score < min_confidence:
                continue
            rel = det.location_data.relative_bounding_box
            x1 = max(0, int(rel.xmin * w))
            y1 = max(0, int(rel.ymin * h))
            x2 = min(w, x1 + int(rel.width * w))
            y2 = min(h, y1 + int(rel.height * h))
            if x2 <= x1 or y2 <= y1:
                continue
            boxes.append((x1, y1, x2, y2))
            scores.append(score)

        if not boxes:
            return []

        # dlib expects (top, right, bottom, left).
        locations = [(y1, x2, y2, x1) for x1, y1, x2, y2 in boxes]
        try:
            encodings = face_recognition.face_encodings(rgb, known_face_locations=locations)
            landmark_sets = face_recognition.face_landmarks(rgb, face_locations=locations)
        except Exception as exc:
            raise DetectionTransientFailure(f"Descriptor extraction failed: {exc}") from exc

        detections: List[Detection] = []
        for box, score, encoding, landmarks in zip(boxes, scores, encodings, landmark_sets):
            descriptor = np.asarray(encoding, dtype=np.float64)
            if descriptor.size != DESCRIPTOR_SIZE:
                continue
            points = tuple((int(x), int(y)) for feature in landmarks.values() for x, y in feature)
            detections.append(Detection(box=box, descriptor=descriptor, confidence=score, landmarks=points))

        detections.sort(key=lambda item: item.confidence, reverse=True)
        return detections
