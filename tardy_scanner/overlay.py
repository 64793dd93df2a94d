from __future__ import annotations

import threading
from typing import Optional, Sequence

import cv2
import numpy as np

from .recognition import Verdict, VerdictKind
from .types import Detection


def draw_face_box(frame: np.ndarray, box: Sequence[int], label: str, known: bool) -> None:
    x1, y1, x2, y2 = [int(v) for v in box]
    color = (30, 180, 30) if known else (20, 20, 220)
    cv2.rectangle(frame, (x1, y1), (x2, y2), color, 2)
    cv2.putText(
        frame,
        label,
        (x1, max(20, y1 - 10)),
        cv2.FONT_HERSHEY_SIMPLEX,
        0.65,
        color,
        2,
        cv2.LINE_AA,
    )


class FrameOverlay:
    """Annotates the sampled frame and keeps the latest JPEG for streaming."""

    def __init__(self, jpeg_quality: int = 78):
        self.jpeg_quality = int(np.clip(jpeg_quality, 45, 95))
        self._lock = threading.Lock()
        self._jpeg: Optional[bytes] = None

    def __call__(self, frame: np.ndarray, detections: Sequence[Detection], verdict: Verdict) -> None:
        canvas = frame.copy()
        for index, detection in enumerate(detections):
            # Only the first detection is matched.
            if index == 0 and verdict.kind is VerdictKind.MATCH and verdict.student is not None:
                draw_face_box(canvas, detection.box, f"{verdict.student.name} {verdict.distance:.2f}", True)
            elif index == 0 and verdict.kind is VerdictKind.UNKNOWN:
                draw_face_box(canvas, detection.box, "Unknown", False)
            else:
                draw_face_box(canvas, detection.box, f"{detection.confidence:.2f}", False)

        ok, encoded = cv2.imencode(".jpg", canvas, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality])
        if not ok:
            return
        with self._lock:
            self._jpeg = encoded.tobytes()

    def latest_jpeg(self) -> Optional[bytes]:
        with self._lock:
            return self._jpeg

    def clear(self) -> None:
        with self._lock:
            self._jpeg = None
