from __future__ import annotations

import os
import threading
import time
from typing import List, Optional, Protocol, Tuple

import cv2
import numpy as np

from .exceptions import CameraError
from .logger import setup_logger


class VideoSource(Protocol):
    """A frame producer owned by exactly one screen between open() and close()."""

    def open(self) -> None:
        ...

    def is_ready(self) -> bool:
        ...

    def read(self) -> Optional[np.ndarray]:
        ...

    def close(self) -> None:
        ...


def capture_backends() -> List[Tuple[str, Optional[int]]]:
    if os.name == "nt":
        # Windows laptop webcams are generally more stable on DirectShow.
        names = ["DirectShow", "Media Foundation", "Auto"]
    else:
        names = ["Auto", "V4L2"]
    backend_map: dict[str, Optional[int]] = {
        "Auto": getattr(cv2, "CAP_ANY", None),
        "DirectShow": getattr(cv2, "CAP_DSHOW", None),
        "Media Foundation": getattr(cv2, "CAP_MSMF", None),
        "V4L2": getattr(cv2, "CAP_V4L2", None),
    }
    candidates: List[Tuple[str, Optional[int]]] = []
    seen: set[Optional[int]] = set()
    for name in names:
        backend = backend_map.get(name)
        if backend in seen:
            continue
        seen.add(backend)
        candidates.append((name, backend))
    return candidates


def open_camera_capture(camera_index: int) -> tuple[cv2.VideoCapture, str]:
    attempted: List[str] = []

    for backend_name, backend in capture_backends():
        attempted.append(backend_name)
        cap = cv2.VideoCapture(camera_index) if backend is None else cv2.VideoCapture(camera_index, backend)

        if cap.isOpened():
            # Some backends report opened=True but never deliver frames.
            for _ in range(6):
                ok, frame = cap.read()
                if ok and frame is not None:
                    return cap, backend_name
                time.sleep(0.03)
        cap.release()

    tried = ", ".join(attempted) if attempted else "default backend"
    raise CameraError(f"Unable to open webcam index {camera_index}. Tried backends: {tried}.")


class CameraStream:
    def __init__(self, camera_index: int = 0, width: int = 1280, height: int = 720, fps: int = 30):
        self.camera_index = camera_index
        self.width = width
        self.height = height
        self.fps = fps
        self.cap: Optional[cv2.VideoCapture] = None
        self.backend_name: Optional[str] = None
        self.logger = setup_logger(self.__class__.__name__)
        self._lock = threading.Lock()

    def __enter__(self) -> "CameraStream":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        with self._lock:
            if self.cap is not None:
                return
            self.cap, self.backend_name = open_camera_capture(self.camera_index)
            self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
            self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
            self.cap.set(cv2.CAP_PROP_FPS, self.fps)
        cv2.setUseOptimized(True)
        self.logger.info("Camera %d opened via %s", self.camera_index, self.backend_name)

    def is_ready(self) -> bool:
        cap = self.cap
        return cap is not None and cap.isOpened()

    def read(self) -> Optional[np.ndarray]:
        with self._lock:
            if self.cap is None:
                raise CameraError("Webcam stream is not initialized.")
            success, frame = self.cap.read()
        if not success or frame is None:
            return None
        return frame

    def close(self) -> None:
        with self._lock:
            if self.cap is None:
                return
            self.cap.release()
            self.cap = None
        self.logger.info("Camera %d released", self.camera_index)
