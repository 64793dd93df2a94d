from __future__ import annotations

from typing import Any, Optional

from .camera import VideoSource
from .capture_loop import CaptureLoop
from .context import ServiceContext
from .exceptions import ResourceUnavailable
from .incidents import IncidentRecorder
from .logger import setup_logger
from .overlay import FrameOverlay
from .recognition import RecognitionState, build_policy


class ScannerSession:
    """One scanning screen: camera, capture loop, recognition state and recorder.

    Entering starts the loop once the face models are loaded; exiting stops it
    and releases the camera. Camera and model failures leave a persistent
    status message until the session is started again.
    """

    def __init__(
        self,
        context: ServiceContext,
        source: Optional[VideoSource] = None,
        overlay: Optional[FrameOverlay] = None,
    ):
        settings = context.settings
        self.context = context
        self.logger = setup_logger(self.__class__.__name__)

        self.source = source or context.camera_factory()
        self.overlay = overlay or FrameOverlay(jpeg_quality=settings.jpeg_quality)
        self.recognition = RecognitionState(
            build_policy(settings.recognition_policy, window=settings.vote_window, quorum=settings.vote_quorum)
        )
        self.loop = CaptureLoop(
            source=self.source,
            vision=context.vision,
            matcher_provider=context.matcher,
            recognition=self.recognition,
            interval_seconds=settings.capture_interval_seconds,
            min_confidence=settings.min_detection_confidence,
            overlay=self.overlay,
        )
        self.recorder = IncidentRecorder(
            context.store,
            context.logs_path,
            self.recognition,
            leave_genders=settings.period_leave_genders,
        )

    async def __aenter__(self) -> "ScannerSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    @property
    def running(self) -> bool:
        return self.loop.running

    async def start(self) -> None:
        if self.loop.running:
            return
        self.recognition.reset()
        try:
            await self.context.vision.ensure_loaded()
            await self.loop.start()
        except ResourceUnavailable as exc:
            self.logger.error("Scanner could not start: %s", exc)
            self.recognition.fail(str(exc))
            await self.loop.stop()
            raise
        self.recognition.mark_ready()

    async def stop(self) -> None:
        await self.loop.stop()
        self.recorder.discard_draft()
        self.overlay.clear()
        if self.recognition.snapshot().error is None:
            self.recognition.reset()

    def state(self) -> dict[str, Any]:
        roster = self.context.roster
        snapshot = roster.snapshot()
        draft = self.recorder.draft
        return {
            "running": self.loop.running,
            "models_loaded": self.context.vision.loaded,
            "recognition": self.recognition.snapshot().to_dict(),
            "draft": None
            if draft is None
            else {
                "kind": draft.kind.value,
                "student_id": draft.student.id,
                "minutes_late": draft.minutes_late,
                "reason": draft.reason,
            },
            "submitting": self.recorder.submitting,
            "roster": {
                "students": len(snapshot.students),
                "enrolled": len(snapshot.enrolled),
                "version": snapshot.version,
                "error": str(roster.error) if roster.error is not None else None,
            },
        }
