from __future__ import annotations

import asyncio
from enum import Enum
from typing import Callable, List, Optional, Sequence

import numpy as np

from .camera import VideoSource
from .config import DEFAULT_CAPTURE_INTERVAL_MS, DEFAULT_MIN_CONFIDENCE
from .descriptor_store import RosterSnapshot
from .exceptions import CameraError, DetectionTransientFailure, InvalidInput, ResourceUnavailable
from .face_engine import VisionService
from .logger import setup_logger
from .matcher import MatcherHandle, match
from .recognition import RecognitionState, Verdict, VerdictKind
from .types import Detection

MatcherProvider = Callable[[], tuple[MatcherHandle, RosterSnapshot]]
OverlaySink = Callable[[np.ndarray, Sequence[Detection], Verdict], None]


class CancellationToken:
    """Marks one run of the loop; results observed after cancel() are stale."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class TickOutcome(str, Enum):
    NOT_READY = "not-ready"
    NO_FACE = "no-face"
    UNKNOWN = "unknown"
    MATCH = "match"
    DISCARDED = "discarded"


_OUTCOMES = {
    VerdictKind.SOURCE_NOT_READY: TickOutcome.NOT_READY,
    VerdictKind.NO_FACE: TickOutcome.NO_FACE,
    VerdictKind.UNKNOWN: TickOutcome.UNKNOWN,
    VerdictKind.MATCH: TickOutcome.MATCH,
}


class CaptureLoop:
    """Samples one frame per interval, detects, matches, and feeds RecognitionState.

    Ticks never overlap: the next tick is scheduled only after the current
    detection resolved. A tick that overruns skips the interval boundaries it
    missed.
    """

    def __init__(
        self,
        source: VideoSource,
        vision: VisionService,
        matcher_provider: MatcherProvider,
        recognition: RecognitionState,
        interval_seconds: float = DEFAULT_CAPTURE_INTERVAL_MS / 1000.0,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        overlay: Optional[OverlaySink] = None,
    ):
        self.source = source
        self.vision = vision
        self.matcher_provider = matcher_provider
        self.recognition = recognition
        self.interval_seconds = max(0.0, float(interval_seconds))
        self.min_confidence = min_confidence
        self.overlay = overlay
        self.logger = setup_logger(self.__class__.__name__)

        self._task: Optional[asyncio.Task] = None
        self._token: Optional[CancellationToken] = None
        self._acquired = False
        self._pending: Optional[asyncio.Future] = None

        self.ticks = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.skipped_boundaries = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def acquired(self) -> bool:
        return self._acquired

    async def start(self) -> None:
        if self.running:
            return
        if not self._acquired:
            try:
                await asyncio.to_thread(self.source.open)
            except ResourceUnavailable:
                raise
            except Exception as exc:
                raise CameraError(f"Unable to access camera: {exc}") from exc
            self._acquired = True

        token = CancellationToken()
        self._token = token
        self._task = asyncio.create_task(self._run(token), name="capture-loop")
        self.logger.info("Capture loop started (interval %.2fs)", self.interval_seconds)

    async def stop(self) -> None:
        if self._token is not None:
            self._token.cancel()
        task, self._task = self._task, None
        try:
            if task is not None and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        finally:
            await self._release()
        self.logger.info("Capture loop stopped after %d ticks", self.ticks)

    async def _release(self) -> None:
        if not self._acquired:
            return
        self._acquired = False
        try:
            await asyncio.to_thread(self.source.close)
        except Exception:
            self.logger.exception("Failed to release video source")

    async def _run(self, token: CancellationToken) -> None:
        loop = asyncio.get_running_loop()
        interval = self.interval_seconds
        try:
            while not token.cancelled:
                started = loop.time()
                await self.tick(token)
                elapsed = loop.time() - started
                if interval > 0 and elapsed > interval:
                    missed = int(elapsed // interval)
                    self.skipped_boundaries += missed
                    self.logger.debug("Tick took %.2fs; skipping %d interval(s)", elapsed, missed)
                    delay = interval * (missed + 1) - elapsed
                else:
                    delay = interval - elapsed
                await asyncio.sleep(max(0.0, delay))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.exception("Capture loop crashed")
            token.cancel()
            self.recognition.fail(f"Scanner stopped: {exc}")
            await self._release()

    async def tick(self, token: Optional[CancellationToken] = None) -> TickOutcome:
        token = token or self._token or CancellationToken()
        if token.cancelled:
            return TickOutcome.DISCARDED
        self.ticks += 1

        frame = None
        if self.source.is_ready():
            try:
                frame = await asyncio.to_thread(self.source.read)
            except ResourceUnavailable as exc:
                self.logger.warning("Frame read failed: %s", exc)
        if token.cancelled:
            return TickOutcome.DISCARDED
        if frame is None:
            self.recognition.apply(Verdict.source_not_ready())
            return TickOutcome.NOT_READY

        detections = await self._detect(frame)
        if token.cancelled:
            self.logger.debug("Discarding detection result that arrived after stop")
            return TickOutcome.DISCARDED

        verdict = self._resolve(detections)
        self._draw(frame, detections, verdict)
        self.recognition.apply(verdict)
        return _OUTCOMES[verdict.kind]

    async def _detect(self, frame: np.ndarray) -> List[Detection]:
        orphan = self._pending
        if orphan is not None and not orphan.done():
            # A detection abandoned by an earlier run still owns the detector.
            self.logger.debug("Waiting for an abandoned detection to finish")
            await asyncio.wait([orphan])

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        pending = asyncio.ensure_future(self.vision.detect_all(frame, self.min_confidence))
        pending.add_done_callback(self._settle)
        self._pending = pending
        try:
            # Shielded: a cancelled tick abandons the inference instead of tearing it down.
            return list(await asyncio.shield(pending))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            failure = exc if isinstance(exc, DetectionTransientFailure) else DetectionTransientFailure(str(exc))
            self.logger.warning("Detection failed, treating tick as no face: %s", failure)
            return []

    def _settle(self, pending: asyncio.Future) -> None:
        self.in_flight -= 1
        if self._pending is pending:
            self._pending = None
        if not pending.cancelled():
            pending.exception()

    def _resolve(self, detections: Sequence[Detection]) -> Verdict:
        if not detections:
            return Verdict.no_face()

        handle, snapshot = self.matcher_provider()
        try:
            result = match(handle, detections[0].descriptor)
        except InvalidInput as exc:
            self.logger.warning("Unusable live descriptor: %s", exc)
            return Verdict.unknown()

        if not result.matched:
            return Verdict.unknown(result.distance)
        student = snapshot.by_id.get(result.identity_id)
        if student is None:
            return Verdict.unknown(result.distance)
        return Verdict.matched(student, result.distance)

    def _draw(self, frame: np.ndarray, detections: Sequence[Detection], verdict: Verdict) -> None:
        if self.overlay is None:
            return
        try:
            self.overlay(frame, detections, verdict)
        except Exception:
            self.logger.exception("Overlay drawing failed")
