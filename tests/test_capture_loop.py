import asyncio

import pytest

from conftest import FakeVideoSource, FakeVision, basis, detection_for, make_student, shifted
from tardy_scanner.capture_loop import CancellationToken, CaptureLoop, TickOutcome
from tardy_scanner.descriptor_store import RosterSnapshot
from tardy_scanner.exceptions import CameraError, DetectionTransientFailure
from tardy_scanner.matcher import build_matcher
from tardy_scanner.recognition import STATUS_NO_FACE, RecognitionState, ScanState

ANA = make_student("s1", "Ana", axis=0)
BUDI = make_student("s2", "Budi", axis=1)


def provider_for(*students):
    snapshot = RosterSnapshot.build(students, version=1)
    handle = build_matcher(snapshot.enrolled)
    return lambda: (handle, snapshot)


def make_loop(vision, source=None, interval=0.01, overlay=None, students=(ANA, BUDI)):
    source = source or FakeVideoSource()
    recognition = RecognitionState()
    loop = CaptureLoop(
        source=source,
        vision=vision,
        matcher_provider=provider_for(*students),
        recognition=recognition,
        interval_seconds=interval,
        overlay=overlay,
    )
    return loop, source, recognition


def test_tick_matches_first_detection():
    vision = FakeVision([detection_for(shifted(basis(0), 0.3)), detection_for(basis(1), confidence=0.7)])
    loop, source, recognition = make_loop(vision)
    source.open()

    outcome = asyncio.run(loop.tick())

    assert outcome is TickOutcome.MATCH
    assert recognition.state is ScanState.IDENTIFIED
    assert recognition.subject == ANA


def test_tick_reports_unknown_for_far_probe():
    vision = FakeVision([detection_for(shifted(basis(0), 0.8))])
    loop, source, recognition = make_loop(vision)
    source.open()

    assert asyncio.run(loop.tick()) is TickOutcome.UNKNOWN
    assert recognition.state is ScanState.SCANNING
    assert recognition.subject is None


def test_tick_without_faces_reports_no_face():
    vision = FakeVision([])
    loop, source, recognition = make_loop(vision)
    source.open()

    assert asyncio.run(loop.tick()) is TickOutcome.NO_FACE
    assert recognition.snapshot().status_message == STATUS_NO_FACE


def test_tick_is_rejected_while_source_not_ready():
    vision = FakeVision([detection_for(basis(0))])
    loop, source, recognition = make_loop(vision, source=FakeVideoSource(ready=False))
    source.open()

    assert asyncio.run(loop.tick()) is TickOutcome.NOT_READY
    assert vision.calls == 0
    assert recognition.state is ScanState.IDLE


def test_detection_failure_is_treated_as_no_face():
    vision = FakeVision([detection_for(basis(0))])
    vision.error = DetectionTransientFailure("inference crashed")
    loop, source, recognition = make_loop(vision)
    source.open()

    assert asyncio.run(loop.tick()) is TickOutcome.NO_FACE
    assert recognition.state is ScanState.SCANNING


def test_overlay_failure_does_not_break_tick():
    def _overlay(frame, detections, verdict):
        raise RuntimeError("draw failed")

    vision = FakeVision([detection_for(basis(0))])
    loop, source, recognition = make_loop(vision, overlay=_overlay)
    source.open()

    assert asyncio.run(loop.tick()) is TickOutcome.MATCH
    assert recognition.subject == ANA


def test_cancelled_token_discards_tick():
    vision = FakeVision([detection_for(basis(0))])
    loop, source, recognition = make_loop(vision)
    source.open()
    token = CancellationToken()
    token.cancel()

    assert asyncio.run(loop.tick(token)) is TickOutcome.DISCARDED
    assert vision.calls == 0


def test_ticks_never_overlap_with_slow_detector():
    vision = FakeVision([], delay=0.03)
    loop, source, _ = make_loop(vision, interval=0.01)

    async def scenario():
        await loop.start()
        await asyncio.sleep(0.25)
        await loop.stop()

    asyncio.run(scenario())

    assert vision.calls >= 2
    assert vision.max_active == 1
    assert loop.max_in_flight == 1
    assert loop.skipped_boundaries > 0


def test_stop_releases_source_exactly_once():
    vision = FakeVision([])
    loop, source, _ = make_loop(vision)

    async def scenario():
        await loop.start()
        await asyncio.sleep(0.05)
        await loop.stop()
        await loop.stop()

    asyncio.run(scenario())

    assert source.opened == 1
    assert source.closed == 1
    assert not loop.running


def test_restart_reacquires_source():
    vision = FakeVision([])
    loop, source, _ = make_loop(vision)

    async def scenario():
        await loop.start()
        await loop.stop()
        await loop.start()
        await loop.stop()

    asyncio.run(scenario())

    assert source.opened == 2
    assert source.closed == 2


def test_stale_detection_after_stop_is_discarded():
    vision = FakeVision([])
    loop, source, recognition = make_loop(vision)

    async def scenario():
        vision.gate = asyncio.Event()
        await loop.start()
        while vision.calls == 0:
            await asyncio.sleep(0.001)

        # The pending detection will resolve to Ana once released.
        vision.detections = [detection_for(basis(0))]
        before = recognition.snapshot()
        await loop.stop()

        vision.gate.set()
        await asyncio.sleep(0.02)
        return before

    before = asyncio.run(scenario())

    assert recognition.snapshot() is before
    assert recognition.subject is None
    assert source.closed == 1


def test_start_failure_propagates_without_release():
    vision = FakeVision([])
    loop, source, _ = make_loop(vision, source=FakeVideoSource(fail_open=True))

    with pytest.raises(CameraError):
        asyncio.run(loop.start())

    assert not loop.running
    assert source.closed == 0


def test_restart_waits_for_abandoned_detection():
    vision = FakeVision([])
    loop, source, _ = make_loop(vision)

    async def scenario():
        vision.gate = asyncio.Event()
        await loop.start()
        while vision.calls == 0:
            await asyncio.sleep(0.001)

        await loop.stop()
        await loop.start()
        await asyncio.sleep(0.05)
        calls_while_gated = vision.calls

        vision.gate.set()
        await asyncio.sleep(0.05)
        await loop.stop()
        return calls_while_gated

    calls_while_gated = asyncio.run(scenario())

    assert calls_while_gated == 1
    assert vision.calls >= 2
    assert vision.max_active == 1
    assert loop.max_in_flight == 1
    assert loop.in_flight == 0
