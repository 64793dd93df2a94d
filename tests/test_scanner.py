import asyncio

import pytest

from conftest import FakeVideoSource, FakeVision, basis, detection_for, make_student
from tardy_scanner.context import ServiceContext
from tardy_scanner.exceptions import CameraError, ModelLoadError
from tardy_scanner.recognition import STATUS_READY, ScanState, Verdict
from tardy_scanner.scanner import ScannerSession
from tardy_scanner.types import IncidentKind, descriptor_to_json


def test_context_init_runs_once(context, store):
    async def scenario():
        await asyncio.gather(context.init(), context.init(), context.init())
        await context.init()
        return await store.list(context.users_path)

    users = asyncio.run(scenario())
    assert len(users) == 1
    assert users[0]["role"] == "admin"
    assert context.initialized
    assert context.roster.running


def test_context_uses_app_scoped_paths(context):
    assert context.students_path == "artifacts/default-app/public/data/students"
    assert context.logs_path == "artifacts/default-app/public/data/logs"
    assert context.users_path == "artifacts/default-app/public/data/users"


def test_session_identifies_enrolled_student(context, store, vision, camera):
    vision.detections = [detection_for(basis(0))]

    async def scenario():
        await store.put(
            context.students_path,
            "s1",
            {"name": "Ana", "class": "7A", "gender": "P", "faceDescriptor": descriptor_to_json(basis(0))},
        )
        await context.init()
        session = ScannerSession(context, source=camera)
        async with session:
            for _ in range(100):
                if session.recognition.subject is not None:
                    break
                await asyncio.sleep(0.01)
            state = session.state()
        return session, state

    session, state = asyncio.run(scenario())

    assert state["running"]
    assert state["recognition"]["state"] == "identified"
    assert state["recognition"]["status_message"] == "Hello Ana."
    assert state["roster"]["enrolled"] == 1
    assert camera.opened == 1
    assert camera.closed == 1
    assert not session.running
    assert session.recognition.state is ScanState.IDLE


def test_session_marks_ready_after_start(context, camera):
    async def scenario():
        await context.init()
        session = ScannerSession(context, source=camera)
        await session.start()
        message = session.recognition.snapshot().status_message
        await session.stop()
        return message

    assert asyncio.run(scenario()) == STATUS_READY


def test_model_failure_is_persistent_and_releases_nothing(settings, store):
    vision = FakeVision(fail_load=True)
    camera = FakeVideoSource()
    context = ServiceContext(settings, store, vision, camera_factory=lambda: camera)
    session = ScannerSession(context)

    with pytest.raises(ModelLoadError):
        asyncio.run(session.start())

    snapshot = session.recognition.snapshot()
    assert snapshot.error is not None
    assert "Failed to load face models" in snapshot.status_message
    assert camera.opened == 0

    asyncio.run(session.stop())
    assert session.recognition.snapshot().error is not None


def test_camera_failure_is_surfaced(settings, store, vision):
    camera = FakeVideoSource(fail_open=True)
    context = ServiceContext(settings, store, vision, camera_factory=lambda: camera)
    session = ScannerSession(context)

    with pytest.raises(CameraError):
        asyncio.run(session.start())

    assert session.recognition.snapshot().error == "Unable to open webcam index 0."
    assert not session.running


def test_stop_discards_open_draft(context, camera):
    session = ScannerSession(context, source=camera)
    session.recognition.apply(Verdict.matched(make_student("s1", "Ana", axis=0), 0.1))
    session.recorder.open_draft(IncidentKind.LATE)

    asyncio.run(session.stop())
    assert session.recorder.draft is None


def test_station_operator_signs_in_with_configured_token(settings, store, vision, camera):
    async def scenario():
        issuer = ServiceContext(settings, store, vision, camera_factory=lambda: camera)
        admin = await issuer.auth.register_operator("kepala@sekolah.id", "rahasia123", role="admin")
        token = issuer.auth.issue_token(admin)

        station = ServiceContext(
            settings.model_copy(update={"initial_auth_token": token}),
            store,
            vision,
            camera_factory=lambda: camera,
        )
        seen = []
        station.auth.on_identity_change(seen.append)
        first = await station.station_operator()
        second = await station.station_operator()
        return first, second, station, seen

    first, second, station, seen = asyncio.run(scenario())
    assert first is second
    assert first.role == "admin"
    assert not first.anonymous
    assert station.auth.current_operator == first
    assert seen == [None, first]


def test_station_operator_falls_back_to_anonymous(settings, store, vision, camera):
    station = ServiceContext(
        settings.model_copy(update={"initial_auth_token": "expired-or-garbage"}),
        store,
        vision,
        camera_factory=lambda: camera,
    )

    operator = asyncio.run(station.station_operator())
    assert operator.anonymous
    assert operator.role == "teacher"
