import asyncio

import numpy as np
import pytest

from conftest import FakeVideoSource, FakeVision, basis, detection_for
from tardy_scanner.admin_service import EnrollmentSession, StudentAdmin, UserAdmin
from tardy_scanner.config import collection_path
from tardy_scanner.exceptions import CameraError, FaceNotDetected, InvalidInput, ModelLoadError
from tardy_scanner.store import MemoryCollectionStore
from tardy_scanner.types import parse_descriptor

STUDENTS = collection_path("test-app", "students")
USERS = collection_path("test-app", "users")


def make_admin(vision=None):
    store = MemoryCollectionStore()
    return StudentAdmin(store, STUDENTS, vision or FakeVision()), store


def test_save_requires_name_class_and_descriptor():
    admin, store = make_admin()

    with pytest.raises(InvalidInput, match="Name and class are required."):
        asyncio.run(admin.save_student(name="", class_name="7A", descriptor=basis(0)))
    with pytest.raises(InvalidInput, match="scan the student face"):
        asyncio.run(admin.save_student(name="Ana", class_name="7A", descriptor=""))
    with pytest.raises(InvalidInput):
        asyncio.run(admin.save_student(name="Ana", class_name="7A", descriptor=basis(0), gender="X"))

    assert asyncio.run(store.list(STUDENTS)) == []


def test_create_then_edit_student():
    admin, store = make_admin()

    async def scenario():
        student_id = await admin.save_student(name=" Ana ", class_name="7A", descriptor=basis(0), gender="p")
        await admin.save_student(name="Ana Putri", class_name="8A", descriptor=basis(1), gender="P", student_id=student_id)
        return student_id, await store.get(STUDENTS, student_id)

    student_id, doc = asyncio.run(scenario())
    assert doc["name"] == "Ana Putri"
    assert doc["class"] == "8A"
    assert doc["gender"] == "P"
    assert isinstance(doc["faceDescriptor"], str)
    assert np.array_equal(parse_descriptor(doc["faceDescriptor"]), basis(1))

    students = asyncio.run(admin.list_students())
    assert [student.id for student in students] == [student_id]


def test_delete_student():
    admin, store = make_admin()

    async def scenario():
        student_id = await admin.save_student(name="Ana", class_name="7A", descriptor=basis(0))
        await admin.delete_student(student_id)
        return await store.list(STUDENTS)

    assert asyncio.run(scenario()) == []
    with pytest.raises(InvalidInput):
        asyncio.run(admin.delete_student("missing"))


def test_scan_requires_loaded_models():
    admin, _ = make_admin()
    with pytest.raises(ModelLoadError, match="Models not loaded yet."):
        asyncio.run(admin.scan_face(np.zeros((10, 10, 3), dtype=np.uint8)))


def test_scan_without_face_reports_not_detected():
    vision = FakeVision([])
    admin, _ = make_admin(vision)
    asyncio.run(vision.ensure_loaded())

    with pytest.raises(FaceNotDetected, match="Face not detected. Please try again."):
        asyncio.run(admin.scan_face(np.zeros((10, 10, 3), dtype=np.uint8)))


def test_enrollment_session_captures_and_releases_camera():
    vision = FakeVision([detection_for(basis(4))])
    admin, _ = make_admin(vision)
    source = FakeVideoSource()

    async def scenario():
        await vision.ensure_loaded()
        async with EnrollmentSession(source, admin) as session:
            return await session.capture_descriptor()

    descriptor = asyncio.run(scenario())
    assert np.array_equal(descriptor, basis(4))
    assert source.opened == 1
    assert source.closed == 1


def test_enrollment_session_releases_camera_on_failure():
    vision = FakeVision([])
    admin, _ = make_admin(vision)
    source = FakeVideoSource()

    async def scenario():
        await vision.ensure_loaded()
        async with EnrollmentSession(source, admin) as session:
            await session.capture_descriptor()

    with pytest.raises(FaceNotDetected):
        asyncio.run(scenario())
    assert source.closed == 1


def test_enrollment_with_unready_camera():
    admin, _ = make_admin()
    source = FakeVideoSource(ready=False)

    async def scenario():
        async with EnrollmentSession(source, admin) as session:
            await session.capture_descriptor()

    with pytest.raises(CameraError, match="Camera not ready."):
        asyncio.run(scenario())


def test_change_role_accepts_only_known_roles():
    store = MemoryCollectionStore()
    users = UserAdmin(store, USERS)
    asyncio.run(store.put(USERS, "u1", {"email": "guru@sekolah.id", "role": "teacher"}))

    with pytest.raises(InvalidInput):
        asyncio.run(users.change_role("u1", "principal"))
    with pytest.raises(InvalidInput):
        asyncio.run(users.change_role("missing", "admin"))

    updated = asyncio.run(users.change_role("u1", "admin"))
    assert updated.role == "admin"
    assert asyncio.run(store.get(USERS, "u1"))["role"] == "admin"

    listed = asyncio.run(users.list_users())
    assert [(user.email, user.role) for user in listed] == [("guru@sekolah.id", "admin")]
