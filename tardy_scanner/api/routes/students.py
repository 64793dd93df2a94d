from __future__ import annotations

from fastapi import APIRouter, Depends

from ..deps import get_context, require_roles
from ...admin_service import EnrollmentSession
from ...config import ROLE_ADMIN
from ...context import ServiceContext
from ...schemas import ScanResponse, StudentPayload, StudentResponse
from ...types import Operator

router = APIRouter(prefix="/students", tags=["students"])

admin_only = require_roles(ROLE_ADMIN)


@router.get("", response_model=list[StudentResponse])
async def list_students(
    _operator: Operator = Depends(admin_only),
    context: ServiceContext = Depends(get_context),
):
    students = await context.student_admin.list_students()
    return [StudentResponse.from_student(student) for student in students]


@router.post("", response_model=StudentResponse)
async def create_student(
    payload: StudentPayload,
    _operator: Operator = Depends(admin_only),
    context: ServiceContext = Depends(get_context),
):
    student_id = await context.student_admin.save_student(
        name=payload.name,
        class_name=payload.class_name,
        gender=payload.gender,
        descriptor=payload.face_descriptor,
    )
    return StudentResponse(
        id=student_id,
        name=payload.name.strip(),
        class_name=payload.class_name.strip(),
        gender=payload.gender.strip().upper(),
        enrolled=True,
    )


@router.put("/{student_id}", response_model=StudentResponse)
async def update_student(
    student_id: str,
    payload: StudentPayload,
    _operator: Operator = Depends(admin_only),
    context: ServiceContext = Depends(get_context),
):
    await context.student_admin.save_student(
        name=payload.name,
        class_name=payload.class_name,
        gender=payload.gender,
        descriptor=payload.face_descriptor,
        student_id=student_id,
    )
    return StudentResponse(
        id=student_id,
        name=payload.name.strip(),
        class_name=payload.class_name.strip(),
        gender=payload.gender.strip().upper(),
        enrolled=True,
    )


@router.delete("/{student_id}")
async def delete_student(
    student_id: str,
    _operator: Operator = Depends(admin_only),
    context: ServiceContext = Depends(get_context),
):
    await context.student_admin.delete_student(student_id)
    return {"deleted": student_id}


@router.post("/scan", response_model=ScanResponse)
async def scan_face(
    _operator: Operator = Depends(admin_only),
    context: ServiceContext = Depends(get_context),
):
    await context.vision.ensure_loaded()
    async with EnrollmentSession(context.camera_factory(), context.student_admin) as session:
        descriptor = await session.capture_descriptor()
    return ScanResponse(face_descriptor=[float(value) for value in descriptor])
