from __future__ import annotations

from fastapi import APIRouter, Depends

from ..deps import get_context, require_roles
from ...config import ROLE_ADMIN
from ...context import ServiceContext
from ...schemas import OperatorCreate, OperatorResponse, RoleUpdate
from ...types import Operator

router = APIRouter(prefix="/users", tags=["users"])

admin_only = require_roles(ROLE_ADMIN)


@router.get("", response_model=list[OperatorResponse])
async def list_users(
    _operator: Operator = Depends(admin_only),
    context: ServiceContext = Depends(get_context),
):
    return [OperatorResponse.from_operator(user) for user in await context.user_admin.list_users()]


@router.post("", response_model=OperatorResponse)
async def create_user(
    payload: OperatorCreate,
    _operator: Operator = Depends(admin_only),
    context: ServiceContext = Depends(get_context),
):
    operator = await context.auth.register_operator(payload.email, payload.password, role=payload.role)
    return OperatorResponse.from_operator(operator)


@router.patch("/{uid}/role", response_model=OperatorResponse)
async def change_role(
    uid: str,
    payload: RoleUpdate,
    _operator: Operator = Depends(admin_only),
    context: ServiceContext = Depends(get_context),
):
    return OperatorResponse.from_operator(await context.user_admin.change_role(uid, payload.role))
