from __future__ import annotations

from fastapi import APIRouter, Depends

from ..deps import get_context, get_current_operator
from ...context import ServiceContext
from ...schemas import LoginRequest, OperatorResponse, TokenResponse
from ...types import Operator

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/token", response_model=TokenResponse)
async def login(payload: LoginRequest, context: ServiceContext = Depends(get_context)):
    operator = await context.auth.verify_credentials(payload.email, payload.password)
    token = context.auth.issue_token(operator)
    return TokenResponse(access_token=token, role=operator.role, email=operator.email)


@router.get("/me", response_model=OperatorResponse)
async def me(operator: Operator = Depends(get_current_operator)):
    return OperatorResponse.from_operator(operator)
