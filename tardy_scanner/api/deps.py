from __future__ import annotations

from typing import Awaitable, Callable

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..auth import require_role
from ..context import ServiceContext
from ..exceptions import NotAuthenticated
from ..scanner import ScannerSession
from ..types import Operator

bearer_scheme = HTTPBearer(auto_error=False)


def get_context(request: Request) -> ServiceContext:
    return request.app.state.context


def get_scanner(request: Request) -> ScannerSession:
    return request.app.state.scanner


async def get_current_operator(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    context: ServiceContext = Depends(get_context),
) -> Operator:
    if credentials is None:
        raise NotAuthenticated("Missing bearer token.")
    return await context.auth.authenticate_token(credentials.credentials)


def require_roles(*allowed_roles: str) -> Callable[[Operator], Awaitable[Operator]]:
    async def _checker(operator: Operator = Depends(get_current_operator)) -> Operator:
        return require_role(operator, *allowed_roles)

    return _checker
