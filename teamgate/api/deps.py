"""FastAPI dependencies that run the authorization pipelines for a request."""

from __future__ import annotations

from typing import Optional

from fastapi import Header, Path, Request

from teamgate.service.errors import TokenNotProvided
from teamgate.service.guard import (
    AUTHENTICATED,
    TEAM_ADMIN,
    TEAM_MEMBER,
    RequestContext,
    extract_bearer,
)
from teamgate.service.runtime import get_runtime


def client_meta(request: Request) -> dict[str, Optional[str]]:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


async def bearer_token(authorization: Optional[str] = Header(None)) -> str:
    """Raw bearer token, without validating it."""
    token = extract_bearer(authorization)
    if token is None:
        raise TokenNotProvided()
    return token


async def require_user(authorization: Optional[str] = Header(None)) -> RequestContext:
    runtime = get_runtime()
    return await runtime.guard.check(
        AUTHENTICATED, RequestContext(authorization=authorization)
    )


async def require_member(
    team_id: str = Path(..., max_length=64),
    authorization: Optional[str] = Header(None),
) -> RequestContext:
    runtime = get_runtime()
    return await runtime.guard.check(
        TEAM_MEMBER, RequestContext(authorization=authorization, team_id=team_id)
    )


async def require_admin(
    team_id: str = Path(..., max_length=64),
    authorization: Optional[str] = Header(None),
) -> RequestContext:
    runtime = get_runtime()
    return await runtime.guard.check(
        TEAM_ADMIN, RequestContext(authorization=authorization, team_id=team_id)
    )


__all__ = [
    "bearer_token",
    "client_meta",
    "require_admin",
    "require_member",
    "require_user",
]
