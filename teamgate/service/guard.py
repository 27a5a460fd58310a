"""Per-request access decisions as an explicit pipeline of guard functions.

A ``RequestContext`` is threaded through the guards in order. Each guard
returns ``Proceed`` with a (possibly enriched) context or ``Reject`` with the
error to surface; evaluation stops at the first rejection. Nothing is stored
in process-wide state.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Optional, Sequence, Union

from teamgate.logging import get_logger
from teamgate.service.errors import (
    AuthenticationError,
    NotTeamAdmin,
    NotTeamMember,
    ServiceError,
    TokenNotProvided,
)
from teamgate.service.membership import MembershipRegistry
from teamgate.service.tokens import TokenManager
from teamgate.storage.models import Membership, User

logger = get_logger(__name__)


@dataclass(frozen=True)
class RequestContext:
    authorization: Optional[str] = None
    team_id: Optional[str] = None
    token: Optional[str] = None
    principal: Optional[User] = None
    membership: Optional[Membership] = None


@dataclass(frozen=True)
class Proceed:
    context: RequestContext


@dataclass(frozen=True)
class Reject:
    error: ServiceError


Outcome = Union[Proceed, Reject]
Guard = Callable[["AuthorizationGuard", RequestContext], Awaitable[Outcome]]


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


async def require_bearer(guard: "AuthorizationGuard", ctx: RequestContext) -> Outcome:
    token = extract_bearer(ctx.authorization)
    if token is None:
        return Reject(TokenNotProvided())
    return Proceed(replace(ctx, token=token))


async def authenticate(guard: "AuthorizationGuard", ctx: RequestContext) -> Outcome:
    if ctx.token is None:
        return Reject(TokenNotProvided())
    try:
        principal = await guard.tokens.validate(ctx.token)
    except AuthenticationError as exc:
        return Reject(exc)
    return Proceed(replace(ctx, principal=principal))


async def require_team_member(guard: "AuthorizationGuard", ctx: RequestContext) -> Outcome:
    if ctx.principal is None or ctx.team_id is None:
        return Reject(NotTeamMember())
    membership = guard.memberships.get_membership(ctx.team_id, ctx.principal.id)
    if membership is None:
        return Reject(NotTeamMember())
    return Proceed(replace(ctx, membership=membership))


async def require_team_admin(guard: "AuthorizationGuard", ctx: RequestContext) -> Outcome:
    membership = ctx.membership
    if membership is None and ctx.principal is not None and ctx.team_id is not None:
        membership = guard.memberships.get_membership(ctx.team_id, ctx.principal.id)
    if membership is None or not membership.role.has_admin_rights():
        return Reject(NotTeamAdmin())
    return Proceed(replace(ctx, membership=membership))


AUTHENTICATED: tuple[Guard, ...] = (require_bearer, authenticate)
TEAM_MEMBER: tuple[Guard, ...] = AUTHENTICATED + (require_team_member,)
TEAM_ADMIN: tuple[Guard, ...] = TEAM_MEMBER + (require_team_admin,)


class AuthorizationGuard:
    """Runs guard pipelines against the token manager and membership registry."""

    def __init__(self, tokens: TokenManager, memberships: MembershipRegistry) -> None:
        self.tokens = tokens
        self.memberships = memberships

    async def evaluate(self, pipeline: Sequence[Guard], ctx: RequestContext) -> Outcome:
        for step in pipeline:
            outcome = await step(self, ctx)
            if isinstance(outcome, Reject):
                logger.info(
                    "request_rejected",
                    guard=step.__name__,
                    error_code=outcome.error.error_code,
                    team_id=ctx.team_id,
                )
                return outcome
            ctx = outcome.context
        return Proceed(ctx)

    async def check(self, pipeline: Sequence[Guard], ctx: RequestContext) -> RequestContext:
        """Like ``evaluate`` but raises the rejection's error."""
        outcome = await self.evaluate(pipeline, ctx)
        if isinstance(outcome, Reject):
            raise outcome.error
        return outcome.context


__all__ = [
    "AUTHENTICATED",
    "TEAM_ADMIN",
    "TEAM_MEMBER",
    "AuthorizationGuard",
    "Guard",
    "Outcome",
    "Proceed",
    "Reject",
    "RequestContext",
    "authenticate",
    "extract_bearer",
    "require_bearer",
    "require_team_admin",
    "require_team_member",
]
