from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request

from teamgate.api.deps import (
    bearer_token,
    client_meta,
    require_admin,
    require_member,
    require_user,
)
from teamgate.api.schemas import (
    InvitationResponse,
    InviteRequest,
    JoinTeamRequest,
    LoginRequest,
    MemberListResponse,
    MemberResponse,
    MessageResponse,
    RegisterRequest,
    TeamCreateRequest,
    TeamListResponse,
    TeamResponse,
    TeamUpdateRequest,
    TokenResponse,
    UserResponse,
)
from teamgate.config import get_settings
from teamgate.logging import get_logger
from teamgate.service.errors import ForbiddenError
from teamgate.service.guard import RequestContext
from teamgate.service.runtime import get_runtime
from teamgate.storage.models import Team, TeamRole, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        is_active=user.is_active,
        created_at=user.created_at,
    )


def _token_response(token: str, user: Optional[User] = None) -> TokenResponse:
    runtime = get_runtime()
    return TokenResponse(
        access_token=token,
        expires_in=runtime.tokens.ttl_seconds,
        user=_user_response(user) if user else None,
    )


def _team_response(team: Team, role: Optional[TeamRole] = None) -> TeamResponse:
    return TeamResponse(
        id=team.id,
        name=team.name,
        slug=team.slug,
        description=team.description,
        owner_id=team.owner_id,
        created_at=team.created_at,
        role=role.value if role else None,
    )


# auth
@router.post("/auth/register", response_model=TokenResponse, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account and return a session token for it.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
    """
    settings = get_settings()
    if not settings.allow_signup:
        raise ForbiddenError("signup is disabled", error_code="signup_disabled")
    runtime = get_runtime()
    user, token = await runtime.auth.register(
        body.email, body.password, body.name, **client_meta(request)
    )
    return _token_response(token, user)


@router.post("/auth/login", response_model=TokenResponse, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    user, token = await runtime.auth.login(
        body.email, body.password, **client_meta(request)
    )
    return _token_response(token, user)


@router.post("/auth/logout", response_model=MessageResponse, tags=["auth"])
async def logout(token: str = Depends(bearer_token)):
    runtime = get_runtime()
    await runtime.auth.logout(token)
    return MessageResponse(message="Successfully logged out")


@router.post("/auth/refresh", response_model=TokenResponse, tags=["auth"])
async def refresh(token: str = Depends(bearer_token)):
    """Exchange the presented token for a new one.

    The presented token may already be expired as long as it is inside the
    refresh window; it is revoked once the new token is issued.
    """
    runtime = get_runtime()
    new_token = await runtime.auth.refresh(token)
    return _token_response(new_token)


@router.get("/auth/profile", response_model=UserResponse, tags=["auth"])
async def profile(ctx: RequestContext = Depends(require_user)):
    return _user_response(ctx.principal)


# teams
@router.get("/teams", response_model=TeamListResponse, tags=["teams"])
async def list_teams(ctx: RequestContext = Depends(require_user)):
    runtime = get_runtime()
    items = []
    for team in runtime.teams.list_for_user(ctx.principal):
        membership = runtime.memberships.get_membership(team.id, ctx.principal.id)
        items.append(_team_response(team, membership.role if membership else None))
    return TeamListResponse(items=items)


@router.post("/teams", response_model=TeamResponse, status_code=201, tags=["teams"])
async def create_team(body: TeamCreateRequest, ctx: RequestContext = Depends(require_user)):
    runtime = get_runtime()
    team = runtime.teams.create_team(
        body.name, ctx.principal, slug=body.slug, description=body.description
    )
    return _team_response(team, TeamRole.OWNER)


@router.post("/teams/join", response_model=TeamResponse, tags=["teams"])
async def join_team(body: JoinTeamRequest, ctx: RequestContext = Depends(require_user)):
    """Accept an invitation addressed to the caller's email.

    Raises:
        404: Unknown token or addressed to another email
        410: Invitation expired or already used
    """
    runtime = get_runtime()
    team = runtime.teams.join(body.token, ctx.principal)
    return _team_response(team, TeamRole.MEMBER)


@router.get("/teams/{team_id}", response_model=TeamResponse, tags=["teams"])
async def get_team(team_id: str, ctx: RequestContext = Depends(require_member)):
    runtime = get_runtime()
    team = runtime.teams.get_team(team_id)
    return _team_response(team, ctx.membership.role)


@router.patch("/teams/{team_id}", response_model=TeamResponse, tags=["teams"])
async def update_team(
    team_id: str, body: TeamUpdateRequest, ctx: RequestContext = Depends(require_admin)
):
    runtime = get_runtime()
    team = runtime.teams.update_team(
        team_id, ctx.principal, name=body.name, description=body.description
    )
    return _team_response(team, ctx.membership.role)


@router.delete("/teams/{team_id}", response_model=MessageResponse, tags=["teams"])
async def delete_team(team_id: str, ctx: RequestContext = Depends(require_member)):
    """Soft-delete the team.

    Raises:
        403: If the caller is not the team owner
        404: If the team does not exist or is already deleted
    """
    runtime = get_runtime()
    runtime.teams.delete_team(team_id, ctx.principal)
    return MessageResponse(message="Team deleted")


@router.get("/teams/{team_id}/members", response_model=MemberListResponse, tags=["teams"])
async def list_members(team_id: str, ctx: RequestContext = Depends(require_member)):
    runtime = get_runtime()
    items = [
        MemberResponse(
            user_id=membership.user_id,
            email=user.email if user else None,
            name=user.name if user else None,
            role=membership.role.value,
            role_label=membership.role.label(),
            joined_at=membership.joined_at,
        )
        for membership, user in runtime.teams.list_members(team_id)
    ]
    return MemberListResponse(items=items)


@router.post(
    "/teams/{team_id}/invite",
    response_model=InvitationResponse,
    status_code=201,
    tags=["teams"],
)
async def invite(team_id: str, body: InviteRequest, ctx: RequestContext = Depends(require_admin)):
    """Invite an email address to the team; repeated calls return the open invitation."""
    runtime = get_runtime()
    invitation = runtime.teams.invite(team_id, body.email, ctx.principal)
    return InvitationResponse(
        invitation_token=invitation.token, expires_at=invitation.expires_at
    )


@router.delete("/teams/{team_id}/leave", response_model=MessageResponse, tags=["teams"])
async def leave_team(team_id: str, ctx: RequestContext = Depends(require_member)):
    runtime = get_runtime()
    runtime.teams.leave(team_id, ctx.principal)
    return MessageResponse(message="Successfully left the team")


__all__ = ["router"]
