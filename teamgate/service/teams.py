from __future__ import annotations

import re
import secrets
from typing import List, Optional, Protocol, Tuple

from teamgate.logging import get_logger
from teamgate.service.activity import ActivityRecorder
from teamgate.service.errors import (
    AlreadyTeamMember,
    NotTeamOwner,
    OwnerCannotLeaveTeam,
    TeamNotFound,
)
from teamgate.service.invitations import InvitationService, normalize_email
from teamgate.service.membership import MembershipRegistry
from teamgate.storage.errors import ConstraintViolation
from teamgate.storage.models import Invitation, Membership, Team, TeamRole, User

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    slug = _SLUG_STRIP.sub("-", name.strip().lower()).strip("-")
    return slug or "team"


class TeamStore(Protocol):
    def create_team(
        self,
        name: str,
        slug: str,
        owner_id: str,
        description: Optional[str] = None,
    ) -> Tuple[Team, Membership]: ...

    def get_team(self, team_id: str) -> Optional[Team]: ...

    def get_team_by_slug(self, slug: str) -> Optional[Team]: ...

    def update_team(
        self,
        team_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Team]: ...

    def deactivate_team(self, team_id: str) -> bool: ...

    def list_teams_for_user(self, user_id: str) -> List[Team]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]: ...


class TeamService:
    """Team lifecycle plus the invite, join and leave workflows."""

    def __init__(
        self,
        store: TeamStore,
        memberships: MembershipRegistry,
        invitations: InvitationService,
        activity: ActivityRecorder,
    ) -> None:
        self.store = store
        self.memberships = memberships
        self.invitations = invitations
        self.activity = activity
        self.logger = get_logger(__name__)

    def _unique_slug(self, name: str) -> str:
        base = slugify(name)
        slug = base
        while self.store.get_team_by_slug(slug):
            slug = f"{base}-{secrets.token_hex(3)}"
        return slug

    def create_team(
        self,
        name: str,
        owner: User,
        *,
        slug: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Team:
        """Create a team whose single owner is ``owner``.

        An explicit slug that is already taken raises ConstraintViolation;
        a derived slug gets a random suffix instead.
        """
        team, _ = self.store.create_team(
            name, slug or self._unique_slug(name), owner.id, description
        )
        self.activity.record(
            "team_created",
            f"Team '{team.name}' was created",
            user_id=owner.id,
            team_id=team.id,
        )
        return team

    def get_team(self, team_id: str) -> Team:
        team = self.store.get_team(team_id)
        if team is None:
            raise TeamNotFound()
        return team

    def list_for_user(self, user: User) -> List[Team]:
        return self.store.list_teams_for_user(user.id)

    def update_team(
        self,
        team_id: str,
        actor: User,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Team:
        team = self.store.update_team(team_id, name=name, description=description)
        if team is None:
            raise TeamNotFound()
        self.activity.record(
            "team_updated",
            f"Team '{team.name}' was updated",
            user_id=actor.id,
            team_id=team.id,
            metadata={k: v for k, v in {"name": name, "description": description}.items() if v is not None},
        )
        return team

    def delete_team(self, team_id: str, actor: User) -> None:
        """Soft-delete a team. Only its owner may do this."""
        team = self.get_team(team_id)
        if actor.id != team.owner_id:
            raise NotTeamOwner()
        if not self.store.deactivate_team(team.id):
            raise TeamNotFound()
        self.activity.record(
            "team_deleted",
            f"Team '{team.name}' was deleted",
            user_id=actor.id,
            team_id=team.id,
        )

    def list_members(self, team_id: str) -> List[tuple[Membership, Optional[User]]]:
        self.get_team(team_id)
        return [(m, self.store.get_user(m.user_id)) for m in self.memberships.list_members(team_id)]

    def invite(self, team_id: str, email: str, inviter: User) -> Invitation:
        team = self.get_team(team_id)
        email = normalize_email(email)
        invitee = self.store.get_user_by_email(email)
        if invitee and self.memberships.is_member(team.id, invitee.id):
            raise AlreadyTeamMember()
        invitation = self.invitations.invite(team.id, email, inviter.id)
        self.activity.record(
            "user_invited",
            f"A user was invited to team '{team.name}'",
            user_id=inviter.id,
            team_id=team.id,
            metadata={"invitation_id": invitation.id},
        )
        return invitation

    def join(self, token: str, user: User) -> Team:
        pending = self.store.get_invitation_by_token(token)
        if pending is not None and pending.email == normalize_email(user.email):
            self.get_team(pending.team_id)
        invitation = self.invitations.redeem(token, user)
        team = self.get_team(invitation.team_id)
        self.activity.record(
            "user_joined",
            f"User '{user.name or user.id}' joined team '{team.name}'",
            user_id=user.id,
            team_id=team.id,
        )
        return team

    def leave(self, team_id: str, user: User) -> None:
        membership = self.memberships.get_membership(team_id, user.id)
        if membership is not None and membership.role == TeamRole.OWNER:
            raise OwnerCannotLeaveTeam()
        if not self.memberships.remove_member(team_id, user.id):
            raise ConstraintViolation("membership already inactive", {"team_id": team_id})
        self.activity.record(
            "user_left",
            f"User '{user.name or user.id}' left the team",
            user_id=user.id,
            team_id=team_id,
        )


__all__ = ["TeamService", "TeamStore", "slugify"]
