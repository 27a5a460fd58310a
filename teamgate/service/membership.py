from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Protocol, Tuple

from teamgate.logging import get_logger
from teamgate.storage.models import Membership, TeamRole, utcnow


class MembershipStore(Protocol):
    def get_active_membership(self, team_id: str, user_id: str) -> Optional[Membership]: ...

    def add_membership(
        self,
        team_id: str,
        user_id: str,
        role: TeamRole = TeamRole.MEMBER,
        invited_by: Optional[str] = None,
        *,
        joined_at: Optional[datetime] = None,
    ) -> Tuple[Membership, bool]: ...

    def deactivate_membership(self, team_id: str, user_id: str) -> bool: ...

    def list_memberships(self, team_id: str, *, active_only: bool = True) -> List[Membership]: ...


class MembershipRegistry:
    """Active (team, user, role) rows. Owners can never be removed."""

    def __init__(
        self,
        store: MembershipStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        logger=None,
    ) -> None:
        self.store = store
        self._clock = clock
        self.logger = logger or get_logger(__name__)

    def add_member(
        self,
        team_id: str,
        user_id: str,
        role: TeamRole = TeamRole.MEMBER,
        invited_by: Optional[str] = None,
    ) -> bool:
        """Ensure an active membership exists; True when a row was inserted."""
        _, created = self.store.add_membership(
            team_id, user_id, TeamRole(role), invited_by, joined_at=self._clock()
        )
        if created:
            self.logger.info(
                "team_member_added", team_id=team_id, user_id=user_id, role=TeamRole(role).value
            )
        return created

    def remove_member(self, team_id: str, user_id: str) -> bool:
        membership = self.store.get_active_membership(team_id, user_id)
        if membership is None:
            return False
        if membership.role == TeamRole.OWNER:
            self.logger.warning("team_owner_removal_refused", team_id=team_id, user_id=user_id)
            return False
        removed = self.store.deactivate_membership(team_id, user_id)
        if removed:
            self.logger.info("team_member_removed", team_id=team_id, user_id=user_id)
        return removed

    def get_membership(self, team_id: str, user_id: str) -> Optional[Membership]:
        return self.store.get_active_membership(team_id, user_id)

    def is_member(self, team_id: str, user_id: str) -> bool:
        return self.get_membership(team_id, user_id) is not None

    def is_admin(self, team_id: str, user_id: str) -> bool:
        membership = self.get_membership(team_id, user_id)
        return membership is not None and membership.role.has_admin_rights()

    def list_members(self, team_id: str) -> List[Membership]:
        return self.store.list_memberships(team_id)


__all__ = ["MembershipRegistry", "MembershipStore"]
