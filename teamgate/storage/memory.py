from __future__ import annotations

import threading
import time
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from teamgate.logging import get_logger
from teamgate.storage.errors import ConstraintViolation
from teamgate.storage.models import (
    ActivityEntry,
    Invitation,
    Membership,
    Team,
    TeamRole,
    User,
    utcnow,
)


class MemoryStore:
    """In-process backing store for development and tests.

    Every read and write takes ``_data_lock`` so compound operations such as
    invitation acceptance are atomic with respect to other threads.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.teams: Dict[str, Team] = {}
        self.memberships: Dict[str, Membership] = {}
        self.invitations: Dict[str, Invitation] = {}
        self.activity: List[ActivityEntry] = []
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # users
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                role=role,
                is_active=is_active,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # teams
    def create_team(
        self,
        name: str,
        slug: str,
        owner_id: str,
        description: Optional[str] = None,
    ) -> Tuple[Team, Membership]:
        """Create a team together with its single active owner membership."""
        with self._data_lock:
            if owner_id not in self.users:
                raise ConstraintViolation("owner does not exist", {"user_id": owner_id})
            if self.get_team_by_slug(slug):
                raise ConstraintViolation("team slug already taken", {"field": "slug"})
            team = Team(
                id=str(uuid.uuid4()),
                name=name,
                slug=slug,
                owner_id=owner_id,
                description=description,
            )
            owner = Membership.new(team.id, owner_id, TeamRole.OWNER)
            self.teams[team.id] = team
            self.memberships[owner.id] = owner
            return team, owner

    def get_team(self, team_id: str) -> Optional[Team]:
        with self._data_lock:
            team = self.teams.get(team_id)
            return team if team and team.is_active else None

    def get_team_by_slug(self, slug: str) -> Optional[Team]:
        with self._data_lock:
            return next((t for t in self.teams.values() if t.slug == slug), None)

    def update_team(
        self,
        team_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Team]:
        with self._data_lock:
            team = self.get_team(team_id)
            if not team:
                return None
            if name is not None:
                team.name = name
            if description is not None:
                team.description = description
            return team

    def deactivate_team(self, team_id: str) -> bool:
        """Soft-delete a team. Memberships and invitations are left in place."""
        with self._data_lock:
            team = self.get_team(team_id)
            if not team:
                return False
            team.is_active = False
            return True

    def list_teams_for_user(self, user_id: str) -> List[Team]:
        with self._data_lock:
            team_ids = {
                m.team_id
                for m in self.memberships.values()
                if m.user_id == user_id and m.is_active
            }
            teams = [t for tid, t in self.teams.items() if tid in team_ids and t.is_active]
            return sorted(teams, key=lambda t: t.created_at)

    # memberships
    def get_active_membership(self, team_id: str, user_id: str) -> Optional[Membership]:
        with self._data_lock:
            return next(
                (
                    m
                    for m in self.memberships.values()
                    if m.team_id == team_id and m.user_id == user_id and m.is_active
                ),
                None,
            )

    def add_membership(
        self,
        team_id: str,
        user_id: str,
        role: TeamRole = TeamRole.MEMBER,
        invited_by: Optional[str] = None,
        *,
        joined_at: Optional[datetime] = None,
    ) -> Tuple[Membership, bool]:
        """Insert an active membership unless one exists; returns (row, created)."""
        with self._data_lock:
            existing = self.get_active_membership(team_id, user_id)
            if existing:
                return existing, False
            if team_id not in self.teams:
                raise ConstraintViolation("team does not exist", {"team_id": team_id})
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            membership = Membership.new(
                team_id, user_id, role, invited_by, joined_at=joined_at
            )
            self.memberships[membership.id] = membership
            return membership, True

    def deactivate_membership(self, team_id: str, user_id: str) -> bool:
        """Soft-deactivate a non-owner membership. Owner rows are never touched."""
        with self._data_lock:
            membership = self.get_active_membership(team_id, user_id)
            if not membership or membership.role == TeamRole.OWNER:
                return False
            membership.is_active = False
            return True

    def list_memberships(self, team_id: str, *, active_only: bool = True) -> List[Membership]:
        with self._data_lock:
            rows = [
                m
                for m in self.memberships.values()
                if m.team_id == team_id and (m.is_active or not active_only)
            ]
            return sorted(rows, key=lambda m: m.joined_at)

    # invitations
    def find_open_invitation(
        self, team_id: str, email: str, now: datetime
    ) -> Optional[Invitation]:
        with self._data_lock:
            candidates = [
                inv
                for inv in self.invitations.values()
                if inv.team_id == team_id and inv.email == email and inv.is_valid(now)
            ]
            if not candidates:
                return None
            return max(candidates, key=lambda inv: inv.created_at)

    def create_invitation(
        self,
        team_id: str,
        email: str,
        invited_by: str,
        token: str,
        expires_at: datetime,
    ) -> Invitation:
        with self._data_lock:
            if token in self.invitations:
                raise ConstraintViolation("invitation token collision", {"field": "token"})
            if team_id not in self.teams:
                raise ConstraintViolation("team does not exist", {"team_id": team_id})
            invitation = Invitation(
                id=str(uuid.uuid4()),
                team_id=team_id,
                email=email,
                invited_by=invited_by,
                token=token,
                expires_at=expires_at,
            )
            self.invitations[token] = invitation
            return invitation

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        with self._data_lock:
            return self.invitations.get(token)

    def accept_invitation(
        self, token: str, email: str, user_id: str, now: datetime
    ) -> Optional[Tuple[Invitation, Membership]]:
        """Mark the invitation used and add the membership as one unit.

        Returns None when the invitation is missing, addressed to another
        email, already used or expired; in that case nothing is written.
        """
        with self._data_lock:
            invitation = self.invitations.get(token)
            if not invitation or invitation.email != email or not invitation.is_valid(now):
                return None
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            membership, _ = self.add_membership(
                invitation.team_id,
                user_id,
                TeamRole.MEMBER,
                invitation.invited_by,
                joined_at=now,
            )
            invitation.is_used = True
            invitation.accepted_at = now
            return invitation, membership

    # activity
    def record_activity(self, entry: ActivityEntry) -> ActivityEntry:
        with self._data_lock:
            self.activity.append(entry)
            return entry

    def list_activity(
        self, *, team_id: Optional[str] = None, limit: int = 100
    ) -> List[ActivityEntry]:
        with self._data_lock:
            rows = [e for e in self.activity if team_id is None or e.team_id == team_id]
            return sorted(rows, key=lambda e: e.created_at, reverse=True)[:limit]


class MemoryCache:
    """Process-local stand-in for Redis with lazy TTL expiry.

    Only the ``set``/``exists`` surface used by the revocation store is
    provided. ``clock`` returns epoch seconds and is injectable for tests.
    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.time
        self._entries: Dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _live(self, key: str, now: float) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry[1] <= now:
            self._entries.pop(key, None)
            return False
        return True

    async def set(
        self, key: str, value: str, ttl_seconds: int, *, only_if_absent: bool = False
    ) -> bool:
        with self._lock:
            now = self._clock()
            if only_if_absent and self._live(key, now):
                return False
            self._entries[key] = (value, now + max(1, int(ttl_seconds)))
            return True

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key, self._clock())

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()


__all__ = ["MemoryStore", "MemoryCache", "utcnow"]
