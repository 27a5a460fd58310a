from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TeamRole(str, Enum):
    """Closed set of membership roles."""

    MEMBER = "member"
    ADMIN = "admin"
    OWNER = "owner"

    def label(self) -> str:
        return {
            TeamRole.MEMBER: "Member",
            TeamRole.ADMIN: "Administrator",
            TeamRole.OWNER: "Owner",
        }[self]

    def has_admin_rights(self) -> bool:
        return self in (TeamRole.ADMIN, TeamRole.OWNER)


def has_admin_rights(role: TeamRole | str) -> bool:
    return TeamRole(role).has_admin_rights()


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Team:
    id: str
    name: str
    slug: str
    owner_id: str
    description: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Membership:
    id: str
    team_id: str
    user_id: str
    role: TeamRole = TeamRole.MEMBER
    is_active: bool = True
    joined_at: datetime = field(default_factory=utcnow)
    invited_by: Optional[str] = None

    @classmethod
    def new(
        cls,
        team_id: str,
        user_id: str,
        role: TeamRole = TeamRole.MEMBER,
        invited_by: Optional[str] = None,
        *,
        joined_at: Optional[datetime] = None,
    ) -> "Membership":
        return cls(
            id=str(uuid.uuid4()),
            team_id=team_id,
            user_id=user_id,
            role=TeamRole(role),
            is_active=True,
            joined_at=joined_at or utcnow(),
            invited_by=invited_by,
        )


@dataclass
class Invitation:
    id: str
    team_id: str
    email: str
    invited_by: str
    token: str
    expires_at: datetime
    is_used: bool = False
    accepted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.is_used and not self.is_expired(now)


@dataclass
class ActivityEntry:
    id: str
    action: str
    description: str
    user_id: Optional[str] = None
    team_id: Optional[str] = None
    metadata: Dict | None = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
