from __future__ import annotations

import secrets
import string
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol, Tuple

from teamgate.logging import get_logger
from teamgate.service.errors import (
    InvitationAlreadyUsed,
    InvitationExpired,
    InvitationNotFound,
    ServiceError,
)
from teamgate.storage.errors import ConstraintViolation
from teamgate.storage.models import Invitation, Membership, User, utcnow

INVITATION_TOKEN_LENGTH = 40
_TOKEN_ALPHABET = string.ascii_letters + string.digits
_TOKEN_ATTEMPTS = 3


def generate_invitation_token() -> str:
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(INVITATION_TOKEN_LENGTH))


def normalize_email(email: str) -> str:
    return email.strip().lower()


class InvitationStore(Protocol):
    def find_open_invitation(
        self, team_id: str, email: str, now: datetime
    ) -> Optional[Invitation]: ...

    def create_invitation(
        self,
        team_id: str,
        email: str,
        invited_by: str,
        token: str,
        expires_at: datetime,
    ) -> Invitation: ...

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]: ...

    def accept_invitation(
        self, token: str, email: str, user_id: str, now: datetime
    ) -> Optional[Tuple[Invitation, Membership]]: ...


class InvitationService:
    """Time-boxed team invitations that turn into memberships on acceptance."""

    def __init__(
        self,
        store: InvitationStore,
        *,
        ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
        token_factory: Callable[[], str] = generate_invitation_token,
        logger=None,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock
        self._token_factory = token_factory
        self.logger = logger or get_logger(__name__)

    def invite(self, team_id: str, email: str, inviter_id: str) -> Invitation:
        """Return the open invitation for (team, email), creating one if needed."""
        email = normalize_email(email)
        now = self._clock()
        existing = self.store.find_open_invitation(team_id, email, now)
        if existing:
            return existing
        for attempt in range(_TOKEN_ATTEMPTS):
            try:
                invitation = self.store.create_invitation(
                    team_id, email, inviter_id, self._token_factory(), now + self.ttl
                )
            except ConstraintViolation as exc:
                if exc.detail.get("field") != "token" or attempt == _TOKEN_ATTEMPTS - 1:
                    raise
                self.logger.warning("invitation_token_collision", team_id=team_id)
                continue
            self.logger.info(
                "invitation_created",
                team_id=team_id,
                invitation_id=invitation.id,
                invited_by=inviter_id,
            )
            return invitation
        raise ConstraintViolation("invitation token collision", {"field": "token"})

    def redeem(self, token: str, principal: User) -> Invitation:
        """Accept an invitation or raise the reason it cannot be accepted."""
        email = normalize_email(principal.email)
        invitation = self.store.get_invitation_by_token(token)
        if invitation is None or invitation.email != email:
            raise InvitationNotFound()
        now = self._clock()
        if invitation.is_used:
            raise InvitationAlreadyUsed()
        if invitation.is_expired(now):
            raise InvitationExpired()
        accepted = self.store.accept_invitation(token, email, principal.id, now)
        if accepted is None:
            # Another caller consumed it between the read and the conditional update
            raise InvitationAlreadyUsed()
        invitation, membership = accepted
        self.logger.info(
            "invitation_accepted",
            team_id=invitation.team_id,
            invitation_id=invitation.id,
            user_id=principal.id,
            membership_id=membership.id,
        )
        return invitation

    def accept(self, token: str, principal: User) -> bool:
        try:
            self.redeem(token, principal)
        except ServiceError as exc:
            self.logger.info("invitation_rejected", reason=exc.error_code)
            return False
        return True


__all__ = [
    "INVITATION_TOKEN_LENGTH",
    "InvitationService",
    "InvitationStore",
    "generate_invitation_token",
    "normalize_email",
]
