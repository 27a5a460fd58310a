from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can switch on.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request could not be processed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""

    status_code = 401
    error_code = "unauthorized"
    default_message = "authentication required"


class TokenNotProvided(AuthenticationError):
    error_code = "token_not_provided"
    default_message = "JWT token not provided"


class TokenMalformed(AuthenticationError):
    error_code = "token_malformed"
    default_message = "JWT token is invalid"


class TokenExpired(AuthenticationError):
    error_code = "token_expired"
    default_message = "JWT token has expired"


class SignatureInvalid(AuthenticationError):
    error_code = "signature_invalid"
    default_message = "JWT token signature is invalid"


class TokenRevoked(AuthenticationError):
    error_code = "token_revoked"
    default_message = "JWT token has been revoked"


class UserNotFound(AuthenticationError):
    error_code = "user_not_found"
    default_message = "user not found"


class UserInactive(AuthenticationError):
    error_code = "user_inactive"
    default_message = "user account is inactive"


class InvalidCredentials(AuthenticationError):
    error_code = "invalid_credentials"
    default_message = "invalid email or password"


class TokenRefreshFailed(AuthenticationError):
    """Refresh rejected; ``reason`` says why (for example ``too_old``)."""

    error_code = "token_refresh_failed"
    default_message = "token cannot be refreshed"

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(message, detail={"reason": reason})
        self.reason = reason


class ForbiddenError(ServiceError):
    """Access denied, insufficient permissions (403)."""

    status_code = 403
    error_code = "forbidden"
    default_message = "access denied"


class NotTeamMember(ForbiddenError):
    error_code = "not_team_member"
    default_message = "You are not a member of this team"


class NotTeamAdmin(ForbiddenError):
    error_code = "not_team_admin"
    default_message = "You do not have admin rights for this team"


class OwnerCannotLeaveTeam(ForbiddenError):
    error_code = "owner_cannot_leave_team"
    default_message = "The team owner cannot leave the team"


class NotTeamOwner(ForbiddenError):
    error_code = "not_team_owner"
    default_message = "Only the team owner can delete the team"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""

    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class TeamNotFound(NotFoundError):
    error_code = "team_not_found"
    default_message = "Team not found"


class InvitationNotFound(NotFoundError):
    error_code = "invitation_not_found"
    default_message = "Team invitation not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate creation (409)."""

    status_code = 409
    error_code = "conflict"
    default_message = "conflict"


class AlreadyTeamMember(ConflictError):
    error_code = "already_team_member"
    default_message = "User is already a member of this team"


class GoneError(ServiceError):
    """The resource existed but can no longer be used (410)."""

    status_code = 410
    error_code = "gone"
    default_message = "resource is no longer available"


class InvitationExpired(GoneError):
    error_code = "invitation_expired"
    default_message = "Team invitation has expired"


class InvitationAlreadyUsed(GoneError):
    error_code = "invitation_already_used"
    default_message = "Team invitation has already been used"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "TokenNotProvided",
    "TokenMalformed",
    "TokenExpired",
    "SignatureInvalid",
    "TokenRevoked",
    "UserNotFound",
    "UserInactive",
    "InvalidCredentials",
    "TokenRefreshFailed",
    "ForbiddenError",
    "NotTeamMember",
    "NotTeamAdmin",
    "OwnerCannotLeaveTeam",
    "NotTeamOwner",
    "NotFoundError",
    "TeamNotFound",
    "InvitationNotFound",
    "ConflictError",
    "AlreadyTeamMember",
    "GoneError",
    "InvitationExpired",
    "InvitationAlreadyUsed",
]
