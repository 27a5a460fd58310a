from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from teamgate.logging import get_logger
from teamgate.service.activity import ActivityRecorder
from teamgate.service.errors import (
    AuthenticationError,
    InvalidCredentials,
    UserInactive,
)
from teamgate.service.invitations import normalize_email
from teamgate.service.tokens import TokenManager
from teamgate.storage.models import User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


class AuthService:
    """Password registration and login on top of the token manager."""

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenManager,
        activity: ActivityRecorder,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.activity = activity
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    async def register(
        self,
        email: str,
        password: str,
        name: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[User, str]:
        user = self.store.create_user(normalize_email(email), name)
        self.save_password(user.id, password)
        token = self.tokens.issue(user)
        self.activity.record(
            "user_registered",
            f"User '{user.name or user.id}' registered",
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return user, token

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[User, str]:
        user = self.store.get_user_by_email(normalize_email(email))
        if not user or not self.verify_password(user.id, password):
            self.logger.info("login_failed", reason="invalid_credentials")
            raise InvalidCredentials()
        if not user.is_active:
            raise UserInactive()
        token = self.tokens.issue(user)
        self.activity.record(
            "user_login",
            f"User '{user.name or user.id}' logged in",
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return user, token

    async def logout(self, token: str) -> None:
        """Revoke ``token``. Expired or malformed tokens are revoked too."""
        await self.tokens.invalidate(token)
        try:
            user_id = self.tokens.inspect(token)["sub"]
        except AuthenticationError:
            user_id = None
        self.activity.record("user_logout", "User logged out", user_id=user_id)

    async def refresh(self, token: str) -> str:
        new_token = await self.tokens.refresh(token)
        payload = self.tokens.inspect(new_token)
        self.activity.record(
            "token_refreshed", "Session token refreshed", user_id=payload["sub"]
        )
        return new_token


__all__ = ["AuthService", "AuthStore", "PASSWORD_ALGO"]
