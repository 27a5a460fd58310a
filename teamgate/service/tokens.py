from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from teamgate.config import Settings, SigningAlgorithm
from teamgate.logging import get_logger
from teamgate.service.errors import (
    SignatureInvalid,
    TokenExpired,
    TokenMalformed,
    TokenRefreshFailed,
    TokenRevoked,
    UserInactive,
    UserNotFound,
)
from teamgate.service.revocation import RevocationStore
from teamgate.storage.models import User, utcnow

_DIGESTS = {
    SigningAlgorithm.HS256: hashlib.sha256,
    SigningAlgorithm.HS384: hashlib.sha384,
    SigningAlgorithm.HS512: hashlib.sha512,
}

_NUMERIC_CLAIMS = ("iat", "exp", "nbf")


class PrincipalStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


class TokenManager:
    """Issues, verifies, refreshes and revokes signed session tokens.

    Tokens are compact HMAC-signed JWTs. Verification order is structure,
    signature, time window, revocation and finally the principal record, so
    the first failing step decides the error a caller sees.
    """

    def __init__(
        self,
        secret: str,
        issuer: str,
        principals: PrincipalStore,
        revocations: RevocationStore,
        *,
        algorithm: SigningAlgorithm = SigningAlgorithm.HS256,
        ttl_seconds: int = 3600,
        refresh_window_seconds: int = 20160 * 60,
        leeway_seconds: int = 0,
        clock: Callable[[], datetime] = utcnow,
        logger=None,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.principals = principals
        self.revocations = revocations
        self.algorithm = SigningAlgorithm(algorithm)
        self.ttl_seconds = ttl_seconds
        self.refresh_window_seconds = refresh_window_seconds
        self.leeway_seconds = leeway_seconds
        self._clock = clock
        self.logger = logger or get_logger(__name__)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        principals: PrincipalStore,
        revocations: RevocationStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> "TokenManager":
        return cls(
            settings.jwt_secret or "",
            settings.app_url,
            principals,
            revocations,
            algorithm=settings.jwt_algorithm,
            ttl_seconds=settings.token_ttl_seconds,
            refresh_window_seconds=settings.refresh_window_seconds,
            leeway_seconds=settings.jwt_leeway_seconds,
            clock=clock,
        )

    def _now_ts(self) -> int:
        return int(self._clock().timestamp())

    # wire format
    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self._secret, signing_input.encode(), _DIGESTS[self.algorithm]
        ).digest()
        return self._encode_segment(digest)

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": self.algorithm.value, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str, *, check_exp: bool) -> dict[str, Any]:
        if not isinstance(token, str) or token.count(".") != 2:
            raise TokenMalformed()
        header_b64, payload_b64, sig_b64 = token.split(".")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            self.logger.warning("jwt_header_decode_failed")
            raise TokenMalformed()
        if not isinstance(header, dict):
            raise TokenMalformed()
        # Only the configured algorithm is accepted, whatever the header claims
        if header.get("alg") != self.algorithm.value:
            self.logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise SignatureInvalid()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise SignatureInvalid()

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenMalformed()
        if not isinstance(payload, dict):
            raise TokenMalformed()
        for claim in _NUMERIC_CLAIMS:
            value = payload.get(claim)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise TokenMalformed(f"JWT token is missing the {claim} claim")
        if not isinstance(payload.get("sub"), str) or not payload["sub"]:
            raise TokenMalformed("JWT token is missing the sub claim")
        if payload.get("iss") != self.issuer:
            raise TokenMalformed("JWT token issuer mismatch")

        now = self._now_ts()
        if payload["nbf"] - self.leeway_seconds > now:
            raise TokenMalformed("JWT token is not yet valid")
        if check_exp and now >= payload["exp"] + self.leeway_seconds:
            raise TokenExpired()
        return payload

    # public operations
    @staticmethod
    def fingerprint(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    def issue(self, principal: User) -> str:
        now = self._now_ts()
        payload = {
            "iss": self.issuer,
            "sub": principal.id,
            "iat": now,
            "exp": now + self.ttl_seconds,
            "nbf": now,
            "jti": uuid.uuid4().hex,
            "user": {
                "id": principal.id,
                "email": principal.email,
                "role": principal.role,
            },
        }
        return self._encode(payload)

    def inspect(self, token: str) -> dict[str, Any]:
        """Return the verified payload without enforcing the expiry."""
        return self._decode(token, check_exp=False)

    def _load_principal(self, subject: str) -> User:
        principal = self.principals.get_user(subject)
        if principal is None:
            raise UserNotFound()
        if not principal.is_active:
            raise UserInactive()
        return principal

    async def validate(self, token: str) -> User:
        payload = self._decode(token, check_exp=True)
        if await self.revocations.contains(self.fingerprint(token)):
            raise TokenRevoked()
        return self._load_principal(payload["sub"])

    async def refresh(self, token: str) -> str:
        """Exchange a token still inside its refresh window for a new one.

        The presented token is claimed in the revocation store before the new
        token is returned, so of two concurrent refreshes of the same token
        only one succeeds.
        """
        payload = self._decode(token, check_exp=False)
        age = self._now_ts() - payload["iat"]
        if age > self.refresh_window_seconds:
            raise TokenRefreshFailed("too_old", "token is past its refresh window")
        fingerprint = self.fingerprint(token)
        if await self.revocations.contains(fingerprint):
            raise TokenRevoked()
        principal = self._load_principal(payload["sub"])
        if not await self.revocations.claim(fingerprint, self.refresh_window_seconds):
            raise TokenRevoked()
        self.logger.info("token_refreshed", user_id=principal.id)
        return self.issue(principal)

    async def invalidate(self, token: str) -> None:
        await self.revocations.put(self.fingerprint(token), self.refresh_window_seconds)


__all__ = ["TokenManager", "PrincipalStore"]
