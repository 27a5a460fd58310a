from __future__ import annotations

from typing import Protocol

from teamgate.logging import get_logger
from teamgate.storage.errors import CacheUnavailable

_KEY_PREFIX = "auth:revoked:"


class RevocationCache(Protocol):
    async def set(
        self, key: str, value: str, ttl_seconds: int, *, only_if_absent: bool = False
    ) -> bool: ...

    async def exists(self, key: str) -> bool: ...


class RevocationStore:
    """Self-expiring set of revoked token fingerprints.

    Entries disappear when their TTL elapses, so the set never needs a
    sweeper. When the cache cannot be reached the store follows
    ``fail_open``: True treats every token as not revoked and lets claims
    through; False treats every token as revoked and refuses claims.
    """

    def __init__(self, cache: RevocationCache, *, fail_open: bool = True, logger=None) -> None:
        self.cache = cache
        self.fail_open = fail_open
        self.logger = logger or get_logger(__name__)

    @staticmethod
    def _key(fingerprint: str) -> str:
        return f"{_KEY_PREFIX}{fingerprint}"

    def _unavailable(self, operation: str, fingerprint: str, exc: Exception) -> None:
        self.logger.warning(
            "revocation_store_unavailable",
            operation=operation,
            fingerprint=fingerprint[:12],
            policy="fail_open" if self.fail_open else "fail_closed",
            error=str(exc),
        )

    async def put(self, fingerprint: str, ttl_seconds: int) -> None:
        try:
            await self.cache.set(self._key(fingerprint), "1", ttl_seconds)
        except CacheUnavailable as exc:
            self._unavailable("put", fingerprint, exc)

    async def claim(self, fingerprint: str, ttl_seconds: int) -> bool:
        """Record the fingerprint only if it is absent; True when this call won."""
        try:
            return await self.cache.set(
                self._key(fingerprint), "1", ttl_seconds, only_if_absent=True
            )
        except CacheUnavailable as exc:
            self._unavailable("claim", fingerprint, exc)
            return self.fail_open

    async def contains(self, fingerprint: str) -> bool:
        try:
            return await self.cache.exists(self._key(fingerprint))
        except CacheUnavailable as exc:
            self._unavailable("contains", fingerprint, exc)
            return not self.fail_open


__all__ = ["RevocationStore", "RevocationCache"]
