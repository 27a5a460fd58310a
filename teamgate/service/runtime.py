from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from teamgate.config import Settings, get_settings, reset_settings_cache
from teamgate.logging import get_logger
from teamgate.service.activity import ActivityRecorder
from teamgate.service.auth import AuthService
from teamgate.service.guard import AuthorizationGuard
from teamgate.service.invitations import InvitationService
from teamgate.service.membership import MembershipRegistry
from teamgate.service.revocation import RevocationStore
from teamgate.service.teams import TeamService
from teamgate.service.tokens import TokenManager
from teamgate.storage.memory import MemoryCache, MemoryStore
from teamgate.storage.postgres import PostgresStore
from teamgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Union[RedisCache, SyncRedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to the test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for token revocation; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; revoked tokens are "
                    "tracked in process memory only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.activity = ActivityRecorder(self.store)
        self.revocations = RevocationStore(
            self.cache, fail_open=self.settings.revocation_fail_open
        )
        self.tokens = TokenManager.from_settings(
            self.settings, self.store, self.revocations
        )
        self.memberships = MembershipRegistry(self.store)
        self.invitations = InvitationService(
            self.store, ttl=timedelta(days=self.settings.invitation_ttl_days)
        )
        self.guard = AuthorizationGuard(self.tokens, self.memberships)
        self.auth = AuthService(self.store, self.tokens, self.activity)
        self.teams = TeamService(
            self.store, self.memberships, self.invitations, self.activity
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            cache_type=type(self.cache).__name__,
            jwt_algorithm=self.settings.jwt_algorithm.value,
            revocation_fail_open=self.settings.revocation_fail_open,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads building separate runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache) -> None:
    if isinstance(cache, RedisCache):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(cache.close())
        else:
            loop.create_task(cache.close())
    elif isinstance(cache, SyncRedisCache):
        cache._sync_client.close()


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            _close_cache(runtime.cache)
        reset_settings_cache()
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
