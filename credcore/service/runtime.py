from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from credcore.config import get_settings, reset_settings_cache
from credcore.logging import get_logger
from credcore.service.auth import AuthService
from credcore.service.lockout import AccountLockoutGuard, LockoutPolicy
from credcore.service.mfa import TwoFactorService
from credcore.service.oauth import OAuthFederator
from credcore.service.rate_limit import RateLimiter, policies_from_settings
from credcore.service.sessions import SessionManager
from credcore.service.tokens import TokenService
from credcore.storage.memory import MemoryStore
from credcore.storage.models import Clock
from credcore.storage.postgres import PostgresStore
from credcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, clock: Optional[Clock] = None):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
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

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and OAuth state; start Redis or set "
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
                    f"Running without Redis under {fallback_mode}; rate limit windows, reset tokens and "
                    "OAuth state are process-local only."
                ),
                mode=fallback_mode,
            )

        self.tokens = TokenService(self.settings, clock=clock)
        self.sessions = SessionManager(self.store, self.settings, clock=clock)
        self.lockout = AccountLockoutGuard(
            self.store,
            policy=LockoutPolicy.from_settings(self.settings),
            clock=clock,
        )
        self.rate_limiter = RateLimiter(
            self.cache, policies_from_settings(self.settings), clock=clock
        )
        self.two_factor = TwoFactorService(self.store, self.settings, clock=clock)
        self.auth = AuthService(
            self.store,
            self.settings,
            sessions=self.sessions,
            tokens=self.tokens,
            lockout=self.lockout,
            cache=self.cache,
            two_factor=self.two_factor,
            clock=clock,
        )
        self.oauth = OAuthFederator(
            self.store,
            self.cache,
            self.settings,
            self.sessions,
            self.tokens,
            clock=clock,
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            environment=self.settings.environment,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked under a lock)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(clock: Optional[Clock] = None) -> Runtime:
    """Rebuild the runtime from a fresh settings read; only allowed in TEST_MODE."""
    global runtime
    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.cache.close())
            else:
                loop.create_task(runtime.cache.close())
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(clock=clock)
        return runtime
