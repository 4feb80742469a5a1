from __future__ import annotations

import asyncio
import hashlib
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from credcore.config import Settings
from credcore.logging import get_logger
from credcore.service.errors import RateLimitedError
from credcore.storage.models import Clock, utc_now
from credcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_DEFAULT_WINDOW_SECONDS = 60
# Expired local windows are swept once the table grows past this size
_LOCAL_SWEEP_THRESHOLD = 10_000


@dataclass(frozen=True)
class RatePolicy:
    limit: int
    window_seconds: int = _DEFAULT_WINDOW_SECONDS


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int
    retry_after: Optional[int] = None

    def headers(self) -> dict[str, str]:
        if self.limit <= 0:
            return {}
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def policies_from_settings(settings: Settings) -> Dict[str, RatePolicy]:
    window = settings.rate_limit_window_seconds
    return {
        "login": RatePolicy(settings.login_rate_limit_per_minute, window),
        "register": RatePolicy(settings.register_rate_limit_per_minute, window),
        "oauth_authorize": RatePolicy(
            settings.oauth_authorize_rate_limit_per_minute, window
        ),
        "oauth_callback": RatePolicy(
            settings.oauth_callback_rate_limit_per_minute, window
        ),
        "refresh": RatePolicy(settings.refresh_rate_limit_per_minute, window),
        "password_change": RatePolicy(
            settings.password_change_rate_limit,
            settings.password_change_rate_limit_window_seconds,
        ),
        "password_forgot": RatePolicy(
            settings.password_forgot_rate_limit_per_minute, window
        ),
        "password_reset_verify": RatePolicy(
            settings.password_reset_verify_rate_limit_per_minute, window
        ),
        "password_reset": RatePolicy(
            settings.password_reset_rate_limit_per_minute, window
        ),
        "two_factor": RatePolicy(settings.two_factor_rate_limit_per_minute, window),
    }


class RateLimiter:
    """Fixed-window request counter per (endpoint class, client identifier).

    Redis is used when configured; otherwise counts live in a process-local
    table guarded by an ``asyncio.Lock``. Identifiers are hashed before they
    become keys on either path.
    """

    def __init__(
        self,
        cache: Optional[RedisCache],
        policies: Dict[str, RatePolicy],
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.cache = cache
        self.policies = dict(policies)
        self._clock = clock or utc_now
        self._local_windows: Dict[str, tuple[datetime, int]] = {}
        self._local_lock = asyncio.Lock()

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _local_key(endpoint_class: str, identifier: str) -> str:
        digest = hashlib.sha256(identifier.encode()).hexdigest()
        return f"rate:{endpoint_class}:{digest}"

    def policy_for(self, endpoint_class: str) -> RatePolicy:
        try:
            return self.policies[endpoint_class]
        except KeyError:
            raise ValueError(f"unknown rate limit class: {endpoint_class}") from None

    async def check_and_increment(
        self, identifier: str, endpoint_class: str
    ) -> RateLimitResult:
        policy = self.policy_for(endpoint_class)
        limit = policy.limit
        window_seconds = policy.window_seconds
        if limit <= 0:
            return RateLimitResult(allowed=True, limit=limit, remaining=0, reset_seconds=0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                endpoint_class=endpoint_class,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = _DEFAULT_WINDOW_SECONDS

        if self.cache:
            count, reset_seconds = await self.cache.increment_window(
                endpoint_class, identifier, window_seconds
            )
        else:
            count, reset_seconds = await self._increment_local(
                endpoint_class, identifier, window_seconds
            )

        allowed = count <= limit
        result = RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_seconds=reset_seconds,
            retry_after=None if allowed else min(max(1, reset_seconds), window_seconds),
        )
        if not allowed:
            logger.info(
                "rate_limited",
                endpoint_class=endpoint_class,
                retry_after=result.retry_after,
            )
        return result

    async def enforce(self, identifier: str, endpoint_class: str) -> RateLimitResult:
        """Count the request and raise :class:`RateLimitedError` when over limit."""
        result = await self.check_and_increment(identifier, endpoint_class)
        if not result.allowed:
            raise RateLimitedError(retry_after=result.retry_after, limit=result.limit)
        return result

    async def _increment_local(
        self, endpoint_class: str, identifier: str, window_seconds: int
    ) -> tuple[int, int]:
        key = self._local_key(endpoint_class, identifier)
        window = timedelta(seconds=window_seconds)
        async with self._local_lock:
            now = self._now()
            reset_at, count = self._local_windows.get(key, (now + window, 0))
            if now >= reset_at:
                reset_at, count = now + window, 0
            count += 1
            self._local_windows[key] = (reset_at, count)
            if len(self._local_windows) > _LOCAL_SWEEP_THRESHOLD:
                self._sweep_local(now)
        remaining = (reset_at - now).total_seconds()
        return count, max(1, math.ceil(remaining))

    def _sweep_local(self, now: datetime) -> None:
        stale = [key for key, (reset_at, _) in self._local_windows.items() if now >= reset_at]
        for key in stale:
            self._local_windows.pop(key, None)
