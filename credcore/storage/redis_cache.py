from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ResponseError

from credcore.storage.models import ensure_utc


class RedisCache:
    """Thin Redis wrapper for rate windows and one-time OAuth and reset records."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR then EXPIRE on the first hit of a window; a key that somehow lost its
    # TTL is re-armed so it can never pin a subject forever.
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local window = tonumber(ARGV[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], window)
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], window)
  ttl = window
end
return {count, ttl}
"""

    _GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime, now: Optional[datetime] = None) -> int:
        """Seconds until ``expires_at``, clamped to at least 1 for Redis."""
        expires_at = ensure_utc(expires_at)
        now = ensure_utc(now) if now is not None else datetime.now(timezone.utc)
        return max(1, int((expires_at - now).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(endpoint_class: str, identifier: str) -> str:
        """Hash the subject so raw IPs and emails never appear in key names."""
        digest = hashlib.sha256(identifier.encode()).hexdigest()
        return f"rate:{endpoint_class}:{digest}"

    async def increment_window(
        self, endpoint_class: str, identifier: str, window_seconds: int
    ) -> Tuple[int, int]:
        """Count one request in the current window.

        Returns ``(count, seconds_until_reset)``.
        """
        key = self._normalize_rate_key(endpoint_class, identifier)
        count, ttl = await self._fixed_window(keys=[key], args=[window_seconds])
        return int(count), max(1, int(ttl))

    @staticmethod
    def _decode_record(cached: Any) -> Optional[dict[str, Any]]:
        if cached is None:
            return None
        try:
            data = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(data, dict):
            return None

        expires_raw = data.get("expires_at")
        try:
            data["expires_at"] = ensure_utc(datetime.fromisoformat(expires_raw))
        except (ValueError, TypeError):
            # Unparseable expiry is treated as already expired
            data["expires_at"] = datetime.min.replace(tzinfo=timezone.utc)
        return data

    async def _set_record(
        self,
        key: str,
        payload: dict[str, Any],
        expires_at: datetime,
        now: Optional[datetime],
    ) -> None:
        expires_at = ensure_utc(expires_at)
        ttl = self._ttl_seconds(expires_at, now)
        record = {**payload, "expires_at": expires_at.isoformat()}
        await self.client.set(key, json.dumps(record), ex=ttl)

    async def _pop_record(self, key: str) -> Optional[dict[str, Any]]:
        """Atomically read and delete a one-time record.

        GETDEL needs Redis 6.2+; older servers reject it with an unknown
        command error and get the equivalent Lua script instead.
        """
        try:
            cached = await self.client.getdel(key)
        except ResponseError:
            cached = await self.client.eval(self._GETDEL_SCRIPT, 1, key)
        return self._decode_record(cached)

    async def set_oauth_state(
        self,
        state: str,
        payload: dict[str, Any],
        expires_at: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> None:
        await self._set_record(f"auth:oauth:{state}", payload, expires_at, now)

    async def pop_oauth_state(self, state: str) -> Optional[dict[str, Any]]:
        """Consume an OAuth state; two concurrent callbacks never both get it."""
        return await self._pop_record(f"auth:oauth:{state}")

    async def set_reset_token(
        self,
        token_hash: str,
        payload: dict[str, Any],
        expires_at: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> None:
        await self._set_record(f"auth:reset:{token_hash}", payload, expires_at, now)

    async def get_reset_token(self, token_hash: str) -> Optional[dict[str, Any]]:
        return self._decode_record(await self.client.get(f"auth:reset:{token_hash}"))

    async def pop_reset_token(self, token_hash: str) -> Optional[dict[str, Any]]:
        return await self._pop_record(f"auth:reset:{token_hash}")

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()
