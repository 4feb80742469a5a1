import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from redis.exceptions import ResponseError

from credcore.storage.redis_cache import RedisCache

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _cache() -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://unit-test"
    cache.client = MagicMock()
    cache._fixed_window = AsyncMock(return_value=[3, 42])
    return cache


def test_rate_keys_hash_the_identifier():
    key = RedisCache._normalize_rate_key("login", "alice@example.com")
    assert key.startswith("rate:login:")
    assert "alice" not in key
    assert key == RedisCache._normalize_rate_key("login", "alice@example.com")
    assert key != RedisCache._normalize_rate_key("register", "alice@example.com")


def test_ttl_is_at_least_one_second():
    assert RedisCache._ttl_seconds(NOW, NOW) == 1
    assert RedisCache._ttl_seconds(NOW + timedelta(minutes=10), NOW) == 600


async def test_increment_window():
    cache = _cache()
    assert await cache.increment_window("login", "1.2.3.4", 60) == (3, 42)
    kwargs = cache._fixed_window.await_args.kwargs
    assert kwargs["args"] == [60]
    assert kwargs["keys"][0].startswith("rate:login:")


async def test_oauth_state_round_trip():
    cache = _cache()
    cache.client.set = AsyncMock()
    expires = NOW + timedelta(minutes=10)
    await cache.set_oauth_state("st", {"provider": "google"}, expires, now=NOW)
    key, payload = cache.client.set.await_args.args
    assert key == "auth:oauth:st"
    assert cache.client.set.await_args.kwargs["ex"] == 600

    cache.client.getdel = AsyncMock(return_value=payload)
    record = await cache.pop_oauth_state("st")
    assert record["provider"] == "google"
    assert record["expires_at"] == expires


async def test_pop_missing_or_corrupt_state():
    cache = _cache()
    cache.client.getdel = AsyncMock(return_value=None)
    assert await cache.pop_oauth_state("gone") is None
    cache.client.getdel = AsyncMock(return_value="[1, 2]")
    assert await cache.pop_oauth_state("list") is None


async def test_unparseable_expiry_is_expired():
    cache = _cache()
    cache.client.getdel = AsyncMock(
        return_value=json.dumps({"provider": "github", "expires_at": "soon"})
    )
    record = await cache.pop_oauth_state("st")
    assert record["expires_at"] <= NOW


async def test_pop_falls_back_to_lua_when_getdel_is_unknown():
    cache = _cache()
    payload = json.dumps(
        {"provider": "google", "expires_at": (NOW + timedelta(minutes=5)).isoformat()}
    )
    cache.client.getdel = AsyncMock(side_effect=ResponseError("unknown command 'GETDEL'"))
    cache.client.eval = AsyncMock(return_value=payload)
    record = await cache.pop_oauth_state("st")
    assert record["provider"] == "google"
    script, numkeys, key = cache.client.eval.await_args.args
    assert script == RedisCache._GETDEL_SCRIPT
    assert (numkeys, key) == (1, "auth:oauth:st")


async def test_reset_tokens_peek_then_consume():
    cache = _cache()
    cache.client.set = AsyncMock()
    expires = NOW + timedelta(hours=1)
    await cache.set_reset_token("abc", {"user_id": "u-1"}, expires, now=NOW)
    key, payload = cache.client.set.await_args.args
    assert key == "auth:reset:abc"
    assert cache.client.set.await_args.kwargs["ex"] == 3600

    cache.client.get = AsyncMock(return_value=payload)
    peeked = await cache.get_reset_token("abc")
    assert peeked["user_id"] == "u-1"
    assert peeked["expires_at"] == expires

    cache.client.getdel = AsyncMock(return_value=payload)
    assert (await cache.pop_reset_token("abc"))["user_id"] == "u-1"
    cache.client.getdel.assert_awaited_once_with("auth:reset:abc")
