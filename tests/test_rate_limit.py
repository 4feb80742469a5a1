"""Tests for the fixed-window rate limiter."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from credcore.config import Settings
from credcore.service.errors import RateLimitedError
from credcore.service.rate_limit import (
    RateLimiter,
    RatePolicy,
    policies_from_settings,
)


def _limiter(clock, **policies):
    return RateLimiter(None, policies or {"login": RatePolicy(3, 60)}, clock=clock)


class TestLocalWindow:
    async def test_limit_boundary(self, frozen_clock):
        limiter = _limiter(frozen_clock)
        results = [await limiter.check_and_increment("1.2.3.4", "login") for _ in range(4)]
        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        denied = results[-1]
        assert 0 < denied.retry_after <= 60
        assert denied.headers()["Retry-After"] == str(denied.retry_after)

    async def test_window_resets_after_elapsed(self, frozen_clock):
        limiter = _limiter(frozen_clock)
        for _ in range(3):
            await limiter.check_and_increment("1.2.3.4", "login")
        frozen_clock.advance(seconds=30)
        denied = await limiter.check_and_increment("1.2.3.4", "login")
        assert not denied.allowed
        assert denied.retry_after == 30
        frozen_clock.advance(seconds=30)
        assert (await limiter.check_and_increment("1.2.3.4", "login")).allowed

    async def test_identifiers_are_independent(self, frozen_clock):
        limiter = _limiter(frozen_clock)
        for _ in range(3):
            await limiter.check_and_increment("1.2.3.4", "login")
        assert (await limiter.check_and_increment("5.6.7.8", "login")).allowed

    async def test_classes_are_independent(self, frozen_clock):
        limiter = _limiter(
            frozen_clock, login=RatePolicy(1, 60), register=RatePolicy(1, 60)
        )
        assert (await limiter.check_and_increment("ip", "login")).allowed
        assert (await limiter.check_and_increment("ip", "register")).allowed
        assert not (await limiter.check_and_increment("ip", "login")).allowed

    async def test_local_keys_hide_identifier(self, frozen_clock):
        limiter = _limiter(frozen_clock)
        await limiter.check_and_increment("alice@example.com", "login")
        assert all("alice" not in key for key in limiter._local_windows)

    async def test_enforce_raises_with_headers(self, frozen_clock):
        limiter = _limiter(frozen_clock, login=RatePolicy(1, 60))
        await limiter.enforce("ip", "login")
        with pytest.raises(RateLimitedError) as exc:
            await limiter.enforce("ip", "login")
        assert exc.value.status_code == 429
        assert exc.value.headers["Retry-After"] == "60"
        assert exc.value.headers["X-RateLimit-Remaining"] == "0"
        assert exc.value.detail == {"retry_after": 60}


class TestValidation:
    async def test_zero_limit_disables(self, frozen_clock):
        limiter = _limiter(frozen_clock, login=RatePolicy(0, 60))
        for _ in range(10):
            assert (await limiter.check_and_increment("ip", "login")).allowed
        assert limiter._local_windows == {}

    async def test_invalid_window_logs_and_defaults(self, frozen_clock):
        limiter = _limiter(frozen_clock, login=RatePolicy(1, 0))
        with patch("credcore.service.rate_limit.logger") as mock_logger:
            result = await limiter.check_and_increment("ip", "login")
        assert result.allowed
        assert result.reset_seconds == 60
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "rate_limit_invalid_window"
        assert mock_logger.warning.call_args[1]["window_seconds"] == 0

    async def test_unknown_class(self, frozen_clock):
        with pytest.raises(ValueError):
            await _limiter(frozen_clock).check_and_increment("ip", "nope")


class TestRedisPath:
    async def test_uses_cache_counts(self, frozen_clock):
        cache = MagicMock()
        cache.increment_window = AsyncMock(side_effect=[(1, 60), (2, 59), (3, 41)])
        limiter = RateLimiter(cache, {"login": RatePolicy(2, 60)}, clock=frozen_clock)
        first = await limiter.check_and_increment("ip", "login")
        second = await limiter.check_and_increment("ip", "login")
        third = await limiter.check_and_increment("ip", "login")
        assert first.allowed and second.allowed
        assert not third.allowed
        assert third.retry_after == 41
        cache.increment_window.assert_awaited_with("login", "ip", 60)
        assert limiter._local_windows == {}


def test_policies_from_settings_defaults():
    policies = policies_from_settings(
        Settings(access_token_secret="a" * 16, refresh_token_secret="b" * 16)
    )
    assert policies["login"] == RatePolicy(10, 60)
    assert policies["register"] == RatePolicy(5, 60)
    assert policies["oauth_authorize"] == RatePolicy(20, 60)
    assert policies["oauth_callback"] == RatePolicy(10, 60)
    assert policies["refresh"] == RatePolicy(30, 60)
    assert policies["password_change"] == RatePolicy(5, 300)
    assert policies["password_forgot"] == RatePolicy(3, 60)
    assert policies["password_reset_verify"] == RatePolicy(10, 60)
    assert policies["password_reset"] == RatePolicy(5, 60)
    assert policies["two_factor"] == RatePolicy(10, 60)
