import os
import stat

import pytest
from pydantic import ValidationError

from credcore.config import Settings, get_settings, reset_settings_cache


def test_secrets_must_differ():
    with pytest.raises(ValidationError):
        Settings(access_token_secret="same-secret", refresh_token_secret="same-secret")


def test_missing_secrets_are_generated_and_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    first = Settings()
    second = Settings()
    assert len(first.access_token_secret) >= 32
    assert first.access_token_secret == second.access_token_secret
    assert first.refresh_token_secret == second.refresh_token_secret
    assert first.access_token_secret != first.refresh_token_secret

    secret_file = tmp_path / ".access_token_secret"
    assert secret_file.read_text().strip() == first.access_token_secret
    assert stat.S_IMODE(os.stat(secret_file).st_mode) == 0o600


def test_short_persisted_secret_is_replaced(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    (tmp_path / ".access_token_secret").write_text("short")
    settings = Settings()
    assert settings.access_token_secret != "short"
    assert len(settings.access_token_secret) >= 32


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("LOCKOUT_THRESHOLD", "3")
    monkeypatch.setenv("COOKIE_SAMESITE", "Strict")
    monkeypatch.setenv("LOGIN_RATE_LIMIT_PER_MINUTE", "0")
    settings = Settings.from_env()
    assert settings.lockout_threshold == 3
    assert settings.cookie_samesite == "strict"
    assert settings.login_rate_limit_per_minute == 0


def test_access_token_secret_alias(monkeypatch):
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.setenv("ACCESS_TOKEN_SECRET", "alias-access-secret-value")
    assert Settings.from_env().access_token_secret == "alias-access-secret-value"


def test_invalid_samesite():
    with pytest.raises(ValidationError):
        Settings(
            access_token_secret="a" * 32,
            refresh_token_secret="b" * 32,
            cookie_samesite="sometimes",
        )


@pytest.mark.parametrize("field", ["lockout_threshold", "session_absolute_ttl_minutes"])
def test_non_positive_values_rejected(field):
    with pytest.raises(ValidationError):
        Settings(access_token_secret="a" * 32, refresh_token_secret="b" * 32, **{field: 0})


@pytest.mark.parametrize(
    "environment, override, expected",
    [
        ("development", None, False),
        ("Production", None, True),
        ("production", False, False),
        ("development", True, True),
    ],
)
def test_secure_cookies(environment, override, expected):
    settings = Settings(
        access_token_secret="a" * 32,
        refresh_token_secret="b" * 32,
        environment=environment,
        cookie_secure=override,
    )
    assert settings.secure_cookies is expected


def test_blank_cookie_secure_means_auto():
    settings = Settings(
        access_token_secret="a" * 32, refresh_token_secret="b" * 32, cookie_secure=" "
    )
    assert settings.cookie_secure is None


def test_oauth_client_lookup():
    settings = Settings(
        access_token_secret="a" * 32,
        refresh_token_secret="b" * 32,
        oauth_github_client_id="id",
        oauth_github_client_secret="secret",
    )
    assert settings.oauth_client("github") == ("id", "secret")
    assert settings.oauth_client("google") == (None, None)
    assert settings.oauth_client("unknown") == (None, None)


def test_settings_cache(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("LOCKOUT_THRESHOLD", "7")
    reset_settings_cache()
    assert get_settings().lockout_threshold == 7
    reset_settings_cache()
