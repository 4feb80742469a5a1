from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from credcore.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _persisted_secret(filename: str) -> str:
    """Load a signing secret from SHARED_FS_ROOT, generating it on first use.

    Tokens must survive restarts, so a generated secret is written atomically
    with 0600 permissions and reused afterwards.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/credcore"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may be owned by another user inside a container
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: Optional[str] = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.replace(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the credential and session core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/credcore", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/credcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-process fallbacks.",
    )
    environment: str = env_field(
        "development",
        "ENVIRONMENT",
        description="Deployment environment; 'production' forces secure cookies",
    )

    # Cookies / HTTP surface
    cookie_secure: Optional[bool] = env_field(
        None, "COOKIE_SECURE", description="Override the Secure cookie flag"
    )
    cookie_samesite: str = env_field("lax", "COOKIE_SAMESITE")
    cors_allow_origins: Optional[str] = env_field(None, "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Take the client address from X-Forwarded-For (behind a proxy only)",
    )

    # Token signing
    access_token_secret: Optional[str] = env_field(
        None, "JWT_SECRET", validate_default=True
    )
    refresh_token_secret: Optional[str] = env_field(
        None, "REFRESH_TOKEN_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("credcore", "JWT_ISSUER")
    jwt_audience: str = env_field("credcore-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(5, "JWT_LEEWAY_SECONDS")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )

    # Sessions
    session_absolute_ttl_minutes: int = env_field(
        15,
        "SESSION_ABSOLUTE_TTL_MINUTES",
        description="Session lifetime extended on every touch",
    )
    session_idle_timeout_minutes: int = env_field(30, "SESSION_IDLE_TIMEOUT_MINUTES")

    # Brute-force protection
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_cooldown_minutes: int = env_field(15, "LOCKOUT_COOLDOWN_MINUTES")
    lockout_expose_remaining_attempts: bool = env_field(
        False,
        "LOCKOUT_EXPOSE_REMAINING_ATTEMPTS",
        description="Include remaining attempts in 401 responses (enables enumeration)",
    )

    # Rate limits (requests per window)
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(
        5, "REGISTER_RATE_LIMIT_PER_MINUTE"
    )
    oauth_authorize_rate_limit_per_minute: int = env_field(
        20, "OAUTH_AUTHORIZE_RATE_LIMIT_PER_MINUTE"
    )
    oauth_callback_rate_limit_per_minute: int = env_field(
        10, "OAUTH_CALLBACK_RATE_LIMIT_PER_MINUTE"
    )
    refresh_rate_limit_per_minute: int = env_field(30, "REFRESH_RATE_LIMIT_PER_MINUTE")
    password_change_rate_limit: int = env_field(5, "PASSWORD_CHANGE_RATE_LIMIT")
    password_change_rate_limit_window_seconds: int = env_field(
        300, "PASSWORD_CHANGE_RATE_LIMIT_WINDOW_SECONDS"
    )
    password_forgot_rate_limit_per_minute: int = env_field(
        3, "PASSWORD_FORGOT_RATE_LIMIT_PER_MINUTE"
    )
    password_reset_verify_rate_limit_per_minute: int = env_field(
        10, "PASSWORD_RESET_VERIFY_RATE_LIMIT_PER_MINUTE"
    )
    password_reset_rate_limit_per_minute: int = env_field(
        5, "PASSWORD_RESET_RATE_LIMIT_PER_MINUTE"
    )
    two_factor_rate_limit_per_minute: int = env_field(
        10, "TWO_FACTOR_RATE_LIMIT_PER_MINUTE"
    )

    # Password reset
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    # Two-factor (TOTP)
    mfa_secret_key: Optional[str] = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets; defaults to JWT_SECRET",
    )
    mfa_issuer: str = env_field("credcore", "MFA_ISSUER")
    mfa_challenge_ttl_minutes: int = env_field(5, "MFA_CHALLENGE_TTL_MINUTES")

    # OAuth federation
    oauth_state_ttl_minutes: int = env_field(10, "OAUTH_STATE_TTL_MINUTES")
    oauth_http_timeout_seconds: float = env_field(30.0, "OAUTH_HTTP_TIMEOUT_SECONDS")
    oauth_google_client_id: Optional[str] = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: Optional[str] = env_field(
        None, "OAUTH_GOOGLE_CLIENT_SECRET"
    )
    oauth_github_client_id: Optional[str] = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: Optional[str] = env_field(
        None, "OAUTH_GITHUB_CLIENT_SECRET"
    )
    oauth_microsoft_client_id: Optional[str] = env_field(
        None, "OAUTH_MICROSOFT_CLIENT_ID"
    )
    oauth_microsoft_client_secret: Optional[str] = env_field(
        None, "OAUTH_MICROSOFT_CLIENT_SECRET"
    )
    oauth_redirect_uri: Optional[str] = env_field(None, "OAUTH_REDIRECT_URI")

    # Account policy
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    require_email_verification: bool = env_field(
        False, "REQUIRE_EMAIL_VERIFICATION"
    )
    bind_session_to_client: bool = env_field(
        True,
        "BIND_SESSION_TO_CLIENT",
        description="Log IP/User-Agent drift on session use",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        # ACCESS_TOKEN_SECRET is accepted as an alias of JWT_SECRET
        if "access_token_secret" not in merged:
            alias = os.environ.get("ACCESS_TOKEN_SECRET") or env_file_values.get(
                "ACCESS_TOKEN_SECRET"
            )
            if alias:
                merged["access_token_secret"] = alias
        return cls(**merged)

    @field_validator("cookie_secure", mode="before")
    @classmethod
    def _blank_cookie_secure(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = (value or "lax").strip().lower()
        if normalized not in {"lax", "strict", "none"}:
            raise ValueError("COOKIE_SAMESITE must be one of lax, strict, none")
        return normalized

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return (value or "development").strip().lower()

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "session_absolute_ttl_minutes",
        "session_idle_timeout_minutes",
        "lockout_threshold",
        "lockout_cooldown_minutes",
        "oauth_state_ttl_minutes",
        "password_reset_ttl_minutes",
        "mfa_challenge_ttl_minutes",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("access_token_secret")
    @classmethod
    def _ensure_access_secret(cls, value: Optional[str]) -> str:
        if value:
            return value
        return _persisted_secret(".access_token_secret")

    @field_validator("refresh_token_secret")
    @classmethod
    def _ensure_refresh_secret(cls, value: Optional[str]) -> str:
        if value:
            return value
        return _persisted_secret(".refresh_token_secret")

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError(
                "JWT_SECRET and REFRESH_TOKEN_SECRET must differ so token types cannot be confused"
            )
        return self

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.environment == "production"

    def oauth_client(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        """Return ``(client_id, client_secret)`` configured for ``provider``."""
        return (
            getattr(self, f"oauth_{provider}_client_id", None),
            getattr(self, f"oauth_{provider}_client_secret", None),
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
