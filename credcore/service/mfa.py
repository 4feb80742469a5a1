from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import quote, urlencode

from cryptography.fernet import Fernet, InvalidToken

from credcore.config import Settings
from credcore.logging import get_logger
from credcore.service.errors import AuthenticationError, ConflictError, ValidationError
from credcore.storage.models import Clock, User, UserMFAConfig, utc_now

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_PERIOD_SECONDS = 30
# Adjacent steps accepted on either side for clock skew
TOTP_WINDOW = 1
_SECRET_BYTES = 20


class MFAStore(Protocol):
    def set_user_mfa_secret(
        self, user_id: str, secret: str, enabled: bool = False
    ) -> UserMFAConfig: ...

    def get_user_mfa_secret(self, user_id: str) -> Optional[UserMFAConfig]: ...

    def delete_user_mfa_secret(self, user_id: str) -> bool: ...


@dataclass
class TwoFactorSetup:
    secret: str
    otpauth_uri: str


@dataclass
class TwoFactorStatus:
    enabled: bool
    configured: bool


def generate_totp(secret: str, timestamp: float) -> str:
    """RFC 6238 code (HMAC-SHA1, 6 digits, 30 s steps) for a base32 secret.

    Returns an empty string when the secret does not decode, which never
    matches a submitted code.
    """
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // TOTP_PERIOD_SECONDS).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**TOTP_DIGITS
    )
    return str(code_int).zfill(TOTP_DIGITS)


class TwoFactorService:
    """TOTP enrolment and verification.

    Secrets are encrypted with Fernet before they reach the store; the key is
    derived from ``MFA_SECRET_KEY`` or, when unset, the access-token secret.
    """

    def __init__(
        self, store: MFAStore, settings: Settings, *, clock: Optional[Clock] = None
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utc_now
        material = settings.mfa_secret_key or settings.access_token_secret
        self._cipher = Fernet(self._derive_cipher_key(material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _encrypt(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt(self, stored: str) -> Optional[str]:
        try:
            return self._cipher.decrypt(stored.encode()).decode()
        except InvalidToken:
            # Key rotated or record tampered with; the factor cannot be checked
            logger.warning("mfa_secret_decrypt_failed")
            return None

    @staticmethod
    def generate_secret() -> str:
        return base64.b32encode(os.urandom(_SECRET_BYTES)).decode().rstrip("=")

    def provisioning_uri(self, secret: str, account: str) -> str:
        issuer = self.settings.mfa_issuer
        label = quote(f"{issuer}:{account}")
        params = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_PERIOD_SECONDS,
            }
        )
        return f"otpauth://totp/{label}?{params}"

    def verify_code(self, secret: str, code: str) -> bool:
        code = (code or "").strip()
        if len(code) != TOTP_DIGITS or not code.isdigit():
            return False
        now = self._clock().timestamp()
        for step in range(-TOTP_WINDOW, TOTP_WINDOW + 1):
            generated = generate_totp(secret, now + step * TOTP_PERIOD_SECONDS)
            if generated and hmac.compare_digest(generated, code):
                return True
        return False

    # -- enrolment ----------------------------------------------------------

    def status(self, user_id: str) -> TwoFactorStatus:
        cfg = self.store.get_user_mfa_secret(user_id)
        return TwoFactorStatus(enabled=bool(cfg and cfg.enabled), configured=cfg is not None)

    def is_enabled(self, user_id: str) -> bool:
        return self.status(user_id).enabled

    def begin_setup(self, user: User) -> TwoFactorSetup:
        """Store a fresh, not yet enabled secret and return it for the authenticator."""
        if self.is_enabled(user.id):
            raise ConflictError(
                "two-factor authentication is already enabled",
                detail={"reason": "mfa_already_enabled"},
            )
        secret = self.generate_secret()
        self.store.set_user_mfa_secret(user.id, self._encrypt(secret), enabled=False)
        logger.info("mfa_setup_started", user_id=user.id)
        return TwoFactorSetup(
            secret=secret, otpauth_uri=self.provisioning_uri(secret, user.email)
        )

    def check_code(self, user_id: str, code: str) -> bool:
        cfg = self.store.get_user_mfa_secret(user_id)
        if cfg is None:
            return False
        secret = self._decrypt(cfg.secret)
        return bool(secret) and self.verify_code(secret, code)

    def enable(self, user_id: str, code: str) -> None:
        cfg = self.store.get_user_mfa_secret(user_id)
        if cfg is None:
            raise ValidationError(
                "two-factor setup has not been started",
                detail={"reason": "mfa_not_configured"},
            )
        if cfg.enabled:
            raise ConflictError(
                "two-factor authentication is already enabled",
                detail={"reason": "mfa_already_enabled"},
            )
        if not self.check_code(user_id, code):
            logger.info("mfa_enable_rejected", user_id=user_id)
            raise AuthenticationError(
                "invalid two-factor code", detail={"reason": "invalid_code"}
            )
        self.store.set_user_mfa_secret(user_id, cfg.secret, enabled=True)
        logger.info("mfa_enabled", user_id=user_id)

    def disable(self, user_id: str, code: str) -> None:
        if not self.is_enabled(user_id):
            raise ValidationError(
                "two-factor authentication is not enabled",
                detail={"reason": "mfa_not_enabled"},
            )
        if not self.check_code(user_id, code):
            logger.info("mfa_disable_rejected", user_id=user_id)
            raise AuthenticationError(
                "invalid two-factor code", detail={"reason": "invalid_code"}
            )
        self.store.delete_user_mfa_secret(user_id)
        logger.info("mfa_disabled", user_id=user_id)
