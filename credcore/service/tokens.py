from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from credcore.config import Settings
from credcore.logging import get_logger
from credcore.service.errors import AuthenticationError
from credcore.storage.models import Clock, utc_now

logger = get_logger(__name__)


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    MFA_CHALLENGE = "mfa_challenge"


class TokenFailure(str, Enum):
    """Why a token was rejected; all of them surface as 401."""

    MALFORMED = "malformed"
    SIGNATURE_INVALID = "signature_invalid"
    EXPIRED = "expired"
    WRONG_TYPE = "wrong_type"


_FAILURE_MESSAGES = {
    TokenFailure.MALFORMED: "malformed token",
    TokenFailure.SIGNATURE_INVALID: "invalid token signature",
    TokenFailure.EXPIRED: "token expired",
    TokenFailure.WRONG_TYPE: "wrong token type",
}


class TokenError(AuthenticationError):
    def __init__(self, kind: TokenFailure, message: Optional[str] = None) -> None:
        super().__init__(
            message or _FAILURE_MESSAGES[kind], detail={"reason": kind.value}
        )
        self.kind = kind


@dataclass
class TokenPair:
    access_token: str
    access_jti: str
    access_expires_at: datetime
    expires_in: int
    refresh_token: Optional[str] = None
    refresh_jti: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None
    token_type: str = "bearer"

    def as_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "expires_at": self.access_expires_at.isoformat(),
        }
        if self.refresh_token is not None:
            body["refresh_token"] = self.refresh_token
        return body


class TokenService:
    """HS256 access and refresh tokens signed with separate secrets.

    Access and refresh tokens carry a ``type`` claim and are signed with
    different keys, so neither can stand in for the other even if a caller
    forgets to check the type.
    """

    def __init__(self, settings: Settings, *, clock: Optional[Clock] = None) -> None:
        self.settings = settings
        self._clock = clock or utc_now
        self._leeway = timedelta(seconds=max(0, settings.jwt_leeway_seconds))
        access_secret = settings.access_token_secret.encode()
        self._secrets = {
            TokenType.ACCESS: access_secret,
            TokenType.REFRESH: settings.refresh_token_secret.encode(),
            # Derived so a challenge token can never verify as an access token
            TokenType.MFA_CHALLENGE: hmac.new(
                access_secret, b"credcore:mfa_challenge", hashlib.sha256
            ).digest(),
        }

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: TokenType) -> str:
        digest = hmac.new(
            self._secrets[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any], token_type: TokenType) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _issue(
        self,
        token_type: TokenType,
        user_id: str,
        ttl: timedelta,
        extra: dict[str, Any],
    ) -> tuple[str, str, datetime]:
        now = self._now()
        expires_at = now + ttl
        jti = str(uuid.uuid4())
        payload = {
            **extra,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "type": token_type.value,
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload, token_type), jti, expires_at

    def issue_access_token(
        self,
        user_id: str,
        *,
        role: str = "user",
        session_id: Optional[str] = None,
        claims: Optional[dict[str, Any]] = None,
    ) -> TokenPair:
        extra = dict(claims or {})
        extra["role"] = role
        if session_id:
            extra["sid"] = session_id
        ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        token, jti, expires_at = self._issue(TokenType.ACCESS, user_id, ttl, extra)
        return TokenPair(
            access_token=token,
            access_jti=jti,
            access_expires_at=expires_at,
            expires_in=int(ttl.total_seconds()),
        )

    def issue_refresh_token(
        self, user_id: str, session_id: str
    ) -> tuple[str, str, datetime]:
        """Return ``(token, jti, expires_at)`` for a session-bound refresh token."""
        ttl = timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        return self._issue(TokenType.REFRESH, user_id, ttl, {"sid": session_id})

    def issue_mfa_challenge(self, user_id: str) -> tuple[str, datetime]:
        """Short-lived token proving the password step passed for ``user_id``."""
        ttl = timedelta(minutes=self.settings.mfa_challenge_ttl_minutes)
        token, _, expires_at = self._issue(TokenType.MFA_CHALLENGE, user_id, ttl, {})
        return token, expires_at

    def create_pair(
        self, user_id: str, *, role: str = "user", session_id: str
    ) -> TokenPair:
        pair = self.issue_access_token(user_id, role=role, session_id=session_id)
        refresh_token, refresh_jti, refresh_expires_at = self.issue_refresh_token(
            user_id, session_id
        )
        pair.refresh_token = refresh_token
        pair.refresh_jti = refresh_jti
        pair.refresh_expires_at = refresh_expires_at
        return pair

    def verify(self, token: str, expected_type: TokenType | str) -> dict[str, Any]:
        """Return the claims of a valid token or raise :class:`TokenError`.

        Checks run structure, signature, type, issuer/audience, then expiry, so
        an expired token of the wrong type reports ``WRONG_TYPE``.
        """
        expected = TokenType(expected_type)
        if not token or not isinstance(token, str):
            raise TokenError(TokenFailure.MALFORMED)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenError(TokenFailure.MALFORMED)

        try:
            header = json.loads(self._decode_segment(header_b64))
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            logger.warning("jwt_decode_failed")
            raise TokenError(TokenFailure.MALFORMED)
        if not isinstance(header, dict) or not isinstance(payload, dict):
            raise TokenError(TokenFailure.MALFORMED)
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenError(TokenFailure.MALFORMED)

        try:
            claimed_type = TokenType(payload.get("type"))
        except ValueError:
            raise TokenError(TokenFailure.MALFORMED)

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input, claimed_type), sig_b64):
            raise TokenError(TokenFailure.SIGNATURE_INVALID)

        if claimed_type is not expected:
            logger.warning(
                "jwt_wrong_type", expected=expected.value, actual=claimed_type.value
            )
            raise TokenError(TokenFailure.WRONG_TYPE)

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenError(TokenFailure.SIGNATURE_INVALID, "token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenError(TokenFailure.SIGNATURE_INVALID, "token audience mismatch")
        if not payload.get("sub"):
            raise TokenError(TokenFailure.MALFORMED)

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenError(TokenFailure.MALFORMED)
        expires_at = datetime.fromtimestamp(exp_ts, tz=timezone.utc)
        if expires_at <= self._now() - self._leeway:
            raise TokenError(TokenFailure.EXPIRED)
        return payload

    def refresh(
        self, refresh_token: str, *, role: str = "user", rotate: bool = False
    ) -> TokenPair:
        """Mint a new access token from a refresh token.

        The new access token keeps the subject and session of the refresh
        token. With ``rotate`` a new refresh token is issued as well.
        """
        claims = self.verify(refresh_token, TokenType.REFRESH)
        user_id = claims["sub"]
        session_id = claims.get("sid")
        if rotate and session_id:
            return self.create_pair(user_id, role=role, session_id=session_id)
        return self.issue_access_token(user_id, role=role, session_id=session_id)
