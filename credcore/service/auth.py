from __future__ import annotations

import hashlib
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol, Tuple, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from credcore.config import Settings
from credcore.logging import get_logger
from credcore.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    EmailUnverifiedError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from credcore.service.lockout import AccountLockoutGuard, LockoutDecision
from credcore.service.mfa import TwoFactorService
from credcore.service.notifications import LogResetNotifier, ResetNotifier
from credcore.service.password_policy import password_policy_violations
from credcore.service.sessions import AuthResult, SessionManager, establish_session
from credcore.service.tokens import TokenError, TokenPair, TokenService, TokenType
from credcore.storage.errors import ConstraintViolation
from credcore.storage.models import Clock, Session, User, ensure_utc, utc_now
from credcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        role: str = "user",
        is_active: bool = True,
        email_verified: bool = False,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: Optional[str] = None
    via: str = "bearer"


@dataclass
class TwoFactorChallenge:
    """Password accepted; the caller must still present a TOTP code."""

    user_id: str
    challenge_token: str
    expires_at: datetime
    expires_in: int


class AuthService:
    """Password sign-in, token refresh and request authentication.

    Composes the lockout guard, session manager and token service; rate
    limiting happens at the HTTP edge before any of this runs. Password reset
    tokens live in Redis when configured and in process memory otherwise.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        sessions: SessionManager,
        tokens: TokenService,
        lockout: AccountLockoutGuard,
        cache: Optional[RedisCache] = None,
        two_factor: Optional[TwoFactorService] = None,
        reset_notifier: Optional[ResetNotifier] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.sessions = sessions
        self.tokens = tokens
        self.lockout = lockout
        self.cache = cache
        self.two_factor = two_factor
        self.reset_notifier = reset_notifier or LogResetNotifier()
        self._clock = clock or utc_now
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self._reset_lock = threading.Lock()
        self._reset_tokens: dict[str, dict[str, Any]] = {}
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    # -- passwords -----------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _burn_dummy_verify(self, password: str) -> None:
        """Spend the same argon2 work as a real check for unknown accounts."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError):
            pass

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            self._burn_dummy_verify(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            # OAuth-only accounts carry an unusable marker instead of a hash
            self.logger.info("password_algo_mismatch", user_id=user_id, algo=algo)
            self._burn_dummy_verify(password)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo, changed_at=self._now())

    @staticmethod
    def _require_strong_password(password: str, field: str = "password") -> None:
        violations = password_policy_violations(password)
        if violations:
            raise ValidationError(
                "password does not meet requirements",
                detail={"reason": "weak_password", "field": field, "errors": violations},
            )

    # -- sign-in -------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        accept_terms: bool = True,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled", detail={"reason": "signup_disabled"})
        if not accept_terms:
            raise ValidationError(
                "terms must be accepted", detail={"reason": "terms_not_accepted"}
            )
        self._require_strong_password(password)
        try:
            user = self.store.create_user(email, name=name)
        except ConstraintViolation as exc:
            self.logger.info("register_duplicate_email")
            raise ConflictError("email already registered", detail=exc.detail) from exc
        try:
            self.save_password(user.id, password)
            result = establish_session(
                self.sessions,
                self.tokens,
                user,
                ip_addr=ip_addr,
                user_agent=user_agent,
                created=True,
            )
        except Exception as exc:
            # A half-created account would block the retry with a 409
            self.store.delete_user(user.id)
            self.logger.error(
                "register_rolled_back",
                user_id=user.id,
                error_type=type(exc).__name__,
            )
            raise
        self.logger.info("user_registered", user_id=user.id)
        return result

    @staticmethod
    def _locked_error(decision: LockoutDecision) -> AccountLockedError:
        return AccountLockedError(
            locked_until=decision.locked_until,
            retry_after=decision.retry_after_seconds or 1,
        )

    def _invalid_credentials(
        self, decision: Optional[LockoutDecision] = None
    ) -> AuthenticationError:
        detail = None
        if decision is not None and self.settings.lockout_expose_remaining_attempts:
            detail = {"remaining_attempts": decision.remaining_attempts}
        return AuthenticationError("invalid credentials", detail=detail)

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Union[AuthResult, TwoFactorChallenge]:
        """Check the password; returns a challenge when the account has 2FA on.

        The lockout counter is only cleared once every factor has passed.
        """
        user = self.store.get_user_by_email(email)
        if not user:
            self._burn_dummy_verify(password)
            self.logger.info("login_failed", reason="unknown_email")
            raise self._invalid_credentials()

        admission = self.lockout.check_admission(user)
        if not admission.admitted:
            self.logger.warning(
                "login_rejected_locked",
                user_id=user.id,
                retry_after=admission.retry_after_seconds,
            )
            raise self._locked_error(admission)

        if not self.verify_password(user.id, password):
            decision = self.lockout.record_failure(user)
            self.logger.info(
                "login_failed",
                reason="bad_password",
                user_id=user.id,
                failed_count=decision.failed_count,
            )
            if decision.locked:
                raise self._locked_error(decision)
            raise self._invalid_credentials(decision)

        if not user.is_active:
            self.logger.warning("login_rejected_disabled", user_id=user.id)
            raise AccountDisabledError("account disabled")
        if self.settings.require_email_verification and not user.email_verified:
            self.logger.info("login_rejected_unverified", user_id=user.id)
            raise EmailUnverifiedError("email address not verified")

        if self.two_factor is not None and self.two_factor.is_enabled(user.id):
            token, expires_at = self.tokens.issue_mfa_challenge(user.id)
            self.logger.info("login_mfa_required", user_id=user.id)
            return TwoFactorChallenge(
                user_id=user.id,
                challenge_token=token,
                expires_at=expires_at,
                expires_in=self.settings.mfa_challenge_ttl_minutes * 60,
            )

        self.lockout.record_success(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return establish_session(
            self.sessions,
            self.tokens,
            user,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    async def complete_two_factor_login(
        self,
        challenge_token: str,
        code: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        """Finish a login that :meth:`login` answered with a challenge.

        Wrong codes count against the same lockout as wrong passwords.
        """
        if self.two_factor is None:
            raise ValidationError(
                "two-factor authentication is unavailable",
                detail={"reason": "mfa_unavailable"},
            )
        claims = self.tokens.verify(challenge_token, TokenType.MFA_CHALLENGE)
        user = self._active_user(claims.get("sub"))
        if user is None:
            raise AuthenticationError("invalid challenge", detail={"reason": "challenge_invalid"})
        if self._issued_before_password_change(user, claims):
            raise AuthenticationError(
                "credentials changed", detail={"reason": "password_changed"}
            )

        admission = self.lockout.check_admission(user)
        if not admission.admitted:
            raise self._locked_error(admission)

        if not self.two_factor.check_code(user.id, code):
            decision = self.lockout.record_failure(user)
            self.logger.info(
                "login_mfa_failed", user_id=user.id, failed_count=decision.failed_count
            )
            if decision.locked:
                raise self._locked_error(decision)
            raise AuthenticationError(
                "invalid two-factor code", detail={"reason": "invalid_code"}
            )

        self.lockout.record_success(user)
        self.logger.info("login_succeeded", user_id=user.id, mfa=True)
        return establish_session(
            self.sessions,
            self.tokens,
            user,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    # -- tokens --------------------------------------------------------------

    def _issued_before_password_change(self, user: User, claims: dict) -> bool:
        if user.password_changed_at is None:
            return False
        try:
            issued_at = int(claims.get("iat"))
        except (TypeError, ValueError):
            return True
        return issued_at < int(user.password_changed_at.timestamp())

    async def refresh_tokens(self, refresh_token: str, *, rotate: bool = False) -> AuthResult:
        claims = self.tokens.verify(refresh_token, TokenType.REFRESH)
        session_id = claims.get("sid")
        session = self.sessions.touch(session_id) if session_id else None
        if session is None or session.user_id != claims["sub"]:
            self.logger.info("refresh_rejected", reason="session_invalid")
            raise AuthenticationError(
                "session revoked or expired", detail={"reason": "session_invalid"}
            )
        current_jti = (session.meta or {}).get("refresh_jti")
        if not current_jti or not secrets.compare_digest(current_jti, claims.get("jti") or ""):
            self.logger.warning(
                "refresh_rejected", reason="token_superseded", session_id=session.id
            )
            raise AuthenticationError(
                "refresh token superseded", detail={"reason": "token_superseded"}
            )
        user = self.store.get_user(session.user_id)
        if user is None:
            raise AuthenticationError("account not found")
        if not user.is_active:
            raise AccountDisabledError("account disabled")
        if self._issued_before_password_change(user, claims):
            raise AuthenticationError(
                "credentials changed", detail={"reason": "password_changed"}
            )

        pair = self.tokens.refresh(refresh_token, role=user.role, rotate=rotate)
        session = self.sessions.record_tokens(session, pair)
        self.logger.info("tokens_refreshed", session_id=session.id, rotated=rotate)
        return AuthResult(user=user, session=session, tokens=pair)

    # -- sign-out ------------------------------------------------------------

    async def logout(self, session_id: str) -> bool:
        return self.sessions.revoke(session_id)

    async def logout_all(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        return self.sessions.revoke_all(user_id, except_session_id)

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        session_id: Optional[str] = None,
    ) -> tuple[int, Optional[TokenPair]]:
        """Swap the password and sign out every other session.

        Returns the number of revoked sessions and, when ``session_id`` is
        still live, fresh tokens for it (older access tokens stop working).
        """
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        if not self.verify_password(user_id, current_password):
            self.logger.info("password_change_rejected", user_id=user_id)
            raise AuthenticationError(
                "current password is incorrect", detail={"reason": "bad_password"}
            )
        if secrets.compare_digest(current_password, new_password):
            raise ValidationError(
                "new password must differ from the current one",
                detail={"field": "new_password"},
            )
        self._require_strong_password(new_password, "new_password")
        self.save_password(user_id, new_password)
        revoked = self.sessions.revoke_all(user_id, except_session_id=session_id)
        self.logger.info("password_changed", user_id=user_id, revoked_sessions=revoked)

        pair = None
        session = self.sessions.get(session_id) if session_id else None
        if session:
            pair = self.tokens.create_pair(user_id, role=user.role, session_id=session.id)
            self.sessions.record_tokens(session, pair)
        return revoked, pair

    # -- password reset ------------------------------------------------------

    @staticmethod
    def _reset_key(token: str) -> str:
        """Only a digest of the token is stored, so a leaked store grants nothing."""
        return hashlib.sha256(token.encode()).hexdigest()

    async def _store_reset_token(
        self, key: str, record: dict[str, Any], expires_at: datetime
    ) -> None:
        if self.cache:
            await self.cache.set_reset_token(key, record, expires_at, now=self._now())
            return
        with self._reset_lock:
            now = self._now()
            for stale in [k for k, v in self._reset_tokens.items() if v["expires_at"] <= now]:
                self._reset_tokens.pop(stale, None)
            self._reset_tokens[key] = {**record, "expires_at": expires_at}

    async def _peek_reset_token(self, key: str) -> Optional[dict[str, Any]]:
        if self.cache:
            return await self.cache.get_reset_token(key)
        with self._reset_lock:
            record = self._reset_tokens.get(key)
            return dict(record) if record else None

    async def _consume_reset_token(self, key: str) -> Optional[dict[str, Any]]:
        if self.cache:
            return await self.cache.pop_reset_token(key)
        with self._reset_lock:
            return self._reset_tokens.pop(key, None)

    def _reset_target(self, record: Optional[dict[str, Any]]) -> User:
        """Resolve a reset record to its account or raise a uniform 400."""
        invalid = ValidationError(
            "invalid or expired reset token", detail={"reason": "invalid_reset_token"}
        )
        if not record or ensure_utc(record["expires_at"]) <= self._now():
            raise invalid
        user = self._active_user(record.get("user_id"))
        if user is None:
            raise invalid
        try:
            issued_at = ensure_utc(datetime.fromisoformat(record["issued_at"]))
        except (KeyError, TypeError, ValueError):
            raise invalid
        # A completed reset or password change retires every older token
        if user.password_changed_at is not None and issued_at < user.password_changed_at:
            raise invalid
        return user

    async def request_password_reset(self, email: str) -> None:
        """Issue a reset token and hand it to the notifier.

        Unknown and disabled accounts get the same silent success, so the
        endpoint does not reveal which emails are registered.
        """
        user = self.store.get_user_by_email(email)
        if user is None or not user.is_active:
            self.logger.info("password_reset_requested", outcome="no_account")
            return
        token = secrets.token_hex(32)
        now = self._now()
        expires_at = now + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        await self._store_reset_token(
            self._reset_key(token),
            {"user_id": user.id, "issued_at": now.isoformat()},
            expires_at,
        )
        self.logger.info("password_reset_requested", outcome="issued", user_id=user.id)
        await self.reset_notifier.send_password_reset(user, token, expires_at)

    async def verify_reset_token(self, token: str) -> datetime:
        """Return when ``token`` expires without consuming it."""
        record = await self._peek_reset_token(self._reset_key(token))
        self._reset_target(record)
        return ensure_utc(record["expires_at"])

    async def reset_password(self, token: str, new_password: str) -> int:
        """Consume ``token``, set the new password and sign out every session.

        Returns the number of revoked sessions. A weak password is rejected
        before the token is consumed so the user can try again.
        """
        self._require_strong_password(new_password, "new_password")
        record = await self._consume_reset_token(self._reset_key(token))
        user = self._reset_target(record)
        self.save_password(user.id, new_password)
        revoked = self.sessions.revoke_all(user.id)
        self.lockout.record_success(user)
        self.logger.info("password_reset_completed", user_id=user.id, revoked_sessions=revoked)
        return revoked

    # -- request authentication ---------------------------------------------

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    def _check_binding(
        self, session: Session, ip_addr: Optional[str], user_agent: Optional[str]
    ) -> None:
        if not self.settings.bind_session_to_client:
            return
        check = self.sessions.validate_binding(session, ip_addr, user_agent)
        if not check.valid:
            self.logger.warning(
                "session_binding_mismatch",
                session_id=session.id,
                user_id=session.user_id,
                reason=check.reason,
            )

    def _active_user(self, user_id: Optional[str]) -> Optional[User]:
        user = self.store.get_user(user_id) if user_id else None
        if user is None or not user.is_active:
            return None
        return user

    def _authenticate_access_token(
        self, token: str, ip_addr: Optional[str], user_agent: Optional[str]
    ) -> Optional[AuthContext]:
        claims = self.tokens.verify(token, TokenType.ACCESS)
        session_id = claims.get("sid")
        session = self.sessions.touch(session_id) if session_id else None
        if session is None:
            self.logger.info("access_token_session_gone", session_id=session_id)
            return None
        user = self._active_user(claims.get("sub"))
        if user is None or session.user_id != user.id:
            return None
        if self._issued_before_password_change(user, claims):
            self.logger.info("access_token_predates_password_change", user_id=user.id)
            return None
        self._check_binding(session, ip_addr, user_agent)
        return AuthContext(user_id=user.id, role=user.role, session_id=session.id)

    def _authenticate_session(
        self, session_id: str, ip_addr: Optional[str], user_agent: Optional[str]
    ) -> Optional[AuthContext]:
        session = self.sessions.touch(session_id)
        if session is None:
            return None
        user = self._active_user(session.user_id)
        if user is None:
            return None
        self._check_binding(session, ip_addr, user_agent)
        return AuthContext(
            user_id=user.id, role=user.role, session_id=session.id, via="cookie"
        )

    async def authenticate(
        self,
        authorization: Optional[str],
        session_id: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuthContext]:
        """Resolve the caller from a bearer token, falling back to the cookie.

        A rejected bearer token is re-raised only when the cookie does not
        authenticate the request either, so clients still learn why.
        """
        failure: Optional[TokenError] = None
        token = self._extract_bearer(authorization)
        if token:
            try:
                ctx = self._authenticate_access_token(token, ip_addr, user_agent)
            except TokenError as exc:
                self.logger.info("access_token_rejected", reason=exc.kind.value)
                failure = exc
            else:
                if ctx:
                    return ctx
        if session_id:
            ctx = self._authenticate_session(session_id, ip_addr, user_agent)
            if ctx:
                return ctx
        if failure:
            raise failure
        return None
