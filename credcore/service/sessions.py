from __future__ import annotations

import ipaddress
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Optional, Protocol

from credcore.config import Settings
from credcore.logging import get_logger
from credcore.service.tokens import TokenPair, TokenService
from credcore.storage.models import Clock, Session, User, utc_now

logger = get_logger(__name__)

SESSION_COOKIE_NAME = "session_id"


class SessionStore(Protocol):
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int,
        *,
        now: Optional[datetime] = None,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        meta: Optional[dict] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def touch_session(
        self, session_id: str, *, last_activity_at: datetime, expires_at: datetime
    ) -> Optional[Session]: ...

    def set_session_meta(self, session_id: str, meta: dict) -> None: ...

    def revoke_session(self, session_id: str) -> bool: ...

    def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...


@dataclass(frozen=True)
class BindingCheck:
    valid: bool
    reason: Optional[str] = None


def mask_ip_address(raw: Optional[str]) -> Optional[str]:
    """Hide the host part of an address for display (``203.0.113.xxx``)."""
    if not raw:
        return None
    try:
        addr = ipaddress.ip_address(raw)
    except ValueError:
        return "unknown"
    if addr.version == 4:
        octets = str(addr).split(".")
        return ".".join(octets[:3] + ["xxx"])
    groups = addr.exploded.split(":")
    return ":".join(groups[:4] + ["xxxx"] * 4)


class SessionManager:
    """Lifecycle of server-side sessions.

    A session is valid while ``now < expires_at`` and the last activity is
    younger than the idle timeout. Every authenticated use slides both
    timestamps forward; expired sessions are deleted on first access.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utc_now
        self.absolute_ttl = timedelta(minutes=settings.session_absolute_ttl_minutes)
        self.idle_timeout = timedelta(minutes=settings.session_idle_timeout_minutes)

    def _now(self) -> datetime:
        return self._clock()

    def create(
        self,
        user_id: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> Session:
        session = self.store.create_session(
            user_id,
            self.settings.session_absolute_ttl_minutes,
            now=self._now(),
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return session

    def expiry_reason(self, session: Session, now: Optional[datetime] = None) -> Optional[str]:
        now = now or self._now()
        if now >= session.expires_at:
            return "absolute"
        if now - session.last_activity_at >= self.idle_timeout:
            return "idle"
        return None

    def is_valid(self, session: Session, now: Optional[datetime] = None) -> bool:
        return self.expiry_reason(session, now) is None

    def get(self, session_id: str) -> Optional[Session]:
        """Return a live session without touching it; expired ones are deleted."""
        session = self.store.get_session(session_id)
        if session is None:
            return None
        reason = self.expiry_reason(session)
        if reason:
            self._expire(session, reason)
            return None
        return session

    def touch(self, session_id: str) -> Optional[Session]:
        session = self.store.get_session(session_id)
        if session is None:
            return None
        now = self._now()
        reason = self.expiry_reason(session, now)
        if reason:
            self._expire(session, reason)
            return None
        # Conditional update: a revoke that lands first leaves nothing to touch
        touched = self.store.touch_session(
            session_id,
            last_activity_at=now,
            expires_at=now + self.absolute_ttl,
        )
        if touched is None:
            logger.info("session_touch_after_revoke", session_id=session_id)
        return touched

    def record_tokens(self, session: Session, pair: TokenPair) -> Session:
        """Remember which token ids are current for ``session``."""
        meta = dict(session.meta or {})
        meta["access_jti"] = pair.access_jti
        meta["access_exp"] = int(pair.access_expires_at.timestamp())
        if pair.refresh_jti:
            meta["refresh_jti"] = pair.refresh_jti
            meta["refresh_exp"] = int(pair.refresh_expires_at.timestamp())
        self.store.set_session_meta(session.id, meta)
        session.meta = meta
        return session

    def _expire(self, session: Session, reason: str) -> None:
        self.store.revoke_session(session.id)
        logger.info(
            "session_expired",
            session_id=session.id,
            user_id=session.user_id,
            reason=reason,
        )

    def revoke(self, session_id: str) -> bool:
        removed = self.store.revoke_session(session_id)
        if removed:
            logger.info("session_revoked", session_id=session_id)
        return removed

    def revoke_all(self, user_id: str, except_session_id: Optional[str] = None) -> int:
        count = self.store.revoke_user_sessions(user_id, except_session_id)
        logger.info(
            "sessions_revoked",
            user_id=user_id,
            count=count,
            kept_session_id=except_session_id,
        )
        return count

    def list_active(self, user_id: str) -> List[Session]:
        now = self._now()
        active: List[Session] = []
        for session in self.store.list_user_sessions(user_id):
            reason = self.expiry_reason(session, now)
            if reason:
                self._expire(session, reason)
                continue
            active.append(session)
        return active

    def validate_binding(
        self,
        session: Session,
        observed_ip: Optional[str],
        observed_user_agent: Optional[str],
    ) -> BindingCheck:
        """Compare the client against the one that created the session.

        Drift is reported but never decisive: mobile clients change networks
        and browsers update their user agent.
        """
        if session.ip_addr and observed_ip and session.ip_addr != observed_ip:
            return BindingCheck(False, "ip_mismatch")
        if (
            session.user_agent
            and observed_user_agent
            and session.user_agent != observed_user_agent
        ):
            return BindingCheck(False, "user_agent_mismatch")
        return BindingCheck(True)

    def remaining_lifetime_seconds(self, session: Session) -> int:
        remaining = (session.expires_at - self._now()).total_seconds()
        return max(0, math.ceil(remaining))

    def cookie_params(self, session: Session) -> dict[str, Any]:
        return {
            "key": SESSION_COOKIE_NAME,
            "value": session.id,
            "max_age": self.remaining_lifetime_seconds(session),
            "httponly": True,
            "secure": self.settings.secure_cookies,
            "samesite": self.settings.cookie_samesite,
            "path": "/",
        }

    def clear_cookie_params(self) -> dict[str, Any]:
        return {
            "key": SESSION_COOKIE_NAME,
            "value": "",
            "max_age": 0,
            "httponly": True,
            "secure": self.settings.secure_cookies,
            "samesite": self.settings.cookie_samesite,
            "path": "/",
        }


@dataclass
class AuthResult:
    """A signed-in user with the session and tokens just issued for it."""

    user: User
    session: Session
    tokens: TokenPair
    created: bool = False


def establish_session(
    sessions: SessionManager,
    tokens: TokenService,
    user: User,
    *,
    ip_addr: Optional[str] = None,
    user_agent: Optional[str] = None,
    created: bool = False,
) -> AuthResult:
    session = sessions.create(user.id, ip_addr=ip_addr, user_agent=user_agent)
    pair = tokens.create_pair(user.id, role=user.role, session_id=session.id)
    session = sessions.record_tokens(session, pair)
    return AuthResult(user=user, session=session, tokens=pair, created=created)
