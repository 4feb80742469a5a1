from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. from older JSON snapshots) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class LockoutRecord:
    """Failed-attempt counter and lock expiry, swapped as one unit."""

    failed_count: int = 0
    locked_until: Optional[datetime] = None


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    role: str = "user"
    created_at: datetime = field(default_factory=utc_now)
    is_active: bool = True
    email_verified: bool = False
    failed_login_count: int = 0
    locked_until: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    meta: Dict | None = None

    @property
    def lockout(self) -> LockoutRecord:
        return LockoutRecord(self.failed_login_count, self.locked_until)


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int,
        *,
        now: Optional[datetime] = None,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        meta: Dict | None = None,
    ) -> "Session":
        now = now or utc_now()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            last_activity_at=now,
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )


@dataclass
class UserAuthProvider:
    id: int
    user_id: str
    provider: str
    provider_uid: str
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class UserMFAConfig:
    """TOTP enrolment for one account; ``secret`` is stored encrypted."""

    user_id: str
    secret: str
    enabled: bool = False
    created_at: datetime = field(default_factory=utc_now)
    meta: Dict | None = None
