from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Protocol

from credcore.config import Settings
from credcore.logging import get_logger
from credcore.storage.models import Clock, LockoutRecord, User, utc_now

logger = get_logger(__name__)

# Contended compare-and-set attempts before a failure is dropped
_MAX_CAS_ATTEMPTS = 5


class LockoutState(str, Enum):
    OPEN = "open"
    LOCKED = "locked"
    OPEN_AFTER_COOLDOWN = "open_after_cooldown"


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = 5
    cooldown: timedelta = timedelta(minutes=15)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockoutPolicy":
        return cls(
            threshold=settings.lockout_threshold,
            cooldown=timedelta(minutes=settings.lockout_cooldown_minutes),
        )


@dataclass(frozen=True)
class LockoutDecision:
    admitted: bool
    state: LockoutState
    failed_count: int = 0
    remaining_attempts: int = 0
    locked_until: Optional[datetime] = None
    retry_after_seconds: Optional[int] = None

    @property
    def locked(self) -> bool:
        return self.state is LockoutState.LOCKED


def state_of(record: LockoutRecord, now: datetime) -> LockoutState:
    """Derive the state lazily; an elapsed lock needs no background job."""
    if record.locked_until is None:
        return LockoutState.OPEN
    if now < record.locked_until:
        return LockoutState.LOCKED
    return LockoutState.OPEN_AFTER_COOLDOWN


def on_failure(
    record: LockoutRecord, now: datetime, policy: LockoutPolicy
) -> LockoutRecord:
    state = state_of(record, now)
    if state is LockoutState.LOCKED:
        return record
    # A stale lock means the previous streak is over; start counting again
    count = 1 if state is LockoutState.OPEN_AFTER_COOLDOWN else record.failed_count + 1
    if count >= policy.threshold:
        return LockoutRecord(count, now + policy.cooldown)
    return LockoutRecord(count, None)


def on_success(record: LockoutRecord) -> LockoutRecord:
    return LockoutRecord(0, None)


class LockoutStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def compare_and_set_lockout(
        self, user_id: str, expected: LockoutRecord, new: LockoutRecord
    ) -> bool: ...


class AccountLockoutGuard:
    """Per-account brute-force protection backed by the account store.

    The counter lives on the account record and is only changed through
    ``compare_and_set_lockout``, so concurrent failures on different workers
    cannot lose increments.
    """

    def __init__(
        self,
        store: LockoutStore,
        *,
        policy: Optional[LockoutPolicy] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.policy = policy or LockoutPolicy()
        self._clock = clock or utc_now

    def _now(self) -> datetime:
        return self._clock()

    def _decision(self, record: LockoutRecord, now: datetime) -> LockoutDecision:
        state = state_of(record, now)
        if state is LockoutState.LOCKED:
            retry_after = max(1, math.ceil((record.locked_until - now).total_seconds()))
            return LockoutDecision(
                admitted=False,
                state=state,
                failed_count=record.failed_count,
                locked_until=record.locked_until,
                retry_after_seconds=retry_after,
            )
        count = 0 if state is LockoutState.OPEN_AFTER_COOLDOWN else record.failed_count
        return LockoutDecision(
            admitted=True,
            state=state,
            failed_count=count,
            remaining_attempts=max(0, self.policy.threshold - count),
        )

    def check_admission(self, user: User) -> LockoutDecision:
        return self._decision(user.lockout, self._now())

    def record_failure(self, user: User) -> LockoutDecision:
        record = user.lockout
        for _ in range(_MAX_CAS_ATTEMPTS):
            now = self._now()
            new_record = on_failure(record, now, self.policy)
            if new_record == record:
                return self._decision(record, now)
            if self.store.compare_and_set_lockout(user.id, record, new_record):
                decision = self._decision(new_record, now)
                if decision.locked:
                    logger.warning(
                        "account_locked",
                        user_id=user.id,
                        failed_count=new_record.failed_count,
                        locked_until=new_record.locked_until.isoformat(),
                    )
                return decision
            current = self.store.get_user(user.id)
            if current is None:
                break
            record = current.lockout
        logger.warning("lockout_cas_contention", user_id=user.id)
        return self._decision(record, self._now())

    def record_success(self, user: User) -> None:
        record = user.lockout
        for _ in range(_MAX_CAS_ATTEMPTS):
            new_record = on_success(record)
            if new_record == record:
                return
            if self.store.compare_and_set_lockout(user.id, record, new_record):
                return
            current = self.store.get_user(user.id)
            if current is None:
                return
            record = current.lockout
        logger.warning("lockout_reset_contention", user_id=user.id)
