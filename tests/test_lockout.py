from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from credcore.service.lockout import (
    AccountLockoutGuard,
    LockoutPolicy,
    LockoutState,
    on_failure,
    on_success,
    state_of,
)
from credcore.storage.memory import MemoryStore
from credcore.storage.models import LockoutRecord

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
POLICY = LockoutPolicy(threshold=5, cooldown=timedelta(minutes=15))


class TestTransitions:
    def test_state_of(self):
        assert state_of(LockoutRecord(), NOW) is LockoutState.OPEN
        locked = LockoutRecord(5, NOW + timedelta(minutes=1))
        assert state_of(locked, NOW) is LockoutState.LOCKED
        assert state_of(locked, NOW + timedelta(minutes=1)) is LockoutState.OPEN_AFTER_COOLDOWN

    def test_failures_count_up_to_threshold(self):
        record = LockoutRecord()
        for expected in range(1, 5):
            record = on_failure(record, NOW, POLICY)
            assert record == LockoutRecord(expected, None)
        record = on_failure(record, NOW, POLICY)
        assert record.failed_count == 5
        assert record.locked_until == NOW + timedelta(minutes=15)

    def test_failure_while_locked_is_a_no_op(self):
        locked = LockoutRecord(5, NOW + timedelta(minutes=10))
        assert on_failure(locked, NOW, POLICY) is locked

    def test_failure_after_cooldown_starts_fresh(self):
        stale = LockoutRecord(5, NOW - timedelta(seconds=1))
        assert on_failure(stale, NOW, POLICY) == LockoutRecord(1, None)

    def test_success_resets(self):
        assert on_success(LockoutRecord(3, None)) == LockoutRecord(0, None)
        assert on_success(LockoutRecord(5, NOW)) == LockoutRecord(0, None)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def guard(store, frozen_clock):
    return AccountLockoutGuard(store, policy=POLICY, clock=frozen_clock)


class TestGuard:
    def test_fifth_failure_locks(self, store, guard):
        user = store.create_user("bob@example.com")
        for attempt in range(1, 5):
            decision = guard.record_failure(store.get_user(user.id))
            assert decision.admitted
            assert decision.remaining_attempts == 5 - attempt
        decision = guard.record_failure(store.get_user(user.id))
        assert decision.locked
        assert decision.retry_after_seconds == 15 * 60
        assert not guard.check_admission(store.get_user(user.id)).admitted

    def test_admitted_again_after_cooldown(self, store, guard, frozen_clock):
        user = store.create_user("bob@example.com")
        for _ in range(5):
            guard.record_failure(store.get_user(user.id))
        frozen_clock.advance(minutes=15)
        decision = guard.check_admission(store.get_user(user.id))
        assert decision.admitted
        assert decision.state is LockoutState.OPEN_AFTER_COOLDOWN
        assert decision.failed_count == 0

    def test_success_resets_counter(self, store, guard):
        user = store.create_user("bob@example.com")
        for _ in range(3):
            guard.record_failure(store.get_user(user.id))
        guard.record_success(store.get_user(user.id))
        assert store.get_user(user.id).failed_login_count == 0

    def test_stale_snapshot_does_not_lose_increments(self, store, guard):
        user = store.create_user("bob@example.com")
        snapshot = store.get_user(user.id)
        # Two workers acting on the same stale read
        guard.record_failure(snapshot)
        decision = guard.record_failure(snapshot)
        assert decision.failed_count == 2
        assert store.get_user(user.id).failed_login_count == 2

    def test_logs_lock_event(self, store, guard):
        user = store.create_user("bob@example.com")
        with patch("credcore.service.lockout.logger") as mock_logger:
            for _ in range(5):
                guard.record_failure(store.get_user(user.id))
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "account_locked"
        assert mock_logger.warning.call_args[1]["user_id"] == user.id

    def test_gives_up_under_persistent_contention(self, store, guard):
        user = store.create_user("bob@example.com")
        with patch.object(store, "compare_and_set_lockout", return_value=False), patch(
            "credcore.service.lockout.logger"
        ) as mock_logger:
            decision = guard.record_failure(store.get_user(user.id))
        assert decision.admitted
        assert mock_logger.warning.call_args[0][0] == "lockout_cas_contention"
