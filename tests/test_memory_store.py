from datetime import datetime, timedelta, timezone

import pytest

from credcore.storage.errors import ConstraintViolation
from credcore.storage.memory import MemoryStore
from credcore.storage.models import LockoutRecord

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def test_state_survives_restart(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("persist@example.com", name="P", role="admin")
    store.save_password(user.id, "hash", "argon2id", changed_at=NOW)
    store.compare_and_set_lockout(
        user.id, LockoutRecord(), LockoutRecord(5, NOW + timedelta(minutes=15))
    )
    store.link_user_auth_provider(user.id, "github", "42")
    store.set_user_mfa_secret(user.id, "ciphertext", enabled=True)
    session = store.create_session(
        user.id, 15, now=NOW, ip_addr="10.0.0.1", meta={"refresh_jti": "r1"}
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))
    again = reloaded.get_user(user.id)
    assert again.role == "admin"
    assert again.failed_login_count == 5
    assert again.locked_until == NOW + timedelta(minutes=15)
    assert again.password_changed_at == NOW
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    assert reloaded.get_user_by_provider("github", "42").id == user.id
    mfa = reloaded.get_user_mfa_secret(user.id)
    assert (mfa.secret, mfa.enabled) == ("ciphertext", True)
    restored = reloaded.get_session(session.id)
    assert restored.ip_addr == "10.0.0.1"
    assert restored.meta == {"refresh_jti": "r1"}
    assert restored.expires_at == NOW + timedelta(minutes=15)


def test_corrupt_snapshot_starts_empty(tmp_path):
    # The runtime fixture already owns tmp_path/state
    root = tmp_path / "corrupt"
    state = root / "state"
    state.mkdir(parents=True)
    (state / "credcore_store.json").write_text("{not json")
    store = MemoryStore(fs_root=str(root))
    assert store.users == {}


def test_email_is_unique_case_insensitively(store):
    store.create_user("Dup@Example.com")
    with pytest.raises(ConstraintViolation):
        store.create_user("dup@example.com")
    assert store.get_user_by_email("DUP@example.com").email == "dup@example.com"


def test_returned_records_are_copies(store):
    user = store.create_user("copy@example.com")
    user.is_active = False
    assert store.get_user(user.id).is_active


def test_compare_and_set_lockout(store):
    user = store.create_user("cas@example.com")
    assert store.compare_and_set_lockout(user.id, LockoutRecord(), LockoutRecord(1, None))
    assert not store.compare_and_set_lockout(user.id, LockoutRecord(), LockoutRecord(1, None))
    assert store.get_user(user.id).failed_login_count == 1
    assert not store.compare_and_set_lockout("missing", LockoutRecord(), LockoutRecord(1, None))


class TestProviderLinks:
    def test_link_is_idempotent(self, store):
        user = store.create_user("link@example.com")
        first = store.link_user_auth_provider(user.id, "google", "g-1")
        second = store.link_user_auth_provider(user.id, "google", "g-1")
        assert first.id == second.id
        assert len(store.list_user_auth_providers(user.id)) == 1

    def test_identity_cannot_move_accounts(self, store):
        owner = store.create_user("owner@example.com")
        other = store.create_user("other@example.com")
        store.link_user_auth_provider(owner.id, "google", "g-1")
        with pytest.raises(ConstraintViolation):
            store.link_user_auth_provider(other.id, "google", "g-1")

    def test_one_identity_per_provider(self, store):
        user = store.create_user("one@example.com")
        store.link_user_auth_provider(user.id, "google", "g-1")
        with pytest.raises(ConstraintViolation):
            store.link_user_auth_provider(user.id, "google", "g-2")

    def test_unknown_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.link_user_auth_provider("nobody", "google", "g-1")


class TestSessions:
    def test_requires_existing_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_session("nobody", 15, now=NOW)

    def test_touch_does_not_resurrect(self, store):
        user = store.create_user("touch@example.com")
        session = store.create_session(user.id, 15, now=NOW)
        assert store.revoke_session(session.id)
        later = NOW + timedelta(minutes=1)
        assert store.touch_session(session.id, last_activity_at=later, expires_at=later) is None
        assert store.get_session(session.id) is None

    def test_delete_user_cascades(self, store):
        user = store.create_user("gone@example.com")
        session = store.create_session(user.id, 15, now=NOW)
        store.save_password(user.id, "hash", "argon2id")
        store.link_user_auth_provider(user.id, "github", "1")
        store.set_user_mfa_secret(user.id, "ciphertext")
        assert store.delete_user(user.id)
        assert store.get_user_mfa_secret(user.id) is None
        assert store.get_session(session.id) is None
        assert store.get_password_record(user.id) is None
        assert store.get_user_by_provider("github", "1") is None
        assert not store.delete_user(user.id)

    def test_revoke_user_sessions_except(self, store):
        user = store.create_user("many@example.com")
        keep = store.create_session(user.id, 15, now=NOW)
        store.create_session(user.id, 15, now=NOW + timedelta(seconds=1))
        assert store.revoke_user_sessions(user.id, except_session_id=keep.id) == 1
        assert [s.id for s in store.list_user_sessions(user.id)] == [keep.id]


class TestTwoFactorSecrets:
    def test_requires_existing_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.set_user_mfa_secret("nobody", "ciphertext")

    def test_enable_keeps_enrolment_time(self, store):
        user = store.create_user("totp@example.com")
        first = store.set_user_mfa_secret(user.id, "ciphertext")
        enabled = store.set_user_mfa_secret(user.id, "ciphertext", enabled=True)
        assert enabled.enabled
        assert enabled.created_at == first.created_at

    def test_delete(self, store):
        user = store.create_user("off@example.com")
        store.set_user_mfa_secret(user.id, "ciphertext", enabled=True)
        assert store.delete_user_mfa_secret(user.id)
        assert store.get_user_mfa_secret(user.id) is None
        assert not store.delete_user_mfa_secret(user.id)
