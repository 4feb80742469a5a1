import base64
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from credcore.config import Settings
from credcore.service.errors import AuthenticationError, ConflictError, ValidationError
from credcore.service.mfa import TwoFactorService, generate_totp
from credcore.storage.memory import MemoryStore

# RFC 6238 appendix B seed for HMAC-SHA1
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode()


def _settings(**overrides):
    base = dict(access_token_secret="a" * 32, refresh_token_secret="b" * 32)
    base.update(overrides)
    return Settings(**base)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def two_factor(store, frozen_clock):
    return TwoFactorService(store, _settings(), clock=frozen_clock)


def _code_now(secret, clock, offset_steps=0):
    return generate_totp(secret, clock().timestamp() + offset_steps * 30)


@pytest.mark.parametrize(
    "timestamp, expected",
    [
        (59, "287082"),
        (1111111109, "081804"),
        (1111111111, "050471"),
        (1234567890, "005924"),
    ],
)
def test_generate_totp_matches_reference_vectors(timestamp, expected):
    assert generate_totp(RFC_SECRET, timestamp) == expected


def test_unpadded_secret_and_garbage():
    assert generate_totp(RFC_SECRET.rstrip("="), 59) == "287082"
    assert generate_totp("not base32!", 59) == ""


def test_generated_secret_is_base32_without_padding(two_factor):
    secret = two_factor.generate_secret()
    assert "=" not in secret
    assert len(base64.b32decode(secret)) == 20


def test_provisioning_uri(two_factor):
    uri = urlparse(two_factor.provisioning_uri("ABC", "alice@example.com"))
    assert uri.scheme == "otpauth"
    assert uri.netloc == "totp"
    assert uri.path == "/credcore%3Aalice%40example.com"
    params = parse_qs(uri.query)
    assert params["secret"] == ["ABC"]
    assert params["issuer"] == ["credcore"]
    assert params["digits"] == ["6"]
    assert params["period"] == ["30"]


class TestVerifyCode:
    def test_accepts_one_step_of_skew(self, two_factor, frozen_clock):
        secret = two_factor.generate_secret()
        for step in (-1, 0, 1):
            assert two_factor.verify_code(secret, _code_now(secret, frozen_clock, step))

    def test_rejects_two_steps_of_skew(self, two_factor, frozen_clock):
        secret = two_factor.generate_secret()
        assert not two_factor.verify_code(secret, _code_now(secret, frozen_clock, 2))

    @pytest.mark.parametrize("code", ["", "12345", "abcdef", "1234567"])
    def test_rejects_malformed(self, two_factor, code):
        assert not two_factor.verify_code(RFC_SECRET, code)


class TestEnrolment:
    def test_setup_enable_disable(self, two_factor, store, frozen_clock):
        user = store.create_user("alice@example.com")
        setup = two_factor.begin_setup(user)
        assert setup.otpauth_uri.startswith("otpauth://totp/")
        status = two_factor.status(user.id)
        assert (status.configured, status.enabled) == (True, False)

        two_factor.enable(user.id, _code_now(setup.secret, frozen_clock))
        assert two_factor.is_enabled(user.id)

        two_factor.disable(user.id, _code_now(setup.secret, frozen_clock))
        status = two_factor.status(user.id)
        assert (status.configured, status.enabled) == (False, False)

    def test_secret_is_encrypted_at_rest(self, two_factor, store):
        user = store.create_user("alice@example.com")
        setup = two_factor.begin_setup(user)
        stored = store.get_user_mfa_secret(user.id).secret
        assert setup.secret not in stored
        assert two_factor._decrypt(stored) == setup.secret

    def test_other_key_cannot_read_secret(self, two_factor, store, frozen_clock):
        user = store.create_user("alice@example.com")
        setup = two_factor.begin_setup(user)
        rotated = TwoFactorService(
            store, _settings(mfa_secret_key="k" * 40), clock=frozen_clock
        )
        code = _code_now(setup.secret, frozen_clock)
        assert not rotated.check_code(user.id, code)
        assert two_factor.check_code(user.id, code)

    def test_enable_requires_setup(self, two_factor, store):
        user = store.create_user("alice@example.com")
        with pytest.raises(ValidationError) as exc:
            two_factor.enable(user.id, "123456")
        assert exc.value.detail["reason"] == "mfa_not_configured"

    def test_enable_rejects_wrong_code(self, two_factor, store, frozen_clock):
        user = store.create_user("alice@example.com")
        setup = two_factor.begin_setup(user)
        accepted = {_code_now(setup.secret, frozen_clock, step) for step in (-1, 0, 1)}
        wrong = next(c for c in ("000000", "111111", "222222", "333333") if c not in accepted)
        with pytest.raises(AuthenticationError):
            two_factor.enable(user.id, wrong)
        assert not two_factor.is_enabled(user.id)

    def test_setup_refused_once_enabled(self, two_factor, store, frozen_clock):
        user = store.create_user("alice@example.com")
        setup = two_factor.begin_setup(user)
        two_factor.enable(user.id, _code_now(setup.secret, frozen_clock))
        with pytest.raises(ConflictError):
            two_factor.begin_setup(user)

    def test_disable_requires_enabled(self, two_factor, store):
        user = store.create_user("alice@example.com")
        with pytest.raises(ValidationError):
            two_factor.disable(user.id, "123456")


def test_clock_drives_codes(store):
    clock = lambda: datetime(2005, 3, 18, 1, 58, 29, tzinfo=timezone.utc)  # noqa: E731
    service = TwoFactorService(store, _settings(), clock=clock)
    # 1111111109 from the reference table
    assert service.verify_code(RFC_SECRET, "081804")
