"""Unit tests for accounts/otp.py -- code delivery, verification and OTP login.

The notifier is monkeypatched so every "sent" message is captured and the
code can be read back out of it.
"""

import re

import pytest

from accounts import otp as otp_mod
from accounts.models import User
from accounts.otp import OtpDeliveryError, OtpThrottled, authenticate_otp, send_code, verify_code
from accounts.store import UserStore
from core.config import get_settings
from core.models import OtpChannel


@pytest.fixture
def store():
    s = UserStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def outbox(monkeypatch):
    """Capture (channel, recipient, text) for every message the notifier would send."""
    sent: list[tuple[str, str, str]] = []

    def fake_sms(phone, text):
        sent.append(("sms", phone, text))
        return True

    def fake_email(address, subject, text):
        sent.append(("email", address, text))
        return True

    monkeypatch.setattr(otp_mod.notifier, "send_sms", fake_sms)
    monkeypatch.setattr(otp_mod.notifier, "send_email", fake_email)
    return sent


def _code_from(message: str) -> str:
    return re.search(r"code is (\d+)", message).group(1)


def _wrong(code: str) -> str:
    for candidate in ("000000", "111111", "222222"):
        if candidate not in (code, get_settings().otp_test_code):
            return candidate
    raise AssertionError("unreachable")


class TestSendCode:
    def test_email_delivery(self, store, outbox):
        send_code(store, OtpChannel.email, "a@example.com")
        channel, recipient, text = outbox[0]
        assert (channel, recipient) == ("email", "a@example.com")
        assert len(_code_from(text)) == get_settings().otp_length

    def test_sms_delivery(self, store, outbox):
        send_code(store, OtpChannel.sms, "+15550100")
        assert outbox[0][:2] == ("sms", "+15550100")

    def test_only_hash_is_stored(self, store, outbox):
        send_code(store, OtpChannel.email, "a@example.com")
        code = _code_from(outbox[0][2])
        assert code not in store.latest_otp("email", "a@example.com").code_hash

    def test_resend_cooldown(self, store, outbox):
        send_code(store, OtpChannel.email, "a@example.com")
        with pytest.raises(OtpThrottled) as exc:
            send_code(store, OtpChannel.email, "a@example.com")
        assert 0 < exc.value.retry_after <= get_settings().otp_resend_cooldown_seconds + 1
        assert len(outbox) == 1

    def test_cooldown_is_per_identity(self, store, outbox):
        send_code(store, OtpChannel.email, "a@example.com")
        send_code(store, OtpChannel.email, "b@example.com")
        assert len(outbox) == 2

    def test_delivery_failure(self, store, monkeypatch):
        monkeypatch.setattr(otp_mod.notifier, "send_sms", lambda phone, text: False)
        with pytest.raises(OtpDeliveryError):
            send_code(store, OtpChannel.sms, "+15550100")


class TestVerifyCode:
    def test_correct_code_is_consumed(self, store, outbox):
        send_code(store, OtpChannel.email, "a@example.com")
        code = _code_from(outbox[0][2])
        assert verify_code(store, OtpChannel.email, "a@example.com", code) is True
        assert verify_code(store, OtpChannel.email, "a@example.com", code) is False

    def test_check_without_consuming(self, store, outbox):
        send_code(store, OtpChannel.email, "a@example.com")
        code = _code_from(outbox[0][2])
        assert verify_code(store, OtpChannel.email, "a@example.com", code, consume=False) is True
        assert verify_code(store, OtpChannel.email, "a@example.com", code) is True

    def test_code_bound_to_channel_and_identity(self, store, outbox):
        send_code(store, OtpChannel.email, "a@example.com")
        code = _code_from(outbox[0][2])
        assert verify_code(store, OtpChannel.email, "b@example.com", code) is False
        assert verify_code(store, OtpChannel.sms, "a@example.com", code) is False

    def test_attempt_limit(self, store, outbox):
        send_code(store, OtpChannel.email, "a@example.com")
        code = _code_from(outbox[0][2])
        for _ in range(get_settings().otp_max_attempts):
            assert verify_code(store, OtpChannel.email, "a@example.com", _wrong(code)) is False
        assert verify_code(store, OtpChannel.email, "a@example.com", code) is False

    def test_no_code_requested(self, store):
        assert verify_code(store, OtpChannel.sms, "+15550100", "123456") is False

    def test_empty_code(self, store):
        assert verify_code(store, OtpChannel.sms, "+15550100", "") is False

    def test_non_ascii_code(self, store, outbox):
        send_code(store, OtpChannel.sms, "+15550100")
        assert verify_code(store, OtpChannel.sms, "+15550100", "12345é") is False

    def test_debug_test_code(self, store):
        assert verify_code(store, OtpChannel.sms, "+15550100", get_settings().otp_test_code) is True


class TestAuthenticateOtp:
    def test_login_with_code(self, store, outbox):
        uid = store.create_user(User(email="a@example.com"))
        send_code(store, OtpChannel.email, "a@example.com")
        code = _code_from(outbox[0][2])
        assert authenticate_otp(store, " A@example.com ", code).id == uid

    def test_unknown_identity(self, store):
        assert authenticate_otp(store, "nobody@example.com", get_settings().otp_test_code) is None

    def test_malformed_identity(self, store):
        assert authenticate_otp(store, "nobody", get_settings().otp_test_code) is None

    def test_inactive_user(self, store):
        store.create_user(User(phone="+15550100", is_active=False))
        assert authenticate_otp(store, "+15550100", get_settings().otp_test_code) is None
