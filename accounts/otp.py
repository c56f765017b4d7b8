"""
accounts/otp.py -- One-time codes for signup, OTP login, password reset and
identity binding.

A code is a random numeric string of Settings.otp_length digits. Only its HMAC
is stored (accounts/tokens.hash_secret). Rules:

  - Each code expires after OTP_EXPIRE_SECONDS.
  - Only the most recent code for a (channel, identity) pair is checked.
  - A code allows OTP_MAX_ATTEMPTS wrong guesses; after that it is dead and a
    new one must be requested.
  - A new code for the same pair cannot be requested within
    OTP_RESEND_COOLDOWN_SECONDS of the previous one.
  - verify_code(consume=False) answers "is this code right?" for form
    pre-checks; the operation that relies on the code consumes it.

In debug mode a configured OTP_TEST_CODE is accepted for every identity so
automated tests and local development can sign up without a gateway.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from accounts.models import OtpCode, User
from accounts.tokens import hash_secret
from core import notifier
from core.config import get_settings
from core.models import IDENTITY_CHANNEL, OtpChannel
from core.policy import classify_identity, normalize_identity

if TYPE_CHECKING:
    from accounts.store import UserStore

logger = logging.getLogger("idecs.accounts.otp")


class OtpThrottled(Exception):
    """A code was requested again before the resend cooldown elapsed."""

    def __init__(self, retry_after: int) -> None:
        super().__init__(f"Please wait {retry_after}s before requesting another code.")
        self.retry_after = retry_after


class OtpDeliveryError(Exception):
    """The SMS gateway or SMTP server did not accept the message."""


def _generate_code(length: int) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


def _message(code: str, minutes: int) -> str:
    cfg = get_settings()
    return f"Your {cfg.app_name} verification code is {code}. It expires in {minutes} minutes."


def send_code(store: UserStore, channel: OtpChannel, identity: str) -> None:
    """Generate, store and deliver a fresh code to identity.

    Raises:
        OtpThrottled:     a code was sent to this identity less than
                          OTP_RESEND_COOLDOWN_SECONDS ago.
        OtpDeliveryError: the notifier reported a delivery failure. The stored
                          code is left in place; it simply expires unused.
    """
    cfg = get_settings()
    now = datetime.now(timezone.utc)

    previous = store.latest_otp(channel.value, identity)
    if previous is not None and previous.created_at:
        elapsed = (now - datetime.fromisoformat(previous.created_at)).total_seconds()
        if elapsed < cfg.otp_resend_cooldown_seconds:
            raise OtpThrottled(int(cfg.otp_resend_cooldown_seconds - elapsed) + 1)

    code = _generate_code(cfg.otp_length)
    store.create_otp(
        OtpCode(
            channel=channel.value,
            identity=identity,
            code_hash=hash_secret(f"{channel.value}:{identity}:{code}"),
            expires_at=(now + timedelta(seconds=cfg.otp_expire_seconds)).isoformat(),
        )
    )

    text = _message(code, max(1, cfg.otp_expire_seconds // 60))
    if channel is OtpChannel.sms:
        delivered = notifier.send_sms(identity, text)
    else:
        delivered = notifier.send_email(identity, f"{cfg.app_name} verification code", text)
    if not delivered:
        raise OtpDeliveryError(f"Could not deliver code via {channel.value}")
    logger.info("OTP sent via %s", channel.value)


def verify_code(store: UserStore, channel: OtpChannel, identity: str, code: str, consume: bool = True) -> bool:
    """Return True if code is the live code for (channel, identity).

    consume=True burns the code on success so it cannot be reused.
    A wrong guess counts towards OTP_MAX_ATTEMPTS.
    """
    cfg = get_settings()
    if not code:
        return False
    if cfg.debug and cfg.otp_test_code and hmac.compare_digest(code.encode(), cfg.otp_test_code.encode()):
        return True

    otp = store.latest_otp(channel.value, identity)
    if otp is None or otp.consumed:
        return False
    if datetime.fromisoformat(otp.expires_at) < datetime.now(timezone.utc):
        return False
    if otp.attempts >= cfg.otp_max_attempts:
        return False

    expected = hash_secret(f"{channel.value}:{identity}:{code}")
    if not hmac.compare_digest(expected, otp.code_hash):
        store.record_otp_attempt(otp.id)
        return False
    if consume:
        return store.mark_otp_consumed(otp.id)
    return True


def authenticate_otp(store: UserStore, identity: str, code: str) -> User | None:
    """Log in with a one-time code sent to an email address or phone number.

    Returns the active User owning identity when code is valid (the code is
    consumed), None otherwise. Unknown identities do not burn anything.
    """
    identity = normalize_identity(identity)
    kind = classify_identity(identity)
    if kind is None:
        return None
    user = store.get_by_identity(identity)
    if user is None or not user.is_active:
        return None
    if not verify_code(store, IDENTITY_CHANNEL[kind], identity, code.strip()):
        return None
    return user
