"""
accounts/tokens.py -- Session JWTs, login tickets and credential checks.

Security design decisions:
  Login is a two-step exchange. A successful password/OTP login yields a
       short-lived, single-use ticket (secrets.token_urlsafe). The ticket is
       redeemed at /api/user/ticket/validate for a session token. The SSO
       client hands tickets to relying services through a redirect, so a
       ticket that leaks through a URL is worthless after TICKET_EXPIRE_SECONDS
       or after its first use, whichever comes first.

  Tickets and OTP codes are stored as HMAC-SHA256(SECRET_KEY, raw). The hash
       is deterministic, enabling O(1) lookup, and an attacker who reads the
       DB cannot replay the raw values.

  Session token: python-jose JWT with HS256, carrying user_id and role.
       Verification returns None on any failure -- route layer turns that
       into a 401.

  Passwords: core.crypto scrypt derivation. The _DUMMY_HASH constant enables
       timing equalization in authenticate_user() so response time does not
       reveal whether an email/phone is registered.

Layer rule: no imports from api/, web/, sso/, or nav/. Import from core/ is
allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt

from accounts.models import Ticket
from core.config import get_settings
from core.crypto import hash_password, verify_password
from core.policy import normalize_identity

if TYPE_CHECKING:
    from accounts.models import User
    from accounts.store import UserStore

logger = logging.getLogger("idecs.accounts")

_settings = get_settings()

_ALGORITHM = "HS256"

COOKIE_NAME = "token"

# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("idecs_timing_dummy")


# ---------------------------------------------------------------------------
# Secret hashing (tickets, OTP codes)
# ---------------------------------------------------------------------------


def hash_secret(raw: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: int, role: str, expire_seconds: int = 0) -> str:
    """Encode a signed session JWT.

    Args:
        user_id:        Numeric user ID stored in the DB.
        role:           "user" or "admin".
        expire_seconds: Session duration in seconds. If 0 (default), uses
                        Settings.token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": str(user_id),
        "user_id": user_id,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
        if "user_id" not in payload or "role" not in payload:
            return None
        return payload
    except JWTError:
        return None


# ---------------------------------------------------------------------------
# User authentication (constant-time)
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, identity: str, password: str) -> User | None:
    """Authenticate an email-or-phone / password login with timing equalization.

    Always runs the scrypt derivation whether or not the user exists:
    - Unknown identity: derivation runs against _DUMMY_HASH (same cost)
    - Wrong password: derivation runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = store.get_by_identity(normalize_identity(identity))
    if user is None or user.password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.password):
        return None
    if not user.is_active:
        return None
    return user


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------


def issue_ticket(store: UserStore, user_id: int, service: str | None = None) -> str:
    """Create a one-shot login ticket for user_id and return the raw value.

    The raw ticket is returned once and never stored.
    """
    raw = f"ST-{secrets.token_urlsafe(32)}"
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=_settings.ticket_expire_seconds)
    store.create_ticket(
        Ticket(
            user_id=user_id,
            ticket_hash=hash_secret(raw),
            service=service,
            expires_at=expires_at.isoformat(),
        )
    )
    return raw


def redeem_ticket(store: UserStore, raw: str, service: str | None = None) -> User | None:
    """Exchange a raw ticket for its user. Every ticket can be redeemed at most once.

    Fails (returns None) when the ticket is unknown, already used, expired,
    bound to a different service, or its user is gone or inactive. A failed
    redemption still burns the ticket.
    """
    if not raw:
        return None
    ticket = store.consume_ticket(hash_secret(raw))
    if ticket is None:
        return None
    if datetime.fromisoformat(ticket.expires_at) < datetime.now(timezone.utc):
        logger.info("Rejected expired ticket for user %s", ticket.user_id)
        return None
    if ticket.service and ticket.service != service:
        logger.warning("Ticket for user %s presented for a different service", ticket.user_id)
        return None
    user = store.get_by_id(ticket.user_id)
    if user is None or not user.is_active:
        return None
    return user


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie(COOKIE_NAME)
