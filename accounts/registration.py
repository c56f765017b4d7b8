"""
accounts/registration.py -- Form-driven signup shared by the two web clients.

The account web client (/signup) and the SSO client (/sso/signup) accept the
same form: one identity field (email or phone), the OTP sent to it, a password
with confirmation and an optional display name. register_user() applies the
checks in a fixed order and raises RegistrationError with a message fit for
showing next to the form.

The REST signup (POST /api/user/signup) validates through pydantic models
instead and reports each failure with its own envelope code.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from accounts.models import User
from accounts.otp import verify_code
from core.crypto import hash_password
from core.models import IDENTITY_CHANNEL, Role
from core.policy import USERNAME_MAX_LENGTH, check_password, classify_identity, normalize_identity

if TYPE_CHECKING:
    from accounts.store import UserStore

logger = logging.getLogger("idecs.accounts")


class RegistrationError(ValueError):
    """The signup form was rejected. str(exc) is the user-facing message."""


def register_user(
    store: UserStore,
    identity: str,
    code: str,
    password: str,
    confirm_password: str,
    username: str = "",
) -> User:
    """Create and return a new user account.

    The OTP is checked last so a form with other mistakes does not burn a
    valid code.
    """
    identity = normalize_identity(identity)
    kind = classify_identity(identity)
    if kind is None:
        raise RegistrationError("Enter a valid email address or phone number.")
    error = check_password(password)
    if error:
        raise RegistrationError(error)
    if password != confirm_password:
        raise RegistrationError("Passwords do not match.")
    if store.get_by_identity(identity) is not None:
        raise RegistrationError("An account with that email or phone already exists.")
    if not verify_code(store, IDENTITY_CHANNEL[kind], identity, code.strip()):
        raise RegistrationError("Invalid or expired verification code.")

    new_user = User(
        username=username.strip()[:USERNAME_MAX_LENGTH] or None,
        email=identity if kind == "email" else None,
        phone=identity if kind == "phone" else None,
        password=hash_password(password),
        role=Role.user.value,
    )
    try:
        user_id = store.create_user(new_user)
    except IntegrityError as exc:
        raise RegistrationError("An account with that email or phone already exists.") from exc
    logger.info("User %s signed up via %s", user_id, kind)
    return store.get_by_id(user_id)
