"""
core/crypto.py -- Credential derivation, password hashing and request signing.

One primitive backs everything here: derive_key(), an scrypt call with fixed
parameters (N=16384, r=8, p=1, dkLen=64) that returns the derived key as 128
lowercase hex characters. The browser clients run the same derivation with
scrypt-async, so the parameters must never change independently.

  Passwords: stored as "<salt_hex>$<key_hex>" where salt_hex is 16 random
       bytes generated per hash. verify_password() recomputes and compares in
       constant time.

  Request signing: every /api call carries a `timestamp` header (epoch ms) and
       an `api-key` header equal to generate_api_key(timestamp, path). The
       server recomputes the key and rejects stale timestamps (see
       accounts/dependencies.verify_signature).

Layer rule: core/ is the kernel. No imports from api/, web/, sso/, accounts/,
or nav/.
"""

from __future__ import annotations

import asyncio
import hmac
import secrets

from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from core.config import get_settings

SCRYPT_N = 16384
SCRYPT_R = 8
SCRYPT_P = 1
SCRYPT_DKLEN = 64

_SALT_BYTES = 16


def _to_bytes(value: str | bytes) -> bytes:
    return value if isinstance(value, bytes) else str(value).encode("utf-8")


def derive_key(password: str | bytes, salt: str | bytes) -> str:
    """Return hex(scrypt(password, salt, N=16384, r=8, p=1, dkLen=64)).

    Text inputs are UTF-8 encoded. The result is deterministic for a given
    (password, salt) pair.
    """
    kdf = Scrypt(salt=_to_bytes(salt), length=SCRYPT_DKLEN, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(_to_bytes(password)).hex()


async def derive_key_async(password: str | bytes, salt: str | bytes) -> str:
    """Run derive_key() in a worker thread so the event loop is not blocked."""
    return await asyncio.to_thread(derive_key, password, salt)


# ---------------------------------------------------------------------------
# Request signing
# ---------------------------------------------------------------------------


def generate_api_key(timestamp: int | str, url: str, salt: str | None = None) -> str:
    """Return the api-key header value for a request path at a given timestamp.

    Args:
        timestamp: Epoch milliseconds, as sent in the `timestamp` header.
        url:       Request path without the query string, e.g. "/api/user/login".
        salt:      Override for Settings.api_key_salt.
    """
    return derive_key(f"{url}:{timestamp}", salt if salt is not None else get_settings().api_key_salt)


async def generate_api_key_async(timestamp: int | str, url: str, salt: str | None = None) -> str:
    return await asyncio.to_thread(generate_api_key, timestamp, url, salt)


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return "<salt_hex>$<key_hex>" for the given plaintext password."""
    salt = secrets.token_hex(_SALT_BYTES)
    return f"{salt}${derive_key(plain, salt)}"


def verify_password(plain: str, stored: str | None) -> bool:
    """Return True if the plaintext password matches a value from hash_password()."""
    if not stored or "$" not in stored:
        return False
    salt, expected = stored.split("$", 1)
    try:
        actual = derive_key(plain, salt)
    except (ValueError, TypeError):
        return False
    return hmac.compare_digest(actual, expected)
