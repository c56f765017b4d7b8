"""
accounts/dependencies.py -- FastAPI Depends() helpers for authentication.

Two session token sources are checked in priority order:
  1. Cookie ("token") -- set by ticket validation and by both web clients.
  2. Authorization: Bearer <token> header -- API clients.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.

verify_signature() is attached to every /api router. It checks the
`timestamp` and `api-key` headers against core.crypto.generate_api_key(), so a
request is only accepted from a client that knows the signing salt and sent
it recently.

Layer rule: no imports from api/, web/, sso/, or nav/.
  accounts/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import hmac
import logging
import time

from fastapi import HTTPException, Request

from accounts.models import User
from accounts.tokens import COOKIE_NAME, decode_access_token
from core.config import get_settings
from core.crypto import generate_api_key_async
from core.models import ResponseCode

logger = logging.getLogger("idecs.accounts")


def try_get_current_user(request: Request) -> User | None:
    """Attempt to authenticate the request via cookie or Bearer header.

    Returns the authenticated User on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_user().
    """
    user_store = request.app.state.user_store

    token: str | None = request.cookies.get(COOKIE_NAME)

    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]

    if token:
        payload = decode_access_token(token)
        if payload:
            user = user_store.get_by_id(payload["user_id"])
            if user and user.is_active:
                return user

    return None


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": ResponseCode.UNAUTHORIZED, "message": "Authentication required."},
        )
    return user


def require_admin(request: Request) -> User:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    user = get_current_user(request)
    if user.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": ResponseCode.FORBIDDEN, "message": "Admin access required."},
        )
    return user


def _signature_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": ResponseCode.SIGNATURE_INVALID, "message": message},
    )


async def verify_signature(request: Request) -> None:
    """Reject API calls without a fresh, correct `timestamp` / `api-key` pair.

    The key covers the request path only (no query string, no body). The
    derivation runs in a worker thread because scrypt is deliberately slow.
    """
    cfg = get_settings()
    if not cfg.api_signature_enabled:
        return

    timestamp = request.headers.get("timestamp", "")
    api_key = request.headers.get("api-key", "")
    if not timestamp or not api_key:
        raise _signature_error("Missing request signature.")

    try:
        sent_ms = int(timestamp)
    except ValueError:
        raise _signature_error("Malformed request timestamp.") from None

    now_ms = int(time.time() * 1000)
    if abs(now_ms - sent_ms) > cfg.api_timestamp_tolerance_ms:
        raise _signature_error("Request timestamp is outside the allowed window.")

    expected = await generate_api_key_async(timestamp, request.url.path)
    # Header values are latin-1 decoded strings; compare as bytes.
    if not hmac.compare_digest(expected.encode(), api_key.lower().encode("utf-8", "surrogateescape")):
        logger.info("Bad request signature for %s", request.url.path)
        raise _signature_error("Invalid request signature.")
