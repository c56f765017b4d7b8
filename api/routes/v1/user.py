"""
api/routes/v1/user.py -- Account REST endpoints.

Routes (mounted under /api, every route requires a valid request signature):
  POST   /user/signup           -- create an account with an OTP-verified identity
  POST   /user/login            -- password or OTP login; returns a one-shot ticket
  GET    /user/ticket/validate  -- exchange a ticket for a session token (sets cookie)
  POST   /user/logout           -- clears the session cookie
  GET    /user                  -- current user (requires auth)
  GET    /user/pagination       -- page through all users (admin only)
  GET    /user/{user_id}        -- one user (requires auth)
  DELETE /user/{user_id}        -- delete a user (admin only, never yourself)
  PUT    /user/password/change  -- change own password (requires auth)
  PUT    /user/password/reset   -- set a new password with an OTP (public)
  PUT    /user/profile          -- update display name / profile (requires auth)
  PUT    /user/bind             -- attach a verified email or phone (requires auth)

Security:
  Login, signup and password reset are rate-limited per IP.
  authenticate_user() provides timing equalization -- use it, never inline.
  Login answers with the same BAD_CREDENTIALS error for unknown identities
  and wrong passwords.
  Ticket and token responses carry Cache-Control: no-store.

Route registration order: /user/pagination, /user/password/* and the other
literal sub-paths are declared before /user/{user_id}.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from accounts.dependencies import get_current_user, require_admin
from accounts.models import User
from accounts.otp import verify_code
from accounts.store import UserStore
from accounts.tokens import (
    authenticate_user,
    clear_auth_cookie,
    create_access_token,
    issue_ticket,
    redeem_ticket,
    set_auth_cookie,
)
from api.limiter import limiter
from api.models import (
    BindRequest,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetRequest,
    ProfileUpdateRequest,
    SignupRequest,
)
from api.responses import api_error, ok
from core.config import get_settings
from core.crypto import hash_password, verify_password
from core.models import IDENTITY_CHANNEL, LoginType, OtpChannel, Role, ResponseCode
from core.policy import classify_identity, is_allowed_service

logger = logging.getLogger("idecs.api.user")

_settings = get_settings()

# Auth policy:
# - signup, login, ticket/validate, logout, password/reset: public
# - GET /user, GET /user/{id}, password/change, profile, bind: get_current_user
# - pagination, DELETE /user/{id}: require_admin
router = APIRouter()


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _channel_for(identity: str) -> OtpChannel:
    kind = classify_identity(identity)
    if kind is None:
        raise api_error(422, ResponseCode.VALIDATION_ERROR, "Enter a valid email address or phone number.")
    return IDENTITY_CHANNEL[kind]


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.signup_rate_limit)
@router.post("/user/signup", status_code=201)
def signup(request: Request, body: SignupRequest) -> JSONResponse:
    """Create an account for an email or phone number that received an OTP.

    The code is checked only after the identity is known to be free, so a
    duplicate signup does not burn a valid code.
    """
    if not _settings.self_registration_enabled:
        raise api_error(403, ResponseCode.REGISTRATION_CLOSED, "Self-registration is disabled.")

    user_store: UserStore = request.app.state.user_store
    if body.email:
        channel, identity = OtpChannel.email, body.email
    else:
        channel, identity = OtpChannel.sms, body.phone

    if user_store.get_by_identity(identity) is not None:
        raise api_error(409, ResponseCode.CONFLICT, "An account with that email or phone already exists.")
    if not verify_code(user_store, channel, identity, body.code):
        raise api_error(400, ResponseCode.OTP_INVALID, "Invalid or expired verification code.")

    new_user = User(
        username=body.username or None,
        email=body.email,
        phone=body.phone,
        password=hash_password(body.password),
        profile=body.profile,
        role=Role.user.value,
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise api_error(409, ResponseCode.CONFLICT, "An account with that email or phone already exists.") from exc

    logger.info("User %s signed up via %s", user_id, channel.value)
    created = user_store.get_by_id(user_id)
    return ok(created.to_public(), status_code=201)


@limiter.limit(_settings.login_rate_limit)
@router.post("/user/login", status_code=201)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate and return a one-shot ticket.

    The ticket is exchanged at GET /user/ticket/validate within
    TICKET_EXPIRE_SECONDS. A service, when given, must be an allowed SSO
    service and the same service must be presented at validation.
    """
    user_store: UserStore = request.app.state.user_store

    if body.service and not is_allowed_service(body.service):
        raise api_error(400, ResponseCode.VALIDATION_ERROR, "Service is not registered.")

    if body.type is LoginType.password:
        user = authenticate_user(user_store, body.identity, body.password or "")
        if user is None:
            raise api_error(401, ResponseCode.BAD_CREDENTIALS, "Invalid credentials.")
    else:
        channel = _channel_for(body.identity)
        user = user_store.get_by_identity(body.identity)
        if user is None or not user.is_active:
            raise api_error(401, ResponseCode.BAD_CREDENTIALS, "Invalid credentials.")
        if not verify_code(user_store, channel, body.identity, body.code or ""):
            raise api_error(401, ResponseCode.OTP_INVALID, "Invalid or expired verification code.")

    user_store.update_last_login(user.id)
    ticket = issue_ticket(user_store, user.id, body.service)
    logger.info("User %s logged in (%s)", user.id, body.type.value)
    return _no_store(ok({"ticket": ticket, "expiresIn": _settings.ticket_expire_seconds}, status_code=201))


@router.get("/user/ticket/validate")
def validate_ticket(
    request: Request,
    ticket: str = Query(min_length=1, max_length=128),
    service: str | None = Query(default=None, max_length=512),
) -> JSONResponse:
    """Redeem a ticket for a session token. Each ticket works once."""
    user_store: UserStore = request.app.state.user_store
    user = redeem_ticket(user_store, ticket, service)
    if user is None:
        raise api_error(401, ResponseCode.TICKET_INVALID, "Ticket is invalid or expired.")

    token = create_access_token(user.id, user.role)
    resp = ok({"token": token, "expiresIn": _settings.token_expire_seconds, "user": user.to_public()})
    set_auth_cookie(resp, token)
    return _no_store(resp)


@router.post("/user/logout")
def logout() -> JSONResponse:
    """Clear the session cookie. Bearer tokens simply expire."""
    resp = ok(None, message="Logged out.")
    clear_auth_cookie(resp)
    return resp


@limiter.limit(_settings.login_rate_limit)
@router.put("/user/password/reset")
def reset_password(request: Request, body: PasswordResetRequest) -> JSONResponse:
    """Set a new password for the owner of identity after OTP verification."""
    user_store: UserStore = request.app.state.user_store
    channel = _channel_for(body.identity)

    user = user_store.get_by_identity(body.identity)
    if user is None:
        raise api_error(404, ResponseCode.NOT_FOUND, "No account uses that email or phone.")
    if not verify_code(user_store, channel, body.identity, body.code):
        raise api_error(400, ResponseCode.OTP_INVALID, "Invalid or expired verification code.")

    user_store.update_user(user.id, password=hash_password(body.new_password))
    logger.info("Password reset for user %s", user.id)
    return ok(None, message="Password updated.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/user")
def me(current_user: User = Depends(get_current_user)) -> JSONResponse:
    return ok(current_user.to_public())


@router.get("/user/pagination")
def list_users(
    request: Request,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=100, alias="pageSize"),
    current_user: User = Depends(require_admin),
) -> JSONResponse:
    """Page through all accounts. Admin only."""
    user_store: UserStore = request.app.state.user_store
    users, total = user_store.list_users_page(page, page_size)
    return ok(
        {
            "items": [u.to_public() for u in users],
            "total": total,
            "page": page,
            "pageSize": page_size,
        }
    )


@router.put("/user/password/change")
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    user_store: UserStore = request.app.state.user_store
    if not verify_password(body.old_password, current_user.password):
        raise api_error(400, ResponseCode.BAD_CREDENTIALS, "Current password is incorrect.")
    user_store.update_user(current_user.id, password=hash_password(body.new_password))
    logger.info("Password changed for user %s", current_user.id)
    return ok(None, message="Password updated.")


@router.put("/user/profile")
def update_profile(
    request: Request,
    body: ProfileUpdateRequest,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Update display name and profile.

    profile keys are merged into the stored object; a key sent as null is
    removed. Fields left out of the body are not touched.
    """
    user_store: UserStore = request.app.state.user_store
    updates: dict = {}
    if "username" in body.model_fields_set:
        updates["username"] = body.username or None
    if body.profile is not None:
        merged = dict(current_user.profile or {})
        for key, value in body.profile.items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        updates["profile"] = merged

    if not updates:
        raise api_error(400, ResponseCode.VALIDATION_ERROR, "No fields to update.")

    user_store.update_user(current_user.id, **updates)
    return ok(user_store.get_by_id(current_user.id).to_public())


@router.put("/user/bind")
def bind_identity(
    request: Request,
    body: BindRequest,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Attach (or replace) the email address or phone number of the caller.

    The new identity must have received an OTP and must not belong to
    another account.
    """
    user_store: UserStore = request.app.state.user_store
    if body.email:
        channel, identity, field = OtpChannel.email, body.email, "email"
    else:
        channel, identity, field = OtpChannel.sms, body.phone, "phone"

    owner = user_store.get_by_identity(identity)
    if owner is not None and owner.id != current_user.id:
        raise api_error(409, ResponseCode.CONFLICT, f"That {field} is already in use.")
    if not verify_code(user_store, channel, identity, body.code):
        raise api_error(400, ResponseCode.OTP_INVALID, "Invalid or expired verification code.")

    try:
        user_store.update_user(current_user.id, **{field: identity})
    except IntegrityError as exc:
        raise api_error(409, ResponseCode.CONFLICT, f"That {field} is already in use.") from exc
    return ok(user_store.get_by_id(current_user.id).to_public())


@router.get("/user/{user_id}")
def get_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(user_id)
    if user is None:
        raise api_error(404, ResponseCode.NOT_FOUND, "User not found.")
    return ok(user.to_public())


@router.delete("/user/{user_id}")
def delete_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_admin),
) -> JSONResponse:
    """Permanently delete an account. Admin only.

    An admin cannot delete their own account. The caller is an active admin,
    so deleting any other account always leaves at least one admin.
    """
    user_store: UserStore = request.app.state.user_store
    if user_id == current_user.id:
        raise api_error(400, ResponseCode.VALIDATION_ERROR, "You cannot delete your own account.")

    target = user_store.get_by_id(user_id)
    if target is None:
        raise api_error(404, ResponseCode.NOT_FOUND, "User not found.")
    user_store.delete_user(user_id)
    logger.info("User %s deleted by admin %s", user_id, current_user.id)
    return ok(None, message="User deleted.")
