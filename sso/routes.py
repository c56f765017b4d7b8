"""
sso/routes.py -- Single-sign-on client for relying services.

A relying service sends the browser to /sso/login?service=<its URL>. The
user logs in here (or is already logged in through the session cookie) and
is redirected back to <service>?ticket=ST-... . The service then calls
GET /api/user/ticket/validate?ticket=...&service=<its URL> to learn who the
user is. Tickets issued here are bound to the service, so a ticket captured
from one service cannot be redeemed by another.

Only services whose URL starts with one of SSO_ALLOWED_SERVICES are served.
Anything else gets an error page and never a redirect, so /sso/login cannot
be used as an open redirector.

Routes:
  GET  /sso/login     -- login form, or immediate redirect with a live session
  POST /sso/login     -- password / OTP login, then redirect with a ticket
  GET  /sso/signup    -- signup form
  POST /sso/signup    -- create account, then redirect with a ticket
  POST /sso/otp/send  -- HTMX: send a code, return a status fragment
  GET  /sso/logout    -- clear the session, return to the service
"""

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Form, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from accounts.dependencies import try_get_current_user
from accounts.models import User
from accounts.otp import OtpDeliveryError, OtpThrottled, authenticate_otp, send_code
from accounts.registration import RegistrationError, register_user
from accounts.store import UserStore
from accounts.tokens import authenticate_user, clear_auth_cookie, create_access_token, issue_ticket, set_auth_cookie
from api.limiter import limiter
from core.config import get_settings
from core.models import IDENTITY_CHANNEL, LoginType
from core.policy import classify_identity, generate_title, is_allowed_service, normalize_identity

logger = logging.getLogger("idecs.sso")

_settings = get_settings()

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
templates.env.globals["generate_title"] = generate_title
templates.env.globals["app_name"] = _settings.app_name
router = APIRouter(prefix="/sso")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _service_error(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "error.html",
        {"error_msg": "This application is not registered for single sign-on."},
        status_code=400,
    )


def _with_ticket(service: str, ticket: str) -> str:
    """Add ticket to the query component of service, ahead of any #fragment."""
    parts = urlsplit(service)
    ticket_qs = urlencode({"ticket": ticket})
    query = f"{parts.query}&{ticket_qs}" if parts.query else ticket_qs
    return urlunsplit(parts._replace(query=query))


def _redirect_to_service(request: Request, user: User, service: str, new_session: bool) -> RedirectResponse:
    """Issue a service-bound ticket and send the browser back to the service.

    new_session=True also writes the session cookie so later visits to
    /sso/login skip the form.
    """
    user_store: UserStore = request.app.state.user_store
    ticket = issue_ticket(user_store, user.id, service)
    resp = RedirectResponse(_with_ticket(service, ticket), status_code=302)
    if new_session:
        set_auth_cookie(resp, create_access_token(user.id, user.role))
    resp.headers["Cache-Control"] = "no-store"
    logger.info("Issued SSO ticket for user %s", user.id)
    return resp


def _render_login(
    request: Request,
    service: str,
    mode: str = LoginType.password.value,
    error_msg: Optional[str] = None,
    status_code: int = 200,
) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "service": service,
            "mode": mode,
            "error_msg": error_msg,
            "registration_open": _settings.self_registration_enabled,
        },
        status_code=status_code,
    )


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse)
def sso_login_form(
    request: Request,
    service: str = "",
    login_type: str = Query(LoginType.password.value, alias="type"),
) -> HTMLResponse:
    if not is_allowed_service(service):
        return _service_error(request)
    user = try_get_current_user(request)
    if user is not None:
        return _redirect_to_service(request, user, service, new_session=False)
    mode = login_type if login_type in (LoginType.password.value, LoginType.otp.value) else LoginType.password.value
    return _render_login(request, service, mode)


@limiter.limit(_settings.login_rate_limit)
@router.post("/login", response_class=HTMLResponse)
def sso_login_post(
    request: Request,
    service: str = Form(""),
    identity: str = Form(...),
    login_type: str = Form(LoginType.password.value, alias="type"),
    password: str = Form(""),
    code: str = Form(""),
) -> HTMLResponse:
    if not is_allowed_service(service):
        return _service_error(request)
    user_store: UserStore = request.app.state.user_store

    if login_type == LoginType.otp.value:
        user = authenticate_otp(user_store, identity, code)
        if user is None:
            return _render_login(
                request, service, LoginType.otp.value, "Invalid or expired verification code.", status_code=401
            )
    else:
        user = authenticate_user(user_store, identity, password)
        if user is None:
            return _render_login(
                request, service, LoginType.password.value, "Invalid email, phone or password.", status_code=401
            )

    user_store.update_last_login(user.id)
    return _redirect_to_service(request, user, service, new_session=True)


# ---------------------------------------------------------------------------
# Signup
# ---------------------------------------------------------------------------


@router.get("/signup", response_class=HTMLResponse)
def sso_signup_form(request: Request, service: str = "") -> HTMLResponse:
    if not is_allowed_service(service):
        return _service_error(request)
    if not _settings.self_registration_enabled:
        return RedirectResponse(f"/sso/login?{urlencode({'service': service})}", status_code=302)
    return templates.TemplateResponse(request, "signup.html", {"service": service, "identity": "", "username": ""})


@limiter.limit(_settings.signup_rate_limit)
@router.post("/signup", response_class=HTMLResponse)
def sso_signup_post(
    request: Request,
    service: str = Form(""),
    identity: str = Form(...),
    code: str = Form(...),
    password: str = Form(...),
    confirm_password: str = Form(...),
    username: str = Form(""),
) -> HTMLResponse:
    if not is_allowed_service(service):
        return _service_error(request)
    if not _settings.self_registration_enabled:
        return RedirectResponse(f"/sso/login?{urlencode({'service': service})}", status_code=302)

    user_store: UserStore = request.app.state.user_store
    try:
        user = register_user(user_store, identity, code, password, confirm_password, username)
    except RegistrationError as exc:
        return templates.TemplateResponse(
            request,
            "signup.html",
            {"service": service, "identity": identity.strip(), "username": username.strip(), "error_msg": str(exc)},
            status_code=400,
        )
    return _redirect_to_service(request, user, service, new_session=True)


@limiter.limit(_settings.otp_rate_limit)
@router.post("/otp/send", response_class=HTMLResponse)
def sso_otp_send(request: Request, identity: str = Form(...)) -> HTMLResponse:
    """HTMX: send a code to an email or phone and return a status line."""
    user_store: UserStore = request.app.state.user_store
    identity = normalize_identity(identity)
    kind = classify_identity(identity)

    ok, message = False, ""
    if kind is None:
        message = "Enter a valid email address or phone number."
    else:
        try:
            send_code(user_store, IDENTITY_CHANNEL[kind], identity)
            ok, message = True, "Code sent. Check your messages."
        except OtpThrottled as exc:
            message = str(exc)
        except OtpDeliveryError:
            message = "Could not deliver the code. Try again later."
    return templates.TemplateResponse(request, "otp_sent.html", {"ok": ok, "message": message})


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


@router.get("/logout", response_class=HTMLResponse)
def sso_logout(request: Request, service: str = "") -> HTMLResponse:
    """End the SSO session. Returns to the service when it is allowed."""
    if is_allowed_service(service):
        resp = RedirectResponse(service, status_code=302)
    else:
        resp = templates.TemplateResponse(request, "done.html", {})
    clear_auth_cookie(resp)
    return resp
