"""
web/routes.py -- Jinja2 template routes for the IDecs account web client.

These routes serve server-rendered HTML. They share app.state with the API
routes (same user store) but return HTML and redirects instead of JSON, and
they do not require request signatures: the browser holds the session cookie.

Route registration order matters. FastAPI resolves same-level paths in order:
  - POST /users/{user_id}/delete is the only parametrized route and comes
    after GET /users.

Routes:
  GET  /                        -- account overview (auth required)
  GET  /login                   -- login form (password or OTP)
  POST /login                   -- handle login, set cookie, redirect to ?next
  GET  /signup                  -- signup form
  POST /signup                  -- create account with an OTP-verified identity
  POST /otp/send                -- HTMX: send a code, return a status fragment
  GET  /profile                 -- profile form (auth required)
  POST /profile                 -- save display name and profile
  GET  /password                -- change-password form (auth required)
  POST /password                -- change password
  GET  /users                   -- paginated user list (admin only)
  POST /users/{user_id}/delete  -- delete a user (admin only)
  POST /logout                  -- clear cookie, redirect /login
  GET  /setup                   -- first-run wizard
  POST /setup                   -- create first admin
"""

import json
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import IntegrityError

from accounts.dependencies import try_get_current_user
from accounts.models import User
from accounts.otp import OtpDeliveryError, OtpThrottled, authenticate_otp, send_code
from accounts.registration import RegistrationError, register_user
from accounts.store import UserStore
from accounts.tokens import authenticate_user, clear_auth_cookie, create_access_token, set_auth_cookie
from api.limiter import limiter
from core.config import get_settings
from core.crypto import hash_password, verify_password
from core.models import IDENTITY_CHANNEL, LoginType, Role
from core.policy import USERNAME_MAX_LENGTH, check_password, classify_identity, generate_title, normalize_identity

logger = logging.getLogger("idecs.web")

_settings = get_settings()

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
# Expose try_get_current_user as a Jinja2 global so layout.html can call it
# without every route handler passing current_user in the context.
templates.env.globals["try_get_current_user"] = try_get_current_user
templates.env.globals["generate_title"] = generate_title
templates.env.globals["app_name"] = _settings.app_name
router = APIRouter()

# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------

# Whitelist mapping for ?error= / ?msg= query params.
# The raw query param is NEVER passed to templates -- only the message from
# these dicts is. Prevents reflected XSS via crafted query strings.
_ERROR_MESSAGES: dict[str, str] = {
    "bad_credentials": "Invalid email, phone or password.",
    "bad_code": "Invalid or expired verification code.",
    "setup_complete": "Setup already complete. Please log in.",
    "forbidden": "You do not have access to that page.",
}

_NOTICES: dict[str, str] = {
    "signed_up": "Your account is ready.",
    "profile_saved": "Profile saved.",
    "password_changed": "Password changed.",
    "user_deleted": "User deleted.",
}

_PAGE_SIZE = 20


def _safe_next(next_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths.

    Rejects absolute URLs and protocol-relative URLs ("//evil.example") so a
    crafted /login?next= link cannot send the user off-site after login.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return "/"


def _require_auth(request: Request) -> Optional[RedirectResponse]:
    """Return a RedirectResponse to /login if not authenticated, None if OK.

    Call at the top of protected route handlers:
        if redirect := _require_auth(request):
            return redirect
    """
    user = try_get_current_user(request)
    if user is None:
        path = request.url.path
        return RedirectResponse(f"/login?next={path}", status_code=302)
    return None


def _require_admin(request: Request) -> Optional[RedirectResponse]:
    if redirect := _require_auth(request):
        return redirect
    if try_get_current_user(request).role != Role.admin.value:
        return RedirectResponse("/?error=forbidden", status_code=302)
    return None


def _login_response(user: User, next_url: str) -> RedirectResponse:
    token = create_access_token(user.id, user.role)
    resp = RedirectResponse(next_url, status_code=302)
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _login_retry(params: dict, next_url: str) -> RedirectResponse:
    """Send a failed login back to the form, keeping a non-default ?next."""
    if next_url != "/":
        params["next"] = next_url
    return RedirectResponse(f"/login?{urlencode(params)}", status_code=302)


# ---------------------------------------------------------------------------
# GET / -- account overview
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def home(request: Request) -> HTMLResponse:
    if redirect := _require_auth(request):
        return redirect
    return templates.TemplateResponse(
        request,
        "home.html",
        {
            "user": try_get_current_user(request),
            "notice": _NOTICES.get(request.query_params.get("msg", "")),
            "error_msg": _ERROR_MESSAGES.get(request.query_params.get("error", "")),
        },
    )


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request) -> HTMLResponse:
    """Render the login page. Already-authenticated users go straight to /."""
    if try_get_current_user(request) is not None:
        return RedirectResponse("/", status_code=302)

    mode = request.query_params.get("type", LoginType.password.value)
    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "error_msg": _ERROR_MESSAGES.get(request.query_params.get("error", "")),
            "mode": mode if mode in (LoginType.password.value, LoginType.otp.value) else LoginType.password.value,
            "next": _safe_next(request.query_params.get("next")),
            "registration_open": _settings.self_registration_enabled,
        },
    )


@limiter.limit(_settings.login_rate_limit)
@router.post("/login", response_class=HTMLResponse)
def login_post(
    request: Request,
    identity: str = Form(...),
    login_type: str = Form(LoginType.password.value, alias="type"),
    password: str = Form(""),
    code: str = Form(""),
) -> RedirectResponse:
    """Handle the login form (password or OTP)."""
    user_store: UserStore = request.app.state.user_store
    next_url = _safe_next(request.query_params.get("next"))

    if login_type == LoginType.otp.value:
        user = authenticate_otp(user_store, identity, code)
        if user is None:
            return _login_retry({"type": LoginType.otp.value, "error": "bad_code"}, next_url)
    else:
        user = authenticate_user(user_store, identity, password)
        if user is None:
            return _login_retry({"error": "bad_credentials"}, next_url)

    user_store.update_last_login(user.id)
    return _login_response(user, next_url)


@router.post("/logout")
def logout(request: Request) -> RedirectResponse:
    """Clear the session cookie and redirect to the login page."""
    resp = RedirectResponse("/login", status_code=302)
    clear_auth_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Signup and OTP delivery
# ---------------------------------------------------------------------------


def _render_signup(request: Request, error_msg: str, identity: str = "", username: str = "") -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "signup.html",
        {"error_msg": error_msg, "identity": identity, "username": username},
        status_code=400,
    )


@router.get("/signup", response_class=HTMLResponse)
def signup_form(request: Request) -> HTMLResponse:
    if not _settings.self_registration_enabled:
        return RedirectResponse("/login", status_code=302)
    return templates.TemplateResponse(request, "signup.html", {"identity": "", "username": ""})


@limiter.limit(_settings.signup_rate_limit)
@router.post("/signup", response_class=HTMLResponse)
def signup_post(
    request: Request,
    identity: str = Form(...),
    code: str = Form(...),
    password: str = Form(...),
    confirm_password: str = Form(...),
    username: str = Form(""),
) -> HTMLResponse:
    """Create an account. The identity must have received the code first."""
    if not _settings.self_registration_enabled:
        return RedirectResponse("/login", status_code=302)

    user_store: UserStore = request.app.state.user_store
    try:
        user = register_user(user_store, identity, code, password, confirm_password, username)
    except RegistrationError as exc:
        return _render_signup(request, str(exc), identity.strip(), username.strip())
    return _login_response(user, "/?msg=signed_up")


@limiter.limit(_settings.otp_rate_limit)
@router.post("/otp/send", response_class=HTMLResponse)
def otp_send_htmx(request: Request, identity: str = Form(...)) -> HTMLResponse:
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
    return templates.TemplateResponse(request, "partials/otp_sent.html", {"ok": ok, "message": message})


# ---------------------------------------------------------------------------
# Profile and password
# ---------------------------------------------------------------------------


@router.get("/profile", response_class=HTMLResponse)
def profile_form(request: Request) -> HTMLResponse:
    if redirect := _require_auth(request):
        return redirect
    user = try_get_current_user(request)
    return templates.TemplateResponse(
        request,
        "profile.html",
        {"user": user, "profile_json": json.dumps(user.profile, indent=2, ensure_ascii=False)},
    )


@router.post("/profile", response_class=HTMLResponse)
def profile_post(
    request: Request,
    username: str = Form(""),
    profile_json: str = Form("{}"),
) -> HTMLResponse:
    """Save display name and the full profile object (replaces the stored one)."""
    if redirect := _require_auth(request):
        return redirect
    user = try_get_current_user(request)
    user_store: UserStore = request.app.state.user_store

    try:
        profile = json.loads(profile_json or "{}")
    except ValueError:
        profile = None
    if not isinstance(profile, dict):
        return templates.TemplateResponse(
            request,
            "profile.html",
            {"user": user, "profile_json": profile_json, "error_msg": "Profile must be a JSON object."},
            status_code=400,
        )

    user_store.update_user(user.id, username=username.strip()[:USERNAME_MAX_LENGTH] or None, profile=profile)
    return RedirectResponse("/?msg=profile_saved", status_code=302)


@router.get("/password", response_class=HTMLResponse)
def password_form(request: Request) -> HTMLResponse:
    if redirect := _require_auth(request):
        return redirect
    return templates.TemplateResponse(request, "password.html", {})


@router.post("/password", response_class=HTMLResponse)
def password_post(
    request: Request,
    old_password: str = Form(...),
    new_password: str = Form(...),
    confirm_password: str = Form(...),
) -> HTMLResponse:
    if redirect := _require_auth(request):
        return redirect
    user = try_get_current_user(request)
    user_store: UserStore = request.app.state.user_store

    error_msg = None
    if not verify_password(old_password, user.password):
        error_msg = "Current password is incorrect."
    elif error := check_password(new_password):
        error_msg = error
    elif new_password != confirm_password:
        error_msg = "Passwords do not match."
    if error_msg:
        return templates.TemplateResponse(request, "password.html", {"error_msg": error_msg}, status_code=400)

    user_store.update_user(user.id, password=hash_password(new_password))
    logger.info("Password changed for user %s via web client", user.id)
    return RedirectResponse("/?msg=password_changed", status_code=302)


# ---------------------------------------------------------------------------
# User administration
# ---------------------------------------------------------------------------


@router.get("/users", response_class=HTMLResponse)
def users_list(request: Request, page: int = 1) -> HTMLResponse:
    if redirect := _require_admin(request):
        return redirect
    user_store: UserStore = request.app.state.user_store
    page = max(1, page)
    users, total = user_store.list_users_page(page, _PAGE_SIZE)
    total_pages = max(1, (total + _PAGE_SIZE - 1) // _PAGE_SIZE)
    return templates.TemplateResponse(
        request,
        "users.html",
        {
            "users": users,
            "total": total,
            "page": page,
            "total_pages": total_pages,
            "current_user": try_get_current_user(request),
            "notice": _NOTICES.get(request.query_params.get("msg", "")),
        },
    )


@router.post("/users/{user_id}/delete")
def users_delete(request: Request, user_id: int) -> RedirectResponse:
    """Delete a user. Admins cannot delete themselves."""
    if redirect := _require_admin(request):
        return redirect
    current = try_get_current_user(request)
    if user_id != current.id:
        request.app.state.user_store.delete_user(user_id)
        logger.info("User %s deleted by admin %s via web client", user_id, current.id)
    return RedirectResponse("/users?msg=user_deleted", status_code=302)


# ---------------------------------------------------------------------------
# First-run setup
# ---------------------------------------------------------------------------


@router.get("/setup", response_class=HTMLResponse)
def setup_form(request: Request) -> HTMLResponse:
    """Render the first-run setup wizard.

    Once an active admin exists (created here or with `main.py create-admin`)
    the flag is cleared and the page sends visitors to /login.
    """
    user_store: UserStore = request.app.state.user_store
    if user_store.count_active_admins() > 0:
        request.app.state.setup_required = False
        return RedirectResponse("/login?error=setup_complete", status_code=302)
    return templates.TemplateResponse(request, "setup.html", {})


@router.post("/setup", response_class=HTMLResponse)
def setup_post(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    confirm_password: str = Form(...),
    username: str = Form(""),
) -> HTMLResponse:
    """Create the first admin account.

    Re-checks the admin count inside the handler even though the middleware
    already checked setup_required, then inserts through
    UserStore.create_first_admin(), which only writes when no active admin
    exists. A request that loses that race, or reuses a taken email, is sent
    to /login.
    """
    user_store: UserStore = request.app.state.user_store

    if user_store.count_active_admins() > 0:
        request.app.state.setup_required = False
        return RedirectResponse("/login?error=setup_complete", status_code=302)

    email = normalize_identity(email)
    error_msg = None
    if classify_identity(email) != "email":
        error_msg = "Enter a valid email address."
    elif error := check_password(password):
        error_msg = error
    elif password != confirm_password:
        error_msg = "Passwords do not match."
    if error_msg:
        return templates.TemplateResponse(request, "setup.html", {"error_msg": error_msg}, status_code=400)

    new_admin = User(
        username=username.strip()[:USERNAME_MAX_LENGTH] or None,
        email=email,
        role=Role.admin.value,
        password=hash_password(password),
    )
    try:
        admin_id = user_store.create_first_admin(new_admin)
    except IntegrityError:
        return RedirectResponse("/login?error=setup_complete", status_code=302)
    request.app.state.setup_required = False
    if admin_id is None:
        return RedirectResponse("/login?error=setup_complete", status_code=302)
    logger.info("First admin account created (id %s)", admin_id)
    return RedirectResponse("/login", status_code=302)
