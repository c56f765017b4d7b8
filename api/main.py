"""
api/main.py -- FastAPI application entry point for IDecs.

Exposes the account services over HTTP. The account web client and the SSO
client are mounted on the same app by asgi.py and share app.state.

Run with:  python main.py serve
           uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Every /api router is included with the verify_signature dependency, so each
call must carry fresh `timestamp` and `api-key` headers. /api/health is
defined on the app itself and is exempt.

Lifespan handles startup (stores, setup flag, purge task) and shutdown
(cancel purge task, dispose engines) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from accounts.dependencies import get_current_user, verify_signature
from accounts.models import User
from accounts.store import UserStore
from api.limiter import limiter
from api.models import HealthComponents, HealthResponse
from api.responses import code_for_status, envelope
from api.routes.v1.nav import router as nav_router
from api.routes.v1.otp import router as otp_router
from api.routes.v1.user import router as user_router
from core.config import get_settings
from core.models import ResponseCode
from nav.store import NavStore

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if _settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("idecs.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------

_PURGE_INTERVAL_SECONDS = 10 * 60


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired tickets and OTP codes every 10 minutes.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(_PURGE_INTERVAL_SECONDS)
        removed = await asyncio.to_thread(app.state.user_store.purge_expired)
        if removed:
            logger.info("Purged %d expired tickets / codes", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The purge task starts last because it references user_store.
    """
    logger.info("%s API starting up", _settings.app_name)
    app.state.user_store = UserStore()
    app.state.nav_store = NavStore()
    app.state.setup_required = app.state.user_store.count_active_admins() == 0
    logger.info("Stores initialized (setup_required=%s)", app.state.setup_required)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.nav_store.close()
    app.state.user_store.close()
    logger.info("%s API shutdown complete", _settings.app_name)


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title=f"{_settings.app_name} API",
    description="Account signup, login, tickets and profile management.",
    version=_settings.version,
    lifespan=lifespan,
    # Auth-protected equivalents of /docs and /redoc are registered below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() inserts at the front of the stack, so the LAST registration
# is the outermost layer. Registered innermost-first: SlowAPI, CORS, TrustedHost.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "timestamp", "api-key"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Setup redirect middleware
#
# While no active admin exists, every browser page redirects to /setup so the
# first admin can be created. /api is exempt: API clients get JSON, never a
# redirect to an HTML wizard.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def setup_redirect(request: Request, call_next):
    """Redirect page requests to /setup while setup_required is set.

    The flag is computed in lifespan and cleared by the /setup handlers, so
    ordinary requests never pay for a DB query. POST /setup re-checks at the
    DB level before creating anything.
    """
    path = request.url.path
    if getattr(request.app.state, "setup_required", False):
        if path != "/setup" and not path.startswith(("/api/", "/static/")):
            return RedirectResponse("/setup", status_code=302)
    return await call_next(request)


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

_signed = [Depends(verify_signature)]

app.include_router(user_router, prefix="/api", tags=["User"], dependencies=_signed)
app.include_router(otp_router, prefix="/api", tags=["OTP"], dependencies=_signed)
app.include_router(nav_router, prefix="/api", tags=["Nav"], dependencies=_signed)
# The web and SSO routers are mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title=f"{_settings.app_name} API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title=f"{_settings.app_name} API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the {"head", "data"} envelope so API clients parse
# errors and successes the same way.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    return envelope(
        code=ResponseCode.RATE_LIMITED,
        message="Too many requests.",
        status_code=429,
        headers={"Retry-After": str(retry_after)},
    )


def _field_name(loc: tuple) -> str:
    parts = [str(p) for p in loc if p not in ("body", "query", "path", "header")]
    return ".".join(parts)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422; head.message is the first problem, data lists all of them.

    Messages raised from core.policy via ValueError arrive prefixed with
    "Value error, " by pydantic; the prefix is stripped.
    """
    problems = [
        {"field": _field_name(tuple(err.get("loc", ()))), "message": str(err.get("msg", "")).removeprefix("Value error, ")}
        for err in exc.errors()
    ]
    message = problems[0]["message"] if problems else "Request validation failed."
    return envelope(data=problems, code=ResponseCode.VALIDATION_ERROR, message=message, status_code=422)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return the envelope for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise api_error(...), whose detail is a {"code", "message"}
    dict. Anything else (framework 404/405, plain string details) gets a code
    derived from the status.
    """
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        return envelope(
            code=exc.detail.get("code", code_for_status(exc.status_code)),
            message=str(exc.detail.get("message", "")),
            status_code=exc.status_code,
            headers=headers,
        )
    return envelope(
        code=code_for_status(exc.status_code),
        message=str(exc.detail),
        status_code=exc.status_code,
        headers=headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return envelope(
        code=ResponseCode.INTERNAL_ERROR,
        message="An unexpected error occurred.",
        status_code=500,
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly on the app so it needs no signature and no auth. No rate
# limit -- load balancers and monitors must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and database reachability."""
    db_ok = request.app.state.user_store.ping()
    return HealthResponse(
        status="ok" if db_ok else "degraded",
        version=_settings.version,
        components=HealthComponents(database="ok" if db_ok else "unavailable"),
    )
