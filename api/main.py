"""
api/main.py -- FastAPI application entry point for QC Guard.

Exposes the identity services (registration, sessions, account
administration) over HTTP for the QC dashboard clients.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. setup_required  -- 503 on every API route until the first admin exists
  2. log_requests    -- one access-log line per request with latency
  3. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter

Lifespan handles startup (identity store, services, remember-token purge
task, session-ended log listener) and shutdown (cancel purge task, cancel
session watchers, close DB connection) symmetrically.

Errors:
  Services raise auth.errors.IdentityError subclasses. One exception handler
  maps each class to its HTTP status and renders the shared ErrorResponse
  envelope, so route handlers never translate errors themselves.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.accounts import router as accounts_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.registration import router as registration_router
from auth.accounts import AccountService
from auth.codes import CodeRegistry
from auth.dependencies import get_current_session
from auth.errors import (
    AlreadyUsed,
    Conflict,
    Disabled,
    Expired,
    Forbidden,
    IdentityError,
    InputError,
    InvalidCode,
    InvalidCredentials,
    NotFound,
    RoleNotEligible,
    TooManyAttempts,
)
from auth.models import Session, SessionEnded
from auth.notifications import NotificationCenter
from auth.registration import RegistrationWorkflow
from auth.sessions import SessionManager
from auth.store import IdentityStore
from core.clock import Clock, to_iso, utcnow

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("qcguard.api")

# Most specific class first: AlreadyUsed and Expired are InvalidCode too.
_ERROR_STATUS: dict[type[IdentityError], int] = {
    InputError: 422,
    NotFound: 404,
    AlreadyUsed: 409,
    Expired: 410,
    InvalidCode: 400,
    InvalidCredentials: 401,
    Disabled: 403,
    Forbidden: 403,
    Conflict: 409,
    RoleNotEligible: 403,
    TooManyAttempts: 429,
}


def status_for(exc: IdentityError) -> int:
    for cls in type(exc).__mro__:
        if cls in _ERROR_STATUS:
            return _ERROR_STATUS[cls]
    return 400


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def _log_session_end(event: SessionEnded) -> None:
    logger.info(
        "Session %s for %s ended (%s)",
        event.session.id[:8],
        event.session.username,
        event.reason.value,
    )


def init_services(app: FastAPI, store: IdentityStore, clock: Clock = utcnow) -> None:
    """Build every identity service over store and attach them to app.state.

    Shared by the real lifespan and the test lifespan so both wire the same
    object graph. Must run on the server's event loop: the session manager
    binds to it so threadpool handlers can arm watcher tasks there.
    """
    notifications = NotificationCenter(store, clock)
    codes = CodeRegistry(store, clock)
    sessions = SessionManager(store, clock=clock)
    sessions.bind_loop()

    app.state.identity_store = store
    app.state.notifications = notifications
    app.state.code_registry = codes
    app.state.registration = RegistrationWorkflow(store, codes, notifications, clock)
    app.state.session_manager = sessions
    app.state.accounts = AccountService(store, sessions, clock)
    app.state.setup_required = not store.has_accounts()
    app.state.unsubscribe_session_log = sessions.subscribe(_log_session_end)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired remember tokens every 6 hours.

    Expired tokens are already refused on read; this only keeps the table
    from growing. CancelledError from task.cancel() during shutdown
    propagates out of asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(6 * 60 * 60)
        purged = app.state.identity_store.purge_expired_remember_tokens(to_iso(utcnow()))
        if purged:
            logger.info("Purged %d expired remember tokens", purged)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The purge task references app.state.identity_store, so the
    store must exist before the task starts.
    """
    logger.info("QC Guard API starting up")
    init_services(app, IdentityStore())
    logger.info("Identity services initialized (setup_required=%s)", app.state.setup_required)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.unsubscribe_session_log()
    app.state.session_manager.close()
    app.state.identity_store.close()
    logger.info("QC Guard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="QC Guard API",
    description="Identity, session and registration lifecycle for the QC dashboard.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by session-protected routes below.
    docs_url=None,
    redoc_url=None,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Registered before setup_required so that it sits inside it: a 503 from the
# setup gate is answered without reaching this coroutine.
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
# First-run gate
#
# Until the first administrator exists, every route except setup and health
# answers 503 setup_required. The flag is set in lifespan and cleared by
# POST /api/v1/setup; it is an in-memory flag so no request pays a DB call
# for it. The setup route re-checks at the DB level.
# ---------------------------------------------------------------------------

_SETUP_EXEMPT = ("/api/v1/setup", "/api/v1/health")


@app.middleware("http")
async def setup_required(request: Request, call_next):
    if getattr(request.app.state, "setup_required", False) and request.url.path not in _SETUP_EXEMPT:
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(
                error=ErrorDetail(
                    code="setup_required",
                    message="No administrator exists yet. Complete setup first.",
                )
            ).model_dump(),
        )
    return await call_next(request)


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(registration_router, prefix="/api/v1", tags=["Registration"])
app.include_router(accounts_router, prefix="/api/v1", tags=["Accounts"])


# ---------------------------------------------------------------------------
# Session-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(session: Session = Depends(get_current_session)):
    """Swagger UI -- requires a live session."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="QC Guard API")


@app.get("/redoc", include_in_schema=False)
async def redoc(session: Session = Depends(get_current_session)):
    """ReDoc UI -- requires a live session."""
    return get_redoc_html(openapi_url="/openapi.json", title="QC Guard API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(IdentityError)
async def identity_error_handler(request: Request, exc: IdentityError) -> JSONResponse:
    """Render a service-layer error with its mapped status and stable code."""
    status = status_for(exc)
    if status >= 500:
        logger.error("Identity error on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    slowapi stores the wait on the exception as exc.retry_after (int seconds).
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Dependencies raise HTTPException with a {"code", "message"} dict as
    detail. That dict is used directly as the error field; str(dict) would
    produce a Python repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, current version and identity database reachability."""
    database = "ok"
    try:
        request.app.state.identity_store.has_accounts()
    except SQLAlchemyError:
        logger.exception("Health check: identity database unreachable")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
