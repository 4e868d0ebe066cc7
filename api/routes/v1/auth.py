"""
api/routes/v1/auth.py -- First-run setup, login, session and self-service endpoints.

Routes:
  POST /api/v1/setup                            -- create the first administrator (only while empty)
  POST /api/v1/auth/login                       -- open a session; sets cookie; optional remember-me
  POST /api/v1/auth/resume                      -- open a session from a remember secret
  POST /api/v1/auth/logout                      -- end the session, drop remember tokens, clear cookie
  GET  /api/v1/auth/me                          -- current identity and capabilities
  POST /api/v1/auth/password                    -- change own password
  GET  /api/v1/auth/notifications               -- own notifications, newest first
  POST /api/v1/auth/notifications/{id}/read     -- mark one as read (ownership checked)

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT) on top of the
  per-username lockout inside the SessionManager.
  Cache-Control: no-store on every response that carries a session handle
  or a remember secret.

Handlers that hash or verify a password (setup, login, change_password) are
plain def so FastAPI runs them in the threadpool and bcrypt never blocks the
event loop. The SessionManager is bound to the loop at startup and schedules
the new session's watcher task there from the worker thread.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AccountResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    NotificationResponse,
    PasswordChange,
    ResumeRequest,
    SetupRequest,
)
from auth.accounts import AccountService
from auth.dependencies import get_current_session
from auth.errors import IdentityError
from auth.models import Session
from auth.notifications import NotificationCenter
from auth.policy import ROLE_POLICIES
from auth.sessions import SessionManager
from auth.tokens import SESSION_COOKIE, create_session_token, set_session_cookie
from core.clock import to_iso
from core.config import get_settings

# Auth policy:
# - POST /api/v1/setup:                    public -- refused once any account exists
# - POST /api/v1/auth/login:               public, rate-limited
# - POST /api/v1/auth/resume:              public -- the remember secret is the credential
# - everything else:                       requires a live session (get_current_session)
router = APIRouter()


def _session_response(session: Session, status_code: int = 200, **extra) -> JSONResponse:
    token = create_session_token(session.id, session.username, session.role)
    resp = JSONResponse(
        status_code=status_code,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=get_settings().session_token_ttl_seconds,
            username=session.username,
            role=session.role,
            **extra,
        ).model_dump(),
    )
    set_session_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# First run
# ---------------------------------------------------------------------------


@router.post("/setup", response_model=AccountResponse, status_code=201)
def setup(request: Request, body: SetupRequest) -> AccountResponse:
    """Create the first administrator account.

    The setup_required flag only gates other routes; the service re-checks
    at the database level, so a second concurrent setup gets 409.
    """
    accounts: AccountService = request.app.state.accounts
    admin = accounts.bootstrap_admin(body.username, body.password)
    request.app.state.setup_required = False
    return AccountResponse.from_record(admin)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(lambda: get_settings().login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate and open a session.

    With remember_me=true the response also carries a remember secret. A role
    that may not hold one gets 403 role_not_eligible and no session.
    """
    sessions: SessionManager = request.app.state.session_manager
    session = sessions.login(body.username, body.password, passwordless=body.passwordless)

    if not body.remember_me:
        return _session_response(session)

    try:
        token, secret = sessions.enable_remember_me(session.account_id, session.role, body.remember_days)
    except IdentityError:
        sessions.logout(session)
        raise
    return _session_response(session, remember_secret=secret, remember_expires_at=token.expires_at)


@router.post("/auth/resume", response_model=LoginResponse)
async def resume(request: Request, body: ResumeRequest) -> JSONResponse:
    """Open a session from a remember secret. 401 if the secret is unusable."""
    sessions: SessionManager = request.app.state.session_manager
    session = sessions.resume(body.secret)
    if session is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "invalid_remember_token", "message": "Please log in again."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp
    return _session_response(session)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(request: Request, session: Session = Depends(get_current_session)) -> JSONResponse:
    """End the session and clear the cookie."""
    sessions: SessionManager = request.app.state.session_manager
    sessions.logout(session)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    resp.delete_cookie(SESSION_COOKIE)
    return resp


@router.get("/auth/me", response_model=MeResponse)
async def me(session: Session = Depends(get_current_session)) -> MeResponse:
    """Return identity information for the current session."""
    return MeResponse(
        account_id=session.account_id,
        username=session.username,
        role=session.role,
        unit_id=session.unit_id,
        sub_unit_id=session.sub_unit_id,
        group_id=session.group_id,
        session_deadline=to_iso(session.deadline),
        capabilities=sorted(ROLE_POLICIES[session.role].capabilities),
    )


@router.post("/auth/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: PasswordChange,
    session: Session = Depends(get_current_session),
) -> MessageResponse:
    accounts: AccountService = request.app.state.accounts
    accounts.change_password(session.account_id, body.current_password, body.new_password)
    return MessageResponse(message="Password changed.")


@router.get("/auth/notifications", response_model=list[NotificationResponse])
async def list_notifications(
    request: Request,
    session: Session = Depends(get_current_session),
) -> list[NotificationResponse]:
    notifications: NotificationCenter = request.app.state.notifications
    return [NotificationResponse.from_record(n) for n in notifications.list_for(session.account_id)]


@router.post("/auth/notifications/{notification_id}/read", status_code=204)
async def mark_notification_read(
    request: Request,
    notification_id: int,
    session: Session = Depends(get_current_session),
) -> Response:
    """Mark a notification read. Someone else's notification is a 404 [IDOR guard]."""
    notifications: NotificationCenter = request.app.state.notifications
    notifications.mark_read(notification_id, session.account_id)
    return Response(status_code=204)
