"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

The session handle is looked up in priority order:
  1. JWT cookie ("access_token") -- set by the login and resume routes.
  2. Authorization: Bearer <token> header -- API clients and terminals.

A handle only names a session. Every authenticated request then asks the
SessionManager to re-validate that session against the current account
record and, if it is still live, records the request as activity (touch).

try_get_current_session() is the soft variant (returns None on failure).
get_current_session() wraps it and raises HTTP 401 if unauthenticated.
require_capability() wraps get_current_session() and raises HTTP 403 when the
session's role lacks the capability.

The helpers are async so they run on the event loop, the same thread that
owns every session's watcher task.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from fastapi import HTTPException, Request

from auth.models import Session
from auth.policy import Capability, can_access
from auth.sessions import SessionManager
from auth.tokens import SESSION_COOKIE, decode_session_token


def read_session_token(request: Request) -> str | None:
    token: str | None = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


async def try_get_current_session(request: Request) -> Session | None:
    """Resolve, re-validate and touch the request's session.

    Returns None when there is no handle, the handle is invalid, or the
    session has ended (logout, timeout, or invalidation just now).
    """
    token = read_session_token(request)
    if token is None:
        return None
    session_id = decode_session_token(token)
    if session_id is None:
        return None

    manager: SessionManager = request.app.state.session_manager
    session = manager.get(session_id)
    if session is None or not manager.validate(session):
        return None
    manager.touch(session)
    return session


async def get_current_session(request: Request) -> Session:
    """Require a live session. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(session: Session = Depends(get_current_session)): ...
    """
    session = await try_get_current_session(request)
    if session is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required. Please log in again."},
        )
    return session


def require_capability(capability: Capability) -> Callable[[Request], Awaitable[Session]]:
    """Build a dependency that requires a live session whose role grants capability.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(session: Session = Depends(require_capability(Capability.USERS))): ...
    """

    async def dependency(request: Request) -> Session:
        session = await get_current_session(request)
        if not can_access(session.role, capability.value):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "You are not allowed to access this resource."},
            )
        return session

    return dependency
