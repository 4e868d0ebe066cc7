"""
api/routes/v1/accounts.py -- Account administration endpoints (users capability).

Routes:
  GET   /api/v1/accounts                       -- list all accounts
  POST  /api/v1/accounts                       -- provision an account directly
  GET   /api/v1/accounts/recent-logins         -- most recent logins first
  PATCH /api/v1/accounts/{id}                  -- change role and/or status
  POST  /api/v1/accounts/{id}/reset-password   -- generate a temporary password

Self-disable and disabling or demoting the last active administrator are
refused by AccountService, not here.

create_account and reset_password hash a password, so they are plain def
and run in the threadpool.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from api.models import AccountCreate, AccountPatch, AccountResponse, TemporaryPasswordResponse
from auth.accounts import AccountService
from auth.dependencies import require_capability
from auth.models import Session
from auth.policy import Capability

router = APIRouter(prefix="/accounts")

_require_users = require_capability(Capability.USERS)


@router.get("", response_model=list[AccountResponse])
async def list_accounts(request: Request, session: Session = Depends(_require_users)) -> list[AccountResponse]:
    accounts: AccountService = request.app.state.accounts
    return [AccountResponse.from_record(a) for a in accounts.list_accounts(session.account_id)]


@router.post("", response_model=AccountResponse, status_code=201)
def create_account(
    request: Request,
    body: AccountCreate,
    session: Session = Depends(_require_users),
) -> AccountResponse:
    accounts: AccountService = request.app.state.accounts
    created = accounts.provision(
        session.account_id,
        body.username,
        body.role.value,
        password=body.password,
        unit_id=body.unit_id,
        sub_unit_id=body.sub_unit_id,
        group_id=body.group_id,
    )
    return AccountResponse.from_record(created)


@router.get("/recent-logins", response_model=list[AccountResponse])
async def recent_logins(
    request: Request,
    limit: int = Query(default=5, ge=1, le=100),
    session: Session = Depends(_require_users),
) -> list[AccountResponse]:
    accounts: AccountService = request.app.state.accounts
    return [AccountResponse.from_record(a) for a in accounts.recent_logins(session.account_id, limit=limit)]


@router.patch("/{account_id}", response_model=AccountResponse)
async def update_account(
    request: Request,
    account_id: int,
    body: AccountPatch,
    session: Session = Depends(_require_users),
) -> AccountResponse:
    """Change role and/or status. The target's live sessions are re-validated at once."""
    if body.role is None and body.status is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    accounts: AccountService = request.app.state.accounts
    updated = None
    if body.role is not None:
        updated = accounts.set_role(session.account_id, account_id, body.role.value)
    if body.status is not None:
        updated = accounts.set_status(session.account_id, account_id, body.status.value)
    return AccountResponse.from_record(updated)


@router.post("/{account_id}/reset-password", response_model=TemporaryPasswordResponse)
def reset_password(
    request: Request,
    account_id: int,
    session: Session = Depends(_require_users),
) -> JSONResponse:
    accounts: AccountService = request.app.state.accounts
    temporary = accounts.reset_password(session.account_id, account_id)
    resp = JSONResponse(
        content=TemporaryPasswordResponse(account_id=account_id, temporary_password=temporary).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp
