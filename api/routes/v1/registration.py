"""
api/routes/v1/registration.py -- Enrollment code and registration request endpoints.

Routes:
  POST /api/v1/registration/codes                       -- issue a code (registration_codes)
  GET  /api/v1/registration/codes                       -- list codes, newest first (registration_codes)
  GET  /api/v1/registration/codes/{code}                -- validate a code (public, read-only)
  POST /api/v1/registration/requests                    -- submit a request (public)
  GET  /api/v1/registration/requests/pending            -- requests the caller may review
  POST /api/v1/registration/requests/{id}/approve       -- approve with optional overrides
  POST /api/v1/registration/requests/{id}/reject        -- reject with a reason

Review authorization is decided inside RegistrationWorkflow (auth.policy.
can_review), not by a capability gate here: a method engineer may review
their own unit's requests only, which a role-level capability cannot express.

submit_request and approve_request may hash a password, so they are plain
def and run in the threadpool.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.models import (
    AccountResponse,
    ApprovalRequest,
    CodeCreate,
    CodeResponse,
    CodeValidationResponse,
    RegistrationRequestResponse,
    RegistrationSubmit,
    RejectionRequest,
)
from auth.codes import CodeRegistry
from auth.dependencies import get_current_session, require_capability
from auth.errors import NotFound
from auth.models import ApprovalOverrides, Session
from auth.policy import Capability
from auth.registration import RegistrationWorkflow
from auth.store import IdentityStore

router = APIRouter(prefix="/registration")


# ---------------------------------------------------------------------------
# Enrollment codes
# ---------------------------------------------------------------------------


@router.post("/codes", response_model=CodeResponse, status_code=201)
async def issue_code(
    request: Request,
    body: CodeCreate,
    session: Session = Depends(require_capability(Capability.REGISTRATION_CODES)),
) -> CodeResponse:
    codes: CodeRegistry = request.app.state.code_registry
    record = codes.issue(
        session.account_id,
        body.role.value,
        unit_id=body.unit_id,
        sub_unit_id=body.sub_unit_id,
        group_id=body.group_id,
        expires_in_hours=body.expires_in_hours,
        never_expires=body.never_expires,
    )
    return CodeResponse.from_record(record)


@router.get("/codes", response_model=list[CodeResponse])
async def list_codes(
    request: Request,
    session: Session = Depends(require_capability(Capability.REGISTRATION_CODES)),
) -> list[CodeResponse]:
    codes: CodeRegistry = request.app.state.code_registry
    return [CodeResponse.from_record(c) for c in codes.list_codes(session.account_id)]


@router.get("/codes/{code}", response_model=CodeValidationResponse)
async def validate_code(request: Request, code: str) -> CodeValidationResponse:
    """Check a code before the applicant fills in the rest of the form."""
    codes: CodeRegistry = request.app.state.code_registry
    result = codes.validate(code)
    return CodeValidationResponse(
        valid=result.valid,
        role=result.role,
        unit_id=result.unit_id,
        sub_unit_id=result.sub_unit_id,
        group_id=result.group_id,
        reason=result.reason,
    )


# ---------------------------------------------------------------------------
# Registration requests
# ---------------------------------------------------------------------------


@router.post("/requests", response_model=RegistrationRequestResponse, status_code=201)
def submit_request(request: Request, body: RegistrationSubmit) -> RegistrationRequestResponse:
    workflow: RegistrationWorkflow = request.app.state.registration
    created = workflow.submit(
        body.code,
        body.username,
        password=body.password,
        requested_unit_id=body.requested_unit_id,
        requested_sub_unit_id=body.requested_sub_unit_id,
        requested_group_id=body.requested_group_id,
    )
    return RegistrationRequestResponse.from_record(created)


@router.get("/requests/pending", response_model=list[RegistrationRequestResponse])
async def list_pending(
    request: Request,
    session: Session = Depends(get_current_session),
) -> list[RegistrationRequestResponse]:
    """Pending requests the caller may review, oldest first. Empty for non-reviewers."""
    workflow: RegistrationWorkflow = request.app.state.registration
    return [RegistrationRequestResponse.from_record(r) for r in workflow.list_pending(session.account_id)]


@router.post("/requests/{request_id}/approve", response_model=AccountResponse)
def approve_request(
    request: Request,
    request_id: int,
    body: Optional[ApprovalRequest] = None,
    session: Session = Depends(get_current_session),
) -> AccountResponse:
    workflow: RegistrationWorkflow = request.app.state.registration
    overrides = ApprovalOverrides(**body.model_dump()) if body is not None else None
    account = workflow.approve(request_id, session.account_id, overrides)
    return AccountResponse.from_record(account)


@router.post("/requests/{request_id}/reject", response_model=RegistrationRequestResponse)
async def reject_request(
    request: Request,
    request_id: int,
    body: RejectionRequest,
    session: Session = Depends(get_current_session),
) -> RegistrationRequestResponse:
    workflow: RegistrationWorkflow = request.app.state.registration
    workflow.reject(request_id, session.account_id, body.reason)
    store: IdentityStore = request.app.state.identity_store
    closed = store.get_request(request_id)
    if closed is None:
        raise NotFound("Registration request not found.")
    return RegistrationRequestResponse.from_record(closed)
