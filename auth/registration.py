"""
auth/registration.py -- Registration Workflow: submit, approve, reject, list.

State machine per request:

    pending --approve--> approved   (terminal)
    pending --reject---> rejected   (terminal)

The enrollment code is consumed on APPROVAL, not on submission. A rejected or
abandoned request therefore never burns a valid code, and the applicant can
resubmit with the same code after a rejection.

Atomicity:
  submit()  -- code check, username checks and insert run in one transaction.
               The partial unique index on pending usernames catches the race
               two concurrent submissions would otherwise win together.
  approve() -- account insert, code consumption, request close and the
               applicant notification run in one transaction. Any failure
               (code already used, username taken, request closed by another
               reviewer) rolls back all of it and the request stays pending.

Every mutating operation checks auth.policy.can_review first and raises
Forbidden when it says no.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.codes import CodeRegistry, invalid_code_error, normalize_code
from auth.credentials import check_password, hash_password
from auth.errors import Conflict, Forbidden, InputError, NotFound
from auth.models import Account, AccountStatus, ApprovalOverrides, RegistrationRequest, RequestStatus
from auth.notifications import NotificationCenter
from auth.policy import ReviewScope, can_assign_unit, can_review, policy_for
from auth.store import IdentityStore
from core.clock import Clock, to_iso, utcnow

logger = logging.getLogger("qcguard.registration")

_MAX_USERNAME_LENGTH = 255


def _clean_username(username: str) -> str:
    cleaned = (username or "").strip()
    if not cleaned:
        raise InputError("Username is required.")
    if len(cleaned) > _MAX_USERNAME_LENGTH:
        raise InputError(f"Username must be at most {_MAX_USERNAME_LENGTH} characters.")
    return cleaned


def _pick(requested: int | None, preassigned: int | None, label: str) -> int | None:
    """Resolve a requested assignment against the one baked into the code."""
    if preassigned is None:
        return requested
    if requested is not None and requested != preassigned:
        raise InputError(f"The requested {label} does not match the enrollment code.")
    return preassigned


class RegistrationWorkflow:
    def __init__(
        self,
        store: IdentityStore,
        codes: CodeRegistry,
        notifications: NotificationCenter,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._codes = codes
        self._notifications = notifications
        self._clock = clock

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        code: str,
        username: str,
        password: str | None = None,
        requested_unit_id: int | None = None,
        requested_sub_unit_id: int | None = None,
        requested_group_id: int | None = None,
    ) -> RegistrationRequest:
        """Store a pending request for the role the code pre-authorizes.

        Raises InvalidCode (or its AlreadyUsed / Expired subclasses),
        InputError for a bad username or a password that fails the role's
        policy, and Conflict when the username is taken or already pending.
        """
        username = _clean_username(username)
        code = normalize_code(code)

        try:
            with self._store.transaction() as conn:
                validation = self._codes.validate(code, conn=conn)
                if not validation.valid:
                    raise invalid_code_error(validation.reason)

                policy = policy_for(validation.role)
                checked = check_password(policy.password, password)

                if self._store.get_account_by_username(username, conn=conn) is not None:
                    raise Conflict("Username already exists.")
                if self._store.has_pending_request(username, conn=conn):
                    raise Conflict("A registration request is already pending for this username.")

                request = RegistrationRequest(
                    code=code,
                    username=username,
                    requested_role=validation.role,
                    password_hash=hash_password(checked) if checked else None,
                    requested_unit_id=_pick(requested_unit_id, validation.unit_id, "unit"),
                    requested_sub_unit_id=_pick(requested_sub_unit_id, validation.sub_unit_id, "sub-unit"),
                    requested_group_id=_pick(requested_group_id, validation.group_id, "group"),
                    created_at=to_iso(self._clock()),
                )
                request.id = self._store.create_request(request, conn=conn)
                self._notifications.notify_reviewers(request, conn=conn)
        except IntegrityError as exc:
            raise Conflict("A registration request is already pending for this username.") from exc

        logger.info(
            "REGISTRATION_REQUEST_SUBMITTED request=%s username=%s role=%s",
            request.id,
            username,
            request.requested_role,
        )
        return request

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def _load_for_review(self, request_id: int, reviewer_id: int, conn) -> tuple[RegistrationRequest, Account]:
        request = self._store.get_request(request_id, conn=conn)
        if request is None:
            raise NotFound("Registration request not found.")
        reviewer = self._store.get_account(reviewer_id, conn=conn)
        if reviewer is None:
            raise NotFound("Reviewer account not found.")
        if request.status != RequestStatus.PENDING.value:
            raise Conflict(f"This request has already been {request.status}.")
        if not can_review(reviewer, request):
            raise Forbidden("You are not allowed to review this request.")
        return request, reviewer

    def approve(
        self,
        request_id: int,
        reviewer_id: int,
        overrides: ApprovalOverrides | None = None,
    ) -> Account:
        """Provision the account for a pending request and close it as approved.

        Overrides replace the requested unit / sub-unit / group / password.
        Without a password override the applicant's own password is kept;
        production operators may end up with no password at all.
        """
        overrides = overrides or ApprovalOverrides()
        try:
            with self._store.transaction() as conn:
                request, reviewer = self._load_for_review(request_id, reviewer_id, conn)

                unit_id = overrides.unit_id if overrides.unit_id is not None else request.requested_unit_id
                if not can_assign_unit(reviewer, unit_id):
                    raise Forbidden("You can only assign accounts to your own unit.")

                policy = policy_for(request.requested_role)
                password_hash = request.password_hash
                if overrides.password:
                    password_hash = hash_password(check_password(policy.password, overrides.password))
                if password_hash is None and not policy.passwordless:
                    raise InputError("A password is required for this role.")

                account = Account(
                    username=request.username,
                    role=request.requested_role,
                    password_hash=password_hash,
                    unit_id=unit_id,
                    sub_unit_id=(
                        overrides.sub_unit_id if overrides.sub_unit_id is not None else request.requested_sub_unit_id
                    ),
                    group_id=overrides.group_id if overrides.group_id is not None else request.requested_group_id,
                    status=AccountStatus.ACTIVE.value,
                    created_at=to_iso(self._clock()),
                )
                account.id = self._store.create_account(account, conn=conn)
                self._codes.consume(request.code, account.id, conn=conn)

                now = to_iso(self._clock())
                if not self._store.close_request(
                    request_id, RequestStatus.APPROVED, reviewer_id, now, conn=conn
                ):
                    raise Conflict("This request was processed by another reviewer.")
                self._notifications.notify_approved(account.id, conn=conn)
        except IntegrityError as exc:
            raise Conflict("Username already exists.") from exc

        logger.info(
            "REGISTRATION_APPROVED request=%s username=%s reviewer=%s",
            request_id,
            account.username,
            reviewer_id,
        )
        return account

    def reject(self, request_id: int, reviewer_id: int, reason: str) -> None:
        """Close a pending request as rejected. The code stays usable."""
        reason = (reason or "").strip()
        if not reason:
            raise InputError("A reason is required to reject a request.")

        with self._store.transaction() as conn:
            self._load_for_review(request_id, reviewer_id, conn)
            now = to_iso(self._clock())
            if not self._store.close_request(
                request_id, RequestStatus.REJECTED, reviewer_id, now, reason=reason, conn=conn
            ):
                raise Conflict("This request was processed by another reviewer.")

        logger.info("REGISTRATION_REJECTED request=%s reviewer=%s reason=%r", request_id, reviewer_id, reason)

    def list_pending(self, reviewer_id: int) -> list[RegistrationRequest]:
        """Pending requests reviewer may act on, oldest first. A snapshot, not a live view."""
        reviewer = self._store.get_account(reviewer_id)
        if reviewer is None:
            raise NotFound("Reviewer account not found.")
        scope = policy_for(reviewer.role).review_scope
        if scope is ReviewScope.NONE or (scope is ReviewScope.UNIT and reviewer.unit_id is None):
            return []
        unit_id = reviewer.unit_id if scope is ReviewScope.UNIT else None
        return [r for r in self._store.list_pending_requests(unit_id) if can_review(reviewer, r)]
