"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic). The store maps rows to
these; the services in codes.py, registration.py, sessions.py and accounts.py
do the work.

Persisted timestamps are ISO 8601 UTC strings (see core/clock.to_iso). The
ephemeral Session keeps real datetimes because it never touches the database.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    ADMINISTRATOR = "administrator"
    METHOD_ENGINEER = "method-engineer"
    QUALITY_CONTROL = "quality-control"
    PRODUCTION_OPERATOR = "production-operator"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class EndReason(str, Enum):
    LOGOUT = "logout"
    TIMEOUT = "timeout"
    INVALIDATED = "invalidated"


@dataclass
class Account:
    """An identity that can log in.

    password_hash is None for production operators provisioned without a
    password. Accounts are never deleted; disabling is the only way out.
    unit_id / sub_unit_id / group_id reference organizational records owned
    by the wider application (workshop, workstation, group).
    """

    username: str
    role: str
    id: int | None = None
    password_hash: str | None = None
    unit_id: int | None = None
    sub_unit_id: int | None = None
    group_id: int | None = None
    status: str = AccountStatus.ACTIVE.value
    created_at: str = ""
    last_login: str | None = None


@dataclass
class EnrollmentCode:
    """A single-use token that pre-authorizes a role and assignment.

    used_at is set exactly once, when an approval consumes the code. A code
    with used_at set, or past expires_at, never validates again.
    """

    code: str
    role: str
    created_by: int
    id: int | None = None
    unit_id: int | None = None
    sub_unit_id: int | None = None
    group_id: int | None = None
    created_at: str = ""
    expires_at: str | None = None  # None = never expires
    used_at: str | None = None
    used_by: int | None = None  # id of the account the approval created


@dataclass
class CodeValidation:
    """Outcome of CodeRegistry.validate(). reason is set only when invalid."""

    valid: bool
    role: str | None = None
    unit_id: int | None = None
    sub_unit_id: int | None = None
    group_id: int | None = None
    reason: str | None = None  # "unknown" | "already_used" | "expired"


@dataclass
class RegistrationRequest:
    """A pending application for an account.

    status moves pending -> approved or pending -> rejected, once. The
    applicant's password (if any) is hashed at submission so the plaintext
    never sits in the database waiting for review.
    """

    code: str
    username: str
    requested_role: str
    id: int | None = None
    password_hash: str | None = None
    requested_unit_id: int | None = None
    requested_sub_unit_id: int | None = None
    requested_group_id: int | None = None
    status: str = RequestStatus.PENDING.value
    reviewed_by: int | None = None
    processed_at: str | None = None
    rejection_reason: str | None = None
    created_at: str = ""


@dataclass
class ApprovalOverrides:
    """Reviewer-supplied values that replace the requested ones on approval."""

    unit_id: int | None = None
    sub_unit_id: int | None = None
    group_id: int | None = None
    password: str | None = None


@dataclass
class RememberToken:
    """A durable credential substitute for production operators.

    token_hash is HMAC-SHA256(SECRET_KEY, secret). The raw secret is handed to
    the client once and never stored.
    """

    account_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    created_at: str = ""


@dataclass
class Notification:
    account_id: int
    kind: str  # "registration_request" | "registration_approved"
    title: str
    message: str
    id: int | None = None
    created_at: str = ""
    read_at: str | None = None


@dataclass(eq=False)
class Session:
    """A live login. Never persisted.

    deadline is pushed forward by touch(). timer holds the watcher task that
    polls for inactivity; it is cancelled on every path that ends the session.
    """

    account_id: int
    username: str
    role: str
    started_at: datetime
    deadline: datetime
    unit_id: int | None = None
    sub_unit_id: int | None = None
    group_id: int | None = None
    id: str = field(default_factory=lambda: secrets.token_urlsafe(24))
    live: bool = True
    timer: asyncio.Task | None = field(default=None, repr=False)


@dataclass(frozen=True)
class SessionEnded:
    """Payload of the "session ended" event."""

    session: Session
    reason: EndReason
