"""
API request and response models for the QC Guard identity REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Secrets (passwords, remember secrets) only ever appear in request bodies and
in the two responses that hand a freshly generated one to its owner.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Account, EnrollmentCode, Notification, RegistrationRequest

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    administrator = "administrator"
    method_engineer = "method-engineer"
    quality_control = "quality-control"
    production_operator = "production-operator"


class AccountStatusEnum(str, Enum):
    active = "active"
    disabled = "disabled"


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class SetupRequest(BaseModel):
    """Request body for POST /api/v1/setup (first administrator)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=72)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    passwordless -- shared-terminal entry for production operators.
    remember_me  -- also issue a remember secret (production operators only).
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: Optional[str] = Field(default=None, max_length=72)
    passwordless: bool = False
    remember_me: bool = False
    remember_days: Optional[int] = Field(default=None, ge=1)


class ResumeRequest(BaseModel):
    """Request body for POST /api/v1/auth/resume."""

    secret: str = Field(min_length=1, max_length=128)


class PasswordChange(BaseModel):
    """Request body for POST /api/v1/auth/password.

    new_password may be empty only for roles whose policy allows no password.
    """

    current_password: Optional[str] = Field(default=None, max_length=72)
    new_password: Optional[str] = Field(default=None, max_length=72)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    """Response for login and resume. remember_secret is present only when
    remember-me was requested and is never retrievable again."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_in: int
    username: str
    role: str
    remember_secret: Optional[str] = None
    remember_expires_at: Optional[str] = None


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    account_id: int
    username: str
    role: str
    unit_id: Optional[int] = None
    sub_unit_id: Optional[int] = None
    group_id: Optional[int] = None
    session_deadline: str
    capabilities: list[str]


class NotificationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    kind: str
    title: str
    message: str
    created_at: str
    read_at: Optional[str] = None

    @classmethod
    def from_record(cls, n: Notification) -> "NotificationResponse":
        return cls(
            id=n.id,
            kind=n.kind,
            title=n.title,
            message=n.message,
            created_at=n.created_at,
            read_at=n.read_at,
        )


# ---------------------------------------------------------------------------
# Registration -- request models
# ---------------------------------------------------------------------------


class CodeCreate(BaseModel):
    """Request body for POST /api/v1/registration/codes.

    expires_in_hours falls back to CODE_EXPIRY_HOURS; never_expires wins over it.
    """

    role: RoleEnum
    unit_id: Optional[int] = None
    sub_unit_id: Optional[int] = None
    group_id: Optional[int] = None
    expires_in_hours: Optional[int] = Field(default=None, ge=1, le=24 * 365)
    never_expires: bool = False


class RegistrationSubmit(BaseModel):
    """Request body for POST /api/v1/registration/requests."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=16)
    username: str = Field(min_length=1, max_length=255)
    password: Optional[str] = Field(default=None, max_length=72)
    requested_unit_id: Optional[int] = None
    requested_sub_unit_id: Optional[int] = None
    requested_group_id: Optional[int] = None


class ApprovalRequest(BaseModel):
    """Optional overrides applied when approving a request."""

    unit_id: Optional[int] = None
    sub_unit_id: Optional[int] = None
    group_id: Optional[int] = None
    password: Optional[str] = Field(default=None, max_length=72)


class RejectionRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    reason: str = Field(min_length=1, max_length=1000)


# ---------------------------------------------------------------------------
# Registration -- response models
# ---------------------------------------------------------------------------


class CodeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    role: str
    unit_id: Optional[int] = None
    sub_unit_id: Optional[int] = None
    group_id: Optional[int] = None
    created_by: int
    created_at: str
    expires_at: Optional[str] = None
    used_at: Optional[str] = None
    used_by: Optional[int] = None

    @classmethod
    def from_record(cls, c: EnrollmentCode) -> "CodeResponse":
        return cls(
            code=c.code,
            role=c.role,
            unit_id=c.unit_id,
            sub_unit_id=c.sub_unit_id,
            group_id=c.group_id,
            created_by=c.created_by,
            created_at=c.created_at,
            expires_at=c.expires_at,
            used_at=c.used_at,
            used_by=c.used_by,
        )


class CodeValidationResponse(BaseModel):
    """Response for GET /api/v1/registration/codes/{code}.

    Invalid codes carry only a reason; the role and assignment are withheld.
    """

    model_config = ConfigDict(frozen=True)

    valid: bool
    role: Optional[str] = None
    unit_id: Optional[int] = None
    sub_unit_id: Optional[int] = None
    group_id: Optional[int] = None
    reason: Optional[str] = None


class RegistrationRequestResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    requested_role: str
    requested_unit_id: Optional[int] = None
    requested_sub_unit_id: Optional[int] = None
    requested_group_id: Optional[int] = None
    status: str
    created_at: str
    processed_at: Optional[str] = None
    reviewed_by: Optional[int] = None
    rejection_reason: Optional[str] = None

    @classmethod
    def from_record(cls, r: RegistrationRequest) -> "RegistrationRequestResponse":
        return cls(
            id=r.id,
            username=r.username,
            requested_role=r.requested_role,
            requested_unit_id=r.requested_unit_id,
            requested_sub_unit_id=r.requested_sub_unit_id,
            requested_group_id=r.requested_group_id,
            status=r.status,
            created_at=r.created_at,
            processed_at=r.processed_at,
            reviewed_by=r.reviewed_by,
            rejection_reason=r.rejection_reason,
        )


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountCreate(BaseModel):
    """Request body for POST /api/v1/accounts."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    role: RoleEnum
    password: Optional[str] = Field(default=None, max_length=72)
    unit_id: Optional[int] = None
    sub_unit_id: Optional[int] = None
    group_id: Optional[int] = None


class AccountPatch(BaseModel):
    """Request body for PATCH /api/v1/accounts/{id}. Omitted fields stay unchanged."""

    role: Optional[RoleEnum] = None
    status: Optional[AccountStatusEnum] = None


class AccountResponse(BaseModel):
    """Account as shown to administrators. The password digest never leaves the server."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str
    unit_id: Optional[int] = None
    sub_unit_id: Optional[int] = None
    group_id: Optional[int] = None
    status: str
    has_password: bool
    created_at: str
    last_login: Optional[str] = None

    @classmethod
    def from_record(cls, a: Account) -> "AccountResponse":
        return cls(
            id=a.id,
            username=a.username,
            role=a.role,
            unit_id=a.unit_id,
            sub_unit_id=a.sub_unit_id,
            group_id=a.group_id,
            status=a.status,
            has_password=a.password_hash is not None,
            created_at=a.created_at,
            last_login=a.last_login,
        )


class TemporaryPasswordResponse(BaseModel):
    """Shown once to the administrator who reset the password."""

    model_config = ConfigDict(frozen=True)

    account_id: int
    temporary_password: str


# ---------------------------------------------------------------------------
# Common
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
