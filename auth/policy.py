"""
auth/policy.py -- Role policy table and authorization decisions.

RULE: role-conditioned behavior is looked up here, never branched on inline.
Adding a role means adding a ROLE_POLICIES entry, not touching control flow in
the services.

Every function in this module is pure: same inputs, same answer, no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from auth.credentials import RELAXED_POLICY, STRICT_POLICY, PasswordPolicy
from auth.errors import InputError
from auth.models import Account, AccountStatus, RegistrationRequest, Role


class ReviewScope(str, Enum):
    GLOBAL = "global"  # any request
    UNIT = "unit"  # requests for the reviewer's own unit only
    NONE = "none"


class Capability(str, Enum):
    DASHBOARD = "dashboard"
    SECTIONS = "sections"
    GAMMAS = "gammas"
    MEASUREMENTS = "measurements"
    PRODUCTION_DASHBOARD = "production_dashboard"
    USER_PREFERENCES = "user_preferences"
    FAMILIES = "families"
    PRODUCTS = "products"
    USER_VALIDATION = "user_validation"
    USERS = "users"
    GROUPS = "groups"
    REGISTRATION_CODES = "registration_codes"
    DATABASE = "database"
    TRANSLATIONS = "translations"
    SYSTEM_SETTINGS = "system_settings"
    STORAGE = "storage"
    LOGS = "logs"


@dataclass(frozen=True)
class RolePolicy:
    review_scope: ReviewScope
    password: PasswordPolicy
    passwordless: bool  # may log in without a password
    remember_me: bool  # may hold a remember token
    capabilities: frozenset[str]


_BASE = frozenset(
    c.value for c in (Capability.DASHBOARD, Capability.SECTIONS, Capability.GAMMAS, Capability.MEASUREMENTS)
)
_MANAGEMENT = frozenset(c.value for c in (Capability.FAMILIES, Capability.PRODUCTS, Capability.USER_VALIDATION))
_ADMINISTRATION = frozenset(
    c.value
    for c in (
        Capability.USERS,
        Capability.GROUPS,
        Capability.REGISTRATION_CODES,
        Capability.DATABASE,
        Capability.TRANSLATIONS,
        Capability.SYSTEM_SETTINGS,
        Capability.STORAGE,
        Capability.LOGS,
    )
)

# Keyed by the plain string value: str-mixin enums hash by member name, so a
# Role-keyed dict would miss lookups made with the string read from the DB.
ROLE_POLICIES: dict[str, RolePolicy] = {
    Role.ADMINISTRATOR.value: RolePolicy(
        review_scope=ReviewScope.GLOBAL,
        password=STRICT_POLICY,
        passwordless=False,
        remember_me=False,
        capabilities=_BASE | _MANAGEMENT | _ADMINISTRATION,
    ),
    Role.METHOD_ENGINEER.value: RolePolicy(
        review_scope=ReviewScope.UNIT,
        password=STRICT_POLICY,
        passwordless=False,
        remember_me=False,
        capabilities=_BASE | _MANAGEMENT,
    ),
    Role.QUALITY_CONTROL.value: RolePolicy(
        review_scope=ReviewScope.NONE,
        password=STRICT_POLICY,
        passwordless=False,
        remember_me=False,
        capabilities=_BASE,
    ),
    Role.PRODUCTION_OPERATOR.value: RolePolicy(
        review_scope=ReviewScope.NONE,
        password=RELAXED_POLICY,
        passwordless=True,
        remember_me=True,
        capabilities=_BASE | {Capability.PRODUCTION_DASHBOARD.value, Capability.USER_PREFERENCES.value},
    ),
}


def policy_for(role: str) -> RolePolicy:
    """Return the policy for role. Raises InputError for an unknown role."""
    try:
        return ROLE_POLICIES[role]
    except KeyError:
        raise InputError(f"Unknown role {role!r}.") from None


def _is_active(account: Account) -> bool:
    return account.status == AccountStatus.ACTIVE.value


def can_review(reviewer: Account, request: RegistrationRequest) -> bool:
    """Decide whether reviewer may approve or reject request.

    Administrators review everything; method engineers review requests for
    their own unit; everyone else reviews nothing. Disabled accounts review
    nothing.
    """
    policy = ROLE_POLICIES.get(reviewer.role)
    if policy is None or not _is_active(reviewer):
        return False
    if policy.review_scope is ReviewScope.GLOBAL:
        return True
    if policy.review_scope is ReviewScope.UNIT:
        return reviewer.unit_id is not None and request.requested_unit_id == reviewer.unit_id
    return False


def can_assign_unit(reviewer: Account, unit_id: int | None) -> bool:
    """A unit-scoped reviewer may not move an applicant out of their own unit."""
    policy = ROLE_POLICIES.get(reviewer.role)
    if policy is None:
        return False
    if policy.review_scope is ReviewScope.GLOBAL:
        return True
    return policy.review_scope is ReviewScope.UNIT and unit_id == reviewer.unit_id


def can_remember(role: str) -> bool:
    """Only roles flagged remember_me may hold a remember token."""
    policy = ROLE_POLICIES.get(role)
    return policy is not None and policy.remember_me


def can_access(role: str, capability: str) -> bool:
    policy = ROLE_POLICIES.get(role)
    return policy is not None and capability in policy.capabilities


def can_manage(account: Account, capability: Capability) -> bool:
    """Capability check for an acting account, requiring it to be active."""
    return _is_active(account) and can_access(account.role, capability.value)
