"""
auth/codes.py -- Code Registry: issue, validate and consume enrollment codes.

State machine per code: issued -> consumed (terminal). A code also becomes
permanently invalid once its expiry passes. validate() is read-only and fails
closed; consume() is the only mutation and is safe against a concurrent
consumer because the whole check lives in one conditional UPDATE.

Code format is two letters followed by six digits (e.g. "QC482913"). The
format exists so people can read codes aloud and spot typos; the registry
itself relies only on the UNIQUE constraint.
"""

from __future__ import annotations

import logging
import secrets
import string
from datetime import timedelta

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.errors import AlreadyUsed, Conflict, Expired, Forbidden, InputError, InvalidCode, NotFound
from auth.models import CodeValidation, EnrollmentCode
from auth.policy import Capability, can_manage, policy_for
from auth.store import IdentityStore
from core.clock import Clock, from_iso, to_iso, utcnow
from core.config import get_settings

logger = logging.getLogger("qcguard.codes")

UNKNOWN = "unknown"
ALREADY_USED = "already_used"
EXPIRED = "expired"

_INVALID_BY_REASON: dict[str, type[InvalidCode]] = {
    UNKNOWN: InvalidCode,
    ALREADY_USED: AlreadyUsed,
    EXPIRED: Expired,
}


def generate_code() -> str:
    """Return a random code: 2 uppercase letters + 6 digits."""
    letters = "".join(secrets.choice(string.ascii_uppercase) for _ in range(2))
    digits = "".join(secrets.choice(string.digits) for _ in range(6))
    return letters + digits


def normalize_code(code: str) -> str:
    return code.strip().upper()


def invalid_code_error(reason: str) -> InvalidCode:
    """Map a validation reason to the matching exception instance."""
    return _INVALID_BY_REASON.get(reason, InvalidCode)()


class CodeRegistry:
    def __init__(self, store: IdentityStore, clock: Clock = utcnow) -> None:
        self._store = store
        self._clock = clock

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue(
        self,
        issuer_id: int,
        role: str,
        unit_id: int | None = None,
        sub_unit_id: int | None = None,
        group_id: int | None = None,
        expires_in_hours: int | None = None,
        never_expires: bool = False,
    ) -> EnrollmentCode:
        """Create a new code pre-authorizing role and the given assignment.

        expires_in_hours defaults to CODE_EXPIRY_HOURS; never_expires=True
        issues a code with no expiry at all.
        """
        settings = get_settings()
        issuer = self._store.get_account(issuer_id)
        if issuer is None:
            raise NotFound("Issuing account not found.")
        if not can_manage(issuer, Capability.REGISTRATION_CODES):
            raise Forbidden("Only administrators can issue enrollment codes.")
        policy_for(role)

        now = self._clock()
        expires_at: str | None = None
        if not never_expires:
            hours = settings.code_expiry_hours if expires_in_hours is None else expires_in_hours
            if hours <= 0:
                raise InputError("Code lifetime must be at least one hour.")
            expires_at = to_iso(now + timedelta(hours=hours))

        for _ in range(settings.code_generation_attempts):
            record = EnrollmentCode(
                code=generate_code(),
                role=role,
                unit_id=unit_id,
                sub_unit_id=sub_unit_id,
                group_id=group_id,
                created_by=issuer_id,
                created_at=to_iso(now),
                expires_at=expires_at,
            )
            try:
                record.id = self._store.create_code(record)
            except IntegrityError:
                continue
            logger.info("REGISTRATION_CODE_CREATED code=%s role=%s issuer=%s", record.code, role, issuer_id)
            return record

        raise Conflict("Failed to generate a unique registration code. Try again.")

    def list_codes(self, issuer_id: int) -> list[EnrollmentCode]:
        issuer = self._store.get_account(issuer_id)
        if issuer is None:
            raise NotFound("Account not found.")
        if not can_manage(issuer, Capability.REGISTRATION_CODES):
            raise Forbidden("Only administrators can list enrollment codes.")
        return self._store.list_codes()

    # ------------------------------------------------------------------
    # Validation and consumption
    # ------------------------------------------------------------------

    def _reason(self, record: EnrollmentCode | None) -> str | None:
        if record is None:
            return UNKNOWN
        if record.used_at is not None:
            return ALREADY_USED
        if record.expires_at is not None and from_iso(record.expires_at) <= self._clock():
            return EXPIRED
        return None

    def validate(self, code: str, conn: Connection | None = None) -> CodeValidation:
        """Check code without changing it. Unknown, used and expired all come back invalid."""
        record = self._store.get_code(normalize_code(code), conn=conn)
        reason = self._reason(record)
        if reason is not None:
            return CodeValidation(valid=False, reason=reason)
        return CodeValidation(
            valid=True,
            role=record.role,
            unit_id=record.unit_id,
            sub_unit_id=record.sub_unit_id,
            group_id=record.group_id,
        )

    def consume(self, code: str, consumer_id: int, conn: Connection | None = None) -> None:
        """Mark code used by consumer_id.

        Raises AlreadyUsed, Expired or InvalidCode when the code cannot be
        consumed. Inside a transaction the exception rolls back the caller's
        other writes too.
        """
        code = normalize_code(code)
        if self._store.mark_code_used(code, consumer_id, to_iso(self._clock()), conn=conn):
            logger.info("REGISTRATION_CODE_CONSUMED code=%s consumer=%s", code, consumer_id)
            return
        reason = self._reason(self._store.get_code(code, conn=conn)) or UNKNOWN
        raise invalid_code_error(reason)
