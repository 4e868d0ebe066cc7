"""
auth/credentials.py -- Password hashing and password policy.

Hashing:
  bcrypt with ONE fixed salt and cost factor for the whole system
  (PASSWORD_SALT / PASSWORD_ROUNDS in core/config.py). The digest is therefore
  a pure function of the plaintext, and verify_password() recomputes it and
  compares in constant time. The salt string carries a version marker; moving
  to new parameters means every stored digest stops verifying, which is a
  migration event handled by resetting passwords.

  bcrypt rejects inputs longer than 72 bytes, so the policy caps length there
  and verify_password() answers False for longer inputs instead of raising.

Policy:
  PasswordPolicy is data. Which policy applies to which role lives in
  auth/policy.py; the caller picks the policy and this module enforces it.

Layer rule: leaf module. Imports only core/ and auth/errors.
"""

from __future__ import annotations

import hmac
import re
import secrets
import string
from dataclasses import dataclass

import bcrypt

from auth.errors import InputError
from core.config import get_settings

_MAX_PASSWORD_BYTES = 72


def _salt() -> bytes:
    settings = get_settings()
    return f"$2b${settings.password_rounds:02d}${settings.password_salt}".encode("ascii")


def hash_password(plain: str) -> str:
    """Return the system-wide bcrypt digest of plain.

    Raises InputError when the password is longer than bcrypt can hash.
    """
    raw = plain.encode("utf-8")
    if len(raw) > _MAX_PASSWORD_BYTES:
        raise InputError(f"Password must be at most {_MAX_PASSWORD_BYTES} bytes long.")
    return bcrypt.hashpw(raw, _salt()).decode("utf-8")


def verify_password(plain: str, digest: str) -> bool:
    """Return True if plain hashes to digest under the current parameters."""
    if len(plain.encode("utf-8")) > _MAX_PASSWORD_BYTES:
        return False
    return hmac.compare_digest(hash_password(plain).encode("utf-8"), digest.encode("utf-8"))


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PasswordPolicy:
    required: bool
    min_length: int = 0
    require_upper: bool = False
    require_lower: bool = False
    require_digit: bool = False


STRICT_POLICY = PasswordPolicy(required=True, min_length=8, require_upper=True, require_lower=True, require_digit=True)
# Production terminals are shared and unattended: no password, or a short PIN.
RELAXED_POLICY = PasswordPolicy(required=False)

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"[0-9]")


def check_password(policy: PasswordPolicy, password: str | None) -> str | None:
    """Validate password against policy and return it normalized.

    An empty string counts as "no password". Returns None when no password
    was supplied and the policy allows that. Raises InputError naming the
    first rule that failed.
    """
    if not password:
        if policy.required:
            raise InputError("A password is required for this role.")
        return None
    if len(password.encode("utf-8")) > _MAX_PASSWORD_BYTES:
        raise InputError(f"Password must be at most {_MAX_PASSWORD_BYTES} bytes long.")
    if len(password) < policy.min_length:
        raise InputError(f"Password must be at least {policy.min_length} characters long.")
    if policy.require_upper and not _UPPER.search(password):
        raise InputError("Password must contain at least one uppercase letter.")
    if policy.require_lower and not _LOWER.search(password):
        raise InputError("Password must contain at least one lowercase letter.")
    if policy.require_digit and not _DIGIT.search(password):
        raise InputError("Password must contain at least one number.")
    return password


def generate_temporary_password(length: int = 12) -> str:
    """Random password that always satisfies STRICT_POLICY."""
    alphabet = string.ascii_letters + string.digits
    while True:
        candidate = "".join(secrets.choice(alphabet) for _ in range(length))
        if _UPPER.search(candidate) and _LOWER.search(candidate) and _DIGIT.search(candidate):
            return candidate
