"""
auth/errors.py -- Expected, recoverable outcomes of identity operations.

Every class here describes a caller-side condition (bad input, unknown
record, authorization denial, state conflict). None of them is fatal. Storage
failures are NOT wrapped: a sqlalchemy OperationalError reaches the caller
unchanged so retry policy stays with whoever owns the database.

Each error carries a stable machine `code` and an actionable default message.
The HTTP layer maps classes to status codes; this module knows nothing about
HTTP.
"""

from __future__ import annotations


class IdentityError(Exception):
    """Base class for identity, session and registration errors."""

    code = "identity_error"
    default_message = "The request could not be completed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InputError(IdentityError):
    code = "input_error"
    default_message = "Some fields are missing or malformed."


class NotFound(IdentityError):
    code = "not_found"
    default_message = "The requested record does not exist."


class InvalidCode(IdentityError):
    """The enrollment code cannot be used: unknown, consumed, or expired."""

    code = "invalid_code"
    default_message = "This enrollment code is not valid."


class AlreadyUsed(InvalidCode):
    code = "already_used"
    default_message = "This code has already been used."


class Expired(InvalidCode):
    code = "expired"
    default_message = "This code has expired. Ask an administrator for a new one."


class InvalidCredentials(IdentityError):
    code = "invalid_credentials"
    default_message = "The password is incorrect."


class Disabled(IdentityError):
    code = "account_disabled"
    default_message = "This account has been disabled. Contact an administrator."


class Forbidden(IdentityError):
    code = "forbidden"
    default_message = "You are not allowed to perform this action."


class Conflict(IdentityError):
    code = "conflict"
    default_message = "The record was changed by someone else. Reload and try again."


class RoleNotEligible(IdentityError):
    code = "role_not_eligible"
    default_message = "Remember-me is only available for production operators."


class TooManyAttempts(IdentityError):
    code = "too_many_attempts"
    default_message = "Too many failed login attempts. Please try again later."
