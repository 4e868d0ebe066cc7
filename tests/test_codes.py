"""
tests/test_codes.py -- Unit tests for the Code Registry.

Covers:
  - issue: admin only, code format, default and custom expiry, never-expiring
  - issue: collision retry and Conflict once attempts run out
  - validate: unknown / used / expired all invalid, and validate never mutates
  - consume: once only; AlreadyUsed, Expired, InvalidCode on failure
  - normalization of user-typed codes
"""

from __future__ import annotations

import re
from datetime import timedelta

import pytest
from conftest import Services, make_account

from auth import codes as codes_module
from auth.codes import ALREADY_USED, EXPIRED, UNKNOWN, normalize_code
from auth.errors import AlreadyUsed, Conflict, Expired, Forbidden, InputError, InvalidCode, NotFound
from auth.models import Account, Role
from core.clock import from_iso

_CODE_FORMAT = re.compile(r"^[A-Z]{2}[0-9]{6}$")


class TestIssue:
    def test_admin_issues_code(self, services: Services, admin: Account) -> None:
        record = services.codes.issue(admin.id, Role.QUALITY_CONTROL.value, unit_id=3)
        assert _CODE_FORMAT.match(record.code)
        assert record.role == Role.QUALITY_CONTROL.value
        assert record.unit_id == 3
        assert record.created_by == admin.id
        assert record.used_at is None

    def test_default_expiry_is_24_hours(self, services: Services, admin: Account) -> None:
        record = services.codes.issue(admin.id, Role.QUALITY_CONTROL.value)
        assert from_iso(record.expires_at) == services.clock.now + timedelta(hours=24)

    def test_custom_expiry(self, services: Services, admin: Account) -> None:
        record = services.codes.issue(admin.id, Role.QUALITY_CONTROL.value, expires_in_hours=2)
        assert from_iso(record.expires_at) == services.clock.now + timedelta(hours=2)

    def test_never_expires(self, services: Services, admin: Account) -> None:
        record = services.codes.issue(admin.id, Role.QUALITY_CONTROL.value, never_expires=True)
        assert record.expires_at is None
        services.clock.advance(days=3650)
        assert services.codes.validate(record.code).valid

    def test_non_positive_lifetime_rejected(self, services: Services, admin: Account) -> None:
        with pytest.raises(InputError):
            services.codes.issue(admin.id, Role.QUALITY_CONTROL.value, expires_in_hours=0)

    def test_non_admin_cannot_issue(self, services: Services) -> None:
        engineer = make_account(services.store, "eng", Role.METHOD_ENGINEER.value, unit_id=3)
        with pytest.raises(Forbidden):
            services.codes.issue(engineer.id, Role.QUALITY_CONTROL.value, unit_id=3)

    def test_disabled_admin_cannot_issue(self, services: Services) -> None:
        ghost = make_account(services.store, "ghost", Role.ADMINISTRATOR.value, status="disabled")
        with pytest.raises(Forbidden):
            services.codes.issue(ghost.id, Role.QUALITY_CONTROL.value)

    def test_unknown_issuer(self, services: Services) -> None:
        with pytest.raises(NotFound):
            services.codes.issue(999, Role.QUALITY_CONTROL.value)

    def test_unknown_role(self, services: Services, admin: Account) -> None:
        with pytest.raises(InputError):
            services.codes.issue(admin.id, "visitor")

    def test_collision_is_retried(self, services: Services, admin: Account, monkeypatch) -> None:
        first = services.codes.issue(admin.id, Role.QUALITY_CONTROL.value)
        sequence = iter([first.code, first.code, "QC000001"])
        monkeypatch.setattr(codes_module, "generate_code", lambda: next(sequence))
        second = services.codes.issue(admin.id, Role.QUALITY_CONTROL.value)
        assert second.code == "QC000001"

    def test_conflict_after_exhausted_attempts(self, services: Services, admin: Account, monkeypatch) -> None:
        first = services.codes.issue(admin.id, Role.QUALITY_CONTROL.value)
        monkeypatch.setattr(codes_module, "generate_code", lambda: first.code)
        with pytest.raises(Conflict):
            services.codes.issue(admin.id, Role.QUALITY_CONTROL.value)

    def test_list_codes_newest_first(self, services: Services, admin: Account) -> None:
        older = services.codes.issue(admin.id, Role.QUALITY_CONTROL.value)
        services.clock.advance(minutes=5)
        newer = services.codes.issue(admin.id, Role.PRODUCTION_OPERATOR.value)
        assert [c.code for c in services.codes.list_codes(admin.id)] == [newer.code, older.code]


class TestValidateAndConsume:
    def test_never_issued_code_is_invalid(self, services: Services) -> None:
        result = services.codes.validate("ZZ000000")
        assert not result.valid
        assert result.reason == UNKNOWN
        assert result.role is None

    def test_valid_code_reports_assignment(self, services: Services, admin: Account) -> None:
        record = services.codes.issue(admin.id, Role.QUALITY_CONTROL.value, unit_id=3, sub_unit_id=7, group_id=2)
        result = services.codes.validate(record.code)
        assert result.valid
        assert (result.role, result.unit_id, result.sub_unit_id, result.group_id) == ("quality-control", 3, 7, 2)

    def test_validate_does_not_mutate(self, services: Services, admin: Account) -> None:
        record = services.codes.issue(admin.id, Role.QUALITY_CONTROL.value)
        for _ in range(3):
            assert services.codes.validate(record.code).valid
        assert services.store.get_code(record.code).used_at is None

    def test_lowercase_input_is_normalized(self, services: Services, admin: Account) -> None:
        record = services.codes.issue(admin.id, Role.QUALITY_CONTROL.value)
        assert services.codes.validate(f"  {record.code.lower()} ").valid
        assert normalize_code(" ab123456 ") == "AB123456"

    def test_consumed_code_never_validates_again(self, services: Services, admin: Account) -> None:
        record = services.codes.issue(admin.id, Role.QUALITY_CONTROL.value)
        services.codes.consume(record.code, consumer_id=42)

        stored = services.store.get_code(record.code)
        assert stored.used_by == 42
        assert stored.used_at is not None

        result = services.codes.validate(record.code)
        assert not result.valid
        assert result.reason == ALREADY_USED
        with pytest.raises(AlreadyUsed) as exc_info:
            services.codes.consume(record.code, consumer_id=43)
        assert exc_info.value.message == "This code has already been used."
        assert services.store.get_code(record.code).used_by == 42

    def test_expired_code(self, services: Services, admin: Account) -> None:
        record = services.codes.issue(admin.id, Role.QUALITY_CONTROL.value, expires_in_hours=1)
        services.clock.advance(hours=1)
        result = services.codes.validate(record.code)
        assert not result.valid
        assert result.reason == EXPIRED
        with pytest.raises(Expired):
            services.codes.consume(record.code, consumer_id=42)

    def test_consume_unknown_code(self, services: Services) -> None:
        with pytest.raises(InvalidCode) as exc_info:
            services.codes.consume("ZZ000000", consumer_id=42)
        assert type(exc_info.value) is InvalidCode
