"""
tests/test_sessions.py -- Unit tests for the Session Manager.

Covers:
  - login: NotFound, Disabled, InvalidCredentials, passwordless rules,
    last-login update, lockout after repeated failures
  - touch / check_expiry against a fake clock, optional max lifetime cap
  - validate: disabled, role-changed and still-valid accounts
  - logout: exactly one session-ended event, remember tokens dropped
  - remember-me: eligibility, day bounds, replacement, expiry, resume
  - the watcher task on a real event loop: timeout fires, logout cancels it

Timer tests drive an asyncio loop with asyncio.run() inside plain test
functions and use real sub-second durations.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from conftest import ADMIN_PASSWORD, STRONG_PASSWORD, FakeClock, Services, make_account

from auth.errors import Disabled, InputError, InvalidCredentials, NotFound, RoleNotEligible, TooManyAttempts
from auth.models import Account, EndReason, Role, SessionEnded
from auth.sessions import SessionManager
from auth.store import IdentityStore
from core.clock import from_iso


def _collect(manager: SessionManager) -> list[SessionEnded]:
    events: list[SessionEnded] = []
    manager.subscribe(events.append)
    return events


class TestLogin:
    def test_login_success(self, services: Services, admin: Account) -> None:
        session = services.sessions.login("admin", ADMIN_PASSWORD)
        assert session.live
        assert session.account_id == admin.id
        assert session.role == Role.ADMINISTRATOR.value
        assert session.deadline == services.clock.now + services.sessions.inactivity
        assert services.sessions.get(session.id) is session
        assert from_iso(services.store.get_account(admin.id).last_login) == services.clock.now

    def test_unknown_user(self, services: Services) -> None:
        with pytest.raises(NotFound):
            services.sessions.login("nobody", STRONG_PASSWORD)

    def test_blank_username(self, services: Services) -> None:
        with pytest.raises(InputError):
            services.sessions.login("  ", STRONG_PASSWORD)

    def test_disabled_account(self, services: Services) -> None:
        make_account(services.store, "gone", status="disabled")
        with pytest.raises(Disabled):
            services.sessions.login("gone", STRONG_PASSWORD)

    def test_wrong_password(self, services: Services, admin: Account) -> None:
        with pytest.raises(InvalidCredentials):
            services.sessions.login("admin", "Wrong1234")

    def test_missing_password_for_strict_role(self, services: Services, admin: Account) -> None:
        with pytest.raises(InvalidCredentials):
            services.sessions.login("admin")
        with pytest.raises(InvalidCredentials):
            services.sessions.login("admin", passwordless=True)

    def test_operator_without_stored_password(self, services: Services) -> None:
        make_account(services.store, "line1", Role.PRODUCTION_OPERATOR.value, password=None)
        assert services.sessions.login("line1").live

    def test_operator_with_password_needs_opt_in(self, services: Services) -> None:
        make_account(services.store, "line2", Role.PRODUCTION_OPERATOR.value, password="4242")
        with pytest.raises(InvalidCredentials):
            services.sessions.login("line2")
        assert services.sessions.login("line2", passwordless=True).live
        assert services.sessions.login("line2", "4242").live
        with pytest.raises(InvalidCredentials):
            services.sessions.login("line2", "0000")

    def test_lockout_after_repeated_failures(self, services: Services, admin: Account) -> None:
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                services.sessions.login("admin", "Wrong1234")
        with pytest.raises(TooManyAttempts):
            services.sessions.login("admin", ADMIN_PASSWORD)

        services.clock.advance(seconds=901)
        assert services.sessions.login("admin", ADMIN_PASSWORD).live

    def test_stale_failures_are_forgotten(self, services: Services) -> None:
        for n in range(50):
            with pytest.raises(NotFound):
                services.sessions.login(f"ghost-{n}", STRONG_PASSWORD)
        assert len(services.sessions._failures) == 50

        services.clock.advance(days=7)
        with pytest.raises(NotFound):
            services.sessions.login("ghost-late", STRONG_PASSWORD)
        assert list(services.sessions._failures) == ["ghost-late"]

    def test_success_clears_failures(self, services: Services, admin: Account) -> None:
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                services.sessions.login("admin", "Wrong1234")
        services.sessions.login("admin", ADMIN_PASSWORD)
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                services.sessions.login("admin", "Wrong1234")
        assert services.sessions.login("admin", ADMIN_PASSWORD).live


class TestExpiry:
    def test_touch_pushes_deadline(self, services: Services, admin: Account) -> None:
        session = services.sessions.login("admin", ADMIN_PASSWORD)
        services.clock.advance(minutes=20)
        services.sessions.touch(session)
        assert session.deadline == services.clock.now + services.sessions.inactivity

        services.clock.advance(minutes=20)
        assert services.sessions.check_expiry(session) is False

    def test_inactivity_ends_session(self, services: Services, admin: Account) -> None:
        events = _collect(services.sessions)
        session = services.sessions.login("admin", ADMIN_PASSWORD)
        services.clock.advance(minutes=30)

        assert services.sessions.check_expiry(session) is True
        assert not session.live
        assert services.sessions.get(session.id) is None
        assert [e.reason for e in events] == [EndReason.TIMEOUT]

        # Already over: no second event.
        assert services.sessions.check_expiry(session) is True
        assert len(events) == 1

    def test_touch_does_not_revive_expired_session(self, services: Services, admin: Account) -> None:
        session = services.sessions.login("admin", ADMIN_PASSWORD)
        services.clock.advance(minutes=31)
        services.sessions.touch(session)
        assert not session.live

    def test_max_lifetime_caps_deadline(self, store: IdentityStore, clock: FakeClock) -> None:
        make_account(store, "qc")
        manager = SessionManager(store, inactivity_seconds=600, max_lifetime_seconds=1000, clock=clock)
        session = manager.login("qc", STRONG_PASSWORD)

        clock.advance(seconds=500)
        manager.touch(session)
        assert session.deadline == session.started_at + manager.max_lifetime

        clock.advance(seconds=500)
        assert manager.check_expiry(session) is True

    def test_unbounded_by_default(self, services: Services, admin: Account) -> None:
        session = services.sessions.login("admin", ADMIN_PASSWORD)
        for _ in range(10):
            services.clock.advance(minutes=25)
            services.sessions.touch(session)
        assert session.live


class TestValidate:
    def test_valid_session(self, services: Services, admin: Account) -> None:
        session = services.sessions.login("admin", ADMIN_PASSWORD)
        assert services.sessions.validate(session) is True

    def test_disabled_while_live(self, services: Services, admin: Account) -> None:
        inspector = make_account(services.store, "qc")
        events = _collect(services.sessions)
        session = services.sessions.login("qc", STRONG_PASSWORD)

        services.store.update_account(inspector.id, status="disabled")

        assert services.sessions.validate(session) is False
        assert not session.live
        assert [e.reason for e in events] == [EndReason.INVALIDATED]

    def test_role_changed_while_live(self, services: Services, admin: Account) -> None:
        inspector = make_account(services.store, "qc")
        session = services.sessions.login("qc", STRONG_PASSWORD)
        services.store.update_account(inspector.id, role=Role.METHOD_ENGINEER.value)
        assert services.sessions.validate(session) is False

    def test_expired_session_is_invalid(self, services: Services, admin: Account) -> None:
        events = _collect(services.sessions)
        session = services.sessions.login("admin", ADMIN_PASSWORD)
        services.clock.advance(hours=1)
        assert services.sessions.validate(session) is False
        assert [e.reason for e in events] == [EndReason.TIMEOUT]


class TestLogout:
    def test_logout_emits_once(self, services: Services, admin: Account) -> None:
        events = _collect(services.sessions)
        session = services.sessions.login("admin", ADMIN_PASSWORD)
        services.sessions.logout(session)
        services.sessions.logout(session)

        assert [e.reason for e in events] == [EndReason.LOGOUT]
        assert events[0].session is session
        assert services.sessions.get(session.id) is None
        assert services.sessions.validate(session) is False

    def test_unsubscribe(self, services: Services, admin: Account) -> None:
        events: list[SessionEnded] = []
        unsubscribe = services.sessions.subscribe(events.append)
        unsubscribe()
        services.sessions.logout(services.sessions.login("admin", ADMIN_PASSWORD))
        assert events == []

    def test_failing_listener_does_not_block_others(self, services: Services, admin: Account) -> None:
        def broken(event: SessionEnded) -> None:
            raise RuntimeError("listener bug")

        services.sessions.subscribe(broken)
        events = _collect(services.sessions)
        services.sessions.logout(services.sessions.login("admin", ADMIN_PASSWORD))
        assert len(events) == 1


class TestRememberMe:
    def _operator(self, services: Services) -> Account:
        return make_account(services.store, "line1", Role.PRODUCTION_OPERATOR.value, password=None)

    def test_ineligible_role(self, services: Services, admin: Account) -> None:
        with pytest.raises(RoleNotEligible):
            services.sessions.enable_remember_me(admin.id, Role.ADMINISTRATOR.value, 30)

    def test_role_must_match_account(self, services: Services, admin: Account) -> None:
        with pytest.raises(RoleNotEligible):
            services.sessions.enable_remember_me(admin.id, Role.PRODUCTION_OPERATOR.value, 30)

    @pytest.mark.parametrize("days", [0, 31])
    def test_day_bounds(self, services: Services, days: int) -> None:
        operator = self._operator(services)
        with pytest.raises(InputError):
            services.sessions.enable_remember_me(operator.id, operator.role, days)

    def test_secret_round_trip(self, services: Services) -> None:
        operator = self._operator(services)
        token, secret = services.sessions.enable_remember_me(operator.id, operator.role, 7)

        assert secret.startswith("rm_")
        assert token.token_hash != secret
        assert from_iso(token.expires_at) == services.clock.now + timedelta(days=7)
        assert services.sessions.consume_remember_token(secret).id == operator.id
        # Reading does not spend the token.
        assert services.sessions.consume_remember_token(secret).id == operator.id

    def test_unknown_secret(self, services: Services) -> None:
        assert services.sessions.consume_remember_token("rm_nope") is None
        assert services.sessions.consume_remember_token("") is None

    def test_expired_token_is_absent(self, services: Services) -> None:
        operator = self._operator(services)
        _token, secret = services.sessions.enable_remember_me(operator.id, operator.role, 1)
        services.clock.advance(days=1)

        assert services.sessions.consume_remember_token(secret) is None
        assert services.sessions.resume(secret) is None
        assert services.store.list_remember_tokens(operator.id) == []

    def test_new_token_replaces_old(self, services: Services) -> None:
        operator = self._operator(services)
        _first, old_secret = services.sessions.enable_remember_me(operator.id, operator.role, 7)
        _second, new_secret = services.sessions.enable_remember_me(operator.id, operator.role, 7)

        assert services.sessions.consume_remember_token(old_secret) is None
        assert services.sessions.consume_remember_token(new_secret).id == operator.id
        assert len(services.store.list_remember_tokens(operator.id)) == 1

    def test_disabled_owner_keeps_token(self, services: Services) -> None:
        operator = self._operator(services)
        _token, secret = services.sessions.enable_remember_me(operator.id, operator.role, 7)

        services.store.update_account(operator.id, status="disabled")
        assert services.sessions.consume_remember_token(secret) is None
        assert len(services.store.list_remember_tokens(operator.id)) == 1

        services.store.update_account(operator.id, status="active")
        assert services.sessions.consume_remember_token(secret).id == operator.id

    def test_ineligible_role_keeps_token(self, services: Services) -> None:
        operator = self._operator(services)
        _token, secret = services.sessions.enable_remember_me(operator.id, operator.role, 7)

        services.store.update_account(operator.id, role=Role.QUALITY_CONTROL.value)
        assert services.sessions.consume_remember_token(secret) is None

        services.store.update_account(operator.id, role=Role.PRODUCTION_OPERATOR.value)
        assert services.sessions.consume_remember_token(secret).id == operator.id

    def test_resume_opens_session(self, services: Services) -> None:
        operator = self._operator(services)
        _token, secret = services.sessions.enable_remember_me(operator.id, operator.role, 7)

        session = services.sessions.resume(secret)

        assert session is not None and session.live
        assert session.account_id == operator.id
        assert services.store.get_account(operator.id).last_login is not None

    def test_logout_drops_tokens(self, services: Services) -> None:
        operator = self._operator(services)
        _token, secret = services.sessions.enable_remember_me(operator.id, operator.role, 7)
        session = services.sessions.resume(secret)

        services.sessions.logout(session)

        assert services.sessions.consume_remember_token(secret) is None


class TestWatcherTask:
    def test_timeout_fires_without_touch(self, store: IdentityStore) -> None:
        make_account(store, "qc")
        manager = SessionManager(store, inactivity_seconds=0.05, poll_seconds=0.01)
        events = _collect(manager)

        async def scenario() -> None:
            session = manager.login("qc", STRONG_PASSWORD)
            assert session.timer is not None
            await asyncio.sleep(0.2)
            assert not session.live
            assert session.timer is None

        asyncio.run(scenario())
        assert [e.reason for e in events] == [EndReason.TIMEOUT]

    def test_touch_keeps_session_alive(self, store: IdentityStore) -> None:
        make_account(store, "qc")
        manager = SessionManager(store, inactivity_seconds=0.15, poll_seconds=0.01)

        async def scenario() -> bool:
            session = manager.login("qc", STRONG_PASSWORD)
            for _ in range(6):
                await asyncio.sleep(0.05)
                manager.touch(session)
            alive = session.live
            manager.logout(session)
            return alive

        assert asyncio.run(scenario()) is True

    def test_logout_cancels_timer(self, store: IdentityStore) -> None:
        make_account(store, "qc")
        manager = SessionManager(store, inactivity_seconds=0.05, poll_seconds=0.01)
        events = _collect(manager)

        async def scenario() -> None:
            session = manager.login("qc", STRONG_PASSWORD)
            timer = session.timer
            manager.logout(session)
            await asyncio.sleep(0.01)
            assert timer.cancelled()
            await asyncio.sleep(0.1)

        asyncio.run(scenario())
        assert [e.reason for e in events] == [EndReason.LOGOUT]

    def test_no_timer_outside_event_loop(self, services: Services, admin: Account) -> None:
        session = services.sessions.login("admin", ADMIN_PASSWORD)
        assert session.timer is None

    def test_login_from_worker_thread_arms_on_bound_loop(self, shared_store: IdentityStore) -> None:
        store = shared_store
        make_account(store, "qc")
        manager = SessionManager(store, inactivity_seconds=0.05, poll_seconds=0.01)
        events = _collect(manager)

        async def scenario() -> None:
            manager.bind_loop()
            session = await asyncio.to_thread(manager.login, "qc", STRONG_PASSWORD)
            await asyncio.sleep(0)
            assert session.timer is not None
            await asyncio.sleep(0.2)
            assert not session.live

        asyncio.run(scenario())
        assert [e.reason for e in events] == [EndReason.TIMEOUT]

    def test_logout_from_worker_thread_cancels_timer(self, shared_store: IdentityStore) -> None:
        store = shared_store
        make_account(store, "qc")
        manager = SessionManager(store, inactivity_seconds=5, poll_seconds=0.01)

        async def scenario() -> None:
            manager.bind_loop()
            session = manager.login("qc", STRONG_PASSWORD)
            timer = session.timer
            await asyncio.to_thread(manager.logout, session)
            await asyncio.sleep(0.01)
            assert timer.cancelled()

        asyncio.run(scenario())
