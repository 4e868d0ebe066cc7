"""
auth/sessions.py -- Session Manager: login, inactivity expiry, revalidation,
and remember-me tokens.

Lifecycle:
    anonymous --login/resume--> authenticated --logout/timeout/invalidated--> anonymous

The manager is the single owner of every live Session. Nothing else flips
Session.live or cancels its timer; all three ending paths go through _end(),
which cancels the watcher task, forgets the session and emits exactly one
SessionEnded event.

Inactivity timer:
  When a session starts inside a running event loop, a watcher task is
  created for it. The task wakes every `poll_seconds` and calls
  check_expiry(). It is a polling loop rather than a per-action reset, so
  touch() only moves a deadline and never reschedules anything. Outside an
  event loop (CLI, plain unit tests) no task is created and the caller drives
  check_expiry() itself.

  Once bind_loop() has recorded the server's loop, sessions opened from a
  worker thread (sync route handlers run in the threadpool, where bcrypt
  work belongs) get their task scheduled onto that loop with
  call_soon_threadsafe, and cancellation goes back the same way.

Deadline:
  deadline = last activity + inactivity window, optionally capped at
  started_at + max lifetime. With no cap (the default) a steady stream of
  touch() calls keeps a session alive indefinitely.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.credentials import verify_password
from auth.errors import Disabled, InputError, InvalidCredentials, NotFound, RoleNotEligible, TooManyAttempts
from auth.models import Account, AccountStatus, EndReason, RememberToken, Session, SessionEnded
from auth.policy import can_remember, policy_for
from auth.store import IdentityStore
from auth.tokens import generate_remember_secret, hash_remember_secret
from core.clock import Clock, from_iso, to_iso, utcnow
from core.config import get_settings

logger = logging.getLogger("qcguard.sessions")

SessionListener = Callable[[SessionEnded], None]


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class SessionManager:
    """Owns live sessions and the "session ended" event.

    Usage:
        manager = SessionManager(store)
        manager.subscribe(lambda event: print(event.reason))
        session = manager.login("alice", "Secret123")
        manager.touch(session)
        manager.logout(session)
    """

    def __init__(
        self,
        store: IdentityStore,
        *,
        inactivity_seconds: float | None = None,
        poll_seconds: float | None = None,
        max_lifetime_seconds: float | None = None,
        clock: Clock = utcnow,
    ) -> None:
        settings = get_settings()
        if inactivity_seconds is None:
            inactivity_seconds = settings.session_inactivity_seconds
        if max_lifetime_seconds is None:
            max_lifetime_seconds = settings.session_max_lifetime_seconds

        self._store = store
        self._clock = clock
        self.inactivity = timedelta(seconds=inactivity_seconds)
        self.poll_seconds = settings.session_poll_seconds if poll_seconds is None else poll_seconds
        self.max_lifetime = timedelta(seconds=max_lifetime_seconds) if max_lifetime_seconds > 0 else None
        self._lockout = timedelta(seconds=settings.login_lockout_seconds)
        self._max_attempts = settings.login_max_attempts

        self._loop: asyncio.AbstractEventLoop | None = None
        self._sessions: dict[str, Session] = {}
        self._listeners: list[SessionListener] = []
        # username -> (consecutive failures, time of the latest failure)
        self._failures: dict[str, tuple[int, datetime]] = {}

    # ------------------------------------------------------------------
    # Event subscription
    # ------------------------------------------------------------------

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register listener for SessionEnded events. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: SessionEnded) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Session-ended listener %r failed", listener)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Session | None:
        """Return the live session with this id, or None."""
        return self._sessions.get(session_id)

    @property
    def active_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, username: str, password: str | None = None, *, passwordless: bool = False) -> Session:
        """Authenticate username and open a session.

        passwordless=True lets a production operator whose account does have
        a password enter without it (shared-terminal mode). Accounts without
        a stored password need no opt-in.

        Raises InputError, TooManyAttempts, NotFound, Disabled or
        InvalidCredentials.
        """
        username = (username or "").strip()
        if not username:
            raise InputError("Username is required.")
        now = self._clock()
        self._check_lockout(username, now)

        account = self._store.get_account_by_username(username)
        if account is None:
            self._record_failure(username, now)
            logger.warning("LOGIN_FAILED username=%s reason=not_found", username)
            raise NotFound("No account exists with this username.")
        if account.status != AccountStatus.ACTIVE.value:
            logger.warning("LOGIN_FAILED username=%s reason=disabled", username)
            raise Disabled()
        if not self._password_ok(account, password, passwordless):
            self._record_failure(username, now)
            logger.warning("LOGIN_FAILED username=%s reason=bad_password", username)
            raise InvalidCredentials()

        self._failures.pop(username, None)
        session = self._open(account, now)
        logger.info("LOGIN_SUCCESS username=%s role=%s session=%s", account.username, account.role, session.id)
        return session

    def _password_ok(self, account: Account, password: str | None, passwordless: bool) -> bool:
        policy = policy_for(account.role)
        if account.password_hash is None:
            return policy.passwordless
        if password:
            return verify_password(password, account.password_hash)
        return policy.passwordless and passwordless

    def _check_lockout(self, username: str, now: datetime) -> None:
        self._prune_failures(now)
        count, _ = self._failures.get(username, (0, now))
        if count >= self._max_attempts:
            logger.warning("LOGIN_BLOCKED username=%s attempts=%d", username, count)
            raise TooManyAttempts()

    def _record_failure(self, username: str, now: datetime) -> None:
        count, _ = self._failures.get(username, (0, now))
        self._failures[username] = (count + 1, now)

    def _prune_failures(self, now: datetime) -> None:
        """Forget every failure streak older than the lockout window."""
        stale = [name for name, (_, last) in list(self._failures.items()) if now - last > self._lockout]
        for name in stale:
            self._failures.pop(name, None)

    def _open(self, account: Account, now: datetime) -> Session:
        session = Session(
            account_id=account.id,
            username=account.username,
            role=account.role,
            unit_id=account.unit_id,
            sub_unit_id=account.sub_unit_id,
            group_id=account.group_id,
            started_at=now,
            deadline=self._deadline(now, now),
        )
        self._store.update_last_login(account.id, to_iso(now))
        self._sessions[session.id] = session
        self._arm(session)
        return session

    # ------------------------------------------------------------------
    # Deadline and timer
    # ------------------------------------------------------------------

    def _deadline(self, started_at: datetime, now: datetime) -> datetime:
        deadline = now + self.inactivity
        if self.max_lifetime is not None:
            deadline = min(deadline, started_at + self.max_lifetime)
        return deadline

    def bind_loop(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Record the loop that runs watcher tasks (default: the running loop)."""
        self._loop = loop or asyncio.get_running_loop()

    def _arm(self, session: Session) -> None:
        loop = _running_loop()
        if loop is not None:
            self._start_watch(session, loop)
        elif self._loop is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(self._start_watch, session, self._loop)

    def _start_watch(self, session: Session, loop: asyncio.AbstractEventLoop) -> None:
        if not session.live or session.timer is not None:
            return
        session.timer = loop.create_task(self._watch(session), name=f"session-watch-{session.id[:8]}")

    async def _watch(self, session: Session) -> None:
        while session.live:
            await asyncio.sleep(self.poll_seconds)
            if self.check_expiry(session):
                return

    def touch(self, session: Session) -> None:
        """Record user activity: push the inactivity deadline forward.

        A session already past its deadline is ended instead of revived.
        """
        if self.check_expiry(session):
            return
        session.deadline = self._deadline(session.started_at, self._clock())

    def check_expiry(self, session: Session) -> bool:
        """Return True if session is over; end it with reason timeout if it just expired."""
        if not session.live:
            return True
        if self._clock() >= session.deadline:
            self._end(session, EndReason.TIMEOUT)
            return True
        return False

    def validate(self, session: Session) -> bool:
        """Re-check session against the current account record.

        The account may have been disabled, or its role changed, since login.
        Either ends the session with reason invalidated.
        """
        if self.check_expiry(session):
            return False
        account = self._store.get_account(session.account_id)
        if account is None or account.status != AccountStatus.ACTIVE.value or account.role != session.role:
            self._end(session, EndReason.INVALIDATED)
            return False
        return True

    # ------------------------------------------------------------------
    # Ending sessions
    # ------------------------------------------------------------------

    def logout(self, session: Session) -> None:
        """End session on user request and forget the account's remember tokens."""
        self._store.delete_remember_tokens(session.account_id)
        self._end(session, EndReason.LOGOUT)

    def _end(self, session: Session, reason: EndReason) -> None:
        if not session.live:
            return
        session.live = False
        self._sessions.pop(session.id, None)
        timer, session.timer = session.timer, None
        if timer is not None and timer is not _current_task():
            owner = timer.get_loop()
            if _running_loop() is owner:
                timer.cancel()
            elif not owner.is_closed():
                owner.call_soon_threadsafe(timer.cancel)
        logger.info("SESSION_ENDED username=%s session=%s reason=%s", session.username, session.id, reason.value)
        self._emit(SessionEnded(session=session, reason=reason))

    def close(self) -> None:
        """Cancel every watcher task without emitting events (process shutdown)."""
        for session in list(self._sessions.values()):
            if session.timer is not None:
                session.timer.cancel()
                session.timer = None
        self._sessions.clear()

    # ------------------------------------------------------------------
    # Remember me
    # ------------------------------------------------------------------

    def enable_remember_me(self, account_id: int, role: str, days: int | None = None) -> tuple[RememberToken, str]:
        """Issue a remember token for an eligible account.

        Returns (token record, raw secret). The secret is shown once; only its
        HMAC is stored. Any earlier token for the account is revoked so one
        token at most is in play per account.
        """
        settings = get_settings()
        if not can_remember(role):
            raise RoleNotEligible()
        days = settings.remember_me_days if days is None else days
        if not 1 <= days <= settings.remember_me_max_days:
            raise InputError(f"Remember-me duration must be between 1 and {settings.remember_me_max_days} days.")

        now = self._clock()
        secret = generate_remember_secret()
        token = RememberToken(
            account_id=account_id,
            token_hash=hash_remember_secret(secret),
            created_at=to_iso(now),
            expires_at=to_iso(now + timedelta(days=days)),
        )
        with self._store.transaction() as conn:
            account = self._store.get_account(account_id, conn=conn)
            if account is None:
                raise NotFound("Account not found.")
            if account.role != role:
                raise RoleNotEligible()
            self._store.delete_remember_tokens(account_id, conn=conn)
            token.id = self._store.create_remember_token(token, conn=conn)

        logger.info("REMEMBER_ME_ENABLED account=%s days=%d", account_id, days)
        return token, secret

    def consume_remember_token(self, secret: str) -> Account | None:
        """Return the account behind secret, or None if the token is unusable.

        Absent, expired, orphaned and no-longer-eligible tokens all answer
        None. Only expired tokens are purged on read; a token whose owner is
        disabled or in an ineligible role stays stored and works again once
        the account does. No session is created here; see resume().
        """
        if not secret:
            return None
        token = self._store.get_remember_token_by_hash(hash_remember_secret(secret))
        if token is None:
            return None
        if from_iso(token.expires_at) <= self._clock():
            self._store.delete_remember_token(token.id)
            return None
        account = self._store.get_account(token.account_id)
        if account is None or account.status != AccountStatus.ACTIVE.value or not can_remember(account.role):
            return None
        return account

    def resume(self, secret: str) -> Session | None:
        """Open a session from a remember secret, or return None."""
        account = self.consume_remember_token(secret)
        if account is None:
            return None
        session = self._open(account, self._clock())
        logger.info("AUTO_LOGIN_SUCCESS username=%s session=%s", account.username, session.id)
        return session
