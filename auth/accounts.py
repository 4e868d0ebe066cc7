"""
auth/accounts.py -- Administrative account management.

Registration is the normal way in; this service covers what an administrator
does afterwards (disable, re-enable, change role, reset a forgotten password)
plus the first-run bootstrap and the owner's own password change.

Every administrative operation takes the acting account id and checks the
`users` capability through auth.policy before touching anything.

When a SessionManager is supplied, status and role changes re-validate the
affected account's live sessions immediately instead of waiting for that
user's next request.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.credentials import check_password, generate_temporary_password, hash_password, verify_password
from auth.errors import Conflict, Forbidden, InputError, InvalidCredentials, NotFound
from auth.models import Account, AccountStatus, Role
from auth.policy import Capability, can_manage, policy_for
from auth.sessions import SessionManager
from auth.store import IdentityStore
from core.clock import Clock, to_iso, utcnow

logger = logging.getLogger("qcguard.auth")

_STATUSES = {s.value for s in AccountStatus}


class AccountService:
    def __init__(
        self,
        store: IdentityStore,
        sessions: SessionManager | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._clock = clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_admin(self, actor_id: int, conn=None) -> Account:
        actor = self._store.get_account(actor_id, conn=conn)
        if actor is None:
            raise NotFound("Account not found.")
        if not can_manage(actor, Capability.USERS):
            raise Forbidden("Only administrators can manage accounts.")
        return actor

    def _get(self, account_id: int, conn=None) -> Account:
        account = self._store.get_account(account_id, conn=conn)
        if account is None:
            raise NotFound("Account not found.")
        return account

    def _revalidate(self, account_id: int) -> None:
        if self._sessions is None:
            return
        for session in self._sessions.active_sessions:
            if session.account_id == account_id:
                self._sessions.validate(session)

    def _is_last_active_admin(self, account: Account, conn) -> bool:
        return (
            account.role == Role.ADMINISTRATOR.value
            and account.status == AccountStatus.ACTIVE.value
            and self._store.count_active_admins(conn=conn) <= 1
        )

    # ------------------------------------------------------------------
    # First run
    # ------------------------------------------------------------------

    def bootstrap_admin(self, username: str, password: str) -> Account:
        """Create the first administrator. Conflict once any account exists."""
        username = (username or "").strip()
        if not username:
            raise InputError("Username is required.")
        checked = check_password(policy_for(Role.ADMINISTRATOR.value).password, password)

        with self._store.transaction() as conn:
            if self._store.has_accounts(conn=conn):
                raise Conflict("Setup has already been completed.")
            account = Account(
                username=username,
                role=Role.ADMINISTRATOR.value,
                password_hash=hash_password(checked),
                created_at=to_iso(self._clock()),
            )
            account.id = self._store.create_account(account, conn=conn)

        logger.info("SETUP_COMPLETED admin=%s", username)
        return account

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def provision(
        self,
        actor_id: int,
        username: str,
        role: str,
        password: str | None = None,
        unit_id: int | None = None,
        sub_unit_id: int | None = None,
        group_id: int | None = None,
    ) -> Account:
        """Create an active account directly, bypassing registration."""
        self._require_admin(actor_id)
        username = (username or "").strip()
        if not username:
            raise InputError("Username is required.")
        checked = check_password(policy_for(role).password, password)

        account = Account(
            username=username,
            role=role,
            password_hash=hash_password(checked) if checked else None,
            unit_id=unit_id,
            sub_unit_id=sub_unit_id,
            group_id=group_id,
            created_at=to_iso(self._clock()),
        )
        try:
            account.id = self._store.create_account(account)
        except IntegrityError as exc:
            raise Conflict("Username already exists.") from exc

        logger.info("ACCOUNT_CREATED username=%s role=%s by=%s", username, role, actor_id)
        return account

    def set_status(self, actor_id: int, account_id: int, status: str) -> Account:
        if status not in _STATUSES:
            raise InputError(f"Unknown account status {status!r}.")
        with self._store.transaction() as conn:
            self._require_admin(actor_id, conn=conn)
            account = self._get(account_id, conn=conn)
            if status == AccountStatus.DISABLED.value:
                if account_id == actor_id:
                    raise Forbidden("You cannot disable your own account.")
                if self._is_last_active_admin(account, conn):
                    raise Conflict("Cannot disable the last active administrator.")
            self._store.update_account(account_id, conn=conn, status=status)
            account.status = status

        logger.info("ACCOUNT_STATUS_CHANGED account=%s status=%s by=%s", account_id, status, actor_id)
        self._revalidate(account_id)
        return account

    def set_role(self, actor_id: int, account_id: int, role: str) -> Account:
        """Change an account's role. Live sessions of that account end."""
        policy_for(role)
        with self._store.transaction() as conn:
            self._require_admin(actor_id, conn=conn)
            account = self._get(account_id, conn=conn)
            if role != Role.ADMINISTRATOR.value and self._is_last_active_admin(account, conn):
                raise Conflict("Cannot demote the last active administrator.")
            self._store.update_account(account_id, conn=conn, role=role)
            account.role = role

        logger.info("ACCOUNT_ROLE_CHANGED account=%s role=%s by=%s", account_id, role, actor_id)
        self._revalidate(account_id)
        return account

    def reset_password(self, actor_id: int, account_id: int) -> str:
        """Replace the account's password with a generated one and return it."""
        self._require_admin(actor_id)
        self._get(account_id)
        temporary = generate_temporary_password()
        self._store.update_account(account_id, password_hash=hash_password(temporary))
        logger.info("PASSWORD_RESET account=%s by=%s", account_id, actor_id)
        return temporary

    def list_accounts(self, actor_id: int) -> list[Account]:
        self._require_admin(actor_id)
        return self._store.list_accounts()

    def recent_logins(self, actor_id: int, limit: int = 5) -> list[Account]:
        self._require_admin(actor_id)
        if limit < 1:
            raise InputError("Limit must be at least 1.")
        return self._store.recent_logins(limit=limit)

    # ------------------------------------------------------------------
    # Self service
    # ------------------------------------------------------------------

    def change_password(self, account_id: int, current_password: str | None, new_password: str | None) -> None:
        """Owner changes their own password.

        The current password must verify when one is set. For roles whose
        policy allows it, an empty new password clears the password.
        """
        account = self._get(account_id)
        if account.password_hash is not None:
            if not current_password or not verify_password(current_password, account.password_hash):
                raise InvalidCredentials("Current password is incorrect.")
        checked = check_password(policy_for(account.role).password, new_password)
        self._store.update_account(account_id, password_hash=hash_password(checked) if checked else None)
        logger.info("PASSWORD_CHANGED account=%s", account_id)
