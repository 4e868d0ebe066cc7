"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper. IdentityStore is the repository; the
_row_to_* functions are the mappers. Services never touch SQL directly.

Transactions:
  transaction() yields one connection inside engine.begin(). Every method
  takes an optional `conn`; when given, the method joins the caller's
  transaction and does not commit. When omitted, the method runs in its own
  short transaction. Multi-step mutations (approve: insert account, consume
  code, close request) pass the same conn to every call so they commit or
  roll back together.

  State transitions are conditional UPDATEs (e.g. "... WHERE status =
  'pending'"). The returned bool says whether the row was still in the
  expected state, which is how a lost race surfaces to the service.

Security:
  All queries use bound parameters. No f-strings in SQL.

Uniqueness:
  accounts.username and enrollment_codes.code are UNIQUE. A partial unique
  index allows at most one pending request per username while keeping any
  number of approved/rejected history rows. Violations raise
  sqlalchemy.exc.IntegrityError at commit time; services translate that into
  auth.errors.Conflict.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import (
    Account,
    AccountStatus,
    EnrollmentCode,
    Notification,
    RegistrationRequest,
    RememberToken,
    RequestStatus,
    Role,
)
from core.clock import to_iso, utcnow
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL for passwordless production operators
    Column("role", String(30), nullable=False),
    Column("unit_id", Integer),
    Column("sub_unit_id", Integer),
    Column("group_id", Integer),
    Column("status", String(16), nullable=False, server_default="active"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_codes = Table(
    "enrollment_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(16), nullable=False, unique=True),
    Column("role", String(30), nullable=False),
    Column("unit_id", Integer),
    Column("sub_unit_id", Integer),
    Column("group_id", Integer),
    Column("created_by", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32)),
    Column("used_at", String(32)),
    Column("used_by", Integer),
)

_requests = Table(
    "registration_requests",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(16), nullable=False),
    Column("username", String(255), nullable=False),
    Column("password_hash", Text),
    Column("requested_role", String(30), nullable=False),
    Column("requested_unit_id", Integer),
    Column("requested_sub_unit_id", Integer),
    Column("requested_group_id", Integer),
    Column("status", String(16), nullable=False, server_default="pending"),
    Column("reviewed_by", Integer),
    Column("processed_at", String(32)),
    Column("rejection_reason", Text),
    Column("created_at", String(32), nullable=False),
)

Index(
    "uq_pending_request_username",
    _requests.c.username,
    unique=True,
    sqlite_where=_requests.c.status == RequestStatus.PENDING.value,
    postgresql_where=_requests.c.status == RequestStatus.PENDING.value,
)

_remember_tokens = Table(
    "remember_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

_notifications = Table(
    "notifications",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("kind", String(40), nullable=False),
    Column("title", String(255), nullable=False),
    Column("message", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("read_at", String(32)),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _stamp(value: str | None) -> str:
    return value or to_iso(utcnow())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for accounts, enrollment codes, registration requests,
    remember tokens and notifications.

    Usage:
        store = IdentityStore("sqlite:///:memory:")
        with store.transaction() as conn:
            account_id = store.create_account(account, conn=conn)
            store.mark_code_used("AB123456", account_id, now_iso, conn=conn)
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection whose statements commit together or not at all."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def _use(self, conn: Connection | None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as own:
            yield own

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def has_accounts(self, conn: Connection | None = None) -> bool:
        """Return True if at least one account exists (first-run detection)."""
        with self._use(conn) as c:
            result = c.execute(select(func.count()).select_from(_accounts)).scalar()
        return (result or 0) > 0

    def create_account(self, account: Account, conn: Connection | None = None) -> int:
        """Insert an account and return its id.

        Raises sqlalchemy.exc.IntegrityError if the username is taken.
        """
        with self._use(conn) as c:
            result = c.execute(
                _accounts.insert().values(
                    username=account.username,
                    password_hash=account.password_hash,
                    role=account.role,
                    unit_id=account.unit_id,
                    sub_unit_id=account.sub_unit_id,
                    group_id=account.group_id,
                    status=account.status,
                    created_at=_stamp(account.created_at),
                )
            )
            return result.inserted_primary_key[0]

    def get_account(self, account_id: int, conn: Connection | None = None) -> Account | None:
        with self._use(conn) as c:
            row = c.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_account_by_username(self, username: str, conn: Connection | None = None) -> Account | None:
        """Look up an account by exact username (case-sensitive)."""
        with self._use(conn) as c:
            row = c.execute(_accounts.select().where(_accounts.c.username == username)).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self, conn: Connection | None = None) -> list[Account]:
        with self._use(conn) as c:
            rows = c.execute(_accounts.select().order_by(_accounts.c.username)).fetchall()
        return [_row_to_account(r) for r in rows]

    def list_active_accounts(
        self, role: str, unit_id: int | None = None, conn: Connection | None = None
    ) -> list[Account]:
        """Active accounts with the given role, optionally limited to one unit."""
        query = _accounts.select().where(
            (_accounts.c.role == role) & (_accounts.c.status == AccountStatus.ACTIVE.value)
        )
        if unit_id is not None:
            query = query.where(_accounts.c.unit_id == unit_id)
        with self._use(conn) as c:
            rows = c.execute(query.order_by(_accounts.c.id)).fetchall()
        return [_row_to_account(r) for r in rows]

    def update_account(self, account_id: int, conn: Connection | None = None, **fields) -> bool:
        """Update mutable fields (status, password_hash, role, unit ids).

        Returns True if a row was updated, False if account_id was not found.
        """
        with self._use(conn) as c:
            result = c.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
        return result.rowcount > 0

    def update_last_login(self, account_id: int, when: str, conn: Connection | None = None) -> None:
        with self._use(conn) as c:
            c.execute(_accounts.update().where(_accounts.c.id == account_id).values(last_login=when))

    def count_active_admins(self, conn: Connection | None = None) -> int:
        with self._use(conn) as c:
            result = c.execute(
                select(func.count())
                .select_from(_accounts)
                .where(
                    (_accounts.c.role == Role.ADMINISTRATOR.value)
                    & (_accounts.c.status == AccountStatus.ACTIVE.value)
                )
            ).scalar()
        return result or 0

    def recent_logins(self, limit: int = 5, conn: Connection | None = None) -> list[Account]:
        """Accounts that have logged in, most recent first."""
        with self._use(conn) as c:
            rows = c.execute(
                _accounts.select()
                .where(_accounts.c.last_login.is_not(None))
                .order_by(_accounts.c.last_login.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_account(r) for r in rows]

    # ------------------------------------------------------------------
    # Enrollment codes
    # ------------------------------------------------------------------

    def create_code(self, code: EnrollmentCode, conn: Connection | None = None) -> int:
        """Insert a code. Raises IntegrityError if the code string exists."""
        with self._use(conn) as c:
            result = c.execute(
                _codes.insert().values(
                    code=code.code,
                    role=code.role,
                    unit_id=code.unit_id,
                    sub_unit_id=code.sub_unit_id,
                    group_id=code.group_id,
                    created_by=code.created_by,
                    created_at=_stamp(code.created_at),
                    expires_at=code.expires_at,
                )
            )
            return result.inserted_primary_key[0]

    def get_code(self, code: str, conn: Connection | None = None) -> EnrollmentCode | None:
        with self._use(conn) as c:
            row = c.execute(_codes.select().where(_codes.c.code == code)).fetchone()
        return _row_to_code(row) if row is not None else None

    def list_codes(self, conn: Connection | None = None) -> list[EnrollmentCode]:
        """All codes, newest first."""
        with self._use(conn) as c:
            rows = c.execute(_codes.select().order_by(_codes.c.created_at.desc(), _codes.c.id.desc())).fetchall()
        return [_row_to_code(r) for r in rows]

    def mark_code_used(self, code: str, consumer_id: int, now: str, conn: Connection | None = None) -> bool:
        """Consume code if it is unused and unexpired at `now`.

        The whole check happens in the UPDATE's WHERE clause so two
        concurrent consumers cannot both succeed. Returns False when the
        code is unknown, already used, or expired.
        """
        with self._use(conn) as c:
            result = c.execute(
                _codes.update()
                .where(
                    (_codes.c.code == code)
                    & (_codes.c.used_at.is_(None))
                    & ((_codes.c.expires_at.is_(None)) | (_codes.c.expires_at > now))
                )
                .values(used_at=now, used_by=consumer_id)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Registration requests
    # ------------------------------------------------------------------

    def create_request(self, request: RegistrationRequest, conn: Connection | None = None) -> int:
        """Insert a pending request.

        Raises IntegrityError if a pending request for the username exists.
        """
        with self._use(conn) as c:
            result = c.execute(
                _requests.insert().values(
                    code=request.code,
                    username=request.username,
                    password_hash=request.password_hash,
                    requested_role=request.requested_role,
                    requested_unit_id=request.requested_unit_id,
                    requested_sub_unit_id=request.requested_sub_unit_id,
                    requested_group_id=request.requested_group_id,
                    status=RequestStatus.PENDING.value,
                    created_at=_stamp(request.created_at),
                )
            )
            return result.inserted_primary_key[0]

    def get_request(self, request_id: int, conn: Connection | None = None) -> RegistrationRequest | None:
        with self._use(conn) as c:
            row = c.execute(_requests.select().where(_requests.c.id == request_id)).fetchone()
        return _row_to_request(row) if row is not None else None

    def has_pending_request(self, username: str, conn: Connection | None = None) -> bool:
        with self._use(conn) as c:
            row = c.execute(
                select(_requests.c.id).where(
                    (_requests.c.username == username) & (_requests.c.status == RequestStatus.PENDING.value)
                )
            ).fetchone()
        return row is not None

    def list_pending_requests(
        self, unit_id: int | None = None, conn: Connection | None = None
    ) -> list[RegistrationRequest]:
        """Pending requests, oldest submission first.

        unit_id narrows the query to one requested unit; authorization is
        still decided by auth.policy, this is only a pre-filter.
        """
        query = _requests.select().where(_requests.c.status == RequestStatus.PENDING.value)
        if unit_id is not None:
            query = query.where(_requests.c.requested_unit_id == unit_id)
        with self._use(conn) as c:
            rows = c.execute(query.order_by(_requests.c.created_at.asc(), _requests.c.id.asc())).fetchall()
        return [_row_to_request(r) for r in rows]

    def close_request(
        self,
        request_id: int,
        status: RequestStatus,
        reviewer_id: int,
        now: str,
        reason: str | None = None,
        conn: Connection | None = None,
    ) -> bool:
        """Move a pending request to a terminal status.

        Returns False if the request is no longer pending (or missing).
        """
        with self._use(conn) as c:
            result = c.execute(
                _requests.update()
                .where((_requests.c.id == request_id) & (_requests.c.status == RequestStatus.PENDING.value))
                .values(status=status.value, reviewed_by=reviewer_id, processed_at=now, rejection_reason=reason)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Remember tokens
    # ------------------------------------------------------------------

    def create_remember_token(self, token: RememberToken, conn: Connection | None = None) -> int:
        with self._use(conn) as c:
            result = c.execute(
                _remember_tokens.insert().values(
                    account_id=token.account_id,
                    token_hash=token.token_hash,
                    created_at=_stamp(token.created_at),
                    expires_at=token.expires_at,
                )
            )
            return result.inserted_primary_key[0]

    def get_remember_token_by_hash(self, token_hash: str, conn: Connection | None = None) -> RememberToken | None:
        """O(1) lookup via the UNIQUE index on token_hash."""
        with self._use(conn) as c:
            row = c.execute(_remember_tokens.select().where(_remember_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_remember_token(row) if row is not None else None

    def list_remember_tokens(self, account_id: int, conn: Connection | None = None) -> list[RememberToken]:
        with self._use(conn) as c:
            rows = c.execute(
                _remember_tokens.select()
                .where(_remember_tokens.c.account_id == account_id)
                .order_by(_remember_tokens.c.id)
            ).fetchall()
        return [_row_to_remember_token(r) for r in rows]

    def delete_remember_token(self, token_id: int, conn: Connection | None = None) -> bool:
        with self._use(conn) as c:
            result = c.execute(_remember_tokens.delete().where(_remember_tokens.c.id == token_id))
        return result.rowcount > 0

    def delete_remember_tokens(self, account_id: int, conn: Connection | None = None) -> int:
        """Remove every remember token owned by account_id. Returns the count."""
        with self._use(conn) as c:
            result = c.execute(_remember_tokens.delete().where(_remember_tokens.c.account_id == account_id))
        return result.rowcount

    def purge_expired_remember_tokens(self, now: str, conn: Connection | None = None) -> int:
        with self._use(conn) as c:
            result = c.execute(_remember_tokens.delete().where(_remember_tokens.c.expires_at <= now))
        return result.rowcount

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def create_notification(self, notification: Notification, conn: Connection | None = None) -> int:
        with self._use(conn) as c:
            result = c.execute(
                _notifications.insert().values(
                    account_id=notification.account_id,
                    kind=notification.kind,
                    title=notification.title,
                    message=notification.message,
                    created_at=_stamp(notification.created_at),
                )
            )
            return result.inserted_primary_key[0]

    def list_notifications(self, account_id: int, limit: int = 50, conn: Connection | None = None) -> list[Notification]:
        """Newest first, capped at `limit`."""
        with self._use(conn) as c:
            rows = c.execute(
                _notifications.select()
                .where(_notifications.c.account_id == account_id)
                .order_by(_notifications.c.created_at.desc(), _notifications.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_notification(r) for r in rows]

    def mark_notification_read(
        self, notification_id: int, account_id: int, now: str, conn: Connection | None = None
    ) -> bool:
        """Mark read. account_id must match the owner, otherwise nothing changes."""
        with self._use(conn) as c:
            result = c.execute(
                _notifications.update()
                .where((_notifications.c.id == notification_id) & (_notifications.c.account_id == account_id))
                .values(read_at=now)
            )
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        password_hash=row.password_hash,
        role=row.role,
        unit_id=row.unit_id,
        sub_unit_id=row.sub_unit_id,
        group_id=row.group_id,
        status=row.status,
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_code(row) -> EnrollmentCode:
    return EnrollmentCode(
        id=row.id,
        code=row.code,
        role=row.role,
        unit_id=row.unit_id,
        sub_unit_id=row.sub_unit_id,
        group_id=row.group_id,
        created_by=row.created_by,
        created_at=row.created_at,
        expires_at=row.expires_at,
        used_at=row.used_at,
        used_by=row.used_by,
    )


def _row_to_request(row) -> RegistrationRequest:
    return RegistrationRequest(
        id=row.id,
        code=row.code,
        username=row.username,
        password_hash=row.password_hash,
        requested_role=row.requested_role,
        requested_unit_id=row.requested_unit_id,
        requested_sub_unit_id=row.requested_sub_unit_id,
        requested_group_id=row.requested_group_id,
        status=row.status,
        reviewed_by=row.reviewed_by,
        processed_at=row.processed_at,
        rejection_reason=row.rejection_reason,
        created_at=row.created_at,
    )


def _row_to_remember_token(row) -> RememberToken:
    return RememberToken(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        created_at=row.created_at,
        expires_at=row.expires_at,
    )


def _row_to_notification(row) -> Notification:
    return Notification(
        id=row.id,
        account_id=row.account_id,
        kind=row.kind,
        title=row.title,
        message=row.message,
        created_at=row.created_at,
        read_at=row.read_at,
    )
