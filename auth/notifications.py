"""
auth/notifications.py -- In-app notifications for reviewers and applicants.

Notifications are written inside the caller's transaction (pass `conn`) so a
rolled-back submission or approval leaves no orphan notification behind.
"""

from __future__ import annotations

from sqlalchemy.engine import Connection

from auth.errors import NotFound
from auth.models import Account, Notification, RegistrationRequest, Role
from auth.store import IdentityStore
from core.clock import Clock, to_iso, utcnow

REGISTRATION_REQUEST = "registration_request"
REGISTRATION_APPROVED = "registration_approved"


class NotificationCenter:
    def __init__(self, store: IdentityStore, clock: Clock = utcnow) -> None:
        self._store = store
        self._clock = clock

    def notify_reviewers(self, request: RegistrationRequest, conn: Connection | None = None) -> int:
        """Tell every administrator, and the method engineers of the requested
        unit, that a request is waiting. Returns the number of notifications."""
        recipients: dict[int, Account] = {
            a.id: a for a in self._store.list_active_accounts(Role.ADMINISTRATOR.value, conn=conn)
        }
        if request.requested_unit_id is not None:
            for engineer in self._store.list_active_accounts(
                Role.METHOD_ENGINEER.value, unit_id=request.requested_unit_id, conn=conn
            ):
                recipients[engineer.id] = engineer

        now = to_iso(self._clock())
        for account_id in recipients:
            self._store.create_notification(
                Notification(
                    account_id=account_id,
                    kind=REGISTRATION_REQUEST,
                    title="New User Registration Request",
                    message=f'User "{request.username}" has requested registration with role '
                    f'"{request.requested_role}".',
                    created_at=now,
                ),
                conn=conn,
            )
        return len(recipients)

    def notify_approved(self, account_id: int, conn: Connection | None = None) -> None:
        self._store.create_notification(
            Notification(
                account_id=account_id,
                kind=REGISTRATION_APPROVED,
                title="Registration Approved",
                message="Your registration has been approved. You can now log in.",
                created_at=to_iso(self._clock()),
            ),
            conn=conn,
        )

    def list_for(self, account_id: int, limit: int = 50) -> list[Notification]:
        return self._store.list_notifications(account_id, limit=limit)

    def mark_read(self, notification_id: int, account_id: int) -> None:
        """Raises NotFound if the notification does not exist or belongs to someone else."""
        if not self._store.mark_notification_read(notification_id, account_id, to_iso(self._clock())):
            raise NotFound("Notification not found.")
