"""Durable queue of pending change notifications with per-item retry bookkeeping."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import UTC, datetime, timedelta

from gmail_sync.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from gmail_sync.core.models import NotificationStatus, PendingNotification
from gmail_sync.storage.database import Database

logger = logging.getLogger(__name__)

# Status state machine: pending → processing → done | error
# Re-drive: error → pending (retry), processing → error (reaper)
_ALLOWED_SOURCES: dict[NotificationStatus, tuple[NotificationStatus, ...]] = {
    NotificationStatus.PROCESSING: (NotificationStatus.PENDING, NotificationStatus.ERROR),
    NotificationStatus.DONE: (NotificationStatus.PROCESSING,),
    NotificationStatus.ERROR: (NotificationStatus.PENDING, NotificationStatus.PROCESSING),
    NotificationStatus.PENDING: (NotificationStatus.ERROR, NotificationStatus.PROCESSING),
}

# Entering these statuses counts as an attempt.
_COUNTED_STATUSES = {NotificationStatus.PROCESSING, NotificationStatus.ERROR}


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _row_to_notification(row: sqlite3.Row) -> PendingNotification:
    return PendingNotification(
        id=row["id"],
        user_email=row["user_email"],
        delta_cursor=row["delta_cursor"],
        status=NotificationStatus(row["status"]),
        attempts=row["attempts"],
        error_message=row["error_message"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


class NotificationQueue:
    """Stores inbound push notifications until the reconciliation worker handles them.

    Items are never deleted here; retention is an operational concern.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def enqueue(self, user_email: str | None, delta_cursor: str | int | None) -> PendingNotification:
        """Create a 'pending' notification.

        Raises:
            ValidationError: If ``user_email`` or ``delta_cursor`` is empty or of the wrong
                type. No row is created.
        """
        if user_email is not None and not isinstance(user_email, str):
            raise ValidationError(f"userEmail must be a string, got {type(user_email).__name__}")
        if delta_cursor is not None and (
            isinstance(delta_cursor, bool) or not isinstance(delta_cursor, (str, int))
        ):
            raise ValidationError(
                f"deltaCursor must be a string or integer, got {type(delta_cursor).__name__}"
            )
        email = (user_email or "").strip()
        cursor = "" if delta_cursor is None else str(delta_cursor).strip()
        if not email:
            raise ValidationError("Notification is missing userEmail")
        if not cursor:
            raise ValidationError(f"Notification for {email} is missing deltaCursor")

        notification_id = uuid.uuid4().hex
        now = _now()
        with self._db.transaction() as conn:
            conn.execute(
                """INSERT INTO pending_notifications
                   (id, user_email, delta_cursor, status, attempts, error_message,
                    created_at, updated_at)
                   VALUES (?, ?, ?, 'pending', 0, '', ?, ?)""",
                (notification_id, email, cursor, now, now),
            )
        logger.info("Enqueued notification %s for %s at cursor %s", notification_id, email, cursor)
        return self.get(notification_id)

    def get(self, notification_id: str) -> PendingNotification:
        """Get a notification by ID.

        Raises:
            NotFoundError: If no such notification exists.
        """
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM pending_notifications WHERE id = ?", (notification_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        return _row_to_notification(row)

    def mark_processing(self, notification_id: str) -> PendingNotification:
        """Claim a pending (or previously failed) notification for processing."""
        return self._transition(notification_id, NotificationStatus.PROCESSING)

    def mark_done(self, notification_id: str) -> PendingNotification:
        return self._transition(notification_id, NotificationStatus.DONE)

    def mark_error(self, notification_id: str, message: str) -> PendingNotification:
        return self._transition(notification_id, NotificationStatus.ERROR, error_message=message)

    def reset_to_pending(self, notification_id: str) -> PendingNotification:
        """Re-drive a failed or stuck notification. The attempts counter is kept."""
        return self._transition(notification_id, NotificationStatus.PENDING, error_message="")

    def _transition(
        self,
        notification_id: str,
        status: NotificationStatus,
        *,
        error_message: str | None = None,
    ) -> PendingNotification:
        sources = _ALLOWED_SOURCES[status]
        placeholders = ", ".join("?" for _ in sources)
        increment = 1 if status in _COUNTED_STATUSES else 0

        sets = ["status = ?", "attempts = attempts + ?", "updated_at = ?"]
        params: list[str | int] = [status.value, increment, _now()]
        if error_message is not None:
            sets.append("error_message = ?")
            params.append(error_message)
        params.append(notification_id)
        params.extend(s.value for s in sources)

        with self._db.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE pending_notifications SET {', '.join(sets)} "
                f"WHERE id = ? AND status IN ({placeholders})",
                params,
            )
            updated = cursor.rowcount

        if not updated:
            current = self.get(notification_id)
            raise InvalidTransitionError(
                f"Cannot move notification {notification_id} "
                f"from {current.status.value} to {status.value}"
            )
        logger.debug("Notification %s → %s", notification_id, status.value)
        return self.get(notification_id)

    def next_pending_ids(self, limit: int = 50) -> list[str]:
        """Get pending notification IDs, oldest first."""
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM pending_notifications WHERE status = 'pending' "
                "ORDER BY created_at, rowid LIMIT ?",
                (limit,),
            ).fetchall()
        return [row["id"] for row in rows]

    def list_by_status(self, status: NotificationStatus, limit: int = 100) -> list[PendingNotification]:
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM pending_notifications WHERE status = ? "
                "ORDER BY created_at, rowid LIMIT ?",
                (status.value, limit),
            ).fetchall()
        return [_row_to_notification(row) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        """Get count of notifications grouped by status."""
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) as cnt FROM pending_notifications GROUP BY status"
            ).fetchall()
        return {row["status"]: row["cnt"] for row in rows}

    def find_stale_processing(self, older_than: timedelta) -> list[PendingNotification]:
        """Notifications stuck in 'processing' since before ``now - older_than``."""
        cutoff = (datetime.now(UTC) - older_than).isoformat()
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM pending_notifications "
                "WHERE status = 'processing' AND updated_at < ? ORDER BY updated_at",
                (cutoff,),
            ).fetchall()
        return [_row_to_notification(row) for row in rows]

    def reap_stale(self, older_than: timedelta) -> int:
        """Move notifications stuck in 'processing' to 'error' so they can be retried.

        Returns the number of notifications reaped.
        """
        reaped = 0
        for notification in self.find_stale_processing(older_than):
            try:
                self.mark_error(
                    notification.id,
                    f"Processing timed out after {older_than.total_seconds():.0f}s",
                )
            except InvalidTransitionError:
                # Finished between the scan and the update.
                continue
            reaped += 1
        if reaped:
            logger.warning("Reaped %d stale processing notifications", reaped)
        return reaped

    def retry_errors(self) -> int:
        """Reset all 'error' notifications back to 'pending' for retry.

        Returns the number of notifications reset.
        """
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE pending_notifications SET status = 'pending', error_message = '', "
                "updated_at = ? WHERE status = 'error'",
                (_now(),),
            )
            return cursor.rowcount
