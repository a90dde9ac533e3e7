"""Idempotent persistence of email records and cursor bookkeeping for users."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict, replace
from datetime import UTC, datetime

from gmail_sync.core.exceptions import ConflictError, NotFoundError
from gmail_sync.core.models import EmailRecord, StoredAttachment, User, is_newer_cursor
from gmail_sync.storage.database import Database

logger = logging.getLogger(__name__)

# Bound on compare-and-set retries when another writer moves the cursor underneath us.
_MAX_CURSOR_CAS_ATTEMPTS = 5


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _to_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC)


def _date_to_text(value: datetime | None) -> str | None:
    """Store aware datetimes in UTC so text ordering matches time ordering."""
    value = _to_utc(value)
    return value.isoformat() if value is not None else None


def _row_to_user(row: sqlite3.Row) -> User:
    return User(id=row["id"], email=row["email"], cursor=row["cursor"])


def _row_to_record(row: sqlite3.Row) -> EmailRecord:
    attachments = tuple(StoredAttachment(**item) for item in json.loads(row["attachments"]))
    return EmailRecord(
        user_id=row["user_id"],
        message_id=row["message_id"],
        history_id=row["history_id"],
        subject=row["subject"],
        sender=row["sender"],
        to=tuple(json.loads(row["recipients"])),
        date=datetime.fromisoformat(row["date"]) if row["date"] else None,
        body_html=row["body_html"],
        body_text=row["body_text"],
        labels=tuple(json.loads(row["labels"])),
        snippet=row["snippet"],
        attachments=attachments,
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class MessageRepository:
    """Reads users and writes email records, keyed by (user_id, message_id).

    Records are insert-only: once written they are never updated or deleted here.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    # -- users ---------------------------------------------------------------

    def add_user(self, user_id: str, email: str, cursor: str | None = None) -> User:
        """Provision a user, or refresh the email of an existing one.

        The stored cursor is only set on first insert.

        Raises:
            ConflictError: If the email already belongs to a different user.
        """
        now = _now()
        try:
            with self._db.transaction() as conn:
                conn.execute(
                    """INSERT INTO users (id, email, cursor, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?)
                       ON CONFLICT(id) DO UPDATE SET
                           email = excluded.email,
                           updated_at = excluded.updated_at""",
                    (user_id, email, cursor, now, now),
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Email {email} is already registered to another user") from e
        logger.info("Provisioned user %s (%s)", user_id, email)
        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} vanished after provisioning")
        return user

    def get_user(self, user_id: str) -> User | None:
        with self._db.transaction() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _row_to_user(row) if row else None

    def find_user_by_email(self, email: str) -> User:
        """Resolve a mailbox address to its user.

        Raises:
            NotFoundError: If no user has this email.
        """
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ? LIMIT 1", (email.strip(),)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"User not found for email {email}")
        return _row_to_user(row)

    def update_cursor(self, user_id: str, cursor: str) -> None:
        """Overwrite the stored cursor unconditionally."""
        with self._db.transaction() as conn:
            updated = conn.execute(
                "UPDATE users SET cursor = ?, updated_at = ? WHERE id = ?",
                (cursor, _now(), user_id),
            ).rowcount
        if not updated:
            raise NotFoundError(f"User {user_id} not found")

    def advance_cursor(self, user_id: str, cursor: str) -> bool:
        """Move the stored cursor forward to ``cursor``; never moves it back.

        Compare-and-set against the value read, so concurrent writers converge on
        the newest cursor. Returns True if the stored value changed.
        """
        for _ in range(_MAX_CURSOR_CAS_ATTEMPTS):
            user = self.get_user(user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            if not is_newer_cursor(cursor, user.cursor):
                logger.debug(
                    "Cursor for %s stays at %s (candidate %s)", user_id, user.cursor, cursor
                )
                return False
            with self._db.transaction() as conn:
                swapped = conn.execute(
                    "UPDATE users SET cursor = ?, updated_at = ? WHERE id = ? AND cursor IS ?",
                    (cursor, _now(), user_id, user.cursor),
                ).rowcount
            if swapped:
                logger.info("Advanced cursor for %s: %s → %s", user_id, user.cursor, cursor)
                return True
        logger.warning("Gave up advancing cursor for %s to %s after contention", user_id, cursor)
        return False

    # -- emails --------------------------------------------------------------

    def exists(self, user_id: str, message_id: str) -> bool:
        """Check whether a record for this message is already stored."""
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT 1 FROM emails WHERE user_id = ? AND message_id = ?",
                (user_id, message_id),
            ).fetchone()
        return row is not None

    def insert_if_absent(self, record: EmailRecord) -> EmailRecord:
        """Insert a new record with ``created_at`` stamped now.

        Returns the stored record.

        Raises:
            ConflictError: If a record with the same key already exists.
        """
        created_at = datetime.now(UTC)
        try:
            with self._db.transaction() as conn:
                conn.execute(
                    """INSERT INTO emails
                       (user_id, message_id, history_id, subject, sender, recipients, date,
                        body_html, body_text, labels, snippet, attachments, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        record.user_id,
                        record.message_id,
                        record.history_id,
                        record.subject,
                        record.sender,
                        json.dumps(list(record.to)),
                        _date_to_text(record.date),
                        record.body_html,
                        record.body_text,
                        json.dumps(list(record.labels)),
                        record.snippet,
                        json.dumps([asdict(a) for a in record.attachments]),
                        created_at.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(
                f"Email {record.message_id} already stored for user {record.user_id}"
            ) from e
        logger.debug("Inserted email %s for user %s", record.message_id, record.user_id)
        return replace(record, date=_to_utc(record.date), created_at=created_at)

    def get_email(self, user_id: str, message_id: str) -> EmailRecord | None:
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM emails WHERE user_id = ? AND message_id = ?",
                (user_id, message_id),
            ).fetchone()
        return _row_to_record(row) if row else None

    def list_emails(self, user_id: str, limit: int | None = None) -> list[EmailRecord]:
        """Get a user's emails, newest first; undated records sort last."""
        sql = (
            "SELECT * FROM emails WHERE user_id = ? "
            "ORDER BY date IS NULL, date DESC, created_at DESC"
        )
        params: list[str | int] = [user_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._db.transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_record(row) for row in rows]

    def count_emails(self, user_id: str) -> int:
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS cnt FROM emails WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row["cnt"]
