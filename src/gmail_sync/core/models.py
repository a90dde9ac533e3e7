"""Frozen dataclasses for the Gmail Sync domain model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class NotificationStatus(StrEnum):
    """Lifecycle of a pending notification: pending → processing → done | error."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class MessageOutcome(StrEnum):
    """What happened to a single candidate message within a batch."""

    STORED = "stored"
    SKIPPED = "skipped"
    INVALID = "invalid"


@dataclass(frozen=True)
class PendingNotification:
    """A queued change signal for one mailbox."""

    id: str
    user_email: str
    delta_cursor: str
    status: NotificationStatus
    attempts: int
    created_at: datetime
    updated_at: datetime
    error_message: str = ""


@dataclass(frozen=True)
class User:
    """A provisioned mailbox owner and its last fully processed history position."""

    id: str
    email: str
    cursor: str | None = None


@dataclass(frozen=True)
class HistoryDelta:
    """Message IDs added since a cursor, plus the provider's current position."""

    message_ids: tuple[str, ...] = field(default_factory=tuple)
    latest_cursor: str | None = None


@dataclass(frozen=True)
class AttachmentRef:
    """Attachment discovered during normalization, before upload.

    ``data`` is set when the payload carried the bytes inline (raw RFC-822
    messages, small structured parts); otherwise the bytes are fetched from
    the provider by ``attachment_id``.
    """

    attachment_id: str
    filename: str
    mime_type: str
    size: int = 0
    data: bytes | None = field(default=None, repr=False)


@dataclass(frozen=True)
class StoredAttachment:
    """Attachment metadata as persisted on an EmailRecord."""

    attachment_id: str
    filename: str
    mime_type: str
    size: int
    download_url: str


@dataclass(frozen=True)
class NormalizedEmail:
    """Provider message mapped onto the record schema, attachments not yet uploaded."""

    message_id: str
    history_id: str | None = None
    subject: str | None = None
    sender: str | None = None
    to: tuple[str, ...] = field(default_factory=tuple)
    date: datetime | None = None
    body_html: str | None = None
    body_text: str | None = None
    labels: tuple[str, ...] = field(default_factory=tuple)
    snippet: str | None = None
    attachments: tuple[AttachmentRef, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class EmailRecord:
    """Durable per-user email, keyed by (user_id, message_id)."""

    user_id: str
    message_id: str
    history_id: str | None = None
    subject: str | None = None
    sender: str | None = None
    to: tuple[str, ...] = field(default_factory=tuple)
    date: datetime | None = None
    body_html: str | None = None
    body_text: str | None = None
    labels: tuple[str, ...] = field(default_factory=tuple)
    snippet: str | None = None
    attachments: tuple[StoredAttachment, ...] = field(default_factory=tuple)
    created_at: datetime | None = None

    @classmethod
    def from_normalized(
        cls,
        user_id: str,
        email: NormalizedEmail,
        attachments: tuple[StoredAttachment, ...] = (),
    ) -> EmailRecord:
        return cls(
            user_id=user_id,
            message_id=email.message_id,
            history_id=email.history_id,
            subject=email.subject,
            sender=email.sender,
            to=email.to,
            date=email.date,
            body_html=email.body_html,
            body_text=email.body_text,
            labels=email.labels,
            snippet=email.snippet,
            attachments=attachments,
        )


@dataclass(frozen=True)
class MessageResult:
    """Result of running one candidate message through the pipeline."""

    message_id: str
    outcome: MessageOutcome
    history_id: str | None = None
    error: str = ""


@dataclass
class ProcessingReport:
    """Mutable summary of one worker invocation over a notification."""

    notification_id: str
    status: NotificationStatus = NotificationStatus.PENDING
    candidates: int = 0
    stored: int = 0
    skipped: int = 0
    invalid: int = 0
    cursor: str | None = None
    error_message: str = ""

    def record(self, result: MessageResult) -> None:
        if result.outcome is MessageOutcome.STORED:
            self.stored += 1
        elif result.outcome is MessageOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.invalid += 1


def cursor_sort_key(cursor: str) -> tuple[int, int, str]:
    """Ordering key for history cursors.

    Gmail history IDs are unsigned decimal integers, so digit strings compare
    numerically. Anything else falls back to string order and sorts after them.
    """
    if cursor.isdigit():
        return (0, int(cursor), "")
    return (1, 0, cursor)


def is_newer_cursor(candidate: str | None, current: str | None) -> bool:
    """True if ``candidate`` is strictly ahead of ``current``."""
    if candidate is None:
        return False
    if current is None:
        return True
    return cursor_sort_key(candidate) > cursor_sort_key(current)


def newest_cursor(cursors: list[str | None]) -> str | None:
    """Return the newest non-empty cursor, or None when there is none."""
    present = [c for c in cursors if c]
    if not present:
        return None
    return max(present, key=cursor_sort_key)
