"""Gmail Sync - Reconcile Gmail push notifications into durable per-user email records."""

from gmail_sync.core.models import (
    EmailRecord,
    HistoryDelta,
    NotificationStatus,
    PendingNotification,
    ProcessingReport,
    StoredAttachment,
    User,
)
from gmail_sync.pipeline.intake import NotificationIntake
from gmail_sync.pipeline.service import GmailSync
from gmail_sync.pipeline.worker import ReconciliationWorker

__all__ = [
    "EmailRecord",
    "GmailSync",
    "HistoryDelta",
    "NotificationIntake",
    "NotificationStatus",
    "PendingNotification",
    "ProcessingReport",
    "ReconciliationWorker",
    "StoredAttachment",
    "User",
]
