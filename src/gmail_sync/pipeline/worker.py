"""Reconciliation worker: turns one pending notification into stored email records."""

from __future__ import annotations

import logging
from collections.abc import Callable

from gmail_sync.core.exceptions import (
    ConflictError,
    GmailSyncError,
    InvalidTransitionError,
    ValidationError,
)
from gmail_sync.core.gmail_client import GmailClient
from gmail_sync.core.models import (
    EmailRecord,
    MessageOutcome,
    MessageResult,
    NormalizedEmail,
    NotificationStatus,
    PendingNotification,
    ProcessingReport,
    StoredAttachment,
    User,
    newest_cursor,
)
from gmail_sync.core.normalizer import normalize
from gmail_sync.storage.blob_store import BlobStore, attachment_path
from gmail_sync.storage.queue import NotificationQueue
from gmail_sync.storage.repository import MessageRepository

logger = logging.getLogger(__name__)

ClientFactory = Callable[[User], GmailClient]

_RUNNABLE_STATUSES = (NotificationStatus.PENDING, NotificationStatus.ERROR)


class ReconciliationWorker:
    """Processes a single notification per call: pending → processing → done | error.

    Per notification:
    1. Validate the notification fields
    2. Resolve the user by email
    3. List message IDs added since the user's stored cursor
    4. For each ID: dedup check → fetch → normalize → upload attachments → insert
    5. Advance the user's cursor to the newest history ID seen, only if every
       message was handled without a fatal error
    6. Mark the notification done

    Per-message normalization failures skip that message. Provider, auth and
    blob upload failures abort the batch and leave the notification in 'error'
    with the cursor untouched; records already inserted are kept and deduped on retry.
    """

    def __init__(
        self,
        queue: NotificationQueue,
        repository: MessageRepository,
        blob_store: BlobStore,
        client_factory: ClientFactory,
        *,
        message_format: str = "full",
    ) -> None:
        self._queue = queue
        self._repository = repository
        self._blob_store = blob_store
        self._client_factory = client_factory
        self._message_format = message_format

    def process(self, notification_id: str) -> ProcessingReport:
        """Run the reconciliation algorithm for one notification.

        Only 'pending' and 'error' notifications are run; anything else is
        reported with its current status and left alone.

        Raises:
            NotFoundError: If the notification does not exist.
        """
        report = ProcessingReport(notification_id=notification_id)
        notification = self._queue.get(notification_id)
        report.status = notification.status

        if notification.status not in _RUNNABLE_STATUSES:
            logger.info(
                "Notification %s is %s, not processing", notification_id, notification.status.value
            )
            return report

        try:
            notification = self._queue.mark_processing(notification_id)
        except InvalidTransitionError:
            report.status = self._queue.get(notification_id).status
            logger.info("Notification %s was claimed by another worker", notification_id)
            return report

        logger.info(
            "Processing notification %s for %s (attempt %d)",
            notification_id, notification.user_email, notification.attempts,
        )

        if not notification.user_email or not notification.delta_cursor:
            message = (
                "Missing required data in notification: "
                f"userEmail={notification.user_email!r} deltaCursor={notification.delta_cursor!r}"
            )
            return self._fail(report, message)

        try:
            self._reconcile(notification, report)
        except GmailSyncError as e:
            return self._fail(report, f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception("Unexpected error processing notification %s", notification_id)
            return self._fail(report, f"{type(e).__name__}: {e}")

        try:
            self._queue.mark_done(notification_id)
        except InvalidTransitionError as e:
            return self._lost_claim(report, e)
        report.status = NotificationStatus.DONE
        logger.info(
            "Notification %s done: %d stored, %d skipped, %d invalid, cursor %s",
            notification_id, report.stored, report.skipped, report.invalid, report.cursor,
        )
        return report

    def drain(self, limit: int | None = None, batch_size: int = 50) -> list[ProcessingReport]:
        """Process pending notifications oldest first until none remain or ``limit`` is hit."""
        reports: list[ProcessingReport] = []
        attempted: set[str] = set()

        while limit is None or len(reports) < limit:
            query_limit = batch_size if limit is None else min(batch_size, limit - len(reports))
            pending_ids = [
                nid for nid in self._queue.next_pending_ids(query_limit) if nid not in attempted
            ]
            if not pending_ids:
                break
            for nid in pending_ids:
                attempted.add(nid)
                reports.append(self.process(nid))

        return reports

    def _fail(self, report: ProcessingReport, message: str) -> ProcessingReport:
        logger.error("Notification %s failed: %s", report.notification_id, message)
        report.error_message = message
        try:
            self._queue.mark_error(report.notification_id, message)
        except InvalidTransitionError as e:
            return self._lost_claim(report, e)
        report.status = NotificationStatus.ERROR
        return report

    def _lost_claim(
        self, report: ProcessingReport, error: InvalidTransitionError
    ) -> ProcessingReport:
        """Report the queue's status when another actor moved the notification mid-run."""
        report.status = self._queue.get(report.notification_id).status
        logger.warning(
            "Notification %s changed status while processing, now %s: %s",
            report.notification_id, report.status.value, error,
        )
        return report

    def _reconcile(self, notification: PendingNotification, report: ProcessingReport) -> None:
        user = self._repository.find_user_by_email(notification.user_email)
        start_cursor = user.cursor or notification.delta_cursor
        report.cursor = user.cursor

        client = self._client_factory(user)
        delta = client.list_changed_message_ids(start_cursor)
        report.candidates = len(delta.message_ids)
        logger.info(
            "Found %d candidate messages for user %s since %s (notification hint %s)",
            len(delta.message_ids), user.id, start_cursor, notification.delta_cursor,
        )

        results: list[MessageResult] = []
        for message_id in delta.message_ids:
            result = self._process_message(client, user, message_id)
            report.record(result)
            results.append(result)

        batch_cursor = newest_cursor([r.history_id for r in results])
        if batch_cursor is None:
            return
        if self._repository.advance_cursor(user.id, batch_cursor):
            report.cursor = batch_cursor

    def _process_message(self, client: GmailClient, user: User, message_id: str) -> MessageResult:
        """Dedup, fetch, normalize, upload and persist one message.

        Returns a result for outcomes the batch recovers from; provider and
        upload failures raise.
        """
        if self._repository.exists(user.id, message_id):
            logger.info("Email %s already stored for user %s", message_id, user.id)
            return self._already_stored(user, message_id)

        raw_message = client.fetch_message(message_id, self._message_format)

        try:
            email = normalize(raw_message)
        except ValidationError as e:
            logger.warning("Skipping message %s for user %s: %s", message_id, user.id, e)
            history_id = raw_message.get("historyId")
            return MessageResult(
                message_id=message_id,
                outcome=MessageOutcome.INVALID,
                history_id=str(history_id) if history_id else None,
                error=str(e),
            )

        attachments = self._upload_attachments(client, user, email)
        record = EmailRecord.from_normalized(user.id, email, attachments)

        try:
            self._repository.insert_if_absent(record)
        except ConflictError:
            logger.info("Email %s was stored concurrently for user %s", email.message_id, user.id)
            return self._already_stored(user, email.message_id)

        logger.info(
            "Stored email %s for user %s (%d attachments)",
            email.message_id, user.id, len(attachments),
        )
        return MessageResult(
            message_id=email.message_id,
            outcome=MessageOutcome.STORED,
            history_id=email.history_id,
        )

    def _already_stored(self, user: User, message_id: str) -> MessageResult:
        existing = self._repository.get_email(user.id, message_id)
        return MessageResult(
            message_id=message_id,
            outcome=MessageOutcome.SKIPPED,
            history_id=existing.history_id if existing else None,
        )

    def _upload_attachments(
        self, client: GmailClient, user: User, email: NormalizedEmail
    ) -> tuple[StoredAttachment, ...]:
        """Fetch and upload every attachment; any failure aborts the whole message."""
        stored: list[StoredAttachment] = []
        for ref in email.attachments:
            data = ref.data
            if data is None:
                data = client.fetch_attachment_bytes(email.message_id, ref.attachment_id)
            path = attachment_path(user.id, email.message_id, ref.attachment_id, ref.filename)
            url = self._blob_store.upload(
                path,
                data,
                ref.mime_type,
                {
                    "userId": user.id,
                    "messageId": email.message_id,
                    "attachmentId": ref.attachment_id,
                    "originalFilename": ref.filename,
                },
            )
            stored.append(
                StoredAttachment(
                    attachment_id=ref.attachment_id,
                    filename=ref.filename,
                    mime_type=ref.mime_type,
                    size=ref.size or len(data),
                    download_url=url,
                )
            )
            logger.debug("Uploaded attachment %s of %s", ref.filename, email.message_id)
        return tuple(stored)
