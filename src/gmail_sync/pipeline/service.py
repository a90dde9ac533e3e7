"""Composition root: wires settings, storage, blob store, intake and worker together."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, NamedTuple

from gmail_sync.config.settings import GmailSyncSettings
from gmail_sync.core.auth import GmailClientFactory
from gmail_sync.core.exceptions import NotFoundError
from gmail_sync.core.models import EmailRecord, PendingNotification, ProcessingReport, User
from gmail_sync.pipeline.intake import NotificationIntake
from gmail_sync.pipeline.worker import ClientFactory, ReconciliationWorker
from gmail_sync.storage.blob_store import BlobStore, build_blob_store
from gmail_sync.storage.database import Database
from gmail_sync.storage.queue import NotificationQueue
from gmail_sync.storage.repository import MessageRepository

logger = logging.getLogger(__name__)


class _Components(NamedTuple):
    db: Database
    queue: NotificationQueue
    repository: MessageRepository
    intake: NotificationIntake
    worker: ReconciliationWorker
    client_factory: ClientFactory


class GmailSync:
    """Owns the process-wide handles and exposes the operations callers need.

    Components are created on first use; ``blob_store`` and ``client_factory``
    may be supplied to replace the ones built from settings.
    """

    def __init__(
        self,
        settings: GmailSyncSettings | None = None,
        *,
        blob_store: BlobStore | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._settings = settings or GmailSyncSettings()
        self._blob_store = blob_store
        self._client_factory = client_factory
        self._components: _Components | None = None

    @property
    def settings(self) -> GmailSyncSettings:
        return self._settings

    def _ensure_initialized(self) -> _Components:
        """Initialize all components if not already done."""
        if self._components is not None:
            return self._components

        self._settings.ensure_directories()
        db = Database(self._settings.database_path)
        db.connect()
        queue = NotificationQueue(db)
        repository = MessageRepository(db)

        blob_store = self._blob_store or build_blob_store(self._settings)
        client_factory = self._client_factory or GmailClientFactory(self._settings)
        worker = ReconciliationWorker(
            queue,
            repository,
            blob_store,
            client_factory,
            message_format=self._settings.message_format,
        )
        self._components = _Components(
            db, queue, repository, NotificationIntake(queue), worker, client_factory
        )
        return self._components

    @property
    def queue(self) -> NotificationQueue:
        return self._ensure_initialized().queue

    @property
    def repository(self) -> MessageRepository:
        return self._ensure_initialized().repository

    @property
    def worker(self) -> ReconciliationWorker:
        return self._ensure_initialized().worker

    # -- intake --------------------------------------------------------------

    def enqueue_notification(
        self, user_email: str | None, delta_cursor: str | int | None
    ) -> PendingNotification | None:
        return self._ensure_initialized().intake.enqueue_notification(user_email, delta_cursor)

    def handle_push(self, envelope: Any) -> PendingNotification | None:
        return self._ensure_initialized().intake.handle_push(envelope)

    # -- processing ----------------------------------------------------------

    def process(self, notification_id: str) -> ProcessingReport:
        return self.worker.process(notification_id)

    def drain(self, limit: int | None = None) -> list[ProcessingReport]:
        return self.worker.drain(limit=limit, batch_size=self._settings.drain_batch_size)

    # -- operations ----------------------------------------------------------

    def get_status(self) -> dict[str, int]:
        """Get current notification counts by status."""
        return self.queue.count_by_status()

    def retry_errors(self) -> int:
        """Reset failed notifications to pending for retry."""
        return self.queue.retry_errors()

    def reap_stale(self, older_than_seconds: float | None = None) -> int:
        """Move notifications stuck in processing to error."""
        seconds = (
            older_than_seconds
            if older_than_seconds is not None
            else self._settings.stale_processing_seconds
        )
        return self.queue.reap_stale(timedelta(seconds=seconds))

    def add_user(self, user_id: str, email: str, cursor: str | None = None) -> User:
        return self.repository.add_user(user_id, email, cursor)

    def start_watch(self, user_id: str) -> User:
        """Register the mailbox's push channel and seed the cursor if unset."""
        components = self._ensure_initialized()
        repository = components.repository
        user = repository.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        if not self._settings.watch_topic:
            raise ValueError("GMAIL_SYNC_WATCH_TOPIC is not configured")
        client = components.client_factory(user)
        history_id = client.start_watch(self._settings.watch_topic, self._settings.watch_label_ids)
        if user.cursor is None:
            repository.update_cursor(user.id, history_id)
            logger.info("Seeded cursor for user %s at %s", user.id, history_id)
        return repository.get_user(user_id) or user

    def list_emails(self, user_id: str, limit: int | None = None) -> list[EmailRecord]:
        return self.repository.list_emails(user_id, limit=limit)

    def close(self) -> None:
        """Clean up resources."""
        if self._components is not None:
            self._components.db.close()
            self._components = None
