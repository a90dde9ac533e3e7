"""Tests for the SQLite-backed NotificationQueue state machine."""

from __future__ import annotations

from datetime import timedelta

import pytest

from gmail_sync.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from gmail_sync.core.models import NotificationStatus
from gmail_sync.storage.database import Database
from gmail_sync.storage.queue import NotificationQueue


class TestEnqueue:
    """enqueue() creates pending notifications and rejects incomplete input."""

    def test_creates_pending_notification(self, queue: NotificationQueue) -> None:
        notification = queue.enqueue("a@x.com", "100")
        assert notification.status is NotificationStatus.PENDING
        assert notification.user_email == "a@x.com"
        assert notification.delta_cursor == "100"
        assert notification.attempts == 0
        assert notification.error_message == ""
        assert notification.created_at == notification.updated_at

    def test_assigns_unique_ids(self, queue: NotificationQueue) -> None:
        first = queue.enqueue("a@x.com", "100")
        second = queue.enqueue("a@x.com", "100")
        assert first.id != second.id

    def test_integer_cursor_is_stored_as_text(self, queue: NotificationQueue) -> None:
        notification = queue.enqueue("a@x.com", 12345)
        assert notification.delta_cursor == "12345"

    @pytest.mark.parametrize("email", ["", "   ", None])
    def test_rejects_missing_email(self, queue: NotificationQueue, email: str | None) -> None:
        with pytest.raises(ValidationError):
            queue.enqueue(email, "100")
        assert queue.count_by_status() == {}

    @pytest.mark.parametrize("cursor", ["", None])
    def test_rejects_missing_cursor(self, queue: NotificationQueue, cursor: str | None) -> None:
        with pytest.raises(ValidationError):
            queue.enqueue("a@x.com", cursor)
        assert queue.count_by_status() == {}


    @pytest.mark.parametrize(
        "email,cursor", [(123, "100"), (["a@x.com"], "100"), ("a@x.com", 1.5), ("a@x.com", True)]
    )
    def test_rejects_wrongly_typed_fields(self, queue: NotificationQueue, email, cursor) -> None:
        with pytest.raises(ValidationError):
            queue.enqueue(email, cursor)
        assert queue.count_by_status() == {}


class TestGet:
    def test_unknown_id_raises(self, queue: NotificationQueue) -> None:
        with pytest.raises(NotFoundError):
            queue.get("nope")

    def test_survives_reconnect(self, tmp_db_path) -> None:
        with Database(tmp_db_path) as db:
            notification_id = NotificationQueue(db).enqueue("a@x.com", "1").id
        with Database(tmp_db_path) as db:
            assert NotificationQueue(db).get(notification_id).user_email == "a@x.com"


class TestTransitions:
    """Status transitions stamp updated_at and count attempts."""

    def test_processing_increments_attempts(self, queue: NotificationQueue) -> None:
        n = queue.enqueue("a@x.com", "100")
        updated = queue.mark_processing(n.id)
        assert updated.status is NotificationStatus.PROCESSING
        assert updated.attempts == 1
        assert updated.updated_at >= n.updated_at

    def test_done_does_not_increment_attempts(self, queue: NotificationQueue) -> None:
        n = queue.enqueue("a@x.com", "100")
        queue.mark_processing(n.id)
        done = queue.mark_done(n.id)
        assert done.status is NotificationStatus.DONE
        assert done.attempts == 1

    def test_error_increments_attempts_and_sets_message(self, queue: NotificationQueue) -> None:
        n = queue.enqueue("a@x.com", "100")
        queue.mark_processing(n.id)
        failed = queue.mark_error(n.id, "boom")
        assert failed.status is NotificationStatus.ERROR
        assert failed.attempts == 2
        assert failed.error_message == "boom"

    def test_error_can_be_reprocessed(self, queue: NotificationQueue) -> None:
        n = queue.enqueue("a@x.com", "100")
        queue.mark_processing(n.id)
        queue.mark_error(n.id, "boom")
        again = queue.mark_processing(n.id)
        assert again.status is NotificationStatus.PROCESSING
        assert again.attempts == 3

    def test_done_is_terminal(self, queue: NotificationQueue) -> None:
        n = queue.enqueue("a@x.com", "100")
        queue.mark_processing(n.id)
        queue.mark_done(n.id)
        with pytest.raises(InvalidTransitionError):
            queue.mark_processing(n.id)
        with pytest.raises(InvalidTransitionError):
            queue.mark_error(n.id, "late")

    def test_cannot_claim_twice(self, queue: NotificationQueue) -> None:
        n = queue.enqueue("a@x.com", "100")
        queue.mark_processing(n.id)
        with pytest.raises(InvalidTransitionError):
            queue.mark_processing(n.id)

    def test_cannot_finish_unclaimed(self, queue: NotificationQueue) -> None:
        n = queue.enqueue("a@x.com", "100")
        with pytest.raises(InvalidTransitionError):
            queue.mark_done(n.id)

    def test_invalid_transition_is_value_error(self, queue: NotificationQueue) -> None:
        n = queue.enqueue("a@x.com", "100")
        with pytest.raises(ValueError):
            queue.mark_done(n.id)

    def test_unknown_id_raises_not_found(self, queue: NotificationQueue) -> None:
        with pytest.raises(NotFoundError):
            queue.mark_processing("missing")

    def test_reset_to_pending_keeps_attempts(self, queue: NotificationQueue) -> None:
        n = queue.enqueue("a@x.com", "100")
        queue.mark_processing(n.id)
        queue.mark_error(n.id, "boom")
        reset = queue.reset_to_pending(n.id)
        assert reset.status is NotificationStatus.PENDING
        assert reset.attempts == 2
        assert reset.error_message == ""


class TestListing:
    def test_next_pending_ids_fifo(self, queue: NotificationQueue) -> None:
        ids = [queue.enqueue("a@x.com", str(i)).id for i in range(3)]
        assert queue.next_pending_ids() == ids

    def test_next_pending_ids_respects_limit(self, queue: NotificationQueue) -> None:
        ids = [queue.enqueue("a@x.com", str(i)).id for i in range(3)]
        assert queue.next_pending_ids(limit=2) == ids[:2]

    def test_next_pending_ids_excludes_other_statuses(self, queue: NotificationQueue) -> None:
        first = queue.enqueue("a@x.com", "1")
        second = queue.enqueue("a@x.com", "2")
        queue.mark_processing(first.id)
        assert queue.next_pending_ids() == [second.id]

    def test_count_by_status(self, queue: NotificationQueue) -> None:
        a = queue.enqueue("a@x.com", "1")
        queue.enqueue("a@x.com", "2")
        queue.mark_processing(a.id)
        assert queue.count_by_status() == {"pending": 1, "processing": 1}

    def test_list_by_status(self, queue: NotificationQueue) -> None:
        a = queue.enqueue("a@x.com", "1")
        queue.mark_processing(a.id)
        queue.mark_error(a.id, "boom")
        errors = queue.list_by_status(NotificationStatus.ERROR)
        assert [n.id for n in errors] == [a.id]


class TestReaper:
    """Stuck 'processing' notifications are detectable and can be re-driven."""

    def test_find_stale_processing(self, queue: NotificationQueue) -> None:
        n = queue.enqueue("a@x.com", "1")
        queue.mark_processing(n.id)
        assert [s.id for s in queue.find_stale_processing(timedelta(seconds=-1))] == [n.id]
        assert queue.find_stale_processing(timedelta(hours=1)) == []

    def test_reap_stale_moves_to_error(self, queue: NotificationQueue) -> None:
        n = queue.enqueue("a@x.com", "1")
        queue.mark_processing(n.id)
        assert queue.reap_stale(timedelta(seconds=-1)) == 1
        reaped = queue.get(n.id)
        assert reaped.status is NotificationStatus.ERROR
        assert "timed out" in reaped.error_message
        assert reaped.attempts == 2

    def test_reap_ignores_fresh_items(self, queue: NotificationQueue) -> None:
        n = queue.enqueue("a@x.com", "1")
        queue.mark_processing(n.id)
        assert queue.reap_stale(timedelta(hours=1)) == 0
        assert queue.get(n.id).status is NotificationStatus.PROCESSING

    def test_retry_errors(self, queue: NotificationQueue) -> None:
        a = queue.enqueue("a@x.com", "1")
        b = queue.enqueue("a@x.com", "2")
        for n in (a, b):
            queue.mark_processing(n.id)
            queue.mark_error(n.id, "boom")
        assert queue.retry_errors() == 2
        assert queue.count_by_status() == {"pending": 2}
        assert queue.get(a.id).error_message == ""
