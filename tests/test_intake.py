"""Tests for push decoding and notification intake."""

from __future__ import annotations

import base64
import json

import pytest

from gmail_sync.core.exceptions import ValidationError
from gmail_sync.core.models import NotificationStatus
from gmail_sync.pipeline.intake import NotificationIntake, decode_push
from gmail_sync.storage.queue import NotificationQueue


def _envelope(data: dict) -> dict:
    encoded = base64.b64encode(json.dumps(data).encode()).decode()
    return {"message": {"data": encoded, "messageId": "pubsub-1"}, "subscription": "sub"}


@pytest.fixture
def intake(queue: NotificationQueue) -> NotificationIntake:
    return NotificationIntake(queue)


class TestDecodePush:
    def test_pubsub_envelope(self) -> None:
        data = decode_push(_envelope({"emailAddress": "a@x.com", "historyId": 9876}))
        assert data == {"emailAddress": "a@x.com", "historyId": 9876}

    def test_envelope_as_json_bytes(self) -> None:
        body = json.dumps(_envelope({"emailAddress": "a@x.com", "historyId": "1"})).encode()
        assert decode_push(body)["emailAddress"] == "a@x.com"

    def test_bare_notification(self) -> None:
        assert decode_push('{"emailAddress": "a@x.com", "historyId": "1"}')["historyId"] == "1"

    @pytest.mark.parametrize(
        "body",
        [
            "not json",
            "[1, 2]",
            {"message": {}},
            {"message": {"data": "!!!not-base64!!!"}},
            {"message": {"data": base64.b64encode(b"[]").decode()}},
            _envelope({"emailAddress": 123, "historyId": "5"}),
            _envelope({"emailAddress": ["a@x.com"], "historyId": "5"}),
            _envelope({"emailAddress": {"addr": "a@x.com"}, "historyId": "5"}),
            _envelope({"emailAddress": "a@x.com", "historyId": [5]}),
            _envelope({"emailAddress": "a@x.com", "historyId": True}),
            {"emailAddress": 123, "historyId": "5"},
        ],
    )
    def test_rejects_malformed(self, body) -> None:
        with pytest.raises(ValidationError):
            decode_push(body)


class TestNotificationIntake:
    def test_enqueue_notification(self, intake: NotificationIntake, queue: NotificationQueue) -> None:
        notification = intake.enqueue_notification("a@x.com", "100")
        assert notification is not None
        assert queue.get(notification.id).status is NotificationStatus.PENDING

    @pytest.mark.parametrize("email,cursor", [(None, "100"), ("a@x.com", None), ("", "")])
    def test_malformed_input_is_dropped(
        self, intake: NotificationIntake, queue: NotificationQueue, email, cursor
    ) -> None:
        assert intake.enqueue_notification(email, cursor) is None
        assert queue.count_by_status() == {}

    def test_handle_push_enqueues(self, intake: NotificationIntake, queue: NotificationQueue) -> None:
        notification = intake.handle_push(_envelope({"emailAddress": "a@x.com", "historyId": 42}))
        assert notification is not None
        assert notification.user_email == "a@x.com"
        assert notification.delta_cursor == "42"

    def test_handle_push_drops_wrongly_typed_fields(
        self, intake: NotificationIntake, queue: NotificationQueue
    ) -> None:
        assert intake.handle_push(_envelope({"emailAddress": 123, "historyId": "5"})) is None
        assert queue.count_by_status() == {}

    def test_handle_push_drops_garbage(
        self, intake: NotificationIntake, queue: NotificationQueue
    ) -> None:
        assert intake.handle_push(b"\xff\xfe") is None
        assert intake.handle_push(_envelope({"historyId": 1})) is None
        assert queue.count_by_status() == {}
