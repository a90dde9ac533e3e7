"""Push notification intake: decode Gmail Pub/Sub pushes and enqueue them."""

from __future__ import annotations

import base64
import json
import logging
from typing import Any

from gmail_sync.core.exceptions import ValidationError
from gmail_sync.core.models import PendingNotification
from gmail_sync.storage.queue import NotificationQueue

logger = logging.getLogger(__name__)


def decode_push(envelope: Any) -> dict[str, Any]:
    """Extract the Gmail notification dict from a push delivery.

    Accepts a Pub/Sub push envelope (``{"message": {"data": <base64 JSON>}}``),
    the bare notification dict, or either of those as JSON bytes/str.

    Raises:
        ValidationError: If the input cannot be decoded.
    """
    if isinstance(envelope, (bytes, str)):
        try:
            envelope = json.loads(envelope)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Push body is not JSON: {e}") from e

    if not isinstance(envelope, dict):
        raise ValidationError(f"Push body must be an object, got {type(envelope).__name__}")

    message = envelope.get("message")
    if message is None:
        return _check_fields(envelope)
    if not isinstance(message, dict) or not message.get("data"):
        raise ValidationError("Push envelope has no message data")

    try:
        data = json.loads(base64.b64decode(message["data"], validate=False))
    except (ValueError, TypeError) as e:
        raise ValidationError(f"Push message data is not base64 JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("Push message data must be an object")
    return _check_fields(data)


def _check_fields(data: dict[str, Any]) -> dict[str, Any]:
    """Reject notifications whose fields have the wrong JSON type.

    Missing fields pass through; the queue rejects those.
    """
    email = data.get("emailAddress")
    if email is not None and not isinstance(email, str):
        raise ValidationError(f"emailAddress must be a string, got {type(email).__name__}")
    history_id = data.get("historyId")
    if history_id is not None and (
        isinstance(history_id, bool) or not isinstance(history_id, (str, int))
    ):
        raise ValidationError(
            f"historyId must be a string or integer, got {type(history_id).__name__}"
        )
    return data


class NotificationIntake:
    """Fire-and-forget boundary between the push channel and the notification queue."""

    def __init__(self, queue: NotificationQueue) -> None:
        self._queue = queue

    def enqueue_notification(
        self, user_email: str | None, delta_cursor: str | int | None
    ) -> PendingNotification | None:
        """Enqueue a notification; malformed input is logged and dropped."""
        try:
            return self._queue.enqueue(user_email, delta_cursor)
        except ValidationError as e:
            logger.warning("Dropping push notification: %s", e)
            return None

    def handle_push(self, envelope: Any) -> PendingNotification | None:
        """Decode a push delivery and enqueue it. Never raises for bad input."""
        try:
            data = decode_push(envelope)
        except ValidationError as e:
            logger.warning("Dropping undecodable push notification: %s", e)
            return None
        logger.info("Received Gmail push notification for %s", data.get("emailAddress"))
        return self.enqueue_notification(data.get("emailAddress"), data.get("historyId"))
