"""Gmail API client for history deltas, message fetches and attachment downloads."""

from __future__ import annotations

import logging
import random
import time
from typing import Any

from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError

from gmail_sync.core.exceptions import (
    AuthenticationError,
    MailProviderError,
    RateLimitError,
    TransientError,
)
from gmail_sync.core.models import HistoryDelta
from gmail_sync.core.normalizer import decode_base64url

logger = logging.getLogger(__name__)

_AUTH_STATUSES = {401, 403}
_RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


def _status_of(exc: Exception) -> int | None:
    if isinstance(exc, HttpError):
        return exc.status_code
    return None


def _is_rate_limit_error(exc: Exception) -> bool:
    """Check whether an exception represents a Gmail API 429 rate limit."""
    if _status_of(exc) == 429:
        return True
    error_str = str(exc)
    return "429" in error_str or "rateLimitExceeded" in error_str


def _is_retryable_error(exc: Exception) -> bool:
    if _is_rate_limit_error(exc):
        return True
    if _status_of(exc) in _RETRYABLE_STATUSES:
        return True
    return isinstance(exc, (TimeoutError, ConnectionError))


class GmailClient:
    """Thin wrapper around one user's Gmail API resource.

    Every call is bounded by the HTTP timeout configured on the resource and
    retried with exponential backoff on rate limits and server errors.
    """

    def __init__(
        self,
        service: Resource,
        user_id: str = "me",
        *,
        max_retries: int = 5,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
        num_retries: int = 3,
        max_results_per_page: int = 100,
        history_types: list[str] | None = None,
        label_filter: str | None = None,
    ) -> None:
        self._service = service
        self._user_id = user_id
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._num_retries = num_retries
        self._max_results_per_page = max_results_per_page
        self._history_types = history_types or ["messageAdded"]
        self._label_filter = label_filter

    def _execute_with_retry(self, request: Any, context: str) -> Any:
        """Execute a single API request with exponential backoff on retryable errors.

        Args:
            request: A googleapiclient HttpRequest object.
            context: Description for log messages (e.g. "list history").

        Returns:
            The API response dict.

        Raises:
            AuthenticationError: On 401/403 responses.
            RateLimitError: When retries are exhausted on 429 errors.
            TransientError: When retries are exhausted on server or network errors.
            MailProviderError: On other API errors.
        """
        backoff = self._initial_backoff

        for attempt in range(self._max_retries + 1):
            try:
                return request.execute(num_retries=self._num_retries)
            except Exception as e:
                if _status_of(e) in _AUTH_STATUSES:
                    raise AuthenticationError(f"Not authorized to {context}: {e}") from e
                if not _is_retryable_error(e):
                    raise MailProviderError(f"Failed to {context}: {e}") from e
                if attempt >= self._max_retries:
                    error_cls = RateLimitError if _is_rate_limit_error(e) else TransientError
                    raise error_cls(
                        f"Gave up on {context} after {self._max_retries} retries: {e}"
                    ) from e
                sleep_time = min(backoff, self._max_backoff)
                jitter = random.uniform(0, sleep_time)
                logger.warning(
                    "Retryable error during %s (attempt %d/%d), sleeping %.2fs: %s",
                    context, attempt + 1, self._max_retries, jitter, e,
                )
                time.sleep(jitter)
                backoff = min(backoff * 2, self._max_backoff)

        # Should not be reached, but just in case
        raise TransientError(f"Gave up on {context} after {self._max_retries} retries")

    def list_changed_message_ids(self, cursor: str) -> HistoryDelta:
        """List IDs of messages added since ``cursor``, following all pages.

        IDs are returned in history order with duplicates removed.

        Args:
            cursor: History ID to start from (exclusive).

        Returns:
            HistoryDelta with the message IDs and the mailbox's current history ID.
        """
        page_token: str | None = None
        message_ids: list[str] = []
        seen: set[str] = set()
        latest_cursor: str | None = None

        while True:
            kwargs: dict[str, Any] = {
                "userId": self._user_id,
                "startHistoryId": cursor,
                "historyTypes": self._history_types,
                "maxResults": self._max_results_per_page,
            }
            if self._label_filter:
                kwargs["labelId"] = self._label_filter
            if page_token:
                kwargs["pageToken"] = page_token

            request = self._service.users().history().list(**kwargs)
            response = self._execute_with_retry(request, "list history")

            if response.get("historyId"):
                latest_cursor = str(response["historyId"])

            for record in response.get("history", []):
                for added in record.get("messagesAdded", []):
                    message_id = (added.get("message") or {}).get("id")
                    if not message_id:
                        logger.warning("Message ID missing in messagesAdded record %s", record.get("id"))
                        continue
                    if message_id not in seen:
                        seen.add(message_id)
                        message_ids.append(message_id)

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        logger.debug("History since %s: %d messages, latest %s", cursor, len(message_ids), latest_cursor)
        return HistoryDelta(message_ids=tuple(message_ids), latest_cursor=latest_cursor)

    def fetch_message(self, message_id: str, message_format: str = "full") -> dict[str, Any]:
        """Fetch a single message in ``full`` (structured parts) or ``raw`` (RFC-822) format."""
        request = (
            self._service.users()
            .messages()
            .get(userId=self._user_id, id=message_id, format=message_format)
        )
        return self._execute_with_retry(request, f"fetch message {message_id}")

    def fetch_attachment_bytes(self, message_id: str, attachment_id: str) -> bytes:
        """Download and decode one attachment body."""
        request = (
            self._service.users()
            .messages()
            .attachments()
            .get(userId=self._user_id, messageId=message_id, id=attachment_id)
        )
        response = self._execute_with_retry(
            request, f"fetch attachment {attachment_id} of {message_id}"
        )
        data = response.get("data")
        if data is None:
            raise MailProviderError(f"Attachment {attachment_id} of {message_id} has no data")
        return decode_base64url(data)

    def start_watch(self, topic_name: str, label_ids: list[str] | None = None) -> str:
        """Register push notifications for this mailbox.

        Returns:
            The mailbox's current history ID, a valid starting cursor.
        """
        request = self._service.users().watch(
            userId=self._user_id,
            body={"topicName": topic_name, "labelIds": label_ids or ["INBOX"]},
        )
        response = self._execute_with_retry(request, "start watch")
        logger.info("Watching mailbox on %s until %s", topic_name, response.get("expiration"))
        return str(response["historyId"])
