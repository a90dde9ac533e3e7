"""Shared fixtures for Gmail Sync tests."""

from __future__ import annotations

import base64
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from gmail_sync.storage.database import Database
from gmail_sync.storage.queue import NotificationQueue
from gmail_sync.storage.repository import MessageRepository


def b64url(data: str | bytes) -> str:
    """Encode like the Gmail API: base64url without padding."""
    raw = data.encode("utf-8") if isinstance(data, str) else data
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary database path for tests."""
    return tmp_path / "test.db"


@pytest.fixture
def db(tmp_db_path: Path) -> Iterator[Database]:
    """Connected database with schema created."""
    with Database(tmp_db_path) as database:
        yield database


@pytest.fixture
def queue(db: Database) -> NotificationQueue:
    return NotificationQueue(db)


@pytest.fixture
def repository(db: Database) -> MessageRepository:
    return MessageRepository(db)


@pytest.fixture
def structured_message() -> Callable[..., dict[str, Any]]:
    """Factory for Gmail ``format=full`` message dicts."""

    def _build(
        message_id: str = "m1",
        history_id: str | None = "100",
        *,
        subject: str = "Quarterly report",
        sender: str = "Alice <alice@example.com>",
        to: str = "bob@example.com",
        date: str | None = "Mon, 15 Jan 2024 10:30:00 -0500",
        text: str | None = "Hello Bob",
        html: str | None = "<p>Hello Bob</p>",
        attachments: list[dict[str, Any]] | None = None,
        labels: list[str] | None = None,
    ) -> dict[str, Any]:
        headers = [
            {"name": "Subject", "value": subject},
            {"name": "From", "value": sender},
            {"name": "To", "value": to},
        ]
        if date is not None:
            headers.append({"name": "Date", "value": date})

        body_parts: list[dict[str, Any]] = []
        if text is not None:
            body_parts.append(
                {"partId": "0.0", "mimeType": "text/plain", "filename": "",
                 "body": {"size": len(text), "data": b64url(text)}}
            )
        if html is not None:
            body_parts.append(
                {"partId": "0.1", "mimeType": "text/html", "filename": "",
                 "body": {"size": len(html), "data": b64url(html)}}
            )

        parts: list[dict[str, Any]] = [
            {"partId": "0", "mimeType": "multipart/alternative", "filename": "",
             "body": {"size": 0}, "parts": body_parts}
        ]
        for index, att in enumerate(attachments or []):
            parts.append(
                {
                    "partId": str(index + 1),
                    "mimeType": att.get("mimeType", "application/pdf"),
                    "filename": att["filename"],
                    "body": {"attachmentId": att["id"], "size": att.get("size", 3)},
                }
            )

        message: dict[str, Any] = {
            "id": message_id,
            "threadId": f"t-{message_id}",
            "labelIds": labels if labels is not None else ["INBOX", "UNREAD"],
            "snippet": "Hello Bob",
            "payload": {
                "mimeType": "multipart/mixed",
                "headers": headers,
                "body": {"size": 0},
                "parts": parts,
            },
        }
        if history_id is not None:
            message["historyId"] = history_id
        return message

    return _build


@pytest.fixture
def raw_message() -> Callable[..., dict[str, Any]]:
    """Factory for Gmail ``format=raw`` message dicts."""

    def _build(message_id: str = "r1", history_id: str | None = "200", rfc822: str = "") -> dict[str, Any]:
        message: dict[str, Any] = {
            "id": message_id,
            "threadId": f"t-{message_id}",
            "labelIds": ["INBOX"],
            "snippet": "raw snippet",
            "raw": b64url(rfc822),
        }
        if history_id is not None:
            message["historyId"] = history_id
        return message

    return _build


@pytest.fixture
def mock_gmail_client() -> MagicMock:
    """Mocked GmailClient."""
    return MagicMock()


@pytest.fixture
def mock_blob_store() -> MagicMock:
    """Mocked blob store returning a URL derived from the object path."""
    store = MagicMock()
    store.upload.side_effect = lambda path, data, content_type, metadata: f"https://blobs.test/{path}"
    return store
