"""Gmail message normalization: payload classification, MIME walking, header extraction.

Gmail returns a message in one of two shapes depending on the requested format:

- ``format=raw``: base64url-encoded RFC-822 bytes under ``raw``.
- ``format=full``: headers and body parts already split by the API under ``payload``.

Both are mapped onto the same :class:`NormalizedEmail`.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from datetime import datetime
from email import message_from_bytes, policy
from email.message import EmailMessage
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any

from gmail_sync.core.exceptions import ParseError, ValidationError
from gmail_sync.core.models import AttachmentRef, NormalizedEmail

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawPayload:
    """Message delivered as a complete RFC-822 document."""

    message: dict[str, Any]
    rfc822: bytes


@dataclass(frozen=True)
class StructuredPayload:
    """Message delivered as a pre-parsed MIME part tree."""

    message: dict[str, Any]
    payload: dict[str, Any]


ProviderPayload = RawPayload | StructuredPayload


def decode_base64url(data: str) -> bytes:
    """Decode base64url data as returned by the Gmail API (padding optional)."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded)


def classify_payload(message: dict[str, Any]) -> ProviderPayload:
    """Tag a Gmail message dict with the payload variant it carries.

    Raises:
        ParseError: If the message has neither ``raw`` nor ``payload`` content.
    """
    raw = message.get("raw")
    if raw:
        try:
            return RawPayload(message=message, rfc822=decode_base64url(raw))
        except (ValueError, TypeError) as e:
            raise ParseError(f"Undecodable raw content for message {message.get('id', '?')}: {e}") from e
    payload = message.get("payload")
    if isinstance(payload, dict):
        return StructuredPayload(message=message, payload=payload)
    raise ParseError(f"No raw or structured content in message {message.get('id', '?')}")


def normalize(message: dict[str, Any]) -> NormalizedEmail:
    """Normalize a Gmail message dict of either payload shape.

    Raises:
        ValidationError: If the message has no ``id``.
        ParseError: If the content cannot be interpreted.
    """
    if not message.get("id"):
        raise ValidationError("Message is missing its id")

    variant = classify_payload(message)
    try:
        if isinstance(variant, RawPayload):
            return normalize_raw(variant)
        return normalize_structured(variant)
    except ValidationError:
        raise
    except Exception as e:
        raise ParseError(f"Failed to normalize message {message['id']}: {e}") from e


def _common_fields(message: dict[str, Any]) -> dict[str, Any]:
    history_id = message.get("historyId")
    return {
        "message_id": message["id"],
        "history_id": str(history_id) if history_id else None,
        "labels": tuple(message.get("labelIds") or ()),
        "snippet": message.get("snippet") or None,
    }


# ---------------------------------------------------------------------------
# Raw RFC-822
# ---------------------------------------------------------------------------


def normalize_raw(variant: RawPayload) -> NormalizedEmail:
    """Parse RFC-822 bytes with the standard library MIME parser."""
    parsed = message_from_bytes(variant.rfc822, policy=policy.default)

    html_part = parsed.get_body(preferencelist=("html",))
    text_part = parsed.get_body(preferencelist=("plain",))

    attachments: list[AttachmentRef] = []
    for index, part in enumerate(parsed.iter_attachments()):
        data = part.get_payload(decode=True) or b""
        filename = part.get_filename() or f"attachment-{index + 1}"
        attachments.append(
            AttachmentRef(
                attachment_id=_raw_attachment_id(part, index),
                filename=filename,
                mime_type=part.get_content_type(),
                size=len(data),
                data=data,
            )
        )

    return NormalizedEmail(
        **_common_fields(variant.message),
        subject=_header_text(parsed.get("Subject")),
        sender=_header_text(parsed.get("From")),
        to=_split_addresses(parsed.get_all("To") or []),
        date=_parse_date(_header_text(parsed.get("Date"))),
        body_html=_part_text(html_part),
        body_text=_part_text(text_part),
        attachments=tuple(attachments),
    )


def _raw_attachment_id(part: EmailMessage, index: int) -> str:
    # Content-ID is not unique across parts; the index keeps blob paths distinct.
    content_id = str(part.get("Content-ID", "")).strip().strip("<>")
    return f"part-{index + 1}-{content_id}" if content_id else f"part-{index + 1}"


def _part_text(part: EmailMessage | None) -> str | None:
    """Decoded text of a body part; unknown charsets fall back to lenient UTF-8."""
    if part is None:
        return None
    try:
        return part.get_content()
    except LookupError:
        logger.warning(
            "Unknown charset %r in body part, decoding as UTF-8", part.get_content_charset()
        )
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def _header_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# ---------------------------------------------------------------------------
# Structured parts
# ---------------------------------------------------------------------------


def normalize_structured(variant: StructuredPayload) -> NormalizedEmail:
    """Walk the Gmail ``payload`` part tree."""
    payload = variant.payload
    headers = _extract_headers(payload)

    plain_text, html = _walk_parts(payload)
    if plain_text is None and html is None and not payload.get("parts"):
        # Single-part message: the top-level body is the content
        data = (payload.get("body") or {}).get("data")
        if data and not payload.get("filename"):
            decoded = _decode_text(data)
            if "html" in payload.get("mimeType", ""):
                html = decoded
            else:
                plain_text = decoded

    return NormalizedEmail(
        **_common_fields(variant.message),
        subject=headers.get("subject") or None,
        sender=headers.get("from") or None,
        to=_split_addresses([headers["to"]] if headers.get("to") else []),
        date=_parse_date(headers.get("date")),
        body_html=html,
        body_text=plain_text,
        attachments=tuple(_collect_attachments(payload)),
    )


def _extract_headers(payload: dict[str, Any]) -> dict[str, str]:
    """Extract standard email headers, first occurrence wins."""
    headers: dict[str, str] = {}
    for h in payload.get("headers", []):
        name = h.get("name", "").lower()
        if name in ("subject", "from", "to", "date") and name not in headers:
            headers[name] = h.get("value", "")
    return headers


def _is_attachment_part(part: dict[str, Any]) -> bool:
    body = part.get("body") or {}
    return bool(part.get("filename")) or bool(body.get("attachmentId"))


def _walk_parts(part: dict[str, Any]) -> tuple[str | None, str | None]:
    """Recursively walk MIME parts to find the first text/plain and text/html.

    Returns:
        Tuple of (plain_text, html); either may be None.
    """
    plain_text: str | None = None
    html: str | None = None
    mime_type = part.get("mimeType", "")

    if _is_attachment_part(part):
        return None, None

    if mime_type == "text/plain":
        data = (part.get("body") or {}).get("data")
        if data:
            plain_text = _decode_text(data)
    elif mime_type == "text/html":
        data = (part.get("body") or {}).get("data")
        if data:
            html = _decode_text(data)
    elif mime_type.startswith("multipart/"):
        for sub_part in part.get("parts", []):
            sub_plain, sub_html = _walk_parts(sub_part)
            if sub_plain and not plain_text:
                plain_text = sub_plain
            if sub_html and not html:
                html = sub_html

    return plain_text, html


def _collect_attachments(part: dict[str, Any]) -> list[AttachmentRef]:
    """Collect every attachment part in tree order."""
    found: list[AttachmentRef] = []
    if _is_attachment_part(part):
        body = part.get("body") or {}
        attachment_id = body.get("attachmentId")
        inline = body.get("data")
        if not attachment_id and not inline:
            logger.warning("Attachment part %s has no id or data, skipping", part.get("partId"))
            return found
        found.append(
            AttachmentRef(
                attachment_id=attachment_id or f"part-{part.get('partId', len(found))}",
                filename=part.get("filename") or "attachment",
                mime_type=part.get("mimeType") or "application/octet-stream",
                size=int(body.get("size") or 0),
                data=decode_base64url(inline) if inline and not attachment_id else None,
            )
        )
        return found
    for sub_part in part.get("parts", []) or []:
        found.extend(_collect_attachments(sub_part))
    return found


def _decode_text(data: str) -> str:
    return decode_base64url(data).decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _split_addresses(values: list[str]) -> tuple[str, ...]:
    """Split To header values into individual addresses, keeping display names."""
    result: list[str] = []
    for name, addr in getaddresses([str(v) for v in values]):
        if not addr:
            continue
        result.append(f"{name} <{addr}>" if name else addr)
    return tuple(result)


def _parse_date(date_str: str | None) -> datetime | None:
    """Parse an RFC 2822 date string; missing or unparseable dates become None."""
    if not date_str:
        return None
    try:
        return parsedate_to_datetime(date_str)
    except (TypeError, ValueError, IndexError):
        logger.warning("Failed to parse date: %s", date_str)
        return None
