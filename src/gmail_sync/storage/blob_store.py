"""Attachment blob storage: local directory tree or S3-compatible bucket."""

from __future__ import annotations

import json
import logging
import re
import unicodedata
from pathlib import Path
from typing import Protocol

import boto3
from botocore.config import Config

from gmail_sync.config.settings import GmailSyncSettings
from gmail_sync.core.exceptions import BlobStoreError

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    """Durable, path-addressed storage that returns a retrievable URL."""

    def upload(
        self, path: str, data: bytes, content_type: str, metadata: dict[str, str]
    ) -> str: ...


def _safe_segment(text: str, max_length: int = 120) -> str:
    """Make a path segment safe for filesystems and object keys."""
    text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    text = re.sub(r"[^\w.\-]+", "_", text).strip("._")
    return text[:max_length] if text else "file"


def attachment_path(user_id: str, message_id: str, attachment_id: str, filename: str) -> str:
    """Object path for an attachment.

    Format: ``attachments/{user_id}/{message_id}/{attachment_id}_{filename}``
    """
    return "/".join(
        [
            "attachments",
            _safe_segment(user_id),
            _safe_segment(message_id),
            f"{_safe_segment(attachment_id, 60)}_{_safe_segment(filename)}",
        ]
    )


class LocalBlobStore:
    """Store blobs under a root directory, with a JSON metadata sidecar per blob."""

    def __init__(self, root_dir: Path, base_url: str | None = None) -> None:
        self._root_dir = root_dir
        self._base_url = base_url.rstrip("/") if base_url else None
        self._root_dir.mkdir(parents=True, exist_ok=True)

    def upload(self, path: str, data: bytes, content_type: str, metadata: dict[str, str]) -> str:
        """Write ``data`` to ``root_dir/path``.

        Returns:
            ``{base_url}/{path}`` if a base URL is configured, else a ``file://`` URI.
        """
        target = self._root_dir / path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            sidecar = target.with_name(target.name + ".meta.json")
            sidecar.write_text(
                json.dumps({"contentType": content_type, "metadata": metadata}, indent=2),
                encoding="utf-8",
            )
        except OSError as e:
            raise BlobStoreError(f"Failed to write blob {path}: {e}") from e

        logger.debug("Saved blob: %s (%d bytes)", target, len(data))
        if self._base_url:
            return f"{self._base_url}/{path}"
        return target.resolve().as_uri()


class S3BlobStore:
    """Store blobs in an S3-compatible bucket and hand out presigned GET URLs."""

    def __init__(
        self,
        bucket: str,
        *,
        client=None,
        prefix: str = "",
        url_expiry_seconds: int = 7 * 24 * 3600,
    ) -> None:
        if not bucket:
            raise ValueError("S3 bucket name is required")
        self._bucket = bucket
        self._client = client
        self._prefix = prefix.strip("/")
        self._url_expiry = url_expiry_seconds

    @classmethod
    def from_settings(cls, settings: GmailSyncSettings) -> S3BlobStore:
        kwargs: dict = {"region_name": settings.s3_region}
        if settings.s3_endpoint_url:
            kwargs["endpoint_url"] = settings.s3_endpoint_url.rstrip("/")
            kwargs["config"] = Config(s3={"addressing_style": "path"})
        client = boto3.client("s3", **kwargs)
        return cls(
            settings.s3_bucket,
            client=client,
            prefix=settings.s3_prefix,
            url_expiry_seconds=settings.s3_url_expiry_seconds,
        )

    def _key(self, path: str) -> str:
        return f"{self._prefix}/{path}" if self._prefix else path

    def upload(self, path: str, data: bytes, content_type: str, metadata: dict[str, str]) -> str:
        """Put the object and return a presigned download URL."""
        key = self._key(path)
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=_ascii_metadata(metadata),
            )
            url = self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": key},
                ExpiresIn=self._url_expiry,
            )
        except Exception as e:
            raise BlobStoreError(f"Failed to upload s3://{self._bucket}/{key}: {e}") from e

        logger.debug("Uploaded s3://%s/%s (%d bytes)", self._bucket, key, len(data))
        return url


def _ascii_metadata(metadata: dict[str, str]) -> dict[str, str]:
    # S3 user metadata travels in HTTP headers and must be ASCII.
    return {
        k: v.encode("ascii", "backslashreplace").decode("ascii") for k, v in metadata.items()
    }


def build_blob_store(settings: GmailSyncSettings) -> BlobStore:
    """Create the blob store selected by ``settings.blob_backend``."""
    if settings.blob_backend == "s3":
        return S3BlobStore.from_settings(settings)
    return LocalBlobStore(settings.blob_local_dir, settings.blob_base_url)
