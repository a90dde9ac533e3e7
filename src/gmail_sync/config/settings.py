"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class GmailSyncSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="GMAIL_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_path: Path = Path("data/gmail_sync.db")

    # OAuth credentials (one authorized-user token file per user)
    credentials_path: Path = Path("credentials/client_secret.json")
    token_dir: Path = Path("credentials/tokens")
    client_id: str | None = None
    client_secret: str | None = None

    # Gmail API settings
    max_results_per_page: int = 100
    history_types: list[str] = ["messageAdded"]
    label_filter: str | None = None
    message_format: Literal["full", "raw"] = "full"
    watch_topic: str | None = None
    watch_label_ids: list[str] = ["INBOX"]

    # Rate limiting & retry
    max_retries: int = 5
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 60.0
    num_retries: int = 3
    request_timeout_seconds: float = 30.0

    # Blob storage
    blob_backend: Literal["local", "s3"] = "local"
    blob_local_dir: Path = Path("output/blobs")
    blob_base_url: str | None = None
    s3_bucket: str = ""
    s3_region: str | None = None
    s3_endpoint_url: str | None = None
    s3_prefix: str = ""
    s3_url_expiry_seconds: int = 7 * 24 * 3600

    # Queue operations
    stale_processing_seconds: float = 15 * 60
    drain_batch_size: int = 50

    # Logging
    log_level: str = "INFO"

    def ensure_directories(self) -> None:
        """Create data, token and blob directories if they don't exist."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.token_dir.mkdir(parents=True, exist_ok=True)
        if self.blob_backend == "local":
            self.blob_local_dir.mkdir(parents=True, exist_ok=True)
