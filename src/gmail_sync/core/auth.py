"""Per-user OAuth 2.0 credentials and Gmail service construction."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import google_auth_httplib2
import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import Resource, build

from gmail_sync.config.settings import GmailSyncSettings
from gmail_sync.core.exceptions import AuthenticationError, TransientError
from gmail_sync.core.gmail_client import GmailClient
from gmail_sync.core.models import User

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]


def token_path_for(token_dir: Path, user_id: str) -> Path:
    """Location of a user's cached authorized-user token."""
    safe_id = user_id.replace("/", "_").replace("\\", "_")
    return token_dir / f"{safe_id}.json"


def load_user_credentials(
    token_dir: Path,
    user_id: str,
    *,
    client_id: str | None = None,
    client_secret: str | None = None,
) -> Credentials:
    """Load a user's cached token, refreshing it if expired.

    Args:
        token_dir: Directory holding one ``<user_id>.json`` token per user.
        user_id: Internal user ID.
        client_id: OAuth client ID, used if the token file lacks it.
        client_secret: OAuth client secret, used if the token file lacks it.

    Returns:
        Valid Google OAuth2 credentials.

    Raises:
        AuthenticationError: If no token exists or the refresh token is rejected.
        TransientError: If the token endpoint cannot be reached.
    """
    token_path = token_path_for(token_dir, user_id)
    if not token_path.exists():
        raise AuthenticationError(f"No Gmail token stored for user {user_id}")

    try:
        creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
    except ValueError as e:
        if not (client_id and client_secret):
            raise AuthenticationError(f"Invalid token file for user {user_id}: {e}") from e
        creds = Credentials.from_authorized_user_info(
            {**_read_json(token_path), "client_id": client_id, "client_secret": client_secret},
            SCOPES,
        )

    if creds.valid:
        return creds

    if not creds.refresh_token:
        raise AuthenticationError(f"Token for user {user_id} expired and has no refresh token")

    try:
        creds.refresh(Request())
    except RefreshError as e:
        raise AuthenticationError(f"Refresh token rejected for user {user_id}: {e}") from e
    except TransportError as e:
        raise TransientError(f"Token refresh for user {user_id} failed: {e}") from e

    _save_token(creds, token_path)
    logger.info("Refreshed access token for user %s", user_id)
    return creds


def authorize_user(credentials_path: Path, token_dir: Path, user_id: str) -> Credentials:
    """Run the interactive consent flow and cache the resulting token for ``user_id``.

    Raises:
        AuthenticationError: If the client secrets are missing or the flow fails.
    """
    if not credentials_path.exists():
        raise AuthenticationError(
            f"Credentials file not found: {credentials_path}. "
            "Download it from Google Cloud Console."
        )
    try:
        flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), SCOPES)
        creds = flow.run_local_server(port=0)
    except Exception as e:
        raise AuthenticationError(f"OAuth flow failed: {e}") from e
    token_path = token_path_for(token_dir, user_id)
    _save_token(creds, token_path)
    logger.info("Authorization successful, token cached at %s", token_path)
    return creds


def build_gmail_service(creds: Credentials, timeout_seconds: float | None = None) -> Resource:
    """Build a Gmail API service resource whose HTTP calls time out.

    Args:
        creds: Valid Google OAuth2 credentials.
        timeout_seconds: Socket timeout per request; None means no timeout.

    Returns:
        Gmail API service resource.
    """
    http = google_auth_httplib2.AuthorizedHttp(creds, http=httplib2.Http(timeout=timeout_seconds))
    return build("gmail", "v1", http=http, cache_discovery=False)


class GmailClientFactory:
    """Builds a GmailClient for a user from cached credentials."""

    def __init__(self, settings: GmailSyncSettings) -> None:
        self._settings = settings

    def __call__(self, user: User) -> GmailClient:
        s = self._settings
        creds = load_user_credentials(
            s.token_dir, user.id, client_id=s.client_id, client_secret=s.client_secret
        )
        service = build_gmail_service(creds, s.request_timeout_seconds)
        return GmailClient(
            service,
            max_retries=s.max_retries,
            initial_backoff_seconds=s.initial_backoff_seconds,
            max_backoff_seconds=s.max_backoff_seconds,
            num_retries=s.num_retries,
            max_results_per_page=s.max_results_per_page,
            history_types=s.history_types,
            label_filter=s.label_filter,
        )


def _read_json(path: Path) -> dict:
    return json.loads(path.read_text())


def _save_token(creds: Credentials, token_path: Path) -> None:
    """Save credentials to the token cache file."""
    token_path.parent.mkdir(parents=True, exist_ok=True)
    token_path.write_text(creds.to_json())
