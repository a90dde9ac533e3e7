"""Custom exceptions for Gmail Sync."""


class GmailSyncError(Exception):
    """Base exception for all Gmail Sync errors."""


class ValidationError(GmailSyncError):
    """Input is malformed; retrying the same input would fail identically."""


class ParseError(ValidationError):
    """Failed to normalize a provider message payload."""


class NotFoundError(GmailSyncError):
    """A referenced user or record does not exist."""


class ConflictError(GmailSyncError):
    """A record with the same key was written concurrently."""


class MailProviderError(GmailSyncError):
    """The Gmail API call failed."""


class AuthenticationError(MailProviderError):
    """Credentials are missing, expired or revoked."""


class TransientError(MailProviderError):
    """Network, timeout or server-side failure that may succeed on retry."""


class RateLimitError(TransientError):
    """Gmail API rate limit exceeded."""


class BlobStoreError(GmailSyncError):
    """Failed to upload attachment bytes to blob storage."""


class InvalidTransitionError(GmailSyncError, ValueError):
    """A notification status change is not allowed from its current status."""
