"""Error taxonomy for provider calls and sync operations."""

from typing import Optional


class SyncError(Exception):
    """Base class for sync engine errors."""


class TransientSyncError(SyncError):
    """Network timeout, 5xx or similar; retried with backoff."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimitedError(TransientSyncError):
    """Provider asked us to slow down; ``retry_after`` is in seconds."""


class AuthenticationError(SyncError):
    """Expired or invalid credential."""


class PermanentSyncError(SyncError):
    """Provider rejected the request; retrying will not help."""


class ConfigurationError(SyncError):
    """Integration configured with a capability its provider does not have."""


def is_retryable(error: Exception) -> bool:
    """Transient and authentication failures go back to the queue."""
    return isinstance(error, (TransientSyncError, AuthenticationError))
