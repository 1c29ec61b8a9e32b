"""Error taxonomy for archive building and delivery."""

from typing import Optional


class ArchiveError(Exception):
    """Base class for archive subsystem failures."""

    retryable = False


class ValidationError(ArchiveError):
    """Request rejected before any job was created (unknown or empty gallery)."""


class GalleryNotFoundError(ValidationError):
    """Referenced gallery does not exist."""


class ArchiveNotFoundError(ValidationError):
    """Referenced archive does not exist."""


class AuthorizationError(ArchiveError):
    """Requester may not download this gallery."""


class FetchError(ArchiveError):
    """A source asset could not be retrieved.

    Reported inline per asset by the fetcher; raised when a build or stream
    can no longer tolerate missing assets.
    """

    retryable = True

    def __init__(self, message: str, *, asset_id: Optional[str] = None):
        super().__init__(message)
        self.asset_id = asset_id


class AssemblyError(ArchiveError):
    """The bundle stream could not be framed or written."""

    retryable = True


class BuildTimeoutError(ArchiveError, TimeoutError):
    """A build exceeded its deadline."""

    retryable = True


class StorageError(ArchiveError):
    """Persisting, retrieving or signing a stored archive failed."""

    retryable = True


class NotificationError(ArchiveError):
    """A recipient could not be notified. Never affects archive status."""


def is_retryable(exc: BaseException) -> bool:
    """Return whether a build failure should be retried with backoff."""
    if isinstance(exc, ArchiveError):
        return bool(exc.retryable)
    # Unknown failures are treated as transient.
    return True
