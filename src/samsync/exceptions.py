"""Custom exceptions for the samsync package."""

from typing import Optional


class SamSyncError(Exception):
    """Base exception for all samsync errors."""


class SamApiError(SamSyncError):
    """Base exception for SAM.gov API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"[{self.status_code}] {self.message}"


class SamApiRateLimitError(SamApiError):
    """Raised when rate limit is exceeded beyond retry capacity."""


class SamApiMaxRetriesError(SamApiError):
    """Raised when max retries are exceeded."""


class SamApiClientError(SamApiError):
    """Raised for non-transient 4xx responses."""


class SamApiNotFoundError(SamApiClientError):
    """Raised when a requested opportunity does not exist."""


class SamApiResponseError(SamApiError):
    """Raised when the API returns a body we cannot understand."""


class StorageError(SamSyncError):
    """Base exception for storage errors."""


class StorageUnavailableError(StorageError):
    """Raised when the backing store cannot be reached at all."""


class DuplicateOpportunityError(StorageError):
    """Raised when creating a record whose opportunity_id already exists."""


class ConcurrentUpdateError(StorageError):
    """Raised when a record changed since it was read."""


class OpportunityNotFoundError(StorageError):
    """Raised when updating a record that does not exist."""


class SyncRunNotFoundError(StorageError):
    """Raised when a sync run id is unknown."""


class SyncRunStateError(StorageError):
    """Raised when an update would break the sync run lifecycle."""


class RecordValidationError(SamSyncError):
    """Raised when a fetched record cannot be reconciled."""
