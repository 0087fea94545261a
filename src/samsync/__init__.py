"""samsync - SAM.gov Opportunity Sync Pipeline.

Pulls contract opportunities from the SAM.gov search API under a request
budget, reconciles them into a store by notice id, and keeps an audit log
of every sync run.
"""

from .bulk_fetcher import BulkFetcher
from .config import settings
from .exceptions import (
    ConcurrentUpdateError,
    DuplicateOpportunityError,
    OpportunityNotFoundError,
    RecordValidationError,
    SamApiClientError,
    SamApiError,
    SamApiMaxRetriesError,
    SamApiNotFoundError,
    SamApiRateLimitError,
    SamApiResponseError,
    SamSyncError,
    StorageError,
    StorageUnavailableError,
    SyncRunNotFoundError,
    SyncRunStateError,
)
from .models import (
    Opportunity,
    OpportunityRecord,
    OpportunityResponse,
    SearchPage,
    SearchParams,
    SearchResponse,
    SyncOptions,
    SyncResult,
    SyncRun,
)
from .rate_limiter import RateLimiter, TokenBucket
from .sam_client import SamOpportunitiesClient
from .storage import (
    InMemoryOpportunityStore,
    InMemorySyncRunLog,
    JsonlOpportunityStore,
    JsonlSyncRunLog,
    OpportunityStore,
    SyncRunLog,
)
from .sync_service import SamSyncService, run_scheduled_sync_loop

__all__ = [
    # Clients
    "SamOpportunitiesClient",
    "RateLimiter",
    "TokenBucket",
    "BulkFetcher",
    # Orchestration
    "SamSyncService",
    "run_scheduled_sync_loop",
    # Storage
    "OpportunityStore",
    "SyncRunLog",
    "InMemoryOpportunityStore",
    "InMemorySyncRunLog",
    "JsonlOpportunityStore",
    "JsonlSyncRunLog",
    # Models
    "Opportunity",
    "OpportunityRecord",
    "OpportunityResponse",
    "SearchPage",
    "SearchParams",
    "SearchResponse",
    "SyncOptions",
    "SyncResult",
    "SyncRun",
    # Config
    "settings",
    # Exceptions
    "SamSyncError",
    "SamApiError",
    "SamApiRateLimitError",
    "SamApiMaxRetriesError",
    "SamApiClientError",
    "SamApiNotFoundError",
    "SamApiResponseError",
    "StorageError",
    "StorageUnavailableError",
    "DuplicateOpportunityError",
    "ConcurrentUpdateError",
    "OpportunityNotFoundError",
    "SyncRunNotFoundError",
    "SyncRunStateError",
    "RecordValidationError",
]

__version__ = "0.1.0"
