"""
Listing Sync Services

This package implements the tiered listing cache: bootstrap data, a local
JSON cache, a shared Supabase cache, a static HTTP snapshot and live board
sessions, coordinated by the CacheResolver.

Also includes the projection engine (filters and stats) and the
timezone-aware refresh scheduler.
"""

# Data model
from .errors import (
    SyncError,
    TransientNetworkError,
    RateLimitError,
    QuotaExhaustedError,
    VersionConflictError,
    AuthError,
    SchemaMissingError,
    SchemaMismatchError,
    ValidationError,
    StorageError,
    FatalFetchError,
    SessionTimeoutError,
)
from .listing_models import PriceEvent, PricePoint, RawListing, DealScores, CanonicalListing, CacheEnvelope
from .listing_normalizer import normalize_listing, normalize_all, compute_scores, score_all

# Cache tiers
from .local_cache_service import LocalCacheService, CacheValidity
from .shared_cache_service import SharedCacheService, SharedCacheEntry
from .snapshot_loader_service import SnapshotLoaderService
from .board_client import BoardClient, BoardPage
from .board_sync_service import BoardSyncService, FetchSessionResult, SessionState
from .retry_policy import RetryPolicy

# Orchestration
from .projection_service import CurrentUser, FilterSpec, FilterDebouncer, ListingStats, Projection, project
from .pipeline_state import PipelineState, PipelineSnapshot, LoadingProgress
from .scheduler_service import RefreshScheduler, RefreshTrigger, RuleStatus
from .cache_resolver import CacheResolver, ResolutionResult

__all__ = [
    # Errors
    'SyncError',
    'TransientNetworkError',
    'RateLimitError',
    'QuotaExhaustedError',
    'VersionConflictError',
    'AuthError',
    'SchemaMissingError',
    'SchemaMismatchError',
    'ValidationError',
    'StorageError',
    'FatalFetchError',
    'SessionTimeoutError',

    # Data model
    'PriceEvent',
    'PricePoint',
    'RawListing',
    'DealScores',
    'CanonicalListing',
    'CacheEnvelope',
    'normalize_listing',
    'normalize_all',
    'compute_scores',
    'score_all',

    # Cache tiers
    'LocalCacheService',
    'CacheValidity',
    'SharedCacheService',
    'SharedCacheEntry',
    'SnapshotLoaderService',
    'BoardClient',
    'BoardPage',
    'BoardSyncService',
    'FetchSessionResult',
    'SessionState',
    'RetryPolicy',

    # Orchestration
    'CurrentUser',
    'FilterSpec',
    'FilterDebouncer',
    'ListingStats',
    'Projection',
    'project',
    'PipelineState',
    'PipelineSnapshot',
    'LoadingProgress',
    'RefreshScheduler',
    'RefreshTrigger',
    'RuleStatus',
    'CacheResolver',
    'ResolutionResult',
]

__version__ = '1.0.0'
