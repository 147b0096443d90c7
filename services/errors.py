"""
Typed exception hierarchy for the listing sync pipeline.

Every tier raises these internally and absorbs them into a cache miss before
returning to the resolver. Exceptions carry structured metadata
(error_code, retry_after, is_transient, tier) so the retry policy and the
resolver can dispatch on type rather than on message text.
"""
from typing import Optional


class SyncError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        retry_after: Optional[float] = None,
        is_transient: bool = False,
        tier: Optional[str] = None
    ):
        super().__init__(message)
        self.error_code = error_code
        self.retry_after = retry_after
        self.is_transient = is_transient
        self.tier = tier


# ============================================================================
# Transient Errors (Can Retry)
# ============================================================================

class TransientNetworkError(SyncError):
    """Timeout, 5xx, or an empty/malformed response from an upstream."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        tier: Optional[str] = None
    ):
        super().__init__(
            message=message,
            error_code="TRANSIENT_NETWORK",
            retry_after=retry_after,
            is_transient=True,
            tier=tier
        )
        self.status_code = status_code


class RateLimitError(SyncError):
    """Per-minute rate limit exceeded."""

    def __init__(self, message: str, retry_after: Optional[float] = None, tier: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="RATE_LIMIT",
            retry_after=retry_after,
            is_transient=True,
            tier=tier
        )


class QuotaExhaustedError(SyncError):
    """Query complexity budget or daily quota exhausted."""

    def __init__(self, message: str, retry_after: Optional[float] = None, tier: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="QUOTA_EXHAUSTED",
            retry_after=retry_after,
            is_transient=True,
            tier=tier
        )


class VersionConflictError(SyncError):
    """A conditional write lost the race against another client."""

    def __init__(self, message: str, expected_version: Optional[int] = None):
        super().__init__(message=message, error_code="VERSION_CONFLICT", is_transient=True, tier="shared")
        self.expected_version = expected_version


# ============================================================================
# Permanent Errors (Do Not Retry)
# ============================================================================

class AuthError(SyncError):
    """Credentials rejected; the tier is disabled until restart."""

    def __init__(self, message: str, tier: Optional[str] = None):
        super().__init__(message=message, error_code="AUTH_ERROR", tier=tier)


class SchemaMissingError(SyncError):
    """The backing table or schema does not exist; the tier is disabled until restart."""

    def __init__(self, message: str, tier: Optional[str] = None):
        super().__init__(message=message, error_code="SCHEMA_MISSING", tier=tier)


class SchemaMismatchError(SyncError):
    """Stored data was written by a different schema version."""

    def __init__(self, message: str, found: Optional[str] = None, expected: Optional[str] = None):
        super().__init__(message=message, error_code="SCHEMA_MISMATCH")
        self.found = found
        self.expected = expected


class ValidationError(SyncError):
    """A single malformed record; skipped or sanitized, never fatal for the batch."""

    def __init__(self, message: str, field: Optional[str] = None, record_id: Optional[str] = None):
        super().__init__(message=message, error_code="VALIDATION_ERROR")
        self.field = field
        self.record_id = record_id


class StorageError(SyncError):
    """Local durable store could not be read or written."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message=message, error_code="STORAGE_ERROR", tier="local")
        self.operation = operation


class FatalFetchError(SyncError):
    """Live fetch failed with nothing to show for it."""

    def __init__(self, message: str, pages_fetched: int = 0):
        super().__init__(message=message, error_code="FATAL_FETCH", tier="board")
        self.pages_fetched = pages_fetched


class SessionTimeoutError(SyncError):
    """The live session exceeded its wall-clock budget and was aborted."""

    def __init__(self, message: str, timeout_seconds: float):
        super().__init__(message=message, error_code="SESSION_TIMEOUT", tier="board")
        self.timeout_seconds = timeout_seconds


# ============================================================================
# Convenience Tuples for Catch Blocks
# ============================================================================

# Retried with backoff inside a page fetch
RETRYABLE_ERRORS = (RateLimitError, QuotaExhaustedError, TransientNetworkError)

# Disable a tier for the rest of the process lifetime
TIER_DISABLING_ERRORS = (AuthError, SchemaMissingError)
