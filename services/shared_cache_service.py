"""
Shared Cache Service for the Listing Sync Pipeline

Stores one fetched dataset in a Supabase table so every client can start
from it. Writes are last-write-wins, guarded by an optimistic version token:
a writer reads the current version and updates only if it is unchanged.

Expected table layout (property_cache):
    cache_key       text unique
    data            jsonb
    timestamp       double precision
    total_count     integer
    schema_version  text
    has_scores      boolean
    version         integer
    updated_at      timestamptz
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client

from config.sync_config import SCHEMA_VERSION, SharedCacheSettings, get_config
from .errors import (
    AuthError,
    SchemaMissingError,
    SyncError,
    TIER_DISABLING_ERRORS,
    TransientNetworkError,
    VersionConflictError,
)
from .listing_models import CacheEnvelope

logger = logging.getLogger(__name__)

# PostgREST / gateway codes for rejected credentials
AUTH_ERROR_CODES = {'401', '403', 'PGRST301', 'PGRST302', '42501'}
# Undefined table / table missing from the schema cache
MISSING_SCHEMA_CODES = {'404', '406', '42P01', 'PGRST106', 'PGRST205'}
UNIQUE_VIOLATION = '23505'


@dataclass
class SharedCacheEntry:
    """A shared cache row together with its version token"""
    value: CacheEnvelope
    version: int
    updated_at: Optional[str] = None


def create_shared_cache_client(settings: SharedCacheSettings) -> Optional[Client]:
    """Create a Supabase client, or None when the tier is not configured"""
    if not settings.is_configured:
        logger.info("Shared cache not configured (SUPABASE_URL / SUPABASE_KEY missing)")
        return None
    return create_client(settings.url, settings.key)


def classify_error(error: Exception) -> SyncError:
    """Map a Supabase/HTTP failure onto the pipeline error taxonomy"""
    if isinstance(error, SyncError):
        return error

    if isinstance(error, APIError):
        code = str(error.code or '')
        message = str(error.message or error)
        lowered = message.lower()
        if code in AUTH_ERROR_CODES or 'jwt' in lowered or 'api key' in lowered:
            return AuthError(f"Shared cache rejected credentials ({code}): {message}", tier="shared")
        if code in MISSING_SCHEMA_CODES or 'does not exist' in lowered:
            return SchemaMissingError(f"Shared cache table missing ({code}): {message}", tier="shared")
        if code == UNIQUE_VIOLATION:
            return VersionConflictError(f"Shared cache row created concurrently: {message}")
        return TransientNetworkError(f"Shared cache API error ({code}): {message}", tier="shared")

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 401:
            return AuthError(f"Shared cache authentication failed ({status})", tier="shared")
        if status in (404, 406):
            return SchemaMissingError(f"Shared cache table missing ({status})", tier="shared")
        return TransientNetworkError(f"Shared cache HTTP {status}", status_code=status, tier="shared")

    if isinstance(error, (httpx.HTTPError, OSError, asyncio.TimeoutError)):
        return TransientNetworkError(f"Shared cache unreachable: {error}", tier="shared")

    return TransientNetworkError(f"Unexpected shared cache failure: {error}", tier="shared")


class SharedCacheService:
    """
    Service for reading and conditionally writing the shared listing cache.

    Authentication and missing-table failures disable the service for the
    rest of the process lifetime.
    """

    def __init__(
        self,
        supabase_client: Optional[Client] = None,
        settings: Optional[SharedCacheSettings] = None,
        schema_version: str = SCHEMA_VERSION
    ):
        self.settings = settings or get_config().shared_cache
        self.supabase = supabase_client if supabase_client is not None else create_shared_cache_client(self.settings)
        self.schema_version = schema_version

        self.disabled = self.supabase is None
        self.disabled_reason: Optional[str] = None if self.supabase is not None else "not configured"

    def _disable(self, error: SyncError):
        self.disabled = True
        self.disabled_reason = str(error)
        logger.error(f"Disabling shared cache for this process: {error}")

    async def _call(self, operation: Callable[[], Any], timeout: float) -> Any:
        """Run a blocking Supabase call in a worker thread with a deadline"""
        try:
            return await asyncio.wait_for(asyncio.to_thread(operation), timeout=timeout)
        except Exception as e:
            error = classify_error(e)
            if isinstance(error, TIER_DISABLING_ERRORS):
                self._disable(error)
            raise error from e

    def _table(self):
        return self.supabase.table(self.settings.table)

    async def _read_row(self, key: str, columns: str = '*') -> Optional[Dict[str, Any]]:
        """Latest row for key, or None if there is none. Raises SyncError."""
        response = await self._call(
            lambda: self._table().select(columns).eq('cache_key', key)
            .order('updated_at', desc=True).limit(1).execute(),
            timeout=self.settings.read_timeout
        )
        rows = response.data or []
        return rows[0] if rows else None

    async def is_empty(self, key: Optional[str] = None) -> bool:
        """
        True only when a read succeeded and found no usable entry.

        A failed, timed out or skipped read returns False, so callers never
        mistake an unreachable cache for an empty one.
        """
        key = key or self.settings.cache_key
        if self.disabled:
            return False
        try:
            row = await self._read_row(key, columns='schema_version,total_count')
        except SyncError as e:
            logger.warning(f"Could not confirm shared cache is empty: {e}")
            return False
        if row is None:
            return True
        return row.get('schema_version') != self.schema_version or not row.get('total_count')

    async def fetch(self, key: Optional[str] = None) -> Optional[SharedCacheEntry]:
        """
        Fetch the shared cache entry.

        Args:
            key: Cache identifier (defaults to the configured cache key)

        Returns:
            SharedCacheEntry, or None on miss, timeout, error or when disabled
        """
        key = key or self.settings.cache_key

        if self.disabled:
            logger.debug(f"Shared cache disabled ({self.disabled_reason}) - skipping fetch")
            return None

        try:
            row = await self._read_row(key)
        except TransientNetworkError as e:
            logger.warning(f"Shared cache fetch failed, treating as miss: {e}")
            return None
        except SyncError as e:
            logger.warning(f"Shared cache fetch failed: {e}")
            return None

        if row is None:
            logger.info("Shared cache is empty - no cached data yet")
            return None

        if row.get('schema_version') != self.schema_version:
            logger.warning(f"Shared cache schema mismatch (found: {row.get('schema_version')}, "
                           f"required: {self.schema_version}) - ignoring entry")
            return None

        try:
            envelope = CacheEnvelope.from_dict({
                'data': row.get('data') or [],
                'timestamp': row.get('timestamp') or _iso_to_epoch(row.get('updated_at')),
                'total_count': row.get('total_count'),
                'schema_version': row.get('schema_version'),
                'has_scores': row.get('has_scores', True),
            })
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Shared cache entry could not be decoded: {e}")
            return None

        logger.info(f"Found shared cache: {len(envelope.data)} listings, version {row.get('version')}")
        return SharedCacheEntry(value=envelope, version=int(row.get('version') or 0),
                                updated_at=row.get('updated_at'))

    async def _current_version(self, key: str) -> Optional[int]:
        response = await self._call(
            lambda: self._table().select('version').eq('cache_key', key).limit(1).execute(),
            timeout=self.settings.read_timeout
        )
        rows = response.data or []
        if not rows:
            return None
        return int(rows[0].get('version') or 0)

    def _row(self, key: str, envelope: CacheEnvelope, version: int) -> Dict[str, Any]:
        payload = envelope.to_dict()
        return {
            'cache_key': key,
            'data': payload['data'],
            'timestamp': payload['timestamp'],
            'total_count': payload['total_count'],
            'schema_version': self.schema_version,
            'has_scores': payload['has_scores'],
            'version': version,
            'updated_at': datetime.now(timezone.utc).isoformat(),
        }

    async def _conditional_write(self, key: str, envelope: CacheEnvelope, expected_version: Optional[int]):
        """Write only if the row is still at expected_version (None = row must not exist)"""
        if expected_version is None:
            row = self._row(key, envelope, version=1)
            await self._call(lambda: self._table().insert(row).execute(),
                             timeout=self.settings.write_timeout)
            return

        row = self._row(key, envelope, version=expected_version + 1)
        response = await self._call(
            lambda: self._table().update(row).eq('cache_key', key)
            .eq('version', expected_version).execute(),
            timeout=self.settings.write_timeout
        )
        if not response.data:
            raise VersionConflictError(
                f"Shared cache moved past version {expected_version}",
                expected_version=expected_version
            )

    async def save(self, key: str, envelope: CacheEnvelope, expected_version: Optional[int]) -> bool:
        """
        Conditionally write the envelope.

        Returns:
            True if the write landed, False on version conflict or any failure
        """
        if self.disabled:
            return False
        try:
            await self._conditional_write(key, envelope, expected_version)
            return True
        except VersionConflictError as e:
            logger.info(f"Shared cache write rejected: {e}")
            return False
        except SyncError as e:
            logger.warning(f"Shared cache write failed: {e}")
            return False

    async def publish(self, key: Optional[str], envelope: CacheEnvelope) -> bool:
        """
        Write the envelope, re-reading the version and retrying on conflict.

        Gives up silently after max_write_attempts; the local cache already
        holds the data so nothing user-visible depends on this succeeding.
        """
        key = key or self.settings.cache_key

        if self.disabled:
            logger.debug(f"Shared cache disabled ({self.disabled_reason}) - skipping save")
            return False

        logger.info(f"Saving {len(envelope.data)} listings to shared cache '{key}'...")

        for attempt in range(1, self.settings.max_write_attempts + 1):
            try:
                expected = await self._current_version(key)
                await self._conditional_write(key, envelope, expected)
                logger.info(f"Saved {len(envelope.data)} listings to shared cache "
                            f"(version {1 if expected is None else expected + 1})")
                return True
            except VersionConflictError as e:
                logger.info(f"Shared cache conflict on attempt {attempt}/{self.settings.max_write_attempts}: {e}")
                continue
            except SyncError as e:
                logger.warning(f"Shared cache save failed: {e}")
                return False

        logger.warning(f"Abandoning shared cache save after {self.settings.max_write_attempts} conflicting attempts")
        return False


def _iso_to_epoch(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00')).timestamp()
    except ValueError:
        return None
