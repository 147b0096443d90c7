"""
Local Cache Service for the Listing Sync Pipeline

Persistent, versioned key/value store on local disk. One JSON file holds the
envelope under a fixed key; entries written by another schema version are
discarded on read so callers see them as a cold cache.

All public methods are coroutines; file I/O runs in a worker thread.
"""

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from config.sync_config import SCHEMA_VERSION, LocalCacheSettings, get_config
from .errors import StorageError
from .listing_models import CacheEnvelope

logger = logging.getLogger(__name__)


@dataclass
class CacheValidity:
    """Result of a validity probe"""
    valid: bool
    reason: str


def atomic_write_json(target_path: Path, data: dict):
    """
    Atomically write JSON data to a file using temp file + rename.

    Raises:
        StorageError: If the write fails
    """
    target_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = None

    try:
        with tempfile.NamedTemporaryFile(
            mode='w',
            dir=target_path.parent,
            delete=False,
            prefix='.tmp_',
            suffix='.tmp',
            encoding='utf-8'
        ) as tmp_file:
            tmp_path = Path(tmp_file.name)
            json.dump(data, tmp_file)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())

        os.replace(tmp_path, target_path)

    except OSError as e:
        if tmp_path and tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                logger.debug(f"Could not remove temp file {tmp_path}")
        raise StorageError(f"Failed to write cache file {target_path}: {e}", operation="write")


class LocalCacheService:
    """
    Versioned single-entry cache stored as a JSON document.

    Layout on disk: {"<cache_key>": <envelope dict>}
    """

    def __init__(self, settings: Optional[LocalCacheSettings] = None, schema_version: str = SCHEMA_VERSION):
        self.settings = settings or get_config().local_cache
        self.path = Path(self.settings.path)
        self.cache_key = self.settings.cache_key
        self.schema_version = schema_version

    def _read_store(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                store = json.load(f)
        except OSError as e:
            raise StorageError(f"Failed to read cache file {self.path}: {e}", operation="read")
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StorageError(f"Cache file {self.path} is corrupted: {e}", operation="read")
        if not isinstance(store, dict):
            raise StorageError(f"Cache file {self.path} has unexpected layout", operation="read")
        return store

    def _get_sync(self) -> Optional[CacheEnvelope]:
        store = self._read_store()
        entry = store.get(self.cache_key)
        if not entry:
            return None
        if not isinstance(entry, dict):
            raise StorageError(f"Cache entry in {self.path} has unexpected layout", operation="read")

        found = entry.get('schema_version')
        if found != self.schema_version:
            logger.warning(f"Cache version mismatch (found: {found}, required: {self.schema_version}). "
                           f"Clearing cache.")
            self._clear_sync()
            return None

        try:
            return CacheEnvelope.from_dict(entry)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Cache entry in {self.path} could not be decoded: {e}", operation="read")

    def _set_sync(self, envelope: CacheEnvelope):
        payload = envelope.to_dict()
        # Entries are always stamped with the running schema version
        payload['schema_version'] = self.schema_version
        atomic_write_json(self.path, {self.cache_key: payload})

    def _clear_sync(self):
        try:
            if self.path.exists():
                self.path.unlink()
        except OSError as e:
            raise StorageError(f"Failed to clear cache file {self.path}: {e}", operation="clear")

    def _is_valid_sync(self) -> CacheValidity:
        try:
            store = self._read_store()
        except StorageError:
            return CacheValidity(False, 'Error reading cache')

        entry = store.get(self.cache_key)
        if not entry:
            return CacheValidity(False, 'No cache found')
        if not isinstance(entry, dict):
            return CacheValidity(False, 'Error reading cache')

        found = entry.get('schema_version')
        if found != self.schema_version:
            return CacheValidity(False, f"Version mismatch (found: {found}, required: {self.schema_version})")

        return CacheValidity(True, 'Cache is valid')

    async def get(self) -> Optional[CacheEnvelope]:
        """
        Read the cached envelope.

        Returns:
            CacheEnvelope, or None when the cache is empty or was written by
            another schema version (in which case it is cleared)

        Raises:
            StorageError: On I/O failure
        """
        envelope = await asyncio.to_thread(self._get_sync)
        if envelope:
            logger.debug(f"Local cache hit: {len(envelope.data)} listings")
        return envelope

    async def set(self, envelope: CacheEnvelope):
        """Replace the cached envelope. Raises StorageError on I/O failure."""
        await asyncio.to_thread(self._set_sync, envelope)
        logger.info(f"Saved {len(envelope.data)} listings to local cache {self.path}")

    async def clear(self):
        """Remove the cached envelope. Raises StorageError on I/O failure."""
        await asyncio.to_thread(self._clear_sync)
        logger.info(f"Cleared local cache {self.path}")

    async def is_valid(self) -> CacheValidity:
        return await asyncio.to_thread(self._is_valid_sync)
