"""
Snapshot Loader Service for the Listing Sync Pipeline

Downloads a pre-baked JSON snapshot of the listing set over a streamed HTTP
response, reporting byte progress as chunks arrive. Every failure (non-2xx,
wrong content type, timeout, bad JSON) is logged and reported as a miss so
the resolver falls through to the live source.

Snapshot document layout:
    {
        "version": "1.0",
        "timestamp": 1718000000.0,
        "totalCount": 1234,
        "hasScores": true,
        "data": [ {...}, ... ]
    }

Records in "data" are canonical listing dicts when they carry a
price_history, otherwise flat board records that still need normalizing.
"""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

from config.sync_config import SnapshotSettings, get_config
from .errors import SyncError, TransientNetworkError, ValidationError
from .listing_models import CacheEnvelope, CanonicalListing
from .listing_normalizer import normalize_all, score_all
from .local_cache_service import atomic_write_json

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


def decode_records(records: List[Dict[str, Any]], has_scores: bool) -> List[CanonicalListing]:
    """
    Turn snapshot records into scored canonical listings.

    Scoring runs only for records that do not carry scores, and not at all
    when the document declares hasScores.
    """
    canonical = []
    raw = []
    for record in records:
        if not isinstance(record, dict):
            logger.warning(f"Skipping non-object snapshot record: {record!r}")
            continue
        if 'price_history' in record:
            try:
                canonical.append(CanonicalListing.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed snapshot record {record.get('id')}: {e}")
        else:
            raw.append(record)

    if raw:
        canonical.extend(normalize_all(raw))

    if has_scores:
        return canonical
    return score_all(canonical)


class SnapshotLoaderService:
    """Service for fetching and writing listing snapshots"""

    def __init__(self, settings: Optional[SnapshotSettings] = None, session: Optional[requests.Session] = None):
        self.settings = settings or get_config().snapshot
        self.session = session or requests.Session()
        self.session.headers.update({
            'Accept': 'application/json',
            'Cache-Control': 'no-cache',
        })

    def _download(self, on_progress: Optional[ProgressCallback]) -> bytes:
        """Blocking streamed download; runs in a worker thread"""
        try:
            with self.session.get(self.settings.url, stream=True, timeout=self.settings.timeout) as response:
                if not response.ok:
                    raise TransientNetworkError(
                        f"Snapshot request returned HTTP {response.status_code}",
                        status_code=response.status_code,
                        tier="snapshot"
                    )

                content_type = response.headers.get('Content-Type', '').lower()
                if 'application/json' not in content_type:
                    raise ValidationError(f"Snapshot has unexpected content type {content_type!r}",
                                          field='content-type')

                length = response.headers.get('Content-Length')
                total = int(length) if length and length.isdigit() else -1

                chunks = []
                received = 0
                for chunk in response.iter_content(chunk_size=self.settings.chunk_size):
                    if not chunk:
                        continue
                    chunks.append(chunk)
                    received += len(chunk)
                    if on_progress:
                        on_progress(received, total)

                return b''.join(chunks)

        except requests.exceptions.RequestException as e:
            raise TransientNetworkError(f"Snapshot download failed: {e}", tier="snapshot") from e

    def _parse(self, body: bytes) -> CacheEnvelope:
        try:
            document = json.loads(body.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Snapshot is not valid JSON: {e}")

        if not isinstance(document, dict) or not isinstance(document.get('data'), list):
            raise ValidationError("Snapshot document has no data array", field='data')

        has_scores = bool(document.get('hasScores', document.get('has_scores', False)))
        listings = decode_records(document['data'], has_scores)

        timestamp = document.get('timestamp')
        # Snapshots written by the dashboard carry millisecond timestamps
        if isinstance(timestamp, (int, float)) and timestamp > 1e11:
            timestamp = timestamp / 1000

        return CacheEnvelope.build(listings, timestamp=float(timestamp) if timestamp else time.time())

    async def load(self, on_progress: Optional[ProgressCallback] = None) -> Optional[CacheEnvelope]:
        """
        Fetch and decode the snapshot.

        Args:
            on_progress: Called on the event loop with (bytes_received, total_bytes);
                total_bytes is -1 when the server sent no Content-Length

        Returns:
            Scored CacheEnvelope, or None on any failure
        """
        if not self.settings.url:
            logger.debug("No snapshot URL configured - skipping snapshot tier")
            return None

        logger.info(f"Fetching listing snapshot from {self.settings.url}...")
        loop = asyncio.get_running_loop()

        def report(received: int, total: int):
            if on_progress:
                loop.call_soon_threadsafe(on_progress, received, total)

        try:
            body = await asyncio.wait_for(
                asyncio.to_thread(self._download, report),
                timeout=self.settings.timeout
            )
            envelope = await asyncio.to_thread(self._parse, body)
        except asyncio.TimeoutError:
            logger.warning(f"Snapshot download timed out after {self.settings.timeout}s - falling through")
            return None
        except SyncError as e:
            logger.info(f"Snapshot unavailable, falling through: {e}")
            return None

        if envelope.is_empty:
            logger.info("Snapshot contained no listings")
            return None

        logger.info(f"Loaded {len(envelope.data)} listings from snapshot")
        return envelope

    @staticmethod
    def write_snapshot(envelope: CacheEnvelope, path: Path):
        """
        Write an envelope in the snapshot document layout.

        Raises:
            StorageError: If the file cannot be written
        """
        path = Path(path)
        document = {
            'version': envelope.schema_version,
            'timestamp': envelope.timestamp,
            'totalCount': len(envelope.data),
            'hasScores': envelope.has_scores,
            'data': [listing.to_dict() for listing in envelope.data],
        }
        atomic_write_json(path, document)
        logger.info(f"Wrote snapshot with {len(envelope.data)} listings to {path}")
