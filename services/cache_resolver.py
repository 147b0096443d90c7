"""
Cache Resolver for the Listing Sync Pipeline

This service coordinates the cache tiers, deciding which source supplies the
displayed listing set and keeping the faster tiers filled from the slower ones.

Resolution order:
- Tier 1 (Bootstrap): adopted synchronously by start(), never awaited
- Tier 2 (Local Cache): adopt and stop; push up to the shared cache if it is empty
- Tier 3 (Shared Cache): adopt, write down to the local cache, stop
- Tier 4 (Snapshot): adopt, write down to the local cache, stop
- Tier 5 (Live Board): adopt, write to the local and shared caches

A refresh goes straight to tier 5. A failure is only surfaced as an error
when nothing at all is displayed.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from config.sync_config import SyncConfig, get_config
from .board_sync_service import BoardSyncService
from .bootstrap_data import load_bootstrap_listings
from .errors import FatalFetchError, SessionTimeoutError, StorageError, SyncError
from .listing_models import CacheEnvelope
from .listing_normalizer import normalize_all, score_all
from .local_cache_service import LocalCacheService
from .pipeline_state import (
    LoadingProgress,
    PipelineSnapshot,
    PipelineState,
    SHARED_CACHE_LOADING,
    SHARED_CACHE_SAVING,
    SOURCE_BOOTSTRAP,
    SOURCE_LIVE,
    SOURCE_LOCAL,
    SOURCE_SHARED,
    SOURCE_SNAPSHOT,
)
from .projection_service import CurrentUser, FilterDebouncer, FilterSpec
from .scheduler_service import RefreshTrigger
from .shared_cache_service import SharedCacheService
from .snapshot_loader_service import SnapshotLoaderService

logger = logging.getLogger(__name__)

USER_FACING_ERROR = "Failed to load property data. Please try again."


@dataclass
class ResolutionResult:
    """Result of one resolution or refresh"""
    success: bool
    source: Optional[str] = None
    listings_count: int = 0
    tiers_tried: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    errors: List[str] = field(default_factory=list)


class CacheResolver:
    """
    Main orchestrator for the listing cache tiers.

    Owns the PipelineState; every other component only reads snapshots of it.
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        local_cache: Optional[LocalCacheService] = None,
        shared_cache: Optional[SharedCacheService] = None,
        snapshot_loader: Optional[SnapshotLoaderService] = None,
        board_sync: Optional[BoardSyncService] = None,
        filters: Optional[FilterSpec] = None,
        current_user: Optional[CurrentUser] = None
    ):
        self.config = config or get_config()

        # Initialize services
        self.local_cache = local_cache or LocalCacheService(self.config.local_cache)
        self.shared_cache = shared_cache or SharedCacheService(settings=self.config.shared_cache)
        self.snapshot_loader = snapshot_loader or SnapshotLoaderService(self.config.snapshot)
        self.board_sync = board_sync or BoardSyncService(settings=self.config.board)

        self.state = PipelineState(filters=filters, current_user=current_user)
        self.debouncer = FilterDebouncer(
            apply=self._apply_filters,
            delay=self.config.filter_debounce_seconds,
            on_pending_change=self.state.set_applying_filters
        )

        self._live_lock = asyncio.Lock()
        self._live_running = False
        self._background_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def start(self) -> Optional[asyncio.Task]:
        """
        Adopt the bootstrap set synchronously, then resolve in the background.

        Must be called from a running event loop.

        Returns:
            The background resolution task
        """
        if self.config.use_bootstrap:
            started = time.time()
            listings = load_bootstrap_listings()
            self.state.adopt(listings, SOURCE_BOOTSTRAP)
            self.state.set_progress(LoadingProgress.complete(len(listings)))
            logger.info(f"Displayed {len(listings)} bootstrap listings in "
                        f"{(time.time() - started) * 1000:.0f}ms")

        self._background_task = asyncio.get_running_loop().create_task(self._resolve_in_background())
        return self._background_task

    async def _resolve_in_background(self):
        await asyncio.sleep(self.config.background_start_delay)
        try:
            await self.resolve()
        except Exception as e:
            logger.error(f"Background resolution failed: {e}")
            self._handle_total_failure(e)

    def snapshot(self) -> PipelineSnapshot:
        return self.state.snapshot()

    # ------------------------------------------------------------------
    # Tier helpers
    # ------------------------------------------------------------------

    async def _read_local(self) -> Optional[CacheEnvelope]:
        try:
            return await self.local_cache.get()
        except StorageError as e:
            logger.warning(f"Local cache unreadable, treating as miss: {e}")
            return None

    async def _write_local(self, envelope: CacheEnvelope) -> bool:
        try:
            await self.local_cache.set(envelope)
            return True
        except StorageError as e:
            logger.warning(f"Could not write local cache: {e}")
            return False

    async def _publish_shared(self, envelope: CacheEnvelope) -> bool:
        if self.shared_cache.disabled:
            return False
        self.state.set_shared_cache_status(SHARED_CACHE_SAVING)
        try:
            return await self.shared_cache.publish(None, envelope)
        finally:
            self.state.set_shared_cache_status(None)

    async def _fetch_shared(self):
        if self.shared_cache.disabled:
            logger.debug("Shared cache disabled - skipping tier 3")
            return None
        self.state.set_shared_cache_status(SHARED_CACHE_LOADING)
        try:
            return await self.shared_cache.fetch()
        finally:
            self.state.set_shared_cache_status(None)

    async def _shared_is_empty(self) -> bool:
        if self.shared_cache.disabled:
            return False
        self.state.set_shared_cache_status(SHARED_CACHE_LOADING)
        try:
            return await self.shared_cache.is_empty()
        finally:
            self.state.set_shared_cache_status(None)

    @staticmethod
    def _ensure_scored(envelope: CacheEnvelope) -> CacheEnvelope:
        if envelope.has_scores:
            return envelope
        logger.info(f"Cached data has no scores - scoring {len(envelope.data)} listings once")
        return CacheEnvelope.build(score_all(envelope.data), timestamp=envelope.timestamp)

    def _adopt(self, envelope: CacheEnvelope, source: str):
        self.state.adopt(envelope.data, source, envelope.timestamp)
        self.state.set_progress(LoadingProgress.complete(len(envelope.data)))

    def _handle_total_failure(self, error: Exception):
        """Surface an error only when nothing is displayed"""
        if self.state.has_data:
            logger.warning(f"All sources failed, keeping {len(self.state.all_properties)} displayed "
                           f"listings ({self.state.source}): {error}")
            return
        logger.error(f"All sources failed and nothing is displayed: {error}")
        self.state.set_error(USER_FACING_ERROR)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self) -> ResolutionResult:
        """
        Resolve the listing set through tiers 2 to 5.

        Returns:
            ResolutionResult naming the tier that answered
        """
        logger.info("=" * 60)
        logger.info("Resolving listing data")
        logger.info("=" * 60)

        start_time = time.time()
        result = ResolutionResult(success=False)

        try:
            # Step 1: Local cache
            result.tiers_tried.append(SOURCE_LOCAL)
            local = await self._read_local()
            local_was_empty = local is None or local.is_empty

            if not local_was_empty:
                envelope = self._ensure_scored(local)
                if envelope is not local:
                    await self._write_local(envelope)
                self._adopt(envelope, SOURCE_LOCAL)
                result.source = SOURCE_LOCAL
                result.listings_count = len(envelope.data)
                result.success = True

                # Self-healing: fill the shared cache only when it is confirmed empty
                if await self._shared_is_empty():
                    logger.info("Shared cache is empty - pushing local data up")
                    await self._publish_shared(envelope)
                return result

            # Step 2: Shared cache
            result.tiers_tried.append(SOURCE_SHARED)
            entry = await self._fetch_shared()
            if entry and not entry.value.is_empty:
                envelope = self._ensure_scored(entry.value)
                self._adopt(envelope, SOURCE_SHARED)
                await self._write_local(envelope)
                result.source = SOURCE_SHARED
                result.listings_count = len(envelope.data)
                result.success = True
                return result

            # Step 3: Snapshot
            result.tiers_tried.append(SOURCE_SNAPSHOT)
            envelope = await self._load_snapshot()
            if envelope:
                envelope = self._ensure_scored(envelope)
                self._adopt(envelope, SOURCE_SNAPSHOT)
                await self._write_local(envelope)
                result.source = SOURCE_SNAPSHOT
                result.listings_count = len(envelope.data)
                result.success = True
                return result

            # Step 4: Live board
            result.tiers_tried.append(SOURCE_LIVE)
            live = await self._run_live_session(cache_was_empty=True)
            result.success = live.success
            result.source = live.source
            result.listings_count = live.listings_count
            result.errors.extend(live.errors)
            return result

        finally:
            result.duration_seconds = time.time() - start_time
            logger.info(f"Resolution completed in {result.duration_seconds:.1f}s: "
                        f"source={result.source or 'none'}, {result.listings_count} listings, "
                        f"tiers tried: {' -> '.join(result.tiers_tried)}")

    async def _load_snapshot(self) -> Optional[CacheEnvelope]:
        def on_progress(received: int, total: int):
            self.state.set_progress(LoadingProgress.from_bytes(received, total))

        self.state.set_downloading(True)
        try:
            return await self.snapshot_loader.load(on_progress=on_progress)
        finally:
            self.state.set_downloading(False)

    async def refresh_data(self) -> ResolutionResult:
        """Fetch fresh data from the live board, bypassing tiers 2 to 4"""
        logger.info("Manual refresh requested")
        return await self._run_live_session(cache_was_empty=False)

    async def _run_live_session(self, cache_was_empty: bool) -> ResolutionResult:
        result = ResolutionResult(success=False)

        if self._live_running:
            logger.info("Live fetch already in progress - ignoring request")
            result.errors.append("Live fetch already in progress")
            return result

        if not self.board_sync.client.is_configured:
            error = FatalFetchError("Board API token or board id not configured")
            result.errors.append(str(error))
            self._handle_total_failure(error)
            return result

        start_time = time.time()

        async with self._live_lock:
            self._live_running = True
            self.state.set_downloading(True)
            # Only bound the session while nothing better than bootstrap is shown
            timeout = self.config.board.session_timeout if self.state.only_bootstrap_displayed else None

            try:
                session = await self.board_sync.run_session(on_progress=self.state.set_progress, timeout=timeout)
                listings = await asyncio.to_thread(normalize_all, session.listings)
                if not listings:
                    raise FatalFetchError("Board returned no listings", pages_fetched=session.pages_fetched)

                envelope = CacheEnvelope.build(listings)
                self.state.set_progress(LoadingProgress.complete(len(listings), status='Saving to cache...'))

                # Fill tiers 2 and 3 before adoption
                await self._write_local(envelope)
                await self._publish_shared(envelope)

                self._adopt(envelope, SOURCE_LIVE)
                result.success = True
                result.source = SOURCE_LIVE
                result.listings_count = len(listings)
                result.errors.extend(session.errors)

                if cache_was_empty and self.config.snapshot.export_path:
                    await self._export_snapshot(envelope)

            except SessionTimeoutError as e:
                result.errors.append(str(e))
                logger.warning(f"Live fetch abandoned, displayed data left untouched: {e}")
            except SyncError as e:
                result.errors.append(str(e))
                self._handle_total_failure(e)
            except Exception as e:
                logger.error(f"Unexpected error during live fetch: {e}", exc_info=True)
                result.errors.append(f"Unexpected error: {e}")
                self._handle_total_failure(e)
            finally:
                self._live_running = False
                self.state.set_downloading(False)
                result.duration_seconds = time.time() - start_time

        logger.info(f"Live fetch {'succeeded' if result.success else 'failed'} in "
                    f"{result.duration_seconds:.1f}s: {result.listings_count} listings")
        return result

    async def _export_snapshot(self, envelope: CacheEnvelope):
        path = self.config.snapshot.export_path
        try:
            await asyncio.to_thread(SnapshotLoaderService.write_snapshot, envelope, path)
        except StorageError as e:
            logger.error(f"Failed to export snapshot to {path}: {e}")

    # ------------------------------------------------------------------
    # Background refresh triggers
    # ------------------------------------------------------------------

    async def check_for_updates(self) -> bool:
        """
        Probe the board for items newer than the displayed data.

        Runs a silent live refresh when an update is found.

        Returns:
            True if a refresh was triggered
        """
        client = self.board_sync.client
        if not client.is_configured:
            logger.debug("Board not configured - skipping update check")
            return False

        try:
            latest = await asyncio.to_thread(client.fetch_latest_update)
        except SyncError as e:
            logger.warning(f"Update check failed, keeping current data: {e}")
            return False

        current = self.state.data_timestamp or 0
        if latest is None or latest <= current:
            logger.info("No board updates since the displayed data was fetched")
            return False

        logger.info(f"Board updated at {latest:.0f} (data from {current:.0f}) - refreshing in background")
        await self.refresh_data()
        return True

    async def handle_refresh_trigger(self, trigger: RefreshTrigger) -> Optional[ResolutionResult]:
        """Run a live refresh for a scheduler trigger and acknowledge it"""
        if not trigger.should_refresh:
            return None
        try:
            return await self.refresh_data()
        finally:
            trigger.mark_complete()

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def _apply_filters(self, spec: FilterSpec):
        self.state.apply_filters(spec, self.state.current_user)

    def set_filters(self, spec: FilterSpec) -> asyncio.Task:
        """Debounced re-projection of the displayed data"""
        return self.debouncer.submit(spec)

    def set_current_user(self, user: Optional[CurrentUser]):
        self.state.current_user = user
        self.state.apply_filters(self.state.filters)
