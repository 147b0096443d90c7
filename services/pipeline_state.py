"""
Pipeline state owned by the cache resolver.

PipelineState holds the current canonical listing set and everything the
dashboard reads (projection, stats, progress, error). Listeners subscribe
with a callback and receive an immutable PipelineSnapshot after each change.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from .listing_models import CanonicalListing
from .projection_service import CurrentUser, FilterSpec, ListingStats, project

logger = logging.getLogger(__name__)

# Where the displayed data came from
SOURCE_NONE = 'none'
SOURCE_BOOTSTRAP = 'bootstrap'
SOURCE_LOCAL = 'local'
SOURCE_SHARED = 'shared'
SOURCE_SNAPSHOT = 'snapshot'
SOURCE_LIVE = 'live'

# Shared cache activity shown in the UI
SHARED_CACHE_LOADING = 'loading'
SHARED_CACHE_SAVING = 'saving'


@dataclass(frozen=True)
class LoadingProgress:
    """Progress of the current download or page fetch"""
    loaded: int = 0
    total: int = 0
    percent: int = 0
    is_indeterminate: bool = False
    status: Optional[str] = None

    @classmethod
    def complete(cls, count: int, status: Optional[str] = None) -> 'LoadingProgress':
        return cls(loaded=count, total=count, percent=100, status=status)

    @classmethod
    def from_bytes(cls, received: int, total: int) -> 'LoadingProgress':
        """Byte progress; total is -1 when the server sent no Content-Length"""
        if total <= 0:
            return cls(loaded=received, total=-1, percent=0, is_indeterminate=True,
                       status='Downloading data...')
        # Held below 100 until the document is parsed
        percent = min(95, int(received / total * 100))
        return cls(loaded=received, total=total, percent=percent, status='Downloading data...')


@dataclass(frozen=True)
class PipelineSnapshot:
    """Read-only view of the pipeline handed to listeners"""
    properties: Tuple[CanonicalListing, ...]
    all_properties: Tuple[CanonicalListing, ...]
    loading: bool
    error: Optional[str]
    stats: ListingStats
    loading_progress: LoadingProgress
    is_applying_filters: bool
    is_downloading: bool
    last_updated: Optional[float]
    shared_cache_status: Optional[str]
    source: str = SOURCE_NONE


Listener = Callable[[PipelineSnapshot], None]


class PipelineState:
    """
    Mutable pipeline state with subscriber notification.

    Every adoption swaps the canonical tuple and recomputes the projection in
    one synchronous step, so listeners never see a half-updated view.
    """

    def __init__(self, filters: Optional[FilterSpec] = None, current_user: Optional[CurrentUser] = None):
        self.filters = filters or FilterSpec()
        self.current_user = current_user

        self.all_properties: Tuple[CanonicalListing, ...] = ()
        self.properties: Tuple[CanonicalListing, ...] = ()
        self.stats = ListingStats()
        self.source = SOURCE_NONE
        self.data_timestamp: Optional[float] = None

        self.loading = False
        self.error: Optional[str] = None
        self.progress = LoadingProgress()
        self.is_applying_filters = False
        self.is_downloading = False
        self.last_updated: Optional[float] = None
        self.shared_cache_status: Optional[str] = None

        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it"""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self):
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Pipeline listener {listener!r} failed: {e}")

    def snapshot(self) -> PipelineSnapshot:
        return PipelineSnapshot(
            properties=self.properties,
            all_properties=self.all_properties,
            loading=self.loading,
            error=self.error,
            stats=self.stats,
            loading_progress=self.progress,
            is_applying_filters=self.is_applying_filters,
            is_downloading=self.is_downloading,
            last_updated=self.last_updated,
            shared_cache_status=self.shared_cache_status,
            source=self.source,
        )

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    @property
    def has_data(self) -> bool:
        return bool(self.all_properties)

    @property
    def only_bootstrap_displayed(self) -> bool:
        return self.source in (SOURCE_NONE, SOURCE_BOOTSTRAP)

    def adopt(self, listings: Sequence[CanonicalListing], source: str, timestamp: Optional[float] = None):
        """Replace the canonical set and re-project it against the active filters"""
        self.all_properties = tuple(listings)
        self.source = source
        self.data_timestamp = timestamp if timestamp is not None else time.time()
        self.last_updated = time.time()
        self.error = None
        self._reproject()
        logger.info(f"Adopted {len(self.all_properties)} listings from {source} "
                    f"({len(self.properties)} after filters)")
        self._notify()

    def _reproject(self):
        projection = project(self.all_properties, self.filters, self.current_user)
        self.properties = projection.filtered
        self.stats = projection.stats

    def apply_filters(self, filters: FilterSpec, current_user: Optional[CurrentUser] = None):
        """Re-project the last adopted set; never triggers tier resolution"""
        self.filters = filters
        if current_user is not None:
            self.current_user = current_user
        self._reproject()
        self.is_applying_filters = False
        self._notify()

    # ------------------------------------------------------------------
    # Status flags
    # ------------------------------------------------------------------

    def set_progress(self, progress: LoadingProgress):
        self.progress = progress
        self._notify()

    def set_error(self, message: Optional[str]):
        self.error = message
        self._notify()

    def set_loading(self, loading: bool):
        self.loading = loading
        self._notify()

    def set_downloading(self, downloading: bool):
        self.is_downloading = downloading
        self._notify()

    def set_applying_filters(self, applying: bool):
        self.is_applying_filters = applying
        self._notify()

    def set_shared_cache_status(self, status: Optional[str]):
        self.shared_cache_status = status
        self._notify()
