"""
Shared pytest fixtures for the listing sync test suite.

Provides:
- FIXED_NOW / make_raw / make_listing: deterministic listing factories
- FakeSupabase: in-memory stand-in for the chainable Supabase table API
- FakeBoardClient: scripted board pages and failures
- no_sleep: awaitable sleep that returns immediately
- sync_config: SyncConfig pointing the local cache at tmp_path
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import AsyncMock, Mock

import pytest
from postgrest.exceptions import APIError

from config.sync_config import (
    DEFAULT_COLUMNS,
    DEFAULT_OUTREACH_COLUMNS,
    BoardSettings,
    LocalCacheSettings,
    SharedCacheSettings,
    SnapshotSettings,
    SyncConfig,
    set_config,
)
from services.board_client import BoardPage
from services.listing_models import CanonicalListing, PriceEvent, RawListing
from services.listing_normalizer import normalize_and_score

FIXED_NOW = datetime(2024, 12, 15, tzinfo=timezone.utc)


# ─── Listing factories ───────────────────────────────────────────────────────

def make_raw(
    listing_id: str = "1",
    prices=((300000, "2024-10-01"),),
    ward: Optional[str] = "Ward 3",
    status: str = "Active",
    property_type: str = "House",
    bedrooms: Any = "3",
    bathrooms: Any = "2",
    outreach: Optional[Dict[str, Optional[str]]] = None,
    lat: Optional[str] = "42.30",
    lng: Optional[str] = "-83.03",
) -> RawListing:
    """Build a RawListing from (price, date) pairs"""
    events = [PriceEvent(price=price, date=date) for price, date in prices]
    return RawListing(
        id=listing_id,
        name=f"{listing_id} Test Street, Windsor, Ontario",
        address=f"{listing_id} Test Street",
        city="Windsor",
        lat=lat,
        lng=lng,
        listing_status=status,
        property_type=property_type,
        building_type=property_type,
        bedrooms=bedrooms,
        bathrooms=bathrooms,
        listing_date=prices[0][1] if prices else None,
        price_events=events,
        ward=ward,
        outreach=outreach or {},
    )


def make_listing(listing_id: str = "1", **kwargs) -> CanonicalListing:
    """Build a scored CanonicalListing"""
    return normalize_and_score(make_raw(listing_id, **kwargs), FIXED_NOW)


# ─── Supabase fake ───────────────────────────────────────────────────────────

class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """Records one chained table call and runs it against FakeSupabase.rows"""

    def __init__(self, db: 'FakeSupabase', table: str):
        self.db = db
        self.table = table
        self.operation = 'select'
        self.payload: Optional[Dict[str, Any]] = None
        self.filters: Dict[str, Any] = {}
        self._limit: Optional[int] = None

    def select(self, *columns, **kwargs):
        self.operation = 'select'
        return self

    def insert(self, row):
        self.operation = 'insert'
        self.payload = row
        return self

    def update(self, row):
        self.operation = 'update'
        self.payload = row
        return self

    def eq(self, column, value):
        self.filters[column] = value
        return self

    def order(self, column, desc=False):
        return self

    def limit(self, count):
        self._limit = count
        return self

    def _matching(self) -> List[Dict[str, Any]]:
        return [
            row for row in self.db.rows.values()
            if all(row.get(column) == value for column, value in self.filters.items())
        ]

    def execute(self):
        self.db.executed.append(self.operation)
        if self.db.queued_errors:
            raise self.db.queued_errors.pop(0)
        if self.db.error is not None:
            raise self.db.error
        if self.db.before_write and self.operation in ('insert', 'update'):
            self.db.before_write(self.db)

        if self.operation == 'select':
            rows = [dict(row) for row in self._matching()]
            return FakeResponse(rows[:self._limit] if self._limit else rows)

        if self.operation == 'insert':
            key = self.payload['cache_key']
            if key in self.db.rows:
                raise APIError({'message': 'duplicate key value violates unique constraint',
                                'code': '23505', 'hint': None, 'details': None})
            self.db.rows[key] = dict(self.payload)
            return FakeResponse([dict(self.payload)])

        updated = []
        for row in self._matching():
            row.update(self.payload)
            updated.append(dict(row))
        return FakeResponse(updated)


class FakeSupabase:
    """
    Minimal Supabase client double.

    Attributes:
        rows: cache_key -> row dict
        error: Raised from every execute() when set
        queued_errors: Raised one per execute() call, in order, before `error`
        before_write: Hook run before each insert/update (simulates a racing writer)
        executed: Operation names in call order
    """

    def __init__(self):
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.error: Optional[Exception] = None
        self.queued_errors: List[Exception] = []
        self.before_write: Optional[Callable[['FakeSupabase'], None]] = None
        self.executed: List[str] = []
        self.tables: List[str] = []

    def table(self, name: str) -> FakeQuery:
        self.tables.append(name)
        return FakeQuery(self, name)


def api_error(code: str, message: str = "error") -> APIError:
    return APIError({'message': message, 'code': code, 'hint': None, 'details': None})


# ─── Board fake ──────────────────────────────────────────────────────────────

class FakeBoardClient:
    """
    Scripted board client.

    Each fetch_page() call consumes the next entry of `responses`; once the
    script is exhausted `default` is used. Exceptions are raised.
    """

    def __init__(self, responses=None, default=None, latest_update: Optional[float] = None):
        self.responses = list(responses or [])
        self.default = default
        self.latest_update = latest_update
        self.is_configured = True
        self.calls: List[Optional[str]] = []

    def fetch_page(self, cursor=None, limit=None) -> BoardPage:
        self.calls.append(cursor)
        result = self.responses.pop(0) if self.responses else self.default
        if isinstance(result, Exception):
            raise result
        if result is None:
            return BoardPage(items=[], cursor=None)
        return result

    def fetch_latest_update(self, limit: int = 500) -> Optional[float]:
        return self.latest_update


def board_pages(raws: List[RawListing], page_size: int) -> List[BoardPage]:
    """Split raw listings into cursor-linked pages"""
    pages = []
    chunks = [raws[i:i + page_size] for i in range(0, len(raws), page_size)]
    for index, chunk in enumerate(chunks):
        cursor = f"cursor-{index + 1}" if index < len(chunks) - 1 else None
        pages.append(BoardPage(items=chunk, cursor=cursor))
    return pages


# ─── Fixtures ────────────────────────────────────────────────────────────────

async def _no_sleep(delay: float):
    return None


@pytest.fixture
def no_sleep():
    """Awaitable sleep that records delays without waiting."""
    sleep = AsyncMock(side_effect=_no_sleep)
    return sleep


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def snapshot_loader():
    """Snapshot tier double that misses by default."""
    loader = Mock()
    loader.load = AsyncMock(return_value=None)
    return loader


@pytest.fixture
def sync_config(tmp_path):
    """SyncConfig with the local cache in tmp_path and no real endpoints."""
    config = SyncConfig(
        local_cache=LocalCacheSettings(path=tmp_path / "listing_cache.json"),
        shared_cache=SharedCacheSettings(url="https://test.supabase.co", key="test-key"),
        snapshot=SnapshotSettings(url=None),
        board=BoardSettings(
            api_token="test-token",
            board_id="123",
            page_size=3,
            delay_between_pages=0,
            base_backoff_seconds=0,
            columns=dict(DEFAULT_COLUMNS),
            outreach_columns=dict(DEFAULT_OUTREACH_COLUMNS),
        ),
        use_bootstrap=False,
        background_start_delay=0,
        filter_debounce_seconds=0.01,
        log_file=str(tmp_path / "listing_sync.log"),
    )
    set_config(config)
    yield config
    set_config(None)
