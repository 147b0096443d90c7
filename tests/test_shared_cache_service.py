"""
Unit tests for services/shared_cache_service.py

Tests cover:
- Miss / hit / schema mismatch on fetch
- Versioned inserts and updates
- Compare-and-swap conflicts with re-read and give-up
- Error classification and permanent disabling
"""
import asyncio

import httpx
import pytest

from config.sync_config import SharedCacheSettings
from services.errors import (
    AuthError,
    SchemaMissingError,
    TransientNetworkError,
    VersionConflictError,
)
from services.listing_models import CacheEnvelope
from services.shared_cache_service import SharedCacheService, classify_error
from tests.conftest import api_error, make_listing


@pytest.fixture
def settings():
    return SharedCacheSettings(url="https://test.supabase.co", key="test-key", max_write_attempts=3)


@pytest.fixture
def shared_cache(fake_supabase, settings):
    return SharedCacheService(supabase_client=fake_supabase, settings=settings)


@pytest.fixture
def envelope():
    return CacheEnvelope.build([make_listing("1"), make_listing("2", ward="Ward 4")], timestamp=1718000000.0)


@pytest.mark.asyncio
async def test_fetch_empty_table_is_miss(shared_cache):
    assert await shared_cache.fetch() is None
    assert not shared_cache.disabled


@pytest.mark.asyncio
async def test_publish_then_fetch(shared_cache, fake_supabase, envelope):
    assert await shared_cache.publish(None, envelope)

    row = fake_supabase.rows['property_listings']
    assert row['version'] == 1
    assert row['total_count'] == 2
    assert row['schema_version'] == "1.0"

    entry = await shared_cache.fetch()
    assert entry.version == 1
    assert entry.value.data == envelope.data
    assert entry.value.timestamp == envelope.timestamp


@pytest.mark.asyncio
async def test_publish_bumps_version(shared_cache, fake_supabase, envelope):
    await shared_cache.publish(None, envelope)
    await shared_cache.publish(None, envelope)

    assert fake_supabase.rows['property_listings']['version'] == 2


@pytest.mark.asyncio
async def test_save_with_stale_version_is_rejected(shared_cache, fake_supabase, envelope):
    await shared_cache.publish(None, envelope)
    await shared_cache.publish(None, envelope)

    assert not await shared_cache.save('property_listings', envelope, expected_version=1)
    assert fake_supabase.rows['property_listings']['version'] == 2


@pytest.mark.asyncio
async def test_conflict_is_retried_with_fresh_version(shared_cache, fake_supabase, envelope):
    await shared_cache.publish(None, envelope)
    races = []

    def racing_writer(db):
        # Another client lands a write before our first update only
        if not races:
            races.append(True)
            db.rows['property_listings']['version'] += 1

    fake_supabase.before_write = racing_writer

    assert await shared_cache.publish(None, envelope)
    assert fake_supabase.rows['property_listings']['version'] == 3


@pytest.mark.asyncio
async def test_persistent_conflict_is_abandoned(shared_cache, fake_supabase, envelope):
    await shared_cache.publish(None, envelope)

    def racing_writer(db):
        db.rows['property_listings']['version'] += 1

    fake_supabase.before_write = racing_writer
    fake_supabase.executed.clear()

    assert not await shared_cache.publish(None, envelope)
    assert fake_supabase.executed.count('update') == 3
    assert not shared_cache.disabled


@pytest.mark.asyncio
async def test_auth_error_disables_tier_for_process(shared_cache, fake_supabase, envelope):
    fake_supabase.error = api_error('PGRST301', 'JWT expired')

    assert await shared_cache.fetch() is None
    assert shared_cache.disabled
    assert 'JWT' in shared_cache.disabled_reason

    calls = len(fake_supabase.executed)
    fake_supabase.error = None

    assert await shared_cache.fetch() is None
    assert not await shared_cache.publish(None, envelope)
    assert len(fake_supabase.executed) == calls


@pytest.mark.asyncio
async def test_missing_table_disables_tier(shared_cache, fake_supabase):
    fake_supabase.error = api_error('42P01', 'relation "property_cache" does not exist')

    assert await shared_cache.fetch() is None
    assert shared_cache.disabled


@pytest.mark.asyncio
async def test_transient_error_is_a_miss(shared_cache, fake_supabase):
    fake_supabase.error = httpx.ConnectError("connection refused")

    assert await shared_cache.fetch() is None
    assert not shared_cache.disabled


@pytest.mark.asyncio
async def test_schema_mismatch_is_ignored(shared_cache, fake_supabase, envelope):
    await shared_cache.publish(None, envelope)
    fake_supabase.rows['property_listings']['schema_version'] = "0.9"

    assert await shared_cache.fetch() is None
    assert not shared_cache.disabled


def test_unconfigured_service_is_disabled():
    service = SharedCacheService(settings=SharedCacheSettings())
    assert service.disabled
    assert service.disabled_reason == "not configured"


@pytest.mark.parametrize("error,expected", [
    (api_error('401'), AuthError),
    (api_error('42501', 'permission denied'), AuthError),
    (api_error('PGRST205', 'table not found in schema cache'), SchemaMissingError),
    (api_error('23505', 'duplicate key'), VersionConflictError),
    (api_error('500', 'server error'), TransientNetworkError),
    (httpx.ReadTimeout("timed out"), TransientNetworkError),
    (asyncio.TimeoutError(), TransientNetworkError),
])
def test_classify_error(error, expected):
    assert isinstance(classify_error(error), expected)


@pytest.mark.asyncio
async def test_is_empty_only_after_successful_read(shared_cache, fake_supabase, envelope):
    assert await shared_cache.is_empty()

    await shared_cache.publish(None, envelope)
    assert not await shared_cache.is_empty()

    fake_supabase.rows.clear()
    fake_supabase.queued_errors.append(api_error('XX000', 'internal error'))
    # A failed read never reports the cache as empty
    assert not await shared_cache.is_empty()
    assert await shared_cache.is_empty()


@pytest.mark.asyncio
async def test_is_empty_treats_other_schema_as_empty(shared_cache, fake_supabase, envelope):
    await shared_cache.publish(None, envelope)
    fake_supabase.rows['property_listings']['schema_version'] = "0.9"

    assert await shared_cache.is_empty()


@pytest.mark.asyncio
async def test_disabled_service_is_never_empty():
    service = SharedCacheService(settings=SharedCacheSettings())
    assert not await service.is_empty()
