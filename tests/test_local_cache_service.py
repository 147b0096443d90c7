"""
Unit tests for services/local_cache_service.py
"""
import json

import pytest

from config.sync_config import SCHEMA_VERSION, LocalCacheSettings
from services.errors import StorageError
from services.listing_models import CacheEnvelope
from services.local_cache_service import LocalCacheService
from tests.conftest import make_listing


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "cache" / "listing_cache.json"


@pytest.fixture
def local_cache(cache_path):
    return LocalCacheService(LocalCacheSettings(path=cache_path))


@pytest.fixture
def envelope():
    listings = [
        make_listing("1", prices=[(300000, "2024-01-01"), (280000, "2024-02-01")]),
        make_listing("2", prices=[(450000, "2024-03-01")], ward="Ward 5"),
    ]
    return CacheEnvelope.build(listings, timestamp=1718000000.0)


@pytest.mark.asyncio
async def test_empty_cache_returns_none(local_cache):
    assert await local_cache.get() is None
    validity = await local_cache.is_valid()
    assert not validity.valid
    assert validity.reason == 'No cache found'


@pytest.mark.asyncio
async def test_round_trip(local_cache, envelope, cache_path):
    await local_cache.set(envelope)

    loaded = await local_cache.get()

    assert loaded.data == envelope.data
    assert loaded.timestamp == envelope.timestamp
    assert loaded.total_count == 2
    assert loaded.has_scores
    assert (await local_cache.is_valid()).valid

    stored = json.loads(cache_path.read_text(encoding='utf-8'))
    assert list(stored) == ['main_cache']


@pytest.mark.asyncio
async def test_version_mismatch_clears_cache(cache_path, envelope):
    await LocalCacheService(LocalCacheSettings(path=cache_path), schema_version="0.9").set(envelope)
    current = LocalCacheService(LocalCacheSettings(path=cache_path))

    validity = await current.is_valid()
    assert not validity.valid
    assert "Version mismatch" in validity.reason

    assert await current.get() is None
    assert not cache_path.exists()


@pytest.mark.asyncio
async def test_corrupted_file_raises_storage_error(local_cache, cache_path):
    cache_path.parent.mkdir(parents=True)
    cache_path.write_text("{not json", encoding='utf-8')

    with pytest.raises(StorageError):
        await local_cache.get()
    assert (await local_cache.is_valid()).reason == 'Error reading cache'


@pytest.mark.asyncio
async def test_clear(local_cache, envelope, cache_path):
    await local_cache.set(envelope)
    await local_cache.clear()

    assert not cache_path.exists()
    assert await local_cache.get() is None
    # Clearing an absent cache is fine
    await local_cache.clear()


@pytest.mark.asyncio
async def test_write_leaves_no_temp_files(local_cache, envelope, cache_path):
    await local_cache.set(envelope)
    await local_cache.set(envelope)

    assert [p.name for p in cache_path.parent.iterdir()] == ['listing_cache.json']


@pytest.mark.asyncio
async def test_invalid_utf8_raises_storage_error(local_cache, cache_path):
    cache_path.parent.mkdir(parents=True)
    cache_path.write_bytes(b'\xff\xfe\x00garbage')

    with pytest.raises(StorageError):
        await local_cache.get()
    assert not (await local_cache.is_valid()).valid


@pytest.mark.asyncio
@pytest.mark.parametrize("entry", [
    ["not", "a", "dict"],
    {"schema_version": SCHEMA_VERSION, "data": [1, 2, 3], "timestamp": 1718000000.0},
])
async def test_malformed_entry_raises_storage_error(local_cache, cache_path, entry):
    cache_path.parent.mkdir(parents=True)
    cache_path.write_text(json.dumps({"main_cache": entry}), encoding='utf-8')

    with pytest.raises(StorageError):
        await local_cache.get()
