"""
Unit tests for services/snapshot_loader_service.py

The HTTP layer is replaced with a fake requests session; no network access.
"""
import json

import pytest
import requests

from config.sync_config import SnapshotSettings
from services.listing_models import CacheEnvelope
from services.snapshot_loader_service import SnapshotLoaderService, decode_records
from tests.conftest import make_listing


class FakeStreamResponse:
    def __init__(self, body: bytes, status_code: int = 200, headers=None):
        self.body = body
        self.status_code = status_code
        self.headers = headers or {}

    @property
    def ok(self):
        return self.status_code < 400

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.body), chunk_size):
            yield self.body[start:start + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.headers = {}
        self.requests = []

    def get(self, url, stream=False, timeout=None):
        self.requests.append(url)
        if self.error:
            raise self.error
        return self.response


def json_response(document, with_length=True, content_type='application/json; charset=utf-8'):
    body = json.dumps(document).encode('utf-8')
    headers = {'Content-Type': content_type}
    if with_length:
        headers['Content-Length'] = str(len(body))
    return FakeStreamResponse(body, headers=headers)


RAW_DOCUMENT = {
    "version": "1.0",
    "timestamp": 1718000000000,
    "totalCount": 2,
    "data": [
        {"id": "10", "name": "10 Elm", "price_1": 300000, "date_1": "2024-01-01",
         "price_2": 280000, "date_2": "2024-02-01", "ward": "WARD 2"},
        {"id": "11", "name": "11 Elm", "price_1": 420000, "date_1": "2024-03-01"},
    ],
}


def make_loader(session, chunk_size=16):
    settings = SnapshotSettings(url="https://cdn.test/propertyCache.json", timeout=5, chunk_size=chunk_size)
    return SnapshotLoaderService(settings, session=session)


@pytest.mark.asyncio
async def test_load_raw_snapshot_normalizes_and_scores():
    progress = []
    loader = make_loader(FakeSession(json_response(RAW_DOCUMENT)))

    envelope = await loader.load(on_progress=lambda received, total: progress.append((received, total)))

    assert [listing.id for listing in envelope.data] == ["10", "11"]
    assert envelope.has_scores
    assert envelope.data[0].ward == "Ward 2"
    assert envelope.data[0].drop_frequency_count == 1
    # Millisecond timestamps are converted to seconds
    assert envelope.timestamp == 1718000000.0

    assert progress
    total = progress[-1][1]
    assert progress[-1][0] == total > 0
    assert [received for received, _ in progress] == sorted(received for received, _ in progress)


@pytest.mark.asyncio
async def test_missing_content_length_reports_indeterminate_total():
    progress = []
    loader = make_loader(FakeSession(json_response(RAW_DOCUMENT, with_length=False)))

    await loader.load(on_progress=lambda received, total: progress.append(total))

    assert progress and set(progress) == {-1}


@pytest.mark.asyncio
async def test_http_error_is_a_miss():
    loader = make_loader(FakeSession(FakeStreamResponse(b"not found", status_code=404,
                                                        headers={'Content-Type': 'text/plain'})))
    assert await loader.load() is None


@pytest.mark.asyncio
async def test_wrong_content_type_is_a_miss():
    loader = make_loader(FakeSession(json_response(RAW_DOCUMENT, content_type='text/html')))
    assert await loader.load() is None


@pytest.mark.asyncio
async def test_invalid_json_is_a_miss():
    response = FakeStreamResponse(b"{broken", headers={'Content-Type': 'application/json'})
    assert await make_loader(FakeSession(response)).load() is None


@pytest.mark.asyncio
async def test_connection_error_is_a_miss():
    loader = make_loader(FakeSession(error=requests.exceptions.ConnectionError("refused")))
    assert await loader.load() is None


@pytest.mark.asyncio
async def test_no_url_skips_tier():
    session = FakeSession()
    loader = SnapshotLoaderService(SnapshotSettings(url=None), session=session)

    assert await loader.load() is None
    assert session.requests == []


@pytest.mark.asyncio
async def test_written_snapshot_loads_back(tmp_path):
    listings = [make_listing("1", prices=[(300000, "2024-01-01"), (250000, "2024-03-01")]), make_listing("2")]
    path = tmp_path / "public" / "propertyCache.json"

    SnapshotLoaderService.write_snapshot(CacheEnvelope.build(listings, timestamp=1718000000.0), path)
    document = json.loads(path.read_text(encoding='utf-8'))

    assert document['hasScores'] is True
    assert document['totalCount'] == 2

    envelope = await make_loader(FakeSession(json_response(document)), chunk_size=1024).load()
    assert envelope.data == listings


def test_decode_records_skips_non_objects():
    listings = decode_records([{"id": "1", "price_1": 100000, "date_1": "2024-01-01"}, "junk", 42],
                              has_scores=False)
    assert [listing.id for listing in listings] == ["1"]
