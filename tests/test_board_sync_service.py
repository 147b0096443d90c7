"""
Unit tests for services/board_sync_service.py and services/retry_policy.py

Tests cover:
- Full pagination across cursor pages
- Partial success after consecutive page failures
- Fatal first page
- Retry backoff and retry_after hints
- Session timeout, with and without collected pages
"""
import asyncio

import pytest

from config.sync_config import BoardSettings
from services.board_client import BoardPage
from services.board_sync_service import BoardSyncService, SessionState
from services.errors import (
    FatalFetchError,
    RateLimitError,
    SessionTimeoutError,
    TransientNetworkError,
)
from services.retry_policy import RetryPolicy, exponential_backoff
from tests.conftest import FakeBoardClient, board_pages, make_raw


@pytest.fixture
def settings():
    return BoardSettings(api_token="token", board_id="123", page_size=3, max_attempts=3,
                         base_backoff_seconds=10, delay_between_pages=2, max_consecutive_failures=5)


@pytest.fixture
def raws():
    return [make_raw(str(i), prices=[(200000 + i * 1000, "2024-05-01")]) for i in range(8)]


@pytest.mark.asyncio
async def test_fetches_every_page(settings, raws, no_sleep):
    client = FakeBoardClient(board_pages(raws, 3))
    service = BoardSyncService(client, settings, sleep=no_sleep)
    progress = []

    result = await service.run_session(on_progress=progress.append)

    assert len(result.listings) == 8
    assert result.pages_fetched == 3
    assert not result.stopped_early
    assert result.final_state == SessionState.DONE
    assert client.calls == [None, "cursor-1", "cursor-2"]
    # Inter-page delay, not after the last page
    assert [call.args[0] for call in no_sleep.await_args_list] == [2, 2]
    assert progress[-1].loaded == 8
    assert progress[-1].percent == 100


@pytest.mark.asyncio
async def test_partial_pagination_keeps_collected_pages(settings, raws, no_sleep):
    pages = [BoardPage(items=raws[:3], cursor="cursor-1"), BoardPage(items=raws[3:6], cursor="cursor-2")]
    client = FakeBoardClient(pages, default=TransientNetworkError("HTTP 502"))
    service = BoardSyncService(client, settings, sleep=no_sleep)

    result = await service.run_session()

    assert result.pages_fetched == 2
    assert len(result.listings) == 6
    assert result.stopped_early
    assert result.is_partial
    assert result.pages_failed == 5
    assert result.final_state == SessionState.DONE
    # 2 successful calls plus 3 attempts for each of the 5 failed pages, all on the same cursor
    assert len(client.calls) == 2 + 5 * 3
    assert set(client.calls[2:]) == {"cursor-2"}


@pytest.mark.asyncio
async def test_success_resets_consecutive_failures(settings, raws, no_sleep):
    failure = TransientNetworkError("HTTP 503")
    pages = board_pages(raws, 3)
    # Pages two and three exhaust their retries once before succeeding
    script = [pages[0]]
    for page in pages[1:]:
        script.extend([failure] * 3)
        script.append(page)
    client = FakeBoardClient(script)
    service = BoardSyncService(client, settings, sleep=no_sleep)

    result = await service.run_session()

    assert result.pages_fetched == 3
    assert result.pages_failed == 2
    assert result.consecutive_failures == 0
    assert not result.stopped_early


@pytest.mark.asyncio
async def test_first_page_failure_is_fatal(settings, no_sleep):
    client = FakeBoardClient(default=TransientNetworkError("HTTP 500"))
    service = BoardSyncService(client, settings, sleep=no_sleep)

    with pytest.raises(FatalFetchError):
        await service.run_session()
    assert service.state == SessionState.ABORTED
    assert len(client.calls) == 3


@pytest.mark.asyncio
async def test_rate_limit_uses_retry_after(settings, raws, no_sleep):
    pages = board_pages(raws[:3], 3)
    client = FakeBoardClient([RateLimitError("slow down", retry_after=7)] + pages)
    service = BoardSyncService(client, settings, sleep=no_sleep)
    progress = []

    result = await service.run_session(on_progress=progress.append)

    assert result.pages_fetched == 1
    assert no_sleep.await_args_list[0].args[0] == 7
    assert progress[0].status == "Retrying in 7s (Rate limit exceeded)"


@pytest.mark.asyncio
async def test_page_cap(raws, no_sleep):
    settings = BoardSettings(api_token="token", board_id="123", page_size=1, max_pages=2, delay_between_pages=0)
    client = FakeBoardClient(board_pages(raws, 1))
    service = BoardSyncService(client, settings, sleep=no_sleep)

    result = await service.run_session()

    assert result.pages_fetched == 2
    assert len(result.listings) == 2


@pytest.mark.asyncio
async def test_session_timeout_before_first_page(settings):
    settings.base_backoff_seconds = 5
    client = FakeBoardClient(default=TransientNetworkError("HTTP 503"))
    service = BoardSyncService(client, settings, sleep=asyncio.sleep)

    with pytest.raises(SessionTimeoutError):
        await service.run_session(timeout=0.05)
    assert service.state == SessionState.ABORTED


@pytest.mark.asyncio
async def test_session_timeout_keeps_collected_pages(settings, raws):
    settings.delay_between_pages = 5
    client = FakeBoardClient(board_pages(raws, 3))
    service = BoardSyncService(client, settings, sleep=asyncio.sleep)
    progress = []

    result = await service.run_session(on_progress=progress.append, timeout=0.05)

    assert [raw.id for raw in result.listings] == ["0", "1", "2"]
    assert result.pages_fetched == 1
    assert result.is_partial
    assert "keeping 3 listings" in result.errors[-1]
    assert progress[-1].percent == 100
    assert service.state == SessionState.ABORTED


@pytest.mark.asyncio
async def test_retry_policy_gives_up_after_max_attempts(no_sleep):
    attempts = []

    async def operation():
        attempts.append(1)
        raise TransientNetworkError("down")

    policy = RetryPolicy(max_attempts=3, backoff=exponential_backoff(10), sleep=no_sleep)

    with pytest.raises(TransientNetworkError):
        await policy.run(operation)
    assert len(attempts) == 3
    assert [call.args[0] for call in no_sleep.await_args_list] == [10, 20]


@pytest.mark.asyncio
async def test_retry_policy_does_not_retry_permanent_errors(no_sleep):
    attempts = []

    async def operation():
        attempts.append(1)
        raise FatalFetchError("bad query")

    with pytest.raises(FatalFetchError):
        await RetryPolicy(sleep=no_sleep).run(operation)
    assert len(attempts) == 1
    no_sleep.assert_not_awaited()
