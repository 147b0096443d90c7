"""
Board Sync Service for the Listing Sync Pipeline

Runs one live fetch session against the board: walks the cursor pages with a
per-page retry policy, counts consecutive page failures, and returns whatever
was collected when the upstream keeps failing (partial success).

Session states:
    IDLE -> FETCHING -> PAGE_SUCCEEDED | PAGE_FAILED -> FETCHING | DONE | ABORTED

Rules:
- A page that exhausts its retries increments the consecutive-failure counter;
  any successful page resets it
- At max_consecutive_failures the session stops with the pages collected so far
- A failure before the first page has succeeded is fatal
- An optional wall-clock timeout aborts the whole session
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from config.sync_config import BoardSettings, get_config
from .board_client import BoardClient, BoardPage
from .errors import (
    FatalFetchError,
    QuotaExhaustedError,
    RateLimitError,
    SessionTimeoutError,
    SyncError,
)
from .listing_models import RawListing
from .pipeline_state import LoadingProgress
from .retry_policy import RetryPolicy, exponential_backoff, is_retryable

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[LoadingProgress], None]


class SessionState(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PAGE_SUCCEEDED = "page_succeeded"
    PAGE_FAILED = "page_failed"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class FetchSessionResult:
    """Results from one live fetch session"""
    listings: List[RawListing] = field(default_factory=list)
    pages_fetched: int = 0
    pages_failed: int = 0
    consecutive_failures: int = 0
    stopped_early: bool = False
    final_state: SessionState = SessionState.IDLE
    duration_seconds: float = 0.0
    errors: List[str] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return self.stopped_early and self.pages_fetched > 0


def _retry_reason(error: Exception) -> str:
    if isinstance(error, QuotaExhaustedError):
        return "Complexity budget exhausted"
    if isinstance(error, RateLimitError):
        return "Rate limit exceeded"
    return "Connection issue"


def _percent(loaded: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(100, round(loaded / total * 100))


class BoardSyncService:
    """
    Service for running paginated fetch sessions against the board.

    One instance runs one session at a time; the resolver enforces that.
    """

    def __init__(
        self,
        board_client: Optional[BoardClient] = None,
        settings: Optional[BoardSettings] = None,
        sleep: Callable = asyncio.sleep
    ):
        self.settings = settings or get_config().board
        self.client = board_client or BoardClient(self.settings)
        self.sleep = sleep
        self.state = SessionState.IDLE

    def _set_state(self, state: SessionState):
        logger.debug(f"Session state: {self.state.value} -> {state.value}")
        self.state = state

    async def run_session(
        self,
        on_progress: Optional[ProgressCallback] = None,
        timeout: Optional[float] = None
    ) -> FetchSessionResult:
        """
        Fetch every page of the board.

        Args:
            on_progress: Receives a LoadingProgress after every page and retry
            timeout: Wall-clock limit in seconds; None runs untimed

        Returns:
            FetchSessionResult with at least one page of listings

        Raises:
            FatalFetchError: If no page could be fetched
            SessionTimeoutError: If the timeout expired before any page arrived;
                pages collected before a later timeout are kept as a partial result
        """
        start_time = time.time()
        result = FetchSessionResult()

        logger.info("=" * 60)
        logger.info(f"LIVE FETCH SESSION (page size {self.settings.page_size}, "
                    f"max {self.settings.max_pages} pages, "
                    f"timeout {f'{timeout:.0f}s' if timeout else 'none'})")
        logger.info("=" * 60)

        try:
            if timeout:
                await asyncio.wait_for(self._paginate(result, on_progress), timeout=timeout)
            else:
                await self._paginate(result, on_progress)
        except asyncio.TimeoutError:
            self._set_state(SessionState.ABORTED)
            result.final_state = self.state
            if result.pages_fetched == 0:
                logger.warning(f"Live fetch session timed out after {timeout}s with no pages collected")
                raise SessionTimeoutError(f"Live fetch exceeded {timeout}s", timeout_seconds=timeout)

            result.stopped_early = True
            message = (f"Live fetch exceeded {timeout}s - keeping {len(result.listings)} listings "
                       f"from {result.pages_fetched} pages")
            result.errors.append(message)
            logger.warning(message)
            if on_progress:
                on_progress(LoadingProgress.complete(len(result.listings)))
            return result
        except FatalFetchError:
            self._set_state(SessionState.ABORTED)
            result.final_state = self.state
            raise
        finally:
            result.duration_seconds = time.time() - start_time

        self._set_state(SessionState.DONE)
        result.final_state = self.state

        logger.info(f"Live fetch complete in {result.duration_seconds:.1f}s: "
                    f"{len(result.listings)} listings from {result.pages_fetched} pages "
                    f"({result.pages_failed} failed pages{', stopped early' if result.stopped_early else ''})")
        return result

    async def _fetch_page(self, cursor: Optional[str], policy: RetryPolicy, page_number: int) -> BoardPage:
        async def attempt():
            return await asyncio.to_thread(self.client.fetch_page, cursor)

        return await policy.run(attempt, description=f"Page {page_number}")

    async def _paginate(self, result: FetchSessionResult, on_progress: Optional[ProgressCallback]):
        page_size = self.settings.page_size
        estimated_total = self.settings.initial_estimate
        cursor: Optional[str] = None

        def report(progress: LoadingProgress):
            if on_progress:
                on_progress(progress)

        def on_retry(attempt: int, error: Exception, delay: float):
            loaded = len(result.listings)
            report(LoadingProgress(
                loaded=loaded,
                total=estimated_total,
                percent=min(99, _percent(loaded, estimated_total)),
                status=f"Retrying in {delay:.0f}s ({_retry_reason(error)})"
            ))

        policy = RetryPolicy(
            max_attempts=self.settings.max_attempts,
            classify=is_retryable,
            backoff=exponential_backoff(self.settings.base_backoff_seconds),
            sleep=self.sleep,
            on_retry=on_retry,
        )

        while True:
            page_number = result.pages_fetched + 1
            self._set_state(SessionState.FETCHING)

            try:
                page = await self._fetch_page(cursor, policy, page_number)
            except SyncError as e:
                self._set_state(SessionState.PAGE_FAILED)
                result.pages_failed += 1
                result.consecutive_failures += 1
                error_msg = f"Page {page_number} failed: {e}"
                logger.error(error_msg)
                result.errors.append(error_msg)

                if result.pages_fetched == 0:
                    raise FatalFetchError(f"Failed to fetch any listings: {e}", pages_fetched=0) from e

                if result.consecutive_failures >= self.settings.max_consecutive_failures:
                    result.stopped_early = True
                    logger.warning(f"Stopping after {result.consecutive_failures} consecutive page failures; "
                                   f"keeping {len(result.listings)} listings")
                    report(LoadingProgress.complete(
                        len(result.listings),
                        status=f"Loaded {len(result.listings)} properties (API rate limited)"
                    ))
                    return

                # The cursor is still valid, so the same page is tried again
                continue

            self._set_state(SessionState.PAGE_SUCCEEDED)
            result.consecutive_failures = 0
            result.pages_fetched += 1
            result.listings.extend(page.items)
            cursor = page.cursor

            loaded = len(result.listings)
            estimated_total = loaded + page_size if cursor else loaded
            report(LoadingProgress(
                loaded=loaded,
                total=estimated_total,
                percent=_percent(loaded, estimated_total),
                status='Downloading data...'
            ))

            if result.pages_fetched % 10 == 0:
                logger.info(f"Progress: {result.pages_fetched} pages, {loaded} listings")

            if not cursor:
                return
            if result.pages_fetched >= self.settings.max_pages:
                logger.warning(f"Reached page cap ({self.settings.max_pages}); stopping with {loaded} listings")
                return

            await self.sleep(self.settings.delay_between_pages)
