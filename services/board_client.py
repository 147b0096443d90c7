"""
Board API Client

Thin blocking client for the upstream listing board (a Monday.com style
GraphQL API). Fetches one cursor page at a time and maps each item's column
values onto a RawListing. Failures are raised as typed SyncErrors so the
caller's retry policy can tell rate limits from fatal errors.

Error mapping:
- FIELD_MINUTE_RATE_LIMIT_EXCEEDED      -> RateLimitError
- COMPLEXITY_BUDGET_EXHAUSTED           -> QuotaExhaustedError
- HTTP 429, 5xx, timeouts, empty bodies -> TransientNetworkError
- HTTP 401 / 403                        -> AuthError
- anything else                         -> FatalFetchError
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from config.sync_config import BoardSettings, get_config
from .errors import (
    AuthError,
    FatalFetchError,
    QuotaExhaustedError,
    RateLimitError,
    SyncError,
    TransientNetworkError,
)
from .listing_models import MAX_PRICE_COLUMNS, PriceEvent, RawListing

logger = logging.getLogger(__name__)

RATE_LIMIT_CODE = 'FIELD_MINUTE_RATE_LIMIT_EXCEEDED'
COMPLEXITY_CODE = 'COMPLEXITY_BUDGET_EXHAUSTED'

ITEM_FIELDS = """
    id
    name
    updated_at
    column_values(ids: $columns) {
      id
      text
      value
    }
"""

FIRST_PAGE_QUERY = """
query ($boardId: [ID!], $limit: Int!, $columns: [String!]) {
  boards(ids: $boardId) {
    items_page(limit: $limit) {
      cursor
      items {%s}
    }
  }
}
""" % ITEM_FIELDS

NEXT_PAGE_QUERY = """
query ($cursor: String!, $limit: Int!, $columns: [String!]) {
  next_items_page(cursor: $cursor, limit: $limit) {
    cursor
    items {%s}
  }
}
""" % ITEM_FIELDS

UPDATES_QUERY = """
query ($boardId: [ID!], $limit: Int!) {
  boards(ids: $boardId) {
    items_page(limit: $limit) {
      items { id updated_at }
    }
  }
}
"""


@dataclass
class BoardPage:
    """One page of board items plus the cursor for the next page"""
    items: List[RawListing] = field(default_factory=list)
    cursor: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return bool(self.cursor)


def _graphql_error(errors: List[Dict[str, Any]]) -> SyncError:
    first = errors[0] if errors else {}
    extensions = first.get('extensions') or {}
    code = extensions.get('code') or first.get('error_code')
    message = first.get('message') or str(first)
    retry_after = extensions.get('retry_in_seconds')

    if code == RATE_LIMIT_CODE:
        return RateLimitError(f"Board rate limit exceeded: {message}", retry_after=retry_after, tier="board")
    if code == COMPLEXITY_CODE:
        return QuotaExhaustedError(f"Board complexity budget exhausted: {message}",
                                   retry_after=retry_after, tier="board")
    if code in ('UserUnauthorizedException', 'Unauthorized'):
        return AuthError(f"Board rejected credentials: {message}", tier="board")
    return FatalFetchError(f"Board API error ({code}): {message}")


def classify_response(status_code: int, body: Optional[Dict[str, Any]], retry_after: Optional[str] = None) -> Optional[SyncError]:
    """
    Map an HTTP response onto a SyncError, or None if it is usable.

    Args:
        status_code: HTTP status
        body: Decoded JSON body, None when it was empty or not JSON
        retry_after: Retry-After header value, if any
    """
    if status_code in (401, 403):
        return AuthError(f"Board authentication failed (HTTP {status_code})", tier="board")

    if body and body.get('errors'):
        return _graphql_error(body['errors'])

    if status_code == 429:
        delay = float(retry_after) if retry_after and retry_after.isdigit() else None
        return RateLimitError("Board returned HTTP 429", retry_after=delay, tier="board")
    if status_code >= 500:
        return TransientNetworkError(f"Board returned HTTP {status_code}", status_code=status_code, tier="board")
    if status_code >= 400:
        return FatalFetchError(f"Board returned HTTP {status_code}")

    if not body or not body.get('data'):
        return TransientNetworkError("Board returned an empty response", status_code=status_code, tier="board")

    return None


def _parse_location(value: Optional[str]) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        location = json.loads(value)
    except (TypeError, ValueError):
        return {}
    return location if isinstance(location, dict) else {}


class BoardClient:
    """
    Client for the listing board's GraphQL endpoint.

    All methods block; callers run them through asyncio.to_thread.
    """

    def __init__(self, settings: Optional[BoardSettings] = None, session: Optional[requests.Session] = None):
        self.settings = settings or get_config().board
        self.session = session or requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'API-Version': '2024-01',
        })
        if self.settings.api_token:
            self.session.headers['Authorization'] = self.settings.api_token

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.api_token and self.settings.board_id)

    @property
    def column_ids(self) -> List[str]:
        return list(self.settings.columns.values()) + list(self.settings.outreach_columns.values())

    def _post(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.session.post(
                self.settings.api_url,
                json={'query': query, 'variables': variables},
                timeout=self.settings.request_timeout
            )
        except requests.exceptions.Timeout as e:
            raise TransientNetworkError(f"Board request timed out: {e}", tier="board") from e
        except requests.exceptions.RequestException as e:
            raise TransientNetworkError(f"Board request failed: {e}", tier="board") from e

        try:
            body = response.json() if response.content else None
        except ValueError:
            body = None

        error = classify_response(response.status_code, body, response.headers.get('Retry-After'))
        if error:
            raise error
        return body['data']

    def fetch_page(self, cursor: Optional[str] = None, limit: Optional[int] = None) -> BoardPage:
        """
        Fetch one page of items.

        Args:
            cursor: Cursor returned by the previous page, None for the first page
            limit: Page size (defaults to settings.page_size)

        Raises:
            SyncError subclass describing the failure
        """
        limit = limit or self.settings.page_size
        variables = {'limit': limit, 'columns': self.column_ids}

        if cursor:
            variables['cursor'] = cursor
            data = self._post(NEXT_PAGE_QUERY, variables)
            page = data.get('next_items_page')
        else:
            variables['boardId'] = [str(self.settings.board_id)]
            data = self._post(FIRST_PAGE_QUERY, variables)
            boards = data.get('boards') or []
            page = boards[0].get('items_page') if boards else None

        if not page or page.get('items') is None:
            raise TransientNetworkError("Board returned a page without items", tier="board")

        items = []
        for item in page['items']:
            try:
                items.append(self.map_item(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed board item {item.get('id') if isinstance(item, dict) else item!r}: {e}")
        return BoardPage(items=items, cursor=page.get('cursor'))

    def fetch_latest_update(self, limit: int = 500) -> Optional[float]:
        """
        Return the newest item updated_at on the first page as epoch seconds.

        Lightweight probe used to decide whether a silent refresh is needed.
        """
        data = self._post(UPDATES_QUERY, {'boardId': [str(self.settings.board_id)], 'limit': limit})
        boards = data.get('boards') or []
        items = (boards[0].get('items_page') or {}).get('items', []) if boards else []

        latest = None
        for item in items:
            stamp = item.get('updated_at')
            if not stamp:
                continue
            try:
                when = datetime.fromisoformat(stamp.replace('Z', '+00:00')).timestamp()
            except ValueError:
                continue
            if latest is None or when > latest:
                latest = when
        return latest

    def map_item(self, item: Dict[str, Any]) -> RawListing:
        """Map a GraphQL item onto a RawListing using the configured column ids"""
        by_id = {cv.get('id'): cv for cv in item.get('column_values') or []}
        columns = self.settings.columns

        def text(name: str) -> Optional[str]:
            column = by_id.get(columns.get(name))
            if not column:
                return None
            return column.get('text') or None

        address_column = by_id.get(columns.get('address')) or {}
        location = _parse_location(address_column.get('value'))
        city = location.get('city')
        if isinstance(city, dict):
            city = city.get('long_name')

        events = []
        for i in range(1, MAX_PRICE_COLUMNS + 1):
            price = text(f'price_{i}')
            date = text(f'date_{i}')
            if price is None and date is None:
                continue
            events.append(PriceEvent(price=price, date=date))

        outreach = {}
        for label, column_id in self.settings.outreach_columns.items():
            column = by_id.get(column_id)
            outreach[label] = (column.get('text') or None) if column else None

        return RawListing(
            id=str(item['id']),
            name=item.get('name') or "",
            address=location.get('address') or address_column.get('text') or None,
            city=city,
            lat=location.get('lat'),
            lng=location.get('lng'),
            listing_status=text('listing_status'),
            property_type=text('property_type'),
            building_type=text('building_type'),
            bedrooms=text('bedrooms'),
            bathrooms=text('bathrooms'),
            listing_date=text('date_1'),
            price_events=events,
            date_removed=text('date_removed'),
            relisted_date=text('relisted_date'),
            ward=text('ward'),
            outreach=outreach,
            phone=text('phone'),
            realtors=text('realtors'),
            updated_at=item.get('updated_at'),
        )
