"""
Filter / Projection Engine

Applies a FilterSpec to the canonical listing set and computes summary stats
over the filtered subset. project() is pure; FilterDebouncer coalesces rapid
filter changes so only the latest spec is applied.

Semantics:
- AND across fields, OR within a multi-value field (types, statuses, wards)
- An unset field places no constraint
- Stats are computed over the filtered subset only; an empty subset gives zeros
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import ValidationError
from .listing_models import CanonicalListing
from .listing_normalizer import round_half_up

logger = logging.getLogger(__name__)

OUTREACH_ANY = 'any'
OUTREACH_SENT = 'sent'
OUTREACH_NOT_SENT = 'not_sent'
OUTREACH_CHOICES = (OUTREACH_ANY, OUTREACH_SENT, OUTREACH_NOT_SENT)

SENT_MARKER = 'SENT'

# camelCase keys accepted by FilterSpec.from_dict (dashboard payloads)
_CAMEL_KEYS = {
    'propertyTypes': 'property_types',
    'priceMin': 'price_min',
    'priceMax': 'price_max',
    'domMin': 'dom_min',
    'domMax': 'dom_max',
    'bedsMin': 'beds_min',
    'bedsMax': 'beds_max',
    'bathsMin': 'baths_min',
    'bathsMax': 'baths_max',
    'dropPercentMin': 'drop_percent_min',
    'dropPercentMax': 'drop_percent_max',
    'dropDollarMin': 'drop_dollar_min',
    'dropDollarMax': 'drop_dollar_max',
    'dropFrequencyMin': 'drop_frequency_min',
    'dropFrequencyMax': 'drop_frequency_max',
    'outreachStatus': 'outreach_status',
}

_MULTI_VALUE_FIELDS = ('property_types', 'statuses', 'wards')


@dataclass(frozen=True)
class CurrentUser:
    """The signed-in dashboard user; outreach_column names their outreach board column"""
    username: str
    outreach_column: Optional[str] = None


@dataclass(frozen=True)
class FilterSpec:
    """Immutable filter criteria. None / empty tuple means no constraint."""
    property_types: Tuple[str, ...] = ()
    statuses: Tuple[str, ...] = ()
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    dom_min: Optional[float] = None
    dom_max: Optional[float] = None
    beds_min: Optional[float] = None
    beds_max: Optional[float] = None
    baths_min: Optional[float] = None
    baths_max: Optional[float] = None
    wards: Tuple[str, ...] = ()
    drop_percent_min: Optional[float] = None
    drop_percent_max: Optional[float] = None
    drop_dollar_min: Optional[float] = None
    drop_dollar_max: Optional[float] = None
    drop_frequency_min: Optional[float] = None
    drop_frequency_max: Optional[float] = None
    outreach_status: str = OUTREACH_ANY

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'FilterSpec':
        """
        Build a FilterSpec from a loosely typed mapping.

        Empty strings and None are treated as "no constraint". Unknown keys
        are ignored with a debug log.

        Raises:
            ValidationError: If a numeric bound is not a number or the
                outreach status is not one of any / sent / not_sent
        """
        if not data:
            return cls()

        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}

        for raw_key, value in data.items():
            key = _CAMEL_KEYS.get(raw_key, raw_key)
            if key not in known:
                logger.debug(f"Ignoring unknown filter key: {raw_key}")
                continue
            if value is None or value == '':
                continue

            if key in _MULTI_VALUE_FIELDS:
                if isinstance(value, str):
                    value = [value]
                values[key] = tuple(str(v) for v in value if v not in (None, ''))
            elif key == 'outreach_status':
                status = str(value).lower()
                if status not in OUTREACH_CHOICES:
                    raise ValidationError(f"Invalid outreach status: {value!r}", field=key)
                values[key] = status
            else:
                try:
                    number = float(value)
                except (TypeError, ValueError):
                    raise ValidationError(f"Filter {raw_key} must be numeric, got {value!r}", field=key)
                if math.isnan(number):
                    raise ValidationError(f"Filter {raw_key} must be numeric, got NaN", field=key)
                values[key] = number

        return cls(**values)

    @property
    def is_empty(self) -> bool:
        return self == FilterSpec()


@dataclass(frozen=True)
class ListingStats:
    """Summary statistics over a filtered listing subset"""
    total_listings: int = 0
    active_listings: int = 0
    avg_price: int = 0
    median_price: int = 0
    avg_dom: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'totalListings': self.total_listings,
            'activeListings': self.active_listings,
            'avgPrice': self.avg_price,
            'medianPrice': self.median_price,
            'avgDOM': self.avg_dom,
        }


@dataclass(frozen=True)
class Projection:
    """Result of project(): the filtered subset and its stats"""
    filtered: Tuple[CanonicalListing, ...] = ()
    stats: ListingStats = field(default_factory=ListingStats)


def _within(value: float, low: Optional[float], high: Optional[float]) -> bool:
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


def _outreach_matches(listing: CanonicalListing, status: str, column: str) -> bool:
    value = listing.outreach_status(column)
    sent = bool(value) and value.upper() == SENT_MARKER
    if status == OUTREACH_SENT:
        return sent
    return not sent


def matches(listing: CanonicalListing, spec: FilterSpec, current_user: Optional[CurrentUser] = None) -> bool:
    """True if the listing satisfies every constraint in spec"""
    if spec.property_types and listing.property_type not in spec.property_types:
        return False
    if spec.statuses and listing.listing_status not in spec.statuses:
        return False
    if spec.wards and (not listing.ward or listing.ward not in spec.wards):
        return False

    if not _within(listing.current_price or 0, spec.price_min, spec.price_max):
        return False
    if not _within(listing.days_on_market or 0, spec.dom_min, spec.dom_max):
        return False
    if not _within(listing.bedrooms or 0, spec.beds_min, spec.beds_max):
        return False
    if not _within(listing.bathrooms or 0, spec.baths_min, spec.baths_max):
        return False
    # Drop % and drop $ are signed (<= 0), bounds compare against the signed value
    if not _within(listing.drop_percent or 0, spec.drop_percent_min, spec.drop_percent_max):
        return False
    if not _within(listing.total_drop_amount or 0, spec.drop_dollar_min, spec.drop_dollar_max):
        return False
    if not _within(listing.drop_frequency_count or 0, spec.drop_frequency_min, spec.drop_frequency_max):
        return False

    if spec.outreach_status != OUTREACH_ANY and current_user and current_user.outreach_column:
        if not _outreach_matches(listing, spec.outreach_status, current_user.outreach_column):
            return False

    return True


def compute_stats(listings: Sequence[CanonicalListing]) -> ListingStats:
    """
    Stats over a listing subset.

    Prices and days on market only count when positive. The median is the
    upper median of the sorted prices.
    """
    if not listings:
        return ListingStats()

    active = sum(1 for listing in listings if listing.listing_status == 'Active')
    prices = sorted(listing.current_price for listing in listings if listing.current_price > 0)
    doms = [listing.days_on_market for listing in listings if listing.days_on_market > 0]

    avg_price = sum(prices) / len(prices) if prices else 0
    median_price = prices[len(prices) // 2] if prices else 0
    avg_dom = sum(doms) / len(doms) if doms else 0

    return ListingStats(
        total_listings=len(listings),
        active_listings=active,
        avg_price=round_half_up(avg_price),
        median_price=round_half_up(median_price),
        avg_dom=round_half_up(avg_dom),
    )


def project(
    listings: Iterable[CanonicalListing],
    spec: Optional[FilterSpec] = None,
    current_user: Optional[CurrentUser] = None
) -> Projection:
    """
    Apply a filter spec to the canonical set.

    Args:
        listings: Canonical listings (not modified)
        spec: Filter criteria; None applies no filtering
        current_user: Needed only for the outreach status filter

    Returns:
        Projection with the filtered tuple and its stats
    """
    source = tuple(listings)
    spec = spec or FilterSpec()

    filtered = source if spec.is_empty else tuple(
        listing for listing in source if matches(listing, spec, current_user)
    )

    logger.debug(f"Projection: {len(source)} -> {len(filtered)} listings")
    return Projection(filtered=filtered, stats=compute_stats(filtered))


class FilterDebouncer:
    """
    Delay filter application until the spec has been stable for `delay` seconds.

    A newer submit() cancels the pending application instead of queueing
    behind it.
    """

    def __init__(
        self,
        apply: Callable[[FilterSpec], None],
        delay: float = 0.3,
        on_pending_change: Optional[Callable[[bool], None]] = None
    ):
        self.apply = apply
        self.delay = delay
        self.on_pending_change = on_pending_change
        self._task: Optional[asyncio.Task] = None

    @property
    def is_pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def _set_pending(self, pending: bool):
        if self.on_pending_change:
            self.on_pending_change(pending)

    def submit(self, spec: FilterSpec) -> asyncio.Task:
        """Schedule spec for application, superseding any pending spec"""
        self.cancel()
        self._set_pending(True)
        self._task = asyncio.get_running_loop().create_task(self._apply_later(spec))
        return self._task

    def cancel(self):
        if self.is_pending:
            self._task.cancel()
            self._set_pending(False)
        self._task = None

    async def _apply_later(self, spec: FilterSpec):
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            logger.debug("Filter application superseded by a newer spec")
            raise
        try:
            self.apply(spec)
        finally:
            self._set_pending(False)

    async def wait(self):
        """Wait for the pending application, if any"""
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
