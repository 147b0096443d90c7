"""
Listing Normalizer and Deal Scorer

Turns a RawListing into a CanonicalListing: chronological price history,
days on market, drop metrics, normalized ward, parsed coordinates and a
0-100 deal score. Everything here is pure; the only side effect is logging
when a record has to be sanitized.

Score weights:
- Price drop %:    up to 50 points (5 points per percent dropped)
- Days on market:  up to 30 points (linear up to 180 days)
- Drop frequency:  up to 20 points (linear up to 4 drops)
A listing whose price went up overall is capped at 5 points.
"""

import logging
import math
import re
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .errors import ValidationError
from .listing_models import CanonicalListing, DealScores, PricePoint, RawListing

logger = logging.getLogger(__name__)

MAX_PRICE_DROP_SCORE = 50
MAX_DOM_SCORE = 30
MAX_DROP_FREQUENCY_SCORE = 20
DOM_SATURATION_DAYS = 180
DROP_FREQUENCY_SATURATION = 4
PRICE_INCREASE_CAP = 5

_WARD_NUMBER = re.compile(r'(\d+)')


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values, like the dashboard does"""
    return int(math.floor(value + 0.5))


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO date or datetime string into an aware UTC datetime"""
    if not value:
        return None
    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        try:
            parsed = datetime.strptime(text[:10], '%Y-%m-%d')
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_ward(value: Any) -> Optional[str]:
    """
    Normalize a ward value to the canonical "Ward <N>" form.

    Accepts "WARD 3", "ward3", " Ward 3 ", "3" and so on. Values without a
    number are returned stripped but otherwise unchanged.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    match = _WARD_NUMBER.search(text)
    if not match:
        return text
    return f"Ward {int(match.group(1))}"


def _to_number(value: Any) -> Optional[float]:
    """Coerce board values ("3", ["3"], 3, "") into a float"""
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None or value == '':
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def _parse_coordinates(raw: RawListing) -> Tuple[Optional[float], Optional[float]]:
    if not raw.lat or not raw.lng:
        return None, None
    try:
        lat = float(raw.lat)
        lng = float(raw.lng)
        if not (math.isfinite(lat) and math.isfinite(lng)):
            raise ValueError("non-finite coordinate")
    except (TypeError, ValueError) as e:
        raise ValidationError(
            f"Invalid coordinates lat={raw.lat!r} lng={raw.lng!r}: {e}",
            field='address',
            record_id=raw.id
        )
    return lat, lng


def build_price_history(raw: RawListing) -> List[PricePoint]:
    """Collect valid price columns and order them chronologically"""
    entries = []
    for event in raw.price_events:
        price = _to_number(event.price)
        if price is None or price <= 0 or not event.date:
            continue
        when = parse_date(event.date)
        if when is None:
            logger.warning(f"Listing {raw.id}: skipping price {price} with unparseable date {event.date!r}")
            continue
        entries.append((when, PricePoint(price=price, date=event.date)))

    # sorted() is stable, so same-day entries keep column order
    entries.sort(key=lambda item: item[0])
    return [point for _, point in entries]


def count_price_drops(history: List[PricePoint]) -> int:
    """Number of consecutive steps where the price strictly decreased"""
    return sum(
        1 for i in range(1, len(history))
        if history[i].price < history[i - 1].price
    )


def sum_price_drops(history: List[PricePoint], initial_price: float) -> float:
    """
    Sum of the negative deltas, each measured against the entry that precedes
    the drop's first occurrence in the full history.

    Kept separate from count_price_drops: the two passes can disagree when the
    same (price, date) pair appears twice.
    """
    drops = [
        history[i] for i in range(1, len(history))
        if history[i].price < history[i - 1].price
    ]
    total = 0.0
    previous_price = initial_price
    for drop in drops:
        index = next(
            i for i, point in enumerate(history)
            if point.date == drop.date and point.price == drop.price
        )
        if index > 0:
            previous_price = history[index - 1].price
        total += drop.price - previous_price
    return total


def days_between(start: Optional[str], end: Optional[str], now: datetime) -> int:
    listed = parse_date(start)
    if listed is None:
        return 0
    finished = parse_date(end) or now
    return int((finished - listed).total_seconds() // 86400)


def normalize_listing(raw: RawListing, now: Optional[datetime] = None) -> CanonicalListing:
    """
    Derive the canonical record for one raw listing (without scores).

    Args:
        raw: Listing as returned by the board or a snapshot
        now: Reference instant for days-on-market; defaults to the current UTC time

    Returns:
        CanonicalListing with scores set to None
    """
    now = now or datetime.now(timezone.utc)

    history = build_price_history(raw)
    fallback_price = 0.0
    if raw.price_events:
        fallback_price = _to_number(raw.price_events[0].price) or 0.0

    initial_price = history[0].price if history else fallback_price
    current_price = history[-1].price if history else fallback_price

    drop_frequency_count = count_price_drops(history)
    total_drop_amount = sum_price_drops(history, initial_price) if drop_frequency_count else 0.0

    drop_percent = 0.0
    if initial_price > 0 and current_price < initial_price:
        calculated = (current_price - initial_price) / initial_price * 100
        if math.isfinite(calculated):
            drop_percent = calculated

    try:
        lat, lng = _parse_coordinates(raw)
    except ValidationError as e:
        logger.warning(f"Listing {raw.id} ({raw.name}): {e}")
        lat, lng = None, None

    return CanonicalListing(
        id=raw.id,
        name=raw.name,
        address=raw.address,
        city=raw.city or 'Unknown',
        lat=lat,
        lng=lng,
        listing_status=raw.listing_status,
        property_type=raw.property_type,
        building_type=raw.building_type,
        bedrooms=_to_number(raw.bedrooms),
        bathrooms=_to_number(raw.bathrooms),
        listed_at=raw.listing_date,
        date_removed=raw.date_removed,
        relisted_date=raw.relisted_date,
        ward=normalize_ward(raw.ward),
        price_history=tuple(history),
        current_price=current_price,
        initial_price=initial_price,
        days_on_market=days_between(raw.listing_date, raw.date_removed, now),
        drop_percent=drop_percent,
        drop_frequency_count=drop_frequency_count,
        total_drop_amount=total_drop_amount,
        is_removed=raw.listing_status == 'Removed',
        outreach=dict(raw.outreach),
        phone=raw.phone,
        realtors=raw.realtors,
        updated_at=raw.updated_at,
        scores=None,
    )


def compute_scores(listing: CanonicalListing) -> DealScores:
    """Compute the deal score components for a canonical listing"""
    price_drop = 0.0
    if listing.drop_percent < 0:
        price_drop = min(MAX_PRICE_DROP_SCORE, abs(listing.drop_percent) * 5)

    dom = max(0.0, min(MAX_DOM_SCORE, listing.days_on_market / DOM_SATURATION_DAYS * MAX_DOM_SCORE))
    drop_frequency = min(
        MAX_DROP_FREQUENCY_SCORE,
        listing.drop_frequency_count / DROP_FREQUENCY_SATURATION * MAX_DROP_FREQUENCY_SCORE
    )

    terms = (price_drop, dom, drop_frequency)
    if not all(math.isfinite(term) for term in terms):
        logger.warning(f"Listing {listing.id}: non-finite score term {terms}, scoring 0")
        return DealScores(price_drop=0, dom=0, drop_frequency=0, global_score=0)

    total = price_drop + dom + drop_frequency
    if listing.current_price > listing.initial_price:
        total = min(PRICE_INCREASE_CAP, total)

    return DealScores(
        price_drop=round_half_up(price_drop),
        dom=round_half_up(dom),
        drop_frequency=round_half_up(drop_frequency),
        global_score=round_half_up(total),
    )


def score_listing(listing: CanonicalListing) -> CanonicalListing:
    return replace(listing, scores=compute_scores(listing))


def normalize_and_score(raw: RawListing, now: Optional[datetime] = None) -> CanonicalListing:
    return score_listing(normalize_listing(raw, now))


def score_all(listings: Iterable[CanonicalListing]) -> List[CanonicalListing]:
    """Score every listing that does not carry scores yet"""
    return [listing if listing.scores is not None else score_listing(listing) for listing in listings]


def normalize_all(
    records: Iterable[Union[RawListing, Dict[str, Any]]],
    now: Optional[datetime] = None
) -> List[CanonicalListing]:
    """
    Normalize and score a batch, skipping records that cannot be read.

    Args:
        records: RawListing objects or their flat dict form
        now: Shared reference instant so the whole batch agrees on "today"

    Returns:
        List of scored canonical listings, in input order
    """
    now = now or datetime.now(timezone.utc)
    results = []
    skipped = 0

    for record in records:
        try:
            raw = record if isinstance(record, RawListing) else RawListing.from_dict(record)
            results.append(normalize_and_score(raw, now))
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            skipped += 1
            logger.warning(f"Skipping malformed listing record: {e}")

    if skipped:
        logger.info(f"Normalized {len(results)} listings, skipped {skipped} malformed records")

    return results
