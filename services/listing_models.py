"""
Listing data model shared by every tier of the pipeline.

RawListing is the upstream board shape; CanonicalListing is the normalized,
scored record every cache tier stores; CacheEnvelope wraps a full canonical
set together with the metadata needed to validate it on read.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from config.sync_config import SCHEMA_VERSION

MAX_PRICE_COLUMNS = 5

LISTING_STATUSES = ('Active', 'RELISTED', 'Removed')


@dataclass(frozen=True)
class PriceEvent:
    """One (price, date) column pair as it arrives from the board"""
    price: Optional[float] = None
    date: Optional[str] = None


@dataclass(frozen=True)
class PricePoint:
    """A validated entry of a listing's price history"""
    price: float
    date: str


@dataclass
class RawListing:
    """Represents a single listing as the upstream board returns it"""
    id: str
    name: str = ""
    address: Optional[str] = None
    city: Optional[str] = None
    lat: Optional[str] = None
    lng: Optional[str] = None
    listing_status: Optional[str] = None
    property_type: Optional[str] = None
    building_type: Optional[str] = None
    bedrooms: Any = None
    bathrooms: Any = None
    listing_date: Optional[str] = None
    price_events: List[PriceEvent] = field(default_factory=list)
    date_removed: Optional[str] = None
    relisted_date: Optional[str] = None
    ward: Optional[str] = None
    outreach: Dict[str, Optional[str]] = field(default_factory=dict)
    phone: Optional[str] = None
    realtors: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RawListing':
        """Build from the flat dict layout (price_1/date_1 ... price_5/date_5)"""
        events = []
        for i in range(1, MAX_PRICE_COLUMNS + 1):
            price = data.get(f'price_{i}')
            date = data.get(f'date_{i}')
            if price is None and date is None:
                continue
            events.append(PriceEvent(price=price, date=date))

        return cls(
            id=str(data['id']),
            name=data.get('name') or "",
            address=data.get('address'),
            city=data.get('city'),
            lat=data.get('lat'),
            lng=data.get('lng'),
            listing_status=data.get('listing_status'),
            property_type=data.get('property_type'),
            building_type=data.get('building_type'),
            bedrooms=data.get('bedrooms'),
            bathrooms=data.get('bathrooms'),
            listing_date=data.get('listing_date', data.get('date_1')),
            price_events=events,
            date_removed=data.get('date_removed'),
            relisted_date=data.get('relisted_date'),
            ward=data.get('ward'),
            outreach=dict(data.get('outreach') or {}),
            phone=data.get('phone'),
            realtors=data.get('realtors'),
            updated_at=data.get('updated_at'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'name': self.name,
            'address': self.address,
            'city': self.city,
            'lat': self.lat,
            'lng': self.lng,
            'listing_status': self.listing_status,
            'property_type': self.property_type,
            'building_type': self.building_type,
            'bedrooms': self.bedrooms,
            'bathrooms': self.bathrooms,
            'listing_date': self.listing_date,
            'date_removed': self.date_removed,
            'relisted_date': self.relisted_date,
            'ward': self.ward,
            'outreach': dict(self.outreach),
            'phone': self.phone,
            'realtors': self.realtors,
            'updated_at': self.updated_at,
        }
        for i, event in enumerate(self.price_events[:MAX_PRICE_COLUMNS], start=1):
            data[f'price_{i}'] = event.price
            data[f'date_{i}'] = event.date
        return data


@dataclass(frozen=True)
class DealScores:
    """Deal score components; weights 50/30/20 sum to 100"""
    price_drop: int
    dom: int
    drop_frequency: int
    global_score: int

    def to_dict(self) -> Dict[str, int]:
        return {
            'priceDrop': self.price_drop,
            'dom': self.dom,
            'dropFrequency': self.drop_frequency,
            'global': self.global_score,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DealScores':
        return cls(
            price_drop=int(data['priceDrop']),
            dom=int(data['dom']),
            drop_frequency=int(data['dropFrequency']),
            global_score=int(data['global']),
        )


@dataclass(frozen=True)
class CanonicalListing:
    """A normalized listing with derived price metrics and (optionally) scores"""
    id: str
    name: str
    address: Optional[str]
    city: str
    lat: Optional[float]
    lng: Optional[float]
    listing_status: Optional[str]
    property_type: Optional[str]
    building_type: Optional[str]
    bedrooms: Optional[float]
    bathrooms: Optional[float]
    listed_at: Optional[str]
    date_removed: Optional[str]
    relisted_date: Optional[str]
    ward: Optional[str]
    price_history: Tuple[PricePoint, ...]
    current_price: float
    initial_price: float
    days_on_market: int
    drop_percent: float
    drop_frequency_count: int
    total_drop_amount: float
    is_removed: bool
    outreach: Dict[str, Optional[str]] = field(default_factory=dict, hash=False)
    phone: Optional[str] = None
    realtors: Optional[str] = None
    updated_at: Optional[str] = None
    scores: Optional[DealScores] = None

    @property
    def price(self) -> float:
        return self.current_price

    def outreach_status(self, column: str) -> Optional[str]:
        return self.outreach.get(column)

    def to_raw(self) -> RawListing:
        """Rebuild the upstream shape from the re-derivable fields"""
        if self.price_history:
            events = [PriceEvent(price=p.price, date=p.date) for p in self.price_history]
        elif self.current_price > 0:
            events = [PriceEvent(price=self.current_price, date=None)]
        else:
            events = []

        return RawListing(
            id=self.id,
            name=self.name,
            address=self.address,
            city=self.city,
            lat=None if self.lat is None else repr(self.lat),
            lng=None if self.lng is None else repr(self.lng),
            listing_status=self.listing_status,
            property_type=self.property_type,
            building_type=self.building_type,
            bedrooms=self.bedrooms,
            bathrooms=self.bathrooms,
            listing_date=self.listed_at,
            price_events=events,
            date_removed=self.date_removed,
            relisted_date=self.relisted_date,
            ward=self.ward,
            outreach=dict(self.outreach),
            phone=self.phone,
            realtors=self.realtors,
            updated_at=self.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'address': self.address,
            'city': self.city,
            'lat': self.lat,
            'lng': self.lng,
            'listing_status': self.listing_status,
            'property_type': self.property_type,
            'building_type': self.building_type,
            'bedrooms': self.bedrooms,
            'bathrooms': self.bathrooms,
            'listed_at': self.listed_at,
            'date_removed': self.date_removed,
            'relisted_date': self.relisted_date,
            'ward': self.ward,
            'price_history': [{'price': p.price, 'date': p.date} for p in self.price_history],
            'current_price': self.current_price,
            'initial_price': self.initial_price,
            'days_on_market': self.days_on_market,
            'drop_percent': self.drop_percent,
            'drop_frequency_count': self.drop_frequency_count,
            'total_drop_amount': self.total_drop_amount,
            'is_removed': self.is_removed,
            'outreach': dict(self.outreach),
            'phone': self.phone,
            'realtors': self.realtors,
            'updated_at': self.updated_at,
            'scores': self.scores.to_dict() if self.scores else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CanonicalListing':
        scores = data.get('scores')
        return cls(
            id=str(data['id']),
            name=data.get('name') or "",
            address=data.get('address'),
            city=data.get('city') or 'Unknown',
            lat=_optional_float(data.get('lat')),
            lng=_optional_float(data.get('lng')),
            listing_status=data.get('listing_status'),
            property_type=data.get('property_type'),
            building_type=data.get('building_type'),
            bedrooms=_optional_float(data.get('bedrooms')),
            bathrooms=_optional_float(data.get('bathrooms')),
            listed_at=data.get('listed_at'),
            date_removed=data.get('date_removed'),
            relisted_date=data.get('relisted_date'),
            ward=data.get('ward'),
            price_history=tuple(
                PricePoint(price=float(p['price']), date=p['date'])
                for p in data.get('price_history') or []
            ),
            current_price=float(data.get('current_price') or 0),
            initial_price=float(data.get('initial_price') or 0),
            days_on_market=int(data.get('days_on_market') or 0),
            drop_percent=float(data.get('drop_percent') or 0),
            drop_frequency_count=int(data.get('drop_frequency_count') or 0),
            total_drop_amount=float(data.get('total_drop_amount') or 0),
            is_removed=bool(data.get('is_removed', False)),
            outreach=dict(data.get('outreach') or {}),
            phone=data.get('phone'),
            realtors=data.get('realtors'),
            updated_at=data.get('updated_at'),
            scores=DealScores.from_dict(scores) if scores else None,
        )


@dataclass
class CacheEnvelope:
    """A full canonical listing set plus the metadata every cache tier stores"""
    data: List[CanonicalListing]
    timestamp: float = field(default_factory=time.time)
    total_count: int = 0
    schema_version: str = SCHEMA_VERSION
    has_scores: bool = True

    def __post_init__(self):
        if not self.total_count:
            self.total_count = len(self.data)

    @classmethod
    def build(cls, listings: List[CanonicalListing], timestamp: Optional[float] = None) -> 'CacheEnvelope':
        """Wrap a freshly scored set for the running schema version"""
        return cls(
            data=list(listings),
            timestamp=timestamp if timestamp is not None else time.time(),
            total_count=len(listings),
            schema_version=SCHEMA_VERSION,
            has_scores=all(listing.scores is not None for listing in listings),
        )

    @property
    def is_empty(self) -> bool:
        return not self.data

    def to_dict(self) -> Dict[str, Any]:
        return {
            'data': [listing.to_dict() for listing in self.data],
            'timestamp': self.timestamp,
            'total_count': self.total_count,
            'schema_version': self.schema_version,
            'has_scores': self.has_scores,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'CacheEnvelope':
        return cls(
            data=[CanonicalListing.from_dict(item) for item in payload.get('data') or []],
            timestamp=float(payload.get('timestamp') or time.time()),
            total_count=int(payload.get('total_count') or 0),
            schema_version=str(payload.get('schema_version')),
            has_scores=bool(payload.get('has_scores', False)),
        )


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)
