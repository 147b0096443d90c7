"""
Bootstrap listing dataset.

A small, hard-coded set of board records shown synchronously at startup so
the dashboard never renders empty while the cache tiers resolve.
"""

from datetime import datetime
from typing import List, Optional

from .listing_models import CanonicalListing
from .listing_normalizer import normalize_all

BOOTSTRAP_RECORDS = [
    {
        "id": "7811542726",
        "name": "3264 PETER Street, Windsor, Ontario",
        "address": "3264 PETER Street, Windsor, Ontario N8Y1L6",
        "city": "Windsor",
        "lat": "42.30819702",
        "lng": "-83.03651428",
        "listing_status": "Active",
        "property_type": "House",
        "building_type": "House",
        "bedrooms": "3",
        "bathrooms": "2",
        "price_1": 299900,
        "date_1": "2024-11-15T00:00:00.000Z",
        "ward": "Ward 3",
    },
    {
        "id": "7811542727",
        "name": "1455 PELISSIER Street Unit# 1104, Windsor, Ontario",
        "address": "1455 PELISSIER Street Unit# 1104, Windsor, Ontario N9A6Z3",
        "city": "Windsor",
        "lat": "42.31456",
        "lng": "-83.03234",
        "listing_status": "Active",
        "property_type": "Apartment",
        "building_type": "Apartment",
        "bedrooms": "1",
        "bathrooms": "1",
        "price_1": 189900,
        "date_1": "2024-12-01T00:00:00.000Z",
        "ward": "Ward 2",
    },
    {
        "id": "7811542728",
        "name": "2245 HOWARD Avenue, Windsor, Ontario",
        "address": "2245 HOWARD Avenue, Windsor, Ontario N8X3M9",
        "city": "Windsor",
        "lat": "42.29123",
        "lng": "-83.01456",
        "listing_status": "Active",
        "property_type": "Single Family",
        "building_type": "House",
        "bedrooms": "4",
        "bathrooms": "3",
        "price_1": 549000,
        "date_1": "2024-10-20T00:00:00.000Z",
        "price_2": 529000,
        "date_2": "2024-11-15T00:00:00.000Z",
        "ward": "Ward 5",
    },
    {
        "id": "7811542729",
        "name": "875 ERIE Street East, Windsor, Ontario",
        "address": "875 ERIE Street East, Windsor, Ontario N9A3Y6",
        "city": "Windsor",
        "lat": "42.30561",
        "lng": "-83.02517",
        "listing_status": "Active",
        "property_type": "House",
        "building_type": "House",
        "bedrooms": "3",
        "bathrooms": "1",
        "price_1": 379900,
        "date_1": "2024-09-02T00:00:00.000Z",
        "price_2": 364900,
        "date_2": "2024-09-30T00:00:00.000Z",
        "price_3": 349900,
        "date_3": "2024-10-28T00:00:00.000Z",
        "ward": "WARD 4",
    },
    {
        "id": "7811542730",
        "name": "1120 OUELLETTE Avenue Unit# 602, Windsor, Ontario",
        "address": "1120 OUELLETTE Avenue Unit# 602, Windsor, Ontario N9A6S1",
        "city": "Windsor",
        "lat": "42.30942",
        "lng": "-83.03102",
        "listing_status": "RELISTED",
        "property_type": "Apartment",
        "building_type": "Apartment",
        "bedrooms": "2",
        "bathrooms": "2",
        "price_1": 259900,
        "date_1": "2024-08-12T00:00:00.000Z",
        "price_2": 249900,
        "date_2": "2024-09-20T00:00:00.000Z",
        "relisted_date": "2024-11-01T00:00:00.000Z",
        "ward": "ward3",
    },
    {
        "id": "7811542731",
        "name": "3390 SANDWICH Street, Windsor, Ontario",
        "address": "3390 SANDWICH Street, Windsor, Ontario N9C1B3",
        "city": "Windsor",
        "lat": "42.29374",
        "lng": "-83.07841",
        "listing_status": "Active",
        "property_type": "Multi-Family",
        "building_type": "Duplex",
        "bedrooms": "5",
        "bathrooms": "2",
        "price_1": 449900,
        "date_1": "2024-10-05T00:00:00.000Z",
        "price_2": 469900,
        "date_2": "2024-11-10T00:00:00.000Z",
        "ward": "Ward 2",
    },
    {
        "id": "7811542732",
        "name": "1784 BERNARD Road, Windsor, Ontario",
        "address": "1784 BERNARD Road, Windsor, Ontario N8Y4H5",
        "city": "Windsor",
        "lat": "42.31690",
        "lng": "-82.99114",
        "listing_status": "Active",
        "property_type": "House",
        "building_type": "House",
        "bedrooms": "2",
        "bathrooms": "1",
        "price_1": 239900,
        "date_1": "2024-07-18T00:00:00.000Z",
        "price_2": 224900,
        "date_2": "2024-08-22T00:00:00.000Z",
        "price_3": 214900,
        "date_3": "2024-09-19T00:00:00.000Z",
        "price_4": 199900,
        "date_4": "2024-10-24T00:00:00.000Z",
        "ward": "Ward 4",
    },
    {
        "id": "7811542733",
        "name": "4155 WALKER Road, Windsor, Ontario",
        "address": "4155 WALKER Road, Windsor, Ontario N8W3T6",
        "city": "Windsor",
        "lat": "42.27245",
        "lng": "-82.98310",
        "listing_status": "Active",
        "property_type": "Townhouse",
        "building_type": "Row / Townhouse",
        "bedrooms": "3",
        "bathrooms": "2.5",
        "price_1": 419900,
        "date_1": "2024-11-20T00:00:00.000Z",
        "ward": "Ward 9",
    },
    {
        "id": "7811542734",
        "name": "562 CAMPBELL Avenue, Windsor, Ontario",
        "address": "562 CAMPBELL Avenue, Windsor, Ontario N9B2H3",
        "city": "Windsor",
        "lat": "42.30044",
        "lng": "-83.05873",
        "listing_status": "Removed",
        "property_type": "House",
        "building_type": "House",
        "bedrooms": "3",
        "bathrooms": "1",
        "price_1": 289900,
        "date_1": "2024-06-10T00:00:00.000Z",
        "price_2": 274900,
        "date_2": "2024-07-15T00:00:00.000Z",
        "date_removed": "2024-09-01T00:00:00.000Z",
        "ward": "Ward 2",
    },
    {
        "id": "7811542735",
        "name": "9876 RIVERSIDE Drive East, Windsor, Ontario",
        "address": "9876 RIVERSIDE Drive East, Windsor, Ontario N8P1A5",
        "city": "Windsor",
        "lat": "42.33712",
        "lng": "-82.90355",
        "listing_status": "Active",
        "property_type": "Single Family",
        "building_type": "House",
        "bedrooms": "4",
        "bathrooms": "4",
        "price_1": 899900,
        "date_1": "2024-08-30T00:00:00.000Z",
        "price_2": 849900,
        "date_2": "2024-10-02T00:00:00.000Z",
        "ward": "Ward 7",
    },
    {
        "id": "7811542736",
        "name": "1330 TECUMSEH Road East, Windsor, Ontario",
        "address": "1330 TECUMSEH Road East, Windsor, Ontario N8W1C1",
        "city": "Windsor",
        "lat": "42.29518",
        "lng": "-83.00427",
        "listing_status": "Active",
        "property_type": "Commercial",
        "building_type": "Mixed Use",
        "bedrooms": "0",
        "bathrooms": "1",
        "price_1": 624900,
        "date_1": "2024-05-14T00:00:00.000Z",
        "price_2": 599900,
        "date_2": "2024-07-01T00:00:00.000Z",
        "price_3": 609900,
        "date_3": "2024-08-15T00:00:00.000Z",
        "price_4": 579900,
        "date_4": "2024-10-01T00:00:00.000Z",
        "ward": "Ward 5",
    },
    {
        "id": "7811542737",
        "name": "2871 DOUGALL Avenue, Windsor, Ontario",
        "address": "2871 DOUGALL Avenue, Windsor, Ontario N9E1S2",
        "city": "Windsor",
        "lat": "42.27981",
        "lng": "-83.02275",
        "listing_status": "Active",
        "property_type": "House",
        "building_type": "Bungalow",
        "bedrooms": "3",
        "bathrooms": "2",
        "price_1": 349900,
        "date_1": "2024-12-03T00:00:00.000Z",
        "ward": "Ward 1",
    },
]


def load_bootstrap_listings(now: Optional[datetime] = None) -> List[CanonicalListing]:
    """Normalize and score the bootstrap records"""
    return normalize_all(BOOTSTRAP_RECORDS, now)
