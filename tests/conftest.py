from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from poi_enrichment.config import EnrichmentConfig
from poi_enrichment.fetcher import ProviderFetcher
from poi_enrichment.orchestrator import POIEnrichmentEngine
from poi_enrichment.store import InMemoryCacheStore

FOURSQUARE_DETAILS: Dict[str, Any] = {
    "fsq_id": "fsq-1",
    "name": "Senso-ji",
    "coordinates": {"latitude": 35.7148, "longitude": 139.7967},
    "location": {
        "address": "2-3-1 Asakusa",
        "locality": "Taito",
        "region": "Tokyo",
        "country": "JP",
        "postcode": "111-0032",
        "formatted_address": "2-3-1 Asakusa, Taito, Tokyo 111-0032",
    },
    "categories": [{"id": "12345", "name": "Buddhist Temple"}, {"id": "16000", "name": "Historic Site"}],
    "tel": "+81 3-3842-0181",
    "website": "https://www.senso-ji.jp",
    "hours": {"display": "Open 24 hours", "open_now": True},
    "timezone": "Asia/Tokyo",
    "rating": 4.5,
    "price": 1,
    "verified": True,
    "photos": [
        {"id": "p1", "prefix": "https://fastly.4sqi.net/img/general/", "suffix": "/sensoji.jpg", "width": 1920, "height": 1080}
    ],
}

TRIPADVISOR_DETAILS: Dict[str, Any] = {
    "location_id": "320447",
    "name": "Senso-ji Temple",
    "description": "Tokyo's oldest temple, founded in the 7th century.",
    "web_url": "https://www.tripadvisor.com/Attraction_Review-320447",
    "address_obj": {
        "street1": "2-3-1 Asakusa",
        "city": "Taito",
        "state": "Tokyo Prefecture",
        "country": "Japan",
        "postalcode": "111-0032",
        "address_string": "2-3-1 Asakusa, Taito 111-0032 Tokyo Prefecture",
    },
    "latitude": "35.71476",
    "longitude": "139.79665",
    "num_reviews": "25867",
    "rating": "4.6",
    "category": {"key": "attraction", "name": "Attraction"},
    "price_level": "$$",
    "hours": {"week_ranges": [[{"open_time": 360, "close_time": 1020}]], "timezone": "Asia/Tokyo"},
    "photo": {
        "images": {
            "large": {"url": "https://media-cdn.tripadvisor.com/media/photo-s/sensoji.jpg", "width": "550", "height": "413"}
        }
    },
}


class FakeProvider:
    """Stands in for a place-data provider client."""

    def __init__(
        self,
        source: str,
        *,
        candidates: Optional[List[Dict[str, Any]]] = None,
        details: Optional[Dict[str, Any]] = None,
        reviews: Optional[List[Dict[str, Any]]] = None,
        error: Optional[Exception] = None,
        details_error: Optional[Exception] = None,
        reviews_error: Optional[Exception] = None,
    ):
        self.source = source
        self.candidates = [{"id": f"{source}-1"}] if candidates is None else candidates
        self.details = dict(details or {})
        self.reviews = list(reviews or [])
        self.error = error
        self.details_error = details_error
        self.reviews_error = reviews_error
        self.search_calls: List[tuple] = []
        self.details_calls: List[str] = []
        self.reviews_calls: List[tuple] = []

    async def search(self, query: str, location_hint: str, category: Optional[str] = None):
        self.search_calls.append((query, location_hint, category))
        if self.error:
            raise self.error
        return list(self.candidates)

    async def get_details(self, candidate_id: str):
        self.details_calls.append(candidate_id)
        if self.details_error:
            raise self.details_error
        return dict(self.details)

    async def get_reviews(self, candidate_id: str, limit: int = 5):
        self.reviews_calls.append((candidate_id, limit))
        if self.reviews_error:
            raise self.reviews_error
        return list(self.reviews)[:limit]

    @staticmethod
    def candidate_id(candidate: Dict[str, Any]) -> Optional[str]:
        return candidate.get("id")


class FrozenClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def foursquare() -> FakeProvider:
    return FakeProvider("foursquare", details=FOURSQUARE_DETAILS)


@pytest.fixture
def tripadvisor() -> FakeProvider:
    return FakeProvider("tripadvisor", details=TRIPADVISOR_DETAILS, reviews=[{"id": "r1", "rating": 5}])


@pytest.fixture
def store() -> InMemoryCacheStore:
    return InMemoryCacheStore()


@pytest.fixture
def make_engine(store, clock):
    def _make(foursquare, tripadvisor, **config_overrides) -> POIEnrichmentEngine:
        config = EnrichmentConfig(batch_delay_seconds=0, **config_overrides)
        fetcher = ProviderFetcher(foursquare, tripadvisor, reviews_limit=config.reviews_limit, clock=clock)
        return POIEnrichmentEngine(
            store,
            fetcher=fetcher,
            config=config,
            clock=clock,
            sleep=RecordingSleep(),
            extractor=object(),
        )

    return _make
