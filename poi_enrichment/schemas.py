from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict

BASIC_FALLBACK_STATUS = "basic_fallback"

# ------- Query models -------
class POIQuery(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    city: str = ""
    country: str = ""
    category: Optional[str] = None

    @property
    def location_hint(self) -> str:
        return ", ".join(part for part in (self.city, self.country) if part)

# ------- Enriched view -------
class Coordinates(BaseModel):
    lat: float
    lng: float

class Address(BaseModel):
    formatted: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None

class Contact(BaseModel):
    phone: Optional[str] = None
    website: Optional[str] = None
    email: Optional[str] = None
    tripadvisor_url: Optional[str] = None

class Rating(BaseModel):
    foursquare: Optional[float] = None
    tripadvisor: Optional[float] = None
    average: Optional[float] = None
    total_reviews: int = 0

class Hours(BaseModel):
    open_now: Optional[bool] = None
    formatted: Optional[str] = None
    timezone: Optional[str] = None

class Photo(BaseModel):
    url: str
    source: str
    width: Optional[int] = None
    height: Optional[int] = None

class EnrichedPOI(BaseModel):
    place_key: Optional[str] = None
    name: str
    description: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    address: Optional[Address] = None
    contact: Contact = Field(default_factory=Contact)
    rating: Rating = Field(default_factory=Rating)
    categories: List[str] = Field(default_factory=list)
    price_level: Optional[int] = Field(None, ge=1, le=4)
    hours: Optional[Hours] = None
    photos: List[Photo] = Field(default_factory=list)
    verified: bool = False
    # None for a real merge; "basic_fallback" marks a placeholder record.
    enrichment_status: Optional[str] = None
    last_updated: Optional[datetime] = None

    @property
    def is_fallback(self) -> bool:
        return self.enrichment_status == BASIC_FALLBACK_STATUS

# ------- Fetch results -------
class FetchError(BaseModel):
    source: str
    error: str
    timestamp: datetime

class FetchResult(BaseModel):
    foursquare: Optional[Dict[str, Any]] = None
    tripadvisor: Optional[Dict[str, Any]] = None
    errors: List[FetchError] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.foursquare is None and self.tripadvisor is None

# ------- Cache documents -------
class CacheMeta(BaseModel):
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    foursquare_fetched: bool = False
    tripadvisor_fetched: bool = False
    fetch_errors: List[FetchError] = Field(default_factory=list)
    hit_count: int = 0
    last_accessed: datetime

class CacheEntry(BaseModel):
    place_key: str
    query: POIQuery
    foursquare: Optional[Dict[str, Any]] = None
    tripadvisor: Optional[Dict[str, Any]] = None
    enriched: EnrichedPOI
    cache: CacheMeta

    def is_expired(self, now: datetime) -> bool:
        return now > self.cache.expires_at

    def record_hit(self, now: datetime) -> None:
        self.cache.hit_count += 1
        self.cache.last_accessed = now

    def is_complete(self) -> bool:
        return self.cache.foursquare_fetched and self.cache.tripadvisor_fetched

    def enriched_view(self) -> EnrichedPOI:
        """Return the enriched record stamped with its key and freshness."""
        return self.enriched.model_copy(
            update={"place_key": self.place_key, "last_updated": self.cache.updated_at},
            deep=True,
        )
