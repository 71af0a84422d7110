"""Field-level merge of Foursquare and TripAdvisor detail records."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from poi_enrichment.schemas import (
    BASIC_FALLBACK_STATUS,
    Address,
    Contact,
    Coordinates,
    EnrichedPOI,
    Hours,
    Photo,
    POIQuery,
    Rating,
)

TRIPADVISOR_PRICE_LEVELS: Dict[str, int] = {"$": 1, "$$": 2, "$$$": 3, "$$$$": 4}
TRIPADVISOR_HOURS_PLACEHOLDER = "See TripAdvisor for hours"


def merge_provider_data(
    query: POIQuery,
    foursquare: Optional[Dict[str, Any]],
    tripadvisor: Optional[Dict[str, Any]],
) -> EnrichedPOI:
    """Combine up to two provider detail records into one canonical place.

    Precedence is fixed per field: Foursquare wins on identity, geometry,
    contact, categories, price, hours and verification; TripAdvisor wins on
    description and review count. Ratings from both are kept side by side and
    averaged. The function is pure: same inputs, same output.
    """
    fsq = foursquare or {}
    ta = tripadvisor or {}

    return EnrichedPOI(
        name=fsq.get("name") or ta.get("name") or query.name,
        description=ta.get("description") or None,
        coordinates=_coordinates(fsq, ta),
        address=_address(fsq, ta),
        contact=Contact(
            phone=fsq.get("tel"),
            website=fsq.get("website"),
            email=fsq.get("email"),
            tripadvisor_url=ta.get("web_url"),
        ),
        rating=_rating(fsq, ta),
        categories=_categories(fsq, ta),
        price_level=_price_level(fsq, ta),
        hours=_hours(fsq, ta),
        photos=_photos(fsq, ta),
        verified=bool(fsq.get("verified", False)),
    )


def build_basic_poi(query: POIQuery) -> EnrichedPOI:
    """Placeholder record built from the query alone when no provider data exists."""
    formatted = ", ".join(part for part in (query.city, query.country) if part)
    return EnrichedPOI(
        name=query.name,
        address=Address(
            formatted=formatted or None,
            city=query.city or None,
            country=query.country or None,
        ),
        categories=[query.category] if query.category else [],
        verified=False,
        enrichment_status=BASIC_FALLBACK_STATUS,
    )


def convert_tripadvisor_price_level(price_level: Any) -> Optional[int]:
    if not isinstance(price_level, str):
        return None
    return TRIPADVISOR_PRICE_LEVELS.get(price_level.strip())


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    number = _to_float(value)
    return int(number) if number is not None else None


def _coordinates(fsq: Dict[str, Any], ta: Dict[str, Any]) -> Optional[Coordinates]:
    point = fsq.get("coordinates") or (fsq.get("geocodes") or {}).get("main") or {}
    lat, lng = _to_float(point.get("latitude")), _to_float(point.get("longitude"))
    if lat is not None and lng is not None:
        return Coordinates(lat=lat, lng=lng)

    lat, lng = _to_float(ta.get("latitude")), _to_float(ta.get("longitude"))
    if lat is not None and lng is not None:
        return Coordinates(lat=lat, lng=lng)
    return None


def _address(fsq: Dict[str, Any], ta: Dict[str, Any]) -> Optional[Address]:
    loc = fsq.get("location")
    if loc:
        return Address(
            formatted=loc.get("formatted_address") or loc.get("address"),
            street=loc.get("address"),
            city=loc.get("locality"),
            state=loc.get("region"),
            country=loc.get("country"),
            postal_code=loc.get("postcode"),
        )
    addr = ta.get("address_obj")
    if addr:
        return Address(
            formatted=addr.get("address_string"),
            street=addr.get("street1"),
            city=addr.get("city"),
            state=addr.get("state"),
            country=addr.get("country"),
            postal_code=addr.get("postalcode"),
        )
    return None


def _rating(fsq: Dict[str, Any], ta: Dict[str, Any]) -> Rating:
    fsq_rating = _to_float(fsq.get("rating"))
    ta_rating = _to_float(ta.get("rating"))
    present = [r for r in (fsq_rating, ta_rating) if r is not None]
    return Rating(
        foursquare=fsq_rating,
        tripadvisor=ta_rating,
        average=sum(present) / len(present) if present else None,
        total_reviews=_to_int(ta.get("num_reviews")) or 0,
    )


def _categories(fsq: Dict[str, Any], ta: Dict[str, Any]) -> List[str]:
    fsq_categories = fsq.get("categories")
    if fsq_categories:
        return [cat["name"] for cat in fsq_categories if isinstance(cat, dict) and cat.get("name")]
    ta_category = ta.get("category")
    if isinstance(ta_category, dict) and ta_category.get("name"):
        return [ta_category["name"]]
    return []


def _price_level(fsq: Dict[str, Any], ta: Dict[str, Any]) -> Optional[int]:
    price = _to_int(fsq.get("price"))
    if price is not None and 1 <= price <= 4:
        return price
    return convert_tripadvisor_price_level(ta.get("price_level"))


def _hours(fsq: Dict[str, Any], ta: Dict[str, Any]) -> Optional[Hours]:
    fsq_hours = fsq.get("hours")
    if fsq_hours:
        return Hours(
            open_now=fsq_hours.get("open_now"),
            formatted=fsq_hours.get("display"),
            timezone=fsq.get("timezone"),
        )
    ta_hours = ta.get("hours")
    if ta_hours:
        return Hours(
            open_now=None,
            formatted=TRIPADVISOR_HOURS_PLACEHOLDER,
            timezone=ta_hours.get("timezone"),
        )
    return None


def _photos(fsq: Dict[str, Any], ta: Dict[str, Any]) -> List[Photo]:
    photos: List[Photo] = []
    for photo in fsq.get("photos") or []:
        prefix, suffix = photo.get("prefix"), photo.get("suffix")
        if not prefix or not suffix:
            continue
        photos.append(
            Photo(
                url=f"{prefix}original{suffix}",
                source="foursquare",
                width=_to_int(photo.get("width")),
                height=_to_int(photo.get("height")),
            )
        )

    large = (((ta.get("photo") or {}).get("images") or {}).get("large")) or {}
    if large.get("url"):
        photos.append(
            Photo(
                url=large["url"],
                source="tripadvisor",
                width=_to_int(large.get("width")),
                height=_to_int(large.get("height")),
            )
        )
    return photos
