"""Attach enriched place records back onto itinerary activities."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from poi_enrichment.schemas import EnrichedPOI


def map_enriched_to_activities(
    activities: Iterable[Dict[str, Any]],
    enriched_pois: Iterable[EnrichedPOI],
) -> List[Dict[str, Any]]:
    """Return copies of ``activities`` decorated with matching POI data.

    Matching is a case-insensitive substring test in either direction between
    the POI name and the activity's title + description. It is a best-effort
    heuristic: generic names ("Market") can attach to the wrong activity.
    """
    pois = [poi for poi in enriched_pois if (poi.name or "").strip()]
    mapped: List[Dict[str, Any]] = []
    for activity in activities:
        match = _find_match(activity, pois)
        if match is None:
            mapped.append({**activity, "enrichment_status": "no_match"})
            continue

        data = match.model_dump(mode="json")
        mapped.append(
            {
                **activity,
                "location": {
                    **_base_location(activity.get("location")),
                    "coordinates": data["coordinates"],
                    "address": data["address"],
                    "contact": data["contact"],
                },
                "poi_data": {
                    "rating": data["rating"],
                    "categories": data["categories"],
                    "price_level": data["price_level"],
                    "hours": data["hours"],
                    "photos": data["photos"],
                    "description": data["description"],
                    "verified": data["verified"],
                },
                "enrichment_status": "basic_fallback" if match.is_fallback else "success",
            }
        )
    return mapped


def _base_location(location: Any) -> Dict[str, Any]:
    if isinstance(location, dict):
        return location
    # a bare string is the place name
    if isinstance(location, str) and location.strip():
        return {"name": location.strip()}
    return {}


def _activity_text(activity: Dict[str, Any]) -> str:
    title = activity.get("title") or ""
    description = activity.get("description") or ""
    return f"{title} {description}".strip().lower()


def _find_match(activity: Dict[str, Any], pois: List[EnrichedPOI]) -> Optional[EnrichedPOI]:
    text = _activity_text(activity)
    if not text:
        return None
    for poi in pois:
        name = poi.name.strip().lower()
        if name in text or text in name:
            return poi
    return None
