from typing import Any, Dict, List, Optional
import os

import httpx

import logging

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
    logger.addHandler(handler)
_level = os.getenv("POI_ENRICHMENT_LOG_LEVEL", "INFO").upper()
logger.setLevel(getattr(logging, _level, logging.INFO))
logger.propagate = False

DEFAULT_FIELDS = ",".join(
    [
        "fsq_id",
        "name",
        "geocodes",
        "location",
        "categories",
        "chains",
        "website",
        "tel",
        "email",
        "hours",
        "rating",
        "photos",
        "price",
        "verified",
        "timezone",
    ]
)

# Top-level Foursquare taxonomy ids for the extractor's category vocabulary.
CATEGORY_IDS: Dict[str, str] = {
    "cultural": "10000",
    "entertainment": "10000",
    "food": "13000",
    "nature": "16000",
    "shopping": "17000",
    "accommodation": "19000",
}


class FoursquareClient:
    """Foursquare Places v3 search + details."""

    source = "foursquare"
    BASE_URL = "https://api.foursquare.com/v3/places"

    def __init__(self, *, api_key: Optional[str] = None, timeout: float = 10.0, limit: int = 10):
        self.api_key = api_key or os.getenv("FOURSQUARE_API_KEY")
        self.timeout = timeout
        self.limit = limit

    def has_valid_api_key(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise RuntimeError("FOURSQUARE_API_KEY environment variable not configured")
        return {"Authorization": self.api_key, "Accept": "application/json"}

    async def search(self, query: str, location_hint: str, category: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return candidate places ranked by relevance (best first)."""
        headers = self._headers()
        params: Dict[str, Any] = {
            "query": query,
            "fields": DEFAULT_FIELDS,
            "limit": self.limit,
            "sort": "RELEVANCE",
        }
        if location_hint:
            params["near"] = location_hint
        if category and category in CATEGORY_IDS:
            params["categories"] = CATEGORY_IDS[category]

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(f"{self.BASE_URL}/search", params=params, headers=headers)
            response.raise_for_status()
            data = response.json()

        results = [self._with_coordinates(place) for place in data.get("results", []) if place.get("fsq_id")]
        logger.debug("Foursquare search '%s' near '%s' returned %d results", query, location_hint, len(results))
        return results

    async def get_details(self, fsq_id: str) -> Dict[str, Any]:
        headers = self._headers()
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(
                f"{self.BASE_URL}/{fsq_id}",
                params={"fields": DEFAULT_FIELDS},
                headers=headers,
            )
            response.raise_for_status()
            data = response.json()
        return self._with_coordinates(data)

    @staticmethod
    def candidate_id(candidate: Dict[str, Any]) -> Optional[str]:
        return candidate.get("fsq_id")

    @staticmethod
    def _with_coordinates(place: Dict[str, Any]) -> Dict[str, Any]:
        # v3 nests the point under geocodes.main; expose it as ``coordinates``.
        place = dict(place)
        main = (place.get("geocodes") or {}).get("main")
        if main and not place.get("coordinates"):
            place["coordinates"] = main
        return place

    def usage_stats(self) -> Dict[str, Any]:
        return {
            "has_valid_key": self.has_valid_api_key(),
            "base_url": self.BASE_URL,
            "default_limit": self.limit,
            "supported_categories": sorted(CATEGORY_IDS),
        }
