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

CATEGORY_TYPES: Dict[str, str] = {
    "cultural": "attractions",
    "nature": "attractions",
    "shopping": "attractions",
    "entertainment": "attractions",
    "food": "restaurants",
    "accommodation": "hotels",
}

MAX_REVIEWS = 20


class TripAdvisorClient:
    """TripAdvisor Content API search, details and reviews."""

    source = "tripadvisor"
    BASE_URL = "https://api.content.tripadvisor.com/api/v1"

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        limit: int = 10,
        language: str = "en",
        currency: str = "USD",
    ):
        self.api_key = api_key or os.getenv("TRIPADVISOR_API_KEY")
        self.timeout = timeout
        self.limit = limit
        self.language = language
        self.currency = currency

    def has_valid_api_key(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise RuntimeError("TRIPADVISOR_API_KEY environment variable not configured")
        return {"X-TripAdvisor-API-Key": self.api_key, "Accept": "application/json"}

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        headers = self._headers()
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(f"{self.BASE_URL}{path}", params=params, headers=headers)
            response.raise_for_status()
            return response.json()

    async def search(self, query: str, location_hint: str, category: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "searchQuery": query,
            "language": self.language,
            "limit": self.limit,
        }
        if location_hint:
            params["address"] = location_hint
        if category and category in CATEGORY_TYPES:
            params["category"] = CATEGORY_TYPES[category]

        data = await self._get("/location/search", params)
        results = [loc for loc in data.get("data", []) if loc.get("location_id")]
        logger.debug("TripAdvisor search '%s' near '%s' returned %d results", query, location_hint, len(results))
        return results

    async def get_details(self, location_id: str) -> Dict[str, Any]:
        return await self._get(
            f"/location/{location_id}/details",
            {"language": self.language, "currency": self.currency},
        )

    async def get_reviews(self, location_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        data = await self._get(
            f"/location/{location_id}/reviews",
            {"language": self.language, "limit": min(limit, MAX_REVIEWS)},
        )
        return list(data.get("data", []))

    @staticmethod
    def candidate_id(candidate: Dict[str, Any]) -> Optional[str]:
        location_id = candidate.get("location_id")
        return str(location_id) if location_id is not None else None

    def usage_stats(self) -> Dict[str, Any]:
        return {
            "has_valid_key": self.has_valid_api_key(),
            "base_url": self.BASE_URL,
            "default_limit": self.limit,
            "default_language": self.language,
            "supported_categories": sorted(CATEGORY_TYPES),
        }
