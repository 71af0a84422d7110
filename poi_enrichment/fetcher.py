"""Concurrent, failure-isolated provider fetches for a single place query."""
from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from poi_enrichment.schemas import FetchError, FetchResult, POIQuery
from poi_enrichment.tools.foursquare import FoursquareClient
from poi_enrichment.tools.tripadvisor import TripAdvisorClient

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
    logger.addHandler(handler)
_level = os.getenv("POI_ENRICHMENT_LOG_LEVEL", "INFO").upper()
logger.setLevel(getattr(logging, _level, logging.INFO))
logger.propagate = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class ProviderFetcher:
    """Query both place providers in parallel.

    Each provider gets one search followed by a details call on the top
    candidate. TripAdvisor also fetches reviews alongside details; losing the
    reviews never loses the details. A provider that raises contributes
    ``None`` plus a ``FetchError``; one with no candidates contributes ``None``
    silently. ``fetch_all`` itself never raises.
    """

    def __init__(
        self,
        foursquare: Optional[Any] = None,
        tripadvisor: Optional[Any] = None,
        *,
        reviews_limit: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.foursquare = foursquare if foursquare is not None else FoursquareClient()
        self.tripadvisor = tripadvisor if tripadvisor is not None else TripAdvisorClient()
        self.reviews_limit = reviews_limit
        self.clock = clock

    async def fetch_all(self, query: POIQuery) -> FetchResult:
        outcomes = await asyncio.gather(
            self._fetch_foursquare(query),
            self._fetch_tripadvisor(query),
            return_exceptions=True,
        )

        payloads: Dict[str, Optional[Dict[str, Any]]] = {}
        errors: List[FetchError] = []
        for source, outcome in zip(("foursquare", "tripadvisor"), outcomes):
            if isinstance(outcome, Exception):
                logger.warning("%s fetch failed for '%s': %s", source, query.name, _error_message(outcome))
                errors.append(FetchError(source=source, error=_error_message(outcome), timestamp=self.clock()))
                payloads[source] = None
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                payloads[source] = outcome

        logger.info(
            "Fetched '%s' (foursquare=%s, tripadvisor=%s, errors=%d)",
            query.name,
            "hit" if payloads["foursquare"] else "none",
            "hit" if payloads["tripadvisor"] else "none",
            len(errors),
        )
        return FetchResult(
            foursquare=payloads["foursquare"],
            tripadvisor=payloads["tripadvisor"],
            errors=errors,
        )

    async def _fetch_foursquare(self, query: POIQuery) -> Optional[Dict[str, Any]]:
        candidate_id = await self._top_candidate_id(self.foursquare, query)
        if candidate_id is None:
            return None
        return await self.foursquare.get_details(candidate_id)

    async def _fetch_tripadvisor(self, query: POIQuery) -> Optional[Dict[str, Any]]:
        candidate_id = await self._top_candidate_id(self.tripadvisor, query)
        if candidate_id is None:
            return None

        details, reviews = await asyncio.gather(
            self.tripadvisor.get_details(candidate_id),
            self.tripadvisor.get_reviews(candidate_id, self.reviews_limit),
            return_exceptions=True,
        )
        if isinstance(details, BaseException):
            raise details
        if isinstance(reviews, Exception):
            logger.warning("TripAdvisor reviews unavailable for %s: %s", candidate_id, _error_message(reviews))
            reviews = None
        elif isinstance(reviews, BaseException):
            raise reviews
        return {**details, "reviews": reviews}

    @staticmethod
    async def _top_candidate_id(provider: Any, query: POIQuery) -> Optional[str]:
        candidates = await provider.search(query.name, query.location_hint, query.category)
        if not candidates:
            return None
        candidate_id = provider.candidate_id(candidates[0])
        if not candidate_id:
            logger.warning("%s top candidate for '%s' has no id", getattr(provider, "source", "provider"), query.name)
            return None
        return candidate_id

    def usage_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {}
        for name, provider in (("foursquare", self.foursquare), ("tripadvisor", self.tripadvisor)):
            describe = getattr(provider, "usage_stats", None)
            stats[name] = describe() if callable(describe) else {}
        return stats
