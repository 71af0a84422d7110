# poi_enrichment/orchestrator.py
from __future__ import annotations

import asyncio
import logging
import math
import os
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from poi_enrichment.config import EnrichmentConfig
from poi_enrichment.extractor import LLMPOIExtractor
from poi_enrichment.fetcher import ProviderFetcher
from poi_enrichment.keys import place_key
from poi_enrichment.mapper import map_enriched_to_activities
from poi_enrichment.merge import build_basic_poi, merge_provider_data
from poi_enrichment.schemas import CacheEntry, CacheMeta, EnrichedPOI, POIQuery
from poi_enrichment.store import CacheStore, InMemoryCacheStore, RedisCacheStore
from poi_enrichment.sweeper import cleanup_expired
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


def coerce_query(raw: Any) -> POIQuery:
    """Accept a POIQuery, a mapping, or anything else without raising."""
    if isinstance(raw, POIQuery):
        return raw
    if isinstance(raw, Mapping):
        category = raw.get("category")
        return POIQuery(
            name="" if raw.get("name") is None else str(raw.get("name")),
            city="" if raw.get("city") is None else str(raw.get("city")),
            country="" if raw.get("country") is None else str(raw.get("country")),
            category=str(category) if category else None,
        )
    return POIQuery(name="" if raw is None else str(raw))


class POIEnrichmentEngine:
    """Cache-aside enrichment of itinerary places.

    Lookups read the store first, fall through to both place providers on a
    miss or an expired entry, merge the answers and write the result back.
    Every public coroutine returns data of the expected shape: provider,
    store and extraction failures degrade into fallback records or status
    tags instead of exceptions.
    """

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        *,
        fetcher: Optional[ProviderFetcher] = None,
        extractor: Any = None,
        config: Optional[EnrichmentConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or EnrichmentConfig()
        self.store = store if store is not None else InMemoryCacheStore()
        self.clock = clock
        self.sleep = sleep
        self.fetcher = fetcher or ProviderFetcher(
            FoursquareClient(timeout=self.config.provider_timeout_seconds),
            TripAdvisorClient(timeout=self.config.provider_timeout_seconds),
            reviews_limit=self.config.reviews_limit,
            clock=clock,
        )
        self.extractor = extractor or LLMPOIExtractor()

    @classmethod
    def from_env(cls) -> "POIEnrichmentEngine":
        config = EnrichmentConfig.from_env()
        store: CacheStore
        if os.getenv("REDIS_URL"):
            store = RedisCacheStore.from_url()
        else:
            logger.warning("REDIS_URL not set; POI cache is process-local")
            store = InMemoryCacheStore()
        return cls(store, config=config)

    # ---------- single lookup ----------
    async def get_enriched_poi(self, query: Any) -> EnrichedPOI:
        """Return the enriched record for one place, from cache when fresh."""
        query = coerce_query(query)
        key = place_key(query)
        logger.info("Getting enriched POI: %s in %s", query.name, query.location_hint or "unknown location")

        try:
            cached = await self._read_cached(query)
            now = self.clock()
            if cached is not None and not cached.is_expired(now):
                logger.info("Cache hit for %s (%s)", query.name, cached.place_key)
                await self._count_hit(cached.place_key, now)
                return cached.enriched_view()

            logger.info("Cache %s for %s, fetching from providers", "expired" if cached else "miss", query.name)
            entry = await self._refresh(query, key, cached)
            await self._write(entry)
            return entry.enriched_view()
        except Exception:
            logger.exception("Failed to enrich POI %s; returning basic fallback", query.name)
            return self._basic_poi(query, key)

    async def _read_cached(self, query: POIQuery) -> Optional[CacheEntry]:
        try:
            return await self.store.find_by_query(query)
        except Exception:
            logger.warning("Cache lookup failed for %s; treating as miss", query.name, exc_info=True)
            return None

    async def _count_hit(self, key: str, now: datetime) -> None:
        try:
            if await self.store.record_hit(key, now) is None:
                logger.info("Cache entry %s removed before its hit was recorded", key)
        except Exception:
            logger.warning("Hit update failed for %s", key, exc_info=True)

    async def _write(self, entry: CacheEntry) -> None:
        try:
            await self.store.upsert(entry)
        except Exception:
            logger.warning("Cache write failed for %s; result not cached", entry.place_key, exc_info=True)

    async def _refresh(self, query: POIQuery, key: str, previous: Optional[CacheEntry]) -> CacheEntry:
        result = await self.fetcher.fetch_all(query)
        if result.is_empty:
            logger.warning("No provider data for %s; using basic fallback", query.name)
            enriched = build_basic_poi(query)
        else:
            enriched = merge_provider_data(query, result.foursquare, result.tripadvisor)

        now = self.clock()
        same_document = previous is not None and previous.place_key == key
        return CacheEntry(
            place_key=key,
            query=query,
            foursquare=result.foursquare,
            tripadvisor=result.tripadvisor,
            enriched=enriched,
            cache=CacheMeta(
                created_at=previous.cache.created_at if same_document else now,
                updated_at=now,
                expires_at=now + timedelta(days=self.config.cache_expiry_days),
                foursquare_fetched=result.foursquare is not None,
                tripadvisor_fetched=result.tripadvisor is not None,
                fetch_errors=result.errors,
                hit_count=previous.cache.hit_count if same_document else 0,
                last_accessed=now,
            ),
        )

    @staticmethod
    def _basic_poi(query: POIQuery, key: Optional[str] = None) -> EnrichedPOI:
        poi = build_basic_poi(query)
        poi.place_key = key if key is not None else place_key(query)
        return poi

    # ---------- batches ----------
    async def enrich_many(self, queries: Iterable[Any]) -> List[EnrichedPOI]:
        """Enrich ``queries`` in sequential windows of bounded concurrency.

        The result has one record per input, in input order.
        """
        pending = [coerce_query(q) for q in queries]
        size = self.config.max_parallel_requests
        total_windows = math.ceil(len(pending) / size)
        results: List[EnrichedPOI] = []

        for index, start in enumerate(range(0, len(pending), size), 1):
            window = pending[start:start + size]
            logger.info("Processing POI window %d/%d (%d queries)", index, total_windows, len(window))
            outcomes = await asyncio.gather(
                *[self.get_enriched_poi(q) for q in window],
                return_exceptions=True,
            )
            for query, outcome in zip(window, outcomes):
                if isinstance(outcome, Exception):
                    logger.warning("Failed to enrich POI %s: %s", query.name, outcome)
                    results.append(self._basic_poi(query))
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    results.append(outcome)

            if start + size < len(pending):
                await self.sleep(self.config.batch_delay_seconds)

        return results

    async def enrich_activities(
        self,
        activities: Iterable[Dict[str, Any]],
        trip_context: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Extract places from ``activities``, enrich them and map them back."""
        activities = list(activities or [])
        logger.info("Starting POI enrichment for %d activities", len(activities))
        try:
            queries = await self.extractor.extract(activities, trip_context or {})
            cap = self.config.max_pois_per_chunk
            if cap and len(queries) > cap:
                logger.info("Capping POI enrichment at %d of %d extracted places", cap, len(queries))
                queries = queries[:cap]
            logger.info("Extracted %d POIs from activities", len(queries))

            enriched = await self.enrich_many(queries)
            mapped = map_enriched_to_activities(activities, enriched)
        except Exception as exc:
            logger.exception("POI enrichment failed: %s", exc)
            return [
                {**activity, "enrichment_status": "failed", "enrichment_error": str(exc)}
                for activity in activities
            ]

        matched = sum(1 for a in mapped if a.get("enrichment_status") != "no_match")
        logger.info("POI enrichment completed: %d POIs enriched, %d/%d activities matched", len(enriched), matched, len(mapped))
        return mapped

    # ---------- maintenance ----------
    async def cleanup_expired_cache(self, grace_days: Optional[float] = None) -> int:
        grace = self.config.cleanup_grace_days if grace_days is None else grace_days
        return await cleanup_expired(self.store, grace, now=self.clock())

    def update_config(self, **overrides: Any) -> EnrichmentConfig:
        self.config = self.config.with_overrides(**overrides)
        if "reviews_limit" in overrides:
            self.fetcher.reviews_limit = self.config.reviews_limit
        if "provider_timeout_seconds" in overrides:
            for client in (self.fetcher.foursquare, self.fetcher.tripadvisor):
                if hasattr(client, "timeout"):
                    client.timeout = self.config.provider_timeout_seconds
        logger.info("POI enrichment configuration updated: %s", overrides)
        return self.config

    async def get_service_stats(self) -> Dict[str, Any]:
        try:
            cached_entries: Optional[int] = await self.store.count()
        except Exception:
            logger.warning("Unable to count cache entries", exc_info=True)
            cached_entries = None
        return {
            "config": self.config.as_dict(),
            "providers": self.fetcher.usage_stats(),
            "cached_entries": cached_entries,
        }
