"""Cache store adapters for enriched place documents.

The engine only needs a narrow contract: exact lookup by place key, a looser
text lookup that absorbs small query variations, whole-document upserts, an
atomic hit counter, and a range delete on the expiry timestamp for the sweeper.
Two backends implement it: an in-process dictionary and Redis.
"""
from __future__ import annotations

import abc
import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError
from redis.exceptions import RedisError

from poi_enrichment.keys import place_key
from poi_enrichment.schemas import CacheEntry, POIQuery

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
    logger.addHandler(handler)
_level = os.getenv("POI_ENRICHMENT_LOG_LEVEL", "INFO").upper()
logger.setLevel(getattr(logging, _level, logging.INFO))
logger.propagate = False


class StoreError(Exception):
    """Base class for cache backend failures."""


class StoreReadError(StoreError):
    pass


class StoreWriteError(StoreError):
    pass


def _query_fingerprint(query: POIQuery) -> str:
    return json.dumps([part.strip().lower() for part in (query.name, query.city, query.country)])


def _parse_fingerprint(fingerprint: str) -> Optional[POIQuery]:
    try:
        name, city, country = json.loads(fingerprint)
    except (TypeError, ValueError):
        return None
    return POIQuery(name=str(name), city=str(city), country=str(country))


def _matches(stored: POIQuery, query: POIQuery) -> bool:
    """Stored query contains each non-empty field of the lookup (case-insensitive)."""
    needle_name = query.name.strip().lower()
    if not needle_name:
        return False
    pairs = (
        (stored.name, needle_name),
        (stored.city, query.city.strip().lower()),
        (stored.country, query.country.strip().lower()),
    )
    return all(needle in (haystack or "").lower() for haystack, needle in pairs)


def _best_match(candidates: Iterable[CacheEntry]) -> Optional[CacheEntry]:
    best: Optional[CacheEntry] = None
    for entry in candidates:
        if best is None or entry.cache.updated_at > best.cache.updated_at:
            best = entry
    return best


class CacheStore(abc.ABC):
    """Read/write/expire contract consumed by the enrichment engine."""

    @abc.abstractmethod
    async def find_by_key(self, key: str) -> Optional[CacheEntry]:
        ...

    @abc.abstractmethod
    async def find_by_query(self, query: POIQuery) -> Optional[CacheEntry]:
        ...

    @abc.abstractmethod
    async def upsert(self, entry: CacheEntry) -> None:
        """Replace the document under ``entry.place_key``.

        A stored ``hit_count`` is never lowered by an upsert.
        """

    @abc.abstractmethod
    async def record_hit(self, key: str, now: datetime) -> Optional[CacheEntry]:
        """Atomically bump ``hit_count`` and set ``last_accessed``; ``None`` if the key is gone."""

    @abc.abstractmethod
    async def delete_expired_before(self, cutoff: datetime) -> int:
        ...

    @abc.abstractmethod
    async def count(self) -> int:
        ...


class InMemoryCacheStore(CacheStore):
    """Process-local store. Entries are copied in and out so callers never share state."""

    def __init__(self) -> None:
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def find_by_key(self, key: str) -> Optional[CacheEntry]:
        async with self._lock:
            entry = self._entries.get(key)
            return entry.model_copy(deep=True) if entry else None

    async def find_by_query(self, query: POIQuery) -> Optional[CacheEntry]:
        async with self._lock:
            exact = self._entries.get(place_key(query))
            if exact is not None:
                return exact.model_copy(deep=True)
            best = _best_match(e for e in self._entries.values() if _matches(e.query, query))
            return best.model_copy(deep=True) if best else None

    async def upsert(self, entry: CacheEntry) -> None:
        async with self._lock:
            stored = entry.model_copy(deep=True)
            current = self._entries.get(entry.place_key)
            if current is not None:
                stored.cache.hit_count = max(stored.cache.hit_count, current.cache.hit_count)
            self._entries[entry.place_key] = stored

    async def record_hit(self, key: str, now: datetime) -> Optional[CacheEntry]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            entry.record_hit(now)
            return entry.model_copy(deep=True)

    async def delete_expired_before(self, cutoff: datetime) -> int:
        async with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.cache.expires_at < cutoff]
            for key in stale:
                del self._entries[key]
            return len(stale)

    async def count(self) -> int:
        async with self._lock:
            return len(self._entries)


class RedisCacheStore(CacheStore):
    """Redis-backed store.

    Layout:
      ``{prefix}:entry:{place_key}`` JSON document per entry
      ``{prefix}:stats:{place_key}`` hash with ``hit_count`` and ``last_accessed``
      ``{prefix}:expiry``            sorted set, score = expires_at epoch seconds
      ``{prefix}:query``             hash place_key -> JSON ``[name, city, country]`` (lowercased)

    Writes touch every key inside one MULTI/EXEC pipeline so a document is
    never visible without its index entries. Access counters live in the stats
    hash and only move through ``HINCRBY``; an upsert seeds them with ``HSETNX``
    and never rewinds them.
    """

    def __init__(self, client, prefix: str = "poi") -> None:
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: Optional[str] = None, prefix: str = "poi") -> "RedisCacheStore":
        import redis.asyncio as redis

        resolved = url or os.getenv("REDIS_URL", "redis://localhost:6379")
        client = redis.from_url(resolved, decode_responses=True)
        logger.info("Connected POI cache to Redis at %s", resolved)
        return cls(client, prefix=prefix)

    @property
    def _expiry_key(self) -> str:
        return f"{self.prefix}:expiry"

    @property
    def _query_key(self) -> str:
        return f"{self.prefix}:query"

    def _entry_key(self, key: str) -> str:
        return f"{self.prefix}:entry:{key}"

    def _stats_key(self, key: str) -> str:
        return f"{self.prefix}:stats:{key}"

    async def find_by_key(self, key: str) -> Optional[CacheEntry]:
        try:
            raw = await self.client.get(self._entry_key(key))
        except RedisError as exc:
            raise StoreReadError(f"Redis read failed for {key}: {exc}") from exc
        entry = self._decode(raw)
        if entry is None:
            return None
        return (await self._attach_stats([entry]))[0]

    async def find_by_query(self, query: POIQuery) -> Optional[CacheEntry]:
        exact = await self.find_by_key(place_key(query))
        if exact is not None:
            return exact
        try:
            fingerprints: Dict[str, str] = await self.client.hgetall(self._query_key)
        except RedisError as exc:
            raise StoreReadError(f"Redis query index read failed: {exc}") from exc

        candidate_keys: List[str] = []
        for key, fingerprint in (fingerprints or {}).items():
            stored = _parse_fingerprint(fingerprint)
            if stored is None:
                logger.warning("Skipping unreadable query fingerprint for %s", key)
                continue
            if _matches(stored, query):
                candidate_keys.append(key)
        if not candidate_keys:
            return None

        try:
            raws = await self.client.mget([self._entry_key(k) for k in candidate_keys])
        except RedisError as exc:
            raise StoreReadError(f"Redis bulk read failed: {exc}") from exc
        entries = [entry for entry in (self._decode(raw) for raw in raws) if entry is not None]
        return _best_match(await self._attach_stats(entries))

    async def upsert(self, entry: CacheEntry) -> None:
        stats_key = self._stats_key(entry.place_key)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.set(self._entry_key(entry.place_key), entry.model_dump_json())
                pipe.hsetnx(stats_key, "hit_count", entry.cache.hit_count)
                pipe.hset(stats_key, "last_accessed", entry.cache.last_accessed.isoformat())
                pipe.zadd(self._expiry_key, {entry.place_key: entry.cache.expires_at.timestamp()})
                pipe.hset(self._query_key, entry.place_key, _query_fingerprint(entry.query))
                await pipe.execute()
        except RedisError as exc:
            raise StoreWriteError(f"Redis upsert failed for {entry.place_key}: {exc}") from exc

    async def record_hit(self, key: str, now: datetime) -> Optional[CacheEntry]:
        stats_key = self._stats_key(key)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hincrby(stats_key, "hit_count", 1)
                pipe.hset(stats_key, "last_accessed", now.isoformat())
                pipe.get(self._entry_key(key))
                hits, _, raw = await pipe.execute()
            if raw is None:
                # swept between lookup and hit
                await self.client.delete(stats_key)
                return None
        except RedisError as exc:
            raise StoreWriteError(f"Redis hit update failed for {key}: {exc}") from exc

        entry = self._decode(raw)
        entry.cache.hit_count = int(hits)
        entry.cache.last_accessed = now
        return entry

    async def delete_expired_before(self, cutoff: datetime) -> int:
        try:
            stale = await self.client.zrangebyscore(self._expiry_key, "-inf", f"({cutoff.timestamp()}")
            if not stale:
                return 0
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.delete(*[self._entry_key(key) for key in stale], *[self._stats_key(key) for key in stale])
                pipe.zrem(self._expiry_key, *stale)
                pipe.hdel(self._query_key, *stale)
                await pipe.execute()
        except RedisError as exc:
            raise StoreWriteError(f"Redis expiry sweep failed: {exc}") from exc
        return len(stale)

    async def count(self) -> int:
        try:
            return int(await self.client.zcard(self._expiry_key))
        except RedisError as exc:
            raise StoreReadError(f"Redis count failed: {exc}") from exc

    async def close(self) -> None:
        await self.client.aclose()

    async def _attach_stats(self, entries: List[CacheEntry]) -> List[CacheEntry]:
        if not entries:
            return entries
        try:
            async with self.client.pipeline(transaction=False) as pipe:
                for entry in entries:
                    pipe.hgetall(self._stats_key(entry.place_key))
                stats = await pipe.execute()
        except RedisError as exc:
            raise StoreReadError(f"Redis stats read failed: {exc}") from exc

        for entry, fields in zip(entries, stats):
            if not fields:
                continue
            if fields.get("hit_count") is not None:
                entry.cache.hit_count = max(entry.cache.hit_count, int(fields["hit_count"]))
            if fields.get("last_accessed"):
                entry.cache.last_accessed = datetime.fromisoformat(fields["last_accessed"])
        return entries

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[CacheEntry]:
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError as exc:
            raise StoreReadError(f"Corrupt cache document: {exc}") from exc
