import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from poi_enrichment.keys import place_key
from poi_enrichment.schemas import CacheEntry, CacheMeta, EnrichedPOI, POIQuery
from poi_enrichment.store import InMemoryCacheStore, RedisCacheStore, StoreReadError, StoreWriteError

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_entry(name="Sensoji Temple", city="Tokyo", country="Japan", *, updated=NOW, expires_in_days=30, hits=0):
    query = POIQuery(name=name, city=city, country=country)
    return CacheEntry(
        place_key=place_key(query),
        query=query,
        enriched=EnrichedPOI(name=name),
        cache=CacheMeta(
            created_at=updated,
            updated_at=updated,
            expires_at=updated + timedelta(days=expires_in_days),
            hit_count=hits,
            last_accessed=updated,
        ),
    )


class DummyPipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.ops.append((name, args, kwargs))
            return self

        return queue

    async def execute(self):
        if self.redis.fail_writes:
            raise RedisConnectionError("connection reset")
        results = []
        for name, args, kwargs in self.ops:
            results.append(await getattr(self.redis, name)(*args, **kwargs))
        self.ops = []
        return results


class DummyRedis:
    """Just enough of redis.asyncio.Redis for the cache store."""

    def __init__(self):
        self.strings = {}
        self.zsets = {}
        self.hashes = {}
        self.fail_reads = False
        self.fail_writes = False
        self.closed = False

    def _check(self):
        if self.fail_reads:
            raise RedisConnectionError("connection refused")

    def pipeline(self, transaction=True):
        return DummyPipeline(self)

    async def get(self, key):
        self._check()
        return self.strings.get(key)

    async def mget(self, keys):
        self._check()
        return [self.strings.get(k) for k in keys]

    async def set(self, key, value):
        self.strings[key] = value
        return True

    async def delete(self, *keys):
        removed = 0
        for k in keys:
            if self.strings.pop(k, None) is not None or self.hashes.pop(k, None) is not None:
                removed += 1
        return removed

    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def zrem(self, key, *members):
        zset = self.zsets.get(key, {})
        return sum(1 for m in members if zset.pop(m, None) is not None)

    async def zcard(self, key):
        self._check()
        return len(self.zsets.get(key, {}))

    async def zrangebyscore(self, key, low, high):
        self._check()
        exclusive = high.startswith("(")
        limit = float(high.lstrip("("))
        members = self.zsets.get(key, {})
        return [m for m, score in sorted(members.items(), key=lambda kv: kv[1])
                if (score < limit if exclusive else score <= limit)]

    async def hset(self, key, field, value):
        self.hashes.setdefault(key, {})[field] = value
        return 1

    async def hsetnx(self, key, field, value):
        h = self.hashes.setdefault(key, {})
        if field in h:
            return 0
        h[field] = str(value)
        return 1

    async def hincrby(self, key, field, amount=1):
        h = self.hashes.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)
        return int(h[field])

    async def hdel(self, key, *fields):
        h = self.hashes.get(key, {})
        return sum(1 for f in fields if h.pop(f, None) is not None)

    async def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))

    async def aclose(self):
        self.closed = True


@pytest.fixture(params=["memory", "redis"])
def any_store(request):
    if request.param == "memory":
        return InMemoryCacheStore()
    return RedisCacheStore(DummyRedis(), prefix="test")


def test_upsert_replaces_document_with_same_key(any_store):
    async def run():
        await any_store.upsert(make_entry(hits=1))
        await any_store.upsert(make_entry(hits=7))

        assert await any_store.count() == 1
        found = await any_store.find_by_key("sensoji-temple-tokyo-japan")
        assert found.cache.hit_count == 7

    asyncio.run(run())


def test_find_by_query_prefers_exact_key(any_store):
    async def run():
        await any_store.upsert(make_entry("Sensoji Temple Museum", updated=NOW + timedelta(hours=1)))
        await any_store.upsert(make_entry("Sensoji Temple"))

        found = await any_store.find_by_query(POIQuery(name="sensoji temple", city="TOKYO", country="japan"))
        assert found.place_key == "sensoji-temple-tokyo-japan"

    asyncio.run(run())


def test_find_by_query_matches_partial_text_and_picks_most_recent(any_store):
    async def run():
        await any_store.upsert(make_entry("Sensoji Temple", updated=NOW))
        await any_store.upsert(make_entry("Sensoji Temple Gate", updated=NOW + timedelta(days=1)))

        found = await any_store.find_by_query(POIQuery(name="Sensoji", city="Tokyo"))
        assert found.place_key == "sensoji-temple-gate-tokyo-japan"

    asyncio.run(run())


def test_find_by_query_misses(any_store):
    async def run():
        await any_store.upsert(make_entry())

        assert await any_store.find_by_query(POIQuery(name="Sensoji", city="Kyoto")) is None
        assert await any_store.find_by_query(POIQuery(name="", city="Tokyo")) is None
        assert await any_store.find_by_key("missing") is None

    asyncio.run(run())


def test_delete_expired_before_is_strict(any_store):
    async def run():
        await any_store.upsert(make_entry("Old", expires_in_days=-100))
        await any_store.upsert(make_entry("Boundary", expires_in_days=-90))
        await any_store.upsert(make_entry("Fresh", expires_in_days=30))

        deleted = await any_store.delete_expired_before(NOW - timedelta(days=90))

        assert deleted == 1
        assert await any_store.count() == 2
        assert await any_store.find_by_key("old-tokyo-japan") is None
        assert await any_store.find_by_key("boundary-tokyo-japan") is not None

    asyncio.run(run())


def test_delete_expired_before_with_nothing_stale(any_store):
    async def run():
        await any_store.upsert(make_entry())
        assert await any_store.delete_expired_before(NOW) == 0

    asyncio.run(run())


def test_memory_store_returns_copies():
    async def run():
        store = InMemoryCacheStore()
        entry = make_entry()
        await store.upsert(entry)
        entry.cache.hit_count = 99

        found = await store.find_by_key(entry.place_key)
        found.record_hit(NOW)

        again = await store.find_by_key(entry.place_key)
        assert again.cache.hit_count == 0

    asyncio.run(run())


def test_redis_store_layout():
    async def run():
        redis = DummyRedis()
        store = RedisCacheStore(redis, prefix="poi")
        entry = make_entry()
        await store.upsert(entry)

        assert "poi:entry:sensoji-temple-tokyo-japan" in redis.strings
        assert redis.zsets["poi:expiry"]["sensoji-temple-tokyo-japan"] == entry.cache.expires_at.timestamp()
        assert redis.hashes["poi:query"]["sensoji-temple-tokyo-japan"] == json.dumps(["sensoji temple", "tokyo", "japan"])

        await store.close()
        assert redis.closed

    asyncio.run(run())


def test_redis_errors_become_store_errors():
    async def run():
        redis = DummyRedis()
        store = RedisCacheStore(redis)

        redis.fail_writes = True
        with pytest.raises(StoreWriteError):
            await store.upsert(make_entry())

        redis.fail_reads = True
        with pytest.raises(StoreReadError):
            await store.find_by_query(POIQuery(name="Sensoji"))
        with pytest.raises(StoreReadError):
            await store.count()

    asyncio.run(run())


def test_redis_corrupt_document_is_a_read_error():
    async def run():
        redis = DummyRedis()
        redis.strings["poi:entry:broken"] = "{not json"
        with pytest.raises(StoreReadError):
            await RedisCacheStore(redis).find_by_key("broken")

    asyncio.run(run())


def test_record_hit_counts_every_concurrent_hit(any_store):
    async def run():
        await any_store.upsert(make_entry())
        later = NOW + timedelta(hours=2)

        results = await asyncio.gather(*[any_store.record_hit("sensoji-temple-tokyo-japan", later) for _ in range(5)])

        assert sorted(r.cache.hit_count for r in results) == [1, 2, 3, 4, 5]
        found = await any_store.find_by_key("sensoji-temple-tokyo-japan")
        assert found.cache.hit_count == 5
        assert found.cache.last_accessed == later

    asyncio.run(run())


def test_upsert_never_lowers_hit_count(any_store):
    async def run():
        await any_store.upsert(make_entry())
        for _ in range(3):
            await any_store.record_hit("sensoji-temple-tokyo-japan", NOW)

        # a refresh computed from an older read carries a stale count
        await any_store.upsert(make_entry(hits=1, updated=NOW + timedelta(days=31)))

        found = await any_store.find_by_key("sensoji-temple-tokyo-japan")
        assert found.cache.hit_count == 3
        assert found.cache.updated_at == NOW + timedelta(days=31)

    asyncio.run(run())


def test_record_hit_on_missing_key(any_store):
    async def run():
        assert await any_store.record_hit("nowhere", NOW) is None
        assert await any_store.count() == 0

    asyncio.run(run())


def test_fuzzy_lookup_with_pipe_in_name(any_store):
    async def run():
        await any_store.upsert(make_entry("Bar | Lounge 21"))

        found = await any_store.find_by_query(POIQuery(name="bar | lounge", city="Tokyo"))
        assert found is not None
        assert found.query.name == "Bar | Lounge 21"

    asyncio.run(run())


def test_redis_sweep_removes_hit_counters():
    async def run():
        redis = DummyRedis()
        store = RedisCacheStore(redis, prefix="poi")
        await store.upsert(make_entry(expires_in_days=-1))
        await store.record_hit("sensoji-temple-tokyo-japan", NOW)

        assert await store.delete_expired_before(NOW) == 1
        assert "poi:stats:sensoji-temple-tokyo-japan" not in redis.hashes
        assert await store.record_hit("sensoji-temple-tokyo-japan", NOW) is None
        assert "poi:stats:sensoji-temple-tokyo-japan" not in redis.hashes

    asyncio.run(run())
