"""
Reclaim stale POI cache entries.

Reads never depend on this job: expiry is checked lazily on every lookup.
The sweeper only deletes documents that have been expired for longer than a
grace period.

Usage:
    python -m poi_enrichment.sweeper
    python -m poi_enrichment.sweeper --grace-days 30
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from poi_enrichment.config import EnrichmentConfig
from poi_enrichment.store import RedisCacheStore

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
    logger.addHandler(handler)
_level = os.getenv("POI_ENRICHMENT_LOG_LEVEL", "INFO").upper()
logger.setLevel(getattr(logging, _level, logging.INFO))
logger.propagate = False


async def cleanup_expired(store, grace_days: float, now: Optional[datetime] = None) -> int:
    """Delete entries whose ``expires_at`` is older than ``now - grace_days``."""
    if grace_days < 0:
        raise ValueError("grace_days cannot be negative")
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=grace_days)
    deleted = await store.delete_expired_before(cutoff)
    logger.info("Cleaned up %d expired POI cache entries (cutoff %s)", deleted, cutoff.isoformat())
    return deleted


async def _run(grace_days: Optional[float], redis_url: Optional[str]) -> int:
    config = EnrichmentConfig.from_env()
    store = RedisCacheStore.from_url(redis_url)
    try:
        return await cleanup_expired(store, config.cleanup_grace_days if grace_days is None else grace_days)
    finally:
        await store.close()


def main(argv: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser(description="Delete POI cache entries expired past a grace period")
    parser.add_argument(
        "--grace-days",
        type=float,
        default=None,
        help="Days past expiry before an entry is deleted (default: POI_CLEANUP_GRACE_DAYS or 90)",
    )
    parser.add_argument("--redis-url", default=None, help="Redis URL (default: REDIS_URL)")
    args = parser.parse_args(argv)

    asyncio.run(_run(args.grace_days, args.redis_url))


if __name__ == "__main__":
    main()
