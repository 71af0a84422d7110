from __future__ import annotations

import os
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict

from dotenv import load_dotenv


@dataclass(frozen=True)
class EnrichmentConfig:
    """Engine tunables. One instance per engine; override with ``with_overrides``."""

    cache_expiry_days: float = 30
    max_parallel_requests: int = 5
    batch_delay_seconds: float = 0.5
    max_pois_per_chunk: int = 10
    cleanup_grace_days: float = 90
    reviews_limit: int = 5
    provider_timeout_seconds: float = 15.0

    def __post_init__(self) -> None:
        if self.cache_expiry_days <= 0:
            raise ValueError("cache_expiry_days must be positive")
        if self.max_parallel_requests < 1:
            raise ValueError("max_parallel_requests must be at least 1")
        if self.batch_delay_seconds < 0:
            raise ValueError("batch_delay_seconds cannot be negative")
        if self.max_pois_per_chunk < 0:
            raise ValueError("max_pois_per_chunk cannot be negative")
        if self.cleanup_grace_days < 0:
            raise ValueError("cleanup_grace_days cannot be negative")
        if self.provider_timeout_seconds <= 0:
            raise ValueError("provider_timeout_seconds must be positive")

    @classmethod
    def from_env(cls) -> "EnrichmentConfig":
        load_dotenv()
        defaults = cls()
        return cls(
            cache_expiry_days=float(os.getenv("POI_CACHE_EXPIRY_DAYS", defaults.cache_expiry_days)),
            max_parallel_requests=int(os.getenv("POI_MAX_PARALLEL_REQUESTS", defaults.max_parallel_requests)),
            batch_delay_seconds=float(os.getenv("POI_BATCH_DELAY_SECONDS", defaults.batch_delay_seconds)),
            max_pois_per_chunk=int(os.getenv("POI_MAX_POIS_PER_CHUNK", defaults.max_pois_per_chunk)),
            cleanup_grace_days=float(os.getenv("POI_CLEANUP_GRACE_DAYS", defaults.cleanup_grace_days)),
            reviews_limit=int(os.getenv("POI_REVIEWS_LIMIT", defaults.reviews_limit)),
            provider_timeout_seconds=float(
                os.getenv("POI_PROVIDER_TIMEOUT_SECONDS", defaults.provider_timeout_seconds)
            ),
        )

    def with_overrides(self, **overrides: Any) -> "EnrichmentConfig":
        return replace(self, **overrides)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)
