"""Deterministic cache keys for place lookups."""
from __future__ import annotations

import re
from typing import Any, Mapping

from poi_enrichment.schemas import POIQuery

_DISALLOWED = re.compile(r"[^a-z0-9-]")
_REPEATED_DASH = re.compile(r"-+")


def place_key(query: POIQuery | Mapping[str, Any] | None) -> str:
    """Return the ``name-city-country`` slug used as the cache primary key.

    Casing and punctuation variants of the same place collapse onto one key,
    so concurrent writers upsert the same document. Blank or missing fields
    are tolerated and simply disappear from the slug.
    """
    if query is None:
        return ""
    if isinstance(query, POIQuery):
        parts = (query.name, query.city, query.country)
    else:
        parts = tuple(query.get(field) for field in ("name", "city", "country"))

    raw = "-".join(str(part) if part is not None else "" for part in parts)
    slug = _DISALLOWED.sub("-", raw.lower())
    slug = _REPEATED_DASH.sub("-", slug)
    return slug.strip("-")
