# poi_enrichment/extractor.py
import asyncio
import json
import logging
import os
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from dotenv import load_dotenv
from openai import OpenAI
from pydantic import ValidationError

from poi_enrichment.keys import place_key
from poi_enrichment.schemas import POIQuery

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
    logger.addHandler(handler)
_level = os.getenv("POI_ENRICHMENT_LOG_LEVEL", "INFO").upper()
logger.setLevel(getattr(logging, _level, logging.INFO))
logger.propagate = False

load_dotenv()

_GENERIC_WORDS: Tuple[str, ...] = (
    "local",
    "area",
    "vicinity",
    "nearby",
    "around",
    "general",
    "various",
    "different",
)

_GENERIC_PATTERNS = (
    re.compile(r"\b(area|vicinity|region|district)\b", re.IGNORECASE),
    re.compile(r"^(city|town|village)\s+(center|centre)$", re.IGNORECASE),
    re.compile(r"^(free\s+time|leisure|rest|break|hotel room)$", re.IGNORECASE),
)

SYSTEM_PROMPT = """You identify concrete, visitable places in travel itineraries.
Return ONLY valid JSON with a single key "pois": an array of objects
{"name": str, "city": str, "country": str, "category": str|null}.
category is one of cultural, food, nature, shopping, entertainment, accommodation.
Skip generic mentions (hotel room, free time, local area). Do not invent places.
"""

USER_TEMPLATE = """Destination: {city}, {country}

Activities:
{activities}
"""


def clean_place_name(name: Any) -> str:
    if not isinstance(name, str):
        return ""
    cleaned = name.strip()
    cleaned = re.sub(r"^(the|a|an)\s+", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"\s+", " ", cleaned)
    cleaned = re.sub(r"[()\[\]{}]", "", cleaned)
    cleaned = re.sub(r"^\W+|\W+$", "", cleaned)
    return cleaned.strip()


def is_generic_location(name: str) -> bool:
    lowered = (name or "").lower().strip()
    if len(lowered) < 3 or len(lowered) > 100:
        return True
    if any(re.search(rf"\b{word}\b", lowered) for word in _GENERIC_WORDS):
        return True
    return any(pattern.search(lowered) for pattern in _GENERIC_PATTERNS)


def resolve_destination(trip_context: Optional[Dict[str, Any]]) -> Tuple[str, str]:
    """Return (city, country) from the assorted trip-context shapes we receive."""
    ctx = trip_context or {}
    destination = ctx.get("destination")
    city = ctx.get("city") or ""
    country = ctx.get("country") or ""

    if isinstance(destination, dict):
        city = destination.get("city") or destination.get("destination") or city
        country = destination.get("country") or country
    elif isinstance(destination, str) and destination.strip():
        head, _, tail = destination.partition(",")
        city = city or head.strip()
        country = country or tail.strip()

    if isinstance(city, str) and "," in city and not country:
        city, _, country = (part.strip() for part in city.partition(","))
    return str(city or "").strip(), str(country or "").strip()


def _dedupe(queries: Iterable[POIQuery]) -> List[POIQuery]:
    seen = set()
    unique: List[POIQuery] = []
    for query in queries:
        key = place_key(query)
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(query)
    return unique


class LocationFieldExtractor:
    """Build queries from each activity's ``location.name``."""

    async def extract(
        self, activities: List[Dict[str, Any]], trip_context: Optional[Dict[str, Any]] = None
    ) -> List[POIQuery]:
        city, country = resolve_destination(trip_context)
        queries: List[POIQuery] = []
        for activity in activities:
            location = activity.get("location") or {}
            if not isinstance(location, dict):
                continue
            name = clean_place_name(location.get("name"))
            if not name or is_generic_location(name):
                continue
            queries.append(
                POIQuery(
                    name=name,
                    city=location.get("city") or city,
                    country=location.get("country") or country,
                    category=activity.get("category") or None,
                )
            )
        return _dedupe(queries)


class LLMPOIExtractor:
    """Ask a chat model to list the places an itinerary visits.

    Falls back to :class:`LocationFieldExtractor` when the model is not
    configured or answers with something that is not the expected JSON.
    """

    def __init__(self, client: Any = None, *, model: Optional[str] = None, fallback: Any = None):
        if client is None:
            api_key = os.getenv("OPENAI_API_KEY")
            if api_key:
                client = OpenAI(api_key=api_key)
            else:
                logger.warning("OpenAI client unavailable; POI extraction uses activity location fields")
        self.client = client
        self.model = model or os.getenv("POI_EXTRACTOR_MODEL", "gpt-4o-mini")
        self.fallback = fallback or LocationFieldExtractor()

    async def extract(
        self, activities: List[Dict[str, Any]], trip_context: Optional[Dict[str, Any]] = None
    ) -> List[POIQuery]:
        if self.client is None or not activities:
            return await self.fallback.extract(activities, trip_context)

        city, country = resolve_destination(trip_context)
        prompt = USER_TEMPLATE.format(
            city=city or "unspecified",
            country=country or "unspecified",
            activities=_format_activities(activities),
        )
        logger.info("Invoking LLM model %s for POI extraction (%d activities)", self.model, len(activities))
        resp = await asyncio.to_thread(
            self.client.chat.completions.create,
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=0.0,
            response_format={"type": "json_object"},
        )

        raw = resp.choices[0].message.content or ""
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("LLM POI extraction returned non-JSON payload; using location fields")
            return await self.fallback.extract(activities, trip_context)

        items = payload.get("pois") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            return await self.fallback.extract(activities, trip_context)

        queries: List[POIQuery] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                query = POIQuery.model_validate(
                    {
                        "name": clean_place_name(item.get("name")),
                        "city": item.get("city") or city,
                        "country": item.get("country") or country,
                        "category": item.get("category") or None,
                    }
                )
            except ValidationError:
                continue
            if query.name and not is_generic_location(query.name):
                queries.append(query)
        return _dedupe(queries)


def _format_activities(activities: List[Dict[str, Any]]) -> str:
    lines = []
    for i, activity in enumerate(activities, 1):
        title = activity.get("title") or ""
        description = (activity.get("description") or "")[:300]
        location = activity.get("location") or {}
        where = location.get("name") if isinstance(location, dict) else ""
        lines.append(f"[{i}] {title} | {description} | location: {where or 'n/a'}")
    return "\n".join(lines)
