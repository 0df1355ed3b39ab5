"""JSON-LD parsing for place pages that ship schema.org business metadata."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterator, List, Optional

from bs4 import BeautifulSoup

from maps_extractor.etl.geo import valid_pair
from maps_extractor.etl.normalize import clean_or_none, normalize_text, parse_rating, parse_review_count
from maps_extractor.models import PartialRecord

logger = logging.getLogger(__name__)

MAX_IMAGES = 5
MAX_REVIEWS = 10

BUSINESS_TYPES = {
    "localbusiness",
    "restaurant",
    "foodestablishment",
    "cafeorcoffeeshop",
    "barorpub",
    "bakery",
    "fastfoodrestaurant",
    "store",
    "clothingstore",
    "grocerystore",
    "hardwarestore",
    "electronicsstore",
    "autorepair",
    "autodealer",
    "medicalbusiness",
    "medicalclinic",
    "dentist",
    "physician",
    "hospital",
    "pharmacy",
    "healthandbeautybusiness",
    "beautysalon",
    "hairsalon",
    "dayspa",
    "lodgingbusiness",
    "hotel",
    "professionalservice",
    "legalservice",
    "attorney",
    "accountingservice",
    "financialservice",
    "realestateagent",
    "homeandconstructionbusiness",
    "plumber",
    "electrician",
    "sportsactivitylocation",
    "exercisegym",
    "entertainmentbusiness",
}
# Too broad to be used as the record's category.
_GENERIC_TYPES = {"localbusiness", "organization", "place", "thing"}


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _types_of(node: Dict[str, Any]) -> List[str]:
    return [str(t).rsplit("/", 1)[-1] for t in _as_list(node.get("@type")) if t]


def iter_json_ld(payload: str) -> Iterator[Dict[str, Any]]:
    """Yield every JSON-LD object in ``payload``, flattening lists and ``@graph``."""
    if not payload:
        return
    soup = BeautifulSoup(payload, "html.parser")
    for tag in soup.find_all("script", type="application/ld+json"):
        raw = tag.string or tag.get_text() or ""
        try:
            blob = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Skipping malformed JSON-LD block (%d chars)", len(raw))
            continue
        stack = list(reversed(_as_list(blob)))
        while stack:
            item = stack.pop()
            if not isinstance(item, dict):
                continue
            graph = item.get("@graph")
            if isinstance(graph, list):
                stack.extend(reversed(graph))
            yield item


def find_business_block(payload: str) -> Optional[Dict[str, Any]]:
    for item in iter_json_ld(payload):
        if any(t.lower() in BUSINESS_TYPES for t in _types_of(item)):
            return item
    return None


def _address(value: Any) -> Dict[str, Optional[str]]:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, str):
        return {"address": clean_or_none(value)}
    if not isinstance(value, dict):
        return {}
    country = value.get("addressCountry")
    if isinstance(country, dict):
        country = country.get("name")
    parts = [
        value.get("streetAddress"),
        value.get("addressLocality"),
        value.get("addressRegion"),
        value.get("postalCode"),
        country,
    ]
    joined = ", ".join(normalize_text(str(p)) for p in parts if p and normalize_text(str(p)))
    return {
        "address": joined or None,
        "city": clean_or_none(value.get("addressLocality")),
        "postal_code": clean_or_none(value.get("postalCode")),
        "country": clean_or_none(country),
    }


def _hours(node: Dict[str, Any]) -> Optional[str]:
    plain = [normalize_text(h) for h in _as_list(node.get("openingHours")) if isinstance(h, str)]
    plain = [h for h in plain if h]
    if plain:
        return "; ".join(plain)

    entries = []
    for spec in _as_list(node.get("openingHoursSpecification")):
        if not isinstance(spec, dict):
            continue
        days = [str(d).rsplit("/", 1)[-1] for d in _as_list(spec.get("dayOfWeek")) if d]
        opens, closes = spec.get("opens"), spec.get("closes")
        if days and opens and closes:
            entries.append(f"{', '.join(days)} {opens}-{closes}")
    return "; ".join(entries) or None


def _images(value: Any) -> List[str]:
    urls: List[str] = []
    for item in _as_list(value):
        if isinstance(item, dict):
            item = item.get("url") or item.get("contentUrl")
        if isinstance(item, str) and item.startswith("http") and item not in urls:
            urls.append(item)
        if len(urls) >= MAX_IMAGES:
            break
    return urls


def _reviews(value: Any) -> List[str]:
    bodies: List[str] = []
    for item in _as_list(value):
        if not isinstance(item, dict):
            continue
        body = normalize_text(item.get("reviewBody") or item.get("description"))
        if body:
            bodies.append(body)
        if len(bodies) >= MAX_REVIEWS:
            break
    return bodies


def _category(node: Dict[str, Any]) -> Optional[str]:
    cuisine = _as_list(node.get("servesCuisine"))
    if cuisine and isinstance(cuisine[0], str):
        return clean_or_none(cuisine[0])
    for type_name in _types_of(node):
        if type_name.lower() not in _GENERIC_TYPES:
            return type_name
    return None


def _website(node: Dict[str, Any]) -> Optional[str]:
    for candidate in [node.get("url")] + _as_list(node.get("sameAs")):
        if isinstance(candidate, str) and candidate.startswith("http"):
            return candidate.strip()
    return None


def extract_structured(payload: Optional[str]) -> Optional[PartialRecord]:
    """Map the first recognised business block in ``payload`` to a partial record.

    Returns ``None`` when the payload carries no business block at all.
    """
    node = find_business_block(payload or "")
    if node is None:
        return None

    rating_node = node.get("aggregateRating")
    if not isinstance(rating_node, dict):
        rating_node = {}
    geo = node.get("geo") if isinstance(node.get("geo"), dict) else {}
    coords = valid_pair(geo.get("latitude"), geo.get("longitude"))

    record = PartialRecord(
        name=clean_or_none(node.get("name")),
        category=_category(node),
        phone=clean_or_none(node.get("telephone")),
        website=_website(node),
        rating=parse_rating(rating_node.get("ratingValue")),
        review_count=parse_review_count(rating_node.get("reviewCount") or rating_node.get("ratingCount")),
        latitude=coords.latitude if coords else None,
        longitude=coords.longitude if coords else None,
        hours=_hours(node),
        images=_images(node.get("image")),
        reviews=_reviews(node.get("review")),
        source="structured",
    )
    for key, value in _address(node.get("address")).items():
        setattr(record, key, value)
    return record


def is_sufficient(record: Optional[PartialRecord]) -> bool:
    """A record is good enough once it carries a non-empty normalized name."""
    return record is not None and bool(normalize_text(record.name))
