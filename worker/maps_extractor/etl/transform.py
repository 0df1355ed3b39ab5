"""Utilities for turning merged extraction results into dataset rows."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from maps_extractor.etl.geo import decode_coords, valid_pair
from maps_extractor.etl.normalize import clean_or_none, normalize_hours, parse_rating, parse_review_count
from maps_extractor.models import BusinessRecord, ExtractionRequest, FailureRecord, PartialRecord

logger = logging.getLogger(__name__)

MAX_IMAGES = 5
MAX_REVIEWS = 10


def _clean_list(values: Iterable[Any], limit: int) -> List[str]:
    cleaned: List[str] = []
    for value in values or []:
        text = clean_or_none(value)
        if text and text not in cleaned:
            cleaned.append(text)
        if len(cleaned) >= limit:
            break
    return cleaned


def _absolute_urls(values: Iterable[Any], limit: int) -> List[str]:
    return [url for url in _clean_list(values, limit * 2) if url.startswith("http")][:limit]


def resolve_coordinates(partial: PartialRecord, *urls: Optional[str]):
    """Coordinates from the record itself, else decoded from the first URL that carries them."""
    coords = valid_pair(partial.latitude, partial.longitude)
    if coords is not None:
        return coords
    for url in urls:
        coords = decode_coords(url)
        if coords is not None:
            return coords
    return None


def build_record(
    partial: Optional[PartialRecord],
    request: ExtractionRequest,
    *,
    final_url: Optional[str] = None,
    scraped_at: Optional[datetime] = None,
) -> Optional[BusinessRecord]:
    """Normalize every field of ``partial`` and wrap it as a ``BusinessRecord``.

    Returns ``None`` when no usable name survives normalization. Ratings and
    review counts outside their valid ranges are dropped, never clamped.
    """
    if partial is None:
        return None
    name = clean_or_none(partial.name)
    if not name:
        return None

    coords = resolve_coordinates(partial, final_url, request.identifier)
    record = BusinessRecord(
        name=name,
        url=request.identifier,
        search_query=request.query,
        scraped_at=scraped_at or datetime.now(timezone.utc),
        category=clean_or_none(partial.category),
        address=clean_or_none(partial.address),
        city=clean_or_none(partial.city),
        postal_code=clean_or_none(partial.postal_code),
        country=clean_or_none(partial.country),
        phone=clean_or_none(partial.phone),
        website=clean_or_none(partial.website),
        rating=parse_rating(partial.rating),
        review_count=parse_review_count(partial.review_count),
        latitude=coords.latitude if coords else None,
        longitude=coords.longitude if coords else None,
        hours=normalize_hours(partial.hours) or None,
        images=_absolute_urls(partial.images, MAX_IMAGES) if request.include_images else [],
        reviews=_clean_list(partial.reviews, MAX_REVIEWS) if request.include_reviews else [],
        strategy=partial.source,
    )
    return record


def _isoformat(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def to_dataset_item(record: BusinessRecord) -> Dict[str, Any]:
    """Dataset row for a successful extraction; empty optional fields are omitted."""
    item: Dict[str, Any] = {
        "name": record.name,
        "category": record.category,
        "address": record.address,
        "city": record.city,
        "postalCode": record.postal_code,
        "country": record.country,
        "phone": record.phone,
        "website": record.website,
        "rating": record.rating,
        "reviewsCount": record.review_count,
        "latitude": record.latitude,
        "longitude": record.longitude,
        "hours": record.hours,
        "images": record.images or None,
        "reviews": record.reviews or None,
    }
    item = {key: value for key, value in item.items() if value is not None}
    item["url"] = record.url
    item["searchQuery"] = record.search_query
    item["scrapedAt"] = _isoformat(record.scraped_at)
    item["strategy"] = record.strategy
    return item


def to_failure_item(failure: FailureRecord) -> Dict[str, Any]:
    """Dataset row for a terminal failure, marked with ``error: True``."""
    return {
        "error": True,
        "url": failure.identifier,
        "query": failure.query,
        "errorMessage": failure.reason,
        "timestamp": _isoformat(failure.timestamp),
    }
