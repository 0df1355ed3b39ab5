"""Core data models shared by the place extraction pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import List, Optional, Union


@dataclass(frozen=True, slots=True)
class ExtractionRequest:
    """One admitted place identifier waiting to be extracted."""

    identifier: str
    query: str
    language: str = "en"
    include_reviews: bool = False
    include_images: bool = True


@dataclass(slots=True)
class PartialRecord:
    """Fields recovered by a single extraction strategy; every field may be missing."""

    name: Optional[str] = None
    category: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    hours: Optional[str] = None
    images: List[str] = field(default_factory=list)
    reviews: List[str] = field(default_factory=list)
    source: str = "unknown"

    def merge(self, other: Optional["PartialRecord"]) -> "PartialRecord":
        """Return a copy where fields missing here are filled from ``other``.

        ``self`` has priority. Coordinates are taken as a pair so a record never
        ends up with a latitude from one strategy and a longitude from another.
        """
        if other is None:
            return PartialRecord(**{f.name: getattr(self, f.name) for f in fields(self)})

        merged = PartialRecord(source=self.source)
        for f in fields(self):
            if f.name in {"source", "latitude", "longitude"}:
                continue
            mine = getattr(self, f.name)
            setattr(merged, f.name, mine if _has_value(mine) else getattr(other, f.name))

        if self.latitude is not None and self.longitude is not None:
            merged.latitude, merged.longitude = self.latitude, self.longitude
        elif other.latitude is not None and other.longitude is not None:
            merged.latitude, merged.longitude = other.latitude, other.longitude
        return merged


def _has_value(value: object) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list)):
        return len(value) > 0
    return True


@dataclass(slots=True)
class BusinessRecord:
    """Normalized listing emitted to the dataset sink."""

    name: str
    url: str
    search_query: str
    scraped_at: datetime
    category: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    hours: Optional[str] = None
    images: List[str] = field(default_factory=list)
    reviews: List[str] = field(default_factory=list)
    strategy: str = "unknown"


@dataclass(frozen=True, slots=True)
class FailureRecord:
    """Terminal failure for one identifier; stored next to successful records."""

    identifier: str
    query: str
    reason: str
    timestamp: datetime


@dataclass(frozen=True)
class Success:
    record: BusinessRecord


@dataclass(frozen=True)
class PartialFailure:
    """Content problem (for example no name). Logged and dropped, never retried."""

    reason: str


@dataclass(frozen=True)
class TransientFailure:
    """Timeout, non-200 or network error. Retried with a fresh identity."""

    reason: str


@dataclass(frozen=True)
class Challenged(TransientFailure):
    """Anti-bot challenge page. The identity that saw it must be retired."""


ExtractionOutcome = Union[Success, PartialFailure, TransientFailure]
