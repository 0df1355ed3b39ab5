"""Field-by-field extraction from a place page's DOM.

Each field has an ordered list of independent probes (attribute reads and
text reads over different selectors). The first probe whose value survives
parsing wins; a field is only reported missing after every probe failed.
Selector lists drift with the site's markup and are expected to be updated.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Dict, List, Optional, Sequence

from maps_extractor.etl.normalize import (
    clean_or_none,
    normalize_hours,
    normalize_text,
    parse_rating,
    parse_review_count,
)
from maps_extractor.models import PartialRecord

logger = logging.getLogger(__name__)

MAX_IMAGES = 5
MAX_REVIEWS = 10
REVIEWS_TAB_WAIT_MS = 2000

Probe = Callable[[object], Optional[str]]

_ARIA_PREFIX = re.compile(r"^\s*(?:address|phone|website|hours)\s*:\s*", re.IGNORECASE)
_TIME_OF_DAY = re.compile(r"\d{1,2}.*[AP]M", re.IGNORECASE)
_CSS_URL = re.compile(r"url\(\s*['\"]?([^'\")]+)['\"]?\s*\)")


def text_probe(selector: str) -> Probe:
    def probe(document) -> Optional[str]:
        return document.first_text(selector)

    probe.__name__ = f"text({selector})"
    return probe


def attr_probe(selector: str, attr: str, *, strip_prefix: str = "") -> Probe:
    def probe(document) -> Optional[str]:
        value = document.first_attr(selector, attr)
        if value and strip_prefix and value.lower().startswith(strip_prefix):
            value = value[len(strip_prefix):]
        return value

    probe.__name__ = f"attr({selector}[{attr}])"
    return probe


def aria_probe(selector: str) -> Probe:
    """aria-label of ``selector`` with a leading ``Address:``-style prefix removed."""

    def probe(document) -> Optional[str]:
        value = document.first_attr(selector, "aria-label")
        return _ARIA_PREFIX.sub("", value) if value else None

    probe.__name__ = f"aria({selector})"
    return probe


def pattern_probe(selector: str, pattern: re.Pattern) -> Probe:
    def probe(document) -> Optional[str]:
        return document.find_text(selector, pattern)

    probe.__name__ = f"pattern({selector}~{pattern.pattern})"
    return probe


def _og_title(document) -> Optional[str]:
    value = document.first_attr('meta[property="og:title"]', "content")
    if not value:
        return None
    # "Name · Street, City" on place pages.
    return value.split("\u00b7")[0].strip() or None


FIELD_PROBES: Dict[str, Sequence[Probe]] = {
    "name": (
        text_probe("h1"),
        text_probe("h1 span"),
        text_probe('div[role="main"] h1'),
        attr_probe('div[role="main"][aria-label]', "aria-label"),
        _og_title,
    ),
    "category": (
        text_probe('button[jsaction*="category"]'),
        text_probe('button[aria-label*="Category"]'),
        text_probe('button[class*="DkEaL"]'),
        text_probe('div[role="main"] button:nth-of-type(1)'),
    ),
    "rating": (
        text_probe('div[role="article"] span[aria-hidden="true"]'),
        attr_probe('span[aria-label*="stars"]', "aria-label"),
        text_probe('span[aria-label*="stars"]'),
        text_probe("span.ceNzKf"),
        text_probe('div.F7nice span[aria-hidden="true"]'),
        text_probe("span.MW4etd"),
        text_probe('div[class*="fontDisplayLarge"]'),
    ),
    "review_count": (
        text_probe('button[aria-label*="review"]'),
        attr_probe('button[aria-label*="reviews"]', "aria-label"),
        text_probe("div.F7nice span:last-child"),
        text_probe("span.UY7F9"),
        text_probe('button[jsaction*="reviews"]'),
        attr_probe('span[aria-label*="reviews"]', "aria-label"),
    ),
    "address": (
        text_probe('button[data-item-id="address"]'),
        aria_probe('button[aria-label*="Address"]'),
        aria_probe('button[aria-label*="address"]'),
        text_probe('[data-item-id="address"] div[class*="fontBody"]'),
        aria_probe('button[data-tooltip*="Copy address"]'),
    ),
    "phone": (
        text_probe('button[data-item-id*="phone"]'),
        aria_probe('button[aria-label*="Phone"]'),
        attr_probe('a[href^="tel:"]', "href", strip_prefix="tel:"),
        aria_probe('button[data-tooltip*="Copy phone number"]'),
    ),
    "website": (
        attr_probe('a[data-item-id="authority"]', "href"),
        attr_probe('a[aria-label*="Website"]', "href"),
        attr_probe('a[data-tooltip*="Open website"]', "href"),
    ),
    # Attribute first, then nested text, then any time-of-day looking text.
    "hours": (
        attr_probe('button[data-item-id*="hours"]', "aria-label"),
        attr_probe('div[data-item-id*="hours"]', "aria-label"),
        text_probe('div[data-item-id*="hours"] .fontBodyMedium'),
        attr_probe('button[aria-label*="hours" i]', "aria-label"),
        attr_probe('div[aria-label*="hours" i]', "aria-label"),
        text_probe('table[aria-label*="hours" i]'),
        pattern_probe('div[role="region"]', _TIME_OF_DAY),
        pattern_probe('div[role="main"]', _TIME_OF_DAY),
    ),
}

_FOREGROUND_IMAGES = (
    'button[aria-label*="Photo"] img',
    'div[role="img"] img',
    'button[jsaction*="heroHeaderImage"] img',
)
_BACKGROUND_IMAGES = (
    'div[role="img"][style*="background-image"]',
    'button[aria-label*="Photo"] div[style*="background-image"]',
)

_REVIEW_TABS = (
    'button[aria-label*="Reviews"]',
    'button[role="tab"][aria-label*="review" i]',
)
_REVIEW_TEXTS = (
    "div[data-review-id] span[lang]",
    "div[data-review-id] .wiI7pd",
)


def first_value(
    document,
    probes: Sequence[Probe],
    parse: Callable[[Optional[str]], object] = clean_or_none,
):
    """Run ``probes`` in order and return the first value ``parse`` accepts."""
    for probe in probes:
        try:
            raw = probe(document)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Probe %s raised %s", getattr(probe, "__name__", probe), exc)
            continue
        if not raw:
            continue
        value = parse(raw)
        if value is not None and value != "":
            return value
    return None


def _hours_or_none(raw: Optional[str]) -> Optional[str]:
    return normalize_hours(raw) or None


def _absolute_or_none(raw: Optional[str]) -> Optional[str]:
    value = (raw or "").strip()
    return value if value.startswith("http") else None


def collect_images(document, limit: int = MAX_IMAGES) -> List[str]:
    """Absolute photo URLs: ``<img src>`` first, CSS ``background-image`` second."""
    images: List[str] = []

    def add(url: Optional[str]) -> bool:
        url = _absolute_or_none(url)
        if url and url not in images:
            images.append(url)
        return len(images) >= limit

    for selector in _FOREGROUND_IMAGES:
        for src in document.all_attrs(selector, "src"):
            if add(src):
                return images
    for selector in _BACKGROUND_IMAGES:
        for style in document.all_attrs(selector, "style"):
            for url in _CSS_URL.findall(style):
                if add(url):
                    return images
    return images


def extract_from_document(document, include_images: bool = True) -> PartialRecord:
    """Best-effort record from a rendered page. Never raises; fields degrade to ``None``."""
    record = PartialRecord(
        name=first_value(document, FIELD_PROBES["name"]),
        category=first_value(document, FIELD_PROBES["category"]),
        rating=first_value(document, FIELD_PROBES["rating"], parse_rating),
        review_count=first_value(document, FIELD_PROBES["review_count"], parse_review_count),
        address=first_value(document, FIELD_PROBES["address"]),
        phone=first_value(document, FIELD_PROBES["phone"]),
        website=first_value(document, FIELD_PROBES["website"], _absolute_or_none),
        hours=first_value(document, FIELD_PROBES["hours"], _hours_or_none),
        source="rendered_dom",
    )
    if include_images:
        try:
            record.images = collect_images(document)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Image collection failed: %s", exc)
    if not record.name:
        logger.debug("No name-bearing element found on %s", getattr(document, "url", "?"))
    return record


def collect_reviews(document, limit: int = MAX_REVIEWS) -> List[str]:
    """Open the reviews tab when possible and read up to ``limit`` review texts."""
    texts: List[str] = []
    for tab in _REVIEW_TABS:
        if document.click(tab):
            document.wait(REVIEWS_TAB_WAIT_MS)
            break
    for selector in _REVIEW_TEXTS:
        for raw in document.all_texts(selector):
            text = normalize_text(raw)
            if text and text not in texts:
                texts.append(text)
            if len(texts) >= limit:
                return texts
        if texts:
            break
    return texts
