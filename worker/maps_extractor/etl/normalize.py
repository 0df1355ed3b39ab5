"""Text clean-up helpers applied to every free-text field before it is stored."""

import math
import re
from typing import Any, Optional

_PICTOGRAPHS = re.compile(r"[\U0001F000-\U0001FFFF\u2100-\u2BFF\u2E00-\u2FFF\uFE00-\uFE0F\u200D]")
_SPACES = re.compile(r"[\t\n\r\u00A0\u1680\u2000-\u200A\u2028\u2029\u202F\u205F\u3000]")
_CONTROL = re.compile(r"[\u0000-\u001F\u007F-\u009F\u00AD\u180E\u200B-\u200F\u202A-\u202E\u2060-\u206F\uFEFF]")
_DASHES = re.compile(r"[\u2010-\u2015\u2212]")
# Everything outside printable ASCII, Latin-1 and Latin Extended-A/B.
_NON_LATIN = re.compile(r"[^\u0020-\u007E\u00A0-\u00FF\u0100-\u017F\u0180-\u024F]")
_COPY_HOURS = re.compile(r",?\s*Copy open hours?", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")

_BULLET_CHARS = "\u00b7\u2022"
_HOURS_BOILERPLATE = (
    re.compile(rf"[{_BULLET_CHARS}]\s*See more hours?", re.IGNORECASE),
    re.compile(rf"See more hours?[{_BULLET_CHARS}]?", re.IGNORECASE),
    re.compile(rf"[{_BULLET_CHARS},]?\s*Copy open hours?", re.IGNORECASE),
    re.compile(rf"^Open\s*[{_BULLET_CHARS}]\s*", re.IGNORECASE),
    re.compile(rf"Closes soon\s*[{_BULLET_CHARS}]\s*", re.IGNORECASE),
    re.compile(rf"[{_BULLET_CHARS}]\s*Opens \d+\s*[AP]M \w+", re.IGNORECASE),
)
_BULLETS = re.compile(rf"[{_BULLET_CHARS}]+")
_SEPARATOR = "\u00b7"
_HOURS_EDGES = " ," + _BULLET_CHARS

_LRM = "\u200e"
_DECIMAL = re.compile(r"(\d+(?:[.,]\d+)?)")
_NUMERIC_RUN = re.compile(r"\d[\d,. ]*")


def _strip_invisible(text: str) -> str:
    text = _DASHES.sub("-", text)
    text = _SPACES.sub(" ", text)
    text = _PICTOGRAPHS.sub("", text)
    return _CONTROL.sub("", text)


def _remove_until_stable(text: str, patterns) -> str:
    while True:
        previous = text
        for pattern in patterns:
            text = pattern.sub("", text)
        if text == previous:
            return text


def normalize_text(raw: Any) -> str:
    """Strip pictographs, control characters and boilerplate; collapse whitespace.

    Total and idempotent: ``None`` or non-string input yields ``""``.
    """
    if not raw or not isinstance(raw, str):
        return ""
    text = _NON_LATIN.sub("", _strip_invisible(raw))
    text = _WHITESPACE.sub(" ", text)
    text = _remove_until_stable(text, (_COPY_HOURS,))
    return _WHITESPACE.sub(" ", text).strip()


def normalize_hours(raw: Any) -> str:
    """Canonical opening-hours string: no boilerplate, one separator character."""
    if not raw or not isinstance(raw, str):
        return ""
    text = _WHITESPACE.sub(" ", _strip_invisible(raw))
    # Edge separators can hide a leading "Open ·", so strip and clean until stable.
    while True:
        previous = text
        text = _remove_until_stable(text.strip(_HOURS_EDGES), _HOURS_BOILERPLATE)
        text = _NON_LATIN.sub("", _BULLETS.sub(_SEPARATOR, text))
        text = _WHITESPACE.sub(" ", text).strip(_HOURS_EDGES)
        if text == previous:
            return text


def clean_or_none(raw: Any) -> Optional[str]:
    cleaned = normalize_text(raw)
    return cleaned or None


def parse_rating(raw: Any) -> Optional[float]:
    """First decimal number in ``raw`` when it lies in [0, 5]; otherwise ``None``."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        match = _DECIMAL.search(str(raw).replace(_LRM, ""))
        if not match:
            return None
        try:
            value = float(match.group(1).replace(",", "."))
        except ValueError:
            return None
    if not math.isfinite(value) or value < 0 or value > 5:
        return None
    return value


def parse_review_count(raw: Any) -> Optional[int]:
    """Digits of the first numeric run in ``raw`` (``"(1,234)"`` -> 1234)."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw >= 0 else None
    if isinstance(raw, float):
        return int(raw) if math.isfinite(raw) and raw >= 0 else None

    text = _SPACES.sub(" ", str(raw))
    match = _NUMERIC_RUN.search(text)
    if not match:
        return None
    digits = "".join(ch for ch in match.group(0) if ch.isdigit())
    if not digits:
        return None
    return int(digits)
