"""Configuration helpers for the place extraction worker.

Every knob comes from the environment (optionally via a ``.env`` file) so the
same image can run against different proxy pools and sinks. Values that
would make a run meaningless raise ``ConfigError`` before any page is
requested.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, List, Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

MAX_RESULTS_LIMIT = 500
MAX_CONCURRENCY_LIMIT = 50
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(RuntimeError):
    """Raised when configuration is missing or outside accepted ranges."""


@dataclass(frozen=True)
class Settings:
    queries: Tuple[str, ...] = ()
    max_results: int = 20
    language: str = "en"
    max_concurrency: int = 5
    request_timeout: float = 120.0
    fetch_timeout: float = 15.0
    navigation_timeout: float = 60.0
    include_reviews: bool = False
    include_images: bool = True
    proxy_urls: Tuple[str, ...] = ()
    max_retries: int = 3
    max_challenge_retries: int = 2
    identity_max_uses: int = 3
    identity_max_errors: int = 2
    output_path: str = "data/places.jsonl"
    ingest_api_url: Optional[str] = None
    database_url: Optional[str] = None
    headless: bool = True


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean flag, got {raw!r}")


def _split(raw: Optional[str], sep: str) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(sep) if part.strip())


def validate_queries(queries: Iterable[Optional[str]]) -> Tuple[str, ...]:
    """Strip queries, drop blank ones and fail when nothing usable remains."""
    queries = list(queries or [])
    if not queries:
        raise ConfigError('At least one search query is required. Example: "restaurants in New York"')
    valid = tuple(q.strip() for q in queries if q and q.strip())
    if not valid:
        raise ConfigError("All search queries are empty. Provide valid search terms.")
    return valid


def validate_settings(settings: Settings, *, require_queries: bool = True) -> Settings:
    """Range-check a settings object; returns it unchanged when valid."""
    if require_queries:
        validate_queries(settings.queries)
    if not 1 <= settings.max_results <= MAX_RESULTS_LIMIT:
        raise ConfigError(f"max_results must be between 1 and {MAX_RESULTS_LIMIT}")
    if not 1 <= settings.max_concurrency <= MAX_CONCURRENCY_LIMIT:
        raise ConfigError(f"max_concurrency must be between 1 and {MAX_CONCURRENCY_LIMIT}")
    for name in ("request_timeout", "fetch_timeout", "navigation_timeout"):
        if getattr(settings, name) <= 0:
            raise ConfigError(f"{name} must be positive")
    for name in ("max_retries", "max_challenge_retries"):
        if getattr(settings, name) < 0:
            raise ConfigError(f"{name} must not be negative")
    for name in ("identity_max_uses", "identity_max_errors"):
        if getattr(settings, name) < 1:
            raise ConfigError(f"{name} must be at least 1")
    bad_proxies: List[str] = [p for p in settings.proxy_urls if "://" not in p]
    if bad_proxies:
        raise ConfigError(f"Proxy URLs need a scheme (http://, socks5://): {', '.join(bad_proxies)}")
    return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load, validate and cache worker settings to avoid repeated env lookups.

    Queries are not required here; the CLI may still supply them.
    """
    load_dotenv()

    settings = Settings(
        queries=_split(os.getenv("MAPS_QUERIES"), "|"),
        max_results=_get_int("MAPS_MAX_RESULTS", 20),
        language=(os.getenv("MAPS_LANGUAGE") or "en").strip(),
        max_concurrency=_get_int("MAPS_MAX_CONCURRENCY", 5),
        request_timeout=_get_float("MAPS_REQUEST_TIMEOUT", 120.0),
        fetch_timeout=_get_float("MAPS_FETCH_TIMEOUT", 15.0),
        navigation_timeout=_get_float("MAPS_NAVIGATION_TIMEOUT", 60.0),
        include_reviews=_get_bool("MAPS_INCLUDE_REVIEWS", False),
        include_images=_get_bool("MAPS_INCLUDE_IMAGES", True),
        proxy_urls=_split(os.getenv("MAPS_PROXY_URLS"), ","),
        max_retries=_get_int("MAPS_MAX_RETRIES", 3),
        max_challenge_retries=_get_int("MAPS_MAX_CHALLENGE_RETRIES", 2),
        identity_max_uses=_get_int("MAPS_IDENTITY_MAX_USES", 3),
        identity_max_errors=_get_int("MAPS_IDENTITY_MAX_ERRORS", 2),
        output_path=os.getenv("MAPS_OUTPUT_PATH") or "data/places.jsonl",
        ingest_api_url=os.getenv("INGEST_API_URL") or None,
        database_url=os.getenv("DATABASE_URL") or None,
        headless=_get_bool("MAPS_HEADLESS", True),
    )

    if not settings.proxy_urls:
        logger.warning("MAPS_PROXY_URLS is not set; all identities share the host IP address.")

    return validate_settings(settings, require_queries=False)
