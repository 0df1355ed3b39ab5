"""Postgres sink for extracted places."""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Optional

from psycopg2 import extras, pool

from maps_extractor.core.ledger import canonicalize
from maps_extractor.core.sink import DatasetSink
from maps_extractor.models import BusinessRecord, FailureRecord

logger = logging.getLogger(__name__)


def _prepare_params(record: BusinessRecord) -> Dict[str, Any]:
    return {
        "place_key": canonicalize(record.url),
        "name": record.name,
        "category": record.category,
        "address": record.address,
        "city": record.city,
        "postal_code": record.postal_code,
        "country": record.country,
        "phone": record.phone,
        "website": record.website,
        "rating": record.rating,
        "reviews": record.review_count,
        "lng": record.longitude,
        "lat": record.latitude,
        "hours": record.hours,
        "images": extras.Json(record.images or []),
        "review_snippets": extras.Json(record.reviews or []),
        "url": record.url,
        "search_query": record.search_query,
        "scraped_at": record.scraped_at,
        "strategy": record.strategy,
    }


_UPSERT_PLACE = """
INSERT INTO places (
    place_key,
    name,
    category,
    address,
    city,
    postal_code,
    country,
    phone,
    website,
    rating,
    reviews,
    location,
    hours,
    images,
    review_snippets,
    url,
    search_query,
    scraped_at,
    strategy,
    updated_at
) VALUES (
    %(place_key)s,
    %(name)s,
    %(category)s,
    %(address)s,
    %(city)s,
    %(postal_code)s,
    %(country)s,
    %(phone)s,
    %(website)s,
    %(rating)s,
    %(reviews)s,
    CASE WHEN %(lng)s IS NOT NULL AND %(lat)s IS NOT NULL THEN
        ST_SetSRID(ST_MakePoint(%(lng)s, %(lat)s), 4326)::geography
    ELSE NULL END,
    %(hours)s,
    %(images)s,
    %(review_snippets)s,
    %(url)s,
    %(search_query)s,
    %(scraped_at)s,
    %(strategy)s,
    NOW()
)
ON CONFLICT (place_key) DO UPDATE SET
    name = EXCLUDED.name,
    category = COALESCE(EXCLUDED.category, places.category),
    address = COALESCE(EXCLUDED.address, places.address),
    city = COALESCE(EXCLUDED.city, places.city),
    postal_code = COALESCE(EXCLUDED.postal_code, places.postal_code),
    country = COALESCE(EXCLUDED.country, places.country),
    phone = COALESCE(EXCLUDED.phone, places.phone),
    website = COALESCE(EXCLUDED.website, places.website),
    rating = EXCLUDED.rating,
    reviews = EXCLUDED.reviews,
    location = COALESCE(EXCLUDED.location, places.location),
    hours = COALESCE(EXCLUDED.hours, places.hours),
    images = EXCLUDED.images,
    review_snippets = EXCLUDED.review_snippets,
    search_query = EXCLUDED.search_query,
    scraped_at = EXCLUDED.scraped_at,
    strategy = EXCLUDED.strategy,
    updated_at = NOW();
"""

_INSERT_FAILURE = """
INSERT INTO place_failures (url, search_query, reason, failed_at)
VALUES (%(url)s, %(search_query)s, %(reason)s, %(failed_at)s);
"""


class PostgresSink(DatasetSink):
    """Upserts records into ``places`` and appends failures to ``place_failures``."""

    def __init__(self, database_url: str, minconn: int = 1, maxconn: int = 5) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for database connections")
        self.database_url = database_url
        self.minconn = minconn
        self.maxconn = maxconn
        self._pool: Optional[pool.ThreadedConnectionPool] = None
        self._lock = threading.Lock()

    def init_pool(self) -> pool.ThreadedConnectionPool:
        """Initialise and return the shared connection pool."""
        with self._lock:
            if self._pool is None:
                self._pool = pool.ThreadedConnectionPool(
                    self.minconn,
                    self.maxconn,
                    dsn=self.database_url,
                    connect_timeout=10,
                )
                logger.info("Database connection pool initialised")
            return self._pool

    @contextmanager
    def get_connection(self):
        """Context manager yielding a pooled connection."""
        pg_pool = self.init_pool()
        conn = pg_pool.getconn()
        try:
            yield conn
        finally:
            pg_pool.putconn(conn)

    def push_record(self, record: BusinessRecord) -> None:
        params = _prepare_params(record)
        if not params["name"] or not params["place_key"]:
            raise ValueError("name and url are required for upsert")
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_UPSERT_PLACE, params)
            conn.commit()
        logger.debug("Upserted place %s", params["name"])

    def push_failure(self, failure: FailureRecord) -> None:
        params = {
            "url": failure.identifier,
            "search_query": failure.query,
            "reason": failure.reason,
            "failed_at": failure.timestamp,
        }
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_INSERT_FAILURE, params)
            conn.commit()

    def push(self, item: Dict[str, Any]) -> None:
        raise NotImplementedError("PostgresSink stores typed records; use push_record/push_failure")

    def close(self) -> None:
        with self._lock:
            if self._pool is not None:
                self._pool.closeall()
                self._pool = None
