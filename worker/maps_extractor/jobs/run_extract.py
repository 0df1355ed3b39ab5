"""CLI job: discover places for search queries and extract a record for each."""

from __future__ import annotations

import argparse
import dataclasses
import logging
from typing import Iterator, List, Optional, Sequence, Set

from maps_extractor.core.config import ConfigError, Settings, get_settings, validate_queries, validate_settings
from maps_extractor.core.coordinator import ExtractionCoordinator
from maps_extractor.core.identity import IdentityManager
from maps_extractor.core.ledger import DeduplicationLedger
from maps_extractor.core.pipeline import ExtractionPipeline, RunStats
from maps_extractor.core.sink import DatasetSink, build_sink
from maps_extractor.models import Challenged, ExtractionRequest, TransientFailure
from maps_extractor.vendors.gateway import ChallengeDetected, FetchRenderGateway, GatewayError

logger = logging.getLogger(__name__)

DIRECT_QUERY = "direct"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Extract business listings from maps search results.")
    parser.add_argument("-q", "--query", dest="queries", action="append", default=[], help="Search query, repeatable")
    parser.add_argument(
        "--place",
        dest="places",
        action="append",
        default=[],
        help="Place URL to extract directly without discovery, repeatable",
    )
    parser.add_argument("--max-results", type=int, help="Maximum places per query (1-500)")
    parser.add_argument("--language", help="Interface language hint, e.g. 'en'")
    parser.add_argument("--concurrency", type=int, help="Maximum extractions in flight")
    parser.add_argument("--timeout", type=float, help="Per-request timeout in seconds")
    parser.add_argument("--reviews", action=argparse.BooleanOptionalAction, default=None, help="Collect review snippets")
    parser.add_argument("--images", action=argparse.BooleanOptionalAction, default=None, help="Collect image URLs")
    parser.add_argument("--proxy", dest="proxies", action="append", default=[], help="Proxy URL, repeatable")
    parser.add_argument("--output", help="JSON-lines output path")
    return parser


def settings_from_args(args: argparse.Namespace, base: Settings) -> Settings:
    """Overlay CLI flags on environment settings and validate the result."""
    overrides = {
        "queries": tuple(args.queries) or base.queries,
        "max_results": args.max_results,
        "language": args.language,
        "max_concurrency": args.concurrency,
        "request_timeout": args.timeout,
        "include_reviews": args.reviews,
        "include_images": args.images,
        "proxy_urls": tuple(args.proxies) or None,
        "output_path": args.output,
    }
    settings = dataclasses.replace(base, **{k: v for k, v in overrides.items() if v is not None})
    if settings.queries:
        settings = dataclasses.replace(settings, queries=validate_queries(settings.queries))
    return validate_settings(settings, require_queries=not args.places)


def discover_places(
    query: str,
    settings: Settings,
    gateway: FetchRenderGateway,
    identities: IdentityManager,
) -> List[str]:
    """Run the feed discovery for one query, rotating identity on failure."""
    failed: Set[str] = set()
    for attempt in range(1, settings.max_retries + 2):
        identity = identities.acquire_slot(exclude=failed)
        outcome = None
        try:
            return gateway.discover(query, identity, max_results=settings.max_results, language=settings.language)
        except ChallengeDetected as exc:
            outcome = Challenged(str(exc))
        except GatewayError as exc:
            outcome = TransientFailure(str(exc))
        finally:
            identities.release(identity, outcome)
        failed.add(identity.identity_id)
        logger.warning("Discovery attempt %d failed for query=%s: %s", attempt, query, outcome.reason)
    logger.error("Giving up on query=%s after %d attempts", query, settings.max_retries + 1)
    return []


def iter_requests(
    settings: Settings,
    gateway: FetchRenderGateway,
    identities: IdentityManager,
    places: Sequence[str] = (),
) -> Iterator[ExtractionRequest]:
    """Direct place URLs first, then the places discovered for each query."""

    def _request(identifier: str, query: str) -> ExtractionRequest:
        return ExtractionRequest(
            identifier=identifier,
            query=query,
            language=settings.language,
            include_reviews=settings.include_reviews,
            include_images=settings.include_images,
        )

    for place in places:
        if place and place.strip():
            yield _request(place.strip(), DIRECT_QUERY)

    for query in settings.queries:
        logger.info("Processing search: %s", query)
        for url in discover_places(query, settings, gateway, identities):
            yield _request(url, query)


def run_extraction(
    settings: Settings,
    *,
    places: Sequence[str] = (),
    sink: Optional[DatasetSink] = None,
    gateway: Optional[FetchRenderGateway] = None,
) -> RunStats:
    """Full pipeline: discovery, dedupe, bounded extraction, and dataset output."""
    logger.info("Queries: %d | Max results per query: %d", len(settings.queries), settings.max_results)
    logger.info("Include reviews: %s | Include images: %s", settings.include_reviews, settings.include_images)

    gateway = gateway or FetchRenderGateway(settings)
    sink = sink or build_sink(settings)
    identities = IdentityManager(
        settings.proxy_urls,
        max_concurrency=settings.max_concurrency,
        max_uses=settings.identity_max_uses,
        max_errors=settings.identity_max_errors,
        locale=settings.language,
    )
    pipeline = ExtractionPipeline(
        settings,
        ExtractionCoordinator(gateway, settings),
        identities,
        DeduplicationLedger(),
        sink,
    )
    try:
        return pipeline.run(iter_requests(settings, gateway, identities, places))
    finally:
        # Discovery renders on this thread.
        gateway.close()
        identities.close()
        sink.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = settings_from_args(args, get_settings())
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2

    try:
        stats = run_extraction(settings, places=args.places)
    except Exception as exc:  # pragma: no cover - CLI fallback
        logger.error("Extraction run failed: %s", exc, exc_info=True)
        return 1

    logger.info("Run finished: %s", stats.as_dict())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
