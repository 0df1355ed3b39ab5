"""Per-place strategy selection: structured data first, browser rendering last.

State machine for one request::

    START -> TRY_STRUCTURED -> TRY_FETCH_FAST -> TRY_RENDERED -> DONE | REJECTED

The cheap fetch feeds both the structured pass and the static DOM pass. A full
browser render only happens when neither produced a name, including when the
cheap fetch itself failed with a transient error.
"""

from __future__ import annotations

import enum
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from maps_extractor.core.config import Settings
from maps_extractor.core.identity import Identity
from maps_extractor.etl.transform import build_record
from maps_extractor.extractors.document import SoupDocument
from maps_extractor.extractors.rendered import collect_reviews, extract_from_document
from maps_extractor.extractors.structured import extract_structured, is_sufficient
from maps_extractor.models import (
    Challenged,
    ExtractionOutcome,
    ExtractionRequest,
    PartialFailure,
    PartialRecord,
    Success,
    TransientFailure,
)
from maps_extractor.vendors.gateway import ChallengeDetected, FetchRenderGateway, GatewayError

logger = logging.getLogger(__name__)

NO_NAME = "no-name"
TIMEOUT = "timeout"


class Stage(enum.Enum):
    START = "start"
    TRY_STRUCTURED = "try_structured"
    TRY_FETCH_FAST = "try_fetch_fast"
    TRY_RENDERED = "try_rendered"
    DONE = "done"
    REJECTED = "rejected"


class Deadline:
    """Wall-clock budget for one request."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        return self.remaining() <= 0.0


def merge_partials(*records: Optional[PartialRecord]) -> Optional[PartialRecord]:
    """Field-wise merge; earlier records win over later ones."""
    merged: Optional[PartialRecord] = None
    for record in records:
        if record is None:
            continue
        merged = record.merge(None) if merged is None else merged.merge(record)
    return merged


class ExtractionCoordinator:
    """Decides which extractor runs for a request and when a result is good enough."""

    def __init__(self, gateway: FetchRenderGateway, settings: Optional[Settings] = None) -> None:
        self.gateway = gateway
        self.settings = settings or Settings()

    def _enter(self, request: ExtractionRequest, stage: Stage) -> None:
        logger.debug("%s -> %s", request.identifier, stage.value)

    def extract(
        self,
        request: ExtractionRequest,
        identity: Identity,
        deadline: Optional[Deadline] = None,
    ) -> ExtractionOutcome:
        """Produce one outcome for ``request`` using ``identity`` for every transport call."""
        deadline = deadline or Deadline(self.settings.request_timeout)
        self._enter(request, Stage.START)

        structured: Optional[PartialRecord] = None
        fast: Optional[PartialRecord] = None
        final_url = request.identifier

        self._enter(request, Stage.TRY_STRUCTURED)
        try:
            cheap = self.gateway.fetch_cheap(request.identifier, identity, timeout=deadline.remaining())
        except ChallengeDetected as exc:
            logger.warning("Challenge on cheap fetch for %s: %s", request.identifier, exc)
            return Challenged(str(exc))
        except GatewayError as exc:
            logger.info("Cheap fetch failed for %s (%s); escalating to render", request.identifier, exc)
            cheap = None

        if cheap is not None:
            final_url = cheap.final_url
            structured = extract_structured(cheap.body)
            if is_sufficient(structured):
                return self._finish(structured, request, final_url, document=None)

            if deadline.expired():
                return TransientFailure(TIMEOUT)
            self._enter(request, Stage.TRY_FETCH_FAST)
            fast = extract_from_document(SoupDocument(cheap.body, cheap.final_url), request.include_images)
            merged = merge_partials(structured, fast)
            if is_sufficient(merged):
                return self._finish(merged, request, final_url, document=None)

        if deadline.expired():
            return TransientFailure(TIMEOUT)

        self._enter(request, Stage.TRY_RENDERED)
        try:
            rendered = self.gateway.render_full(request.identifier, identity, timeout=deadline.remaining())
        except ChallengeDetected as exc:
            logger.warning("Challenge on render for %s: %s", request.identifier, exc)
            return Challenged(str(exc))
        except GatewayError as exc:
            logger.warning("Render failed for %s: %s", request.identifier, exc)
            return TransientFailure(str(exc))

        try:
            rendered_structured = extract_structured(rendered.body)
            rendered_dom = extract_from_document(rendered.document, request.include_images)
            merged = merge_partials(structured, rendered_structured, rendered_dom, fast)
            if not is_sufficient(merged):
                self._enter(request, Stage.REJECTED)
                logger.warning("Skipping business with no name: %s", request.identifier)
                return PartialFailure(NO_NAME)
            return self._finish(merged, request, rendered.final_url, document=rendered.document)
        finally:
            rendered.close()

    def _finish(self, merged: PartialRecord, request: ExtractionRequest, final_url: str, document) -> ExtractionOutcome:
        if request.include_reviews and (merged.review_count or 0) > 0 and not merged.reviews:
            if document is not None:
                try:
                    merged.reviews = collect_reviews(document)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Failed to extract reviews for %s: %s", request.identifier, exc)
            else:
                logger.debug("No live page for %s; reviews limited to structured data", request.identifier)

        record = build_record(merged, request, final_url=final_url, scraped_at=datetime.now(timezone.utc))
        if record is None:
            self._enter(request, Stage.REJECTED)
            return PartialFailure(NO_NAME)
        self._enter(request, Stage.DONE)
        return Success(record)
