"""Bounded worker pool that drives admitted place identifiers through extraction."""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional, Set

from maps_extractor.core.config import Settings
from maps_extractor.core.coordinator import Deadline, ExtractionCoordinator
from maps_extractor.core.identity import IdentityManager
from maps_extractor.core.ledger import DeduplicationLedger
from maps_extractor.core.sink import DatasetSink
from maps_extractor.models import (
    Challenged,
    ExtractionOutcome,
    ExtractionRequest,
    FailureRecord,
    PartialFailure,
    Success,
    TransientFailure,
)

logger = logging.getLogger(__name__)


@dataclass
class RunStats:
    submitted: int = 0
    duplicates: int = 0
    saved: int = 0
    dropped: int = 0
    failed: int = 0
    challenges: int = 0
    retries: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class ExtractionPipeline:
    """Dedupe, queue and extract place identifiers with at most ``max_concurrency`` in flight.

    Discovery pushes into a queue sized ``2 * max_concurrency``; when workers
    fall behind, ``run`` blocks instead of buffering without bound.
    """

    def __init__(
        self,
        settings: Settings,
        coordinator: ExtractionCoordinator,
        identities: IdentityManager,
        ledger: DeduplicationLedger,
        sink: DatasetSink,
    ) -> None:
        self.settings = settings
        self.coordinator = coordinator
        self.identities = identities
        self.ledger = ledger
        self.sink = sink
        self.stats = RunStats()
        self._stats_lock = threading.Lock()

    def _count(self, name: str, amount: int = 1) -> None:
        with self._stats_lock:
            setattr(self.stats, name, getattr(self.stats, name) + amount)

    def run(self, requests: Iterable[ExtractionRequest]) -> RunStats:
        workers = self.settings.max_concurrency
        work: "queue.Queue[Optional[ExtractionRequest]]" = queue.Queue(maxsize=workers * 2)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="extract") as executor:
            futures = [executor.submit(self._worker_loop, work) for _ in range(workers)]
            try:
                for request in requests:
                    if not self.ledger.admit(request.identifier):
                        self._count("duplicates")
                        continue
                    self._count("submitted")
                    work.put(request)
            finally:
                for _ in range(workers):
                    work.put(None)
            for future in futures:
                future.result()

        logger.info(
            "Completed run: saved=%d dropped=%d failed=%d duplicates=%d retries=%d challenges=%d",
            self.stats.saved,
            self.stats.dropped,
            self.stats.failed,
            self.stats.duplicates,
            self.stats.retries,
            self.stats.challenges,
        )
        return self.stats

    def _worker_loop(self, work: "queue.Queue[Optional[ExtractionRequest]]") -> None:
        try:
            while True:
                request = work.get()
                if request is None:
                    return
                try:
                    self.process(request)
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Unexpected failure processing %s: %s", request.identifier, exc)
                    self._count("failed")
                    self._emit_failure(request, f"internal error: {exc}")
        finally:
            # Browsers are per thread, so each worker shuts down its own.
            self.coordinator.gateway.close()

    def process(self, request: ExtractionRequest) -> ExtractionOutcome:
        """Extract one request, retrying with a different identity on transient failures."""
        transient_attempts = 0
        challenges = 0
        failed_identities: Set[str] = set()

        while True:
            identity = self.identities.acquire_slot(exclude=failed_identities)
            outcome: ExtractionOutcome = TransientFailure("attempt did not complete")
            try:
                outcome = self.coordinator.extract(request, identity, Deadline(self.settings.request_timeout))
            except Exception as exc:  # noqa: BLE001
                logger.exception("Extraction attempt crashed for %s", request.identifier)
                outcome = TransientFailure(f"unexpected error: {exc}")
            finally:
                self.identities.release(identity, outcome)

            if isinstance(outcome, Success):
                self._emit_success(outcome)
                return outcome
            if isinstance(outcome, PartialFailure):
                self._count("dropped")
                self._emit_failure(request, outcome.reason)
                return outcome

            failed_identities.add(identity.identity_id)
            if isinstance(outcome, Challenged):
                challenges += 1
                self._count("challenges")
                exhausted = challenges > self.settings.max_challenge_retries
            else:
                transient_attempts += 1
                exhausted = transient_attempts > self.settings.max_retries

            if exhausted:
                logger.error("Failed request: %s - Error: %s", request.identifier, outcome.reason)
                self._count("failed")
                self._emit_failure(request, outcome.reason)
                return outcome

            self._count("retries")
            logger.info(
                "Retrying %s with a new identity after %s (%s)",
                request.identifier,
                "challenge" if isinstance(outcome, Challenged) else "transient failure",
                outcome.reason,
            )

    def _emit_success(self, outcome: Success) -> None:
        record = outcome.record
        try:
            self.sink.push_record(record)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to store %s: %s", record.url, exc)
            return
        self._count("saved")
        logger.info(
            "Saved: %s | Rating: %s | Reviews: %s",
            record.name,
            record.rating if record.rating is not None else "N/A",
            record.review_count if record.review_count is not None else "N/A",
        )

    def _emit_failure(self, request: ExtractionRequest, reason: str) -> None:
        failure = FailureRecord(
            identifier=request.identifier,
            query=request.query,
            reason=reason,
            timestamp=datetime.now(timezone.utc),
        )
        try:
            self.sink.push_failure(failure)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to store failure for %s: %s", request.identifier, exc)
