import random
import threading
import time
from datetime import datetime, timezone

from maps_extractor.core.config import Settings
from maps_extractor.core.identity import IdentityManager
from maps_extractor.core.ledger import DeduplicationLedger
from maps_extractor.core.pipeline import ExtractionPipeline
from maps_extractor.core.sink import MemorySink
from maps_extractor.models import (
    BusinessRecord,
    Challenged,
    ExtractionRequest,
    PartialFailure,
    Success,
    TransientFailure,
)


class DummyGateway:
    def __init__(self):
        self.closed = 0
        self._lock = threading.Lock()

    def close(self):
        with self._lock:
            self.closed += 1


class ScriptedCoordinator:
    """Returns outcomes from ``script`` per identifier, then ``default``."""

    def __init__(self, script=None, default=None, delay=0.0):
        self.gateway = DummyGateway()
        self.script = {key: list(values) for key, values in (script or {}).items()}
        self.default = default
        self.delay = delay
        self.calls = []
        self.current = 0
        self.peak = 0
        self._lock = threading.Lock()

    def extract(self, request, identity, deadline=None):
        with self._lock:
            self.current += 1
            self.peak = max(self.peak, self.current)
            self.calls.append((request.identifier, identity.identity_id))
            queued = self.script.get(request.identifier)
            outcome = queued.pop(0) if queued else self.default
        try:
            if self.delay:
                time.sleep(self.delay)
            if outcome is None:
                outcome = Success(_record(request))
            return outcome
        finally:
            with self._lock:
                self.current -= 1


def _record(request):
    return BusinessRecord(
        name=f"Place {request.identifier.rsplit('/', 1)[-1]}",
        url=request.identifier,
        search_query=request.query,
        scraped_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        rating=4.5,
    )


def _requests(*identifiers):
    return [ExtractionRequest(identifier=i, query="cafes") for i in identifiers]


def _pipeline(coordinator, **overrides):
    settings = Settings(queries=("cafes",), **overrides)
    identities = IdentityManager(
        max_concurrency=settings.max_concurrency,
        max_uses=settings.identity_max_uses,
        max_errors=settings.identity_max_errors,
        rng=random.Random(1),
    )
    sink = MemorySink()
    pipeline = ExtractionPipeline(settings, coordinator, identities, DeduplicationLedger(), sink)
    return pipeline, identities, sink


def test_concurrency_never_exceeds_limit():
    coordinator = ScriptedCoordinator(delay=0.001)
    pipeline, identities, sink = _pipeline(coordinator, max_concurrency=5)
    urls = [f"https://www.google.com/maps/place/p{i}" for i in range(500)]

    stats = pipeline.run(_requests(*urls))

    assert stats.saved == 500
    assert len(sink.items) == 500
    assert coordinator.peak <= 5
    assert identities.peak_in_flight <= 5
    assert coordinator.gateway.closed == 5


def test_duplicates_are_extracted_once():
    coordinator = ScriptedCoordinator()
    pipeline, _, sink = _pipeline(coordinator, max_concurrency=2)

    stats = pipeline.run(
        _requests(
            "https://www.google.com/maps/place/Cafe+X/@1,2,17z",
            "https://www.google.com/maps/place/cafe+x?hl=en",
            "https://www.google.com/maps/place/Cafe+Y",
        )
    )

    assert stats.submitted == 2
    assert stats.duplicates == 1
    assert len(coordinator.calls) == 2
    assert len(sink.items) == 2


def test_challenge_retry_uses_a_different_identity(caplog):
    url = "https://www.google.com/maps/place/p1"
    coordinator = ScriptedCoordinator(script={url: [Challenged("captcha")]})
    pipeline, identities, sink = _pipeline(coordinator, max_concurrency=1)

    with caplog.at_level("INFO"):
        stats = pipeline.run(_requests(url))

    first, second = coordinator.calls
    assert first[1] != second[1]
    assert stats.challenges == 1
    assert stats.retries == 1
    assert stats.saved == 1
    assert identities.retired >= 1
    assert "Saved: Place p1 | Rating: 4.5 | Reviews: N/A" in caplog.text


def test_transient_failures_exhaust_retries_and_emit_failure_row(caplog):
    url = "https://www.google.com/maps/place/p1"
    coordinator = ScriptedCoordinator(default=TransientFailure("navigation timeout"))
    pipeline, _, sink = _pipeline(coordinator, max_concurrency=2, max_retries=2)

    with caplog.at_level("ERROR"):
        stats = pipeline.run(_requests(url))

    assert len(coordinator.calls) == 3
    assert len({identity for _, identity in coordinator.calls}) == 3
    assert stats.failed == 1
    assert stats.retries == 2
    assert sink.items[0]["error"] is True
    assert sink.items[0]["url"] == url
    assert sink.items[0]["errorMessage"] == "navigation timeout"
    assert "Failed request" in caplog.text


def test_challenges_have_their_own_retry_budget():
    url = "https://www.google.com/maps/place/p1"
    coordinator = ScriptedCoordinator(default=Challenged("captcha"))
    pipeline, _, sink = _pipeline(coordinator, max_concurrency=1, max_challenge_retries=1)

    stats = pipeline.run(_requests(url))

    assert len(coordinator.calls) == 2
    assert stats.challenges == 2
    assert stats.failed == 1
    assert sink.items[0]["errorMessage"] == "captcha"


def test_partial_failure_is_dropped_without_retry():
    url = "https://www.google.com/maps/place/p1"
    coordinator = ScriptedCoordinator(default=PartialFailure("no-name"))
    pipeline, _, sink = _pipeline(coordinator, max_concurrency=1)

    stats = pipeline.run(_requests(url))

    assert len(coordinator.calls) == 1
    assert stats.dropped == 1
    assert stats.saved == 0
    assert sink.items == [
        {
            "error": True,
            "url": url,
            "query": "cafes",
            "errorMessage": "no-name",
            "timestamp": sink.items[0]["timestamp"],
        }
    ]


def test_crashing_coordinator_counts_as_transient_failure():
    url = "https://www.google.com/maps/place/p1"

    class Exploding(ScriptedCoordinator):
        def extract(self, request, identity, deadline=None):
            self.calls.append((request.identifier, identity.identity_id))
            raise RuntimeError("boom")

    coordinator = Exploding()
    pipeline, identities, sink = _pipeline(coordinator, max_concurrency=1, max_retries=1)

    stats = pipeline.run(_requests(url))

    assert len(coordinator.calls) == 2
    assert stats.failed == 1
    assert identities.in_flight == 0
    assert sink.items[0]["errorMessage"].startswith("unexpected error")


def test_malformed_identifier_does_not_stop_the_run():
    urls = [
        "https://www.google.com/maps/place/a",
        "https://[broken/maps/place/b",
        "https://www.google.com/maps/place/c",
    ]
    coordinator = ScriptedCoordinator()
    pipeline, _, sink = _pipeline(coordinator, max_concurrency=2)

    stats = pipeline.run(_requests(*urls))

    assert stats.submitted == 3
    assert sorted(identifier for identifier, _ in coordinator.calls) == sorted(urls)
    assert len(sink.items) == 3
