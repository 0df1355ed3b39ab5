"""Dataset sinks receiving one row per terminal outcome.

Successful records and failures go to the same sink; failure rows carry
``error: True``.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from maps_extractor.core.config import Settings
from maps_extractor.etl.transform import to_dataset_item, to_failure_item
from maps_extractor.models import BusinessRecord, FailureRecord

logger = logging.getLogger(__name__)

FAILED_DIR = Path("data") / "failed"


class DatasetSink:
    """Base sink; subclasses implement ``push`` for plain dict rows."""

    def push_record(self, record: BusinessRecord) -> None:
        self.push(to_dataset_item(record))

    def push_failure(self, failure: FailureRecord) -> None:
        self.push(to_failure_item(failure))

    def push(self, item: Dict[str, Any]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        return None


class MemorySink(DatasetSink):
    """Keeps rows in a list; handy for library callers and tests."""

    def __init__(self) -> None:
        self.items: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def push(self, item: Dict[str, Any]) -> None:
        with self._lock:
            self.items.append(item)


class JsonLinesSink(DatasetSink):
    """Append rows to a JSON-lines file, one object per line."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._fh = self.path.open("a", encoding="utf-8")

    def push(self, item: Dict[str, Any]) -> None:
        line = json.dumps(item, ensure_ascii=False)
        with self._lock:
            self._fh.write(line + "\n")
            self._fh.flush()

    def close(self) -> None:
        with self._lock:
            if not self._fh.closed:
                self._fh.close()


def _save_failed_payload(payload: Dict[str, Any], failed_dir: Path, status: Optional[int] = None, text: str = "") -> None:
    try:
        failed_dir.mkdir(parents=True, exist_ok=True)
        fname = failed_dir.joinpath(f"failed-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}.json")
        body: Dict[str, Any] = payload if status is None else {"status": status, "text": text, "payload": payload}
        with fname.open("w", encoding="utf-8") as fh:
            json.dump(body, fh, ensure_ascii=False, indent=2)
        logger.info("Saved failed payload to %s", str(fname))
    except OSError as exc:
        logger.error("Failed to save failed payload to disk: %s", exc)


class IngestApiSink(DatasetSink):
    """Batch rows and POST them as ``{"items": [...]}`` to an ingest endpoint.

    - Uses a requests.Session with retries for transient 5xx errors.
    - Batches that still fail are written to ``data/failed/*.json`` for replay.
    """

    def __init__(
        self,
        url: str,
        *,
        batch_size: int = 25,
        session: Optional[requests.Session] = None,
        failed_dir: Path = FAILED_DIR,
    ) -> None:
        self.url = url
        self.batch_size = batch_size
        self.failed_dir = failed_dir
        self._buffer: List[Dict[str, Any]] = []
        self._lock = threading.Lock()
        if session is None:
            session = requests.Session()
            retries = Retry(
                total=3,
                backoff_factor=1,
                status_forcelist=(500, 502, 503, 504),
                allowed_methods=("POST",),
            )
            session.mount("http://", HTTPAdapter(max_retries=retries))
            session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session = session

    def push(self, item: Dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(item)
            if len(self._buffer) < self.batch_size:
                return
            batch, self._buffer = self._buffer, []
        self._send(batch)

    def _send(self, batch: List[Dict[str, Any]]) -> None:
        payload = {"items": batch}
        try:
            response = self.session.post(self.url, json=payload, timeout=10)
        except requests.RequestException as exc:
            logger.error("Failed to call ingest API: %s", exc)
            _save_failed_payload(payload, self.failed_dir)
            return

        if not (200 <= response.status_code < 300):
            logger.error("Ingest API returned non-2xx status (%s): %s", response.status_code, response.text[:500])
            _save_failed_payload(payload, self.failed_dir, response.status_code, response.text)
            return
        logger.info("Posted %s rows to ingest API. status=%s", len(batch), response.status_code)

    def close(self) -> None:
        with self._lock:
            batch, self._buffer = self._buffer, []
        if batch:
            self._send(batch)
        self.session.close()


def build_sink(settings: Settings) -> DatasetSink:
    """Postgres when ``DATABASE_URL`` is set, else the ingest API, else a JSON-lines file."""
    if settings.database_url:
        from maps_extractor.core.db import PostgresSink

        return PostgresSink(settings.database_url)
    if settings.ingest_api_url:
        return IngestApiSink(settings.ingest_api_url)
    return JsonLinesSink(settings.output_path)
