"""Re-POST ingest batches that IngestApiSink saved under data/failed/."""

import json
import logging
import os
import time

import requests

FOLDER = os.getenv("MAPS_FAILED_DIR", "data/failed")
URL = os.getenv("INGEST_API_URL", "http://localhost:8080/ingest/places")

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
logger = logging.getLogger("replay_failed")

if not os.path.isdir(FOLDER):
    logger.info("No failed folder: %s", FOLDER)
    raise SystemExit(0)

for fname in sorted(os.listdir(FOLDER)):
    path = os.path.join(FOLDER, fname)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            saved = json.load(fh)
        # Non-2xx saves wrap the batch as {"status", "text", "payload"}.
        payload = saved.get("payload", saved)
        r = requests.post(URL, json=payload, timeout=10)
        r.raise_for_status()
        logger.info("Replayed %s => %s", fname, r.status_code)
        os.remove(path)
    except (OSError, ValueError, requests.RequestException) as e:
        logger.warning("Failed to replay %s: %s", fname, e)
        time.sleep(1)
