"""Run-wide de-duplication of place identifiers."""

import logging
import re
import threading
from typing import Dict, Optional, Set, Tuple
from urllib.parse import unquote, urlsplit, urlunsplit

logger = logging.getLogger(__name__)

# Viewport and data segments change with every visit to the same listing.
_VOLATILE_SUFFIX = re.compile(r"/(?:@[^/]*|data=[^/]*)(?:/.*)?$")
# The feature id inside the data segment is stable and tells apart chain branches.
_FEATURE_ID = re.compile(r"!1s(0x[0-9a-f]+:0x[0-9a-f]+)", re.IGNORECASE)


def _plain_key(raw: str) -> str:
    return unquote(raw).replace("+", " ").rstrip("/").lower()


def canonical_parts(identifier: str) -> Tuple[str, Optional[str]]:
    """Split ``identifier`` into its listing path key and its feature id, if any.

    Identifiers that do not parse as URLs (including malformed ones such as an
    unclosed ``[`` host) fall back to the lowercased raw string.
    """
    if not identifier:
        return "", None
    raw = identifier.strip()
    try:
        parts = urlsplit(raw)
    except ValueError:
        logger.debug("Unparseable place identifier: %s", raw)
        return _plain_key(raw), None
    if not parts.netloc:
        return _plain_key(raw), None

    path = _VOLATILE_SUFFIX.sub("", parts.path)
    path = unquote(path.replace("+", " ")).rstrip("/").lower()
    feature = _FEATURE_ID.search(unquote(parts.path))
    base = urlunsplit((parts.scheme.lower() or "https", parts.netloc.lower(), path, "", ""))
    return base, feature.group(1).lower() if feature else None


def canonicalize(identifier: str) -> str:
    """Reduce a place URL to the part that identifies the listing.

    ``https://www.google.com/maps/place/Cafe+X/@37.7,-122.4,17z/data=!4m6?hl=en``
    becomes ``https://www.google.com/maps/place/cafe x``; when the data segment
    carries a feature id (``!1s0x...:0x...``) it is kept as the last path part.
    """
    base, feature = canonical_parts(identifier)
    return f"{base}/{feature}" if feature else base


class DeduplicationLedger:
    """Thread-safe record of canonical identifiers admitted during one run.

    Keys with different feature ids are distinct listings. A key without a
    feature id matches any admitted key on the same path, and the reverse.
    """

    def __init__(self) -> None:
        # path key -> feature ids seen on it; None marks a featureless admission
        self._seen: Dict[str, Set[Optional[str]]] = {}
        self._count = 0
        self._lock = threading.Lock()

    def _is_known(self, base: str, feature: Optional[str]) -> bool:
        features = self._seen.get(base)
        if not features:
            return False
        if feature is None or None in features:
            return True
        return feature in features

    def admit(self, identifier: str) -> bool:
        """Record ``identifier`` and return True unless an equivalent one was already admitted."""
        base, feature = canonical_parts(identifier)
        if not base:
            return False
        with self._lock:
            if self._is_known(base, feature):
                logger.debug("Duplicate place skipped: %s", identifier)
                return False
            self._seen.setdefault(base, set()).add(feature)
            self._count += 1
            return True

    def __contains__(self, identifier: object) -> bool:
        if not isinstance(identifier, str):
            return False
        base, feature = canonical_parts(identifier)
        with self._lock:
            return self._is_known(base, feature)

    def __len__(self) -> int:
        with self._lock:
            return self._count
