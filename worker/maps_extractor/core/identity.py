"""Proxy/fingerprint identities and the slot limiter that hands them out."""

from __future__ import annotations

import itertools
import logging
import random
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

import requests

from maps_extractor.models import Challenged, ExtractionOutcome, TransientFailure

logger = logging.getLogger(__name__)

# Chrome on desktop Windows/macOS only; mobile layouts use different markup.
DESKTOP_USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36 Edg/131.0.0.0",
)

DESKTOP_VIEWPORTS = (
    {"width": 1920, "height": 1080},
    {"width": 1366, "height": 768},
    {"width": 1536, "height": 864},
    {"width": 1440, "height": 900},
    {"width": 1680, "height": 1050},
    {"width": 1280, "height": 720},
)


def _accept_language(locale: str) -> str:
    primary = locale.split("-")[0]
    return locale if primary == locale else f"{locale},{primary};q=0.9"


@dataclass(eq=False)
class Identity:
    """Egress proxy plus simulated client; reused until a ceiling retires it."""

    identity_id: str
    proxy_url: Optional[str]
    user_agent: str
    viewport: Dict[str, int]
    locale: str = "en-US"
    cookies: List[Dict[str, Any]] = field(default_factory=list)
    uses: int = 0
    errors: int = 0
    retired: bool = False
    _session: Optional[requests.Session] = field(default=None, repr=False)

    @property
    def session(self) -> requests.Session:
        """Lazily created HTTP session carrying this identity's proxy, headers and cookies."""
        if self._session is None:
            session = requests.Session()
            session.headers.update(
                {
                    "User-Agent": self.user_agent,
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                    "Accept-Language": _accept_language(self.locale),
                }
            )
            if self.proxy_url:
                session.proxies.update({"http": self.proxy_url, "https": self.proxy_url})
            self._session = session
        return self._session

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None


class IdentityManager:
    """Bounds in-flight extractions and rotates identities.

    ``acquire_slot`` blocks while ``max_concurrency`` identities are checked out,
    so callers queue instead of being dropped. An identity is never handed to two
    callers at once. It is retired after ``max_uses`` releases, after
    ``max_errors`` transient failures, or at once after a challenge.
    """

    def __init__(
        self,
        proxy_urls: Iterable[str] = (),
        *,
        max_concurrency: int = 5,
        max_uses: int = 3,
        max_errors: int = 2,
        locale: str = "en-US",
        rng: Optional[random.Random] = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self.max_uses = max_uses
        self.max_errors = max_errors
        self.locale = locale
        self._rng = rng or random.Random()
        proxies = [p for p in proxy_urls if p]
        self._proxies = itertools.cycle(proxies) if proxies else None
        self._ids = itertools.count(1)
        self._slots = threading.BoundedSemaphore(max_concurrency)
        self._lock = threading.Lock()
        self._idle: List[Identity] = []
        self._in_use: Set[str] = set()
        self.in_flight = 0
        self.peak_in_flight = 0
        self.created = 0
        self.retired = 0

    def _new_identity(self) -> Identity:
        identity = Identity(
            identity_id=f"identity-{next(self._ids)}",
            proxy_url=next(self._proxies) if self._proxies else None,
            user_agent=self._rng.choice(DESKTOP_USER_AGENTS),
            viewport=dict(self._rng.choice(DESKTOP_VIEWPORTS)),
            locale=self.locale,
        )
        self.created += 1
        logger.debug("Created %s via proxy=%s", identity.identity_id, identity.proxy_url or "direct")
        return identity

    def acquire_slot(self, exclude: Optional[Iterable[str]] = None, timeout: Optional[float] = None) -> Identity:
        """Wait for a free slot and check out an identity not listed in ``exclude``."""
        if not self._slots.acquire(timeout=timeout):
            raise TimeoutError("no extraction slot became free in time")

        excluded = set(exclude or ())
        with self._lock:
            chosen: Optional[Identity] = None
            for index, candidate in enumerate(self._idle):
                if not candidate.retired and candidate.identity_id not in excluded:
                    chosen = self._idle.pop(index)
                    break
            if chosen is None:
                chosen = self._new_identity()
            self._in_use.add(chosen.identity_id)
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        return chosen

    def release(self, identity: Identity, outcome: Optional[ExtractionOutcome] = None) -> None:
        """Return ``identity`` with the outcome it produced and free its slot."""
        to_close: Optional[Identity] = None
        with self._lock:
            if identity.identity_id not in self._in_use:
                raise ValueError(f"{identity.identity_id} is not checked out")
            self._in_use.discard(identity.identity_id)
            self.in_flight -= 1

            identity.uses += 1
            reason = None
            if isinstance(outcome, Challenged):
                reason = "challenged"
            elif isinstance(outcome, TransientFailure):
                identity.errors += 1
                if identity.errors >= self.max_errors:
                    reason = "error ceiling"
            if reason is None and identity.uses >= self.max_uses:
                reason = "usage ceiling"

            if reason is not None:
                identity.retired = True
                self.retired += 1
                to_close = identity
                logger.info(
                    "Retired %s (%s) after %d uses, %d errors",
                    identity.identity_id,
                    reason,
                    identity.uses,
                    identity.errors,
                )
            else:
                self._idle.append(identity)
        self._slots.release()
        if to_close is not None:
            to_close.close()

    def close(self) -> None:
        with self._lock:
            idle, self._idle = self._idle, []
        for identity in idle:
            identity.close()
