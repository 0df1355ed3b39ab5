"""Transport layer: cheap HTTP fetches and full Playwright renders of maps pages."""

from __future__ import annotations

import logging
import math
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple
from urllib.parse import quote_plus

import requests
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from maps_extractor.core.config import Settings
from maps_extractor.core.identity import Identity
from maps_extractor.extractors.document import PageDocument

logger = logging.getLogger(__name__)

MAPS_BASE_URL = "https://www.google.com/maps"
PACING_RANGE = (1.0, 3.0)
SCROLL_PAUSE_MS = 2000
RESULTS_PER_SCROLL = 20

CHALLENGE_MARKERS = (
    "our systems have detected unusual traffic",
    "detected unusual traffic",
    'id="captcha-form"',
    "g-recaptcha",
    "i'm not a robot",
    "/recaptcha/api",
)
CHALLENGE_URL_MARKERS = ("/sorry/", "google.com/sorry")

PLACE_SELECTORS = ("h1", 'div[role="main"][aria-label]')
# The results list is the most volatile part of the markup.
FEED_SELECTORS = (
    'div[role="feed"]',
    'div[aria-label^="Results for"]',
    'div[aria-label*="Results"]',
    "div.m6QErb[aria-label]",
)
CONSENT_BUTTONS = (
    'button[aria-label*="Accept all"]',
    'form[action*="consent"] button',
)

BLOCKED_RESOURCE_TYPES = {"font", "media", "stylesheet"}
BLOCKED_DOMAINS = (
    "google-analytics.com",
    "googletagmanager.com",
    "doubleclick.net",
    "googlesyndication.com",
    "analytics.google.com",
)
BEACON_PATHS = ("/gen_204", "/log?", "/csi?")
REVIEW_XHR_PATHS = ("listugcposts", "listentitiesreviews", "/maps/rpc/reviews")

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-first-run",
    "--no-default-browser-check",
    "--mute-audio",
]


class GatewayError(RuntimeError):
    """Transient transport failure (timeout, non-200 status, network error)."""


class ChallengeDetected(GatewayError):
    """The site answered with an anti-automation page instead of content."""


@dataclass
class RawPayload:
    """Result of one transport call; owned by the attempt that produced it."""

    identifier: str
    final_url: str
    status: int
    body: str
    via: str
    document: Optional[PageDocument] = None
    _closer: Optional[Callable[[], None]] = field(default=None, repr=False)

    def close(self) -> None:
        closer, self._closer = self._closer, None
        if closer is not None:
            closer()


def search_url(query: str, language: str = "en") -> str:
    return f"{MAPS_BASE_URL}/search/{quote_plus(query.strip())}?hl={language}"


def looks_like_challenge(url: str, body: str) -> bool:
    lowered_url = (url or "").lower()
    if any(marker in lowered_url for marker in CHALLENGE_URL_MARKERS):
        return True
    lowered = (body or "")[:200_000].lower()
    return any(marker in lowered for marker in CHALLENGE_MARKERS)


def should_block(resource_type: str, url: str, *, include_images: bool, include_reviews: bool) -> bool:
    """Whether a sub-request is irrelevant to extraction and can be aborted."""
    if resource_type in BLOCKED_RESOURCE_TYPES:
        return True
    lowered = url.lower()
    if any(domain in lowered for domain in BLOCKED_DOMAINS):
        return True
    if resource_type in {"ping", "beacon"} or any(path in lowered for path in BEACON_PATHS):
        return True
    if not include_images and resource_type == "image":
        return True
    if not include_reviews and resource_type in {"xhr", "fetch"}:
        return any(path in lowered for path in REVIEW_XHR_PATHS)
    return False


def _retrying_adapter() -> HTTPAdapter:
    # One internal retry at most; the pipeline owns the real retry policy.
    retries = Retry(
        total=1,
        backoff_factor=0.5,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=("GET",),
        raise_on_status=False,
    )
    return HTTPAdapter(max_retries=retries)


class FetchRenderGateway:
    """Cheap ``requests`` fetches and expensive Playwright renders behind one interface.

    Playwright's sync API is bound to the thread that started it, so every
    worker thread lazily gets its own browser. ``close`` must therefore be
    called from each worker thread that rendered something.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        pacing: Tuple[float, float] = PACING_RANGE,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or Settings()
        self.pacing = pacing
        self._sleep = sleep
        self._local = threading.local()

    # ---------- cheap path ----------

    def _prepare_session(self, identity: Identity) -> requests.Session:
        session = identity.session
        if not getattr(session, "_maps_adapter_mounted", False):
            adapter = _retrying_adapter()
            session.mount("http://", adapter)
            session.mount("https://", adapter)
            # Skips the cookie consent interstitial served to fresh EU sessions.
            session.cookies.set("CONSENT", "YES+cb", domain=".google.com")
            session._maps_adapter_mounted = True  # type: ignore[attr-defined]
        return session

    def fetch_cheap(self, identifier: str, identity: Identity, *, timeout: Optional[float] = None) -> RawPayload:
        """Single GET through the identity's session.

        Raises ``ChallengeDetected`` on challenge pages and HTTP 429, and
        ``GatewayError`` on any other non-200 status or network error.
        """
        session = self._prepare_session(identity)
        timeout = min(timeout or self.settings.fetch_timeout, self.settings.fetch_timeout)
        try:
            response = session.get(identifier, timeout=timeout, allow_redirects=True)
        except requests.RequestException as exc:
            raise GatewayError(f"network error: {exc}") from exc

        body = response.text or ""
        if response.status_code == 429 or looks_like_challenge(response.url, body):
            raise ChallengeDetected(f"challenge page at {response.url} (status={response.status_code})")
        if response.status_code != 200:
            raise GatewayError(f"HTTP {response.status_code} for {identifier}")
        return RawPayload(
            identifier=identifier,
            final_url=response.url or identifier,
            status=response.status_code,
            body=body,
            via="fetch",
        )

    # ---------- render path ----------

    def _browser(self):
        browser = getattr(self._local, "browser", None)
        if browser is None:
            self._local.playwright = sync_playwright().start()
            browser = self._local.playwright.chromium.launch(headless=self.settings.headless, args=LAUNCH_ARGS)
            self._local.browser = browser
            logger.debug("Launched Chromium for %s", threading.current_thread().name)
        return browser

    def _new_context(self, identity: Identity):
        options: dict = {
            "user_agent": identity.user_agent,
            "viewport": identity.viewport,
            "locale": identity.locale,
        }
        if identity.proxy_url:
            options["proxy"] = {"server": identity.proxy_url}
        context = self._browser().new_context(**options)
        if identity.cookies:
            context.add_cookies(identity.cookies)

        include_images = self.settings.include_images
        include_reviews = self.settings.include_reviews

        def _route(route) -> None:
            request = route.request
            if should_block(
                request.resource_type,
                request.url,
                include_images=include_images,
                include_reviews=include_reviews,
            ):
                route.abort()
            else:
                route.continue_()

        context.route("**/*", _route)
        return context

    def pace(self, page=None) -> None:
        """Jittered pause that mimics a person reading the page."""
        delay = random.uniform(*self.pacing)
        if page is not None:
            page.wait_for_timeout(int(delay * 1000))
        else:
            self._sleep(delay)

    @staticmethod
    def _accept_consent(page) -> None:
        if "consent." not in page.url:
            return
        for selector in CONSENT_BUTTONS:
            locator = page.locator(selector).first
            if locator.count():
                locator.click(timeout=5000)
                page.wait_for_load_state("domcontentloaded")
                return

    @staticmethod
    def _wait_for_any(page, selectors: Sequence[str], timeout_ms: int) -> Optional[str]:
        """Return the highest-priority selector present, waiting up to ``timeout_ms`` for any."""
        for selector in selectors:
            if page.locator(selector).count():
                return selector
        try:
            page.wait_for_selector(", ".join(selectors), timeout=timeout_ms)
        except PlaywrightTimeoutError:
            return None
        for selector in selectors:
            if page.locator(selector).count():
                return selector
        return None

    def render_full(
        self,
        identifier: str,
        identity: Identity,
        *,
        wait_for: Sequence[str] = PLACE_SELECTORS,
        timeout: Optional[float] = None,
    ) -> RawPayload:
        """Navigate a fresh browser context for ``identity`` and wait for content.

        The returned payload keeps the page open; call ``payload.close()`` when
        extraction is done so cookies are saved back to the identity.
        """
        navigation_timeout = min(timeout or self.settings.navigation_timeout, self.settings.navigation_timeout)
        timeout_ms = int(navigation_timeout * 1000)
        context = None

        def _close() -> None:
            if context is None:
                return
            try:
                identity.cookies = context.cookies()
            except PlaywrightError as exc:
                logger.debug("Could not read cookies for %s: %s", identity.identity_id, exc)
            context.close()

        try:
            context = self._new_context(identity)
            page = context.new_page()
            response = page.goto(identifier, wait_until="domcontentloaded", timeout=timeout_ms)
            self._accept_consent(page)
            status = response.status if response is not None else 200
            if status == 429 or looks_like_challenge(page.url, page.content()):
                raise ChallengeDetected(f"challenge page at {page.url} (status={status})")
            if status >= 400:
                raise GatewayError(f"HTTP {status} for {identifier}")

            found = self._wait_for_any(page, wait_for, min(timeout_ms, 30_000))
            if found is None:
                if looks_like_challenge(page.url, page.content()):
                    raise ChallengeDetected(f"challenge page at {page.url}")
                raise GatewayError(f"no content element ({', '.join(wait_for)}) on {page.url}")
            self.pace(page)
            body = page.content()
        except PlaywrightTimeoutError as exc:
            _close()
            raise GatewayError(f"navigation timeout for {identifier}: {exc}") from exc
        except PlaywrightError as exc:
            _close()
            raise GatewayError(f"browser error for {identifier}: {exc}") from exc
        except GatewayError:
            _close()
            raise

        return RawPayload(
            identifier=identifier,
            final_url=page.url,
            status=status,
            body=body,
            via="render",
            document=PageDocument(page),
            _closer=_close,
        )

    # ---------- discovery ----------

    def discover(self, query: str, identity: Identity, *, max_results: int, language: str = "en") -> List[str]:
        """Scroll the results feed for ``query`` and return up to ``max_results`` place URLs."""
        payload = self.render_full(
            search_url(query, language),
            identity,
            wait_for=FEED_SELECTORS + PLACE_SELECTORS,
        )
        try:
            page = payload.document.page
            if "/maps/place/" in page.url:
                # A single match opens the place page directly.
                return [page.url]
            feed = self._wait_for_any(page, FEED_SELECTORS, 5000)
            if feed is not None:
                self._scroll_feed(page, feed, max_results)
            links = payload.document.all_attrs('a[href*="/maps/place/"]', "href")
        finally:
            payload.close()

        unique: List[str] = []
        for link in links:
            if link not in unique:
                unique.append(link)
        logger.info("Found %d businesses for query: %s", len(unique), query)
        return unique[:max_results]

    @staticmethod
    def _scroll_feed(page, feed_selector: str, max_results: int) -> None:
        previous_height = 0
        for _ in range(math.ceil(max_results / RESULTS_PER_SCROLL)):
            page.evaluate(
                "(sel) => { const el = document.querySelector(sel); if (el) el.scrollTo(0, el.scrollHeight); }",
                feed_selector,
            )
            page.wait_for_timeout(SCROLL_PAUSE_MS)
            height = page.evaluate(
                "(sel) => { const el = document.querySelector(sel); return el ? el.scrollHeight : 0; }",
                feed_selector,
            )
            if height == previous_height:
                break
            previous_height = height

    def close(self) -> None:
        """Shut down the browser started by the calling thread, if any."""
        browser = getattr(self._local, "browser", None)
        playwright = getattr(self._local, "playwright", None)
        self._local.browser = None
        self._local.playwright = None
        if browser is not None:
            try:
                browser.close()
            except PlaywrightError as exc:
                logger.debug("Browser close failed: %s", exc)
        if playwright is not None:
            playwright.stop()

