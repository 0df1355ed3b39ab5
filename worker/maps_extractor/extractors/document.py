"""Uniform read-only views over a fetched HTML body or a live Playwright page.

Both adapters answer the same small set of questions (first text, first
attribute, all attributes...) and never raise on missing or broken markup;
they return ``None`` or an empty list instead.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Pattern, Union

from bs4 import BeautifulSoup
from bs4.element import Tag
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Page

logger = logging.getLogger(__name__)

PatternLike = Union[str, Pattern[str]]


def _compile(pattern: PatternLike) -> Pattern[str]:
    if isinstance(pattern, str):
        return re.compile(pattern, re.IGNORECASE)
    return pattern


class SoupDocument:
    """Document view over static HTML, used for the cheap fetch path and in tests."""

    def __init__(self, html: str, url: str = "") -> None:
        self.url = url
        self.soup = BeautifulSoup(html or "", "html.parser")

    def _select(self, selector: str) -> List[Tag]:
        try:
            return self.soup.select(selector)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Selector %r rejected by soupsieve: %s", selector, exc)
            return []

    def first_text(self, selector: str) -> Optional[str]:
        for node in self._select(selector):
            text = node.get_text(" ", strip=True)
            if text:
                return text
        return None

    def first_attr(self, selector: str, attr: str) -> Optional[str]:
        for node in self._select(selector):
            value = node.get(attr)
            if isinstance(value, list):
                value = " ".join(value)
            if value:
                return value
        return None

    def all_attrs(self, selector: str, attr: str) -> List[str]:
        values = []
        for node in self._select(selector):
            value = node.get(attr)
            if isinstance(value, list):
                value = " ".join(value)
            if value:
                values.append(value)
        return values

    def all_texts(self, selector: str) -> List[str]:
        return [text for text in (node.get_text(" ", strip=True) for node in self._select(selector)) if text]

    def find_text(self, selector: str, pattern: PatternLike) -> Optional[str]:
        regex = _compile(pattern)
        for scope in self._select(selector):
            for string in scope.find_all(string=regex):
                parent = string.parent
                text = parent.get_text(" ", strip=True) if parent is not None else str(string).strip()
                if text:
                    return text
        return None

    def click(self, selector: str) -> bool:
        return False

    def wait(self, milliseconds: int) -> None:
        return None

    def html(self) -> str:
        return str(self.soup)


class PageDocument:
    """Document view over a live Playwright page.

    Lookups check ``count()`` first because locator reads otherwise wait for the
    element up to the full default timeout.
    """

    def __init__(self, page: Page, *, timeout_ms: int = 2000) -> None:
        self.page = page
        self.timeout_ms = timeout_ms

    @property
    def url(self) -> str:
        return self.page.url

    def _first(self, selector: str):
        locator = self.page.locator(selector).first
        if locator.count() == 0:
            return None
        return locator

    def first_text(self, selector: str) -> Optional[str]:
        try:
            locator = self._first(selector)
            if locator is None:
                return None
            text = locator.text_content(timeout=self.timeout_ms)
        except PlaywrightError as exc:
            logger.debug("text lookup %r failed: %s", selector, exc)
            return None
        return text.strip() if text and text.strip() else None

    def first_attr(self, selector: str, attr: str) -> Optional[str]:
        try:
            locator = self._first(selector)
            if locator is None:
                return None
            value = locator.get_attribute(attr, timeout=self.timeout_ms)
        except PlaywrightError as exc:
            logger.debug("attribute lookup %r[%s] failed: %s", selector, attr, exc)
            return None
        return value or None

    def all_attrs(self, selector: str, attr: str) -> List[str]:
        try:
            values = self.page.eval_on_selector_all(
                selector,
                "(els, attr) => els.map((el) => el.getAttribute(attr))",
                attr,
            )
        except PlaywrightError as exc:
            logger.debug("attribute scan %r[%s] failed: %s", selector, attr, exc)
            return []
        return [value for value in values or [] if value]

    def all_texts(self, selector: str) -> List[str]:
        try:
            values = self.page.eval_on_selector_all(
                selector,
                "(els) => els.map((el) => (el.textContent || '').trim())",
            )
        except PlaywrightError as exc:
            logger.debug("text scan %r failed: %s", selector, exc)
            return []
        return [value for value in values or [] if value]

    def find_text(self, selector: str, pattern: PatternLike) -> Optional[str]:
        regex = _compile(pattern)
        flags = "i" if regex.flags & re.IGNORECASE else ""
        return self.first_text(f"{selector} >> text=/{regex.pattern}/{flags}")

    def click(self, selector: str) -> bool:
        try:
            locator = self._first(selector)
            if locator is None:
                return False
            locator.click(timeout=self.timeout_ms)
        except PlaywrightError as exc:
            logger.debug("click %r failed: %s", selector, exc)
            return False
        return True

    def wait(self, milliseconds: int) -> None:
        self.page.wait_for_timeout(milliseconds)

    def html(self) -> str:
        try:
            return self.page.content()
        except PlaywrightError as exc:
            logger.debug("page content unavailable: %s", exc)
            return ""
