# app/capture/playwright_adapters.py
"""Playwright bindings for the engine's abstract seams.

Everything here talks to a live ``playwright.sync_api.Page``; the engine only
sees the small protocols it needs (navigation controller, listing view,
evidence callbacks). The sync API dispatches page events only while the
driver is waiting, so all waits go through ``page.wait_for_timeout``.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from playwright.sync_api import Error as PWError
from playwright.sync_api import Page, sync_playwright

from . import config
from .extraction import should_inspect_response
from .harvester import page_signature
from .logging_utils import _capture_event
from .normalizer import markup_metadata
from .rows import Row
from .selectors import LISTING_SELECTORS, MESSAGE_VIEW_SELECTORS, ListingSelectors, MessageViewSelectors
from .sources import EvidenceHub

UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/142.0.0.0 Safari/537.36"
)


@contextmanager
def browser_session(
    *,
    headless: Optional[bool] = None,
    storage_state: Optional[str] = None,
) -> Iterator[Page]:
    """Yield a page in a fresh Chromium context, closing everything on exit."""

    state_path = storage_state if storage_state is not None else config.PLAYWRIGHT_STORAGE_STATE
    with sync_playwright() as pw:
        browser = pw.chromium.launch(
            headless=config.PLAYWRIGHT_HEADLESS if headless is None else headless
        )
        context_kwargs: Dict[str, Any] = {"user_agent": UA, "locale": "en-US"}
        if state_path:
            context_kwargs["storage_state"] = state_path
        context = browser.new_context(**context_kwargs)
        context.set_default_navigation_timeout(config.PLAYWRIGHT_NAV_TIMEOUT_SECONDS * 1000)
        page = context.new_page()
        try:
            yield page
        finally:
            context.close()
            browser.close()


# ---------------------------------------------------------------------------
# Evidence channels
# ---------------------------------------------------------------------------


class NetworkTap:
    """Feed intercepted request/response pairs into an :class:`EvidenceHub`."""

    def __init__(self, page: Page, hub: EvidenceHub) -> None:
        self.page = page
        self.hub = hub

    def attach(self) -> "NetworkTap":
        self.page.on("request", self._on_request)
        self.page.on("response", self._on_response)
        return self

    def _on_request(self, request) -> None:
        if request.resource_type not in ("fetch", "xhr"):
            return
        self.hub.on_request(request.method, request.url, request.post_data)

    def _on_response(self, response) -> None:
        headers = response.headers or {}
        if not should_inspect_response(response.url, headers.get("content-type", "")):
            return
        try:
            body = response.text()
        except PWError as exc:
            _capture_event("error", phase="network_tap", url=response.url, error=repr(exc))
            return
        self.hub.on_network_exchange(
            None,
            body,
            url=response.url,
            method=response.request.method,
        )


def read_state_root(page: Page, root_key: Optional[str] = None) -> Any:
    """JSON-safe copy of the application state root, or ``None``."""

    key = json.dumps(root_key or config.STATE_ROOT_KEY)
    script = (
        "() => { try { const r = window[%s]; "
        "return r ? JSON.parse(JSON.stringify(r)) : null; } "
        "catch (e) { return null; } }" % key
    )
    try:
        return page.evaluate(script)
    except PWError as exc:
        _capture_event("error", phase="state_root", error=repr(exc))
        return None


class MarkupSampler:
    """Push the rendered main document (and a few frames) into the hub."""

    def __init__(
        self,
        page: Page,
        hub: EvidenceHub,
        selectors: MessageViewSelectors = MESSAGE_VIEW_SELECTORS,
    ) -> None:
        self.page = page
        self.hub = hub
        self.selectors = selectors

    def sample(self) -> int:
        count = 0
        try:
            count += self.hub.on_markup_snapshot(self.page.content())
        except PWError as exc:
            _capture_event("error", phase="markup_sample", error=repr(exc))
            return count
        frames = [f for f in self.page.frames if f is not self.page.main_frame]
        for index, frame in enumerate(frames[: self.selectors.max_frames]):
            try:
                document = frame.content()
            except PWError:
                continue
            count += self.hub.on_markup_snapshot(
                document,
                frame_label=f"{self.selectors.frame_label_prefix}:{index}",
            )
        return count


class CaptureWaiter:
    """Matcher sleep: yield to the driver, sampling markup on a cadence."""

    def __init__(
        self,
        page: Page,
        sampler: Optional[MarkupSampler] = None,
        *,
        sample_every_ms: int = 2_000,
    ) -> None:
        self.page = page
        self.sampler = sampler
        self.sample_every_ms = max(1, int(sample_every_ms))
        self._since_sample = 0

    def __call__(self, ms: int) -> None:
        self.page.wait_for_timeout(ms)
        if self.sampler is None:
            return
        self._since_sample += ms
        if self._since_sample >= self.sample_every_ms:
            self._since_sample = 0
            self.sampler.sample()


def page_metadata_provider(page: Page) -> Callable[[Row, Any], Dict[str, str]]:
    def provide(row: Row, evidence: Any) -> Dict[str, str]:
        try:
            return markup_metadata(page.content())
        except PWError as exc:
            _capture_event("error", phase="metadata", prospect_id=row.prospect_id, error=repr(exc))
            return {}

    return provide


# ---------------------------------------------------------------------------
# Navigation
# ---------------------------------------------------------------------------


class PageNavigator:
    def __init__(self, page: Page, *, timeout_seconds: Optional[int] = None) -> None:
        self.page = page
        self.timeout_ms = (timeout_seconds or config.PLAYWRIGHT_NAV_TIMEOUT_SECONDS) * 1000

    def current_context(self) -> str:
        return self.page.url

    def navigate(self, url: str) -> None:
        self.page.goto(url, wait_until="domcontentloaded", timeout=self.timeout_ms)


# ---------------------------------------------------------------------------
# Listing view
# ---------------------------------------------------------------------------

_SCAN_LINKS_JS = "(sel) => Array.from(document.querySelectorAll(sel)).map(a => a.href || a.getAttribute('href') || '')"
_SCROLL_STEP_JS = "() => window.scrollBy(0, Math.max(480, Math.floor(window.innerHeight * 0.92)))"
_AT_END_JS = (
    "() => window.scrollY + window.innerHeight >= "
    "Math.max(document.body ? document.body.scrollHeight : 0, "
    "document.documentElement ? document.documentElement.scrollHeight : 0) - 40"
)
_PAGE_LABEL_JS = (
    "(sels) => { for (const c of document.querySelectorAll(sels.join(','))) {"
    " const t = String(c.textContent || '').replace(/\\s+/g, ' ');"
    " if (/page\\s*\\d+\\s*of\\s*\\d+/i.test(t)) return t; }"
    " return String(document.body ? document.body.innerText : '').replace(/\\s+/g, ' '); }"
)


class PlaywrightListingView:
    def __init__(self, page: Page, selectors: ListingSelectors = LISTING_SELECTORS) -> None:
        self.page = page
        self.selectors = selectors

    def current_url(self) -> str:
        return self.page.url

    def scan_links(self) -> List[str]:
        try:
            return list(self.page.evaluate(_SCAN_LINKS_JS, self.selectors.link_selector) or [])
        except PWError as exc:
            _capture_event("error", phase="scan_links", error=repr(exc))
            return []

    def scroll_step(self) -> None:
        try:
            self.page.evaluate(_SCROLL_STEP_JS)
        except PWError as exc:
            _capture_event("error", phase="scroll_step", error=repr(exc))

    def at_end(self) -> bool:
        try:
            return bool(self.page.evaluate(_AT_END_JS))
        except PWError:
            return False

    def page_info(self) -> str:
        try:
            return str(self.page.evaluate(_PAGE_LABEL_JS, list(self.selectors.page_label_containers)) or "")
        except PWError:
            return ""

    def signature(self) -> str:
        links = self.scan_links()
        return page_signature(
            self.page.url,
            self.page_info(),
            links,
            limit=self.selectors.signature_link_limit,
        )

    def _usable(self, locator) -> bool:
        try:
            if not locator.is_visible() or not locator.is_enabled():
                return False
            if (locator.get_attribute("aria-disabled") or "").lower() == "true":
                return False
            return "disabled" not in (locator.get_attribute("class") or "").lower()
        except PWError:
            return False

    def find_next(self) -> Optional[Any]:
        try:
            return self._find_next()
        except PWError as exc:
            _capture_event("error", phase="find_next", error=repr(exc))
            return None

    def _find_next(self) -> Optional[Any]:
        scoped = [
            f"{container} {control}"
            for container in self.selectors.pager_containers
            for control in self.selectors.next_controls
        ]
        for selector in (*scoped, *self.selectors.next_controls):
            locator = self.page.locator(selector)
            for index in range(locator.count()):
                candidate = locator.nth(index)
                if self._usable(candidate):
                    return candidate

        generic = self.page.locator(self.selectors.generic_controls)
        for index in range(generic.count()):
            candidate = generic.nth(index)
            try:
                text = (candidate.text_content() or "").strip().lower()
            except PWError:
                continue
            if text in self.selectors.next_texts and self._usable(candidate):
                return candidate
        return None

    def activate(self, control: Any) -> bool:
        """Click the next control; a detached or covered control returns False."""

        try:
            control.click()
        except PWError as exc:
            _capture_event("error", phase="activate_next", error=repr(exc))
            return False
        return True

    def wait(self, ms: int) -> None:
        self.page.wait_for_timeout(ms)


__all__ = [
    "browser_session",
    "NetworkTap",
    "MarkupSampler",
    "CaptureWaiter",
    "PageNavigator",
    "PlaywrightListingView",
    "page_metadata_provider",
    "read_state_root",
]
