"""Enumerate message rows from a paginated, lazily rendered listing."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from . import config
from .logging_utils import _capture_event, capture_context
from .rows import Row, normalize_message_path, parse_message_link

PAGE_INFO_RE = re.compile(r"\bpage\s+(\d+)\s*(?:of|/)\s*(\d+)\b", re.I)
PAGER_QUERY_KEYS = frozenset({"page", "p", "offset"})

STOP_NO_NEXT = "no_next_control"
STOP_NO_CHANGE = "page_did_not_change"
STOP_RECURRENCE = "signature_recurred"
STOP_MAX_CYCLES = "max_cycles"
STOP_REQUESTED = "stop_requested"


class ListingView(Protocol):
    """What the harvester needs from a rendered listing."""

    def current_url(self) -> str:
        ...

    def scan_links(self) -> List[str]:
        ...

    def scroll_step(self) -> None:
        ...

    def at_end(self) -> bool:
        ...

    def find_next(self) -> Optional[Any]:
        ...

    def activate(self, control: Any) -> bool:
        ...

    def signature(self) -> str:
        ...

    def page_info(self) -> str:
        ...

    def wait(self, ms: int) -> None:
        ...


def parse_page_info(text: str) -> Optional[Tuple[int, int]]:
    """Return ``(page, of)`` from a "Page N of M" style label."""

    match = PAGE_INFO_RE.search(str(text or ""))
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def view_key(url: str) -> str:
    """Listing identity independent of which page of it is shown."""

    parsed = urlparse(str(url or ""))
    query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k not in PAGER_QUERY_KEYS]
    return urlunparse(parsed._replace(query=urlencode(query), fragment=""))


def page_signature(href: str, page_label: str, links: List[str], limit: int = 20) -> str:
    """Identity of a rendered page: location, pager label and leading links."""

    info = parse_page_info(page_label)
    pager = f"{info[0]}/{info[1]}" if info else ""
    return "|".join([href, pager, *links[:limit]])


@dataclass
class HarvestReport:
    rows: List[Row] = field(default_factory=list)
    pages_visited: int = 0
    scroll_passes: int = 0
    stop_reason: str = ""


class LinkHarvester:
    def __init__(
        self,
        *,
        max_cycles: Optional[int] = None,
        max_scroll_passes: Optional[int] = None,
        stable_passes: Optional[int] = None,
        stable_passes_at_end: Optional[int] = None,
        scroll_settle_ms: Optional[int] = None,
        page_change_timeout_ms: Optional[int] = None,
        page_change_poll_ms: Optional[int] = None,
        after_next_ms: Optional[int] = None,
        clock: Optional[Callable[[], int]] = None,
        stop_requested: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.max_cycles = config.HARVEST_MAX_CYCLES if max_cycles is None else max_cycles
        self.max_scroll_passes = (
            config.HARVEST_MAX_SCROLL_PASSES if max_scroll_passes is None else max_scroll_passes
        )
        self.stable_passes = config.HARVEST_STABLE_PASSES if stable_passes is None else stable_passes
        self.stable_passes_at_end = (
            config.HARVEST_STABLE_PASSES_AT_END if stable_passes_at_end is None else stable_passes_at_end
        )
        self.scroll_settle_ms = config.HARVEST_SCROLL_SETTLE_MS if scroll_settle_ms is None else scroll_settle_ms
        self.page_change_timeout_ms = (
            config.HARVEST_PAGE_CHANGE_TIMEOUT_MS if page_change_timeout_ms is None else page_change_timeout_ms
        )
        self.page_change_poll_ms = (
            config.HARVEST_PAGE_CHANGE_POLL_MS if page_change_poll_ms is None else max(1, page_change_poll_ms)
        )
        self.after_next_ms = config.HARVEST_AFTER_NEXT_MS if after_next_ms is None else after_next_ms
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._stop_requested = stop_requested or (lambda: False)
        self.rows: Dict[Tuple[str, str], Row] = {}
        self.page_progress: Dict[str, Tuple[int, int]] = {}

    # ------------------------------------------------------------------

    def harvest(self, view: ListingView) -> HarvestReport:
        with capture_context(listing=view_key(view.current_url())):
            return self._harvest(view)

    def _harvest(self, view: ListingView) -> HarvestReport:
        report = HarvestReport()
        seen_signatures = set()

        for _cycle in range(self.max_cycles):
            if self._stop_requested():
                report.stop_reason = STOP_REQUESTED
                break

            signature = view.signature()
            if signature in seen_signatures:
                report.stop_reason = STOP_RECURRENCE
                break
            seen_signatures.add(signature)
            report.pages_visited += 1

            self._record_page_info(view)
            report.scroll_passes += self.collect_page(view)
            # Scrolling renders more rows, so the settled page has its own identity.
            seen_signatures.add(view.signature())
            _capture_event(
                "harvest",
                kind="page_done",
                page=report.pages_visited,
                rows=len(self.rows),
                url=normalize_message_path(view.current_url()),
            )

            if self._stop_requested():
                report.stop_reason = STOP_REQUESTED
                break

            control = view.find_next()
            if control is None:
                report.stop_reason = STOP_NO_NEXT
                break
            before_next = view.signature()
            if not view.activate(control) or not self.wait_for_page_change(view, before_next):
                report.stop_reason = STOP_NO_CHANGE
                break
            view.wait(self.after_next_ms)
        else:
            report.stop_reason = STOP_MAX_CYCLES

        report.rows = sorted(self.rows.values(), key=lambda row: row.sort_key)
        _capture_event(
            "harvest",
            kind="finished",
            pages=report.pages_visited,
            rows=len(report.rows),
            stop_reason=report.stop_reason,
        )
        return report

    def scan(self, view: ListingView) -> int:
        """Add row-shaped links currently rendered; return how many were new."""

        base_url = view.current_url()
        added = 0
        for href in view.scan_links():
            row = parse_message_link(href, base_url=base_url)
            if row is None or row.dedup_key in self.rows:
                continue
            self.rows[row.dedup_key] = row
            added += 1
        return added

    def collect_page(self, view: ListingView) -> int:
        """Scan, scroll and re-scan until the row count stops growing."""

        self.scan(view)
        last_count = len(self.rows)
        stable = 0
        passes = 0
        while passes < self.max_scroll_passes:
            if self._stop_requested():
                break
            view.scroll_step()
            view.wait(self.scroll_settle_ms)
            passes += 1
            self.scan(view)

            count = len(self.rows)
            if count == last_count:
                stable += 1
            else:
                stable = 0
                last_count = count
            needed = self.stable_passes_at_end if view.at_end() else self.stable_passes
            if stable >= needed:
                break
        return passes

    def wait_for_page_change(self, view: ListingView, previous_signature: str) -> bool:
        deadline = self._clock() + self.page_change_timeout_ms
        while self._clock() < deadline:
            if self._stop_requested():
                return False
            if view.signature() != previous_signature:
                return True
            view.wait(self.page_change_poll_ms)
        return view.signature() != previous_signature

    def _record_page_info(self, view: ListingView) -> None:
        info = parse_page_info(view.page_info())
        if info is None:
            return
        key = view_key(view.current_url())
        self.page_progress[key] = info
        _capture_event("harvest", kind="page_info", page=info[0], of=info[1], view=key)


__all__ = [
    "LinkHarvester",
    "ListingView",
    "HarvestReport",
    "parse_page_info",
    "page_signature",
    "view_key",
    "STOP_NO_NEXT",
    "STOP_NO_CHANGE",
    "STOP_RECURRENCE",
    "STOP_MAX_CYCLES",
    "STOP_REQUESTED",
]
