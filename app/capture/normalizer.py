"""Turn raw observations from the three channels into Evidence records."""

from __future__ import annotations

import re
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

from .evidence import (
    GENERIC_SCAN_DETAIL,
    PAGE_SNAPSHOT_DETAIL,
    STATE_LOOKUP_PREFIX,
    Evidence,
    SourceKind,
    body_chars,
    message_ids_match,
)
from .extraction import (
    RawCandidate,
    RequestMeta,
    collect_body_candidates,
    extract_payload_candidates,
    extract_request_meta,
    filter_for_request,
    parse_json_safe,
)
from .logging_utils import _capture_event

MIN_MARKUP_CHARS = 80
MIN_SNAPSHOT_CHARS = 120
MAX_PENDING_PER_KEY = 32
PENDING_TTL_MS = 60_000

BODY_SELECTORS: Tuple[str, ...] = (
    '[data-testid*="message-body"]',
    '[data-testid*="email-body"]',
    '[data-test*="message-body"]',
    '[data-test*="email-body"]',
    '[class*="message-body"]',
    '[class*="email-body"]',
    '[class*="mailing-body"]',
    '[class*="messageBody"]',
    '[class*="emailBody"]',
    ".outreach-quote",
)
GENERIC_SELECTOR = "main div, article div, section div"
SUBJECT_SELECTORS: Tuple[str, ...] = (
    "h4.MuiTypography-h4",
    '[data-testid*="subject"]',
    '[data-test*="subject"]',
    '[class*="subject"]',
    "h1",
)
SNAPSHOT_STRIP_SELECTORS = (
    "script, style, noscript, iframe, "
    '[id*="messenger"], [class*="messenger"], [id*="widget"], [class*="widget"], '
    '[id*="support"], [class*="support"]'
)
_TITLE_SUFFIX_RE = re.compile(r"\s*-\s*Outreach.*$", re.I)
_WS_RE = re.compile(r"\s+")
_DELIVERED_LABEL_RE = re.compile(r",\s*delivered on\s+(.+)$", re.I)

Clock = Callable[[], int]


def _default_clock() -> int:
    return int(time.time() * 1000)


class EvidenceNormalizer:
    """Pure transforms from raw observations to :class:`Evidence`.

    The only state kept is the pending-request table used to correlate a
    network response back to the request that produced it. Callers insert the
    returned records into an :class:`EvidencePool`.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or _default_clock
        self._pending: Dict[Tuple[str, str], Deque[Tuple[int, RequestMeta]]] = {}

    # ------------------------------------------------------------------
    # Request correlation
    # ------------------------------------------------------------------

    def register_request(self, method: str, url: str, body: Any) -> RequestMeta:
        """Record an outgoing request so its response can be correlated."""

        now = self._clock()
        self._prune_expired(now)
        meta = extract_request_meta(method, url, body)
        key = (meta.method, meta.url)
        queue = self._pending.setdefault(key, deque(maxlen=MAX_PENDING_PER_KEY))
        queue.append((now, meta))
        return meta

    def _prune_expired(self, now: int) -> None:
        for key in list(self._pending):
            queue = self._pending[key]
            while queue and now - queue[0][0] > PENDING_TTL_MS:
                queue.popleft()
            if not queue:
                del self._pending[key]

    def take_request(self, method: str, url: str) -> Optional[RequestMeta]:
        """Pop the oldest live pending request for ``(method, url)``."""

        key = (str(method or "GET").upper(), str(url or ""))
        queue = self._pending.get(key)
        if not queue:
            return None
        now = self._clock()
        while queue:
            registered_at, meta = queue.popleft()
            if now - registered_at <= PENDING_TTL_MS:
                if not queue:
                    self._pending.pop(key, None)
                return meta
        self._pending.pop(key, None)
        return None

    @property
    def pending_count(self) -> int:
        return sum(len(queue) for queue in self._pending.values())

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def from_network_exchange(
        self,
        request_meta: Optional[RequestMeta],
        response_body: Any,
        *,
        url: str = "",
        method: str = "GET",
        page_context: str = "",
    ) -> List[Evidence]:
        """Evidence from one intercepted response.

        When ``request_meta`` is not supplied, the pending-request table is
        consulted. Uncorrelated evidence is still produced, just without the
        request provenance fields.
        """

        meta = request_meta or self.take_request(method, url)
        payload = response_body if isinstance(response_body, (dict, list)) else parse_json_safe(response_body)
        if payload is None:
            return []

        raw = extract_payload_candidates(payload)
        if meta is not None:
            raw = filter_for_request(raw, meta)

        now = self._clock()
        out: List[Evidence] = []
        for candidate in raw:
            evidence = Evidence.create(
                source_kind=SourceKind.NETWORK,
                source_detail=candidate.detail,
                observed_at_ms=now,
                message_id=candidate.message_id,
                prospect_id=candidate.prospect_id or (meta.prospect_id if meta else ""),
                subject=candidate.subject,
                body_text=candidate.body_text,
                body_html=candidate.body_html,
                masked=candidate.masked,
                page_context=page_context,
                request_operation=meta.operation_name if meta else "",
                request_message_id=meta.message_id if meta else "",
                request_prospect_id=meta.prospect_id if meta else "",
                request_method=meta.method if meta else str(method or "").upper(),
                fetch_url=url or (meta.url if meta else ""),
                extras=candidate.extras,
            )
            if evidence is not None:
                out.append(evidence)

        if out:
            _capture_event(
                "ingest",
                channel="network",
                count=len(out),
                correlated=meta is not None,
                req_operation=meta.operation_name if meta else "",
                req_message_id_prefix=(meta.message_id if meta else "")[:28],
            )
        return out

    def from_state_snapshot(
        self,
        root: Any,
        *,
        root_name: str = "state",
        page_context: str = "",
    ) -> List[Evidence]:
        """Low-precision scan of an application-state tree."""

        return self._state_evidence(
            collect_body_candidates(root, detail=f"state:{root_name}"),
            page_context=page_context,
        )

    def from_state_lookup(
        self,
        root: Any,
        *,
        target_message_id: str,
        target_prospect_id: str = "",
        root_name: str = "state",
        page_context: str = "",
    ) -> List[Evidence]:
        """Direct-id lookup against a state tree.

        Only nodes whose id matches the target (and whose prospect, when
        present, agrees) are returned, tagged as deterministic provenance.
        """

        if not target_message_id:
            return []
        matched: List[RawCandidate] = []
        for candidate in collect_body_candidates(root, detail=f"{STATE_LOOKUP_PREFIX}{root_name}"):
            if not message_ids_match(candidate.message_id, target_message_id):
                continue
            prospect = candidate.prospect_id.strip()
            if target_prospect_id and prospect and prospect != target_prospect_id:
                continue
            matched.append(candidate)
        return self._state_evidence(matched, page_context=page_context)

    def _state_evidence(self, raw: List[RawCandidate], *, page_context: str) -> List[Evidence]:
        now = self._clock()
        out: List[Evidence] = []
        for candidate in raw:
            evidence = Evidence.create(
                source_kind=SourceKind.STATE,
                source_detail=candidate.detail,
                observed_at_ms=now,
                message_id=candidate.message_id,
                prospect_id=candidate.prospect_id,
                subject=candidate.subject,
                body_text=candidate.body_text,
                body_html=candidate.body_html,
                masked=candidate.masked,
                page_context=page_context,
                extras=candidate.extras,
            )
            if evidence is not None:
                out.append(evidence)
        return out

    def from_markup_snapshot(
        self,
        document: str,
        *,
        page_context: str = "",
        frame_label: str = "",
        include_page_snapshot: bool = True,
    ) -> List[Evidence]:
        """Evidence from rendered markup: best body element plus a page snapshot."""

        if not document:
            return []
        soup = BeautifulSoup(document, "html5lib")
        subject = best_subject(soup)
        now = self._clock()
        out: List[Evidence] = []

        best = _best_body_element(soup)
        if best is not None:
            element, selector = best
            detail = f"{frame_label}:{selector}" if frame_label else f"dom:{selector}"
            evidence = Evidence.create(
                source_kind=SourceKind.MARKUP,
                source_detail=detail,
                observed_at_ms=now,
                subject=subject,
                body_text=element.get_text("\n", strip=True),
                body_html=element.decode_contents().strip(),
                page_context=page_context,
            )
            if evidence is not None:
                out.append(evidence)

        if include_page_snapshot and not frame_label:
            snapshot = _page_snapshot(soup)
            if snapshot is not None:
                text, html = snapshot
                evidence = Evidence.create(
                    source_kind=SourceKind.MARKUP,
                    source_detail=PAGE_SNAPSHOT_DETAIL,
                    observed_at_ms=now,
                    subject=subject,
                    body_text=text,
                    body_html=html,
                    page_context=page_context,
                )
                if evidence is not None:
                    out.append(evidence)
        return out


def best_subject(soup: BeautifulSoup) -> str:
    for selector in SUBJECT_SELECTORS:
        element = soup.select_one(selector)
        if element is None:
            continue
        text = _WS_RE.sub(" ", element.get_text(" ", strip=True)).strip()
        if 2 < len(text) < 280:
            return text
    title = soup.title.get_text(strip=True) if soup.title else ""
    return _TITLE_SUFFIX_RE.sub("", title).strip()


def _best_body_element(soup: BeautifulSoup):
    seen: set[int] = set()
    candidates = []

    def add(element, label: str) -> None:
        if id(element) in seen:
            return
        seen.add(id(element))
        text = element.get_text("\n", strip=True)
        html = element.decode_contents().strip()
        chars = body_chars(text, html)
        if chars < MIN_MARKUP_CHARS:
            return
        candidates.append((chars, len(candidates), element, label))

    for selector in BODY_SELECTORS:
        for element in soup.select(selector):
            add(element, selector)

    if not candidates:
        for element in soup.select(GENERIC_SELECTOR):
            add(element, GENERIC_SCAN_DETAIL)

    if not candidates:
        return None
    candidates.sort(key=lambda item: (-item[0], item[1]))
    _chars, _order, element, label = candidates[0]
    return element, label


def _page_snapshot(soup: BeautifulSoup) -> Optional[Tuple[str, str]]:
    root = soup.find("main") or soup.body
    if root is None:
        return None
    clone = BeautifulSoup(str(root), "html5lib")
    for element in clone.select(SNAPSHOT_STRIP_SELECTORS):
        if not element.decomposed:
            element.decompose()
    container = clone.find("main") or clone.body or clone
    text = container.get_text("\n", strip=True)
    html = container.decode_contents().strip()
    if body_chars(text, html) < MIN_SNAPSHOT_CHARS:
        return None
    return text, html


def markup_metadata(document: str) -> Dict[str, str]:
    """Subject and delivery time readable from the rendered message view."""

    if not document:
        return {}
    soup = BeautifulSoup(document, "html5lib")
    out: Dict[str, str] = {}
    subject = best_subject(soup)
    if subject:
        out["subject"] = subject
    for element in soup.select("[aria-label]"):
        match = _DELIVERED_LABEL_RE.search(element.get("aria-label") or "")
        if match:
            out["delivered_at"] = match.group(1).strip()
            break
    return out


__all__ = ["EvidenceNormalizer", "best_subject", "markup_metadata"]
