"""Canonical evidence record and identifier helpers."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import unquote

from . import config

MASKED_BODY_RE = re.compile(r"^\s*\[body hidden\]\s*$", re.I)

THREAD_PAYLOAD_DETAIL = f"payload:{config.THREAD_MESSAGES_OPERATION}"
STATE_LOOKUP_PREFIX = "state-lookup:"
GENERIC_SCAN_DETAIL = "generic-div-scan"
PAGE_SNAPSHOT_DETAIL = "page-snapshot"
GENERIC_KEY_SCAN_DETAIL = "generic-key-scan"


class SourceKind(str, Enum):
    NETWORK = "network-payload"
    STATE = "state-scan"
    MARKUP = "markup-scan"


def _safe_kind(value: Any) -> SourceKind:
    try:
        return SourceKind(value)
    except ValueError:
        return SourceKind.MARKUP


def normalize_message_id(value: Any) -> str:
    """Return ``value`` URL-decoded, trimmed and lower-cased for comparison."""

    raw = str(value or "").strip()
    if not raw:
        return ""
    return unquote(raw).strip().lower()


def message_ids_match(a: Any, b: Any) -> bool:
    """Compare two message ids ignoring case, encoding and angle brackets."""

    left = normalize_message_id(a).replace("<", "").replace(">", "")
    right = normalize_message_id(b).replace("<", "").replace(">", "")
    return bool(left) and bool(right) and left == right


def is_masked_marker(body_text: Optional[str], body_html: Optional[str]) -> bool:
    return bool(MASKED_BODY_RE.match(str(body_text or body_html or "").strip()))


def body_chars(body_text: Optional[str], body_html: Optional[str]) -> int:
    return len(body_text or "") + len(body_html or "")


@dataclass(frozen=True)
class Evidence:
    """One observed body-like payload.

    Instances are created through :meth:`create`, which refuses records with
    no body content. They are never mutated; the pool drops them on eviction.
    """

    message_id: str
    prospect_id: str
    subject: str
    body_text: str
    body_html: str
    masked: bool
    source_kind: SourceKind
    source_detail: str
    observed_at_ms: int
    page_context: str = ""
    request_operation: str = ""
    request_message_id: str = ""
    request_prospect_id: str = ""
    request_method: str = ""
    fetch_url: str = ""
    extras: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        *,
        source_kind: SourceKind | str,
        source_detail: str,
        observed_at_ms: int,
        message_id: Any = "",
        prospect_id: Any = "",
        subject: Any = "",
        body_text: Any = "",
        body_html: Any = "",
        masked: bool = False,
        page_context: str = "",
        request_operation: str = "",
        request_message_id: str = "",
        request_prospect_id: str = "",
        request_method: str = "",
        fetch_url: str = "",
        extras: Optional[Dict[str, Any]] = None,
    ) -> Optional["Evidence"]:
        text = str(body_text or "")
        html = str(body_html or "")
        if not text and not html:
            return None
        kind = source_kind if isinstance(source_kind, SourceKind) else _safe_kind(source_kind)
        return cls(
            message_id=str(message_id or ""),
            prospect_id=str(prospect_id or ""),
            subject=str(subject or ""),
            body_text=text,
            body_html=html,
            masked=bool(masked) or is_masked_marker(text, html),
            source_kind=kind,
            source_detail=str(source_detail or ""),
            observed_at_ms=int(observed_at_ms),
            page_context=str(page_context or ""),
            request_operation=str(request_operation or ""),
            request_message_id=str(request_message_id or ""),
            request_prospect_id=str(request_prospect_id or ""),
            request_method=str(request_method or ""),
            fetch_url=str(fetch_url or ""),
            extras={str(k): str(v) for k, v in (extras or {}).items() if v not in (None, "")},
        )

    @property
    def total_chars(self) -> int:
        return body_chars(self.body_text, self.body_html)

    @property
    def is_deterministic(self) -> bool:
        """True for provenance trusted to carry an authoritative id."""

        if self.source_kind is SourceKind.NETWORK:
            if GENERIC_KEY_SCAN_DETAIL in self.source_detail:
                return False
            return bool(self.request_message_id) or (
                self.request_operation == config.THREAD_MESSAGES_OPERATION
            )
        if self.source_kind is SourceKind.STATE:
            return self.source_detail.startswith(STATE_LOOKUP_PREFIX)
        return False

    @property
    def is_low_precision(self) -> bool:
        return self.source_kind is SourceKind.MARKUP and (
            GENERIC_SCAN_DETAIL in self.source_detail
            or self.source_detail == PAGE_SNAPSHOT_DETAIL
        )

    @property
    def capture_source(self) -> str:
        """Label written to ``Result.capture_source``."""

        return f"{self.source_kind.value}:{self.source_detail}" if self.source_detail else self.source_kind.value


__all__ = [
    "Evidence",
    "SourceKind",
    "normalize_message_id",
    "message_ids_match",
    "is_masked_marker",
    "body_chars",
    "THREAD_PAYLOAD_DETAIL",
    "STATE_LOOKUP_PREFIX",
    "GENERIC_SCAN_DETAIL",
    "PAGE_SNAPSHOT_DETAIL",
    "GENERIC_KEY_SCAN_DETAIL",
]
