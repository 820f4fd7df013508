"""Rows (units of work), Results and the link/result column contracts."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import parse_qs, quote, unquote, urljoin, urlparse, urlunparse

from . import config
from .evidence import normalize_message_id

# Column order is a compatibility contract for downstream consumers: only
# ever append.
LINK_COLUMNS: Tuple[str, ...] = (
    "sequence_id",
    "prospect_id",
    "message_id_encoded",
    "message_url",
)
REQUIRED_LINK_COLUMNS: Tuple[str, ...] = ("prospect_id", "message_id_encoded", "message_url")

RESULT_COLUMNS: Tuple[str, ...] = (
    "sequence_id",
    "prospect_id",
    "message_id",
    "subject",
    "body_text",
    "body_html",
    "delivered_at",
    "opened_at",
    "replied_at",
    "open_count",
    "click_count",
    "state",
    "message_url",
    "capture_source",
    "captured_at",
    "url_at_capture",
    "req_operation_name",
    "req_message_id",
    "req_prospect_id",
    "error",
    "target_message_id",
    "score",
)

_MESSAGE_ID_QUERY_KEYS = (
    "message_id_encoded",
    "messageId",
    "message_id",
    "mid",
    "thread_message_id",
    "threadMessageId",
)
_MESSAGE_PATH_RES = (
    re.compile(r"/messages?/([^/?#]+)", re.I),
    re.compile(r"/mail/([^/?#]+)", re.I),
    re.compile(r"/thread(?:s)?/([^/?#]+)", re.I),
    re.compile(r"/emails?/([^/?#]+)", re.I),
)
_PROSPECT_PATH_RE = re.compile(r"/prospects/(\d+)", re.I)
_SEQUENCE_PATH_RE = re.compile(r"/sequences/(\d+)", re.I)


@dataclass(frozen=True)
class Row:
    sequence_id: str
    prospect_id: str
    target_message_id: str
    target_url: str
    message_id_encoded: str = ""

    @classmethod
    def from_link(cls, link: Mapping[str, Any]) -> "Row":
        encoded = str(link.get("message_id_encoded") or "").strip()
        return cls(
            sequence_id=str(link.get("sequence_id") or "").strip(),
            prospect_id=str(link.get("prospect_id") or "").strip(),
            target_message_id=normalize_message_id(encoded),
            target_url=str(link.get("message_url") or link.get("target_url") or "").strip(),
            message_id_encoded=encoded,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Row":
        if "target_message_id" not in data:
            return cls.from_link(data)
        return cls(
            sequence_id=str(data.get("sequence_id") or ""),
            prospect_id=str(data.get("prospect_id") or ""),
            target_message_id=normalize_message_id(data.get("target_message_id")),
            target_url=str(data.get("target_url") or ""),
            message_id_encoded=str(data.get("message_id_encoded") or ""),
        )

    @property
    def dedup_key(self) -> Tuple[str, str]:
        return (self.prospect_id, self.target_message_id)

    @property
    def sort_key(self) -> Tuple[str, str, str]:
        return (self.sequence_id, self.prospect_id, self.target_message_id)

    def missing_fields(self) -> List[str]:
        missing = []
        if not self.prospect_id:
            missing.append("prospect_id")
        if not self.target_message_id:
            missing.append("message_id")
        if not self.target_url:
            missing.append("message_url")
        return missing

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    def to_link(self) -> Dict[str, str]:
        return {
            "sequence_id": self.sequence_id,
            "prospect_id": self.prospect_id,
            "message_id_encoded": self.message_id_encoded or quote(self.target_message_id, safe=""),
            "message_url": self.target_url,
        }


@dataclass
class Result:
    sequence_id: str = ""
    prospect_id: str = ""
    target_message_id: str = ""
    target_url: str = ""
    message_id_encoded: str = ""
    message_id: str = ""
    subject: str = ""
    body_text: str = ""
    body_html: str = ""
    capture_source: str = ""
    captured_at: str = ""
    error: str = ""
    url_at_capture: str = ""
    req_operation_name: str = ""
    req_message_id: str = ""
    req_prospect_id: str = ""
    delivered_at: str = ""
    opened_at: str = ""
    replied_at: str = ""
    open_count: str = ""
    click_count: str = ""
    state: str = ""
    score: str = ""

    @classmethod
    def blank(cls, row: Row, error: str = "") -> "Result":
        return cls(
            sequence_id=row.sequence_id,
            prospect_id=row.prospect_id,
            target_message_id=row.target_message_id,
            target_url=row.target_url,
            message_id_encoded=row.message_id_encoded,
            error=error,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Result":
        known = {f.name for f in fields(cls)}
        return cls(**{k: "" if v is None else str(v) for k, v in data.items() if k in known})

    @property
    def is_written(self) -> bool:
        return bool(self.captured_at or self.error)

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    def to_record(self) -> Dict[str, str]:
        """Flatten into the exported ``RESULT_COLUMNS`` shape."""

        data = self.to_dict()
        data["message_url"] = self.target_url
        return {column: data.get(column, "") for column in RESULT_COLUMNS}


def _query_first(query: Dict[str, List[str]], keys: Iterable[str]) -> str:
    for key in keys:
        values = query.get(key) or []
        for value in values:
            if value and value.strip():
                return value.strip()
    return ""


def _sequence_from_url(parsed) -> str:
    match = _SEQUENCE_PATH_RE.search(parsed.path or "")
    if match:
        return match.group(1)
    return _query_first(parse_qs(parsed.query), ("sequence_id", "sequenceId"))


def _message_id_from_url(parsed) -> str:
    found = _query_first(parse_qs(parsed.query), _MESSAGE_ID_QUERY_KEYS)
    if found:
        return quote(found, safe="") if "%" not in found else found
    for pattern in _MESSAGE_PATH_RES:
        match = pattern.search(parsed.path or "")
        if not match:
            continue
        raw = match.group(1).strip()
        if raw:
            return raw if "%" in raw else quote(raw, safe="")
    return ""


def parse_message_link(href: str, *, base_url: str = "") -> Optional[Row]:
    """Return a Row for an anchor href that points at a prospect message."""

    if not href:
        return None
    absolute = urljoin(base_url, href) if base_url else href
    try:
        parsed = urlparse(absolute)
    except ValueError:
        return None

    host = (parsed.hostname or "").lower()
    if not host or not host.endswith(config.APP_HOST_SUFFIX):
        return None

    decoded_path = unquote(parsed.path or "").lower()
    query = parse_qs(parsed.query)
    has_message_hint = (
        "/message" in decoded_path
        or "/mail" in decoded_path
        or "/thread" in decoded_path
        or any(key in query for key in ("messageId", "message_id", "mid"))
    )
    if "/prospects/" not in decoded_path or not has_message_hint:
        return None

    prospect_match = _PROSPECT_PATH_RE.search(unquote(parsed.path or ""))
    prospect_id = prospect_match.group(1) if prospect_match else _query_first(query, ("prospect_id", "prospectId"))
    encoded = _message_id_from_url(parsed)
    if not prospect_id or not encoded:
        return None

    sequence_id = _sequence_from_url(parsed)
    if not sequence_id and base_url:
        sequence_id = _sequence_from_url(urlparse(base_url))

    return Row.from_link(
        {
            "sequence_id": sequence_id,
            "prospect_id": prospect_id,
            "message_id_encoded": encoded,
            "message_url": urlunparse(parsed._replace(fragment="")),
        }
    )


def normalize_message_path(url: str) -> str:
    """Decoded URL path without trailing slashes; used as page identity."""

    try:
        parsed = urlparse(str(url or ""))
    except ValueError:
        return ""
    return unquote(parsed.path or "").rstrip("/")


def validate_link_columns(header: Iterable[str], rows: List[Mapping[str, Any]]) -> Optional[str]:
    present = set(header)
    for column in REQUIRED_LINK_COLUMNS:
        if column not in present:
            return f"Missing required column: {column}"
    if not rows:
        return "No rows found in links CSV."
    return None


__all__ = [
    "Row",
    "Result",
    "LINK_COLUMNS",
    "REQUIRED_LINK_COLUMNS",
    "RESULT_COLUMNS",
    "parse_message_link",
    "normalize_message_path",
    "validate_link_columns",
]
