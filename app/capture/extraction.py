"""Typed extraction rules for heterogeneous JSON payloads.

Known payload shapes are handled by explicit rules tried in order. When none
of them applies, a single generic key scan walks the object graph; anything it
produces is tagged ``generic-key-scan`` so scoring can treat it as
low-confidence.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from . import config
from .evidence import GENERIC_KEY_SCAN_DETAIL, is_masked_marker, message_ids_match

MAX_WALK_DEPTH = 12
MAX_WALK_NODES = 5_000
MAX_BODY_CANDIDATES = 60
MAX_KEY_SCAN_DEPTH = 8

_BODY_TEXT_KEYS = ("bodyText", "messageBodyText", "body_text")
_BODY_HTML_KEYS = ("bodyHtml", "messageBodyHtml", "body_html")
_EXTRA_KEYS = {
    "delivered_at": "deliveredAt",
    "opened_at": "openedAt",
    "replied_at": "repliedAt",
    "open_count": "openCount",
    "click_count": "clickCount",
    "state": "state",
}


@dataclass
class RawCandidate:
    """Body-like fields pulled out of one payload node."""

    message_id: str = ""
    prospect_id: str = ""
    subject: str = ""
    body_text: str = ""
    body_html: str = ""
    masked: bool = False
    detail: str = ""
    extras: Dict[str, str] = field(default_factory=dict)


@dataclass
class RequestMeta:
    method: str = "GET"
    url: str = ""
    operation_name: str = ""
    message_id: str = ""
    prospect_id: str = ""
    sha256: str = ""
    has_query_text: bool = False
    low_confidence: bool = False

    def relevance(self) -> int:
        return (
            (4 if self.message_id else 0)
            + (2 if self.prospect_id else 0)
            + (3 if operation_looks_relevant(self.operation_name) else 0)
            + (1 if self.operation_name else 0)
            + (1 if self.has_query_text else 0)
        )


def operation_looks_relevant(operation_name: Optional[str]) -> bool:
    op = str(operation_name or "")
    if not op:
        return False
    return any(hint in op for hint in config.RELEVANT_OPERATION_HINTS)


def parse_json_safe(value: Any) -> Any:
    """Return parsed JSON for object/array strings, else ``None``."""

    if not isinstance(value, (str, bytes)):
        return None
    text = value.decode("utf-8", "ignore") if isinstance(value, bytes) else value
    text = text.strip()
    if not text or text[0] not in "{[":
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Bounded graph walk
# ---------------------------------------------------------------------------


def walk_nodes(
    root: Any,
    *,
    max_depth: int = MAX_WALK_DEPTH,
    max_nodes: int = MAX_WALK_NODES,
) -> Iterator[Tuple[Dict[str, Any], int]]:
    """Yield ``(mapping, depth)`` for every dict reachable from ``root``.

    Depth and the number of visited containers are hard caps. Containers are
    tracked by identity so shared or cyclic references are visited once.
    """

    stack: List[Tuple[Any, int]] = [(root, 0)]
    seen: set[int] = set()
    visited = 0
    while stack:
        node, depth = stack.pop()
        if depth > max_depth or not isinstance(node, (dict, list, tuple)):
            continue
        if id(node) in seen:
            continue
        seen.add(id(node))
        visited += 1
        if visited > max_nodes:
            return
        if isinstance(node, dict):
            yield node, depth
            children = list(node.values())
        else:
            children = list(node)
        for child in reversed(children):
            if isinstance(child, (dict, list, tuple)):
                stack.append((child, depth + 1))


def _first_str(node: Dict[str, Any], keys: Tuple[str, ...]) -> str:
    for key in keys:
        value = node.get(key)
        if value not in (None, ""):
            return str(value)
    return ""


def _nested(node: Any, *path: str) -> Any:
    current = node
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _candidate_from_node(node: Dict[str, Any], *, detail: str) -> Optional[RawCandidate]:
    inner = node.get("message") if isinstance(node.get("message"), dict) else {}
    body_text = _first_str(node, _BODY_TEXT_KEYS) or _first_str(inner, _BODY_TEXT_KEYS)
    body_html = _first_str(node, _BODY_HTML_KEYS) or _first_str(inner, _BODY_HTML_KEYS)
    if not body_text and not body_html:
        return None

    prospect = node.get("prospect") if isinstance(node.get("prospect"), dict) else {}
    outbox = node.get("outboxMailingReduced") if isinstance(node.get("outboxMailingReduced"), dict) else {}
    extras: Dict[str, str] = {}
    for out_key, src_key in _EXTRA_KEYS.items():
        value = outbox.get(src_key)
        if value in (None, ""):
            value = inner.get(src_key)
        if value not in (None, ""):
            extras[out_key] = str(value)

    return RawCandidate(
        message_id=(
            _first_str(node, ("messageId", "id"))
            or _first_str(inner, ("id", "messageId"))
        ),
        prospect_id=(
            _first_str(node, ("prospectId",))
            or _first_str(prospect, ("id",))
            or _first_str(inner, ("prospectId",))
        ),
        subject=_first_str(node, ("subject",)) or _first_str(inner, ("subject",)),
        body_text=body_text,
        body_html=body_html,
        masked=bool(node.get("bodyMasked")) or bool(inner.get("bodyMasked")) or is_masked_marker(body_text, body_html),
        detail=detail,
        extras=extras,
    )


def collect_body_candidates(
    root: Any,
    *,
    detail: str,
    max_candidates: int = MAX_BODY_CANDIDATES,
) -> List[RawCandidate]:
    """Collect body-bearing nodes from an arbitrary object graph."""

    out: List[RawCandidate] = []
    for node, _depth in walk_nodes(root):
        candidate = _candidate_from_node(node, detail=detail)
        if candidate is not None:
            out.append(candidate)
            if len(out) >= max_candidates:
                break
    return out


# ---------------------------------------------------------------------------
# Response payload rules
# ---------------------------------------------------------------------------

PayloadRule = Callable[[Any], Optional[List[RawCandidate]]]


def _thread_messages_rule(payload: Any) -> Optional[List[RawCandidate]]:
    collection = _nested(payload, "data", "threadMessages", "collection")
    if not isinstance(collection, list):
        return None
    detail = f"payload:{config.THREAD_MESSAGES_OPERATION}"
    out: List[RawCandidate] = []
    for item in collection:
        if not isinstance(item, dict):
            continue
        candidate = _candidate_from_node(item, detail=detail)
        if candidate is not None:
            out.append(candidate)
    return out


def _single_message_rule(payload: Any) -> Optional[List[RawCandidate]]:
    message = _nested(payload, "data", "message")
    if not isinstance(message, dict):
        return None
    candidate = _candidate_from_node(message, detail="payload:Messages_GetMessage")
    return [candidate] if candidate is not None else []


def _generic_scan_rule(payload: Any) -> Optional[List[RawCandidate]]:
    return collect_body_candidates(payload, detail=f"payload:{GENERIC_KEY_SCAN_DETAIL}")


PAYLOAD_RULES: Tuple[PayloadRule, ...] = (
    _thread_messages_rule,
    _single_message_rule,
)


def extract_payload_candidates(payload: Any, *, allow_generic: bool = True) -> List[RawCandidate]:
    """Run the typed rules in order; fall back to the generic scan."""

    for rule in PAYLOAD_RULES:
        result = rule(payload)
        if result is not None:
            return result
    if not allow_generic:
        return []
    return _generic_scan_rule(payload) or []


def filter_for_request(candidates: List[RawCandidate], meta: RequestMeta) -> List[RawCandidate]:
    """Drop candidates that contradict the correlated request."""

    out: List[RawCandidate] = []
    for candidate in candidates:
        if not candidate.message_id and not candidate.body_text and not candidate.body_html:
            continue
        if meta.message_id and not message_ids_match(candidate.message_id, meta.message_id):
            continue
        if meta.prospect_id and candidate.prospect_id and candidate.prospect_id != meta.prospect_id:
            continue
        out.append(candidate)
    return out


# ---------------------------------------------------------------------------
# Request metadata rules
# ---------------------------------------------------------------------------


def _typed_request_meta(payload: Dict[str, Any]) -> Optional[RequestMeta]:
    variables = payload.get("variables") if isinstance(payload.get("variables"), dict) else {}
    operation = str(payload.get("operationName") or "")
    if not operation and not variables:
        return None
    sha = _nested(payload, "extensions", "persistedQuery", "sha256Hash")
    return RequestMeta(
        operation_name=operation,
        message_id=_first_str(variables, ("messageId", "message_id")),
        prospect_id=_first_str(variables, ("prospectId", "prospect_id")),
        sha256=str(sha or ""),
        has_query_text=isinstance(payload.get("query"), str) and len(payload["query"]) > 10,
    )


def find_by_key_pattern(root: Any, pattern: re.Pattern[str]) -> Any:
    """Return the first non-empty value whose key matches ``pattern``."""

    for node, _depth in walk_nodes(root, max_depth=MAX_KEY_SCAN_DEPTH):
        for key, value in node.items():
            if pattern.search(str(key)) and value not in (None, "") and not isinstance(value, (dict, list)):
                return value
    return None


_OP_KEY_RE = re.compile(r"operation", re.I)
_MESSAGE_KEY_RE = re.compile(r"message.?id", re.I)
_PROSPECT_KEY_RE = re.compile(r"prospect.?id", re.I)
_SHA_KEY_RE = re.compile(r"sha256", re.I)


def _generic_request_meta(payload: Any) -> RequestMeta:
    return RequestMeta(
        operation_name=str(find_by_key_pattern(payload, _OP_KEY_RE) or ""),
        message_id=str(find_by_key_pattern(payload, _MESSAGE_KEY_RE) or ""),
        prospect_id=str(find_by_key_pattern(payload, _PROSPECT_KEY_RE) or ""),
        sha256=str(find_by_key_pattern(payload, _SHA_KEY_RE) or ""),
        low_confidence=True,
    )


def extract_request_meta(method: str, url: str, body: Any) -> RequestMeta:
    """Describe an outgoing request from its method, URL and body.

    Batched bodies may contain several operations; the most relevant one wins.
    """

    parsed = body if isinstance(body, (dict, list)) else parse_json_safe(body)
    if isinstance(parsed, list):
        payloads = [p for p in parsed if isinstance(p, dict)]
    elif isinstance(parsed, dict):
        payloads = [parsed]
    else:
        payloads = []

    metas: List[RequestMeta] = []
    for payload in payloads:
        meta = _typed_request_meta(payload)
        metas.append(meta if meta is not None else _generic_request_meta(payload))

    # Stable sort keeps batch order among equally relevant entries.
    metas.sort(key=lambda m: m.relevance(), reverse=True)
    top = metas[0] if metas else RequestMeta()
    top.method = str(method or "GET").upper()
    top.url = str(url or "")
    return top


def should_inspect_response(url: str, content_type: str) -> bool:
    if "json" not in str(content_type or "").lower():
        return False
    target = str(url or "")
    return config.APP_HOST_SUFFIX in target or bool(
        re.search(r"graphql|message|thread|mail|prospect", target, re.I)
    )


__all__ = [
    "RawCandidate",
    "RequestMeta",
    "walk_nodes",
    "collect_body_candidates",
    "extract_payload_candidates",
    "filter_for_request",
    "extract_request_meta",
    "find_by_key_pattern",
    "operation_looks_relevant",
    "parse_json_safe",
    "should_inspect_response",
]
