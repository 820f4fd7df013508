"""Candidate ranking.

``score`` is a pure, additive function of an Evidence record and a Row. Every
bonus and penalty is a fixed offset applied only when its condition holds, so
the contribution of each term can be read straight off a log line. The
magnitudes were tuned against observed false positives and are kept in
:class:`ScoreWeights` so they can be overridden and re-validated.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from . import config
from .evidence import Evidence, body_chars, is_masked_marker, message_ids_match
from .extraction import operation_looks_relevant
from .rows import Row, normalize_message_path

_QUOTED_REPLY_RE = re.compile(r"on\s+\w{3},\s+\w{3}\s+\d{1,2},\s+\d{4}\s+at", re.I)
CONTENT_CHAR_THRESHOLD = 1200


@dataclass(frozen=True)
class ScoreWeights:
    length_cap: int = 20_000
    length_divisor: float = 100.0
    unmasked_content: float = 250.0
    unmasked_min_chars: int = 30
    masked: float = -50.0
    has_subject: float = 8.0
    has_message_id: float = 6.0
    request_id_match: float = 600.0
    body_id_match: float = 220.0
    prospect_match: float = 70.0
    relevant_operation: float = 35.0
    same_page: float = 30.0
    deterministic_source: float = 120.0
    message_like: float = 180.0
    support_widget: float = -700.0
    low_precision_scan: float = -40.0


DEFAULT_WEIGHTS = ScoreWeights()


def looks_like_message_content(body_text: str, body_html: str) -> bool:
    """Lexical check for real e-mail content (closings, quotes, footers)."""

    text = str(body_text or "").lower()
    html = str(body_html or "").lower()
    if not text and not html:
        return False
    if is_masked_marker(body_text, body_html):
        return True
    if (
        _QUOTED_REPLY_RE.search(text)
        or " wrote:" in text
        or "unsubscribe" in text
        or "best," in text
        or "regards," in text
    ):
        return True
    if "outreach-signature" in html or "outreach-quote" in html or "mailto:" in html:
        return True
    return body_chars(body_text, body_html) > CONTENT_CHAR_THRESHOLD


def is_support_widget(evidence: Evidence) -> bool:
    """Markers of the vendor support/chat widget rather than a message."""

    text = evidence.body_text.lower()
    html = evidence.body_html.lower()
    subject = evidence.subject.lower()
    detail = evidence.source_detail.lower()
    if "smooch.io" in html or "zendesk sunshine" in html:
        return True
    if "messenger-button" in html or "type a message" in html:
        return True
    if "you're back online" in text and "outreach support" in text:
        return True
    if subject == "outreach support":
        return True
    if detail.startswith("iframe:") and "outreach support" in text:
        return True
    return False


def score(evidence: Evidence, row: Row, weights: ScoreWeights = DEFAULT_WEIGHTS) -> float:
    """Rank ``evidence`` as an answer for ``row``; higher is better."""

    total = evidence.total_chars
    masked = evidence.masked
    value = min(total, weights.length_cap) / weights.length_divisor

    if masked:
        value += weights.masked
    elif total > weights.unmasked_min_chars:
        value += weights.unmasked_content
    if evidence.subject:
        value += weights.has_subject
    if evidence.message_id:
        value += weights.has_message_id

    target = row.target_message_id
    if target and message_ids_match(evidence.request_message_id, target):
        value += weights.request_id_match
    if target and message_ids_match(evidence.message_id, target):
        value += weights.body_id_match
    if row.prospect_id and row.prospect_id in (
        evidence.prospect_id.strip(),
        evidence.request_prospect_id.strip(),
    ):
        value += weights.prospect_match
    if operation_looks_relevant(evidence.request_operation):
        value += weights.relevant_operation
    if row.target_url and evidence.page_context:
        target_path = normalize_message_path(row.target_url)
        if target_path and normalize_message_path(evidence.page_context) == target_path:
            value += weights.same_page
    if evidence.is_deterministic:
        value += weights.deterministic_source

    # Widget penalty comes after the content bonus and always outweighs it.
    if looks_like_message_content(evidence.body_text, evidence.body_html):
        value += weights.message_like
    if is_support_widget(evidence):
        value += weights.support_widget
    if evidence.is_low_precision:
        value += weights.low_precision_scan
    return value


def rank(
    candidates: Iterable[Optional[Evidence]],
    row: Row,
    weights: ScoreWeights = DEFAULT_WEIGHTS,
) -> List[Tuple[float, Evidence]]:
    """Return ``(score, evidence)`` pairs, best first.

    Ties keep input order (newest-last pools should be passed reversed when
    recency should win).
    """

    scored = [(score(e, row, weights), e) for e in candidates if e is not None]
    scored.sort(key=lambda item: item[0], reverse=True)
    return scored


def weights_from_config() -> ScoreWeights:
    overrides = {}
    for name in ScoreWeights.__dataclass_fields__:
        env_value = config.score_weight_override(name)
        if env_value is not None:
            overrides[name] = type(getattr(DEFAULT_WEIGHTS, name))(env_value)
    return ScoreWeights(**overrides) if overrides else DEFAULT_WEIGHTS


__all__ = [
    "ScoreWeights",
    "DEFAULT_WEIGHTS",
    "score",
    "rank",
    "looks_like_message_content",
    "is_support_widget",
    "weights_from_config",
]
