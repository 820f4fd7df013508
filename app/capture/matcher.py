"""Per-row target matching: searching -> resolved | timed_out."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

from . import config
from .error_codes import ErrorCode
from .evidence import Evidence, SourceKind, message_ids_match
from .evidence_pool import EvidencePool
from .logging_utils import _capture_event
from .rows import Row, normalize_message_path
from .scoring import DEFAULT_WEIGHTS, ScoreWeights, is_support_widget, looks_like_message_content, rank

StateLookup = Callable[[Row], List[Evidence]]

RULE_MASKED_EXACT = "masked-exact"
RULE_CONFIDENT_CONTENT = "confident-content"
RULE_LOW_CONFIDENCE = "low-confidence"


class MatchState(str, Enum):
    SEARCHING = "searching"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"


@dataclass
class MatchOutcome:
    state: MatchState
    evidence: Optional[Evidence] = None
    score: float = 0.0
    rule: str = ""
    error: str = ""
    elapsed_ms: int = 0
    cancelled: bool = False

    @property
    def resolved(self) -> bool:
        return self.state is MatchState.RESOLVED


def _evidence_matches_target(evidence: Evidence, target: str) -> bool:
    return bool(target) and (
        message_ids_match(evidence.message_id, target)
        or message_ids_match(evidence.request_message_id, target)
    )


class TargetMatcher:
    """Poll the evidence pool (and optional direct lookups) for one row.

    Acceptance is gated on deterministic provenance: the top-scoring record
    is only accepted when its id was correlated through a request/response
    pair or found by a direct-id state lookup.
    """

    def __init__(
        self,
        pool: EvidencePool,
        *,
        weights: ScoreWeights = DEFAULT_WEIGHTS,
        state_lookup: Optional[StateLookup] = None,
        timeout_ms: Optional[int] = None,
        poll_ms: Optional[int] = None,
        min_good_chars: Optional[int] = None,
        allow_low_confidence: Optional[bool] = None,
        pulse_ms: Optional[int] = None,
        clock: Optional[Callable[[], int]] = None,
        sleep: Optional[Callable[[int], None]] = None,
        stop_requested: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.pool = pool
        self.weights = weights
        self.state_lookup = state_lookup
        self.timeout_ms = config.CAPTURE_TIMEOUT_MS if timeout_ms is None else int(timeout_ms)
        self.poll_ms = config.CAPTURE_POLL_MS if poll_ms is None else max(1, int(poll_ms))
        self.min_good_chars = config.MIN_GOOD_CHARS if min_good_chars is None else int(min_good_chars)
        self.allow_low_confidence = (
            config.ALLOW_LOW_CONFIDENCE if allow_low_confidence is None else bool(allow_low_confidence)
        )
        self.pulse_ms = config.CAPTURE_PULSE_MS if pulse_ms is None else int(pulse_ms)
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._sleep = sleep or (lambda ms: time.sleep(ms / 1000.0))
        self._stop_requested = stop_requested or (lambda: False)

    # ------------------------------------------------------------------
    # Candidate gathering
    # ------------------------------------------------------------------

    def targeted_network_candidate(self, row: Row) -> Optional[Tuple[float, Evidence]]:
        """Best deterministic network evidence whose id matches the row."""

        target = row.target_message_id
        if not target:
            return None
        exact = [
            e
            for e in self.pool.query_alive(self._clock())
            if e.source_kind is SourceKind.NETWORK
            and e.is_deterministic
            and _evidence_matches_target(e, target)
        ]
        if not exact:
            return None
        target_path = normalize_message_path(row.target_url)
        same_page = [e for e in exact if target_path and normalize_message_path(e.page_context) == target_path]
        # Newest first so ties resolve to the most recent observation.
        ranked = rank(reversed(same_page or exact), row, self.weights)
        return ranked[0] if ranked else None

    def state_candidate(self, row: Row) -> Optional[Tuple[float, Evidence]]:
        if self.state_lookup is None or not row.target_message_id:
            return None
        ranked = rank(self.state_lookup(row), row, self.weights)
        return ranked[0] if ranked else None

    def best_candidate(self, row: Row) -> Optional[Tuple[float, Evidence]]:
        picks = [c for c in (self.targeted_network_candidate(row), self.state_candidate(row)) if c]
        if not picks:
            return None
        ranked = rank([evidence for _score, evidence in picks], row, self.weights)
        return ranked[0]

    # ------------------------------------------------------------------
    # Acceptance
    # ------------------------------------------------------------------

    def acceptance_rule(self, evidence: Evidence, row: Row) -> str:
        """Return the rule that accepts ``evidence`` for ``row``, or ``""``."""

        if not evidence.is_deterministic:
            return ""
        if not _evidence_matches_target(evidence, row.target_message_id):
            return ""
        if evidence.masked:
            return RULE_MASKED_EXACT
        if (
            not is_support_widget(evidence)
            and looks_like_message_content(evidence.body_text, evidence.body_html)
            and evidence.total_chars >= self.min_good_chars
        ):
            return RULE_CONFIDENT_CONTENT
        return ""

    def poll(self, row: Row) -> MatchOutcome:
        """One evaluation pass; never sleeps."""

        best = self.best_candidate(row)
        if best is None:
            return MatchOutcome(state=MatchState.SEARCHING)
        best_score, evidence = best
        rule = self.acceptance_rule(evidence, row)
        if not rule:
            return MatchOutcome(state=MatchState.SEARCHING, evidence=evidence, score=best_score)
        return MatchOutcome(
            state=MatchState.RESOLVED,
            evidence=evidence,
            score=best_score,
            rule=rule,
            error=ErrorCode.MASKED_CONTENT if rule == RULE_MASKED_EXACT else "",
        )

    def low_confidence_candidate(self, row: Row) -> Optional[Tuple[float, Evidence]]:
        """Best same-page, unmasked, non-widget evidence of any provenance."""

        target_path = normalize_message_path(row.target_url)
        pool = [
            e
            for e in self.pool.query_alive(self._clock())
            if not e.masked
            and not is_support_widget(e)
            and e.total_chars >= self.min_good_chars
            and (not target_path or normalize_message_path(e.page_context) == target_path)
        ]
        ranked = rank(reversed(pool), row, self.weights)
        return ranked[0] if ranked else None

    def capture(self, row: Row) -> MatchOutcome:
        """Poll until resolved, timed out, or a stop is requested."""

        started = self._clock()
        last_pulse = started
        last: MatchOutcome = MatchOutcome(state=MatchState.SEARCHING)

        while True:
            now = self._clock()
            elapsed = now - started
            if elapsed >= self.timeout_ms:
                break
            if self._stop_requested():
                last.cancelled = True
                last.elapsed_ms = elapsed
                return last

            last = self.poll(row)
            last.elapsed_ms = elapsed
            if last.resolved:
                _capture_event(
                    "match",
                    kind="resolved",
                    rule=last.rule,
                    source=last.evidence.capture_source if last.evidence else "",
                    score=round(last.score, 2),
                    elapsed_ms=elapsed,
                    prospect_id=row.prospect_id,
                )
                return last

            if now - last_pulse >= self.pulse_ms:
                candidate = last.evidence
                _capture_event(
                    "match",
                    kind="pulse",
                    elapsed_ms=elapsed,
                    has_candidate=candidate is not None,
                    best_chars=candidate.total_chars if candidate else 0,
                    best_source=candidate.capture_source if candidate else "",
                    best_junk=is_support_widget(candidate) if candidate else False,
                    best_msg_match=_evidence_matches_target(candidate, row.target_message_id) if candidate else False,
                    best_req_op=candidate.request_operation if candidate else "",
                )
                last_pulse = now
            self._sleep(self.poll_ms)

        elapsed = self._clock() - started
        if self.allow_low_confidence:
            fallback = self.low_confidence_candidate(row)
            if fallback is not None:
                fallback_score, evidence = fallback
                _capture_event(
                    "match",
                    kind="low_confidence",
                    source=evidence.capture_source,
                    score=round(fallback_score, 2),
                    elapsed_ms=elapsed,
                    prospect_id=row.prospect_id,
                )
                return MatchOutcome(
                    state=MatchState.RESOLVED,
                    evidence=evidence,
                    score=fallback_score,
                    rule=RULE_LOW_CONFIDENCE,
                    error=ErrorCode.LOW_CONFIDENCE,
                    elapsed_ms=elapsed,
                )

        _capture_event(
            "match",
            kind="timeout",
            timeout_ms=self.timeout_ms,
            elapsed_ms=elapsed,
            prospect_id=row.prospect_id,
        )
        return MatchOutcome(
            state=MatchState.TIMED_OUT,
            evidence=last.evidence,
            score=last.score,
            error=ErrorCode.CAPTURE_TIMEOUT,
            elapsed_ms=elapsed,
        )


__all__ = [
    "TargetMatcher",
    "MatchOutcome",
    "MatchState",
    "RULE_MASKED_EXACT",
    "RULE_CONFIDENT_CONTENT",
    "RULE_LOW_CONFIDENCE",
]
