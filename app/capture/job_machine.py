"""Resumable row-by-row capture job.

Every tick reads the persisted job, performs at most one row worth of work and
writes the job back before anything that could tear down the browser context
(navigation). A process restart therefore resumes at the persisted cursor.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, fields
from typing import Callable, Dict, Optional, Protocol

from . import config
from .error_codes import ErrorCode, TransportError
from .evidence import Evidence, normalize_message_id
from .job_store import Job, JobPhase, JobStore
from .logging_utils import _capture_event, capture_context
from .matcher import MatchOutcome, TargetMatcher
from .rows import Result, Row, normalize_message_path
from .utils import now_iso, now_ms, text_preview

MetadataProvider = Callable[[Row, Optional[Evidence]], Dict[str, str]]

# Result fields a metadata provider may fill when the evidence left them empty.
_METADATA_FIELDS = {"subject", "delivered_at", "opened_at", "replied_at", "state"}


class NavigationController(Protocol):
    def current_context(self) -> str:
        ...

    def navigate(self, url: str) -> None:
        ...


@dataclass
class EngineState:
    """Non-durable per-process counters, passed explicitly into each tick."""

    processing: bool = False
    stop_requested: bool = False
    ticks: int = 0
    rows_captured: int = 0
    last_tick_ms: int = 0
    last_phase: str = JobPhase.IDLE.value

    def request_stop(self) -> None:
        self.stop_requested = True


def is_current_page_for_row(current: str, row: Row) -> bool:
    now = normalize_message_path(current)
    target = normalize_message_path(row.target_url)
    return bool(now) and bool(target) and now == target


def build_result(row: Row, outcome: MatchOutcome, *, url_at_capture: str) -> Result:
    """Turn a match outcome into the persisted Result for ``row``."""

    result = Result.blank(row)
    evidence = outcome.evidence if outcome.resolved else None
    if evidence is None:
        result.error = outcome.error or ErrorCode.CAPTURE_TIMEOUT
        return result

    result.message_id = evidence.message_id or normalize_message_id(row.message_id_encoded)
    result.subject = evidence.subject
    result.body_text = evidence.body_text
    result.body_html = evidence.body_html
    result.capture_source = evidence.capture_source
    result.captured_at = now_iso()
    result.url_at_capture = url_at_capture
    result.req_operation_name = evidence.request_operation
    result.req_message_id = evidence.request_message_id
    result.req_prospect_id = evidence.request_prospect_id
    result.score = f"{outcome.score:.2f}"
    result.error = outcome.error
    known = {f.name for f in fields(Result)}
    for key, value in evidence.extras.items():
        if key in known and value:
            setattr(result, key, value)
    return result


def apply_metadata(result: Result, metadata: Dict[str, str]) -> None:
    for key, value in (metadata or {}).items():
        if key not in _METADATA_FIELDS or not value:
            continue
        if not getattr(result, key):
            setattr(result, key, str(value))


class JobStateMachine:
    """Drive the persisted job one tick at a time."""

    def __init__(
        self,
        store: JobStore,
        navigator: NavigationController,
        matcher: TargetMatcher,
        *,
        metadata_provider: Optional[MetadataProvider] = None,
        before_capture: Optional[Callable[[Row], None]] = None,
        max_navigation_attempts: Optional[int] = None,
        sleep: Optional[Callable[[int], None]] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.store = store
        self.navigator = navigator
        self.matcher = matcher
        self.metadata_provider = metadata_provider
        self.before_capture = before_capture
        self.max_navigation_attempts = (
            config.MAX_NAVIGATION_ATTEMPTS
            if max_navigation_attempts is None
            else max(1, int(max_navigation_attempts))
        )
        self._sleep = sleep or (lambda ms: time.sleep(ms / 1000.0))
        self._clock = clock or now_ms

    # ------------------------------------------------------------------

    def tick(self, engine_state: EngineState) -> JobPhase:
        """Advance the job by at most one row; return the resulting phase."""

        if engine_state.processing:
            return JobPhase.CAPTURING

        job = self.store.load()
        if job is None:
            return self._finish(engine_state, JobPhase.IDLE)
        if not job.active:
            return self._finish(engine_state, JobPhase.COMPLETE if job.done else JobPhase.PAUSED)

        engine_state.processing = True
        try:
            with capture_context(job_key=self.store.key):
                return self._finish(engine_state, self._step(job, engine_state))
        finally:
            engine_state.processing = False

    def run(self, engine_state: EngineState, *, max_ticks: Optional[int] = None) -> JobPhase:
        """Tick until the job completes, pauses or a stop is requested."""

        phase = JobPhase.IDLE
        ticks = 0
        while not engine_state.stop_requested:
            phase = self.tick(engine_state)
            ticks += 1
            if phase in (JobPhase.IDLE, JobPhase.PAUSED, JobPhase.COMPLETE):
                break
            if max_ticks is not None and ticks >= max_ticks:
                break
            if phase is JobPhase.AWAITING_NAVIGATION:
                self._sleep(config.TICK_INTERVAL_MS)
        return phase

    # ------------------------------------------------------------------

    def _finish(self, engine_state: EngineState, phase: JobPhase) -> JobPhase:
        engine_state.ticks += 1
        engine_state.last_tick_ms = self._clock()
        engine_state.last_phase = phase.value
        return phase

    def _step(self, job: Job, engine_state: EngineState) -> JobPhase:
        total = job.total
        index = job.cursor

        if job.done:
            job.active = False
            job.phase = JobPhase.COMPLETE
            self.store.save_progress(job)
            _capture_event("job", kind="complete", key=self.store.key, total=total)
            return JobPhase.COMPLETE

        row = job.rows[index]
        missing = row.missing_fields()
        if missing:
            _capture_event(
                "row",
                kind="missing_input",
                index=index + 1,
                total=total,
                missing=",".join(missing),
            )
            self.store.commit_result(job, index, Result.blank(row, ErrorCode.MISSING_INPUT_FIELDS))
            return job.phase

        current = self.navigator.current_context()
        if not is_current_page_for_row(current, row):
            return self._request_navigation(job, row, index)

        job.phase = JobPhase.CAPTURING
        _capture_event(
            "row",
            kind="capture_start",
            index=index + 1,
            total=total,
            prospect_id=row.prospect_id,
        )
        transport_error = ""
        if self.before_capture is not None:
            try:
                self.before_capture(row)
            except TransportError as exc:
                transport_error = exc.error_code
                _capture_event("error", phase="before_capture", index=index + 1, error=repr(exc))
        outcome = self.matcher.capture(row)
        if outcome.cancelled:
            # Stop requested mid-capture; the cursor stays on this row.
            engine_state.request_stop()
            return JobPhase.CAPTURING

        result = build_result(row, outcome, url_at_capture=self.navigator.current_context())
        if transport_error and not outcome.resolved:
            result.error = transport_error
        if self.metadata_provider is not None:
            try:
                apply_metadata(result, self.metadata_provider(row, outcome.evidence))
            except Exception as exc:  # noqa: BLE001
                _capture_event("error", phase="metadata", index=index + 1, error=repr(exc))

        if not self.store.commit_result(job, index, result):
            return job.phase
        engine_state.rows_captured += 1
        _capture_event(
            "row",
            kind="captured",
            index=index + 1,
            total=total,
            prospect_id=row.prospect_id,
            source=result.capture_source,
            chars=len(result.body_text) + len(result.body_html),
            preview=text_preview(result.body_text or result.body_html, 80),
            error=result.error or None,
        )

        if not job.active and not job.done:
            return JobPhase.PAUSED

        if job.done:
            _capture_event("job", kind="complete", key=self.store.key, total=total)
            return JobPhase.COMPLETE
        if engine_state.stop_requested:
            return JobPhase.ADVANCING

        if job.delay_ms:
            self._sleep(job.delay_ms)
        return self._request_navigation(job, job.rows[job.cursor], job.cursor)

    def _request_navigation(self, job: Job, row: Row, index: int) -> JobPhase:
        if not row.target_url or row.missing_fields():
            # Next tick records the missing-input result without navigating.
            return job.phase

        if not self.store.reconcile(job):
            return JobPhase.IDLE
        if not job.active:
            return JobPhase.PAUSED

        if job.pending_navigation == row.target_url and job.nav_attempts >= self.max_navigation_attempts:
            _capture_event(
                "row",
                kind="navigation_failed",
                index=index + 1,
                attempts=job.nav_attempts,
                url=row.target_url,
            )
            self.store.commit_result(job, index, Result.blank(row, ErrorCode.NAVIGATION_FAILED))
            return job.phase

        if job.pending_navigation != row.target_url:
            job.nav_attempts = 0
        job.pending_navigation = row.target_url
        job.nav_attempts += 1
        job.phase = JobPhase.AWAITING_NAVIGATION
        # Intent is durable before the navigation can tear the context down.
        if not self.store.save_progress(job):
            return JobPhase.IDLE
        if not job.active:
            return JobPhase.PAUSED
        _capture_event(
            "row",
            kind="navigate",
            index=index + 1,
            total=job.total,
            attempt=job.nav_attempts,
            url=normalize_message_path(row.target_url),
        )
        try:
            self.navigator.navigate(row.target_url)
        except Exception as exc:  # noqa: BLE001
            _capture_event("error", phase="navigate", index=index + 1, error=repr(exc))
        return JobPhase.AWAITING_NAVIGATION


__all__ = [
    "EngineState",
    "JobStateMachine",
    "NavigationController",
    "build_result",
    "apply_metadata",
    "is_current_page_for_row",
]
