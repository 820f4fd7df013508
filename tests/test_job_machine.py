from pathlib import Path
from typing import List

import pytest

from app.capture import config
from app.capture.error_codes import ErrorCode, TransportError
from app.capture.evidence import Evidence, SourceKind
from app.capture.evidence_pool import EvidencePool
from app.capture.job_machine import EngineState, JobStateMachine, is_current_page_for_row
from app.capture.job_store import JobPhase, JobStore, JsonFileKV
from app.capture.matcher import TargetMatcher
from app.capture.rows import Row

BODY = "Hi there,\n\nThanks for taking the time to chat this week about the rollout.\n\nBest,\nSam"


def _url(i: int) -> str:
    return f"https://app.outreach.io/prospects/{100 + i}/emails/thread/%3Cm{i}%40mail.example%3E"


def _rows(count: int) -> List[Row]:
    return [
        Row.from_link(
            {
                "sequence_id": "7",
                "prospect_id": str(100 + i),
                "message_id_encoded": f"%3Cm{i}%40mail.example%3E",
                "message_url": _url(i),
            }
        )
        for i in range(count)
    ]


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000_000

    def __call__(self) -> int:
        return self.now

    def sleep(self, ms: int) -> None:
        self.now += ms


class FakeNavigator:
    """Records navigations; a page "loads" only when ``follow`` is set."""

    def __init__(self, pool: EvidencePool, clock: FakeClock, *, follow: bool = True) -> None:
        self.pool = pool
        self.clock = clock
        self.follow = follow
        self.url = ""
        self.calls: List[str] = []
        self.masked_ids: set = set()
        self.silent_ids: set = set()
        self.on_navigate = None

    def current_context(self) -> str:
        return self.url

    def navigate(self, url: str) -> None:
        self.calls.append(url)
        if self.on_navigate is not None:
            self.on_navigate(url)
        if not self.follow:
            return
        self.url = url
        row = Row.from_link({"message_id_encoded": url.rsplit("/", 1)[-1], "prospect_id": "x", "message_url": url})
        if row.target_message_id in self.silent_ids:
            return
        body = "[body hidden]" if row.target_message_id in self.masked_ids else BODY
        self.pool.insert(
            Evidence.create(
                source_kind=SourceKind.NETWORK,
                source_detail=f"payload:{config.THREAD_MESSAGES_OPERATION}",
                observed_at_ms=self.clock(),
                message_id=row.target_message_id,
                body_text=body,
                page_context=url,
                request_operation=config.THREAD_MESSAGES_OPERATION,
                request_message_id=row.target_message_id,
            )
        )


def _setup(tmp_path: Path, rows: List[Row], *, follow: bool = True, **machine_kwargs):
    clock = FakeClock()
    pool = EvidencePool(clock=clock)
    store = JobStore(kv=JsonFileKV(tmp_path / "jobs"), key="job")
    store.create(rows, delay_ms=0)
    navigator = FakeNavigator(pool, clock, follow=follow)
    matcher = TargetMatcher(
        pool,
        timeout_ms=1_000,
        poll_ms=250,
        allow_low_confidence=False,
        clock=clock,
        sleep=clock.sleep,
    )
    machine = JobStateMachine(store, navigator, matcher, sleep=clock.sleep, clock=clock, **machine_kwargs)
    return store, navigator, machine


def test_run_captures_every_row_in_order(tmp_path: Path) -> None:
    store, navigator, machine = _setup(tmp_path, _rows(3))
    navigator.masked_ids.add("<m1@mail.example>")
    navigator.silent_ids.add("<m2@mail.example>")
    state = EngineState()

    phase = machine.run(state)

    job = store.load()
    assert phase is JobPhase.COMPLETE
    assert job.cursor == 3 and job.active is False
    assert navigator.calls == [_url(0), _url(1), _url(2)]
    assert job.results[0].body_text == BODY
    assert job.results[0].capture_source == f"network-payload:payload:{config.THREAD_MESSAGES_OPERATION}"
    assert job.results[0].url_at_capture == _url(0)
    assert job.results[1].error == ErrorCode.MASKED_CONTENT
    assert job.results[1].body_text == "[body hidden]"
    assert job.results[2].error == ErrorCode.CAPTURE_TIMEOUT
    assert job.results[2].captured_at == ""
    assert state.rows_captured == 3


def test_navigation_intent_is_persisted_before_navigating(tmp_path: Path) -> None:
    store, navigator, machine = _setup(tmp_path, _rows(2))
    seen = []
    navigator.on_navigate = lambda url: seen.append(store.load())

    phase = machine.tick(EngineState())

    assert phase is JobPhase.AWAITING_NAVIGATION
    persisted = seen[0]
    assert persisted.phase is JobPhase.AWAITING_NAVIGATION
    assert persisted.pending_navigation == _url(0)
    assert persisted.nav_attempts == 1
    assert persisted.cursor == 0


def test_navigation_failure_is_recorded_after_max_attempts(tmp_path: Path) -> None:
    store, navigator, machine = _setup(tmp_path, _rows(2), follow=False, max_navigation_attempts=2)
    state = EngineState()

    for _ in range(4):
        machine.tick(state)

    job = store.load()
    assert navigator.calls == [_url(0), _url(0), _url(1)]
    assert job.cursor == 1
    assert job.results[0].error == ErrorCode.NAVIGATION_FAILED
    assert job.pending_navigation == _url(1)


def test_missing_input_fields_skip_navigation(tmp_path: Path) -> None:
    rows = [Row(sequence_id="7", prospect_id="", target_message_id="<m0@mail.example>", target_url=_url(0))]
    store, navigator, machine = _setup(tmp_path, rows)

    phase = machine.run(EngineState())

    job = store.load()
    assert phase is JobPhase.COMPLETE
    assert navigator.calls == []
    assert job.results[0].error == ErrorCode.MISSING_INPUT_FIELDS


def test_restart_resumes_at_persisted_cursor(tmp_path: Path) -> None:
    store, navigator, machine = _setup(tmp_path, _rows(3))
    state = EngineState()
    machine.tick(state)
    machine.tick(state)
    assert store.load().cursor == 1

    # A fresh process has no page loaded and no evidence.
    store2, navigator2, machine2 = _setup(tmp_path / "unused", _rows(1))
    machine2.store = store
    phase = machine2.run(EngineState())

    job = store.load()
    assert phase is JobPhase.COMPLETE
    assert navigator2.calls == [_url(1), _url(2)]
    assert [r.error for r in job.results] == ["", "", ""]


def test_paused_job_does_nothing(tmp_path: Path) -> None:
    store, navigator, machine = _setup(tmp_path, _rows(2))
    store.pause()

    assert machine.tick(EngineState()) is JobPhase.PAUSED
    assert navigator.calls == []


def test_no_job_is_idle(tmp_path: Path) -> None:
    store, navigator, machine = _setup(tmp_path, _rows(1))
    store.clear()

    assert machine.run(EngineState()) is JobPhase.IDLE


def test_stop_request_leaves_cursor_on_row(tmp_path: Path) -> None:
    store, navigator, machine = _setup(tmp_path, _rows(2))
    navigator.silent_ids.add("<m0@mail.example>")
    state = EngineState()
    machine.tick(state)
    machine.matcher._stop_requested = lambda: True

    phase = machine.tick(state)

    assert phase is JobPhase.CAPTURING
    assert state.stop_requested is True
    assert store.load().cursor == 0


def test_transport_error_replaces_timeout_and_metadata_fills_gaps(tmp_path: Path) -> None:
    def failing_lookup(row: Row) -> None:
        raise TransportError("HTTP 401", http_status=401)

    def metadata(row, evidence):
        return {"subject": "From page", "delivered_at": "May 1", "body_text": "ignored"}

    store, navigator, machine = _setup(
        tmp_path,
        _rows(2),
        before_capture=failing_lookup,
        metadata_provider=metadata,
    )
    navigator.silent_ids.add("<m1@mail.example>")

    machine.run(EngineState())

    job = store.load()
    assert job.results[0].error == ""
    assert job.results[0].subject == "From page"
    assert job.results[0].delivered_at == "May 1"
    assert job.results[1].error == ErrorCode.TRANSPORT
    assert job.results[1].body_text == ""


@pytest.mark.parametrize(
    "current, expected",
    [
        ("https://app.outreach.io/prospects/100/emails/thread/<m0@mail.example>/", True),
        ("https://app.outreach.io/prospects/100/emails/thread/%3Cm0%40mail.example%3E?tab=1", True),
        ("https://app.outreach.io/prospects/100/overview", False),
        ("", False),
    ],
)
def test_is_current_page_for_row(current: str, expected: bool) -> None:
    assert is_current_page_for_row(current, _rows(1)[0]) is expected


def test_resume_then_tick_never_reprocesses_previous_row(tmp_path: Path) -> None:
    store, navigator, machine = _setup(tmp_path, _rows(3))
    state = EngineState()
    machine.tick(state)
    machine.tick(state)
    first = store.load().results[0]
    store.pause()

    store.resume()
    machine.tick(state)

    job = store.load()
    assert job.cursor in (1, 2)
    assert job.results[0] == first
    assert _url(0) not in navigator.calls[2:]


def test_pause_from_another_store_during_row_delay_is_kept(tmp_path: Path) -> None:
    store, navigator, machine = _setup(tmp_path, _rows(3))
    store.update(lambda job: setattr(job, "delay_ms", 777))
    other = JobStore(kv=JsonFileKV(tmp_path / "jobs"), key="job")

    def pause_during_delay(ms: int) -> None:
        if ms == 777:
            other.pause()

    machine._sleep = pause_during_delay

    phase = machine.run(EngineState())

    job = store.load()
    assert phase is JobPhase.PAUSED
    assert job.active is False
    assert job.phase is JobPhase.PAUSED
    assert job.cursor == 1
    assert job.pending_navigation == ""
    assert job.nav_attempts == 0
    assert navigator.calls == [_url(0)]


def test_pause_during_capture_keeps_result_and_resume_continues(tmp_path: Path) -> None:
    other = JobStore(kv=JsonFileKV(tmp_path / "jobs"), key="job")
    paused = []

    def pause_once(row: Row) -> None:
        if not paused:
            paused.append(row.prospect_id)
            other.pause()

    store, navigator, machine = _setup(tmp_path, _rows(2), before_capture=pause_once)

    assert machine.run(EngineState()) is JobPhase.PAUSED
    job = store.load()
    assert job.active is False
    assert job.cursor == 1
    assert job.results[0].body_text == BODY
    assert navigator.calls == [_url(0)]

    store.resume()
    assert machine.run(EngineState()) is JobPhase.COMPLETE
    assert navigator.calls == [_url(0), _url(1)]


def test_clear_during_row_delay_does_not_recreate_job(tmp_path: Path) -> None:
    store, navigator, machine = _setup(tmp_path, _rows(2))
    store.update(lambda job: setattr(job, "delay_ms", 777))
    other = JobStore(kv=JsonFileKV(tmp_path / "jobs"), key="job")
    machine._sleep = lambda ms: other.clear() if ms == 777 else None

    phase = machine.run(EngineState())

    assert phase is JobPhase.IDLE
    assert store.load() is None
    assert navigator.calls == [_url(0)]


def test_tick_events_carry_the_job_key(tmp_path: Path, monkeypatch) -> None:
    from app.capture import logging_utils

    events: List[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: events.append(msg))
    store, navigator, machine = _setup(tmp_path, _rows(1))

    machine.tick(EngineState())

    navigate = [line for line in events if "kind='navigate'" in line]
    assert navigate and "job_key='job'" in navigate[0]
