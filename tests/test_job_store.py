import json
from pathlib import Path

import pytest

from app.capture.error_codes import JobStateError
from app.capture.job_store import JobPhase, JobStore, JsonFileKV, SqliteKV
from app.capture.rows import Result, Row


def _rows(count: int = 3) -> list[Row]:
    return [
        Row.from_link(
            {
                "sequence_id": "7",
                "prospect_id": str(100 + i),
                "message_id_encoded": f"%3Cm{i}%40mail.example%3E",
                "message_url": f"https://app.outreach.io/prospects/{100 + i}/emails/thread/%3Cm{i}%40mail.example%3E",
            }
        )
        for i in range(count)
    ]


@pytest.fixture(params=["json", "sqlite"])
def store(request, tmp_path: Path) -> JobStore:
    if request.param == "json":
        kv = JsonFileKV(tmp_path / "jobs")
    else:
        kv = SqliteKV(tmp_path / "capture.db")
    return JobStore(kv=kv, key="test-job")


def test_create_and_load_round_trip(store: JobStore) -> None:
    created = store.create(_rows(3), delay_ms=250)

    loaded = store.load()

    assert loaded is not None
    assert loaded.total == 3
    assert loaded.cursor == 0
    assert loaded.active is True
    assert loaded.delay_ms == 250
    assert loaded.phase is JobPhase.SEEDED
    assert loaded.rows == created.rows
    assert all(not result.is_written for result in loaded.results)


def test_create_respects_limit_and_refuses_empty(store: JobStore) -> None:
    assert store.create(_rows(5), limit=2).total == 2

    with pytest.raises(JobStateError) as excinfo:
        store.create([])
    assert excinfo.value.code == "empty-row-set"


def test_commit_result_is_write_once_and_advances(store: JobStore) -> None:
    job = store.create(_rows(2))
    first = Result.blank(job.rows[0])
    first.body_text = "hello"
    first.captured_at = "2024-01-01T00:00:00Z"

    assert store.commit_result(job, 0, first) is True
    assert job.cursor == 1
    assert job.phase is JobPhase.ADVANCING

    assert store.commit_result(job, 0, Result.blank(job.rows[0], "capture-timeout")) is False

    persisted = store.load()
    assert persisted.cursor == 1
    assert persisted.results[0].body_text == "hello"

    assert store.commit_result(job, 1, Result.blank(job.rows[1], "capture-timeout")) is True
    persisted = store.load()
    assert persisted.done
    assert persisted.active is False
    assert persisted.phase is JobPhase.COMPLETE


def test_pause_resume_and_summary(store: JobStore) -> None:
    job = store.create(_rows(2))
    store.commit_result(job, 0, Result.blank(job.rows[0], "capture-timeout"))

    paused = store.pause()
    assert paused.active is False
    assert paused.phase is JobPhase.PAUSED
    summary = store.summary()
    assert summary["status"] == "paused"
    assert summary["done"] == 1
    assert summary["errors"] == {"capture-timeout": 1}

    resumed = store.resume()
    assert resumed.active is True
    assert resumed.phase is JobPhase.ADVANCING
    assert store.summary()["status"] == "running"


def test_clear_removes_job(store: JobStore) -> None:
    store.create(_rows(1))
    store.clear()

    assert store.load() is None
    assert store.summary()["status"] == "none"
    assert store.pause() is None


@pytest.mark.parametrize(
    "document",
    [
        "not json",
        json.dumps([1, 2]),
        json.dumps({"rows": [], "cursor": 0}),
        json.dumps({"rows": [{}], "results": [], "cursor": 0}),
        json.dumps({"rows": [{}], "results": [{}], "cursor": 5}),
        json.dumps({"rows": [{}], "results": [{}], "cursor": "abc"}),
        json.dumps({"rows": ["x"], "results": ["y"], "cursor": 0}),
    ],
)
def test_malformed_document_raises_job_state_error(tmp_path: Path, document: str) -> None:
    kv = JsonFileKV(tmp_path / "jobs")
    kv.put("broken", document)
    store = JobStore(kv=kv, key="broken")

    with pytest.raises(JobStateError):
        store.load()


def test_json_kv_sanitises_key_and_leaves_no_temp_file(tmp_path: Path) -> None:
    kv = JsonFileKV(tmp_path / "jobs")
    kv.put("../ui capture/v1", "{}")

    files = sorted(p.name for p in (tmp_path / "jobs").iterdir())

    assert files == ["ui_capture_v1.json"]
    assert kv.get("../ui capture/v1") == "{}"


def test_save_progress_keeps_pause_from_another_store(store: JobStore) -> None:
    job = store.create(_rows(2), delay_ms=0)
    JobStore(kv=store.kv, key=store.key).pause()

    assert store.save_progress(job) is True

    persisted = store.load()
    assert job.active is False
    assert persisted.active is False
    assert persisted.phase is JobPhase.PAUSED


def test_save_progress_does_not_recreate_cleared_job(store: JobStore) -> None:
    job = store.create(_rows(2), delay_ms=0)
    store.clear()

    assert store.save_progress(job) is False
    assert store.load() is None
    assert store.commit_result(job, 0, Result.blank(job.rows[0], "capture-timeout")) is False
    assert store.load() is None
