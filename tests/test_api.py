import importlib
import io
import sys
import threading
import time
from pathlib import Path

import pytest

from app.capture import config
from app.capture.rows import RESULT_COLUMNS

LINKS_CSV = (
    "sequence_id,prospect_id,message_id_encoded,message_url\n"
    "7,42,%3Cabc%40mail.example%3E,https://app.outreach.io/prospects/42/emails/thread/%3Cabc%40mail.example%3E\n"
    "7,43,%3Cdef%40mail.example%3E,https://app.outreach.io/prospects/43/emails/thread/%3Cdef%40mail.example%3E\n"
)


def _configure_temp_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setattr(config, "DATA_DIR", data_dir)
    monkeypatch.setattr(config, "LOG_DIR", data_dir / "logs")
    monkeypatch.setattr(config, "LOG_FILE", data_dir / "logs" / "latest.log")
    monkeypatch.setattr(config, "JOBS_DIR", data_dir / "jobs")
    monkeypatch.setattr(config, "EXPORTS_DIR", data_dir / "exports")
    monkeypatch.setattr(config, "DB_PATH", data_dir / "capture.db")
    monkeypatch.setattr(config, "JOB_BACKEND", "json")


def _reload_main_module():
    if "app.main" in sys.modules:
        del sys.modules["app.main"]
    return importlib.import_module("app.main")


def _seed(client, **extra):
    data = {"links_csv": (io.BytesIO(LINKS_CSV.encode("utf-8")), "links.csv"), "delay_ms": "0"}
    data.update(extra)
    return client.post("/api/job", data=data, content_type="multipart/form-data")


def test_job_lifecycle_over_api(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    client = main.app.test_client()

    empty = client.get("/api/job").get_json()
    assert empty["job"]["status"] == "none"
    assert empty["job"]["running"] is False

    resp = _seed(client)
    assert resp.status_code == 201
    assert resp.get_json()["rows"] == 2
    assert resp.get_json()["delay_ms"] == 0

    job = client.get("/api/job").get_json()["job"]
    assert job["status"] == "running"
    assert job["total"] == 2

    paused = client.post("/api/job/pause").get_json()
    assert paused["active"] is False
    assert client.get("/api/job").get_json()["job"]["status"] == "paused"

    resumed = client.post("/api/job/resume").get_json()
    assert resumed["active"] is True

    results = client.get("/api/job/results.csv")
    assert results.status_code == 200
    assert results.get_data(as_text=True).splitlines()[0] == ",".join(RESULT_COLUMNS)

    links = client.get("/api/links.csv").get_data(as_text=True)
    assert "%3Cdef%40mail.example%3E" in links

    assert client.post("/api/job/clear").status_code == 200
    assert client.get("/api/job/results.csv").status_code == 404
    assert client.post("/api/job/pause").status_code == 404


def test_seed_validation_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    client = main.app.test_client()

    assert _seed(client, mode="turbo").status_code == 400
    assert client.post("/api/job", data={}).get_json()["error"] == "missing_links_csv"

    bad = client.post("/api/job", json={"links_csv": "prospect_id,message_url\n42,u\n"})
    assert bad.status_code == 400
    assert bad.get_json()["error"] == "invalid_links_csv"


def test_seed_with_limit_and_key(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    client = main.app.test_client()

    resp = client.post("/api/job?key=other", json={"links_csv": LINKS_CSV, "limit": 1, "mode": "fast"})

    assert resp.status_code == 201
    assert resp.get_json()["key"] == "other"
    assert resp.get_json()["delay_ms"] == config.ROW_DELAY_FAST_MS
    assert client.get("/api/job?key=other").get_json()["job"]["total"] == 1
    assert client.get("/api/job").get_json()["job"]["status"] == "none"


def test_malformed_job_returns_conflict(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    client = main.app.test_client()
    (config.JOBS_DIR / f"{config.JOB_KEY_DEFAULT}.json").write_text("{not json", encoding="utf-8")

    resp = client.get("/api/job")

    assert resp.status_code == 409
    assert resp.get_json()["error"] == "malformed-job"


def test_start_requires_bearer_for_fast_mode(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    monkeypatch.setattr(config, "DIRECT_FETCH_BEARER", "")
    main = _reload_main_module()
    client = main.app.test_client()

    resp = client.post("/api/job/start", json={"mode": "fast"})

    assert resp.status_code == 500
    assert resp.get_json()["error"] == "config_invalid"


def test_start_runs_in_background_and_rejects_concurrent_runs(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    client = main.app.test_client()
    release = threading.Event()
    calls = []

    def fake_run_capture(*, mode, store, engine_state, entrypoint):
        calls.append((mode, store.key, entrypoint))
        release.wait(timeout=5)
        return {"status": "done"}

    monkeypatch.setattr(main, "run_capture", fake_run_capture)
    _seed(client)

    first = client.post("/api/job/start", json={"mode": "ui"})
    second = client.post("/api/job/start", json={"mode": "ui"})
    release.set()

    assert first.status_code == 202
    assert second.status_code == 409
    assert second.get_json()["error"] == "already_running"

    deadline = time.time() + 5
    while main.app.config.get("RUN_ACTIVE") and time.time() < deadline:
        time.sleep(0.05)

    assert calls == [("ui", config.JOB_KEY_DEFAULT, "api")]
    assert main.app.config["LAST_SUMMARY"] == {"status": "done"}
    assert client.get("/api/job").get_json()["job"]["running"] is False
