from pathlib import Path

import pytest

from app.capture import config, run
from app.capture.direct_fetch import ThreadMessageClient
from app.capture.job_store import JobStore

LINKS_CSV = (
    "sequence_id,prospect_id,message_id_encoded,message_url\n"
    "7,42,%3Cabc%40mail.example%3E,https://app.outreach.io/prospects/42/emails/thread/%3Cabc%40mail.example%3E\n"
    "7,43,%3Cdef%40mail.example%3E,https://app.outreach.io/prospects/43/emails/thread/%3Cdef%40mail.example%3E\n"
    "7,44,,https://app.outreach.io/prospects/44/emails/thread/\n"
)
BODY = "Hi,\n\nGreat speaking with you today. Sending over the pricing sheet now.\n\nBest regards,\nSam"


class EchoResponse:
    status_code = 200

    def __init__(self, body):
        self._body = body

    def json(self):
        return self._body


class EchoSession:
    """Answers every thread-messages request with the requested message."""

    def __init__(self, masked_ids=()):
        self.masked_ids = set(masked_ids)
        self.requested = []

    def post(self, url, json=None, headers=None, timeout=None):
        variables = json["variables"]
        message_id = variables["messageId"]
        self.requested.append(message_id)
        body = "[body hidden]" if message_id in self.masked_ids else BODY
        return EchoResponse(
            {
                "data": {
                    "threadMessages": {
                        "collection": [
                            {
                                "id": message_id,
                                "prospect": {"id": str(variables["prospectId"])},
                                "subject": "Pricing",
                                "bodyText": body,
                            }
                        ]
                    }
                }
            }
        )


def _configure_temp_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    data_dir = tmp_path / "data"
    monkeypatch.setattr(config, "DATA_DIR", data_dir)
    monkeypatch.setattr(config, "LOG_DIR", data_dir / "logs")
    monkeypatch.setattr(config, "LOG_FILE", data_dir / "logs" / "latest.log")
    monkeypatch.setattr(config, "JOBS_DIR", data_dir / "jobs")
    monkeypatch.setattr(config, "EXPORTS_DIR", data_dir / "exports")
    monkeypatch.setattr(config, "DB_PATH", data_dir / "capture.db")
    monkeypatch.setattr(config, "JOB_BACKEND", "sqlite")
    links = tmp_path / "links.csv"
    links.write_text(LINKS_CSV, encoding="utf-8")
    return links


def test_seed_only_status_pause_clear(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    links = _configure_temp_paths(tmp_path, monkeypatch)

    assert run.main(["--job-key", "cli", "start", str(links), "--mode", "fast", "--seed-only"]) == 0
    assert "Seeded job cli with 3 row(s)." in capsys.readouterr().out

    assert run.main(["--job-key", "cli", "status"]) == 0
    out = capsys.readouterr().out
    assert "status: running" in out
    assert "total: 3" in out

    assert run.main(["--job-key", "cli", "pause"]) == 0
    assert "status: paused" in capsys.readouterr().out

    assert config.DB_PATH.exists()
    assert run.main(["--job-key", "cli", "clear"]) == 0
    assert JobStore(key="cli").load() is None


def test_missing_job_is_a_usage_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)

    with pytest.raises(SystemExit) as excinfo:
        run.main(["--job-key", "nothing", "export"])
    assert excinfo.value.code == 2


def test_fast_mode_without_bearer_is_rejected(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    links = _configure_temp_paths(tmp_path, monkeypatch)
    monkeypatch.setattr(config, "DIRECT_FETCH_BEARER", "")

    assert run.main(["--job-key", "cli", "start", str(links), "--mode", "fast"]) == 2
    assert "CAPTURE_BEARER_TOKEN" in capsys.readouterr().out


def test_fast_mode_captures_and_exports(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    links = _configure_temp_paths(tmp_path, monkeypatch)
    monkeypatch.setattr(config, "DIRECT_FETCH_BEARER", "token-123")
    monkeypatch.setattr(config, "TICK_INTERVAL_MS", 1)
    session = EchoSession(masked_ids={"<def@mail.example>"})
    monkeypatch.setattr(run, "ThreadMessageClient", lambda: ThreadMessageClient(session=session))

    assert run.main(["--job-key", "fast", "start", str(links), "--mode", "fast", "--delay-ms", "0"]) == 0

    job = JobStore(key="fast").load()
    assert job.done and job.active is False
    assert session.requested == ["<abc@mail.example>", "<def@mail.example>"]
    assert [r.error for r in job.results] == ["", "masked-content", "missing-input-fields"]
    assert job.results[0].body_text == BODY
    assert job.results[0].subject == "Pricing"

    out_path = tmp_path / "results.csv"
    assert run.main(["--job-key", "fast", "export", "--out", str(out_path), "--excel"]) == 0
    assert out_path.read_text(encoding="utf-8").startswith("sequence_id,prospect_id,message_id,")
    assert list(config.EXPORTS_DIR.glob("message_bodies_*.xlsx"))
