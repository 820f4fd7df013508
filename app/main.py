from __future__ import annotations

import os
import threading
import time
from typing import Any, Dict, Generator, Optional

from flask import Flask, Response, jsonify, request, send_file

from app.capture import config
from app.capture.config_validation import validate_runtime_config
from app.capture.error_codes import JobStateError
from app.capture.export import export_results_to_excel, links_csv_text, read_links_csv, results_csv_text
from app.capture.job_machine import EngineState
from app.capture.job_store import JobStore
from app.capture.logging_utils import _capture_event
from app.capture.run import MODES, run_capture, seed_job
from app.capture.utils import ensure_dirs, get_current_log_path, log_line, timestamp_slug

app = Flask(__name__)
app.secret_key = os.environ.get("SECRET_KEY", "dev-secret-change-me")

# Initialise storage paths on import so WSGI entrypoints also have the
# expected environment ready.
ensure_dirs()

_RUN_LOCK = threading.Lock()


def _store() -> JobStore:
    key = (request.args.get("key") or "").strip() or None
    return JobStore(key=key)


def _engine_state() -> Optional[EngineState]:
    return app.config.get("ENGINE_STATE")


def _job_error(exc: JobStateError) -> Response:
    _capture_event("error", phase="api", error=exc.code, details=str(exc))
    return jsonify({"ok": False, "error": exc.code, "details": str(exc)}), 409


def _request_params() -> Dict[str, Any]:
    if request.is_json:
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}
    return dict(request.form.items())


def _parse_optional_int(value: Any) -> Optional[int]:
    try:
        return None if value in (None, "") else max(0, int(value))
    except (TypeError, ValueError):
        return None


def _tail_log_generator() -> Generator[str, None, None]:
    """Yield Server-Sent Event messages for appended log lines."""

    ensure_dirs()
    current_path = get_current_log_path()
    current_path.parent.mkdir(parents=True, exist_ok=True)
    current_path.touch(exist_ok=True)

    handle = current_path.open("r", encoding="utf-8", errors="ignore")
    handle.seek(0, os.SEEK_END)

    try:
        while True:
            latest_path = get_current_log_path()
            if latest_path != current_path:
                handle.close()
                current_path = latest_path
                current_path.parent.mkdir(parents=True, exist_ok=True)
                current_path.touch(exist_ok=True)
                handle = current_path.open("r", encoding="utf-8", errors="ignore")
                handle.seek(0, os.SEEK_END)

            line = handle.readline()
            if line:
                yield f"data: {line.rstrip()}\n\n"
            else:
                time.sleep(1)
                yield ": heartbeat\n\n"
    finally:
        handle.close()


# ---------------------------------------------------------------------------
# Job API
# ---------------------------------------------------------------------------


@app.get("/api/job")
def api_job_summary() -> Response:
    try:
        summary = _store().summary()
    except JobStateError as exc:
        return _job_error(exc)
    state = _engine_state()
    summary["running"] = bool(state is not None and app.config.get("RUN_ACTIVE"))
    return jsonify({"ok": True, "job": summary})


@app.post("/api/job")
def api_job_seed() -> Response:
    """Seed a new job from an uploaded links CSV (file field ``links_csv``)."""

    params = _request_params()
    mode = str(params.get("mode") or "ui").strip().lower()
    if mode not in MODES:
        return jsonify({"ok": False, "error": "invalid_mode", "mode": mode}), 400

    upload = request.files.get("links_csv")
    if upload is not None:
        text = upload.read().decode("utf-8-sig", errors="replace")
    else:
        text = str(params.get("links_csv") or "")
    if not text.strip():
        return jsonify({"ok": False, "error": "missing_links_csv"}), 400

    try:
        rows = read_links_csv(text if "\n" in text else text + "\n")
    except ValueError as exc:
        return jsonify({"ok": False, "error": "invalid_links_csv", "details": str(exc)}), 400

    store = _store()
    try:
        job = seed_job(
            rows,
            mode=mode,
            limit=_parse_optional_int(params.get("limit")),
            delay_ms=_parse_optional_int(params.get("delay_ms")),
            store=store,
        )
    except JobStateError as exc:
        return _job_error(exc)
    return jsonify({"ok": True, "key": store.key, "rows": job.total, "delay_ms": job.delay_ms}), 201


@app.post("/api/job/start")
def api_job_start() -> Response:
    """Run the persisted job in a background thread."""

    params = _request_params()
    mode = str(params.get("mode") or "ui").strip().lower()
    if mode not in MODES:
        return jsonify({"ok": False, "error": "invalid_mode", "mode": mode}), 400
    try:
        validate_runtime_config("api", mode=mode)
    except ValueError as exc:
        return jsonify({"ok": False, "error": "config_invalid", "details": str(exc)}), 500

    store = _store()
    if not _RUN_LOCK.acquire(blocking=False):
        return jsonify({"ok": False, "error": "already_running"}), 409

    engine_state = EngineState()
    app.config["ENGINE_STATE"] = engine_state
    app.config["RUN_ACTIVE"] = True

    def _run() -> None:
        try:
            with app.app_context():
                summary = run_capture(mode=mode, store=store, engine_state=engine_state, entrypoint="api")
                app.config["LAST_SUMMARY"] = summary
        except Exception as exc:  # noqa: BLE001
            log_line(f"Capture thread failed: {exc}")
        finally:
            app.config["RUN_ACTIVE"] = False
            _RUN_LOCK.release()

    threading.Thread(target=_run, daemon=True).start()
    return jsonify({"ok": True, "key": store.key, "mode": mode}), 202


@app.post("/api/job/pause")
def api_job_pause() -> Response:
    try:
        job = _store().pause()
    except JobStateError as exc:
        return _job_error(exc)
    if job is None:
        return jsonify({"ok": False, "error": "no_job"}), 404
    state = _engine_state()
    if state is not None:
        state.request_stop()
    return jsonify({"ok": True, "active": job.active, "cursor": job.cursor, "total": job.total})


@app.post("/api/job/resume")
def api_job_resume() -> Response:
    try:
        job = _store().resume()
    except JobStateError as exc:
        return _job_error(exc)
    if job is None:
        return jsonify({"ok": False, "error": "no_job"}), 404
    return jsonify({"ok": True, "active": job.active, "cursor": job.cursor, "total": job.total})


@app.post("/api/job/clear")
def api_job_clear() -> Response:
    state = _engine_state()
    if state is not None:
        state.request_stop()
    _store().clear()
    return jsonify({"ok": True})


@app.get("/api/job/results.csv")
def api_job_results_csv() -> Response:
    try:
        job = _store().load()
    except JobStateError as exc:
        return _job_error(exc)
    if job is None:
        return jsonify({"ok": False, "error": "no_job"}), 404
    response = Response(results_csv_text(job), mimetype="text/csv")
    response.headers["Content-Disposition"] = (
        f"attachment; filename=message_bodies_{timestamp_slug()}.csv"
    )
    return response


@app.get("/api/job/results.xlsx")
def api_job_results_xlsx() -> Response:
    try:
        job = _store().load()
    except JobStateError as exc:
        return _job_error(exc)
    if job is None:
        return jsonify({"ok": False, "error": "no_job"}), 404
    path = export_results_to_excel(job)
    return send_file(path, as_attachment=True, download_name=path.name)


@app.get("/api/links.csv")
def api_links_csv() -> Response:
    try:
        job = _store().load()
    except JobStateError as exc:
        return _job_error(exc)
    if job is None:
        return jsonify({"ok": False, "error": "no_job"}), 404
    response = Response(links_csv_text(job.rows), mimetype="text/csv")
    response.headers["Content-Disposition"] = (
        f"attachment; filename=message_links_{timestamp_slug()}.csv"
    )
    return response


# ---------------------------------------------------------------------------
# Logs
# ---------------------------------------------------------------------------


@app.get("/logs/stream")
def logs_stream() -> Response:
    response = Response(_tail_log_generator(), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


@app.get("/logs/<path:filename>")
def download_log(filename: str) -> Response:
    """Serve a log file from the logs directory."""

    target = (config.LOG_DIR / filename).resolve()
    root = config.LOG_DIR.resolve()
    if not str(target).startswith(str(root)):
        return Response("Invalid path", status=400)
    if not target.exists() or not target.is_file():
        return Response("File not found", status=404)
    return send_file(target, as_attachment=True, download_name=target.name)
