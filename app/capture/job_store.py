"""Durable storage for the resumable capture job.

A job is one JSON document per key in a key-value store. Any backend works as
long as a write is atomic: ``JsonFileKV`` writes a temp file and replaces the
target, ``SqliteKV`` commits a single-row upsert. The job survives the
process being killed between any two writes.
"""

from __future__ import annotations

import json
import re
import sqlite3
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from . import config
from .error_codes import JobStateError
from .logging_utils import _capture_event
from .rows import Result, Row
from .utils import now_iso

JOB_KIND = "ui_capture"


class JobPhase(str, Enum):
    IDLE = "idle"
    SEEDED = "seeded"
    AWAITING_NAVIGATION = "awaiting_navigation"
    CAPTURING = "capturing"
    ADVANCING = "advancing"
    PAUSED = "paused"
    COMPLETE = "complete"


def _safe_phase(value: Any) -> JobPhase:
    try:
        return JobPhase(value)
    except ValueError:
        return JobPhase.SEEDED


# One lock per job key, shared by every JobStore in the process.
_KEY_LOCKS: Dict[str, threading.RLock] = {}
_KEY_LOCKS_GUARD = threading.Lock()


def _lock_for(key: str) -> threading.RLock:
    with _KEY_LOCKS_GUARD:
        lock = _KEY_LOCKS.get(key)
        if lock is None:
            lock = _KEY_LOCKS[key] = threading.RLock()
        return lock


# ---------------------------------------------------------------------------
# Key-value backends
# ---------------------------------------------------------------------------


class KVStore:
    """Minimal durable key-value interface used by :class:`JobStore`."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def put(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class JsonFileKV(KVStore):
    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9._-]+", "_", key).strip("._") or "job"
        return self.directory / f"{safe}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def put(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(value, encoding="utf-8")
        tmp_path.replace(path)

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass


class SqliteKV(KVStore):
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    job_key     TEXT PRIMARY KEY,
                    document    TEXT NOT NULL,
                    updated_at  TEXT NOT NULL
                );
                """
            )
        conn.close()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def get(self, key: str) -> Optional[str]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT document FROM jobs WHERE job_key = ?", (key,)).fetchone()
        finally:
            conn.close()
        return None if row is None else str(row["document"])

    def put(self, key: str, value: str) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO jobs (job_key, document, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(job_key) DO UPDATE SET
                        document = excluded.document,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, now_iso()),
                )
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM jobs WHERE job_key = ?", (key,))
        finally:
            conn.close()


def default_kv() -> KVStore:
    if config.use_sqlite_jobs():
        return SqliteKV(config.DB_PATH)
    return JsonFileKV(config.JOBS_DIR)


# ---------------------------------------------------------------------------
# Job document
# ---------------------------------------------------------------------------


@dataclass
class Job:
    rows: List[Row]
    results: List[Result]
    cursor: int = 0
    active: bool = True
    delay_ms: int = 0
    created_at: str = ""
    updated_at: str = ""
    kind: str = JOB_KIND
    phase: JobPhase = JobPhase.SEEDED
    pending_navigation: str = ""
    nav_attempts: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.rows)

    @property
    def done(self) -> bool:
        return self.cursor >= self.total

    @property
    def current_row(self) -> Optional[Row]:
        return None if self.done else self.rows[self.cursor]

    def to_document(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "rows": [row.to_dict() for row in self.rows],
            "results": [result.to_dict() for result in self.results],
            "cursor": self.cursor,
            "active": self.active,
            "delay_ms": self.delay_ms,
            "phase": self.phase.value,
            "pending_navigation": self.pending_navigation,
            "nav_attempts": self.nav_attempts,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            **({"extra": self.extra} if self.extra else {}),
        }

    @classmethod
    def from_document(cls, doc: Any) -> "Job":
        if not isinstance(doc, dict):
            raise JobStateError("Persisted job is not a JSON object.")
        rows_raw = doc.get("rows")
        results_raw = doc.get("results")
        if not isinstance(rows_raw, list) or not isinstance(results_raw, list):
            raise JobStateError("Persisted job is missing rows/results arrays.")
        if len(rows_raw) != len(results_raw):
            raise JobStateError(
                f"Persisted job has {len(rows_raw)} rows but {len(results_raw)} results."
            )
        if not all(isinstance(r, dict) for r in rows_raw + results_raw):
            raise JobStateError("Persisted job rows/results must be objects.")
        try:
            cursor = int(doc.get("cursor", doc.get("index", 0)) or 0)
            delay_ms = max(0, int(doc.get("delay_ms", 0) or 0))
            nav_attempts = max(0, int(doc.get("nav_attempts", 0) or 0))
        except (TypeError, ValueError) as exc:
            raise JobStateError(f"Persisted job has a non-integer field: {exc}") from exc
        if cursor < 0 or cursor > len(rows_raw):
            raise JobStateError(f"Persisted cursor {cursor} is outside 0..{len(rows_raw)}.")

        extra = doc.get("extra")
        return cls(
            rows=[Row.from_dict(r) for r in rows_raw],
            results=[Result.from_dict(r) for r in results_raw],
            cursor=cursor,
            active=bool(doc.get("active", False)),
            delay_ms=delay_ms,
            created_at=str(doc.get("created_at") or ""),
            updated_at=str(doc.get("updated_at") or ""),
            kind=str(doc.get("kind") or JOB_KIND),
            phase=_safe_phase(doc.get("phase") or JobPhase.SEEDED.value),
            pending_navigation=str(doc.get("pending_navigation") or ""),
            nav_attempts=nav_attempts,
            extra=extra if isinstance(extra, dict) else {},
        )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class JobStore:
    """Sole owner of the persisted job document for one key."""

    def __init__(self, kv: Optional[KVStore] = None, key: Optional[str] = None) -> None:
        self.kv = kv or default_kv()
        self.key = key or config.JOB_KEY_DEFAULT
        self._lock = _lock_for(self.key)

    def load(self) -> Optional[Job]:
        """Return the persisted job, ``None`` if absent.

        Raises :class:`JobStateError` when the stored document is malformed.
        """

        raw = self.kv.get(self.key)
        if raw is None:
            return None
        try:
            doc = json.loads(raw)
        except ValueError as exc:
            raise JobStateError(f"Persisted job is not valid JSON: {exc}") from exc
        return Job.from_document(doc)

    def save(self, job: Job) -> None:
        job.updated_at = now_iso()
        payload = json.dumps(job.to_document(), ensure_ascii=False, indent=2)
        with self._lock:
            self.kv.put(self.key, payload)

    def update(self, mutate: Callable[[Job], None]) -> Optional[Job]:
        """Atomic read-modify-write of the persisted job."""

        with self._lock:
            job = self.load()
            if job is None:
                return None
            mutate(job)
            job.updated_at = now_iso()
            self.kv.put(self.key, json.dumps(job.to_document(), ensure_ascii=False, indent=2))
            return job

    def save_progress(self, job: Job) -> bool:
        """Write the runner's copy of ``job`` without undoing other writers.

        A pause stored since ``job`` was loaded wins: ``job`` is marked paused
        before it is written. When the job was cleared or replaced nothing is
        written and ``False`` is returned.
        """

        with self._lock:
            if not self.reconcile(job):
                return False
            self.save(job)
            return True

    def reconcile(self, job: Job) -> bool:
        """Fold a pause or clear stored by another writer into ``job``.

        Returns ``False`` when the persisted job is gone or is a different job.
        """

        with self._lock:
            persisted = self.load()
        if persisted is None or persisted.created_at != job.created_at or persisted.total != job.total:
            job.active = False
            _capture_event("job", kind="superseded", key=self.key, cursor=job.cursor)
            return False
        if job.active and not persisted.active:
            job.active = False
            if not job.done:
                job.phase = JobPhase.PAUSED
            _capture_event("job", kind="pause_observed", key=self.key, cursor=job.cursor, total=job.total)
        return True

    def create(
        self,
        rows: List[Row],
        *,
        delay_ms: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Job:
        """Seed a new job (replacing any existing one for this key)."""

        total = min(limit, len(rows)) if limit else len(rows)
        subset = list(rows[:total])
        if not subset:
            raise JobStateError("No rows to process.", code="empty-row-set")

        stamp = now_iso()
        job = Job(
            rows=subset,
            results=[Result.blank(row) for row in subset],
            cursor=0,
            active=True,
            delay_ms=max(0, int(delay_ms if delay_ms is not None else config.ROW_DELAY_UI_MS)),
            created_at=stamp,
            updated_at=stamp,
            phase=JobPhase.SEEDED,
        )
        self.save(job)
        _capture_event("job", kind="created", key=self.key, rows=len(subset), delay_ms=job.delay_ms)
        return job

    def commit_result(self, job: Job, index: int, result: Result) -> bool:
        """Write ``result`` at ``index`` and advance the cursor in one save.

        Results are write-once; committing over an already written slot (or
        at a stale cursor) is refused and leaves the document untouched.
        """

        if index != job.cursor or index >= job.total:
            _capture_event("error", phase="commit", key=self.key, index=index, cursor=job.cursor, error="stale_cursor")
            return False
        if job.results[index].is_written:
            _capture_event("error", phase="commit", key=self.key, index=index, error="result_already_written")
            return False
        job.results[index] = result
        job.cursor = index + 1
        job.pending_navigation = ""
        job.nav_attempts = 0
        if job.done:
            job.active = False
            job.phase = JobPhase.COMPLETE
        else:
            job.phase = JobPhase.ADVANCING
        return self.save_progress(job)

    def pause(self) -> Optional[Job]:
        def _pause(job: Job) -> None:
            job.active = False
            if not job.done:
                job.phase = JobPhase.PAUSED

        job = self.update(_pause)
        if job is not None:
            _capture_event("job", kind="paused", key=self.key, cursor=job.cursor, total=job.total)
        return job

    def resume(self) -> Optional[Job]:
        def _resume(job: Job) -> None:
            if job.done:
                job.active = False
                job.phase = JobPhase.COMPLETE
                return
            job.active = True
            job.phase = JobPhase.SEEDED if job.cursor == 0 else JobPhase.ADVANCING

        job = self.update(_resume)
        if job is not None:
            _capture_event("job", kind="resumed", key=self.key, cursor=job.cursor, total=job.total)
        return job

    def clear(self) -> None:
        with self._lock:
            self.kv.delete(self.key)
        _capture_event("job", kind="cleared", key=self.key)

    def summary(self) -> Dict[str, Any]:
        job = self.load()
        if job is None:
            return {"key": self.key, "status": "none", "done": 0, "total": 0}
        done = min(job.cursor, job.total)
        if job.active:
            status = "running"
        elif done >= job.total:
            status = "done"
        else:
            status = "paused"
        errors: Dict[str, int] = {}
        for result in job.results[:done]:
            if result.error:
                errors[result.error] = errors.get(result.error, 0) + 1
        return {
            "key": self.key,
            "status": status,
            "phase": job.phase.value,
            "done": done,
            "total": job.total,
            "errors": errors,
            "updated_at": job.updated_at,
        }


__all__ = [
    "Job",
    "JobPhase",
    "JobStore",
    "KVStore",
    "JsonFileKV",
    "SqliteKV",
    "default_kv",
]
