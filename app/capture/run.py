"""Entry points: harvest links, seed and drive the capture job, export results."""

from __future__ import annotations

import argparse
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from . import config
from .config_validation import Entrypoint, validate_runtime_config
from .direct_fetch import DirectLookup, ThreadMessageClient, VirtualNavigator
from .error_codes import JobStateError
from .evidence_pool import EvidencePool
from .export import export_results_to_excel, read_links_csv, write_links_csv, write_results_csv
from .harvester import LinkHarvester
from .job_machine import EngineState, JobStateMachine
from .job_store import Job, JobPhase, JobStore
from .logging_utils import _capture_event
from .matcher import TargetMatcher
from .playwright_adapters import (
    CaptureWaiter,
    MarkupSampler,
    NetworkTap,
    PageNavigator,
    PlaywrightListingView,
    browser_session,
    page_metadata_provider,
    read_state_root,
)
from .rows import Row
from .scoring import weights_from_config
from .sources import EvidenceHub
from .utils import ensure_dirs, log_line, setup_run_logger

MODES = ("ui", "fast")


def _job_store(key: Optional[str] = None) -> JobStore:
    return JobStore(key=key)


def run_harvest(
    listing_url: str,
    *,
    headless: Optional[bool] = None,
    dest_path: Optional[Path] = None,
    stop_requested: Optional[Callable[[], bool]] = None,
) -> Dict[str, Any]:
    """Open ``listing_url``, walk every page and write the links CSV."""

    ensure_dirs()
    log_path = setup_run_logger(prefix="harvest")
    log_line(f"Harvesting message links from {listing_url}")

    with browser_session(headless=headless) as page:
        page.goto(listing_url, wait_until="domcontentloaded")
        page.wait_for_load_state("networkidle")
        harvester = LinkHarvester(stop_requested=stop_requested)
        report = harvester.harvest(PlaywrightListingView(page))

    links_path = write_links_csv(report.rows, dest_path)
    log_line(
        f"Harvest finished: {len(report.rows)} links across {report.pages_visited} page(s) "
        f"({report.stop_reason}); wrote {links_path}"
    )
    return {
        "rows": len(report.rows),
        "pages": report.pages_visited,
        "stop_reason": report.stop_reason,
        "links_csv": str(links_path),
        "log_file": str(log_path),
    }


def seed_job(
    rows: List[Row],
    *,
    mode: str = "ui",
    limit: Optional[int] = None,
    delay_ms: Optional[int] = None,
    store: Optional[JobStore] = None,
) -> Job:
    """Replace the persisted job with a fresh one over ``rows``."""

    store = store or _job_store()
    row_limit = limit if limit is not None else (config.ROW_LIMIT or None)
    return store.create(
        rows,
        delay_ms=config.row_delay_for_mode(mode) if delay_ms is None else delay_ms,
        limit=row_limit,
    )


def _summary(store: JobStore, phase: JobPhase, engine_state: EngineState, log_path: Path) -> Dict[str, Any]:
    summary = store.summary()
    summary.update(
        {
            "last_phase": phase.value,
            "ticks": engine_state.ticks,
            "rows_captured": engine_state.rows_captured,
            "log_file": str(log_path),
        }
    )
    return summary


def run_capture_fast(
    *,
    store: Optional[JobStore] = None,
    engine_state: Optional[EngineState] = None,
    client: Optional[ThreadMessageClient] = None,
) -> Dict[str, Any]:
    """Drive the job without a browser, using only the direct lookup."""

    ensure_dirs()
    log_path = setup_run_logger(prefix="capture")
    store = store or _job_store()
    engine_state = engine_state or EngineState()

    navigator = VirtualNavigator()
    pool = EvidencePool()
    hub = EvidenceHub(pool, page_context=navigator.current_context)
    matcher = TargetMatcher(
        pool,
        weights=weights_from_config(),
        timeout_ms=config.CAPTURE_POLL_MS,
        stop_requested=lambda: engine_state.stop_requested,
    )
    machine = JobStateMachine(
        store,
        navigator,
        matcher,
        before_capture=DirectLookup(client or ThreadMessageClient(), hub),
        sleep=lambda ms: time.sleep(ms / 1000.0),
    )
    phase = machine.run(engine_state)
    return _summary(store, phase, engine_state, log_path)


def run_capture_ui(
    *,
    store: Optional[JobStore] = None,
    engine_state: Optional[EngineState] = None,
    headless: Optional[bool] = None,
) -> Dict[str, Any]:
    """Drive the job through a real browser, one row per page load."""

    ensure_dirs()
    log_path = setup_run_logger(prefix="capture")
    store = store or _job_store()
    engine_state = engine_state or EngineState()

    with browser_session(headless=headless) as page:
        navigator = PageNavigator(page)
        pool = EvidencePool()
        hub = EvidenceHub(pool, page_context=navigator.current_context)
        NetworkTap(page, hub).attach()
        sampler = MarkupSampler(page, hub) if config.ALLOW_LOW_CONFIDENCE else None
        matcher = TargetMatcher(
            pool,
            weights=weights_from_config(),
            state_lookup=hub.state_lookup(lambda: read_state_root(page)),
            sleep=CaptureWaiter(page, sampler),
            stop_requested=lambda: engine_state.stop_requested,
        )
        client = ThreadMessageClient()
        machine = JobStateMachine(
            store,
            navigator,
            matcher,
            metadata_provider=page_metadata_provider(page),
            before_capture=DirectLookup(client, hub) if client.enabled else None,
            sleep=page.wait_for_timeout,
        )
        phase = machine.run(engine_state)

    return _summary(store, phase, engine_state, log_path)


def run_capture(
    *,
    mode: str = "ui",
    store: Optional[JobStore] = None,
    engine_state: Optional[EngineState] = None,
    headless: Optional[bool] = None,
    entrypoint: Entrypoint = "cli",
) -> Dict[str, Any]:
    validate_runtime_config(entrypoint, mode=mode)
    store = store or _job_store()
    engine_state = engine_state or EngineState()
    _capture_event("job", kind="run_start", key=store.key, mode=mode)
    try:
        if mode == "fast":
            return run_capture_fast(store=store, engine_state=engine_state)
        return run_capture_ui(store=store, engine_state=engine_state, headless=headless)
    except KeyboardInterrupt:
        engine_state.request_stop()
        log_line("Capture interrupted; job state is persisted and can be resumed.")
        return store.summary()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Capture message bodies from the web app.")
    parser.add_argument("--job-key", default=None, help="Persisted job key.")
    sub = parser.add_subparsers(dest="command", required=True)

    harvest = sub.add_parser("harvest", help="Collect message links from a listing.")
    harvest.add_argument("listing_url")
    harvest.add_argument("--out", type=Path, default=None)
    harvest.add_argument("--headed", action="store_true", default=False)

    start = sub.add_parser("start", help="Seed a job from a links CSV and run it.")
    start.add_argument("links_csv", type=Path)
    start.add_argument("--mode", choices=MODES, default="ui")
    start.add_argument("--limit", type=int, default=None)
    start.add_argument("--delay-ms", type=int, default=None)
    start.add_argument("--seed-only", action="store_true", default=False)
    start.add_argument("--headed", action="store_true", default=False)

    resume = sub.add_parser("resume", help="Resume the persisted job.")
    resume.add_argument("--mode", choices=MODES, default="ui")
    resume.add_argument("--headed", action="store_true", default=False)

    sub.add_parser("status", help="Print the persisted job summary.")
    sub.add_parser("pause", help="Mark the persisted job inactive.")
    sub.add_parser("clear", help="Delete the persisted job.")

    export = sub.add_parser("export", help="Write the results CSV (and optionally Excel).")
    export.add_argument("--out", type=Path, default=None)
    export.add_argument("--excel", action="store_true", default=False)
    return parser


def _print_summary(summary: Dict[str, Any]) -> None:
    for key in sorted(summary):
        print(f"{key}: {summary[key]}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    store = _job_store(args.job_key)

    try:
        if args.command == "harvest":
            _print_summary(run_harvest(args.listing_url, headless=not args.headed, dest_path=args.out))
        elif args.command == "start":
            try:
                rows = read_links_csv(args.links_csv)
            except (OSError, ValueError) as exc:
                parser.error(f"Cannot load {args.links_csv}: {exc}")
            job = seed_job(rows, mode=args.mode, limit=args.limit, delay_ms=args.delay_ms, store=store)
            print(f"Seeded job {store.key} with {job.total} row(s).")
            if not args.seed_only:
                _print_summary(run_capture(mode=args.mode, store=store, headless=not args.headed))
        elif args.command == "resume":
            if store.resume() is None:
                parser.error(f"No persisted job for key {store.key}")
            _print_summary(run_capture(mode=args.mode, store=store, headless=not args.headed))
        elif args.command == "status":
            _print_summary(store.summary())
        elif args.command == "pause":
            if store.pause() is None:
                parser.error(f"No persisted job for key {store.key}")
            _print_summary(store.summary())
        elif args.command == "clear":
            store.clear()
            print(f"Cleared job {store.key}.")
        elif args.command == "export":
            job = store.load()
            if job is None:
                parser.error(f"No persisted job for key {store.key}")
            csv_path = write_results_csv(job, args.out)
            print(f"Wrote {csv_path}")
            if args.excel:
                print(f"Wrote {export_results_to_excel(job)}")
    except JobStateError as exc:
        log_line(f"[JOB] {exc} (code={exc.code})")
        print(f"Job error ({exc.code}): {exc}")
        return 2
    except ValueError as exc:
        print(f"Configuration error: {exc}")
        return 2
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
