"""Configuration constants for the message body capture engine."""
from __future__ import annotations

import os
from pathlib import Path

DATA_DIR: Path = Path(os.getenv("CAPTURE_DATA_DIR", "/app/data"))
LOG_DIR: Path = DATA_DIR / "logs"
LOG_FILE: Path = LOG_DIR / "latest.log"
JOBS_DIR: Path = DATA_DIR / "jobs"
EXPORTS_DIR: Path = DATA_DIR / "exports"
# SQLite job store; the JSON job directory above is used when the KV backend
# is set to "json".
DB_PATH: Path = DATA_DIR / "capture.db"

JOB_KEY_DEFAULT: str = os.getenv("CAPTURE_JOB_KEY", "ui-capture-job-v1")
JOB_BACKEND: str = os.getenv("CAPTURE_JOB_BACKEND", "json").strip().lower() or "json"


def _parse_int(env_var: str, default: int, *, minimum: int = 0) -> int:
    """Parse an integer from the environment, clamped to ``minimum``."""

    try:
        value = int(os.getenv(env_var, str(default)))
    except ValueError:
        return default
    return max(minimum, value)


def _parse_bool(env_var: str, default: bool) -> bool:
    raw = os.getenv(env_var)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off", ""}


# Evidence pool bounds
POOL_CAPACITY: int = _parse_int("CAPTURE_POOL_CAPACITY", 240, minimum=1)
POOL_TTL_MS: int = _parse_int("CAPTURE_POOL_TTL_MS", 120_000, minimum=1)

# Target matching
CAPTURE_TIMEOUT_MS: int = _parse_int("CAPTURE_TIMEOUT_MS", 30_000, minimum=1)
CAPTURE_POLL_MS: int = _parse_int("CAPTURE_POLL_MS", 500, minimum=1)
MIN_GOOD_CHARS: int = _parse_int("CAPTURE_MIN_GOOD_CHARS", 60)
CAPTURE_PULSE_MS: int = _parse_int("CAPTURE_PULSE_MS", 4_000)
ALLOW_LOW_CONFIDENCE: bool = _parse_bool("CAPTURE_ALLOW_LOW_CONFIDENCE", False)

# Job pacing. "ui" mode waits longer between rows so the app settles.
ROW_DELAY_UI_MS: int = _parse_int("CAPTURE_ROW_DELAY_UI_MS", 900)
ROW_DELAY_FAST_MS: int = _parse_int("CAPTURE_ROW_DELAY_FAST_MS", 450)
ROW_LIMIT: int = _parse_int("CAPTURE_ROW_LIMIT", 0)
MAX_NAVIGATION_ATTEMPTS: int = _parse_int("CAPTURE_MAX_NAV_ATTEMPTS", 3, minimum=1)
TICK_INTERVAL_MS: int = _parse_int("CAPTURE_TICK_INTERVAL_MS", 1_000, minimum=1)

# Link harvesting
HARVEST_MAX_CYCLES: int = _parse_int("HARVEST_MAX_CYCLES", 300, minimum=1)
HARVEST_MAX_SCROLL_PASSES: int = _parse_int("HARVEST_MAX_SCROLL_PASSES", 90, minimum=1)
HARVEST_STABLE_PASSES: int = _parse_int("HARVEST_STABLE_PASSES", 6, minimum=1)
HARVEST_STABLE_PASSES_AT_END: int = _parse_int("HARVEST_STABLE_PASSES_AT_END", 3, minimum=1)
HARVEST_SCROLL_SETTLE_MS: int = _parse_int("HARVEST_SCROLL_SETTLE_MS", 360)
HARVEST_PAGE_CHANGE_TIMEOUT_MS: int = _parse_int("HARVEST_PAGE_CHANGE_TIMEOUT_MS", 12_000, minimum=1)
HARVEST_PAGE_CHANGE_POLL_MS: int = _parse_int("HARVEST_PAGE_CHANGE_POLL_MS", 250, minimum=1)
HARVEST_AFTER_NEXT_MS: int = _parse_int("HARVEST_AFTER_NEXT_MS", 900)

# Playwright timeouts (seconds)
PLAYWRIGHT_NAV_TIMEOUT_SECONDS: int = _parse_int("CAPTURE_NAV_TIMEOUT_SECONDS", 25, minimum=1)
PLAYWRIGHT_HEADLESS: bool = _parse_bool("CAPTURE_HEADLESS", True)
PLAYWRIGHT_STORAGE_STATE: str = os.getenv("CAPTURE_STORAGE_STATE", "").strip()

# Application specifics. Vendor names are opaque aliases, never contracts.
APP_HOST_SUFFIX: str = os.getenv("CAPTURE_APP_HOST_SUFFIX", "outreach.io")
THREAD_MESSAGES_OPERATION: str = "Messages_GetThreadMessages"
RELEVANT_OPERATION_HINTS: tuple[str, ...] = (
    "Messages_GetThreadMessages",
    "Messages_GetMessage",
    "Messages",
)
STATE_ROOT_KEY: str = os.getenv("CAPTURE_STATE_ROOT_KEY", "OrGlobalGiraffeCache")

# Optional direct lookup of a thread message. Disabled unless a bearer token
# is supplied explicitly.
DIRECT_FETCH_URL: str = os.getenv(
    "CAPTURE_DIRECT_FETCH_URL",
    "https://app2b.outreach.io/graphql/Messages_GetThreadMessages",
)
DIRECT_FETCH_SHA256: str = os.getenv(
    "CAPTURE_DIRECT_FETCH_SHA256",
    "78b5e932965708618acbc1e64a0e6e4a4ff175ed5124adcbaba66b82f2154960",
)
DIRECT_FETCH_BEARER: str = os.getenv("CAPTURE_BEARER_TOKEN", "").strip()
DIRECT_FETCH_TIMEOUT_SECONDS: int = _parse_int("CAPTURE_DIRECT_FETCH_TIMEOUT_SECONDS", 30, minimum=1)

COMMON_HEADERS: dict[str, str] = {
    "Accept": "*/*",
    "Content-Type": "application/json",
    "Accept-Language": "en-US,en;q=0.9",
}


def row_delay_for_mode(mode: str) -> int:
    """Return the inter-row delay in milliseconds for a pacing mode."""

    return ROW_DELAY_FAST_MS if str(mode).strip().lower() == "fast" else ROW_DELAY_UI_MS


def use_sqlite_jobs() -> bool:
    """Return True when jobs should be persisted in SQLite."""

    return JOB_BACKEND == "sqlite"


def score_weight_override(name: str) -> float | None:
    """Return a numeric override for a score weight, if one is configured."""

    raw = os.getenv(f"CAPTURE_WEIGHT_{name.upper()}")
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw)
    except ValueError:
        return None
