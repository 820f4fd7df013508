from __future__ import annotations

from typing import Literal

from . import config
from .logging_utils import _capture_event
from .utils import log_line

Entrypoint = Literal["ui", "cli", "api", "tests"]


def _raise_config_error(
    message: str, *, entrypoint: Entrypoint, error: str, mode: str | None
) -> None:
    _capture_event(
        "error",
        phase="config",
        context="runtime_validation",
        error=error,
        entrypoint=entrypoint,
        mode=mode,
    )
    mode_fragment = f", mode={mode}" if mode else ""
    log_line(f"[CONFIG] {message} (entrypoint={entrypoint}{mode_fragment})")
    raise ValueError(message)


def _clamp(field: str, value: int, adjusted: int, *, entrypoint: Entrypoint, mode: str | None, reason: str) -> None:
    _capture_event(
        "state",
        phase="config",
        context="runtime_validation",
        kind="config_adjustment",
        field=field,
        value=value,
        adjusted=adjusted,
        entrypoint=entrypoint,
        mode=mode,
    )
    log_line(f"[CONFIG] {field} {reason}; clamping to {adjusted}.")
    setattr(config, field, adjusted)


def validate_runtime_config(entrypoint: Entrypoint, *, mode: str | None = None) -> None:
    """Validate runtime configuration for the given entrypoint.

    Raises ``ValueError`` when a blocking misconfiguration is detected.
    Non-fatal adjustments (e.g., a poll interval longer than the capture
    timeout) are logged but do not raise.
    """

    if config.JOB_BACKEND not in {"json", "sqlite"}:
        _raise_config_error(
            f"CAPTURE_JOB_BACKEND must be 'json' or 'sqlite', got {config.JOB_BACKEND!r}.",
            entrypoint=entrypoint,
            error="unknown_job_backend",
            mode=mode,
        )

    if mode == "fast" and not config.DIRECT_FETCH_BEARER and entrypoint != "tests":
        _raise_config_error(
            "Fast mode captures through the direct lookup and needs CAPTURE_BEARER_TOKEN.",
            entrypoint=entrypoint,
            error="direct_fetch_without_bearer",
            mode=mode,
        )

    if config.CAPTURE_POLL_MS > config.CAPTURE_TIMEOUT_MS:
        _clamp(
            "CAPTURE_POLL_MS",
            config.CAPTURE_POLL_MS,
            config.CAPTURE_TIMEOUT_MS,
            entrypoint=entrypoint,
            mode=mode,
            reason="exceeds CAPTURE_TIMEOUT_MS",
        )

    if config.HARVEST_PAGE_CHANGE_POLL_MS > config.HARVEST_PAGE_CHANGE_TIMEOUT_MS:
        _clamp(
            "HARVEST_PAGE_CHANGE_POLL_MS",
            config.HARVEST_PAGE_CHANGE_POLL_MS,
            config.HARVEST_PAGE_CHANGE_TIMEOUT_MS,
            entrypoint=entrypoint,
            mode=mode,
            reason="exceeds HARVEST_PAGE_CHANGE_TIMEOUT_MS",
        )

    if config.HARVEST_STABLE_PASSES_AT_END > config.HARVEST_STABLE_PASSES:
        _clamp(
            "HARVEST_STABLE_PASSES_AT_END",
            config.HARVEST_STABLE_PASSES_AT_END,
            config.HARVEST_STABLE_PASSES,
            entrypoint=entrypoint,
            mode=mode,
            reason="exceeds HARVEST_STABLE_PASSES",
        )

    timeout_fields = [
        ("PLAYWRIGHT_NAV_TIMEOUT_SECONDS", config.PLAYWRIGHT_NAV_TIMEOUT_SECONDS),
        ("CAPTURE_TIMEOUT_MS", config.CAPTURE_TIMEOUT_MS),
        ("DIRECT_FETCH_TIMEOUT_SECONDS", config.DIRECT_FETCH_TIMEOUT_SECONDS),
    ]

    for field_name, value in timeout_fields:
        if value <= 0:
            _raise_config_error(
                f"{field_name} must be greater than zero.",
                entrypoint=entrypoint,
                error="invalid_timeout",
                mode=mode,
            )


__all__ = ["validate_runtime_config", "Entrypoint"]
