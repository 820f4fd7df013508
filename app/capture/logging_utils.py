from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator

from .utils import log_line

# Longest rendered value; bodies and payload snippets are clipped to this.
MAX_VALUE_CHARS = 240

_CONTEXT: ContextVar[Dict[str, Any]] = ContextVar("capture_context", default={})


@contextmanager
def capture_context(**fields: Any) -> Iterator[None]:
    """Attach ``fields`` (job key, listing, ...) to every event in the block.

    Contexts nest; inner values win, and ``None`` values are ignored.
    """

    merged = {**_CONTEXT.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _CONTEXT.set(merged)
    try:
        yield
    finally:
        _CONTEXT.reset(token)


def _render(value: Any) -> str:
    text = repr(value)
    if len(text) > MAX_VALUE_CHARS:
        return f"{text[:MAX_VALUE_CHARS]}...(+{len(text) - MAX_VALUE_CHARS} chars)"
    return text


def _capture_event(label: str = "", *, phase: str | None = None, **fields: Any) -> None:
    """Emit a structured capture log line.

    ``phase`` may be used as a keyword alias for the label. When both
    ``label`` and ``phase`` are provided, ``phase`` is emitted as part of the
    payload so the caller still captures the event stage. Fields bound with
    :func:`capture_context` are included unless the call overrides them.
    """

    try:
        phase_label = label or (phase or "")
        payload_fields = {**_CONTEXT.get(), **fields}
        if phase and label:
            payload_fields.setdefault("phase", phase)
        payload = ", ".join(f"{k}={_render(v)}" for k, v in sorted(payload_fields.items()))
        log_line(f"[CAPTURE][{phase_label.upper()}] {payload}")
    except Exception:
        # Never let logging break the capture loop.
        return


__all__ = ["_capture_event", "capture_context", "MAX_VALUE_CHARS"]
