from __future__ import annotations

"""Error taxonomy for capture outcomes.

Row-level codes are written to ``Result.error`` and the exported ``error``
column; downstream filters match on them, so the values must stay stable.
Job-level failures are raised as :class:`JobStateError` and never recorded
per row.
"""


class ErrorCode:
    MISSING_INPUT_FIELDS = "missing-input-fields"
    CAPTURE_TIMEOUT = "capture-timeout"
    MASKED_CONTENT = "masked-content"
    LOW_CONFIDENCE = "low-confidence-resolution"
    TRANSPORT = "transport-error"
    NAVIGATION_FAILED = "navigation-failed"


class JobStateError(Exception):
    """Raised when the persisted job cannot be processed at all."""

    def __init__(self, message: str, *, code: str = "malformed-job") -> None:
        super().__init__(message)
        self.code = code


class TransportError(Exception):
    """A direct lookup could not reach the application or was refused."""

    def __init__(self, message: str, *, http_status: int | None = None) -> None:
        super().__init__(message)
        self.error_code = ErrorCode.TRANSPORT
        self.http_status = http_status


__all__ = ["ErrorCode", "JobStateError", "TransportError"]
