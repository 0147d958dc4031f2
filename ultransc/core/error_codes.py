"""
Standardised error handling for ULTRANSC.

Three failure classes travel through the pipeline:
  JobError  — a stage of one job failed; routed through the retry controller.
  UnitError — a unit of work could not even become a job (e.g. a download).
  RunAbort  — a host-level precondition failed; the whole run stops.
"""

from ultransc.core.constants import ErrorCode, RETRYABLE_ERRORS


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    def __init__(self, code: str, message: str, retryable: bool | None = None):
        self.code = code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else is_retryable(code)
        super().__init__(f"[{code}] {message}")


class UnitError(Exception):
    """Raised when a source cannot be turned into a job."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}")


class RunAbort(Exception):
    """Raised when a run-level precondition fails; aborts the whole run."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}")


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS


def unexpected(exc: Exception) -> JobError:
    """Wrap an unexpected exception raised inside a stage."""
    return JobError(ErrorCode.UNEXPECTED, f"{type(exc).__name__}: {exc}"[:2000],
                    retryable=True)
