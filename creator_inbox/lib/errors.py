"""Error taxonomy shared by ingest, scheduler and worker."""

from __future__ import annotations


class JobError(Exception):
    """Base class for failures raised while processing a queued job."""

    retryable = True


class RetryableJobError(JobError):
    """Transient failure (network, provider 5xx, model timeout)."""


class TerminalJobError(JobError):
    """Permanent configuration or payload failure; retrying cannot help."""

    retryable = False


class MalformedJobError(TerminalJobError):
    pass


class CreatorInactiveError(TerminalJobError):
    pass


class NeedsReconnectError(TerminalJobError):
    """No usable OAuth token and no refresh path; the creator must reconnect."""


class SchedulingConflictError(RuntimeError):
    """The debounce scheduler lost every optimistic round for one fan."""


class FanvueApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def is_terminal(exc: BaseException) -> bool:
    return isinstance(exc, JobError) and not exc.retryable


def describe_error(exc: BaseException) -> str:
    """Render an exception for jobs_queue.last_error."""

    text = f"{exc.__class__.__name__}: {exc}"
    if is_terminal(exc):
        text = f"terminal:{text}"
    return text[:2000]


__all__ = [
    "CreatorInactiveError",
    "FanvueApiError",
    "JobError",
    "MalformedJobError",
    "NeedsReconnectError",
    "RetryableJobError",
    "SchedulingConflictError",
    "TerminalJobError",
    "describe_error",
    "is_terminal",
]
