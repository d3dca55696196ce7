"""Error taxonomy for intelligence jobs.

ValidationError and NotFound are raised synchronously to callers. Provider
errors raised during a run are captured into the job record, never thrown
across the background-task boundary.
"""

from typing import Any

RATE_LIMIT_MARKERS = (
    "rate limit",
    "rate_limit",
    "overloaded",
    "too many requests",
    "429",
    "capacity",
)

RATE_LIMIT_STATUS_CODES = (429, 529)


class IntelligenceError(Exception):
    """Base class for intelligence engine errors."""


class JobValidationError(IntelligenceError):
    """Raised when a job submission is malformed. No job is created."""


class JobNotFoundError(IntelligenceError):
    """Raised when a job id or entity lookup misses."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class ProviderError(IntelligenceError):
    """A model or tool provider call failed. Not retried."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(ProviderError):
    """A provider rejected the call for rate or capacity reasons. Retryable."""


class JobCancelledError(IntelligenceError):
    """The job was cancelled while running. Not a failure."""


def _status_code(error: Any) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_rate_limit_error(error: BaseException | None) -> bool:
    """
    Classify an exception as rate-limit class.

    Matches RateLimitedError and HTTP 429/529 responses. An error with any
    other known status is not rate-limit class. Only when no status is known
    do message markers (rate limit, overload, capacity) decide.
    """
    if error is None:
        return False
    if isinstance(error, RateLimitedError):
        return True
    # A known status code is authoritative; messages may embed URLs or ids
    code = error.status_code if isinstance(error, ProviderError) else _status_code(error)
    if isinstance(code, int):
        return code in RATE_LIMIT_STATUS_CODES

    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)
