import time
from enum import Enum
from typing import Any, Iterable, Optional


class JobPollingError(Exception):
    """Base error for a polling run; carries the progress log seen so far."""

    def __init__(self, message: str, progress_log: Iterable[str] = ()):
        super().__init__(message)
        self.progress_log = tuple(progress_log)


class SubmissionError(JobPollingError):
    """The remote system rejected the job at submit time."""


class TransportError(JobPollingError):
    """A status or result request failed at the network/HTTP layer."""


class PollingCancelledError(JobPollingError):
    """The caller signalled cancellation while the run was in progress."""


class ConfigValidationError(Exception):
    pass


class ApiErrorKind(str, Enum):
    unauthorized = "unauthorized"
    forbidden = "forbidden"
    not_found = "not_found"
    rate_limited = "rate_limited"
    server = "server"
    http = "http"
    invalid_response = "invalid_response"


_MESSAGES = {
    ApiErrorKind.unauthorized: "Unauthorized",
    ApiErrorKind.forbidden: "Forbidden",
    ApiErrorKind.not_found: "Not Found",
    ApiErrorKind.rate_limited: "Too Many Requests",
    ApiErrorKind.server: "Server Error",
    ApiErrorKind.http: "HTTP Error",
    ApiErrorKind.invalid_response: "Invalid Response",
}


class ApiError(Exception):
    def __init__(
        self,
        kind: ApiErrorKind,
        status_code: int,
        endpoint: Optional[str] = None,
        details: Any = None,
        reset_at: Optional[float] = None,
    ):
        super().__init__(f"{_MESSAGES[kind]} ({status_code}) at {endpoint}")
        self.kind = kind
        self.status_code = status_code
        self.endpoint = endpoint
        self.details = details
        self.reset_at = reset_at


def _kind_for_status(status: int) -> ApiErrorKind:
    if status == 401:
        return ApiErrorKind.unauthorized
    if status == 403:
        return ApiErrorKind.forbidden
    if status == 404:
        return ApiErrorKind.not_found
    if status == 429:
        return ApiErrorKind.rate_limited
    if status >= 500:
        return ApiErrorKind.server
    return ApiErrorKind.http


def classify_http_error(
    status: int,
    endpoint: Optional[str] = None,
    details: Any = None,
    retry_after: Optional[str] = None,
) -> ApiError:
    kind = _kind_for_status(status)
    reset_at = None
    if kind is ApiErrorKind.rate_limited and retry_after:
        try:
            reset_at = time.time() + float(retry_after)
        except ValueError:
            reset_at = None
    return ApiError(kind, status, endpoint, details, reset_at)
