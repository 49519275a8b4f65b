import time

import pytest
from pydantic import ValidationError

from queue_job_client.errors import ApiErrorKind, classify_http_error
from queue_job_client.models import (
    JobStatus,
    PollingConfig,
    ProgressLog,
    StatusReport,
    TerminalOutcome,
    TimedOutOutcome,
    classify_status,
)


@pytest.mark.parametrize(
    "status, kind",
    [
        (401, ApiErrorKind.unauthorized),
        (403, ApiErrorKind.forbidden),
        (404, ApiErrorKind.not_found),
        (429, ApiErrorKind.rate_limited),
        (500, ApiErrorKind.server),
        (503, ApiErrorKind.server),
        (400, ApiErrorKind.http),
        (422, ApiErrorKind.http),
    ],
)
def test_http_errors_are_classified_by_status(status, kind):
    error = classify_http_error(status, "https://queue.example/x", {"detail": "nope"})
    assert error.kind == kind
    assert error.status_code == status
    assert error.endpoint == "https://queue.example/x"
    assert error.details == {"detail": "nope"}


def test_rate_limit_records_reset_time():
    before = time.time()
    error = classify_http_error(429, retry_after="30")
    assert error.reset_at is not None
    assert error.reset_at >= before + 30


def test_unparseable_retry_after_is_ignored():
    assert classify_http_error(429, retry_after="soon").reset_at is None
    assert classify_http_error(500, retry_after="30").reset_at is None


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("IN_QUEUE", JobStatus.pending),
        ("IN_PROGRESS", JobStatus.pending),
        ("in-progress", JobStatus.pending),
        ("COMPLETED", JobStatus.completed),
        ("FAILED", JobStatus.failed),
        ("error", JobStatus.failed),
        ("CANCELLED", JobStatus.cancelled),
        ("canceled", JobStatus.cancelled),
        ("SOMETHING_NEW", JobStatus.pending),
        (None, JobStatus.pending),
    ],
)
def test_vendor_statuses_are_classified(raw, expected):
    assert classify_status(raw) == expected


def test_only_pending_is_non_terminal():
    assert not JobStatus.pending.is_terminal
    assert all(
        status.is_terminal
        for status in (JobStatus.completed, JobStatus.failed, JobStatus.cancelled)
    )


def test_progress_percent_is_bounded():
    with pytest.raises(ValidationError):
        StatusReport(status=JobStatus.pending, progress_percent=120)


def test_polling_config_defaults():
    config = PollingConfig()
    assert config.timeout_ms == 120_000
    options = config.backoff_options()
    assert (options.initial_ms, options.max_ms, options.factor, options.jitter_ratio) == (
        1000,
        8000,
        2.0,
        0.2,
    )


def test_progress_log_snapshot_is_immutable_copy():
    log = ProgressLog()
    log.append("one")
    snapshot = log.snapshot()
    log.append("two")
    assert snapshot == ("one",)
    assert list(log) == ["one", "two"]
    assert len(log) == 2


def test_outcomes_are_frozen():
    outcome = TimedOutOutcome(handle="h", elapsed_ms=10)
    with pytest.raises(ValidationError):
        outcome.elapsed_ms = 20


def test_terminal_outcome_separates_job_success_from_polling():
    done = TerminalOutcome(handle="h", status=JobStatus.completed, elapsed_ms=1)
    failed = TerminalOutcome(handle="h", status=JobStatus.failed, elapsed_ms=1)
    assert done.job_succeeded
    assert not failed.job_succeeded
