from enum import Enum
from typing import Annotated, Any, Iterator, Literal, Optional, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, model_validator

HARD_FLOOR_MS = 250


class JobStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.pending


_VENDOR_STATUSES = {
    "pending": JobStatus.pending,
    "queued": JobStatus.pending,
    "in_queue": JobStatus.pending,
    "in_progress": JobStatus.pending,
    "running": JobStatus.pending,
    "completed": JobStatus.completed,
    "succeeded": JobStatus.completed,
    "success": JobStatus.completed,
    "failed": JobStatus.failed,
    "error": JobStatus.failed,
    "cancelled": JobStatus.cancelled,
    "canceled": JobStatus.cancelled,
}


def classify_status(raw: Optional[str]) -> JobStatus:
    """Map a vendor status string onto a JobStatus.

    Unknown values are treated as pending so that the deadline, not a guess,
    decides when polling stops.
    """
    key = (raw or "").strip().lower().replace("-", "_")
    status = _VENDOR_STATUSES.get(key)
    if status is None:
        logger.warning(f"Unknown job status {raw!r}, treating as pending")
        return JobStatus.pending
    return status


class StatusReport(BaseModel):
    status: JobStatus
    progress_percent: Optional[float] = Field(None, ge=0, le=100)
    queue_position: Optional[int] = None
    raw_response: dict = Field(default_factory=dict)
    elapsed_time: float = 0.0


class BackoffOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    initial_ms: float = Field(1000, gt=0)
    max_ms: float = Field(8000, ge=HARD_FLOOR_MS)
    factor: float = Field(2.0, ge=1.0)
    jitter_ratio: float = Field(0.2, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "BackoffOptions":
        if self.max_ms < self.initial_ms:
            raise ValueError("max_ms must be greater than or equal to initial_ms")
        return self


class PollingConfig(BaseModel):
    timeout_ms: float = Field(120_000, ge=0)
    initial_backoff_ms: float = Field(1000, gt=0)
    max_backoff_ms: float = Field(8000, ge=HARD_FLOOR_MS)
    backoff_factor: float = Field(2.0, ge=1.0)
    jitter_ratio: float = Field(0.2, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "PollingConfig":
        if self.max_backoff_ms < self.initial_backoff_ms:
            raise ValueError(
                "max_backoff_ms must be greater than or equal to initial_backoff_ms"
            )
        return self

    def backoff_options(self) -> BackoffOptions:
        return BackoffOptions(
            initial_ms=self.initial_backoff_ms,
            max_ms=self.max_backoff_ms,
            factor=self.backoff_factor,
            jitter_ratio=self.jitter_ratio,
        )


class ProgressLog:
    """Append-only trace of a single run, returned with the outcome."""

    def __init__(self) -> None:
        self._entries: list[str] = []

    def append(self, entry: str) -> None:
        logger.debug(entry)
        self._entries.append(entry)

    def snapshot(self) -> tuple[str, ...]:
        return tuple(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class TerminalOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["terminal"] = "terminal"
    handle: str
    status: JobStatus
    result: Any = None
    elapsed_ms: int
    progress_log: tuple[str, ...] = ()

    @property
    def job_succeeded(self) -> bool:
        """Whether the remote job itself completed, as opposed to the polling."""
        return self.status is JobStatus.completed


class TimedOutOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["timed_out"] = "timed_out"
    handle: str
    elapsed_ms: int
    last_status: Optional[JobStatus] = None
    progress_log: tuple[str, ...] = ()


PollOutcome = Annotated[
    Union[TerminalOutcome, TimedOutOutcome], Field(discriminator="kind")
]
