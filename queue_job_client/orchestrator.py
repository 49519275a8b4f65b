import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from loguru import logger

from queue_job_client.backoff import BackoffState, RandomSource
from queue_job_client.errors import (
    JobPollingError,
    PollingCancelledError,
    SubmissionError,
    TransportError,
)
from queue_job_client.models import (
    JobStatus,
    PollingConfig,
    PollOutcome,
    ProgressLog,
    StatusReport,
    TerminalOutcome,
    TimedOutOutcome,
)

SubmitFn = Callable[[Any], Awaitable[str]]
PollFn = Callable[[str], Awaitable[Union[StatusReport, JobStatus]]]
FetchResultFn = Callable[[str], Awaitable[Any]]
StatusCallback = Callable[[StatusReport], Awaitable[Any]]


class OrchestratorState(str, Enum):
    created = "created"
    submitting = "submitting"
    polling = "polling"
    resolving = "resolving"
    timed_out = "timed_out"
    aborted = "aborted"


class PollingOrchestrator:
    """Drives one job through submit, poll-until-terminal and result fetch.

    Instances are single-use. A run that times out leaves the remote job
    running; cancelling it is the caller's decision.
    """

    def __init__(
        self,
        submit: SubmitFn,
        poll: PollFn,
        fetch_result: FetchResultFn,
        config: Optional[PollingConfig] = None,
        *,
        on_status_change: Optional[StatusCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        rng: Optional[RandomSource] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._submit = submit
        self._poll = poll
        self._fetch_result = fetch_result
        self.config = config or PollingConfig()
        self.on_status_change = on_status_change
        self._cancel_event = cancel_event
        self._rng = rng
        self._clock = clock or (lambda: asyncio.get_running_loop().time())
        self._sleep = sleep
        self.state = OrchestratorState.created
        self.progress_log = ProgressLog()
        self.logger = logger

    async def run(self, job_input: Any) -> PollOutcome:
        if self.state is not OrchestratorState.created:
            raise RuntimeError("PollingOrchestrator instances are single-use")

        handle = await self._submit_job(job_input)

        self.state = OrchestratorState.polling
        started = self._clock()
        deadline = started + self.config.timeout_ms / 1000
        backoff = BackoffState(self.config.backoff_options())
        last_status: Optional[JobStatus] = None

        while True:
            if self._clock() >= deadline:
                return self._timed_out(handle, started, last_status)
            self._raise_if_cancelled("before polling")

            report = await self._poll_once(handle)
            await self._handle_status_change(report, last_status)
            last_status = report.status

            if report.status.is_terminal:
                break
            if self._clock() >= deadline:
                return self._timed_out(handle, started, last_status)

            delay_ms = backoff.advance(self._rng)
            remaining_ms = max(0.0, (deadline - self._clock()) * 1000)
            await self._wait_before_next_poll(min(delay_ms, remaining_ms))

        return await self._resolve(handle, last_status, started)

    async def _submit_job(self, job_input: Any) -> str:
        self.state = OrchestratorState.submitting
        self.progress_log.append("Submitting job")
        try:
            handle = await self._submit(job_input)
        except SubmissionError as exc:
            self.state = OrchestratorState.aborted
            self.progress_log.append(f"Submission failed: {exc}")
            exc.progress_log = self.progress_log.snapshot()
            raise
        self.progress_log.append(f"Submitted job, handle={handle}")
        return handle

    async def _poll_once(self, handle: str) -> StatusReport:
        try:
            report = await self._poll(handle)
        except TransportError as exc:
            self._abort(exc, "Polling aborted")
            raise
        if isinstance(report, JobStatus):
            report = StatusReport(status=report)

        entry = f"status={report.status.value}"
        if report.progress_percent is not None:
            entry += f" progress={report.progress_percent:g}%"
        if report.queue_position is not None:
            entry += f" queue_position={report.queue_position}"
        self.progress_log.append(entry)
        return report

    async def _handle_status_change(
        self, report: StatusReport, last_status: Optional[JobStatus]
    ) -> None:
        """Invoke the status change callback if the status has changed"""
        if last_status != report.status and self.on_status_change is not None:
            self.logger.debug(f"Job status changed to {report.status.value}")
            await self.on_status_change(report)

    async def _wait_before_next_poll(self, delay_ms: float) -> None:
        self.logger.debug(f"Job still pending, waiting {delay_ms / 1000:.2f}s")
        if self._cancel_event is None:
            await self._sleep(delay_ms / 1000)
            return
        sleep_task = asyncio.ensure_future(self._sleep(delay_ms / 1000))
        cancel_task = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait(
                {sleep_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (sleep_task, cancel_task):
                if not task.done():
                    task.cancel()
        if sleep_task.done() and not sleep_task.cancelled():
            sleep_task.result()
        self._raise_if_cancelled("while waiting")

    def _raise_if_cancelled(self, where: str) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            exc = PollingCancelledError(f"Run cancelled {where}")
            self._abort(exc, "Cancelled")
            raise exc

    async def _resolve(
        self, handle: str, status: JobStatus, started: float
    ) -> TerminalOutcome:
        self.state = OrchestratorState.resolving
        try:
            result = await self._fetch_result(handle)
        except TransportError as exc:
            self._abort(exc, "Fetching result failed")
            raise
        self.progress_log.append(f"Job {status.value}")
        return TerminalOutcome(
            handle=handle,
            status=status,
            result=result,
            elapsed_ms=self._elapsed_ms(started),
            progress_log=self.progress_log.snapshot(),
        )

    def _timed_out(
        self, handle: str, started: float, last_status: Optional[JobStatus]
    ) -> TimedOutOutcome:
        self.state = OrchestratorState.timed_out
        elapsed_ms = self._elapsed_ms(started)
        self.progress_log.append(
            f"Timed out after {elapsed_ms}ms, job left running (handle={handle})"
        )
        self.logger.warning(f"Job {handle} did not finish within {elapsed_ms}ms")
        return TimedOutOutcome(
            handle=handle,
            elapsed_ms=elapsed_ms,
            last_status=last_status,
            progress_log=self.progress_log.snapshot(),
        )

    def _abort(self, exc: Exception, label: str) -> None:
        self.state = OrchestratorState.aborted
        self.progress_log.append(f"{label}: {exc}")
        self.logger.error(f"{label}: {exc}")
        if isinstance(exc, JobPollingError):
            exc.progress_log = self.progress_log.snapshot()

    def _elapsed_ms(self, started: float) -> int:
        return round((self._clock() - started) * 1000)


async def run_job(
    submit: SubmitFn,
    poll: PollFn,
    fetch_result: FetchResultFn,
    job_input: Any,
    config: Optional[PollingConfig] = None,
    **kwargs: Any,
) -> PollOutcome:
    """Submits job_input and polls it to a terminal status or timeout."""
    orchestrator = PollingOrchestrator(submit, poll, fetch_result, config, **kwargs)
    return await orchestrator.run(job_input)
