# bananajobs/poller.py

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence, Set, Tuple

from .errors import JobError, PollerBusyError, PollingTransportError
from .model import Artifact, Job, JobProgress, JobStatus, RemoteState

logger = logging.getLogger(__name__)

# (upper bound in seconds, hint) pairs, checked in order while a job is running.
PhaseTable = Sequence[Tuple[float, str]]

DEFAULT_PHASES: PhaseTable = (
    (60, "Starting GPU worker"),
    (180, "Warming up model"),
    (float("inf"), "Generating"),
)

QUEUED_HINT = "Waiting in queue"


@dataclass(frozen=True)
class PollConfig:
    interval: float = 5.0
    timeout: float = 300.0
    grace_retries: int = 5
    grace_delay: float = 2.0
    max_transport_failures: int = 5
    initial_delay: Optional[float] = None  # defaults to interval


@dataclass
class StatusReport:
    state: RemoteState
    output: Any = None
    message: Optional[str] = None


StatusCheck = Callable[[str], Awaitable[StatusReport]]
ResultExtractor = Callable[[Any], Optional[Artifact]]
ProgressCallback = Callable[[JobProgress], Any]

# Ids with a running poll loop; checks for one id must never overlap.
_active_polls: Set[str] = set()


def phase_hint(status: JobStatus, elapsed: float, phases: PhaseTable = DEFAULT_PHASES) -> str:
    if status == JobStatus.QUEUED:
        return QUEUED_HINT
    if status.is_terminal:
        return status.value
    for bound, hint in phases:
        if elapsed < bound:
            return hint
    return phases[-1][1] if phases else "Processing"


class _Poller:
    def __init__(
        self,
        job: Job,
        check: StatusCheck,
        extract: ResultExtractor,
        config: PollConfig,
        on_progress: Optional[ProgressCallback],
        cancel_event: Optional[asyncio.Event],
        phases: PhaseTable,
        sleep: Callable[[float], Awaitable[Any]],
        clock: Callable[[], float],
    ):
        self.job = job
        self.check = check
        self.extract = extract
        self.config = config
        self.on_progress = on_progress
        self.cancel_event = cancel_event
        self.phases = phases
        self.sleep = sleep
        self.clock = clock
        self.started = clock()
        self.transport_failures = 0

    @property
    def elapsed(self) -> float:
        return self.clock() - self.started

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def pause(self, delay: float) -> None:
        if self.cancel_event is None:
            await self.sleep(delay)
            return
        sleeper = asyncio.ensure_future(self.sleep(delay))
        waiter = asyncio.ensure_future(self.cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()

    async def emit(self) -> None:
        if self.on_progress is None:
            return
        progress = JobProgress(
            job_id=self.job.id,
            status=self.job.status,
            attempts=self.job.attempts,
            elapsed_seconds=int(self.elapsed),
            phase_hint=phase_hint(self.job.status, self.elapsed, self.phases),
        )
        try:
            ret = self.on_progress(progress)
            if inspect.isawaitable(ret):
                await ret
        except Exception:
            logger.exception("Progress callback failed for job %s", self.job.id)

    async def check_once(self) -> Optional[StatusReport]:
        """One status check. Returns None on a transport failure that is still within budget."""
        self.job.attempts += 1
        try:
            report = await self.check(self.job.id)
        except PollingTransportError as e:
            self.transport_failures += 1
            logger.warning(
                "Status check %d for job %s failed (%d/%d): %s",
                self.job.attempts, self.job.id, self.transport_failures,
                self.config.max_transport_failures, e,
            )
            if self.transport_failures >= self.config.max_transport_failures:
                self.job.fail(
                    f"status polling failed after {self.transport_failures} consecutive errors: {e}",
                    "PollingTransportError",
                )
            return None
        self.transport_failures = 0
        return report

    def apply(self, report: StatusReport) -> Optional[Artifact]:
        """
        Fold a report into the job. Returns an artifact when the report is
        COMPLETED and the result is already attached; an undecodable result
        fails the job.
        """
        if report.state == RemoteState.FAILED:
            self.job.fail(report.message or "remote job failed", "RemoteFailure")
        elif report.state == RemoteState.RUNNING:
            self.job.mark_running()
        elif report.state == RemoteState.COMPLETED:
            try:
                return self.extract(report.output)
            except JobError as e:
                self.job.fail(str(e), type(e).__name__)
        return None

    async def grace(self) -> None:
        """COMPLETED without a result yet: re-check a few times with growing delays."""
        for n in range(1, self.config.grace_retries + 1):
            await self.pause(self.config.grace_delay * n)
            if self.cancelled:
                self.job.fail("cancelled", "JobCancelled")
                return
            logger.info("Job %s completed without result, grace check %d/%d",
                        self.job.id, n, self.config.grace_retries)
            report = await self.check_once()
            if self.job.is_terminal:
                return
            if report is not None:
                artifact = self.apply(report)
                if artifact is not None:
                    self.job.complete(artifact)
                if self.job.is_terminal:
                    return
            await self.emit()
        self.job.fail("completed without result", "NoResultFoundError")

    async def run(self) -> Job:
        delay = self.config.initial_delay
        if delay is None:
            delay = self.config.interval

        while True:
            # never sleep past the ceiling; the last check lands on it
            delay = min(delay, max(0.0, self.config.timeout - self.elapsed))
            await self.pause(delay)
            delay = self.config.interval
            if self.cancelled:
                self.job.fail("cancelled", "JobCancelled")
                break

            report = await self.check_once()
            if report is not None and not self.job.is_terminal:
                logger.debug("Job %s state=%s", self.job.id, report.state.value)
                artifact = self.apply(report)
                if artifact is not None:
                    self.job.complete(artifact)
                elif report.state == RemoteState.COMPLETED and not self.job.is_terminal:
                    await self.grace()

            if not self.job.is_terminal and self.elapsed >= self.config.timeout:
                self.job.time_out()

            await self.emit()
            if self.job.is_terminal:
                break

        logger.info("Job %s finished: %s after %d checks (%.0fs)",
                    self.job.id, self.job.status.value, self.job.attempts, self.elapsed)
        return self.job


async def poll_job(
    job: Job,
    check: StatusCheck,
    extract: ResultExtractor,
    config: PollConfig,
    on_progress: Optional[ProgressCallback] = None,
    cancel_event: Optional[asyncio.Event] = None,
    phases: PhaseTable = DEFAULT_PHASES,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Job:
    """
    Poll the remote status of `job` until it is terminal.

    `check` performs one status request and raises PollingTransportError on
    network trouble. `extract` turns a COMPLETED output into an Artifact, or
    returns None while the result is not attached yet; a JobError raised by
    it fails the job. The returned Job is always terminal.
    """
    if job.id is None:
        raise ValueError("cannot poll a job without an id")
    if job.id in _active_polls:
        raise PollerBusyError(f"job {job.id} is already being polled")

    _active_polls.add(job.id)
    try:
        poller = _Poller(job, check, extract, config, on_progress,
                         cancel_event, phases, sleep, clock)
        return await poller.run()
    finally:
        _active_polls.discard(job.id)
