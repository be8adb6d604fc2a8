# bananajobs/orchestrator.py

import asyncio
import logging
import time
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .adapters import JobAdapter, build_adapters
from .collaborators import ArtifactStore, AuthProvider, UsageLedger
from .decoder import decode_artifact, locate_artifact
from .errors import SubmissionError
from .job_client import JobClient
from .model import Artifact, CurrentUser, GenerateRequest, Job, JobStatus, UsageRecord
from .poller import ProgressCallback, poll_job

logger = logging.getLogger(__name__)


class JobOrchestrator:
    """
    Submit -> poll -> decode -> persist, for any configured adapter.

    run_job() always resolves to a terminal Job: submission errors, remote
    failures, timeouts and cancellation all come back as Failed/TimedOut
    jobs with an error message instead of exceptions.
    """

    def __init__(
        self,
        adapters: Optional[Dict[str, JobAdapter]] = None,
        client: Optional[JobClient] = None,
        store: Optional[ArtifactStore] = None,
        ledger: Optional[UsageLedger] = None,
        auth: Optional[AuthProvider] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.adapters = adapters if adapters is not None else build_adapters()
        self.client = client or JobClient()
        self.store = store
        self.ledger = ledger
        self.auth = auth
        self.sleep = sleep
        self.clock = clock

    def adapter(self, name: str) -> JobAdapter:
        try:
            return self.adapters[name]
        except KeyError:
            raise KeyError(f"unknown adapter: {name}") from None

    async def submit(self, adapter_name: str, request: GenerateRequest) -> Job:
        adapter = self.adapter(adapter_name)
        try:
            adapter.validate(request)
            return await self.client.submit(adapter, request)
        except (SubmissionError, ValueError) as e:
            logger.error("Submitting %s job failed: %s", adapter.name, e)
            job = Job(adapter=adapter.name, kind=adapter.kind)
            job.fail(str(e), "SubmissionError" if isinstance(e, SubmissionError) else "JobError")
            return job

    async def poll(
        self,
        job: Job,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Job:
        adapter = self.adapter(job.adapter)

        def extract(output: Any) -> Optional[Artifact]:
            raw = locate_artifact(output, adapter.result_fields)
            if raw is None:
                return None
            return decode_artifact(raw, adapter.kind)

        return await poll_job(
            job,
            partial(self.client.check_status, adapter),
            extract,
            adapter.poll,
            on_progress=on_progress,
            cancel_event=cancel_event,
            phases=adapter.phases,
            sleep=self.sleep,
            clock=self.clock,
        )

    async def run_job(
        self,
        adapter_name: str,
        request: GenerateRequest,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        user: Optional[CurrentUser] = None,
    ) -> Job:
        started = self.clock()
        job = await self.submit(adapter_name, request)
        if not job.is_terminal:
            job = await self.poll(job, on_progress, cancel_event)
        await self._finish(job, request, user, self.clock() - started)
        return job

    async def resume_job(
        self,
        adapter_name: str,
        job_id: str,
        request: Optional[GenerateRequest] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        user: Optional[CurrentUser] = None,
    ) -> Job:
        """Re-attach to a job that was submitted earlier, e.g. after a restart."""
        adapter = self.adapter(adapter_name)
        started = self.clock()
        job = Job(id=job_id, adapter=adapter.name, kind=adapter.kind)
        job = await self.poll(job, on_progress, cancel_event)
        await self._finish(job, request, user, self.clock() - started)
        return job

    async def run_many(
        self,
        jobs: Sequence[Tuple[str, GenerateRequest]],
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        user: Optional[CurrentUser] = None,
    ) -> List[Job]:
        """
        Start every job first, then poll them all concurrently.
        Results come back in the order of `jobs`.
        """
        started = self.clock()
        submitted = await asyncio.gather(*(self.submit(name, req) for name, req in jobs))
        logger.info("Started %d jobs, polling %d", len(jobs), sum(not j.is_terminal for j in submitted))

        async def follow(job: Job, request: GenerateRequest) -> Job:
            if not job.is_terminal:
                job = await self.poll(job, on_progress, cancel_event)
            await self._finish(job, request, user, self.clock() - started)
            return job

        return list(await asyncio.gather(*(
            follow(job, req) for job, (_, req) in zip(submitted, jobs)
        )))

    async def _current_user(self, user: Optional[CurrentUser]) -> Optional[CurrentUser]:
        if user is not None or self.auth is None:
            return user
        try:
            return await self.auth.get_current_user()
        except Exception:
            logger.exception("Could not resolve current user")
            return None

    async def _finish(
        self,
        job: Job,
        request: Optional[GenerateRequest],
        user: Optional[CurrentUser],
        duration: float,
    ) -> None:
        user = await self._current_user(user)
        username = (user.username or user.id) if user else None

        if job.status == JobStatus.COMPLETED:
            if self.store is not None:
                metadata = {
                    "user_id": user.id if user else None,
                    "username": username,
                    "adapter": job.adapter,
                    "kind": job.kind.value,
                    "prompt": request.prompt if request else None,
                    "remote_id": job.id,
                }
                try:
                    job.artifact_url = await self.store.save_artifact(job.result, metadata)  # type: ignore[arg-type]
                except Exception:
                    logger.exception("Saving artifact of job %s failed", job.id)
            if self.ledger is not None and username:
                usage = UsageRecord(kind=job.kind, duration_seconds=duration)
                try:
                    await self.ledger.record_usage(username, usage)
                except Exception:
                    logger.exception("Recording usage of job %s failed", job.id)
        elif self.ledger is not None and username:
            try:
                await self.ledger.record_failure(username)
            except Exception:
                logger.exception("Recording failure of job %s failed", job.id)

        if job.status != JobStatus.COMPLETED:
            logger.warning("%s job %s ended %s: %s", job.adapter, job.id, job.status.value, job.error)
