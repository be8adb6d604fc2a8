# bananajobs/worker.py

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis

from config.settings import settings

from .collaborators import SupabaseArtifactStore, SupabaseUsageLedger, create_supabase
from .model import CurrentUser, GenerateRequest, Job, JobProgress, JobSnapshot, JobStatus
from .orchestrator import JobOrchestrator
from .utils import PromptOptimizer

QUEUE_KEY = "generation_jobs"  # pending requests
JOB_KEY_PREFIX = "job:"        # job:{request_id}

logger = logging.getLogger(__name__)


async def get_redis_client() -> redis.Redis:
    return redis.from_url(settings.REDIS_URL, decode_responses=True)


async def save_snapshot(rds: redis.Redis, snapshot: JobSnapshot) -> None:
    await rds.set(
        f"{JOB_KEY_PREFIX}{snapshot.request_id}",
        snapshot.model_dump_json(),
        ex=settings.JOB_RESULT_TTL,
    )


def final_snapshot(request_id: str, job: Job) -> JobSnapshot:
    if job.status != JobStatus.COMPLETED:
        return JobSnapshot(
            request_id=request_id,
            status="error",
            job_status=job.status,
            remote_id=job.id,
            error_message=job.error,
            error_type=job.error_type,
        )

    result_url = job.artifact_url
    if result_url is None and job.result is not None:
        # Not persisted anywhere: hand out the provider URL or an inline data URI
        result_url = job.result.to_data_uri()
    return JobSnapshot(
        request_id=request_id,
        status="done",
        job_status=job.status,
        remote_id=job.id,
        result_url=result_url,
    )


async def process_job(
    rds: redis.Redis,
    orchestrator: JobOrchestrator,
    job_data: Dict[str, Any],
    optimizer: Optional[PromptOptimizer] = None,
) -> None:
    request_id = job_data.get("request_id") if isinstance(job_data, dict) else None
    if not request_id:
        logger.error("Dropping queue item without request_id: %r", job_data)
        return
    try:
        req = GenerateRequest(**job_data["request"])
    except (KeyError, TypeError, ValueError) as e:
        logger.error("Request %s is malformed: %s", request_id, e)
        await save_snapshot(rds, JobSnapshot(
            request_id=str(request_id),
            status="error",
            error_message=f"malformed request: {e}",
        ))
        return

    logger.info("Processing request %s, adapter=%s, prompt=%s...", request_id, req.adapter, req.prompt[:50])

    await save_snapshot(rds, JobSnapshot(request_id=request_id, status="processing"))

    try:
        if req.optimize_prompt and optimizer is not None:
            prompt = await optimizer.optimize(req.prompt)
            logger.info("Optimized prompt for %s: %s", request_id, prompt[:80])
            req = req.model_copy(update={"prompt": prompt})

        user = CurrentUser(id=req.user_id, username=req.username) if req.user_id else None

        async def on_progress(p: JobProgress) -> None:
            await save_snapshot(rds, JobSnapshot(
                request_id=request_id,
                status="processing",
                job_status=p.status,
                remote_id=p.job_id,
                phase_hint=p.phase_hint,
                elapsed_seconds=p.elapsed_seconds,
            ))

        job = await orchestrator.run_job(req.adapter, req, on_progress=on_progress, user=user)
        await save_snapshot(rds, final_snapshot(request_id, job))
        logger.info("Request %s finished: %s", request_id, job.status.value)

    except Exception as e:
        logger.exception("ERROR processing request %s", request_id)
        await save_snapshot(rds, JobSnapshot(
            request_id=request_id,
            status="error",
            error_message=str(e),
        ))


async def worker_loop(worker_id: int, orchestrator: JobOrchestrator, optimizer: PromptOptimizer) -> None:
    rds = await get_redis_client()
    logger.info("Worker %d started", worker_id)

    while True:
        # BRPOP blocks until a request arrives
        _, job_json = await rds.brpop(QUEUE_KEY)
        try:
            job_data = json.loads(job_json)
        except ValueError:
            logger.error("Worker %d: invalid job JSON: %s", worker_id, job_json[:200])
            continue

        await process_job(rds, orchestrator, job_data, optimizer)


async def build_orchestrator() -> JobOrchestrator:
    store = ledger = None
    if settings.SUPABASE_URL and settings.SUPABASE_SERVICE_KEY:
        supabase = await create_supabase(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_KEY)
        store = SupabaseArtifactStore(supabase, bucket=settings.SUPABASE_BUCKET)
        ledger = SupabaseUsageLedger(supabase)
    else:
        logger.warning("SUPABASE_URL not set: artifacts and usage will not be persisted")
    return JobOrchestrator(store=store, ledger=ledger)


async def main(num_workers: int = 1) -> None:
    orchestrator = await build_orchestrator()
    optimizer = PromptOptimizer(
        api_url=settings.GROK_API_URL,
        model=settings.GROK_MODEL,
        api_key=settings.GROK_API_KEY,
    )
    tasks = [asyncio.create_task(worker_loop(i, orchestrator, optimizer)) for i in range(num_workers)]
    await asyncio.gather(*tasks)


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL)
    # Each worker follows one job at a time; polling is cheap so run several
    asyncio.run(main(num_workers=4))
