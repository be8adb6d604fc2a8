# bananajobs/app.py

import json
import logging
from typing import Dict, List

import redis.asyncio as redis
from fastapi import Depends, FastAPI, HTTPException

from config.settings import settings
from .adapters import JobAdapter, build_adapters
from .model import GenerateRequest, GenerateResponse, JobSnapshot
from .utils import gen_request_id

QUEUE_KEY = "generation_jobs"
JOB_KEY_PREFIX = "job:"

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Nano Banana Job Service")

_adapters = build_adapters()


async def get_redis_client() -> redis.Redis:
    return redis.from_url(settings.REDIS_URL, decode_responses=True)


def get_adapters() -> Dict[str, JobAdapter]:
    return _adapters


@app.get("/adapters")
async def list_adapters(adapters: Dict[str, JobAdapter] = Depends(get_adapters)) -> List[dict]:
    return [
        {
            "name": a.name,
            "kind": a.kind.value,
            "poll_interval": a.poll.interval,
            "timeout": a.poll.timeout,
            "requires_image": a.requires_image,
        }
        for a in adapters.values()
    ]


@app.post("/generate", response_model=GenerateResponse)
async def generate(
    req: GenerateRequest,
    rds: redis.Redis = Depends(get_redis_client),
    adapters: Dict[str, JobAdapter] = Depends(get_adapters),
):
    adapter = adapters.get(req.adapter)
    if adapter is None:
        raise HTTPException(status_code=400, detail=f"Unknown adapter: {req.adapter}")
    try:
        adapter.validate(req)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    # 1) Local handle; the remote id is only known once the worker submits
    request_id = gen_request_id()

    # 2) Initial snapshot, expires on its own
    snapshot = JobSnapshot(request_id=request_id, status="waiting")
    await rds.set(
        f"{JOB_KEY_PREFIX}{request_id}",
        snapshot.model_dump_json(),
        ex=settings.JOB_RESULT_TTL,
    )

    # 3) Hand over to the worker
    await rds.lpush(QUEUE_KEY, json.dumps({
        "request_id": request_id,
        "request": req.model_dump(),
    }))
    logger.info("Queued %s request %s", req.adapter, request_id)

    return GenerateResponse(request_id=request_id, status="waiting")


@app.get("/result/{request_id}", response_model=JobSnapshot)
async def get_result(request_id: str, rds: redis.Redis = Depends(get_redis_client)):
    """
    Latest snapshot of a queued request: waiting / processing / done / error,
    plus the remote job id and progress hint once known.
    """
    data = await rds.get(f"{JOB_KEY_PREFIX}{request_id}")
    if not data:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobSnapshot.model_validate_json(data)
