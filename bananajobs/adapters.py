# bananajobs/adapters.py
"""
Per-service job adapters.

An adapter only describes a remote job API: where to submit, where to poll,
how the bodies look and how long to wait. The poll loop itself lives in
poller.py and is shared by every adapter.
"""

import json
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import jwt

from config.settings import Settings, settings as default_settings

from .decoder import DEFAULT_RESULT_FIELDS, FieldPath
from .model import GenerateRequest, JobKind, RemoteState
from .poller import DEFAULT_PHASES, PhaseTable, PollConfig, StatusReport
from .utils import strip_data_uri


@dataclass(frozen=True)
class JobAdapter:
    name: str
    kind: JobKind
    submit_url: str
    status_url: str  # template with {job_id}
    build_payload: Callable[[GenerateRequest], Dict[str, Any]]
    parse_status: Callable[[Dict[str, Any]], StatusReport]
    parse_submit: Callable[[Dict[str, Any]], Optional[str]]
    api_key: Optional[str] = None
    result_fields: Tuple[FieldPath, ...] = DEFAULT_RESULT_FIELDS
    poll: PollConfig = field(default_factory=PollConfig)
    phases: PhaseTable = DEFAULT_PHASES
    requires_image: bool = False
    auth_token: Optional[Callable[[], str]] = None  # per-request token, overrides api_key

    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        token = self.auth_token() if self.auth_token else self.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def status_endpoint(self, job_id: str) -> str:
        return self.status_url.format(job_id=job_id)

    def validate(self, request: GenerateRequest) -> None:
        if not request.prompt.strip():
            raise ValueError("prompt must not be empty")
        if self.requires_image and not (request.image_base64 or request.image_urls):
            raise ValueError(f"adapter {self.name} needs a reference image")


# ==========================
# RunPod serverless (/run + /status/{id})
# ==========================

_RUNPOD_STATES = {
    "IN_QUEUE": RemoteState.QUEUED,
    "IN_PROGRESS": RemoteState.RUNNING,
    "RUNNING": RemoteState.RUNNING,
    "COMPLETED": RemoteState.COMPLETED,
    "FAILED": RemoteState.FAILED,
    "CANCELLED": RemoteState.FAILED,
    "TIMED_OUT": RemoteState.FAILED,
}


def parse_runpod_submit(body: Dict[str, Any]) -> Optional[str]:
    return body.get("id")


def parse_runpod_status(body: Dict[str, Any]) -> StatusReport:
    raw = str(body.get("status", "")).upper()
    state = _RUNPOD_STATES.get(raw, RemoteState.RUNNING)
    message = None
    if state == RemoteState.FAILED:
        error = body.get("error")
        if isinstance(error, dict):
            error = error.get("message") or json.dumps(error)
        message = str(error) if error else f"RunPod job {raw.lower()}"
    return StatusReport(state=state, output=body.get("output"), message=message)


def wan_video_payload(req: GenerateRequest) -> Dict[str, Any]:
    body = {
        "prompt": req.prompt,
        "image_base64": strip_data_uri(req.image_base64 or ""),
        "seed": 42,
        "cfg": 2.0,
        "width": 480,
        "height": 832,
        "length": 162,  # ~10 s of frames
        "steps": 10,
    }
    body.update(req.params)
    return {"input": body}


WAN_NEGATIVE_PROMPT = (
    "blurry, low quality, distorted, pixelated, grainy, poor lighting, bad anatomy, "
    "deformed limbs, extra fingers, unnatural movements, choppy animation, watermark, "
    "logo, text overlay, static pose, frozen movement"
)


def wan_public_payload(req: GenerateRequest) -> Dict[str, Any]:
    body = {
        "prompt": req.prompt,
        "image": f"data:image/jpeg;base64,{strip_data_uri(req.image_base64 or '')}",
        "negative_prompt": WAN_NEGATIVE_PROMPT,
        "size": "854*480",
        "duration": 5,
        "seed": -1,
        "enable_prompt_expansion": False,
        "enable_safety_checker": True,
    }
    body.update(req.params)
    return {"input": body}


def qwen_edit_payload(req: GenerateRequest) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "prompt": req.prompt,
        "seed": -1,
        "output_format": "png",
    }
    if req.image_base64:
        body["image"] = f"data:image/png;base64,{strip_data_uri(req.image_base64)}"
    elif req.image_urls:
        body["image"] = req.image_urls[0]
    body.update(req.params)
    return {"input": body}


WAN_PHASES: PhaseTable = (
    (60, "Starting GPU worker"),
    (180, "Loading ComfyUI"),
    (300, "Initialising components"),
    (480, "Loading WAN model"),
    (540, "Generating frames"),
    (float("inf"), "Finalising video"),
)

IMAGE_PHASES: PhaseTable = (
    (30, "Starting worker"),
    (float("inf"), "Editing image"),
)


# ==========================
# KIE.ai (createTask / recordInfo, veo/generate / veo/record-info)
# ==========================

_KIE_STATES = {
    "waiting": RemoteState.QUEUED,
    "queuing": RemoteState.QUEUED,
    "generating": RemoteState.RUNNING,
    "success": RemoteState.COMPLETED,
    "fail": RemoteState.FAILED,
}


def _kie_data(body: Dict[str, Any]) -> Dict[str, Any]:
    data = body.get("data")
    return data if isinstance(data, dict) else {}


def _kie_business_error(body: Dict[str, Any]) -> Optional[StatusReport]:
    # KIE.ai answers HTTP 200 and reports business errors (e.g. unknown taskId) in "code"
    code = body.get("code")
    if code in (None, 200):
        return None
    return StatusReport(state=RemoteState.FAILED, message=body.get("msg") or f"KIE.ai error code {code}")


def parse_kie_submit(body: Dict[str, Any]) -> Optional[str]:
    if body.get("code") not in (None, 200):
        return None
    return _kie_data(body).get("taskId")


def parse_kie_task_status(body: Dict[str, Any]) -> StatusReport:
    error = _kie_business_error(body)
    if error is not None:
        return error
    data = _kie_data(body)
    state = _KIE_STATES.get(str(data.get("state", "")).lower(), RemoteState.RUNNING)
    output: Any = None
    result_json = data.get("resultJson")
    if result_json:
        try:
            output = json.loads(result_json) if isinstance(result_json, str) else result_json
        except ValueError:
            output = None
    message = None
    if state == RemoteState.FAILED:
        message = data.get("failMsg") or f"task failed (code {data.get('failCode')})"
    if output is not None and not isinstance(output, dict):
        output = None
    return StatusReport(state=state, output=output, message=message)


def parse_kie_veo_status(body: Dict[str, Any]) -> StatusReport:
    error = _kie_business_error(body)
    if error is not None:
        return error
    data = _kie_data(body)
    flag = data.get("successFlag")
    if flag == 1:
        state = RemoteState.COMPLETED
    elif flag in (2, 3):
        state = RemoteState.FAILED
    else:
        state = RemoteState.RUNNING
    message = None
    if state == RemoteState.FAILED:
        message = data.get("errorMessage") or body.get("msg") or "VEO generation failed"
    return StatusReport(state=state, output=data.get("response"), message=message)


def nano_banana_payload(req: GenerateRequest) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "model": "google/nano-banana-edit",
        "input": {
            "output_format": "jpeg",
            "image_size": req.aspect_ratio,
            "prompt": req.prompt,
        },
    }
    if req.image_urls:
        body["input"]["image_urls"] = list(req.image_urls)
    body["input"].update(req.params)
    return body


def veo_payload(req: GenerateRequest) -> Dict[str, Any]:
    body = {
        "prompt": req.prompt,
        "model": "veo3_fast",
        "aspectRatio": req.aspect_ratio,
        "enableTranslation": False,
        "generationType": "FIRST_AND_LAST_FRAMES_2_VIDEO",
        "imageUrls": list(req.image_urls),
    }
    body.update(req.params)
    return body


# ==========================
# Kling AI avatar (image2video, JWT auth)
# ==========================

_KLING_STATES = {
    "submitted": RemoteState.QUEUED,
    "processing": RemoteState.RUNNING,
    "succeed": RemoteState.COMPLETED,
    "failed": RemoteState.FAILED,
}


def kling_jwt(access_key: str, secret_key: str, ttl: int = 1800) -> str:
    """HS256 token Kling expects on every request: issuer is the access key."""
    now = int(time.time())
    payload = {"iss": access_key, "exp": now + ttl, "nbf": now - 5}
    return jwt.encode(payload, secret_key, algorithm="HS256", headers={"typ": "JWT"})


def _kling_task(body: Dict[str, Any]) -> Dict[str, Any]:
    # Task fields sit at the top level or inside a {"code", "data"} envelope
    data = body.get("data")
    return data if isinstance(data, dict) else body


def parse_kling_submit(body: Dict[str, Any]) -> Optional[str]:
    task = _kling_task(body)
    return task.get("id") or task.get("task_id")


def parse_kling_status(body: Dict[str, Any]) -> StatusReport:
    task = _kling_task(body)
    raw = str(task.get("status") or task.get("task_status") or "").lower()
    state = _KLING_STATES.get(raw, RemoteState.RUNNING)
    message = None
    if state == RemoteState.FAILED:
        message = task.get("message") or task.get("task_status_msg") or "Kling generation failed"
    return StatusReport(state=state, output=task, message=message)


def kling_avatar_payload(req: GenerateRequest) -> Dict[str, Any]:
    params = dict(req.params)
    sound_file = params.pop("sound_file", None)
    body: Dict[str, Any] = {
        "image": strip_data_uri(req.image_base64 or ""),
        "mode": "pro" if sound_file else "std",
    }
    if sound_file:
        body["sound_file"] = strip_data_uri(sound_file)
    else:
        body["prompt"] = req.prompt
    body.update(params)
    return body


def build_adapters(conf: Settings = default_settings) -> Dict[str, JobAdapter]:
    """All built-in adapters keyed by name, with timing taken from settings."""
    runpod = conf.RUNPOD_BASE_URL.rstrip("/")
    kie = conf.KIE_AI_API_URL.rstrip("/")
    kling = conf.KLING_API_URL.rstrip("/")

    kling_token = None
    if conf.KLING_ACCESS_KEY and conf.KLING_SECRET_KEY:
        kling_token = partial(kling_jwt, conf.KLING_ACCESS_KEY, conf.KLING_SECRET_KEY)

    def timing(
        timeout: float,
        initial_delay: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> PollConfig:
        return PollConfig(
            interval=interval or conf.POLL_INTERVAL,
            timeout=timeout,
            grace_retries=conf.GRACE_RETRIES,
            initial_delay=initial_delay,
        )

    adapters: Sequence[JobAdapter] = (
        JobAdapter(
            name="wan-video",
            kind=JobKind.VIDEO,
            submit_url=f"{runpod}/{conf.RUNPOD_WAN_ENDPOINT_ID}/run",
            status_url=f"{runpod}/{conf.RUNPOD_WAN_ENDPOINT_ID}/status/{{job_id}}",
            api_key=conf.RUNPOD_API_KEY,
            build_payload=wan_video_payload,
            parse_submit=parse_runpod_submit,
            parse_status=parse_runpod_status,
            result_fields=(("video",), ("result",), ("video_url",), ("output",), ("videos", 0)),
            poll=timing(conf.VIDEO_JOB_TIMEOUT),
            phases=WAN_PHASES,
            requires_image=True,
        ),
        JobAdapter(
            name="wan-public",
            kind=JobKind.VIDEO,
            submit_url=f"{runpod}/{conf.RUNPOD_WAN_PUBLIC_ENDPOINT}/run",
            status_url=f"{runpod}/{conf.RUNPOD_WAN_PUBLIC_ENDPOINT}/status/{{job_id}}",
            api_key=conf.RUNPOD_API_KEY,
            build_payload=wan_public_payload,
            parse_submit=parse_runpod_submit,
            parse_status=parse_runpod_status,
            result_fields=(("video_url",), ("result",), ("video",), ("output",), ("videos", 0)),
            poll=timing(conf.VIDEO_JOB_TIMEOUT),
            phases=WAN_PHASES,
            requires_image=True,
        ),
        JobAdapter(
            name="qwen-edit",
            kind=JobKind.IMAGE,
            submit_url=f"{runpod}/{conf.RUNPOD_QWEN_ENDPOINT}/run",
            status_url=f"{runpod}/{conf.RUNPOD_QWEN_ENDPOINT}/status/{{job_id}}",
            api_key=conf.RUNPOD_API_KEY,
            build_payload=qwen_edit_payload,
            parse_submit=parse_runpod_submit,
            parse_status=parse_runpod_status,
            result_fields=(("result",), ("image",), ("image_url",), ("output",), ("images", 0), ("files", 0)),
            poll=timing(conf.IMAGE_JOB_TIMEOUT),
            phases=IMAGE_PHASES,
            requires_image=True,
        ),
        JobAdapter(
            name="nano-banana",
            kind=JobKind.IMAGE,
            submit_url=f"{kie}/api/v1/jobs/createTask",
            status_url=f"{kie}/api/v1/jobs/recordInfo?taskId={{job_id}}",
            api_key=conf.KIE_AI_API_KEY,
            build_payload=nano_banana_payload,
            parse_submit=parse_kie_submit,
            parse_status=parse_kie_task_status,
            result_fields=(("resultUrls", 0),),
            poll=timing(conf.IMAGE_JOB_TIMEOUT, initial_delay=25.0),
            phases=IMAGE_PHASES,
        ),
        JobAdapter(
            name="veo-video",
            kind=JobKind.VIDEO,
            submit_url=f"{kie}/api/v1/veo/generate",
            status_url=f"{kie}/api/v1/veo/record-info?taskId={{job_id}}",
            api_key=conf.KIE_AI_API_KEY,
            build_payload=veo_payload,
            parse_submit=parse_kie_submit,
            parse_status=parse_kie_veo_status,
            result_fields=(("resultUrls", 0),),
            poll=timing(conf.VIDEO_JOB_TIMEOUT, initial_delay=60.0),
            requires_image=True,
        ),
        JobAdapter(
            name="kling-avatar",
            kind=JobKind.VIDEO,
            submit_url=f"{kling}/v1/videos/image2video",
            status_url=f"{kling}/v1/videos/image2video/{{job_id}}",
            auth_token=kling_token,
            build_payload=kling_avatar_payload,
            parse_submit=parse_kling_submit,
            parse_status=parse_kling_status,
            result_fields=(("works", 0, "resource"), ("task_result", "videos", 0)),
            poll=timing(conf.KLING_JOB_TIMEOUT, interval=conf.KLING_POLL_INTERVAL),
            requires_image=True,
        ),
    )
    return {a.name: a for a in adapters}
