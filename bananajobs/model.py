# bananajobs/model.py
import base64
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from .errors import InvalidTransition, error_class


class JobKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class JobStatus(str, Enum):
    QUEUED = "Queued"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMED_OUT})

# Allowed forward edges; anything else is a backward (or sideways) move.
_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMED_OUT},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMED_OUT},
}


class RemoteState(str, Enum):
    """Remote job state after an adapter has normalised the provider's wording."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Artifact(BaseModel):
    kind: Literal["url", "blob"]
    value: Union[str, bytes]
    mime_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.value)

    def to_data_uri(self) -> str:
        if self.kind == "url":
            return self.value  # type: ignore[return-value]
        encoded = base64.b64encode(self.value).decode("ascii")  # type: ignore[arg-type]
        return f"data:{self.mime_type or 'application/octet-stream'};base64,{encoded}"


class Job(BaseModel):
    """
    One outstanding or completed remote generation request.

    Only the poller and the orchestrator mutate a Job, and only through
    the transition methods below so the status/result/error invariants hold.
    """

    id: Optional[str] = None  # None only when submission itself failed
    adapter: str
    kind: JobKind
    status: JobStatus = JobStatus.QUEUED
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int = 0
    result: Optional[Artifact] = None
    error: Optional[str] = None
    error_type: Optional[str] = None  # name of the JobError subclass behind `error`
    artifact_url: Optional[str] = None

    @model_validator(mode="after")
    def _check_invariants(self) -> "Job":
        has_result = self.result is not None
        if has_result != (self.status == JobStatus.COMPLETED):
            raise ValueError("result must be set if and only if status is Completed")
        has_error = self.error is not None
        if has_error != (self.status in (JobStatus.FAILED, JobStatus.TIMED_OUT)):
            raise ValueError("error must be set if and only if status is Failed or TimedOut")
        return self

    def _move(self, target: JobStatus) -> None:
        if target not in _TRANSITIONS.get(self.status, set()):
            raise InvalidTransition(f"Job {self.id}: {self.status.value} -> {target.value}")
        self.status = target

    def mark_running(self) -> None:
        # Remote services sometimes flap back to IN_QUEUE; never go backwards.
        if self.status == JobStatus.QUEUED:
            self._move(JobStatus.RUNNING)

    def complete(self, result: Artifact) -> None:
        self._move(JobStatus.COMPLETED)
        self.result = result

    def fail(self, error: str, error_type: str = "JobError") -> None:
        self._move(JobStatus.FAILED)
        self.error = error or "unknown error"
        self.error_type = error_type

    def time_out(self, error: str = "exceeded maximum wait") -> None:
        self._move(JobStatus.TIMED_OUT)
        self.error = error
        self.error_type = "JobTimedOut"

    def raise_for_error(self) -> "Job":
        """Raise the matching JobError for a Failed/TimedOut job, otherwise return the job."""
        if self.status in (JobStatus.FAILED, JobStatus.TIMED_OUT):
            raise error_class(self.error_type)(self.error)
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class JobProgress(BaseModel):
    job_id: Optional[str]
    status: JobStatus
    attempts: int
    elapsed_seconds: int
    phase_hint: str


class GenerateRequest(BaseModel):
    """Input for one generation job, shared by the HTTP API and the orchestrator."""

    user_id: Optional[str] = None
    username: Optional[str] = None
    adapter: str = "nano-banana"
    prompt: str
    image_base64: Optional[str] = None
    image_urls: List[str] = Field(default_factory=list)
    aspect_ratio: str = "9:16"
    params: Dict[str, Any] = Field(default_factory=dict)
    optimize_prompt: bool = False


class GenerateResponse(BaseModel):
    request_id: str
    status: Literal["waiting", "processing", "done", "error"]


class JobSnapshot(BaseModel):
    request_id: str
    status: Literal["waiting", "processing", "done", "error"]
    job_status: Optional[JobStatus] = None
    remote_id: Optional[str] = None
    phase_hint: Optional[str] = None
    elapsed_seconds: Optional[int] = None
    result_url: Optional[str] = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None


class CurrentUser(BaseModel):
    id: str
    username: Optional[str] = None


class UsageRecord(BaseModel):
    kind: JobKind
    duration_seconds: float
    tokens: Optional[int] = None
    cost: Optional[float] = None
