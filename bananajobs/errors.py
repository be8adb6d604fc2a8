# bananajobs/errors.py
from typing import Optional


class JobError(Exception):
    """Base class for every failure a generation job can end with."""


class SubmissionError(JobError):
    """
    The initial POST failed or the response carried no job id.
    Keeps the HTTP status and raw body for diagnostics.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        msg = super().__str__()
        if self.status_code is not None:
            msg = f"{msg} (HTTP {self.status_code})"
        return msg


class PollingTransportError(JobError):
    """A single status check failed at the network/HTTP layer."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NoResultFoundError(JobError):
    """Terminal COMPLETED status without any recognisable result field."""


class ResultDecodeError(JobError):
    """The result field was present but could not be decoded."""


class RemoteFailure(JobError):
    """The remote service explicitly reported the job as failed."""


class JobTimedOut(JobError):
    pass


class JobCancelled(JobError):
    pass


class PollerBusyError(RuntimeError):
    """Another poll loop is already running for this job id."""


class InvalidTransition(ValueError):
    pass


_JOB_ERRORS = {
    cls.__name__: cls
    for cls in (
        JobError, SubmissionError, PollingTransportError, NoResultFoundError,
        ResultDecodeError, RemoteFailure, JobTimedOut, JobCancelled,
    )
}


def error_class(name: Optional[str]) -> type:
    return _JOB_ERRORS.get(name or "", JobError)
