import pytest
from pydantic import ValidationError

from bananajobs.errors import InvalidTransition, JobError, JobTimedOut, RemoteFailure
from bananajobs.model import Artifact, Job, JobKind, JobStatus

URL = Artifact(kind="url", value="https://a.test/x.png")


def make_job(**kwargs) -> Job:
    return Job(id="j1", adapter="test", kind=JobKind.IMAGE, **kwargs)


class TestJobTransitions:
    def test_happy_path(self):
        job = make_job()
        assert job.status == JobStatus.QUEUED
        job.mark_running()
        job.complete(URL)
        assert job.status == JobStatus.COMPLETED
        assert job.result == URL
        assert job.error is None
        assert job.is_terminal

    def test_mark_running_never_goes_back(self):
        job = make_job()
        job.mark_running()
        job.mark_running()
        assert job.status == JobStatus.RUNNING

        job.fail("boom")
        job.mark_running()
        assert job.status == JobStatus.FAILED

    def test_queued_may_complete_directly(self):
        job = make_job()
        job.complete(URL)
        assert job.status == JobStatus.COMPLETED

    @pytest.mark.parametrize("finish", ["complete", "fail", "time_out"])
    def test_terminal_states_are_final(self, finish):
        job = make_job()
        if finish == "complete":
            job.complete(URL)
        elif finish == "fail":
            job.fail("x")
        else:
            job.time_out()

        with pytest.raises(InvalidTransition):
            job.complete(URL)
        with pytest.raises(InvalidTransition):
            job.fail("again")
        with pytest.raises(InvalidTransition):
            job.time_out()

    def test_failure_always_carries_a_message(self):
        job = make_job()
        job.fail("")
        assert job.error == "unknown error"

    def test_timeout_message(self):
        job = make_job()
        job.time_out()
        assert job.status == JobStatus.TIMED_OUT
        assert job.error == "exceeded maximum wait"
        assert job.result is None


class TestJobInvariants:
    def test_completed_needs_result(self):
        with pytest.raises(ValidationError):
            make_job(status=JobStatus.COMPLETED)

    def test_result_only_when_completed(self):
        with pytest.raises(ValidationError):
            make_job(status=JobStatus.RUNNING, result=URL)

    def test_failed_needs_error(self):
        with pytest.raises(ValidationError):
            make_job(status=JobStatus.FAILED)

    def test_error_only_when_failed(self):
        with pytest.raises(ValidationError):
            make_job(error="nope")

    def test_valid_terminal_snapshots(self):
        make_job(status=JobStatus.COMPLETED, result=URL)
        make_job(status=JobStatus.TIMED_OUT, error="exceeded maximum wait")


def test_blob_data_uri():
    blob = Artifact(kind="blob", value=b"\x01\x02", mime_type="image/png")
    assert blob.to_data_uri() == "data:image/png;base64,AQI="
    assert blob.size == 2
    assert URL.to_data_uri() == "https://a.test/x.png"


def test_raise_for_error_maps_failure_kind():
    done = make_job()
    done.complete(URL)
    assert done.raise_for_error() is done

    timed_out = make_job()
    timed_out.time_out()
    with pytest.raises(JobTimedOut):
        timed_out.raise_for_error()

    failed = make_job()
    failed.fail("CUDA out of memory", "RemoteFailure")
    with pytest.raises(RemoteFailure, match="CUDA out of memory"):
        failed.raise_for_error()

    odd = make_job()
    odd.fail("boom", "NotAnError")
    with pytest.raises(JobError):
        odd.raise_for_error()
