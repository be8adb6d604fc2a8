import json

import jwt
import pytest

from bananajobs.adapters import (
    build_adapters,
    kling_avatar_payload,
    kling_jwt,
    nano_banana_payload,
    parse_kie_submit,
    parse_kie_task_status,
    parse_kie_veo_status,
    parse_kling_status,
    parse_kling_submit,
    parse_runpod_status,
    veo_payload,
    wan_public_payload,
    wan_video_payload,
)
from bananajobs.decoder import locate_artifact
from bananajobs.model import GenerateRequest, JobKind, RemoteState


class TestRunPod:
    @pytest.mark.parametrize("raw, state", [
        ("IN_QUEUE", RemoteState.QUEUED),
        ("IN_PROGRESS", RemoteState.RUNNING),
        ("RUNNING", RemoteState.RUNNING),
        ("COMPLETED", RemoteState.COMPLETED),
        ("FAILED", RemoteState.FAILED),
        ("CANCELLED", RemoteState.FAILED),
        ("SOMETHING_NEW", RemoteState.RUNNING),
    ])
    def test_status_mapping(self, raw, state):
        assert parse_runpod_status({"id": "x", "status": raw}).state == state

    def test_failure_message(self):
        report = parse_runpod_status({"status": "FAILED", "error": "CUDA out of memory"})
        assert report.message == "CUDA out of memory"

        report = parse_runpod_status({"status": "FAILED", "error": {"message": "bad input"}})
        assert report.message == "bad input"

        report = parse_runpod_status({"status": "TIMED_OUT"})
        assert report.message == "RunPod job timed_out"

    def test_output_is_passed_through(self):
        report = parse_runpod_status({"status": "COMPLETED", "output": {"video": "AAAA"}})
        assert report.output == {"video": "AAAA"}

    def test_wan_video_payload(self):
        req = GenerateRequest(
            adapter="wan-video",
            prompt="she turns around",
            image_base64="data:image/png;base64,QUJD",
            params={"steps": 20},
        )
        body = wan_video_payload(req)
        assert body["input"]["image_base64"] == "QUJD"
        assert body["input"]["prompt"] == "she turns around"
        assert body["input"]["length"] == 162
        assert body["input"]["steps"] == 20

    def test_wan_public_payload_uses_data_uri(self):
        req = GenerateRequest(adapter="wan-public", prompt="waves", image_base64="QUJD")
        body = wan_public_payload(req)["input"]
        assert body["image"] == "data:image/jpeg;base64,QUJD"
        assert body["size"] == "854*480"
        assert body["duration"] == 5


class TestKie:
    def test_submit_id(self):
        assert parse_kie_submit({"code": 200, "data": {"taskId": "t-1"}}) == "t-1"
        assert parse_kie_submit({"code": 401, "msg": "unauthorized", "data": None}) is None
        assert parse_kie_submit({"code": 200, "data": None}) is None

    def test_task_status_success(self):
        body = {"code": 200, "data": {
            "taskId": "t-1",
            "state": "success",
            "resultJson": json.dumps({"resultUrls": ["https://kie.test/out.jpg"]}),
        }}
        report = parse_kie_task_status(body)
        assert report.state == RemoteState.COMPLETED
        assert locate_artifact(report.output, (("resultUrls", 0),)) == "https://kie.test/out.jpg"

    @pytest.mark.parametrize("raw, state", [
        ("waiting", RemoteState.QUEUED),
        ("queuing", RemoteState.QUEUED),
        ("generating", RemoteState.RUNNING),
        ("fail", RemoteState.FAILED),
    ])
    def test_task_states(self, raw, state):
        assert parse_kie_task_status({"data": {"state": raw}}).state == state

    def test_task_failure_message(self):
        report = parse_kie_task_status({"data": {"state": "fail", "failMsg": "nsfw content"}})
        assert report.message == "nsfw content"

    def test_broken_result_json_means_no_output(self):
        report = parse_kie_task_status({"data": {"state": "success", "resultJson": "{oops"}})
        assert report.state == RemoteState.COMPLETED
        assert report.output is None

    @pytest.mark.parametrize("flag, state", [
        (0, RemoteState.RUNNING),
        (None, RemoteState.RUNNING),
        (1, RemoteState.COMPLETED),
        (2, RemoteState.FAILED),
        (3, RemoteState.FAILED),
    ])
    def test_veo_flags(self, flag, state):
        assert parse_kie_veo_status({"data": {"successFlag": flag}}).state == state

    def test_veo_result(self):
        body = {"data": {"successFlag": 1, "response": {"resultUrls": ["https://kie.test/v.mp4"]}}}
        report = parse_kie_veo_status(body)
        assert locate_artifact(report.output, (("resultUrls", 0),)) == "https://kie.test/v.mp4"

    def test_payloads(self):
        req = GenerateRequest(prompt="a cat", image_urls=["https://x.test/a.jpg"], aspect_ratio="1:1")
        body = nano_banana_payload(req)
        assert body["model"] == "google/nano-banana-edit"
        assert body["input"]["image_size"] == "1:1"
        assert body["input"]["image_urls"] == ["https://x.test/a.jpg"]

        body = veo_payload(req)
        assert body["imageUrls"] == ["https://x.test/a.jpg"]
        assert body["generationType"] == "FIRST_AND_LAST_FRAMES_2_VIDEO"

    def test_nano_banana_without_images(self):
        body = nano_banana_payload(GenerateRequest(prompt="a cat"))
        assert "image_urls" not in body["input"]


class TestBuildAdapters:
    def test_endpoints_and_timing(self, fast_settings):
        adapters = build_adapters(fast_settings)
        assert set(adapters) == {
            "wan-video", "wan-public", "qwen-edit", "nano-banana", "veo-video", "kling-avatar",
        }

        wan = adapters["wan-video"]
        assert wan.kind == JobKind.VIDEO
        assert wan.submit_url == "https://runpod.test/v2/wan22/run"
        assert wan.status_endpoint("abc") == "https://runpod.test/v2/wan22/status/abc"
        assert wan.poll.timeout == 540
        assert wan.poll.interval == 5

        qwen = adapters["qwen-edit"]
        assert qwen.kind == JobKind.IMAGE
        assert qwen.poll.timeout == 300

        nano = adapters["nano-banana"]
        assert nano.status_endpoint("t-1") == "https://kie.test/api/v1/jobs/recordInfo?taskId=t-1"
        assert nano.poll.initial_delay == 25
        assert adapters["veo-video"].poll.initial_delay == 60

    def test_headers_carry_bearer_token(self, fast_settings):
        headers = build_adapters(fast_settings)["wan-video"].headers()
        assert headers["Authorization"] == "Bearer rp-key"

    def test_validate(self, fast_settings):
        adapters = build_adapters(fast_settings)
        with pytest.raises(ValueError):
            adapters["nano-banana"].validate(GenerateRequest(prompt="   "))
        with pytest.raises(ValueError):
            adapters["wan-video"].validate(GenerateRequest(prompt="move"))
        adapters["wan-video"].validate(GenerateRequest(prompt="move", image_base64="QUJD"))
        adapters["nano-banana"].validate(GenerateRequest(prompt="a cat"))


class TestKieBusinessErrors:
    def test_error_code_fails_the_task(self):
        report = parse_kie_task_status({"code": 422, "msg": "recordInfo is null", "data": None})
        assert report.state == RemoteState.FAILED
        assert report.message == "recordInfo is null"

        report = parse_kie_veo_status({"code": 500})
        assert report.state == RemoteState.FAILED
        assert report.message == "KIE.ai error code 500"

    def test_non_object_data_is_ignored(self):
        assert parse_kie_submit({"code": 200, "data": "no task"}) is None
        assert parse_kie_task_status({"data": "oops"}).state == RemoteState.RUNNING
        assert parse_kie_veo_status({"data": ["oops"]}).state == RemoteState.RUNNING

    def test_non_object_result_json(self):
        body = {"data": {"state": "success", "resultJson": json.dumps(["https://kie.test/a.jpg"])}}
        assert parse_kie_task_status(body).output is None


class TestKling:
    def test_submit_id(self):
        assert parse_kling_submit({"id": "k-1", "status": "processing"}) == "k-1"
        assert parse_kling_submit({"code": 0, "data": {"task_id": "k-2"}}) == "k-2"
        assert parse_kling_submit({"status": "processing"}) is None

    @pytest.mark.parametrize("raw, state", [
        ("submitted", RemoteState.QUEUED),
        ("processing", RemoteState.RUNNING),
        ("succeed", RemoteState.COMPLETED),
        ("failed", RemoteState.FAILED),
    ])
    def test_states(self, raw, state):
        assert parse_kling_status({"status": raw}).state == state
        assert parse_kling_status({"code": 0, "data": {"task_status": raw}}).state == state

    def test_result_and_failure(self, fast_settings):
        fields = build_adapters(fast_settings)["kling-avatar"].result_fields

        report = parse_kling_status({"status": "succeed", "works": [{"resource": "https://kling.test/a.mp4"}]})
        assert locate_artifact(report.output, fields) == "https://kling.test/a.mp4"

        report = parse_kling_status({"code": 0, "data": {
            "task_status": "succeed", "task_result": {"videos": [{"url": "https://kling.test/b.mp4"}]},
        }})
        assert locate_artifact(report.output, fields) == "https://kling.test/b.mp4"

        assert parse_kling_status({"status": "failed", "message": "face not found"}).message == "face not found"
        assert parse_kling_status({"status": "failed"}).message == "Kling generation failed"

    def test_payload_modes(self):
        text = kling_avatar_payload(GenerateRequest(prompt="say hi", image_base64="data:image/png;base64,QUJD"))
        assert text == {"image": "QUJD", "mode": "std", "prompt": "say hi"}

        audio = kling_avatar_payload(GenerateRequest(
            prompt="lip sync", image_base64="QUJD", params={"sound_file": "data:audio/mp3;base64,TVAz"},
        ))
        assert audio == {"image": "QUJD", "mode": "pro", "sound_file": "TVAz"}

    def test_jwt(self):
        token = kling_jwt("ak", "sk")
        claims = jwt.decode(token, "sk", algorithms=["HS256"])
        assert claims["iss"] == "ak"
        assert claims["exp"] - claims["nbf"] == 1805
        assert jwt.get_unverified_header(token)["typ"] == "JWT"

    def test_adapter_signs_each_request(self, fast_settings):
        kling = build_adapters(fast_settings)["kling-avatar"]
        assert kling.submit_url == "https://kling.test/v1/videos/image2video"
        assert kling.status_endpoint("k-1") == "https://kling.test/v1/videos/image2video/k-1"
        assert kling.poll.interval == 3
        assert kling.poll.timeout == 300

        token = kling.headers()["Authorization"].removeprefix("Bearer ")
        assert jwt.decode(token, "kling-sk", algorithms=["HS256"])["iss"] == "kling-ak"
