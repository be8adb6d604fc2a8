import asyncio
from typing import Any, Dict, List, Optional

import pytest

from bananajobs import poller
from bananajobs.model import Artifact, UsageRecord
from config.settings import Settings


class FakeClock:
    """Monotonic clock whose sleep() advances time instead of waiting."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


class FakeRedis:
    def __init__(self) -> None:
        self.data: Dict[str, str] = {}
        self.ttl: Dict[str, Optional[int]] = {}
        self.lists: Dict[str, List[str]] = {}

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        self.data[key] = value
        self.ttl[key] = ex

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def lpush(self, key: str, value: str) -> None:
        self.lists.setdefault(key, []).insert(0, value)


class RecordingStore:
    def __init__(self, fail: bool = False) -> None:
        self.saved: List[tuple] = []
        self.fail = fail

    async def save_artifact(self, artifact: Artifact, metadata: Dict[str, Any]) -> str:
        if self.fail:
            raise RuntimeError("storage down")
        self.saved.append((artifact, metadata))
        return f"https://storage.test/{metadata['remote_id']}"


class RecordingLedger:
    def __init__(self) -> None:
        self.usage: List[tuple] = []
        self.failures: List[str] = []

    async def record_usage(self, username: str, usage: UsageRecord) -> None:
        self.usage.append((username, usage))

    async def record_failure(self, username: str) -> None:
        self.failures.append(username)


class FastSettings(Settings):
    RUNPOD_BASE_URL = "https://runpod.test/v2"
    RUNPOD_API_KEY = "rp-key"
    RUNPOD_WAN_ENDPOINT_ID = "wan22"
    RUNPOD_WAN_PUBLIC_ENDPOINT = "wan-2-5"
    RUNPOD_QWEN_ENDPOINT = "qwen-image-edit"
    KIE_AI_API_URL = "https://kie.test"
    KIE_AI_API_KEY = "kie-key"
    KLING_API_URL = "https://kling.test"
    KLING_ACCESS_KEY = "kling-ak"
    KLING_SECRET_KEY = "kling-sk"
    POLL_INTERVAL = 5.0
    IMAGE_JOB_TIMEOUT = 300.0
    VIDEO_JOB_TIMEOUT = 540.0
    GRACE_RETRIES = 5


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def fast_settings() -> FastSettings:
    return FastSettings()


@pytest.fixture(autouse=True)
def _no_leftover_polls():
    poller._active_polls.clear()
    yield
    poller._active_polls.clear()
