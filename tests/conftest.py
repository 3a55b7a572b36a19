import asyncio
from typing import List, Optional

import pytest

from app.jobs.models import Artifact, ArtifactFile, GenerationRequest, JobConfig, RawStatus
from app.providers.base import ProviderAdapter


class FakeClock:
    """Monotonic clock that only moves when the code under test sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class ScriptedAdapter(ProviderAdapter):
    """Adapter that replays a fixed list of status responses.

    Items in `statuses` are RawStatus objects or exceptions to raise; the last
    item repeats once the list runs out.
    """

    provider_name = "scripted"

    def __init__(
        self,
        statuses,
        kind: str = "image",
        task_id: str = "task-1",
        submit_error: Optional[Exception] = None,
        result: Optional[Artifact] = None,
        result_error: Optional[Exception] = None,
        on_fetch=None,
    ):
        self._token = "secret-token"
        self.kind = kind
        self.statuses = list(statuses)
        self.task_id = task_id
        self.submit_error = submit_error
        self.result = result
        self.result_error = result_error
        self.on_fetch = on_fetch
        self.submit_calls = 0
        self.status_calls = 0
        self.result_calls = 0

    def auth_headers(self):
        return {}

    async def submit(self, request: GenerationRequest) -> str:
        self.submit_calls += 1
        if self.submit_error:
            raise self.submit_error
        return self.task_id

    async def fetch_status(self, task_id: str) -> RawStatus:
        self.status_calls += 1
        if self.on_fetch:
            self.on_fetch(self.status_calls)
        item = self.statuses[min(self.status_calls, len(self.statuses)) - 1]
        if isinstance(item, Exception):
            raise item
        return item

    async def fetch_result(self, task_id: str, status: RawStatus) -> Artifact:
        self.result_calls += 1
        if self.result_error:
            raise self.result_error
        if self.result:
            return self.result
        images = status.payload.get("output", {}).get("images", [])
        return Artifact(kind=self.kind, files=[ArtifactFile(**image) for image in images])

    async def aclose(self) -> None:
        pass


def raw(status: str, **kwargs) -> RawStatus:
    return RawStatus(status=status, **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def job_config():
    return JobConfig(
        poll_interval_ms=1000,
        timeout_ms=60_000,
        poll_max_retries=3,
        poll_retry_delay_ms=100,
        max_skipped_polls=5,
    )
