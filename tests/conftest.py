from datetime import timedelta

import pytest
import pytest_asyncio

from agent.session import FetchedArtifact, SessionDriver, WorkflowStepError
from db.database import JobStore
from models.job import OriginRef


ORIGIN = OriginRef(channel="-100123", thread="42", user="7", workspace="999")


class FakeSession(SessionDriver):
    """
    Scriptable session driver.

    failures maps a method name to the exception raised on every call, or to
    a list of exceptions consumed one per call (then the call succeeds).
    """

    def __init__(self, failures: dict | None = None):
        self.failures = failures or {}
        self.calls: list[tuple] = []
        self.open_count = 0
        self.close_count = 0

    def _maybe_fail(self, name: str) -> None:
        planned = self.failures.get(name)
        if planned is None:
            return
        if isinstance(planned, list):
            if planned:
                raise planned.pop(0)
            return
        raise planned

    async def open(self) -> None:
        self.open_count += 1
        self.calls.append(("open",))
        self._maybe_fail("open")

    async def create_workspace(self) -> None:
        self.calls.append(("create_workspace",))
        self._maybe_fail("create_workspace")

    async def attach_source(self, url: str) -> None:
        self.calls.append(("attach_source", url))
        self._maybe_fail("attach_source")

    async def start_generation(self, kind: str) -> None:
        self.calls.append(("start_generation", kind))
        self._maybe_fail("start_generation")

    async def await_generation(self, kind: str) -> None:
        self.calls.append(("await_generation", kind))
        self._maybe_fail("await_generation")

    async def fetch_artifact(self, kind: str) -> FetchedArtifact:
        self.calls.append(("fetch_artifact", kind))
        self._maybe_fail("fetch_artifact")
        return FetchedArtifact(data=f"{kind}-bytes".encode(), filename=f"{kind}.bin")

    async def close(self) -> None:
        self.close_count += 1
        self.calls.append(("close",))


class FakeStorage:
    def __init__(self, fail_on: str | None = None):
        self.fail_on = fail_on
        self.uploads: list[tuple[str, str, int]] = []

    async def upload(self, data: bytes, filename: str, content_type: str) -> str:
        if self.fail_on and filename.startswith(self.fail_on):
            from storage.r2 import StorageUploadError

            raise StorageUploadError(f"Upload of {filename} failed: boom")
        self.uploads.append((filename, content_type, len(data)))
        return f"media/0-{filename}"

    async def public_reference(self, key: str, ttl: timedelta) -> str:
        return f"https://cdn.example.com/{key}"


class FakeNotifier:
    def __init__(self, raise_on_notify: bool = False):
        self.raise_on_notify = raise_on_notify
        self.completed: list[tuple[OriginRef, int]] = []
        self.failed: list[tuple[OriginRef, int]] = []

    async def notify_completion(self, origin: OriginRef, job_id: int) -> None:
        self.completed.append((origin, job_id))
        if self.raise_on_notify:
            raise RuntimeError("chat is down")

    async def notify_failure(self, origin: OriginRef, job_id: int) -> None:
        self.failed.append((origin, job_id))
        if self.raise_on_notify:
            raise RuntimeError("chat is down")


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def step_timeout(step: str = "attach_source") -> WorkflowStepError:
    return WorkflowStepError(step, "marker did not appear within 60s")


@pytest_asyncio.fixture
async def store(tmp_path) -> JobStore:
    s = JobStore(str(tmp_path / "test.db"))
    await s.init()
    return s


@pytest.fixture
def origin() -> OriginRef:
    return ORIGIN


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()
