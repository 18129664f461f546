"""JobPipeline: end-to-end stage sequencing against a fake session."""

import asyncio
from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from agent.retry import RetryPolicy
from agent.session import ArtifactNotFoundError, GenerationTimeoutError, SessionInitError
from db.database import JobStore
from models.job import AUDIO, COMPLETED, FAILED, PENDING, PROCESSING, VIDEO
from workers.pipeline import JobPipeline
from conftest import FakeNotifier, FakeSession, FakeStorage, step_timeout


class ProgressSpy(JobStore):
    """Records every status update on its way to the real store."""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.updates: list[tuple] = []

    async def update_status(self, job_id, status, progress=None, current_step=None, error_message=None):
        self.updates.append((status, progress, current_step))
        await super().update_status(job_id, status, progress, current_step, error_message)


def make_pipeline(store, storage=None, notifier=None, sleep=None):
    return JobPipeline(
        store=store,
        storage=storage or FakeStorage(),
        notifier=notifier,
        indexing_delay=0,
        setup_policy=RetryPolicy(max_attempts=3, base_delay=0.01),
        generation_policy=RetryPolicy(max_attempts=2, base_delay=0.01),
        sleep=sleep or asyncio.sleep,
    )


@pytest_asyncio.fixture
async def spy_store(tmp_path):
    s = ProgressSpy(str(tmp_path / "spy.db"))
    await s.init()
    return s


@pytest.mark.asyncio
async def test_successful_job_completes_with_two_artifacts(store, origin, sleeper):
    notifier = FakeNotifier()
    storage = FakeStorage()
    session = FakeSession()
    job_id = await store.enqueue("https://example.com/a", origin)
    job = await store.claim_next()

    ok = await make_pipeline(store, storage, notifier, sleeper).process(job, session)

    assert ok is True
    done = await store.get_job(job_id)
    assert done.status == COMPLETED
    assert done.progress == 100
    assert done.current_step == "Completed"
    assert done.error_message is None

    artifacts = await store.get_artifacts(job_id)
    assert [a.kind for a in artifacts] == [AUDIO, VIDEO]
    for artifact in artifacts:
        created = datetime.fromisoformat(artifact.created_at)
        expires = datetime.fromisoformat(artifact.expires_at)
        assert abs((expires - created) - timedelta(days=7)) <= timedelta(seconds=1)
        assert artifact.public_ref.startswith("https://cdn.example.com/media/")

    assert storage.uploads == [
        (f"audio-{job_id}.m4a", "audio/mp4", len(b"audio-bytes")),
        (f"video-{job_id}.mp4", "video/mp4", len(b"video-bytes")),
    ]
    assert notifier.completed == [(origin, job_id)]
    assert notifier.failed == []
    assert session.open_count == 1
    assert session.close_count == 1


@pytest.mark.asyncio
async def test_generations_started_back_to_back_before_waiting(store, origin, sleeper):
    session = FakeSession()
    await store.enqueue("https://example.com/a", origin)
    job = await store.claim_next()

    await make_pipeline(store, sleep=sleeper).process(job, session)

    assert [c[0] for c in session.calls] == [
        "open",
        "create_workspace",
        "attach_source",
        "start_generation",
        "start_generation",
        "await_generation",
        "await_generation",
        "fetch_artifact",
        "fetch_artifact",
        "close",
    ]
    assert session.calls[2] == ("attach_source", "https://example.com/a")
    assert session.calls[3:5] == [("start_generation", AUDIO), ("start_generation", VIDEO)]
    assert session.calls[5:7] == [("await_generation", AUDIO), ("await_generation", VIDEO)]


@pytest.mark.asyncio
async def test_indexing_delay_follows_attach(store, origin, sleeper):
    await store.enqueue("https://example.com/a", origin)
    job = await store.claim_next()
    pipeline = make_pipeline(store, sleep=sleeper)
    pipeline.indexing_delay = 10

    await pipeline.process(job, FakeSession())

    assert sleeper.delays == [10]


@pytest.mark.asyncio
async def test_progress_is_monotonic_with_steps(spy_store, origin, sleeper):
    await spy_store.enqueue("https://example.com/a", origin)
    job = await spy_store.claim_next()

    await make_pipeline(spy_store, sleep=sleeper).process(job, FakeSession())

    progress = [p for _, p, _ in spy_store.updates]
    assert progress == sorted(progress)
    assert progress[0] == 10 and progress[-1] == 100
    assert all(step for _, _, step in spy_store.updates)
    statuses = [s for s, _, _ in spy_store.updates]
    assert statuses[:-1] == [PROCESSING] * (len(statuses) - 1)
    assert statuses[-1] == COMPLETED


@pytest.mark.asyncio
async def test_attach_source_always_times_out(store, origin, sleeper):
    notifier = FakeNotifier()
    session = FakeSession({"attach_source": step_timeout("attach_source")})
    job_id = await store.enqueue("https://example.com/a", origin)
    job = await store.claim_next()

    ok = await make_pipeline(store, notifier=notifier, sleep=sleeper).process(job, session)

    assert ok is False
    failed = await store.get_job(job_id)
    assert failed.status == FAILED
    assert "attach_source" in failed.error_message
    assert failed.completed_at is not None
    assert failed.progress == 30
    assert session.close_count == 1
    assert notifier.failed == [(origin, job_id)]
    assert notifier.completed == []
    assert [c for c in session.calls if c[0] == "attach_source"] == [
        ("attach_source", "https://example.com/a")
    ] * 3
    assert await store.get_artifacts(job_id) == []


@pytest.mark.asyncio
async def test_transient_setup_failure_is_retried(store, origin, sleeper):
    session = FakeSession({"create_workspace": [step_timeout("create_workspace")]})
    job_id = await store.enqueue("https://example.com/a", origin)
    job = await store.claim_next()

    assert await make_pipeline(store, sleep=sleeper).process(job, session)

    assert (await store.get_job(job_id)).status == COMPLETED
    assert len([c for c in session.calls if c[0] == "create_workspace"]) == 2
    assert sleeper.delays == [0.01, 0]


@pytest.mark.asyncio
async def test_session_init_failure_fails_job_and_tears_down(store, origin, sleeper):
    notifier = FakeNotifier()
    session = FakeSession({"open": SessionInitError("no saved login")})
    job_id = await store.enqueue("https://example.com/a", origin)
    job = await store.claim_next()

    assert not await make_pipeline(store, notifier=notifier, sleep=sleeper).process(job, session)

    failed = await store.get_job(job_id)
    assert failed.status == FAILED
    assert failed.error_message == "no saved login"
    assert session.close_count == 1
    assert [c[0] for c in session.calls] == ["open", "close"]
    assert notifier.failed == [(origin, job_id)]


@pytest.mark.asyncio
async def test_generation_timeout_is_not_retried(store, origin, sleeper):
    session = FakeSession({"await_generation": GenerationTimeoutError(AUDIO, 900)})
    job_id = await store.enqueue("https://example.com/a", origin)
    job = await store.claim_next()

    assert not await make_pipeline(store, sleep=sleeper).process(job, session)

    failed = await store.get_job(job_id)
    assert failed.status == FAILED
    assert "audio generation did not finish" in failed.error_message
    assert len([c for c in session.calls if c[0] == "await_generation"]) == 1
    assert session.close_count == 1


@pytest.mark.asyncio
async def test_start_generation_gets_one_retry(store, origin, sleeper):
    session = FakeSession({"start_generation": step_timeout("start_generation")})
    job_id = await store.enqueue("https://example.com/a", origin)
    job = await store.claim_next()

    assert not await make_pipeline(store, sleep=sleeper).process(job, session)

    assert len([c for c in session.calls if c[0] == "start_generation"]) == 2
    assert "start_generation" in (await store.get_job(job_id)).error_message


@pytest.mark.asyncio
async def test_missing_artifact_fails_job(store, origin, sleeper):
    session = FakeSession({"fetch_artifact": ArtifactNotFoundError(VIDEO)})
    job_id = await store.enqueue("https://example.com/a", origin)
    job = await store.claim_next()

    assert not await make_pipeline(store, sleep=sleeper).process(job, session)

    failed = await store.get_job(job_id)
    assert failed.error_message == "No video artifact found on page"
    assert session.close_count == 1


@pytest.mark.asyncio
async def test_storage_failure_fails_job_after_session_closed(store, origin, sleeper):
    notifier = FakeNotifier()
    session = FakeSession()
    job_id = await store.enqueue("https://example.com/a", origin)
    job = await store.claim_next()

    pipeline = make_pipeline(store, FakeStorage(fail_on="video"), notifier, sleeper)
    assert not await pipeline.process(job, session)

    failed = await store.get_job(job_id)
    assert failed.status == FAILED
    assert "video" in failed.error_message
    assert session.close_count == 1
    # audio made it before the video upload failed
    assert [a.kind for a in await store.get_artifacts(job_id)] == [AUDIO]
    assert notifier.failed == [(origin, job_id)]


@pytest.mark.asyncio
async def test_notification_failure_does_not_roll_back(store, origin, sleeper):
    notifier = FakeNotifier(raise_on_notify=True)
    job_id = await store.enqueue("https://example.com/a", origin)
    job = await store.claim_next()

    assert await make_pipeline(store, notifier=notifier, sleep=sleeper).process(job, FakeSession())

    assert (await store.get_job(job_id)).status == COMPLETED
    assert notifier.completed == [(origin, job_id)]


@pytest.mark.asyncio
async def test_works_without_notifier(store, origin, sleeper):
    job_id = await store.enqueue("https://example.com/a", origin)
    job = await store.claim_next()

    assert await make_pipeline(store, sleep=sleeper).process(job, FakeSession())
    assert (await store.get_job(job_id)).status == COMPLETED


class LockedStore(JobStore):
    """The first status write fails, as if the database were locked."""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.writes = 0

    async def update_status(self, job_id, status, progress=None, current_step=None, error_message=None):
        self.writes += 1
        if self.writes == 1:
            raise RuntimeError("database is locked")
        await super().update_status(job_id, status, progress, current_step, error_message)


@pytest.mark.asyncio
async def test_store_failure_before_start_leaves_job_pending(tmp_path, origin, sleeper):
    locked = LockedStore(str(tmp_path / "locked.db"))
    await locked.init()
    notifier = FakeNotifier()
    session = FakeSession()
    job_id = await locked.enqueue("https://example.com/a", origin)
    job = await locked.claim_next()

    with pytest.raises(RuntimeError, match="database is locked"):
        await make_pipeline(locked, notifier=notifier, sleep=sleeper).process(job, session)

    assert (await locked.get_job(job_id)).status == PENDING
    assert session.open_count == 0
    assert notifier.failed == []

    # The next attempt runs the job normally
    assert await make_pipeline(locked, notifier=notifier, sleep=sleeper).process(job, session)
    assert (await locked.get_job(job_id)).status == COMPLETED
