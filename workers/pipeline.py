"""
Runs one job end to end:

    open session → create notebook → add URL source → indexing pause
    → start audio + video → wait audio → wait video
    → download both → upload both → record both → completed

Progress and the current step are written to the job store at every stage
boundary so /status and GET /jobs/{id} never have to ask the browser.

Any exception is fatal for the job: it is marked failed with the message and
the failure notifier fires. Nothing is retried here beyond what the retry
policies around individual steps allow.

Notifier signature:
    async def notify_completion(origin: OriginRef, job_id: int) -> None
    async def notify_failure(origin: OriginRef, job_id: int) -> None
"""

import asyncio
import logging
import os
from datetime import timedelta
from typing import Awaitable, Callable, Protocol

from agent.retry import CHEAP, EXPENSIVE, RetryPolicy, with_retry
from agent.session import FetchedArtifact, SessionDriver
from db.database import ARTIFACT_TTL, JobStore
from models.job import (
    AUDIO,
    COMPLETED,
    FAILED,
    PROCESSING,
    VIDEO,
    Job,
    OriginRef,
    PipelineState,
)

logger = logging.getLogger(__name__)

INDEXING_DELAY_S: float = float(os.getenv("INDEXING_DELAY_S", "10"))

# filename template, content type
_MEDIA_FORMATS = {
    AUDIO: ("audio-{job_id}.m4a", "audio/mp4"),
    VIDEO: ("video-{job_id}.mp4", "video/mp4"),
}


class Storage(Protocol):
    async def upload(self, data: bytes, filename: str, content_type: str) -> str: ...

    async def public_reference(self, key: str, ttl: timedelta) -> str: ...


class Notifier(Protocol):
    async def notify_completion(self, origin: OriginRef, job_id: int) -> None: ...

    async def notify_failure(self, origin: OriginRef, job_id: int) -> None: ...


class JobPipeline:
    def __init__(
        self,
        store: JobStore,
        storage: Storage,
        notifier: Notifier | None = None,
        indexing_delay: float = INDEXING_DELAY_S,
        setup_policy: RetryPolicy = CHEAP,
        generation_policy: RetryPolicy = EXPENSIVE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.storage = storage
        self.notifier = notifier
        self.indexing_delay = indexing_delay
        self.setup_policy = setup_policy
        self.generation_policy = generation_policy
        self._sleep = sleep

    async def _step(self, job: Job, progress: int, label: str) -> None:
        await self.store.update_status(
            job.id, PROCESSING, progress=progress, current_step=label
        )

    def _enter(self, job: Job, state: str) -> None:
        logger.info("Pipeline state %s", state, extra={"job_id": job.id, "state": state})

    async def _retry(self, job: Job, operation, name: str, policy: RetryPolicy):
        return await with_retry(operation, name, policy, sleep=self._sleep, job_id=job.id)

    async def process(self, job: Job, session: SessionDriver) -> bool:
        """Drive *job* through every stage using *session*. Returns True on success."""
        logger.info("Processing request", extra={"job_id": job.id, "url": job.url})
        self._enter(job, PipelineState.INIT)

        # A store failure here leaves the job pending and propagates to the dispatcher
        await self._step(job, 10, "Opening browser session")

        try:
            async with session:
                await self._step(job, 20, "Creating notebook")
                await self._retry(job, session.create_workspace, "Create notebook", self.setup_policy)
                self._enter(job, PipelineState.WORKSPACE_CREATED)

                await self._step(job, 30, "Adding URL source")
                await self._retry(
                    job, lambda: session.attach_source(job.url), "Add URL source", self.setup_policy
                )
                self._enter(job, PipelineState.SOURCE_ATTACHED)

                # NotebookLM keeps indexing for a while after the source shows up
                await self._sleep(self.indexing_delay)

                await self._step(job, 40, "Generating audio and video")
                for kind in (AUDIO, VIDEO):
                    await self._retry(
                        job,
                        lambda kind=kind: session.start_generation(kind),
                        f"Start {kind} generation",
                        self.generation_policy,
                    )
                self._enter(job, PipelineState.GENERATING_BOTH)

                await self._step(job, 55, "Waiting for audio")
                await session.await_generation(AUDIO)
                await self._step(job, 65, "Waiting for video")
                await session.await_generation(VIDEO)

                await self._step(job, 70, "Downloading audio")
                audio = await session.fetch_artifact(AUDIO)
                await self._step(job, 80, "Downloading video")
                video = await session.fetch_artifact(VIDEO)
                self._enter(job, PipelineState.ARTIFACTS_READY)

            await self._step(job, 85, "Uploading audio")
            await self._store_artifact(job, AUDIO, audio)
            await self._step(job, 95, "Uploading video")
            await self._store_artifact(job, VIDEO, video)
            self._enter(job, PipelineState.UPLOADED)

            await self.store.update_status(job.id, COMPLETED, progress=100, current_step="Completed")
            self._enter(job, PipelineState.DONE)
            logger.info(
                "Request processed",
                extra={"job_id": job.id, "audio_size": len(audio.data), "video_size": len(video.data)},
            )

        except Exception as exc:
            msg = str(exc) or type(exc).__name__
            self._enter(job, PipelineState.FAILED)
            logger.error(
                "Failed to process request",
                extra={"job_id": job.id, "error": msg, "error_type": type(exc).__name__},
                exc_info=True,
            )
            await self.store.update_status(job.id, FAILED, error_message=msg)
            await self._notify("notify_failure", job)
            return False

        await self._notify("notify_completion", job)
        return True

    async def _store_artifact(self, job: Job, kind: str, fetched: FetchedArtifact) -> None:
        template, content_type = _MEDIA_FORMATS[kind]
        filename = template.format(job_id=job.id)

        key = await self.storage.upload(fetched.data, filename, content_type)
        url = await self.storage.public_reference(key, ARTIFACT_TTL)
        await self.store.record_artifact(
            job.id,
            kind,
            filename=filename,
            storage_key=key,
            public_ref=url,
            byte_size=len(fetched.data),
        )

    async def _notify(self, method: str, job: Job) -> None:
        # Delivery problems never change the job's recorded outcome
        if self.notifier is None:
            return
        try:
            await getattr(self.notifier, method)(job.origin, job.id)
        except Exception as exc:
            logger.error(
                "Notification failed",
                extra={"job_id": job.id, "method": method, "error": str(exc)},
                exc_info=True,
            )
