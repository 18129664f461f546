"""
Background job dispatcher.

- Dispatcher.run_forever()  polls the job store, idles POLL_INTERVAL_S when empty.
- Dispatcher.run_once()     claims the oldest pending job and runs it to the end.
- Dispatcher.stop()         ends the loop after the job in flight.

Jobs run strictly one after another: there is a single logged-in browser
profile, so the dispatcher owns the one session handle and lends it to the
pipeline for exactly one job at a time.
"""

import asyncio
import logging
import os

from agent.session import SessionDriver
from db.database import JobStore
from models.job import PROCESSING
from workers.pipeline import JobPipeline

logger = logging.getLogger(__name__)

POLL_INTERVAL_S: float = float(os.getenv("POLL_INTERVAL_S", "5"))
BETWEEN_JOBS_S = 1.0


class Dispatcher:
    def __init__(
        self,
        store: JobStore,
        pipeline: JobPipeline,
        session: SessionDriver,
        poll_interval: float = POLL_INTERVAL_S,
        between_jobs: float = BETWEEN_JOBS_S,
    ):
        self.store = store
        self.pipeline = pipeline
        self.session = session
        self.poll_interval = poll_interval
        self.between_jobs = between_jobs
        self._running = False
        self._current: int | None = None

    @property
    def current_job_id(self) -> int | None:
        return self._current

    @property
    def is_running(self) -> bool:
        return self._running

    async def report_stuck_jobs(self) -> None:
        """Log jobs a previous process left in 'processing'. They are not resumed."""
        stuck = await self.store.list_by_status(PROCESSING)
        for job in stuck:
            logger.warning(
                "Job left in processing by a previous run; needs manual recovery",
                extra={"job_id": job.id, "step": job.current_step, "started_at": job.started_at},
            )

    async def run_once(self) -> bool:
        """Process the next pending job, if any. Returns True if one was run."""
        job = await self.store.claim_next()
        if job is None:
            return False

        logger.info("Found pending job", extra={"job_id": job.id})
        self._current = job.id
        try:
            await self.pipeline.process(job, self.session)
        finally:
            self._current = None
        return True

    async def run_forever(self) -> None:
        if self._running:
            logger.warning("Dispatcher already running")
            return

        self._running = True
        logger.info("Job dispatcher started")
        await self.report_stuck_jobs()

        while self._running:
            try:
                ran = await self.run_once()
            except Exception as exc:
                # One broken job must not take the loop down
                logger.error("Dispatcher loop error", extra={"error": str(exc)}, exc_info=True)
                ran = True

            await asyncio.sleep(self.between_jobs if ran else self.poll_interval)

        logger.info("Job dispatcher stopped")

    def stop(self) -> None:
        self._running = False
        logger.info("Stopping job dispatcher")
