"""
Session driver contract.

A SessionDriver is the one authenticated automation context against the
generation service. It exposes workflow-shaped steps and reports completion
only through signals observable in the UI. How those signals are detected is
the driver's business; the pipeline only sees these methods and exceptions.

Use as an async context manager so teardown runs on every exit path:

    async with session:
        await session.create_workspace()
        ...
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class SessionInitError(Exception):
    """The session could not be established (e.g. no saved login). Fatal for the job."""


class WorkflowStepError(Exception):
    """A cheap UI step timed out or found an unexpected layout. Retryable."""

    def __init__(self, step: str, message: str = ""):
        self.step = step
        super().__init__(f"{step}: {message}" if message else step)


class GenerationTimeoutError(Exception):
    """Generation did not finish in time. Fatal, never retried."""

    def __init__(self, kind: str, timeout_s: float | None = None):
        self.kind = kind
        detail = f" after {timeout_s:.0f}s" if timeout_s is not None else ""
        super().__init__(f"{kind} generation did not finish{detail}")


class ArtifactNotFoundError(Exception):
    """No artifact card for *kind* after generation reported done."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"No {kind} artifact found on page")


@dataclass
class FetchedArtifact:
    data: bytes
    filename: str


class SessionDriver(ABC):
    async def __aenter__(self) -> "SessionDriver":
        try:
            await self.open()
        except BaseException:
            await self._safe_close()
            raise
        return self

    async def __aexit__(self, *_) -> None:
        await self._safe_close()

    async def _safe_close(self) -> None:
        # Teardown must not mask the error that ended the job
        try:
            await self.close()
        except Exception as exc:
            logger.warning("Session teardown failed: %s", exc, exc_info=True)

    @abstractmethod
    async def open(self) -> None: ...

    @abstractmethod
    async def create_workspace(self) -> None: ...

    @abstractmethod
    async def attach_source(self, url: str) -> None: ...

    @abstractmethod
    async def start_generation(self, kind: str) -> None:
        """Trigger generation and return once the 'generating' marker shows."""

    @abstractmethod
    async def await_generation(self, kind: str) -> None:
        """Block until the 'generating' marker for *kind* is gone."""

    @abstractmethod
    async def fetch_artifact(self, kind: str) -> FetchedArtifact: ...

    @abstractmethod
    async def close(self) -> None:
        """Idempotent."""
