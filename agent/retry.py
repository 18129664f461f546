"""
Bounded retry with exponential backoff for session driver steps.

Only WorkflowStepError is retried. Everything else (session init, generation
timeouts, missing artifacts) goes straight to the caller.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from agent.session import WorkflowStepError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay: float = 2.0    # seconds, doubled per attempt
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        """Backoff after failed attempt number *attempt* (1-based)."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)


# Setup steps: cheap and idempotent
CHEAP = RetryPolicy(max_attempts=3)

# Generation triggers: one retry at most
EXPENSIVE = RetryPolicy(max_attempts=2)


class RetryExhaustedError(WorkflowStepError):
    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            getattr(last_error, "step", operation),
            f"{operation} failed after {attempts} attempt(s): {last_error}",
        )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    name: str,
    policy: RetryPolicy = CHEAP,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    job_id: int | None = None,
) -> T:
    last_error: WorkflowStepError | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            logger.info(
                "Attempting %s",
                name,
                extra={"job_id": job_id, "attempt": attempt, "max_attempts": policy.max_attempts},
            )
            return await operation()
        except WorkflowStepError as exc:
            last_error = exc
            logger.warning(
                "%s failed",
                name,
                extra={"job_id": job_id, "attempt": attempt, "error": str(exc)},
            )
            if attempt < policy.max_attempts:
                delay = policy.delay(attempt)
                logger.info("Retrying %s in %.1fs", name, delay, extra={"job_id": job_id})
                await sleep(delay)

    raise RetryExhaustedError(name, policy.max_attempts, last_error)
