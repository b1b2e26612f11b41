"""
PublishPipeline — runs an ordered list of named steps under a bounded
exponential-backoff retry policy.

Every completed step is recorded on the PublishJob and persisted right away;
later attempts (and a resumed job after a restart) skip recorded steps, so
external side effects of finished steps are not repeated.
"""

import logging
from typing import Awaitable, Callable, List

from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential,
)

from .exceptions import Conflict, NotFound, ValidationFailure
from .models import PublishJob
from .repository import ModuleRepository

logger = logging.getLogger(__name__)

_NON_RETRYABLE = (Conflict, NotFound, ValidationFailure)


def is_retryable(exc: BaseException) -> bool:
    """Step failures are retried unless they are caller errors. Cancellation is never retried."""
    return isinstance(exc, Exception) and not isinstance(exc, _NON_RETRYABLE)


def _log_retry(retry_state: RetryCallState) -> None:
    logger.warning(
        f"Publish attempt {retry_state.attempt_number} failed, retrying: "
        f"{retry_state.outcome.exception() if retry_state.outcome else 'unknown error'}"
    )


class PublishStep:
    """A named unit of publish work."""

    def __init__(self, name: str, action: Callable[[], Awaitable[None]]):
        self.name = name
        self.action = action

    def __repr__(self) -> str:
        return f"<PublishStep {self.name}>"


class PublishPipeline:

    def __init__(
        self,
        repository: ModuleRepository,
        max_attempts: int = 3,
        backoff_min: float = 1.0,
        backoff_max: float = 30.0,
    ):
        self._repo = repository
        self.max_attempts = max(1, max_attempts)
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.backoff_min, max=self.backoff_max),
            retry=retry_if_exception(is_retryable),
            before_sleep=_log_retry,
            reraise=True,
        )

    async def run(self, job: PublishJob, steps: List[PublishStep]) -> PublishJob:
        """Run steps until all are recorded on job, or the retry policy gives up."""
        names = [s.name for s in steps]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate step names in publish plan: {names}")

        async for attempt in self._retrying():
            with attempt:
                job.attempts += 1
                await self._repo.save_job(job)
                for step in steps:
                    if step.name in job.completed_steps:
                        logger.debug(f"[{job.job_id}] skipping completed step {step.name}")
                        continue
                    logger.info(f"[{job.job_id}] running step {step.name} (attempt {job.attempts})")
                    await step.action()
                    job.completed_steps.append(step.name)
                    await self._repo.save_job(job)
        return job
