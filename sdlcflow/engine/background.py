"""Fire-and-forget background tasks with their own retry policy.

Used for hygiene work that is not required for correctness, chiefly deleting
temporary branches once the service's own checks on them have finished.
Failures are logged and dropped; they never reach the request that
scheduled the task.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    wait_incrementing,
)

from sdlcflow.engine.errors import RepositoryServiceError
from sdlcflow.engine.retry import is_retryable
from sdlcflow.engine.settings import RetryPolicy

BackgroundTask = Callable[[], Awaitable[bool]]
"""A task returns ``True`` when done, ``False`` to be run again later."""


class BackgroundTaskProcessor:
    """Runs background tasks on the current event loop.

    ``drain`` waits until every submitted task has finished, for graceful
    shutdown and for tests that assert on cleanup side effects.
    """

    def __init__(self, policy: RetryPolicy | None = None) -> None:
        self._policy = policy or RetryPolicy(
            max_attempts=20,
            wait_increment=0.0,
            retryable_statuses=frozenset({408, 500, 502, 503, 504}),
        )
        self._tasks: set[asyncio.Task[None]] = set()
        self._drain_event = asyncio.Event()
        self._drain_event.set()

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    # -- Submission ------------------------------------------------------------

    def submit(self, task: BackgroundTask, description: str) -> asyncio.Task[None]:
        logger.debug("Background: submit {}", description)
        runner = asyncio.create_task(self._run(task, description), name=f"background: {description}")
        self._tasks.add(runner)
        self._drain_event.clear()
        runner.add_done_callback(self._on_done)
        return runner

    def _on_done(self, runner: asyncio.Task[None]) -> None:
        self._tasks.discard(runner)
        if not self._tasks:
            self._drain_event.set()

    async def _run(self, task: BackgroundTask, description: str) -> None:
        policy = self._policy

        def before_sleep(state: RetryCallState) -> None:
            if state.outcome is not None and state.outcome.failed:
                exc = state.outcome.exception()
                logger.debug("Background task {} hit {} (attempt {})", description, exc, state.attempt_number)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_incrementing(start=policy.initial_wait, increment=policy.wait_increment),
            retry=retry_if_exception(is_retryable(policy)) | retry_if_result(lambda done: not done),
            before_sleep=before_sleep,
        )
        try:
            await retrying(task)
        except RetryError:
            logger.warning("Background task {} abandoned after {} attempts", description, policy.max_attempts)
        except RepositoryServiceError as exc:
            logger.warning("Background task {} failed: {}", description, exc)
        except Exception:
            logger.exception("Background task {} failed", description)
        else:
            logger.debug("Background: completed {}", description)

    # -- Shutdown --------------------------------------------------------------

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait until no tasks remain.  Returns ``False`` on timeout."""
        if not self._tasks:
            return True
        try:
            await asyncio.wait_for(self._drain_event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def shutdown(self, timeout: float | None = None) -> None:
        """Drain, then cancel whatever is still running."""
        if await self.drain(timeout):
            return
        logger.warning("Background: cancelling {} unfinished tasks", len(self._tasks))
        remaining = list(self._tasks)
        for runner in remaining:
            runner.cancel()
        await asyncio.gather(*remaining, return_exceptions=True)
