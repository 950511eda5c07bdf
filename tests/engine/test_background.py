"""Unit tests for BackgroundTaskProcessor."""

from __future__ import annotations

import asyncio

from sdlcflow.engine.background import BackgroundTaskProcessor
from sdlcflow.engine.errors import RepositoryServiceError
from sdlcflow.engine.settings import RetryPolicy


def _policy(max_attempts: int = 5) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        initial_wait=0.0,
        wait_increment=0.0,
        retryable_statuses=frozenset({500, 503}),
    )


async def test_task_rerun_until_done() -> None:
    processor = BackgroundTaskProcessor(_policy())
    results = [False, False, True]
    runs = []

    async def task() -> bool:
        runs.append(1)
        return results[len(runs) - 1]

    processor.submit(task, "three runs")
    assert await processor.drain(timeout=1.0)

    assert len(runs) == 3
    assert processor.pending_count == 0


async def test_retryable_error_is_retried() -> None:
    processor = BackgroundTaskProcessor(_policy())
    runs = []

    async def task() -> bool:
        runs.append(1)
        if len(runs) == 1:
            raise RepositoryServiceError(500, "server error")
        return True

    processor.submit(task, "flaky")
    await processor.drain(timeout=1.0)

    assert len(runs) == 2


async def test_other_errors_are_dropped() -> None:
    processor = BackgroundTaskProcessor(_policy())
    runs = []

    async def failing() -> bool:
        runs.append(1)
        raise RuntimeError("bug")

    async def rejected() -> bool:
        runs.append(2)
        raise RepositoryServiceError(400, "bad request")

    runner = processor.submit(failing, "failing")
    processor.submit(rejected, "rejected")
    assert await processor.drain(timeout=1.0)

    assert sorted(runs) == [1, 2]
    assert runner.exception() is None


async def test_task_abandoned_after_max_attempts() -> None:
    processor = BackgroundTaskProcessor(_policy(max_attempts=3))
    runs = []

    async def never_done() -> bool:
        runs.append(1)
        return False

    processor.submit(never_done, "never done")
    await processor.drain(timeout=1.0)

    assert len(runs) == 3


async def test_drain_without_tasks() -> None:
    assert await BackgroundTaskProcessor(_policy()).drain(timeout=0.01)


async def test_shutdown_cancels_stuck_tasks() -> None:
    processor = BackgroundTaskProcessor(_policy())

    async def stuck() -> bool:
        await asyncio.sleep(3600)
        return True

    runner = processor.submit(stuck, "stuck")
    assert await processor.drain(timeout=0.01) is False

    await processor.shutdown(timeout=0.01)

    assert runner.cancelled()
    assert processor.pending_count == 0


async def test_errors_and_unfinished_runs_share_attempts() -> None:
    processor = BackgroundTaskProcessor(_policy(max_attempts=3))
    runs = []

    async def task() -> bool:
        runs.append(1)
        if len(runs) == 1:
            raise RepositoryServiceError(503, "unavailable")
        return False

    runner = processor.submit(task, "mixed")
    assert await processor.drain(timeout=1.0)

    assert len(runs) == 3
    assert runner.exception() is None
