"""Bounded retry for remote calls.

Every potentially transient call to the repository service goes through
``call_with_retries``: a fixed attempt cap with linearly increasing waits.
``ServiceCaller`` adds the translation of the final failure into the engine
error taxonomy, which is what most engine code wants.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from functools import partial
from typing import TYPE_CHECKING, Any, TypeVar

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_incrementing

from sdlcflow.engine.errors import EngineError, RepositoryServiceError, translate_service_error
from sdlcflow.engine.settings import RetryPolicy

if TYPE_CHECKING:
    from sdlcflow.engine.service.base import VersionedRepositoryService

T = TypeVar("T")


def is_retryable(policy: RetryPolicy) -> Callable[[BaseException], bool]:
    """Predicate for ``retry_if_exception``: service errors with a status in ``policy``."""

    def predicate(exc: BaseException) -> bool:
        return isinstance(exc, RepositoryServiceError) and exc.status_code in policy.retryable_statuses

    return predicate


async def call_with_retries(
    fn: Callable[[], Awaitable[T]],
    description: str,
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Await ``fn()``, retrying retryable ``RepositoryServiceError`` failures.

    Only statuses in ``policy.retryable_statuses`` are retried; anything else
    propagates immediately.  When attempts run out the last error is
    re-raised with the earlier failures attached as notes.
    """
    failures: list[BaseException] = []

    def before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        if exc is None:
            return
        failures.append(exc)
        logger.debug(
            "Retrying {} after {} (attempt {}/{}, waiting {}s)",
            description,
            exc,
            state.attempt_number,
            policy.max_attempts,
            state.next_action.sleep if state.next_action else 0,
        )

    retrying = AsyncRetrying(
        sleep=sleep,
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_incrementing(start=policy.initial_wait, increment=policy.wait_increment),
        retry=retry_if_exception(is_retryable(policy)),
        before_sleep=before_sleep,
        reraise=True,
    )
    try:
        return await retrying(fn)
    except RepositoryServiceError as exc:
        for earlier in failures:
            if earlier is not exc:
                exc.add_note(f"earlier attempt failed: {earlier}")
        raise


class ServiceCaller:
    """Runs service calls with retry and maps failures to engine errors."""

    def __init__(self, service: VersionedRepositoryService, policy: RetryPolicy) -> None:
        self.service = service
        self.policy = policy

    async def raw(self, description: str, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Retry only; the final ``RepositoryServiceError`` propagates untranslated."""
        return await call_with_retries(partial(func, *args), description, self.policy)

    async def call(self, subject: str, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Retry, then raise the translated engine error chained to the cause."""
        try:
            return await self.raw(subject, func, *args)
        except RepositoryServiceError as exc:
            raise self.translate(exc, subject) from exc

    def translate(self, exc: RepositoryServiceError, subject: str) -> EngineError:
        return translate_service_error(exc, subject, on_unauthorized=self.service.invalidate_credentials)
