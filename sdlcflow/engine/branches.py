"""Branch primitives shared by the commit protocol and the update engine.

Creation and deletion are verified by polling because the backing service
may acknowledge a branch operation before it is visible to readers.
Destructive replacement of a branch always goes through
``replace_with_backup`` so committed work is never lost mid-sequence.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from loguru import logger

from sdlcflow.engine.errors import (
    ConflictError,
    EngineError,
    InternalError,
    NotFoundError,
    RepositoryServiceError,
    TransientError,
)

if TYPE_CHECKING:
    from sdlcflow.engine.background import BackgroundTaskProcessor
    from sdlcflow.engine.models.repository import Branch
    from sdlcflow.engine.retry import ServiceCaller
    from sdlcflow.engine.service.base import VersionedRepositoryService
    from sdlcflow.engine.settings import EngineConfig


class BranchOperations:
    def __init__(self, caller: ServiceCaller, background: BackgroundTaskProcessor, config: EngineConfig) -> None:
        self._caller = caller
        self._background = background
        self._config = config

    @property
    def service(self) -> VersionedRepositoryService:
        return self._caller.service

    # -- Lookup ----------------------------------------------------------------

    async def get_branch(self, name: str, subject: str) -> Branch | None:
        """Return the branch, or ``None`` if it does not exist."""
        try:
            return await self._caller.raw(subject, self.service.get_branch, name)
        except RepositoryServiceError as exc:
            if exc.status_code == 404:
                return None
            raise self._caller.translate(exc, subject) from exc

    async def require_branch(self, name: str, subject: str) -> Branch:
        branch = await self.get_branch(name, subject)
        if branch is None:
            msg = f"Unknown: {subject}"
            raise NotFoundError(msg)
        return branch

    # -- Create / delete -------------------------------------------------------

    async def create_branch_and_verify(self, name: str, revision_id: str, subject: str) -> Branch:
        """Create ``name`` at ``revision_id`` and wait until it is visible.

        A no-op if the branch already points at ``revision_id``; a branch of
        that name at any other revision is a conflict.
        """
        existing = await self.get_branch(name, subject)
        if existing is not None:
            if existing.revision_id == revision_id:
                return existing
            msg = f"Cannot create {subject}: it already exists at revision {existing.revision_id}"
            raise ConflictError(msg)

        branch = await self._caller.call(subject, self.service.create_branch, name, revision_id)

        async def _visible() -> bool:
            found = await self.get_branch(name, subject)
            return found is not None and found.revision_id == revision_id

        if not await self._poll(_visible):
            msg = f"Created {subject} at revision {revision_id} but it did not become visible"
            raise InternalError(msg)
        logger.debug("Created branch {} at {}", name, revision_id)
        return branch

    async def delete_branch_and_verify(self, name: str, subject: str) -> bool:
        """Delete ``name`` and wait until it is gone.  An absent branch counts as deleted."""
        try:
            await self._caller.raw(subject, self.service.delete_branch, name)
        except RepositoryServiceError as exc:
            if exc.status_code != 404:
                raise self._caller.translate(exc, subject) from exc

        async def _gone() -> bool:
            return await self.get_branch(name, subject) is None

        deleted = await self._poll(_gone)
        if deleted:
            logger.debug("Deleted branch {}", name)
        else:
            logger.warning("Deleted {} but it is still visible", subject)
        return deleted

    async def require_deleted(self, name: str, subject: str) -> None:
        """Delete ``name`` ahead of recreating it; a branch that stays visible is a ``TransientError``."""
        if not await self.delete_branch_and_verify(name, subject):
            msg = f"Could not delete {subject} ({name}): it is still visible"
            raise TransientError(msg)

    async def _poll(self, check: Callable[[], Awaitable[bool]]) -> bool:
        for attempt in range(self._config.branch_verify_attempts):
            if await check():
                return True
            if attempt + 1 < self._config.branch_verify_attempts:
                await asyncio.sleep(self._config.branch_verify_interval)
        return False

    # -- Replacement -----------------------------------------------------------

    async def replace_with_backup(
        self,
        target: str,
        new_revision_id: str,
        backup: str,
        subject: str,
        *,
        expected_revision_id: str | None = None,
        keep_backup: bool = False,
    ) -> Branch:
        """Point ``target`` at ``new_revision_id``, snapshotting it as ``backup`` first.

        The backup is removed only once the recreated target is verified, unless
        ``keep_backup`` is set, in which case the caller removes it with
        ``delete_backup``.
        """
        current = await self.require_branch(target, subject)
        if expected_revision_id is not None and current.revision_id != expected_revision_id:
            msg = f"{subject} changed concurrently (expected {expected_revision_id}, found {current.revision_id})"
            raise ConflictError(msg)

        backup_subject = f"backup of {subject}"
        await self.require_deleted(backup, backup_subject)
        await self.create_branch_and_verify(backup, current.revision_id, backup_subject)
        await self.require_deleted(target, subject)
        branch = await self.create_branch_and_verify(target, new_revision_id, subject)
        logger.info("Replaced {}: {} -> {}", subject, current.revision_id, new_revision_id)

        if not keep_backup:
            await self.delete_backup(backup, subject)
        return branch

    async def delete_backup(self, backup: str, subject: str) -> None:
        """Remove the backup of ``subject``.  Failure is logged, not raised."""
        backup_subject = f"backup of {subject}"
        try:
            await self.delete_branch_and_verify(backup, backup_subject)
        except EngineError as exc:
            logger.warning("Failed to delete {} after replacement: {}", backup_subject, exc)

    # -- Background cleanup ----------------------------------------------------

    def schedule_deletion(self, name: str, *, wait_for_pipelines: bool = True) -> None:
        """Delete ``name`` in the background once no checks are running on it."""
        service = self.service

        async def _delete() -> bool:
            if wait_for_pipelines and await service.has_active_pipelines(name):
                logger.debug("Branch {} has active pipelines; deferring deletion", name)
                return False
            await service.delete_branch(name)
            return True

        self._background.submit(_delete, f"delete branch {name}")
