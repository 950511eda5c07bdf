"""Changeset commit protocol.

A changeset is applied to a target branch as one logical update.  When it
fits in a single remote commit (``max_commit_size`` actions) it is committed
directly.  Otherwise it is split into chunks committed one after another onto
a temporary branch, whose tip then replaces the target branch.  From the
caller's point of view the result is the same either way: the target moves
from the expected base to a revision containing every operation.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from sdlcflow.engine.errors import (
    ConflictError,
    FatalError,
    RepositoryServiceError,
    TransientError,
    is_client_error,
)
from sdlcflow.engine.models.changes import (
    AddFile,
    CommitAction,
    DeleteFile,
    FileOperation,
    ModifyFile,
    MoveFile,
    target_path,
)

if TYPE_CHECKING:
    from types import TracebackType

    from sdlcflow.engine.branches import BranchOperations
    from sdlcflow.engine.models.repository import Branch, Revision
    from sdlcflow.engine.references import ReferenceScheme
    from sdlcflow.engine.retry import ServiceCaller
    from sdlcflow.engine.settings import EngineConfig


def _normalize(path: str) -> str:
    return "/" + path.lstrip("/")


def _chunk_retryable(exc: BaseException) -> bool:
    """A lost branch (404) or any non-client failure is worth another attempt."""
    if not isinstance(exc, RepositoryServiceError):
        return False
    return exc.status_code == 404 or not is_client_error(exc.status_code)


# ---------------------------------------------------------------------------
# Temporary branch
# ---------------------------------------------------------------------------


class TemporaryBranch:
    """Scoped throwaway branch seeded at ``reference_revision_id``.

    Use as ``async with``: the branch is created on entry and its deletion is
    scheduled in the background on exit, whatever the outcome, unless
    ``replace_target_and_delete`` already took care of it.
    """

    def __init__(
        self,
        name: str,
        reference_revision_id: str,
        *,
        caller: ServiceCaller,
        branches: BranchOperations,
        config: EngineConfig,
    ) -> None:
        self.name = name
        self.reference_revision_id = reference_revision_id
        self.last_revision_id: str | None = None
        self._caller = caller
        self._branches = branches
        self._config = config
        self._closed = False

    @property
    def subject(self) -> str:
        return f"temporary branch {self.name}"

    @property
    def tip_revision_id(self) -> str:
        """Revision of the last successful commit, or the seed revision."""
        return self.last_revision_id or self.reference_revision_id

    async def __aenter__(self) -> TemporaryBranch:
        await self._branches.create_branch_and_verify(self.name, self.reference_revision_id, self.subject)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._branches.schedule_deletion(self.name)

    async def commit(self, actions: list[CommitAction], message: str) -> Revision:
        """Commit one chunk, retrying only this chunk on transient failure.

        The branch is recreated at the last good revision before each retry
        in case it was lost or left in an unknown state.  Client-class errors
        abort immediately.
        """
        max_attempts = self._config.max_commit_retries
        policy = self._config.retry

        def before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            if isinstance(exc, RepositoryServiceError) and exc.status_code == 404:
                logger.warning("{} disappeared while committing {!r}; recreating", self.subject, message)
            else:
                attempt = state.attempt_number
                logger.debug("Commit {!r} failed ({}); attempt {}/{}", message, exc, attempt, max_attempts)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_incrementing(start=policy.initial_wait, increment=policy.wait_increment),
            retry=retry_if_exception(_chunk_retryable),
            before_sleep=before_sleep,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        await self._reset_branch()
                    revision = await self._caller.service.commit(self.name, message, actions)
        except RetryError as exc:
            msg = f"Failed to commit {message!r} to {self.subject} after {max_attempts} attempts"
            raise TransientError(msg) from exc.last_attempt.exception()
        except RepositoryServiceError as exc:
            if exc.status_code == 401:
                self._caller.service.invalidate_credentials()
            msg = f"Error committing to {self.subject}: {exc.message or exc.status_code}"
            raise FatalError(msg) from exc

        self.last_revision_id = revision.id
        return revision

    async def _reset_branch(self) -> None:
        expected = self.tip_revision_id
        branch = await self._branches.get_branch(self.name, self.subject)
        if branch is not None and branch.revision_id == expected:
            return
        if branch is not None:
            await self._branches.require_deleted(self.name, self.subject)
        await self._branches.create_branch_and_verify(self.name, expected, self.subject)

    async def replace_target_and_delete(self, target: str, expected_target_revision_id: str, subject: str) -> Branch:
        """Make ``target`` point at this branch's tip, then drop this branch.

        Fails with ``ConflictError`` if ``target`` moved since the changeset
        was started; the temporary branch is then left to ``close``.
        """
        current = await self._branches.require_branch(target, subject)
        if current.revision_id != expected_target_revision_id:
            msg = (
                f"Could not update {subject}: it changed from {expected_target_revision_id} "
                f"to {current.revision_id} while changes were being committed"
            )
            raise ConflictError(msg)
        await self._branches.require_deleted(target, subject)
        branch = await self._branches.create_branch_and_verify(target, self.tip_revision_id, subject)
        self.close()
        return branch


# ---------------------------------------------------------------------------
# Committer
# ---------------------------------------------------------------------------


class ChangesetCommitter:
    """Applies changesets to branches, splitting them when they are too large."""

    def __init__(
        self,
        caller: ServiceCaller,
        branches: BranchOperations,
        scheme: ReferenceScheme,
        config: EngineConfig,
    ) -> None:
        self._caller = caller
        self._branches = branches
        self._scheme = scheme
        self._config = config

    async def submit(
        self,
        target_ref: str,
        changeset: Sequence[FileOperation],
        message: str,
        *,
        expected_base_revision_id: str | None = None,
        subject: str | None = None,
        user_id: str = "sdlcflow",
        workspace_id: str | None = None,
    ) -> Revision:
        """Apply ``changeset`` to ``target_ref`` and return the resulting revision.

        Parameters
        ----------
        target_ref:
            Branch to update.
        changeset:
            File operations; at most one operation per target path.
        message:
            Commit message.  Split commits are annotated ``[i/n]``.
        expected_base_revision_id:
            Optimistic-concurrency guard: the target's tip must still equal this.
        subject:
            Human-readable description of the target for error messages.
        user_id, workspace_id:
            Scope for the temporary branch name when the changeset is split.

        Raises
        ------
        ConflictError
            The target's tip is not ``expected_base_revision_id``, or moved
            while a split changeset was being committed.
        FatalError
            The changeset is empty or malformed, or the service rejected it.
        """
        subject = subject or f"branch {target_ref}"
        if not changeset:
            msg = f"No changes to commit to {subject}"
            raise FatalError(msg)
        _check_unique_targets(changeset)

        tip = await self._branches.require_branch(target_ref, subject)
        if expected_base_revision_id is not None and tip.revision_id != expected_base_revision_id:
            msg = (
                f"Expected {subject} to be at revision {expected_base_revision_id}; "
                f"instead it was at revision {tip.revision_id}"
            )
            raise ConflictError(msg)
        reference_revision_id = expected_base_revision_id or tip.revision_id
        actions = await self.to_actions(changeset, reference_revision_id, subject)

        max_size = self._config.max_commit_size
        if len(actions) <= max_size:
            revision = await self._caller.call(
                f"commit to {subject}", self._caller.service.commit, target_ref, message, actions
            )
            logger.info("Committed {} change(s) to {} as {}", len(actions), subject, revision.id)
            return revision

        chunks = [actions[i : i + max_size] for i in range(0, len(actions), max_size)]
        temp = TemporaryBranch(
            self._scheme.temporary_branch_name(user_id, workspace_id),
            reference_revision_id,
            caller=self._caller,
            branches=self._branches,
            config=self._config,
        )
        async with temp:
            for i, chunk in enumerate(chunks[:-1], start=1):
                await temp.commit(chunk, f"{message} [{i}/{len(chunks)}]")
            last = await temp.commit(chunks[-1], f"{message} [{len(chunks)}/{len(chunks)}]")
            await temp.replace_target_and_delete(target_ref, reference_revision_id, subject)
        logger.info("Committed {} change(s) to {} in {} commits", len(actions), subject, len(chunks))
        return last

    async def to_actions(
        self,
        changeset: Sequence[FileOperation],
        reference_revision_id: str,
        subject: str,
    ) -> list[CommitAction]:
        """Map operations to commit actions, filling in missing move content.

        Content for a move is taken from an earlier operation that wrote the
        source path, otherwise read at ``reference_revision_id``.
        """
        written: dict[str, bytes | None] = {}
        actions: list[CommitAction] = []
        for operation in changeset:
            match operation:
                case AddFile(path=path, content=content):
                    actions.append(CommitAction.create(_normalize(path), content))
                    written[_normalize(path)] = content
                case ModifyFile(path=path, content=content):
                    actions.append(CommitAction.update(_normalize(path), content))
                    written[_normalize(path)] = content
                case DeleteFile(path=path):
                    actions.append(CommitAction.delete(_normalize(path)))
                    written[_normalize(path)] = None
                case MoveFile(path=path, new_path=new_path, content=content):
                    old, new = _normalize(path), _normalize(new_path)
                    if content is None:
                        content = await self._prior_content(old, written, reference_revision_id, subject)
                    actions.append(CommitAction.move(old, new, content))
                    written[old] = None
                    written[new] = content
        return actions

    async def _prior_content(
        self,
        path: str,
        written: dict[str, bytes | None],
        reference_revision_id: str,
        subject: str,
    ) -> bytes:
        if path in written:
            content = written[path]
            if content is None:
                msg = f"Cannot move {path}: it was deleted earlier in the same changeset"
                raise FatalError(msg)
            return content
        return await self._caller.call(
            f"file {path} at revision {reference_revision_id} of {subject}",
            self._caller.service.get_file,
            reference_revision_id,
            path,
        )


def _check_unique_targets(changeset: Sequence[FileOperation]) -> None:
    seen: set[str] = set()
    for operation in changeset:
        path = _normalize(target_path(operation))
        if path in seen:
            msg = f"Changeset contains more than one operation on {path}"
            raise FatalError(msg)
        seen.add(path)
