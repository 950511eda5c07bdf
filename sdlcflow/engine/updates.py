"""Workspace update engine.

Brings a workspace up to date with its source branch (mainline, or the patch
release branch for patch workspaces).  An update either does nothing,
rebases the workspace, or, when the rebase cannot be done automatically,
opens a conflict-resolution branch for the user to finish by hand:

1. NO_OP when the source tip is already contained in the workspace.
2. Rebase a copy of the workspace onto the source; adopt it on success.
3. Otherwise squash the workspace's own changes into one commit and retry,
   since intermediate commits may conflict where the net change does not.
4. Otherwise replay the workspace's net change onto a fresh conflict
   resolution branch cut from the source tip.

Every destructive replacement of the workspace branch goes through
``BranchOperations.replace_with_backup``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import TYPE_CHECKING

from loguru import logger

from sdlcflow.engine.commits import TemporaryBranch
from sdlcflow.engine.errors import EngineError, FatalError, RepositoryServiceError
from sdlcflow.engine.models.changes import AddFile, DeleteFile, FileOperation, ModifyFile
from sdlcflow.engine.models.enums import WorkspaceAccessType, WorkspaceType, WorkspaceUpdateReportStatus
from sdlcflow.engine.models.results import WorkspaceStatus, WorkspaceUpdateReport
from sdlcflow.engine.revisions import ReferenceSource

if TYPE_CHECKING:
    from sdlcflow.engine.branches import BranchOperations
    from sdlcflow.engine.commits import ChangesetCommitter
    from sdlcflow.engine.models.repository import Branch, DiffEntry
    from sdlcflow.engine.models.workspace import WorkspaceSpec
    from sdlcflow.engine.references import ReferenceScheme
    from sdlcflow.engine.retry import ServiceCaller
    from sdlcflow.engine.settings import EngineConfig

SQUASH_MESSAGE = "aggregated changes for workspace {workspace_id}"
CONFLICT_RESOLUTION_MESSAGE = "aggregated changes for conflict resolution"


class _WorkspaceRefs:
    """Branch names and descriptions for one workspace."""

    def __init__(self, spec: WorkspaceSpec, scheme: ReferenceScheme, project_id: str) -> None:
        if spec.access_type != WorkspaceAccessType.WORKSPACE:
            msg = f"Expected a workspace, got {spec.describe()}"
            raise FatalError(msg)
        self.spec = spec
        self.workspace = scheme.branch_name(spec)
        self.conflict_resolution = scheme.branch_name(spec.with_access_type(WorkspaceAccessType.CONFLICT_RESOLUTION))
        self.backup = scheme.branch_name(spec.with_access_type(WorkspaceAccessType.BACKUP))
        self.source = scheme.source_branch(spec)
        self.subject = ReferenceSource.for_workspace(project_id, spec).describe()
        self.conflict_resolution_subject = ReferenceSource.for_workspace(
            project_id, spec.with_access_type(WorkspaceAccessType.CONFLICT_RESOLUTION)
        ).describe()
        self.source_subject = f"source branch of {self.subject}"

    @property
    def temporary_owner(self) -> str:
        if self.spec.type == WorkspaceType.USER and self.spec.owner_user_id:
            return self.spec.owner_user_id
        return WorkspaceType.GROUP.value


class WorkspaceUpdateEngine:
    def __init__(
        self,
        caller: ServiceCaller,
        branches: BranchOperations,
        committer: ChangesetCommitter,
        scheme: ReferenceScheme,
        config: EngineConfig,
        project_id: str,
    ) -> None:
        self._caller = caller
        self._branches = branches
        self._committer = committer
        self._scheme = scheme
        self._config = config
        self._project_id = project_id

    def _refs(self, spec: WorkspaceSpec) -> _WorkspaceRefs:
        return _WorkspaceRefs(spec, self._scheme, self._project_id)

    # -- Update ----------------------------------------------------------------

    async def update_workspace(self, spec: WorkspaceSpec) -> WorkspaceUpdateReport:
        refs = self._refs(spec)
        service = self._caller.service
        workspace = await self._branches.require_branch(refs.workspace, refs.subject)
        source = await self._branches.require_branch(refs.source, refs.source_subject)
        source_tip = source.revision_id

        if workspace.revision_id == source_tip:
            logger.debug("{} is at the source tip {}", refs.subject, source_tip)
            return _report(WorkspaceUpdateReportStatus.NO_OP, source_tip, workspace.revision_id)
        containing = await self._caller.call(
            f"branches containing revision {source_tip}", service.list_commit_refs, source_tip
        )
        if refs.workspace in containing:
            logger.debug("{} already contains source tip {}", refs.subject, source_tip)
            return _report(WorkspaceUpdateReportStatus.NO_OP, source_tip, workspace.revision_id)

        async with self._temporary_branch(refs, workspace.revision_id) as temp:
            rebased = await self._rebase(refs, temp)
            if rebased is not None:
                await self._adopt(refs, rebased, workspace.revision_id)
                logger.info("Rebased {} onto {}: now at {}", refs.subject, source_tip, rebased)
                return _report(WorkspaceUpdateReportStatus.UPDATED, source_tip, rebased)

        merge_base = await self._caller.call(
            f"merge base of {refs.subject}", service.merge_base, refs.source, refs.workspace
        )
        if await self._worth_squashing(refs, merge_base.id):
            squashed_id = await self._squash_and_rebase(refs, workspace.revision_id, merge_base.id)
            if squashed_id is not None:
                return _report(WorkspaceUpdateReportStatus.UPDATED, source_tip, squashed_id)

        logger.info("Could not rebase {} automatically; creating conflict resolution", refs.subject)
        return await self.create_conflict_resolution(spec)

    async def _worth_squashing(self, refs: _WorkspaceRefs, merge_base_id: str) -> bool:
        """Whether the workspace has at least ``squash_threshold`` commits past the merge base."""
        threshold = self._config.squash_threshold
        if threshold == 0:
            return True
        recent = await self._caller.call(
            f"revisions of {refs.subject}", self._caller.service.list_revisions, refs.workspace, None, threshold
        )
        return merge_base_id not in {revision.id for revision in recent}

    def _temporary_branch(self, refs: _WorkspaceRefs, revision_id: str) -> TemporaryBranch:
        return TemporaryBranch(
            self._scheme.temporary_branch_name(refs.temporary_owner, refs.spec.workspace_id),
            revision_id,
            caller=self._caller,
            branches=self._branches,
            config=self._config,
        )

    async def _adopt(self, refs: _WorkspaceRefs, rebased: str, workspace_tip: str) -> None:
        """Point the workspace at ``rebased``; the caller's temporary branch must still hold it."""
        await self._branches.replace_with_backup(
            refs.workspace, rebased, refs.backup, refs.subject, expected_revision_id=workspace_tip
        )

    async def _squash_and_rebase(self, refs: _WorkspaceRefs, workspace_tip: str, merge_base_id: str) -> str | None:
        """Squash the workspace's changes onto the merge base, rebase that and adopt it.

        Returns the squashed commit id, or ``None`` if the rebase still fails
        and the workspace was left alone.
        """
        diff = await self._caller.call(
            f"changes in {refs.subject}", self._caller.service.diff, merge_base_id, workspace_tip
        )
        operations = await self._squash_operations(diff.entries, workspace_tip, refs.subject)
        if not operations:
            return None

        async with self._temporary_branch(refs, merge_base_id) as temp:
            actions = await self._committer.to_actions(operations, merge_base_id, temp.subject)
            squashed = await temp.commit(actions, SQUASH_MESSAGE.format(workspace_id=refs.spec.workspace_id))
            logger.debug("Squashed {} change(s) of {} into {}", len(actions), refs.subject, squashed.id)
            rebased = await self._rebase(refs, temp)
            if rebased is None:
                return None
            await self._adopt(refs, rebased, workspace_tip)
        logger.info("Rebased squashed {} onto {}: now at {}", refs.subject, refs.source, rebased)
        return squashed.id

    async def _rebase(self, refs: _WorkspaceRefs, temp: TemporaryBranch) -> str | None:
        """Rebase ``temp`` onto the source branch through a proposal.

        The proposal is always closed.  A merge error or timeout is a failure
        (``None``); service errors propagate.
        """
        service = self._caller.service
        subject = f"rebase of {refs.subject}"
        proposal_id = await self._caller.call(
            subject, service.create_proposal, temp.name, refs.source, f"Update {refs.subject}"
        )
        try:
            await self._caller.call(subject, service.rebase, proposal_id)
            if not await self._await_rebase(proposal_id, subject):
                return None
            rebased = await self._branches.require_branch(temp.name, temp.subject)
        finally:
            try:
                await self._caller.call(subject, service.close_proposal, proposal_id)
            except EngineError as exc:
                logger.warning("Failed to close proposal {} for {}: {}", proposal_id, subject, exc)
        return rebased.revision_id

    async def _await_rebase(self, proposal_id: str, subject: str) -> bool:
        service = self._caller.service
        try:
            async with asyncio.timeout(self._config.rebase_timeout):
                while True:
                    status = await self._caller.call(subject, service.get_rebase_status, proposal_id)
                    if not status.in_progress:
                        break
                    await asyncio.sleep(self._config.rebase_poll_interval)
        except TimeoutError:
            logger.warning("Timed out after {}s waiting for {}", self._config.rebase_timeout, subject)
            return False

        if status.merge_error:
            logger.info("{} failed: {}", subject, status.merge_error)
            return False
        return True

    async def _squash_operations(
        self, entries: Sequence[DiffEntry], revision_id: str, subject: str
    ) -> list[FileOperation]:
        operations: list[FileOperation] = []
        for entry in entries:
            if entry.is_deleted:
                operations.append(DeleteFile(path=entry.old_path))
                continue
            content = await self._read(revision_id, entry.new_path, subject)
            if entry.is_renamed:
                operations.append(DeleteFile(path=entry.old_path))
                operations.append(AddFile(path=entry.new_path, content=content))
            elif entry.is_new:
                operations.append(AddFile(path=entry.new_path, content=content))
            else:
                operations.append(ModifyFile(path=entry.new_path, content=content))
        return operations

    # -- Conflict resolution ---------------------------------------------------

    async def create_conflict_resolution(self, spec: WorkspaceSpec) -> WorkspaceUpdateReport:
        """(Re)create the conflict resolution branch and replay the workspace onto it."""
        refs = self._refs(spec)
        service = self._caller.service
        workspace = await self._branches.require_branch(refs.workspace, refs.subject)
        source = await self._branches.require_branch(refs.source, refs.source_subject)
        source_tip = source.revision_id

        await self._branches.require_deleted(refs.conflict_resolution, refs.conflict_resolution_subject)
        await self._branches.create_branch_and_verify(
            refs.conflict_resolution, source_tip, refs.conflict_resolution_subject
        )

        merge_base = await self._caller.call(
            f"merge base of {refs.subject}", service.merge_base, refs.source, refs.workspace
        )
        diff = await self._caller.call(
            f"changes in {refs.subject}", service.diff, merge_base.id, workspace.revision_id
        )
        operations = await self._resolution_operations(
            diff.entries, workspace.revision_id, source_tip, refs.subject
        )
        resulting = source_tip
        if operations:
            revision = await self._committer.submit(
                refs.conflict_resolution,
                operations,
                CONFLICT_RESOLUTION_MESSAGE,
                expected_base_revision_id=source_tip,
                subject=refs.conflict_resolution_subject,
                user_id=refs.temporary_owner,
                workspace_id=spec.workspace_id,
            )
            resulting = revision.id
        logger.info(
            "Created {} at {} with {} change(s)", refs.conflict_resolution_subject, resulting, len(operations)
        )
        return _report(WorkspaceUpdateReportStatus.CONFLICT, source_tip, resulting)

    async def _resolution_operations(
        self,
        entries: Sequence[DiffEntry],
        workspace_tip: str,
        resolution_tip: str,
        subject: str,
    ) -> list[FileOperation]:
        """Re-derive the workspace's changes against the resolution branch's files.

        Each path ends up with the content the workspace tip has for it, or
        deleted; when several entries touch one path the last one wins.
        """
        desired: dict[str, bytes | None] = {}
        for entry in entries:
            if entry.is_deleted:
                desired[entry.old_path] = None
                continue
            if entry.is_renamed:
                desired[entry.old_path] = None
            desired[entry.new_path] = await self._read(workspace_tip, entry.new_path, subject)

        operations: list[FileOperation] = []
        for path, content in desired.items():
            exists = await self._exists(resolution_tip, path, subject)
            if content is None:
                if exists:
                    operations.append(DeleteFile(path=path))
            elif exists:
                operations.append(ModifyFile(path=path, content=content))
            else:
                operations.append(AddFile(path=path, content=content))
        return operations

    async def accept_conflict_resolution(
        self,
        spec: WorkspaceSpec,
        changeset: Sequence[FileOperation] | None = None,
        message: str | None = None,
    ) -> Branch:
        """Replace the workspace with its conflict resolution branch.

        ``changeset`` is committed to the resolution branch first when given.
        """
        refs = self._refs(spec)
        resolution = await self._branches.require_branch(refs.conflict_resolution, refs.conflict_resolution_subject)
        resolution_tip = resolution.revision_id
        if changeset:
            revision = await self._committer.submit(
                refs.conflict_resolution,
                changeset,
                message or f"resolve conflicts in {refs.subject}",
                expected_base_revision_id=resolution_tip,
                subject=refs.conflict_resolution_subject,
                user_id=refs.temporary_owner,
                workspace_id=spec.workspace_id,
            )
            resolution_tip = revision.id

        branch = await self._finish_resolution(refs, resolution_tip)
        logger.info("Accepted {}: {} now at {}", refs.conflict_resolution_subject, refs.subject, resolution_tip)
        return branch

    async def discard_changes_conflict_resolution(self, spec: WorkspaceSpec) -> Branch:
        """Drop the workspace's changes: reset it to the source tip and remove the resolution branch."""
        refs = self._refs(spec)
        await self._branches.require_branch(refs.conflict_resolution, refs.conflict_resolution_subject)
        source = await self._branches.require_branch(refs.source, refs.source_subject)
        branch = await self._finish_resolution(refs, source.revision_id)
        logger.info("Discarded changes in {}: reset to {}", refs.subject, source.revision_id)
        return branch

    async def _finish_resolution(self, refs: _WorkspaceRefs, revision_id: str) -> Branch:
        branch = await self._branches.replace_with_backup(
            refs.workspace, revision_id, refs.backup, refs.subject, keep_backup=True
        )
        await self._branches.delete_branch_and_verify(refs.conflict_resolution, refs.conflict_resolution_subject)
        await self._branches.delete_backup(refs.backup, refs.subject)
        return branch

    async def delete_conflict_resolution(self, spec: WorkspaceSpec) -> bool:
        """Remove only the conflict resolution branch; the workspace is untouched."""
        refs = self._refs(spec)
        return await self._branches.delete_branch_and_verify(
            refs.conflict_resolution, refs.conflict_resolution_subject
        )

    # -- Status ----------------------------------------------------------------

    async def get_workspace_update_status(self, spec: WorkspaceSpec) -> WorkspaceStatus:
        """Read-only currency check; changes nothing."""
        refs = self._refs(spec)
        workspace = await self._branches.require_branch(refs.workspace, refs.subject)
        source = await self._branches.require_branch(refs.source, refs.source_subject)
        merge_base = await self._caller.call(
            f"merge base of {refs.subject}", self._caller.service.merge_base, refs.source, refs.workspace
        )
        resolution = await self._branches.get_branch(refs.conflict_resolution, refs.conflict_resolution_subject)
        return WorkspaceStatus(
            workspace_revision_id=workspace.revision_id,
            mainline_revision_id=source.revision_id,
            merge_base_revision_id=merge_base.id,
            is_up_to_date=source.revision_id in (workspace.revision_id, merge_base.id),
            has_conflict_resolution=resolution is not None,
        )

    # -- Files -----------------------------------------------------------------

    async def _read(self, revision_id: str, path: str, subject: str) -> bytes:
        return await self._caller.call(
            f"file {path} at revision {revision_id} of {subject}", self._caller.service.get_file, revision_id, path
        )

    async def _exists(self, revision_id: str, path: str, subject: str) -> bool:
        description = f"file {path} at revision {revision_id} of {subject}"
        try:
            await self._caller.raw(description, self._caller.service.get_file, revision_id, path)
        except RepositoryServiceError as exc:
            if exc.status_code == 404:
                return False
            raise self._caller.translate(exc, description) from exc
        return True


def _report(
    status: WorkspaceUpdateReportStatus, merge_base_revision_id: str, resulting_revision_id: str
) -> WorkspaceUpdateReport:
    return WorkspaceUpdateReport(
        status=status,
        merge_base_revision_id=merge_base_revision_id,
        resulting_revision_id=resulting_revision_id,
    )
