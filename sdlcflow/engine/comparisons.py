"""Entity-level comparisons between two revisions.

The repository service only knows about files.  The projection below turns a
file diff into entity change records, using each side's project structure to
decide which files are entities and what they are called.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from loguru import logger

from sdlcflow.engine.errors import InternalError, NotFoundError
from sdlcflow.engine.models.enums import EntityChangeType
from sdlcflow.engine.models.repository import DiffEntry
from sdlcflow.engine.models.results import Comparison, EntityDiff
from sdlcflow.engine.revisions import (
    ReferenceSource,
    RevisionAlias,
    RevisionRef,
    ServiceRevisionContext,
    resolve_revision,
)
from sdlcflow.engine.structure import PROJECT_CONFIG_PATH, ProjectStructure, StructureRegistry, load_project_structure

if TYPE_CHECKING:
    from sdlcflow.engine.models.workspace import WorkspaceSpec
    from sdlcflow.engine.references import ReferenceScheme
    from sdlcflow.engine.retry import ServiceCaller


def _canonical(path: str) -> str:
    return path if path.startswith("/") else "/" + path


def _change_type(entry: DiffEntry) -> EntityChangeType:
    if entry.is_deleted:
        return EntityChangeType.DELETE
    if entry.is_new:
        return EntityChangeType.CREATE
    if entry.is_renamed:
        return EntityChangeType.RENAME
    return EntityChangeType.MODIFY


def project_entity_diffs(
    entries: Iterable[DiffEntry],
    from_structure: ProjectStructure,
    to_structure: ProjectStructure,
) -> tuple[list[EntityDiff], bool]:
    """Project file diff entries onto entities.

    Returns the entity diffs and whether the project configuration file
    changed.  Entries for files that neither side recognises as entity files
    are dropped.
    """
    entity_diffs: list[EntityDiff] = []
    configuration_updated = False
    for entry in entries:
        old_path = _canonical(entry.old_path)
        new_path = _canonical(entry.new_path)
        if PROJECT_CONFIG_PATH in (old_path, new_path):
            configuration_updated = True
            continue

        old_directory = from_structure.find_source_directory(old_path)
        new_directory = to_structure.find_source_directory(new_path)
        if old_directory is None and new_directory is None:
            continue

        old_logical = old_directory.file_path_to_entity_path(old_path) if old_directory else old_path
        new_logical = new_directory.file_path_to_entity_path(new_path) if new_directory else new_path
        entity_diffs.append(
            EntityDiff(change_type=_change_type(entry), old_logical_path=old_logical, new_logical_path=new_logical)
        )
    return entity_diffs, configuration_updated


class ComparisonEngine:
    """Computes ``Comparison`` objects for revisions, workspaces and reviews."""

    def __init__(
        self,
        caller: ServiceCaller,
        scheme: ReferenceScheme,
        registry: StructureRegistry,
        project_id: str,
    ) -> None:
        self._caller = caller
        self._scheme = scheme
        self._registry = registry
        self._project_id = project_id

    async def compare_revisions(self, from_revision_id: str, to_revision_id: str, subject: str) -> Comparison:
        service = self._caller.service
        diff = await self._caller.call(
            f"comparison between revisions {from_revision_id} and {to_revision_id} of {subject}",
            service.diff,
            from_revision_id,
            to_revision_id,
        )
        if diff.to_revision_id != to_revision_id:
            msg = (
                f"Comparison of {subject} returned revision {diff.to_revision_id}; "
                f"expected {to_revision_id}"
            )
            raise InternalError(msg)

        from_structure = await load_project_structure(self._caller, from_revision_id, self._registry, subject)
        to_structure = await load_project_structure(self._caller, to_revision_id, self._registry, subject)
        entity_diffs, configuration_updated = project_entity_diffs(diff.entries, from_structure, to_structure)
        logger.debug(
            "Compared {} .. {}: {} entity diff(s), configuration updated={}",
            from_revision_id,
            to_revision_id,
            len(entity_diffs),
            configuration_updated,
        )
        return Comparison(
            from_revision_id=from_revision_id,
            to_revision_id=to_revision_id,
            entity_diffs=entity_diffs,
            project_configuration_updated=configuration_updated,
        )

    async def compute_comparison(
        self,
        from_ref: RevisionRef,
        to_ref: RevisionRef = RevisionAlias.HEAD,
        *,
        from_source: ReferenceSource | None = None,
        to_source: ReferenceSource | None = None,
    ) -> Comparison:
        """Compare two revisions, each resolved against its source (the project by default)."""
        project = ReferenceSource.for_project(self._project_id)
        from_source = from_source or project
        to_source = to_source or project
        from_revision_id = await self._resolve(from_ref, from_source)
        to_revision_id = await self._resolve(to_ref, to_source)
        return await self.compare_revisions(from_revision_id, to_revision_id, to_source.describe())

    async def _resolve(self, ref: RevisionRef, source: ReferenceSource) -> str:
        context = ServiceRevisionContext(self._caller, self._scheme, source)
        revision_id = await resolve_revision(ref, context)
        if revision_id is None:
            msg = f"No revisions in {source.describe()}"
            raise NotFoundError(msg)
        return revision_id

    # -- Workspace / review comparisons ----------------------------------------

    async def workspace_creation_comparison(self, spec: WorkspaceSpec) -> Comparison:
        """Changes made in the workspace since it diverged from its source branch."""
        subject = ReferenceSource.for_workspace(self._project_id, spec).describe()
        workspace_ref = self._scheme.branch_name(spec)
        service = self._caller.service
        tip = await self._caller.call(subject, service.get_branch, workspace_ref)
        base = await self._caller.call(
            f"merge base of {subject}", service.merge_base, self._scheme.source_branch(spec), workspace_ref
        )
        return await self.compare_revisions(base.id, tip.revision_id, subject)

    async def workspace_project_comparison(self, spec: WorkspaceSpec) -> Comparison:
        """Differences between the source branch's current tip and the workspace."""
        subject = ReferenceSource.for_workspace(self._project_id, spec).describe()
        service = self._caller.service
        tip = await self._caller.call(subject, service.get_branch, self._scheme.branch_name(spec))
        source = await self._caller.call(
            f"project {self._project_id}", service.get_branch, self._scheme.source_branch(spec)
        )
        return await self.compare_revisions(source.revision_id, tip.revision_id, subject)

    async def review_comparison(self, review_id: str) -> Comparison:
        source = ReferenceSource.for_review(self._project_id, review_id)
        subject = source.describe()
        proposal = await self._caller.call(subject, self._caller.service.get_proposal, review_id)
        if proposal.base_revision_id is None or proposal.head_revision_id is None:
            msg = f"Unable to get revisions for {subject}"
            raise NotFoundError(msg)
        return await self.compare_revisions(proposal.base_revision_id, proposal.head_revision_id, subject)
