"""Engine facade.

``WorkspaceEngine`` wires the components for one project and is the single
entry point for callers (the CLI, or an embedding service)::

    async with WorkspaceEngine.from_settings(get_settings()) as engine:
        report = await engine.update_workspace(WorkspaceSpec.user("ws1", "alice"))

It owns the background task processor; ``aclose`` drains pending cleanup
tasks before returning.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from loguru import logger

from sdlcflow.engine.background import BackgroundTaskProcessor
from sdlcflow.engine.branches import BranchOperations
from sdlcflow.engine.commits import ChangesetCommitter
from sdlcflow.engine.comparisons import ComparisonEngine
from sdlcflow.engine.errors import FatalError, NotFoundError, RepositoryServiceError
from sdlcflow.engine.log import workspace_context
from sdlcflow.engine.models.enums import RevisionAlias
from sdlcflow.engine.references import ReferenceScheme
from sdlcflow.engine.retry import ServiceCaller
from sdlcflow.engine.revisions import ReferenceSource, RevisionRef, ServiceRevisionContext, resolve_revision
from sdlcflow.engine.settings import EngineConfig
from sdlcflow.engine.structure import StructureRegistry, default_registry
from sdlcflow.engine.updates import WorkspaceUpdateEngine

if TYPE_CHECKING:
    from contextlib import AbstractContextManager
    from types import TracebackType

    from sdlcflow.engine.models.changes import FileOperation
    from sdlcflow.engine.models.repository import Branch, Revision, Tag
    from sdlcflow.engine.models.results import Comparison, WorkspaceStatus, WorkspaceUpdateReport
    from sdlcflow.engine.models.workspace import VersionId, WorkspaceSpec
    from sdlcflow.engine.service.base import VersionedRepositoryService
    from sdlcflow.engine.settings import EngineSettings


class WorkspaceEngine:
    def __init__(
        self,
        service: VersionedRepositoryService,
        project_id: str,
        config: EngineConfig | None = None,
        *,
        registry: StructureRegistry | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.project_id = project_id
        self.service = service
        self.scheme = ReferenceScheme(self.config.naming)
        self.background = BackgroundTaskProcessor(self.config.background_retry)

        self._caller = ServiceCaller(service, self.config.retry)
        self._branches = BranchOperations(self._caller, self.background, self.config)
        self._committer = ChangesetCommitter(self._caller, self._branches, self.scheme, self.config)
        self._updates = WorkspaceUpdateEngine(
            self._caller, self._branches, self._committer, self.scheme, self.config, project_id
        )
        self._comparisons = ComparisonEngine(self._caller, self.scheme, registry or default_registry(), project_id)

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> WorkspaceEngine:
        """Engine backed by GitLab, configured entirely from settings."""
        from sdlcflow.engine.service.gitlab import GitLabRepositoryService

        if not settings.project_id:
            msg = "SDLC_PROJECT_ID is not set"
            raise FatalError(msg)
        return cls(GitLabRepositoryService.from_settings(settings), settings.project_id, settings.engine_config())

    async def __aenter__(self) -> WorkspaceEngine:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self, timeout: float | None = 30.0) -> None:
        """Finish background cleanup, then release the service's resources."""
        await self.background.shutdown(timeout)
        aclose = getattr(self.service, "aclose", None)
        if aclose is not None:
            await aclose()

    def _project_subject(self) -> str:
        return ReferenceSource.for_project(self.project_id).describe()

    def _scope(self, spec: WorkspaceSpec) -> AbstractContextManager[None]:
        return workspace_context(self.scheme.branch_name(spec))

    # -- Changesets ------------------------------------------------------------

    async def submit_changeset(
        self,
        spec: WorkspaceSpec,
        changeset: Sequence[FileOperation],
        message: str,
        *,
        expected_base_revision_id: str | None = None,
    ) -> Revision:
        """Commit ``changeset`` to the workspace branch as one logical update."""
        with self._scope(spec):
            return await self._committer.submit(
                self.scheme.branch_name(spec),
                changeset,
                message,
                expected_base_revision_id=expected_base_revision_id,
                subject=ReferenceSource.for_workspace(self.project_id, spec).describe(),
                user_id=spec.owner_user_id or spec.type.value,
                workspace_id=spec.workspace_id,
            )

    # -- Workspace update ------------------------------------------------------

    async def update_workspace(self, spec: WorkspaceSpec) -> WorkspaceUpdateReport:
        with self._scope(spec):
            return await self._updates.update_workspace(spec)

    async def get_workspace_update_status(self, spec: WorkspaceSpec) -> WorkspaceStatus:
        with self._scope(spec):
            return await self._updates.get_workspace_update_status(spec)

    async def create_conflict_resolution(self, spec: WorkspaceSpec) -> WorkspaceUpdateReport:
        with self._scope(spec):
            return await self._updates.create_conflict_resolution(spec)

    async def accept_conflict_resolution(
        self,
        spec: WorkspaceSpec,
        changeset: Sequence[FileOperation] | None = None,
        message: str | None = None,
    ) -> Branch:
        with self._scope(spec):
            return await self._updates.accept_conflict_resolution(spec, changeset, message)

    async def discard_conflict_resolution(self, spec: WorkspaceSpec) -> Branch:
        with self._scope(spec):
            return await self._updates.discard_changes_conflict_resolution(spec)

    async def delete_conflict_resolution(self, spec: WorkspaceSpec) -> bool:
        with self._scope(spec):
            return await self._updates.delete_conflict_resolution(spec)

    # -- Comparisons -----------------------------------------------------------

    async def compute_comparison(
        self,
        from_ref: RevisionRef,
        to_ref: RevisionRef = RevisionAlias.HEAD,
        *,
        from_source: ReferenceSource | None = None,
        to_source: ReferenceSource | None = None,
    ) -> Comparison:
        return await self._comparisons.compute_comparison(
            from_ref, to_ref, from_source=from_source, to_source=to_source
        )

    async def workspace_creation_comparison(self, spec: WorkspaceSpec) -> Comparison:
        with self._scope(spec):
            return await self._comparisons.workspace_creation_comparison(spec)

    async def workspace_project_comparison(self, spec: WorkspaceSpec) -> Comparison:
        with self._scope(spec):
            return await self._comparisons.workspace_project_comparison(spec)

    async def review_comparison(self, review_id: str) -> Comparison:
        return await self._comparisons.review_comparison(review_id)

    # -- Revisions -------------------------------------------------------------

    async def resolve_revision(self, ref: RevisionRef, source: ReferenceSource | None = None) -> str:
        """Resolve ``ref`` against ``source`` (the project by default)."""
        source = source or ReferenceSource.for_project(self.project_id)
        context = ServiceRevisionContext(self._caller, self.scheme, source)
        revision_id = await resolve_revision(ref, context)
        if revision_id is None:
            msg = f"No revisions in {source.describe()}"
            raise NotFoundError(msg)
        return revision_id

    # -- Versions --------------------------------------------------------------

    async def create_version_tag(
        self, version: VersionId, revision_ref: RevisionRef = RevisionAlias.HEAD, message: str | None = None
    ) -> Tag:
        """Tag a project revision as release ``version``."""
        revision_id = await self.resolve_revision(revision_ref)
        subject = ReferenceSource.for_version(self.project_id, version).describe()
        tag = await self._caller.call(
            subject,
            self.service.create_tag,
            self.scheme.version_tag_name(version),
            revision_id,
            message or f"Release tag for version {version}",
        )
        logger.info("Created {} at {}", subject, revision_id)
        return tag

    async def get_version_tag(self, version: VersionId) -> Tag:
        subject = ReferenceSource.for_version(self.project_id, version).describe()
        try:
            return await self._caller.raw(subject, self.service.get_tag, self.scheme.version_tag_name(version))
        except RepositoryServiceError as exc:
            if exc.status_code == 404:
                msg = f"Unknown {subject}"
                raise NotFoundError(msg) from exc
            raise self._caller.translate(exc, subject) from exc

    async def create_patch_release_branch(self, source_version: VersionId) -> Branch:
        """Create the release branch for the patch after ``source_version``, cut from its tag."""
        tag = await self.get_version_tag(source_version)
        patch_version = source_version.next_patch()
        subject = f"patch release branch {patch_version} of {self._project_subject()}"
        branch = await self._branches.create_branch_and_verify(
            self.scheme.patch_release_branch_name(patch_version), tag.revision_id, subject
        )
        logger.info("Created {} from version {}", subject, source_version)
        return branch
