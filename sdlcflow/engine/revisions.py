"""Revision references and their resolution.

A revision may be named symbolically (``base``, ``head`` and its aliases
``current`` / ``latest``) or by explicit id.  Symbolic names are resolved
against a ``RevisionAccessContext``, which knows the ordered history of one
reference source (project mainline, a workspace, a version tag or a review).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from sdlcflow.engine.errors import NotFoundError
from sdlcflow.engine.models.enums import RevisionAlias, SourceKind

if TYPE_CHECKING:
    from sdlcflow.engine.models.repository import Revision
    from sdlcflow.engine.models.workspace import VersionId, WorkspaceSpec
    from sdlcflow.engine.references import ReferenceScheme
    from sdlcflow.engine.retry import ServiceCaller

RevisionRef = RevisionAlias | str

_HEAD_ALIASES = frozenset({"head", "current", "latest"})


def parse_revision_ref(text: str) -> RevisionRef:
    """Map user input to an alias, or keep it as an explicit revision id."""
    lowered = text.lower()
    if lowered == RevisionAlias.BASE:
        return RevisionAlias.BASE
    if lowered in _HEAD_ALIASES:
        return RevisionAlias.HEAD
    return text


@runtime_checkable
class RevisionAccessContext(Protocol):
    """History of one reference, as seen by revision resolution."""

    async def get_base_revision(self) -> Revision | None:
        """Oldest revision, or ``None`` if there is no history yet."""
        ...

    async def get_current_revision(self) -> Revision | None:
        """Newest revision, or ``None`` if there is no history yet."""
        ...

    async def get_revisions(self) -> list[Revision]:
        """All revisions, oldest first."""
        ...


async def resolve_revision(ref: RevisionRef, context: RevisionAccessContext) -> str | None:
    """Resolve ``ref`` to a concrete revision id.

    Explicit ids pass through unchanged without consulting the context.
    ``None`` means the context has no revisions, which callers must handle
    (it is not a NotFound).
    """
    if not isinstance(ref, RevisionAlias):
        ref = parse_revision_ref(ref)
    match ref:
        case RevisionAlias.BASE:
            revision = await context.get_base_revision()
        case RevisionAlias.HEAD:
            revision = await context.get_current_revision()
        case _:
            return ref
    return None if revision is None else revision.id


# ---------------------------------------------------------------------------
# Reference sources
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReferenceSource:
    """What a revision context reads from.

    One variant per ``kind``; only the fields for that kind are set.  Use the
    ``for_*`` constructors rather than building instances directly.
    """

    kind: SourceKind
    project_id: str
    workspace: WorkspaceSpec | None = None
    version: VersionId | None = None
    review_id: str | None = None

    @classmethod
    def for_project(cls, project_id: str) -> ReferenceSource:
        return cls(SourceKind.PROJECT, project_id)

    @classmethod
    def for_workspace(cls, project_id: str, workspace: WorkspaceSpec) -> ReferenceSource:
        return cls(SourceKind.WORKSPACE, project_id, workspace=workspace)

    @classmethod
    def for_version(cls, project_id: str, version: VersionId) -> ReferenceSource:
        return cls(SourceKind.VERSION, project_id, version=version)

    @classmethod
    def for_review(cls, project_id: str, review_id: str) -> ReferenceSource:
        return cls(SourceKind.REVIEW, project_id, review_id=review_id)

    def describe(self) -> str:
        match self.kind:
            case SourceKind.WORKSPACE:
                assert self.workspace is not None
                return f"{self.workspace.describe()} of project {self.project_id}"
            case SourceKind.VERSION:
                return f"version {self.version} of project {self.project_id}"
            case SourceKind.REVIEW:
                return f"review {self.review_id} of project {self.project_id}"
            case _:
                return f"project {self.project_id}"


async def source_reference(source: ReferenceSource, scheme: ReferenceScheme, caller: ServiceCaller) -> str:
    """The branch or tag name a source reads from."""
    match source.kind:
        case SourceKind.WORKSPACE:
            assert source.workspace is not None
            return scheme.branch_name(source.workspace)
        case SourceKind.VERSION:
            assert source.version is not None
            return scheme.version_tag_name(source.version)
        case SourceKind.REVIEW:
            assert source.review_id is not None
            proposal = await caller.call(source.describe(), caller.service.get_proposal, source.review_id)
            return proposal.source_ref
        case _:
            return scheme.mainline


class ServiceRevisionContext:
    """Revision context backed by the repository service's commit listing.

    When ``path`` is given only revisions touching that file are considered;
    ``path_description`` (e.g. an entity path) then replaces the raw file path
    in error messages.
    """

    def __init__(
        self,
        caller: ServiceCaller,
        scheme: ReferenceScheme,
        source: ReferenceSource,
        *,
        path: str | None = None,
        path_description: str | None = None,
    ) -> None:
        self._caller = caller
        self._scheme = scheme
        self._source = source
        self._path = path
        self._path_description = path_description
        self._revisions: list[Revision] | None = None

    def describe(self) -> str:
        subject = self._source.describe()
        if self._path is not None:
            subject = f"{self._path_description or self._path} in {subject}"
        return subject

    async def get_revisions(self) -> list[Revision]:
        if self._revisions is None:
            ref = await source_reference(self._source, self._scheme, self._caller)
            newest_first = await self._caller.call(
                f"revisions of {self.describe()}",
                self._caller.service.list_revisions,
                ref,
                self._path,
            )
            self._revisions = list(reversed(newest_first))
        return self._revisions

    async def get_base_revision(self) -> Revision | None:
        """Oldest revision, except that a workspace's base is where it left its source branch."""
        if self._source.kind == SourceKind.WORKSPACE:
            assert self._source.workspace is not None
            ref = await source_reference(self._source, self._scheme, self._caller)
            return await self._caller.call(
                f"merge base of {self._source.describe()}",
                self._caller.service.merge_base,
                self._scheme.source_branch(self._source.workspace),
                ref,
            )
        revisions = await self.get_revisions()
        return revisions[0] if revisions else None

    async def get_current_revision(self) -> Revision | None:
        revisions = await self.get_revisions()
        return revisions[-1] if revisions else None

    async def get_revision(self, revision_id: str) -> Revision:
        """Look up one revision of this context by id."""
        for revision in await self.get_revisions():
            if revision.id == revision_id:
                return revision
        msg = f"Unknown revision {revision_id} of {self.describe()}"
        raise NotFoundError(msg)

