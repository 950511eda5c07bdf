"""Versioned repository service interface.

The engine owns no durable state: branches, commits, diffs, merge bases and
rebase execution all live in an external service reached through this
protocol.  Implementations raise ``RepositoryServiceError`` with an HTTP-like
status code for every failure so that retry classification is uniform.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from sdlcflow.engine.models.changes import CommitAction
from sdlcflow.engine.models.repository import (
    Branch,
    DiffResult,
    ProposalInfo,
    RebaseStatus,
    Revision,
    Tag,
)


@runtime_checkable
class VersionedRepositoryService(Protocol):
    """Async protocol over one repository (project) in the backing service."""

    # -- Branches --------------------------------------------------------------

    async def get_branch(self, name: str) -> Branch:
        """Return the branch.  Raises ``RepositoryServiceError(404)`` if absent."""
        ...

    async def create_branch(self, name: str, from_revision_id: str) -> Branch:
        ...

    async def delete_branch(self, name: str) -> bool:
        """Delete a branch.  Deleting an absent branch is success."""
        ...

    # -- Commits ---------------------------------------------------------------

    async def commit(self, ref: str, message: str, actions: list[CommitAction]) -> Revision:
        """Apply ``actions`` atomically as one commit on branch ``ref``."""
        ...

    async def list_revisions(self, ref: str, path: str | None = None, limit: int | None = None) -> list[Revision]:
        """First-parent history of ``ref``, newest first.

        Only revisions changing ``path`` are returned when it is given, and at
        most ``limit`` of them when that is given.
        """
        ...

    async def list_commit_refs(self, revision_id: str) -> list[str]:
        """Names of the branches whose history contains ``revision_id``."""
        ...

    # -- Diffs -----------------------------------------------------------------

    async def diff(self, from_revision_id: str, to_revision_id: str) -> DiffResult:
        ...

    async def merge_base(self, ref_a: str, ref_b: str) -> Revision:
        ...

    # -- Files -----------------------------------------------------------------

    async def get_file(self, ref: str, path: str) -> bytes:
        """Raw content of ``path`` at ``ref``.  Raises 404 if absent."""
        ...

    # -- Integration proposals -------------------------------------------------

    async def create_proposal(self, source_ref: str, target_ref: str, title: str) -> str:
        """Open a proposal to integrate ``source_ref`` into ``target_ref``; returns its id."""
        ...

    async def get_proposal(self, proposal_id: str) -> ProposalInfo:
        ...

    async def rebase(self, proposal_id: str) -> None:
        """Start rebasing the proposal's source onto its target (asynchronous)."""
        ...

    async def get_rebase_status(self, proposal_id: str) -> RebaseStatus:
        ...

    async def close_proposal(self, proposal_id: str) -> None:
        ...

    # -- Tags ------------------------------------------------------------------

    async def create_tag(self, name: str, revision_id: str, message: str | None = None) -> Tag:
        ...

    async def get_tag(self, name: str) -> Tag:
        ...

    # -- Housekeeping ----------------------------------------------------------

    async def has_active_pipelines(self, ref: str) -> bool:
        """Whether checks are pending or running on ``ref``."""
        ...

    def invalidate_credentials(self) -> None:
        """Drop cached credentials after the service rejected them."""
        ...
