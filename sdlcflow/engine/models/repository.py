"""Value types returned by the versioned repository service."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class Branch(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    revision_id: str


class Revision(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    message: str = ""
    parent_ids: tuple[str, ...] = ()
    authored_at: datetime | None = None


class Tag(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    revision_id: str
    message: str | None = None


class DiffEntry(BaseModel):
    """One file-level entry of a two-revision diff.

    Paths are as reported by the service (no leading ``/``).
    """

    model_config = ConfigDict(frozen=True)

    old_path: str
    new_path: str
    is_new: bool = False
    is_deleted: bool = False
    is_renamed: bool = False


class DiffResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    to_revision_id: str
    """Commit id the service actually diffed against (checked by callers)."""

    entries: tuple[DiffEntry, ...] = Field(default_factory=tuple)


class RebaseStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    in_progress: bool
    merge_error: str | None = None


class ProposalInfo(BaseModel):
    """Integration proposal (merge request) as seen by the engine."""

    model_config = ConfigDict(frozen=True)

    proposal_id: str
    source_ref: str
    target_ref: str
    base_revision_id: str | None = None
    head_revision_id: str | None = None
