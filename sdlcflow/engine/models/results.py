"""Reports produced by the update engine and the diff projection."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from sdlcflow.engine.models.enums import EntityChangeType, WorkspaceUpdateReportStatus

# -- Workspace update --------------------------------------------------------


class WorkspaceUpdateReport(BaseModel):
    """Outcome of one ``update_workspace`` call.

    ``resulting_revision_id`` is the workspace tip for NO_OP / UPDATED and the
    conflict-resolution branch tip for CONFLICT.
    """

    model_config = ConfigDict(frozen=True)

    status: WorkspaceUpdateReportStatus
    merge_base_revision_id: str | None
    resulting_revision_id: str | None


class WorkspaceStatus(BaseModel):
    """Read-only currency check of a workspace against mainline."""

    model_config = ConfigDict(frozen=True)

    workspace_revision_id: str
    mainline_revision_id: str
    merge_base_revision_id: str | None = None
    is_up_to_date: bool
    has_conflict_resolution: bool = False


# -- Comparison --------------------------------------------------------------


class EntityDiff(BaseModel):
    model_config = ConfigDict(frozen=True)

    change_type: EntityChangeType
    old_logical_path: str | None = None
    new_logical_path: str | None = None


class Comparison(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_revision_id: str
    to_revision_id: str
    entity_diffs: list[EntityDiff] = Field(default_factory=list)
    project_configuration_updated: bool = False
