"""Data models for the workspace engine."""

from sdlcflow.engine.models.changes import (
    AddFile,
    CommitAction,
    DeleteFile,
    FileOperation,
    ModifyFile,
    MoveFile,
)
from sdlcflow.engine.models.enums import (
    CommitActionType,
    EntityChangeType,
    RevisionAlias,
    SourceKind,
    WorkspaceAccessType,
    WorkspaceType,
    WorkspaceUpdateReportStatus,
)
from sdlcflow.engine.models.repository import (
    Branch,
    DiffEntry,
    DiffResult,
    ProposalInfo,
    RebaseStatus,
    Revision,
    Tag,
)
from sdlcflow.engine.models.results import (
    Comparison,
    EntityDiff,
    WorkspaceStatus,
    WorkspaceUpdateReport,
)
from sdlcflow.engine.models.workspace import VersionId, WorkspaceSpec

__all__ = [
    # Changes
    "AddFile",
    # Repository
    "Branch",
    "CommitAction",
    # Enums
    "CommitActionType",
    # Results
    "Comparison",
    "DeleteFile",
    "DiffEntry",
    "DiffResult",
    "EntityChangeType",
    "EntityDiff",
    "FileOperation",
    "ModifyFile",
    "MoveFile",
    "ProposalInfo",
    "RebaseStatus",
    "Revision",
    "RevisionAlias",
    "SourceKind",
    "Tag",
    # Workspace
    "VersionId",
    "WorkspaceAccessType",
    "WorkspaceSpec",
    "WorkspaceStatus",
    "WorkspaceType",
    "WorkspaceUpdateReport",
    "WorkspaceUpdateReportStatus",
]
