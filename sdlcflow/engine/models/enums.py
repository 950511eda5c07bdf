"""Shared enumerations used across the engine."""

from __future__ import annotations

from enum import StrEnum

# -- Workspace ---------------------------------------------------------------


class WorkspaceType(StrEnum):
    USER = "user"
    GROUP = "group"


class WorkspaceAccessType(StrEnum):
    """Lifecycle phase of a workspace branch."""

    WORKSPACE = "workspace"
    CONFLICT_RESOLUTION = "conflict_resolution"
    BACKUP = "backup"


# -- Revisions ---------------------------------------------------------------


class RevisionAlias(StrEnum):
    BASE = "base"
    HEAD = "head"


class SourceKind(StrEnum):
    """What a reference source points at."""

    PROJECT = "project"
    WORKSPACE = "workspace"
    VERSION = "version"
    REVIEW = "review"


# -- Changes -----------------------------------------------------------------


class CommitActionType(StrEnum):
    """Action verbs understood by the repository service's commit call."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    MOVE = "move"


class EntityChangeType(StrEnum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    RENAME = "rename"


# -- Workspace update --------------------------------------------------------


class WorkspaceUpdateReportStatus(StrEnum):
    NO_OP = "no_op"
    UPDATED = "updated"
    CONFLICT = "conflict"
