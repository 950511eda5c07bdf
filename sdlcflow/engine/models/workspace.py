"""Workspace identity and version identifiers.

A ``WorkspaceSpec`` identifies exactly one repository branch; the mapping is
implemented by ``sdlcflow.engine.references.ReferenceScheme``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, field_serializer, field_validator, model_validator

from sdlcflow.engine.errors import InvalidWorkspaceIdError
from sdlcflow.engine.models.enums import WorkspaceAccessType, WorkspaceType

# ---------------------------------------------------------------------------
# Version ids
# ---------------------------------------------------------------------------

_VERSION_PART = r"(0|[1-9]\d{0,9})"
_VERSION_PATTERN = re.compile(rf"{_VERSION_PART}\.{_VERSION_PART}\.{_VERSION_PART}")


@dataclass(frozen=True, order=True)
class VersionId:
    """Semantic ``major.minor.patch`` version, ordered numerically."""

    major: int
    minor: int
    patch: int

    def __post_init__(self) -> None:
        if min(self.major, self.minor, self.patch) < 0:
            msg = f"Version parts must be non-negative: {self.major}.{self.minor}.{self.patch}"
            raise ValueError(msg)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    @classmethod
    def parse(cls, text: str) -> VersionId:
        """Parse ``major.minor.patch``.  Raises ``ValueError`` on malformed input."""
        version = cls.try_parse(text)
        if version is None:
            msg = f"Invalid version id: {text!r}"
            raise ValueError(msg)
        return version

    @classmethod
    def try_parse(cls, text: str | None) -> VersionId | None:
        if text is None:
            return None
        match = _VERSION_PATTERN.fullmatch(text)
        if match is None:
            return None
        return cls(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    def next_major(self) -> VersionId:
        return VersionId(self.major + 1, 0, 0)

    def next_minor(self) -> VersionId:
        return VersionId(self.major, self.minor + 1, 0)

    def next_patch(self) -> VersionId:
        return VersionId(self.major, self.minor, self.patch + 1)


# ---------------------------------------------------------------------------
# Workspace ids
# ---------------------------------------------------------------------------

_EDGE_CHARS = frozenset("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789_")
_INNER_CHARS = _EDGE_CHARS | {"-", "."}


def is_valid_workspace_id(workspace_id: str | None) -> bool:
    if not workspace_id:
        return False
    if workspace_id[0] not in _EDGE_CHARS or workspace_id[-1] not in _EDGE_CHARS:
        return False
    if ".." in workspace_id:
        return False
    return all(c in _INNER_CHARS for c in workspace_id[1:-1])


def validate_workspace_id(workspace_id: str) -> str:
    """Return ``workspace_id`` unchanged or raise ``InvalidWorkspaceIdError``."""
    if not is_valid_workspace_id(workspace_id):
        raise InvalidWorkspaceIdError(workspace_id)
    return workspace_id


# ---------------------------------------------------------------------------
# Workspace spec
# ---------------------------------------------------------------------------


class WorkspaceSpec(BaseModel):
    """Identity of one workspace branch.

    Attributes
    ----------
    workspace_id:
        Validated at construction; see ``validate_workspace_id``.
    type:
        USER workspaces belong to ``owner_user_id``; GROUP workspaces are shared.
    access_type:
        WORKSPACE for the editable branch, or the derived CONFLICT_RESOLUTION /
        BACKUP branches managed by the update engine.
    owner_user_id:
        Present iff ``type`` is USER.
    patch_version:
        Set for workspaces that target a patch release branch.
    """

    model_config = ConfigDict(frozen=True)

    workspace_id: str
    type: WorkspaceType = WorkspaceType.USER
    access_type: WorkspaceAccessType = WorkspaceAccessType.WORKSPACE
    owner_user_id: str | None = None
    patch_version: VersionId | None = None

    @field_validator("workspace_id")
    @classmethod
    def _check_workspace_id(cls, value: str) -> str:
        return validate_workspace_id(value)

    @field_validator("patch_version", mode="before")
    @classmethod
    def _parse_patch_version(cls, value: object) -> object:
        if isinstance(value, str):
            return VersionId.parse(value)
        return value

    @field_serializer("patch_version")
    def _dump_patch_version(self, value: VersionId | None) -> str | None:
        return None if value is None else str(value)

    @model_validator(mode="after")
    def _check_owner(self) -> WorkspaceSpec:
        match self.type:
            case WorkspaceType.USER:
                if not self.owner_user_id:
                    msg = "owner_user_id is required for user workspaces"
                    raise ValueError(msg)
                # default delimiter; ReferenceScheme.branch_name checks the configured one
                if "/" in self.owner_user_id:
                    msg = f"Invalid owner user id: {self.owner_user_id!r}"
                    raise ValueError(msg)
            case WorkspaceType.GROUP:
                if self.owner_user_id is not None:
                    msg = "owner_user_id must not be set for group workspaces"
                    raise ValueError(msg)
        return self

    # -- Constructors ----------------------------------------------------------

    @classmethod
    def user(
        cls,
        workspace_id: str,
        owner_user_id: str,
        *,
        access_type: WorkspaceAccessType = WorkspaceAccessType.WORKSPACE,
        patch_version: VersionId | None = None,
    ) -> WorkspaceSpec:
        return cls(
            workspace_id=workspace_id,
            type=WorkspaceType.USER,
            access_type=access_type,
            owner_user_id=owner_user_id,
            patch_version=patch_version,
        )

    @classmethod
    def group(
        cls,
        workspace_id: str,
        *,
        access_type: WorkspaceAccessType = WorkspaceAccessType.WORKSPACE,
        patch_version: VersionId | None = None,
    ) -> WorkspaceSpec:
        return cls(
            workspace_id=workspace_id,
            type=WorkspaceType.GROUP,
            access_type=access_type,
            patch_version=patch_version,
        )

    def with_access_type(self, access_type: WorkspaceAccessType) -> WorkspaceSpec:
        """Same workspace in a different lifecycle phase (e.g. its BACKUP)."""
        return self.model_copy(update={"access_type": access_type})

    def describe(self) -> str:
        """Human-readable description, e.g. ``user workspace ws1``."""
        kind = "user" if self.type == WorkspaceType.USER else "group"
        match self.access_type:
            case WorkspaceAccessType.CONFLICT_RESOLUTION:
                phase = "workspace with conflict resolution"
            case WorkspaceAccessType.BACKUP:
                phase = "backup workspace"
            case _:
                phase = "workspace"
        text = f"{kind} {phase} {self.workspace_id}"
        if self.patch_version is not None:
            text += f" for patch {self.patch_version}"
        return text
