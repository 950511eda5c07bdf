"""Changeset operations and the service-level commit actions they map to.

Callers express a changeset as a list of ``FileOperation`` parts; the commit
protocol turns each into a ``CommitAction`` understood by the repository
service.  Paths are repository paths; a leading ``/`` is optional.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from sdlcflow.engine.models.enums import CommitActionType

# ---------------------------------------------------------------------------
# File operations
# ---------------------------------------------------------------------------


class AddFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["add"] = "add"
    path: str
    content: bytes


class ModifyFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["modify"] = "modify"
    path: str
    content: bytes


class DeleteFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["delete"] = "delete"
    path: str


class MoveFile(BaseModel):
    """Move ``path`` to ``new_path``.

    When ``content`` is ``None`` the file keeps its prior content, which the
    commit protocol looks up before submitting.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["move"] = "move"
    path: str
    new_path: str
    content: bytes | None = None


FileOperation = Annotated[AddFile | ModifyFile | DeleteFile | MoveFile, Field(discriminator="kind")]


def target_path(operation: FileOperation) -> str:
    """Path an operation writes to (the destination for moves)."""
    if isinstance(operation, MoveFile):
        return operation.new_path
    return operation.path


# ---------------------------------------------------------------------------
# Commit actions
# ---------------------------------------------------------------------------


class CommitAction(BaseModel):
    """One file action in a remote atomic commit."""

    model_config = ConfigDict(frozen=True)

    action: CommitActionType
    file_path: str
    previous_path: str | None = None
    content: bytes | None = None

    @classmethod
    def create(cls, path: str, content: bytes) -> CommitAction:
        return cls(action=CommitActionType.CREATE, file_path=path, content=content)

    @classmethod
    def update(cls, path: str, content: bytes) -> CommitAction:
        return cls(action=CommitActionType.UPDATE, file_path=path, content=content)

    @classmethod
    def delete(cls, path: str) -> CommitAction:
        return cls(action=CommitActionType.DELETE, file_path=path)

    @classmethod
    def move(cls, previous_path: str, path: str, content: bytes | None = None) -> CommitAction:
        return cls(action=CommitActionType.MOVE, file_path=path, previous_path=previous_path, content=content)
