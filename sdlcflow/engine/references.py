"""Reference naming scheme.

Encodes workspace identity and lifecycle phase into repository branch names
and version ids into release tag names::

    workspace/alice/my-change            user workspace
    group/shared-change                  group workspace
    resolution/alice/my-change           user conflict resolution
    group-backup/shared-change           group backup
    patch/workspace/1.2.0/alice/fix      user workspace targeting patch 1.2.0
    patch/main/1.2.0                     patch release branch
    tmp/alice/my-change/<random>         temporary branch
    release-1.2.0                        release tag

The repository's branch namespace is shared with content unrelated to the
engine, so every ``parse_*`` method returns ``None`` for names it does not
recognise rather than raising.
"""

from __future__ import annotations

import base64
import secrets
import time

from sdlcflow.engine.errors import FatalError
from sdlcflow.engine.models.enums import WorkspaceAccessType, WorkspaceType
from sdlcflow.engine.models.workspace import VersionId, WorkspaceSpec, is_valid_workspace_id
from sdlcflow.engine.settings import ReferenceNaming


class ReferenceScheme:
    """Bidirectional mapping between engine identities and reference names."""

    def __init__(self, naming: ReferenceNaming | None = None) -> None:
        self.naming = naming or ReferenceNaming()
        n = self.naming
        self._prefixes: dict[tuple[WorkspaceType, WorkspaceAccessType], str] = {
            (WorkspaceType.USER, WorkspaceAccessType.WORKSPACE): n.user_workspace,
            (WorkspaceType.USER, WorkspaceAccessType.CONFLICT_RESOLUTION): n.user_conflict_resolution,
            (WorkspaceType.USER, WorkspaceAccessType.BACKUP): n.user_backup,
            (WorkspaceType.GROUP, WorkspaceAccessType.WORKSPACE): n.group_workspace,
            (WorkspaceType.GROUP, WorkspaceAccessType.CONFLICT_RESOLUTION): n.group_conflict_resolution,
            (WorkspaceType.GROUP, WorkspaceAccessType.BACKUP): n.group_backup,
        }
        self._by_prefix = {prefix: key for key, prefix in self._prefixes.items()}
        if len(self._by_prefix) != len(self._prefixes):
            msg = "Workspace branch prefixes must be distinct"
            raise ValueError(msg)

    @property
    def mainline(self) -> str:
        return self.naming.mainline

    def source_branch(self, spec: WorkspaceSpec) -> str:
        """Branch a workspace is created from and updated against."""
        if spec.patch_version is not None:
            return self.patch_release_branch_name(spec.patch_version)
        return self.mainline

    # -- Workspace branches ----------------------------------------------------

    def branch_name(self, spec: WorkspaceSpec) -> str:
        d = self.naming.delimiter
        for segment in (spec.owner_user_id, spec.workspace_id):
            if segment and d in segment:
                msg = f"{segment!r} contains the reference delimiter {d!r}"
                raise FatalError(msg)
        parts = [self._prefixes[(spec.type, spec.access_type)]]
        if spec.patch_version is not None:
            parts = [self.naming.patch, parts[0], str(spec.patch_version)]
        if spec.type == WorkspaceType.USER:
            parts.append(spec.owner_user_id or "")
        parts.append(spec.workspace_id)
        return d.join(parts)

    def parse_branch_name(self, name: str | None) -> WorkspaceSpec | None:
        if not name:
            return None
        segments = name.split(self.naming.delimiter)
        patch_version: VersionId | None = None
        if segments[0] == self.naming.patch and len(segments) >= 3 and segments[1] in self._by_prefix:
            patch_version = VersionId.try_parse(segments[2])
            if patch_version is None:
                return None
            segments = segments[1:2] + segments[3:]

        key = self._by_prefix.get(segments[0])
        if key is None:
            return None
        workspace_type, access_type = key

        if workspace_type == WorkspaceType.USER:
            if len(segments) != 3 or not segments[1]:
                return None
            owner: str | None = segments[1]
        else:
            if len(segments) != 2:
                return None
            owner = None

        workspace_id = segments[-1]
        if not is_valid_workspace_id(workspace_id):
            return None
        return WorkspaceSpec(
            workspace_id=workspace_id,
            type=workspace_type,
            access_type=access_type,
            owner_user_id=owner,
            patch_version=patch_version,
        )

    def is_workspace_branch_name(self, name: str | None) -> bool:
        return self.parse_branch_name(name) is not None

    # -- Release tags ----------------------------------------------------------

    def version_tag_name(self, version: VersionId) -> str:
        return f"{self.naming.release_tag}{version}"

    def parse_version_tag_name(self, name: str | None) -> VersionId | None:
        if not name or not name.startswith(self.naming.release_tag):
            return None
        return VersionId.try_parse(name[len(self.naming.release_tag) :])

    def is_version_tag_name(self, name: str | None) -> bool:
        return self.parse_version_tag_name(name) is not None

    # -- Patch release branches ------------------------------------------------

    def patch_release_branch_name(self, version: VersionId) -> str:
        return f"{self.naming.patch_release}{self.naming.delimiter}{version}"

    def parse_patch_release_branch_name(self, name: str | None) -> VersionId | None:
        prefix = self.naming.patch_release + self.naming.delimiter
        if not name or not name.startswith(prefix):
            return None
        return VersionId.try_parse(name[len(prefix) :])

    # -- Temporary branches ----------------------------------------------------

    def temporary_branch_name(self, user_id: str, workspace_id: str | None = None) -> str:
        """Unique throwaway branch name scoped to a user (and workspace)."""
        d = self.naming.delimiter
        parts = [self.naming.temporary, user_id]
        if workspace_id is not None:
            parts.append(workspace_id)
        parts.append(_random_id())
        return d.join(parts)

    def is_temporary_branch_name(self, name: str | None) -> bool:
        return bool(name) and name.startswith(self.naming.temporary + self.naming.delimiter)


def _random_id() -> str:
    millis = int(time.time() * 1000) & 0xFFFFFFFF
    raw = secrets.token_bytes(8) + millis.to_bytes(4, "big")
    return base64.urlsafe_b64encode(raw).decode("ascii")
