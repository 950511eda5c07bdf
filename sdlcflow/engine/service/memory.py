"""In-memory repository service.

A small simulation of a branch-and-commit repository service used by the test
suite and for local experiments.  Every commit stores a full snapshot of the
file tree, which keeps diffs, merge bases and rebases simple to compute.

Rebase replays the source branch's commits onto the target one at a time.  A
commit conflicts when it changes a file that the target has also changed to
different content, so a branch whose intermediate commits conflict may still
succeed once squashed.

Tests can inject failures with ``fail_next`` and simulate slow rebases
(``rebase_polls``) or running pipelines (``set_active_pipelines``).
"""

from __future__ import annotations

import hashlib
import itertools
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sdlcflow.engine.errors import RepositoryServiceError
from sdlcflow.engine.models.changes import CommitAction
from sdlcflow.engine.models.enums import CommitActionType
from sdlcflow.engine.models.repository import (
    Branch,
    DiffEntry,
    DiffResult,
    ProposalInfo,
    RebaseStatus,
    Revision,
    Tag,
)


def _normalize(path: str) -> str:
    return path.lstrip("/")


@dataclass
class _Commit:
    id: str
    parent_ids: tuple[str, ...]
    tree: dict[str, bytes]
    message: str
    authored_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_revision(self) -> Revision:
        return Revision(id=self.id, message=self.message, parent_ids=self.parent_ids, authored_at=self.authored_at)


@dataclass
class _Proposal:
    source_ref: str
    target_ref: str
    title: str
    open: bool = True
    polls_remaining: int = 0
    merge_error: str | None = None


class InMemoryRepositoryService:
    """Implements ``VersionedRepositoryService`` over in-process dicts."""

    def __init__(
        self,
        *,
        mainline: str = "master",
        initial_files: dict[str, bytes] | None = None,
        rebase_polls: int = 0,
    ) -> None:
        self._counter = itertools.count(1)
        self._commits: dict[str, _Commit] = {}
        self._branches: dict[str, str] = {}
        self._tags: dict[str, Tag] = {}
        self._proposals: dict[str, _Proposal] = {}
        self._pipelines: dict[str, int] = defaultdict(int)
        self._failures: dict[str, deque[int]] = defaultdict(deque)
        self.rebase_polls = rebase_polls
        self.credentials_invalidated = 0
        self.calls: list[tuple[str, tuple[object, ...]]] = []

        root = self._new_commit((), {_normalize(p): c for p, c in (initial_files or {}).items()}, "Initial commit")
        self._branches[mainline] = root.id

    # -- Test hooks ------------------------------------------------------------

    def fail_next(self, operation: str, status_code: int, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` fail with ``status_code``."""
        self._failures[operation].extend([status_code] * times)

    def set_active_pipelines(self, ref: str, polls: int) -> None:
        """Report active pipelines on ``ref`` for the next ``polls`` checks."""
        self._pipelines[ref] = polls

    def branch_names(self) -> list[str]:
        return sorted(self._branches)

    def files_at(self, ref: str) -> dict[str, bytes]:
        return dict(self._resolve(ref).tree)

    def seed_commit(self, branch: str, changes: dict[str, bytes | None], message: str = "seed") -> str:
        """Commit ``changes`` directly (``None`` deletes a path); returns the new id."""
        tip = self._resolve(branch)
        tree = dict(tip.tree)
        for path, content in changes.items():
            if content is None:
                tree.pop(_normalize(path), None)
            else:
                tree[_normalize(path)] = content
        commit = self._new_commit((tip.id,), tree, message)
        self._branches[branch] = commit.id
        return commit.id

    # -- Internals -------------------------------------------------------------

    def _enter(self, operation: str, *args: object) -> None:
        self.calls.append((operation, args))
        pending = self._failures.get(operation)
        if pending:
            raise RepositoryServiceError(pending.popleft(), f"injected failure in {operation}")

    def _new_commit(self, parent_ids: tuple[str, ...], tree: dict[str, bytes], message: str) -> _Commit:
        n = next(self._counter)
        commit_id = hashlib.sha1(f"{n}:{message}".encode(), usedforsecurity=False).hexdigest()
        commit = _Commit(commit_id, parent_ids, tree, message)
        self._commits[commit_id] = commit
        return commit

    def _resolve(self, ref: str) -> _Commit:
        if ref in self._branches:
            return self._commits[self._branches[ref]]
        if ref in self._tags:
            return self._commits[self._tags[ref].revision_id]
        if ref in self._commits:
            return self._commits[ref]
        raise RepositoryServiceError(404, f"Unknown reference {ref}")

    def _ancestors(self, commit_id: str) -> set[str]:
        seen: set[str] = set()
        queue = deque([commit_id])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self._commits[current].parent_ids)
        return seen

    def _merge_base(self, a: str, b: str) -> _Commit:
        ancestors_a = self._ancestors(a)
        queue = deque([b])
        seen: set[str] = set()
        while queue:
            current = queue.popleft()
            if current in ancestors_a:
                return self._commits[current]
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self._commits[current].parent_ids)
        raise RepositoryServiceError(404, f"No merge base for {a} and {b}")

    def _first_parent_chain(self, tip: _Commit, stop_at: str | None = None) -> list[_Commit]:
        """Commits from ``tip`` back along first parents, newest first, excluding ``stop_at``."""
        chain: list[_Commit] = []
        current: _Commit | None = tip
        while current is not None and current.id != stop_at:
            chain.append(current)
            current = self._commits[current.parent_ids[0]] if current.parent_ids else None
        return chain

    # -- Branches --------------------------------------------------------------

    async def get_branch(self, name: str) -> Branch:
        self._enter("get_branch", name)
        if name not in self._branches:
            raise RepositoryServiceError(404, f"Branch Not Found: {name}")
        return Branch(name=name, revision_id=self._branches[name])

    async def create_branch(self, name: str, from_revision_id: str) -> Branch:
        self._enter("create_branch", name, from_revision_id)
        if name in self._branches:
            raise RepositoryServiceError(400, f"Branch already exists: {name}")
        commit = self._resolve(from_revision_id)
        self._branches[name] = commit.id
        return Branch(name=name, revision_id=commit.id)

    async def delete_branch(self, name: str) -> bool:
        self._enter("delete_branch", name)
        self._branches.pop(name, None)
        return True

    # -- Commits ---------------------------------------------------------------

    async def commit(self, ref: str, message: str, actions: list[CommitAction]) -> Revision:
        self._enter("commit", ref, message, len(actions))
        if ref not in self._branches:
            raise RepositoryServiceError(404, f"Branch Not Found: {ref}")
        if not actions:
            raise RepositoryServiceError(400, "No actions in commit")
        tip = self._commits[self._branches[ref]]
        tree = dict(tip.tree)
        for action in actions:
            path = _normalize(action.file_path)
            match action.action:
                case CommitActionType.CREATE:
                    if path in tree:
                        raise RepositoryServiceError(400, f"A file with this name already exists: {path}")
                    tree[path] = action.content or b""
                case CommitActionType.UPDATE:
                    if path not in tree:
                        raise RepositoryServiceError(400, f"A file with this name doesn't exist: {path}")
                    tree[path] = action.content or b""
                case CommitActionType.DELETE:
                    if path not in tree:
                        raise RepositoryServiceError(400, f"A file with this name doesn't exist: {path}")
                    del tree[path]
                case CommitActionType.MOVE:
                    previous = _normalize(action.previous_path or "")
                    if previous not in tree:
                        raise RepositoryServiceError(400, f"A file with this name doesn't exist: {previous}")
                    if path in tree and path != previous:
                        raise RepositoryServiceError(400, f"A file with this name already exists: {path}")
                    content = tree.pop(previous)
                    tree[path] = content if action.content is None else action.content
        commit = self._new_commit((tip.id,), tree, message)
        self._branches[ref] = commit.id
        return commit.to_revision()

    async def list_revisions(self, ref: str, path: str | None = None, limit: int | None = None) -> list[Revision]:
        self._enter("list_revisions", ref, path, limit)
        chain = self._first_parent_chain(self._resolve(ref))
        if path is not None:
            key = _normalize(path)
            touching = []
            for commit in chain:
                parent_tree = self._commits[commit.parent_ids[0]].tree if commit.parent_ids else {}
                if commit.tree.get(key) != parent_tree.get(key):
                    touching.append(commit)
            chain = touching
        if limit is not None:
            chain = chain[:limit]
        return [c.to_revision() for c in chain]

    async def list_commit_refs(self, revision_id: str) -> list[str]:
        self._enter("list_commit_refs", revision_id)
        if revision_id not in self._commits:
            raise RepositoryServiceError(404, f"Unknown revision {revision_id}")
        return sorted(name for name, tip in self._branches.items() if revision_id in self._ancestors(tip))

    # -- Diffs -----------------------------------------------------------------

    async def diff(self, from_revision_id: str, to_revision_id: str) -> DiffResult:
        self._enter("diff", from_revision_id, to_revision_id)
        old = self._resolve(from_revision_id)
        new = self._resolve(to_revision_id)
        return DiffResult(to_revision_id=new.id, entries=tuple(_diff_trees(old.tree, new.tree)))

    async def merge_base(self, ref_a: str, ref_b: str) -> Revision:
        self._enter("merge_base", ref_a, ref_b)
        return self._merge_base(self._resolve(ref_a).id, self._resolve(ref_b).id).to_revision()

    # -- Files -----------------------------------------------------------------

    async def get_file(self, ref: str, path: str) -> bytes:
        self._enter("get_file", ref, path)
        tree = self._resolve(ref).tree
        key = _normalize(path)
        if key not in tree:
            raise RepositoryServiceError(404, f"File Not Found: {key}")
        return tree[key]

    # -- Integration proposals -------------------------------------------------

    async def create_proposal(self, source_ref: str, target_ref: str, title: str) -> str:
        self._enter("create_proposal", source_ref, target_ref)
        self._resolve(source_ref)
        self._resolve(target_ref)
        proposal_id = str(next(self._counter))
        self._proposals[proposal_id] = _Proposal(source_ref, target_ref, title)
        return proposal_id

    def _proposal(self, proposal_id: str) -> _Proposal:
        if proposal_id not in self._proposals:
            raise RepositoryServiceError(404, f"Unknown proposal {proposal_id}")
        return self._proposals[proposal_id]

    async def get_proposal(self, proposal_id: str) -> ProposalInfo:
        self._enter("get_proposal", proposal_id)
        proposal = self._proposal(proposal_id)
        source = self._resolve(proposal.source_ref)
        target = self._resolve(proposal.target_ref)
        return ProposalInfo(
            proposal_id=proposal_id,
            source_ref=proposal.source_ref,
            target_ref=proposal.target_ref,
            base_revision_id=self._merge_base(source.id, target.id).id,
            head_revision_id=source.id,
        )

    async def rebase(self, proposal_id: str) -> None:
        self._enter("rebase", proposal_id)
        proposal = self._proposal(proposal_id)
        if not proposal.open:
            raise RepositoryServiceError(405, f"Proposal {proposal_id} is closed")
        proposal.polls_remaining = self.rebase_polls
        proposal.merge_error = self._replay(proposal.source_ref, proposal.target_ref)

    def _replay(self, source_ref: str, target_ref: str) -> str | None:
        """Rebase ``source_ref`` onto ``target_ref``; returns an error message on conflict."""
        source = self._resolve(source_ref)
        target = self._resolve(target_ref)
        base = self._merge_base(source.id, target.id)
        if base.id == target.id:
            return None
        to_replay = list(reversed(self._first_parent_chain(source, stop_at=base.id)))
        current = target
        for commit in to_replay:
            parent_tree = self._commits[commit.parent_ids[0]].tree if commit.parent_ids else {}
            tree = dict(current.tree)
            for path in set(parent_tree) | set(commit.tree):
                before = parent_tree.get(path)
                after = commit.tree.get(path)
                if before == after:
                    continue
                ours = current.tree.get(path)
                if ours != before and ours != after:
                    return f"Rebase failed: conflict in {path}"
                if after is None:
                    tree.pop(path, None)
                else:
                    tree[path] = after
            current = self._new_commit((current.id,), tree, commit.message)
        self._branches[source_ref] = current.id
        return None

    async def get_rebase_status(self, proposal_id: str) -> RebaseStatus:
        self._enter("get_rebase_status", proposal_id)
        proposal = self._proposal(proposal_id)
        if proposal.polls_remaining > 0:
            proposal.polls_remaining -= 1
            return RebaseStatus(in_progress=True)
        return RebaseStatus(in_progress=False, merge_error=proposal.merge_error)

    async def close_proposal(self, proposal_id: str) -> None:
        self._enter("close_proposal", proposal_id)
        self._proposal(proposal_id).open = False

    def is_proposal_open(self, proposal_id: str) -> bool:
        return self._proposal(proposal_id).open

    # -- Tags ------------------------------------------------------------------

    async def create_tag(self, name: str, revision_id: str, message: str | None = None) -> Tag:
        self._enter("create_tag", name, revision_id)
        if name in self._tags:
            raise RepositoryServiceError(400, f"Tag {name} already exists")
        tag = Tag(name=name, revision_id=self._resolve(revision_id).id, message=message)
        self._tags[name] = tag
        return tag

    async def get_tag(self, name: str) -> Tag:
        self._enter("get_tag", name)
        if name not in self._tags:
            raise RepositoryServiceError(404, f"Tag Not Found: {name}")
        return self._tags[name]

    # -- Housekeeping ----------------------------------------------------------

    async def has_active_pipelines(self, ref: str) -> bool:
        self._enter("has_active_pipelines", ref)
        if self._pipelines[ref] > 0:
            self._pipelines[ref] -= 1
            return True
        return False

    def invalidate_credentials(self) -> None:
        self.credentials_invalidated += 1


def _diff_trees(old: dict[str, bytes], new: dict[str, bytes]) -> list[DiffEntry]:
    deleted = sorted(p for p in old if p not in new)
    added = sorted(p for p in new if p not in old)
    entries: list[DiffEntry] = []

    # Pair deletions with additions of identical content as renames
    unmatched_added = list(added)
    for old_path in list(deleted):
        for new_path in unmatched_added:
            if old[old_path] == new[new_path]:
                entries.append(DiffEntry(old_path=old_path, new_path=new_path, is_renamed=True))
                unmatched_added.remove(new_path)
                deleted.remove(old_path)
                break

    entries.extend(DiffEntry(old_path=p, new_path=p, is_deleted=True) for p in deleted)
    entries.extend(DiffEntry(old_path=p, new_path=p, is_new=True) for p in unmatched_added)
    entries.extend(
        DiffEntry(old_path=p, new_path=p) for p in sorted(p for p in old if p in new and old[p] != new[p])
    )
    return entries
