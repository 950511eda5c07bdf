"""Tests for the in-memory repository service."""

from __future__ import annotations

import pytest

from sdlcflow.engine.errors import RepositoryServiceError
from sdlcflow.engine.models.changes import CommitAction
from sdlcflow.engine.service import VersionedRepositoryService
from sdlcflow.engine.service.memory import InMemoryRepositoryService


@pytest.fixture
def store() -> InMemoryRepositoryService:
    return InMemoryRepositoryService(initial_files={"a.txt": b"a", "b.txt": b"b"})


def test_satisfies_protocol(store: InMemoryRepositoryService) -> None:
    assert isinstance(store, VersionedRepositoryService)


# ---------------------------------------------------------------------------
# Commits
# ---------------------------------------------------------------------------


async def test_commit_applies_actions(store: InMemoryRepositoryService) -> None:
    revision = await store.commit(
        "master",
        "change",
        [
            CommitAction.create("/c.txt", b"c"),
            CommitAction.update("a.txt", b"a2"),
            CommitAction.delete("b.txt"),
            CommitAction.move("c.txt", "d.txt"),
        ],
    )

    assert (await store.get_branch("master")).revision_id == revision.id
    assert store.files_at("master") == {"a.txt": b"a2", "d.txt": b"c"}
    assert revision.message == "change"


@pytest.mark.parametrize(
    "action",
    [
        CommitAction.create("a.txt", b"x"),
        CommitAction.update("missing.txt", b"x"),
        CommitAction.delete("missing.txt"),
        CommitAction.move("missing.txt", "x.txt"),
        CommitAction.move("a.txt", "b.txt"),
    ],
)
async def test_invalid_action_rejects_whole_commit(store: InMemoryRepositoryService, action: CommitAction) -> None:
    before = (await store.get_branch("master")).revision_id

    with pytest.raises(RepositoryServiceError) as exc_info:
        await store.commit("master", "bad", [CommitAction.create("new.txt", b"n"), action])

    assert exc_info.value.status_code == 400
    assert (await store.get_branch("master")).revision_id == before


async def test_commit_to_missing_branch(store: InMemoryRepositoryService) -> None:
    with pytest.raises(RepositoryServiceError) as exc_info:
        await store.commit("nope", "msg", [CommitAction.create("x", b"x")])
    assert exc_info.value.status_code == 404


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


async def test_list_revisions_newest_first(store: InMemoryRepositoryService) -> None:
    root = (await store.get_branch("master")).revision_id
    second = store.seed_commit("master", {"a.txt": b"a2"})
    third = store.seed_commit("master", {"b.txt": b"b2"})

    assert [r.id for r in await store.list_revisions("master")] == [third, second, root]
    assert [r.id for r in await store.list_revisions("master", limit=2)] == [third, second]
    assert [r.id for r in await store.list_revisions("master", "/a.txt")] == [second, root]


async def test_merge_base_and_commit_refs(store: InMemoryRepositoryService) -> None:
    root = (await store.get_branch("master")).revision_id
    await store.create_branch("feature", root)
    store.seed_commit("feature", {"f.txt": b"f"})
    store.seed_commit("master", {"m.txt": b"m"})

    assert (await store.merge_base("master", "feature")).id == root
    assert await store.list_commit_refs(root) == ["feature", "master"]


async def test_diff_detects_renames(store: InMemoryRepositoryService) -> None:
    root = (await store.get_branch("master")).revision_id
    tip = store.seed_commit("master", {"a.txt": None, "moved/a.txt": b"a", "b.txt": b"b2"})

    diff = await store.diff(root, tip)

    assert diff.to_revision_id == tip
    renamed = [e for e in diff.entries if e.is_renamed]
    assert [(e.old_path, e.new_path) for e in renamed] == [("a.txt", "moved/a.txt")]
    assert [e.new_path for e in diff.entries if not e.is_renamed] == ["b.txt"]


# ---------------------------------------------------------------------------
# Rebase
# ---------------------------------------------------------------------------


async def test_rebase_replays_onto_target(store: InMemoryRepositoryService) -> None:
    root = (await store.get_branch("master")).revision_id
    await store.create_branch("feature", root)
    store.seed_commit("feature", {"f.txt": b"f"})
    master_tip = store.seed_commit("master", {"m.txt": b"m"})

    proposal_id = await store.create_proposal("feature", "master", "rebase")
    await store.rebase(proposal_id)
    status = await store.get_rebase_status(proposal_id)

    assert status.in_progress is False
    assert status.merge_error is None
    assert store.files_at("feature") == {"a.txt": b"a", "b.txt": b"b", "f.txt": b"f", "m.txt": b"m"}
    assert (await store.merge_base("master", "feature")).id == master_tip


async def test_conflicting_rebase_leaves_branch(store: InMemoryRepositoryService) -> None:
    root = (await store.get_branch("master")).revision_id
    await store.create_branch("feature", root)
    feature_tip = store.seed_commit("feature", {"a.txt": b"feature"})
    store.seed_commit("master", {"a.txt": b"master"})

    proposal_id = await store.create_proposal("feature", "master", "rebase")
    await store.rebase(proposal_id)

    assert "conflict in a.txt" in (await store.get_rebase_status(proposal_id)).merge_error
    assert (await store.get_branch("feature")).revision_id == feature_tip


async def test_rebase_polls_and_closed_proposal() -> None:
    store = InMemoryRepositoryService(rebase_polls=2)
    proposal_id = await store.create_proposal("master", "master", "noop")
    await store.rebase(proposal_id)

    assert [(await store.get_rebase_status(proposal_id)).in_progress for _ in range(3)] == [True, True, False]

    await store.close_proposal(proposal_id)
    assert store.is_proposal_open(proposal_id) is False
    with pytest.raises(RepositoryServiceError) as exc_info:
        await store.rebase(proposal_id)
    assert exc_info.value.status_code == 405


# ---------------------------------------------------------------------------
# Tags, files and failure injection
# ---------------------------------------------------------------------------


async def test_tags(store: InMemoryRepositoryService) -> None:
    root = (await store.get_branch("master")).revision_id
    tag = await store.create_tag("release-1.0.0", root, "first")

    assert (await store.get_tag("release-1.0.0")) == tag
    assert await store.get_file("release-1.0.0", "/a.txt") == b"a"
    with pytest.raises(RepositoryServiceError):
        await store.create_tag("release-1.0.0", root)


async def test_fail_next(store: InMemoryRepositoryService) -> None:
    store.fail_next("get_branch", 503, times=2)

    for _ in range(2):
        with pytest.raises(RepositoryServiceError) as exc_info:
            await store.get_branch("master")
        assert exc_info.value.status_code == 503
    assert (await store.get_branch("master")).name == "master"
    assert [op for op, _ in store.calls] == ["get_branch"] * 3
