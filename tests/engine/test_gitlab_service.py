"""Tests for the GitLab repository service against a mocked transport."""

from __future__ import annotations

import base64
import json
from collections.abc import Callable

import httpx
import pytest

from sdlcflow.engine.errors import RepositoryServiceError
from sdlcflow.engine.models.changes import CommitAction
from sdlcflow.engine.service.gitlab import GitLabRepositoryService
from sdlcflow.engine.settings import EngineSettings

API = "http://gitlab.test/api/v4"

Handler = Callable[[httpx.Request], httpx.Response]


def _path(request: httpx.Request) -> str:
    """Percent-encoded request path without the API prefix or query."""
    return request.url.raw_path.decode().split("?")[0].removeprefix("/api/v4")


def _service(handler: Handler, **kwargs: object) -> GitLabRepositoryService:
    client = httpx.AsyncClient(base_url=API, transport=httpx.MockTransport(handler))
    kwargs.setdefault("token", "secret")
    return GitLabRepositoryService("http://gitlab.test", "42", client=client, **kwargs)


def _commit(commit_id: str, message: str = "msg") -> dict[str, object]:
    return {"id": commit_id, "message": message, "parent_ids": ["p"], "authored_date": "2024-01-02T03:04:05+00:00"}


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


async def test_get_branch_quotes_name_and_sends_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"name": "workspace/alice/ws1", "commit": {"id": "abc"}})

    branch = await _service(handler).get_branch("workspace/alice/ws1")

    assert branch.revision_id == "abc"
    assert _path(seen[0]) == "/projects/42/repository/branches/workspace%2Falice%2Fws1"
    assert seen[0].headers["PRIVATE-TOKEN"] == "secret"


async def test_error_status_and_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "404 Branch Not Found"})

    with pytest.raises(RepositoryServiceError) as exc_info:
        await _service(handler).get_branch("missing")

    assert exc_info.value.status_code == 404
    assert exc_info.value.message == "404 Branch Not Found"


@pytest.mark.parametrize(
    ("error", "status"),
    [
        (httpx.ConnectError("refused"), 503),
        (httpx.ReadTimeout("slow"), 408),
    ],
)
async def test_network_failures_map_to_transient_statuses(error: Exception, status: int) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise error

    with pytest.raises(RepositoryServiceError) as exc_info:
        await _service(handler).get_branch("master")
    assert exc_info.value.status_code == status


async def test_token_provider_after_invalidation() -> None:
    tokens = iter(["fresh"])
    seen: list[str | None] = []

    async def provider() -> str | None:
        return next(tokens)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("PRIVATE-TOKEN"))
        return httpx.Response(200, json={"name": "master", "commit": {"id": "abc"}})

    service = _service(handler, token="stale", token_provider=provider)
    await service.get_branch("master")
    service.invalidate_credentials()
    await service.get_branch("master")
    await service.get_branch("master")

    assert seen == ["stale", "fresh", "fresh"]


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def test_commit_encodes_actions() -> None:
    bodies: list[dict[str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert _path(request) == "/projects/42/repository/commits"
        bodies.append(json.loads(request.content))
        return httpx.Response(201, json=_commit("new", "change"))

    revision = await _service(handler).commit(
        "master",
        "change",
        [CommitAction.create("/a/B.json", b"{}"), CommitAction.move("/old.json", "/new.json")],
    )

    assert revision.id == "new"
    assert revision.parent_ids == ("p",)
    assert revision.authored_at is not None
    assert bodies[0] == {
        "branch": "master",
        "commit_message": "change",
        "actions": [
            {
                "action": "create",
                "file_path": "a/B.json",
                "content": base64.b64encode(b"{}").decode(),
                "encoding": "base64",
            },
            {"action": "move", "file_path": "new.json", "previous_path": "old.json"},
        ],
    }


async def test_list_revisions_follows_pages_and_limit() -> None:
    pages = {"1": ([_commit("c3"), _commit("c2")], "2"), "2": ([_commit("c1")], "")}
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        items, next_page = pages[request.url.params["page"]]
        return httpx.Response(200, json=items, headers={"x-next-page": next_page})

    service = _service(handler)

    assert [r.id for r in await service.list_revisions("master", "/entities/a.json")] == ["c3", "c2", "c1"]
    assert requests[0].url.params["path"] == "entities/a.json"
    assert requests[0].url.params["first_parent"] == "true"

    requests.clear()
    assert [r.id for r in await service.list_revisions("master", limit=2)] == ["c3", "c2"]
    assert len(requests) == 1


async def test_diff_and_merge_base() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if _path(request).endswith("/compare"):
            assert request.url.params["straight"] == "true"
            return httpx.Response(
                200,
                json={
                    "commit": {"id": "to"},
                    "diffs": [
                        {"old_path": "a", "new_path": "b", "renamed_file": True},
                        {"old_path": "c", "new_path": "c", "deleted_file": True},
                    ],
                },
            )
        assert request.url.params.get_list("refs[]") == ["master", "feature"]
        return httpx.Response(200, json=_commit("base"))

    service = _service(handler)
    diff = await service.diff("from", "to")
    base = await service.merge_base("master", "feature")

    assert diff.to_revision_id == "to"
    assert [(e.old_path, e.new_path, e.is_renamed, e.is_deleted) for e in diff.entries] == [
        ("a", "b", True, False),
        ("c", "c", False, True),
    ]
    assert base.id == "base"


async def test_proposal_lifecycle() -> None:
    calls: list[tuple[str, str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        calls.append((request.method, _path(request), body))
        if request.method == "POST":
            return httpx.Response(201, json={"iid": 7})
        if request.url.params.get("include_rebase_in_progress") == "true":
            return httpx.Response(200, json={"rebase_in_progress": False, "merge_error": "conflict"})
        if request.method == "GET":
            return httpx.Response(
                200,
                json={
                    "iid": 7,
                    "source_branch": "tmp/x",
                    "target_branch": "master",
                    "diff_refs": {"base_sha": "b", "head_sha": "h"},
                },
            )
        return httpx.Response(200, json={})

    service = _service(handler)
    proposal_id = await service.create_proposal("tmp/x", "master", "rebase")
    await service.rebase(proposal_id)
    status = await service.get_rebase_status(proposal_id)
    proposal = await service.get_proposal(proposal_id)
    await service.close_proposal(proposal_id)

    assert proposal_id == "7"
    assert status.merge_error == "conflict"
    assert (proposal.base_revision_id, proposal.head_revision_id) == ("b", "h")
    assert calls[1][:2] == ("PUT", "/projects/42/merge_requests/7/rebase")
    assert calls[-1] == ("PUT", "/projects/42/merge_requests/7", {"state_event": "close"})


async def test_delete_missing_branch_succeeds() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "404 Branch Not Found"})

    assert await _service(handler).delete_branch("gone") is True


async def test_get_file_and_tags() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if "/files/" in _path(request):
            assert _path(request) == "/projects/42/repository/files/entities%2FA.json/raw"
            assert request.url.params["ref"] == "abc"
            return httpx.Response(200, content=b"raw bytes")
        return httpx.Response(201, json={"name": "release-1.0.0", "commit": {"id": "abc"}, "message": "m"})

    service = _service(handler)

    assert await service.get_file("abc", "/entities/A.json") == b"raw bytes"
    tag = await service.create_tag("release-1.0.0", "abc", "m")
    assert (tag.revision_id, tag.message) == ("abc", "m")


async def test_has_active_pipelines() -> None:
    statuses: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        status = request.url.params["status"]
        statuses.append(status)
        return httpx.Response(200, json=[{"id": 1}] if status == "running" else [])

    assert await _service(handler).has_active_pipelines("tmp/x") is True
    assert statuses == ["pending", "running"]


def test_from_settings_requires_project() -> None:
    with pytest.raises(ValueError, match="SDLC_PROJECT_ID"):
        GitLabRepositoryService.from_settings(EngineSettings())
