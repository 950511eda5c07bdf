"""GitLab implementation of the repository service (REST API v4).

Each protocol operation maps onto one (occasionally paginated) GitLab call::

    get_branch          GET    /projects/:id/repository/branches/:branch
    commit              POST   /projects/:id/repository/commits
    diff                GET    /projects/:id/repository/compare?straight=true
    merge_base          GET    /projects/:id/repository/merge_base
    create_proposal     POST   /projects/:id/merge_requests
    rebase              PUT    /projects/:id/merge_requests/:iid/rebase
    get_rebase_status   GET    /projects/:id/merge_requests/:iid?include_rebase_in_progress=true
    ...

Non-2xx responses raise ``RepositoryServiceError`` carrying the HTTP status;
network failures are reported as 503 (408 for timeouts) so that the retry
layer treats them as transient.
"""

from __future__ import annotations

import base64
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
from loguru import logger

from sdlcflow.engine.errors import RepositoryServiceError
from sdlcflow.engine.models.changes import CommitAction
from sdlcflow.engine.models.repository import (
    Branch,
    DiffEntry,
    DiffResult,
    ProposalInfo,
    RebaseStatus,
    Revision,
    Tag,
)

if TYPE_CHECKING:
    from sdlcflow.engine.settings import EngineSettings

TokenProvider = Callable[[], Awaitable[str | None]]

_PAGE_SIZE = 100


def _quote(value: str) -> str:
    return quote(value, safe="")


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)
    return str(data)


def _parse_revision(data: dict[str, Any]) -> Revision:
    authored = data.get("authored_date")
    return Revision(
        id=data["id"],
        message=data.get("message") or data.get("title") or "",
        parent_ids=tuple(data.get("parent_ids") or ()),
        authored_at=datetime.fromisoformat(authored) if authored else None,
    )


def _encode_action(action: CommitAction) -> dict[str, Any]:
    payload: dict[str, Any] = {"action": str(action.action), "file_path": action.file_path.lstrip("/")}
    if action.previous_path is not None:
        payload["previous_path"] = action.previous_path.lstrip("/")
    if action.content is not None:
        payload["content"] = base64.b64encode(action.content).decode("ascii")
        payload["encoding"] = "base64"
    return payload


class GitLabRepositoryService:
    """Async GitLab client for a single project.

    Args:
        base_url: GitLab instance URL, e.g. ``https://gitlab.example.com``.
        project_id: Numeric id or full path (``group/project``) of the project.
        token: Personal/OAuth access token sent as ``PRIVATE-TOKEN``.
        token_provider: Async callable used to obtain a fresh token after
            ``invalidate_credentials`` dropped the cached one.
        client: Pre-built ``httpx.AsyncClient`` (tests pass one with a
            ``MockTransport``).  Must already point at ``<base_url>/api/v4``.
    """

    def __init__(
        self,
        base_url: str,
        project_id: str,
        *,
        token: str | None = None,
        token_provider: TokenProvider | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._project_path = f"/projects/{_quote(str(project_id))}"
        self._token = token
        self._token_provider = token_provider
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=f"{base_url.rstrip('/')}/api/v4", timeout=timeout)

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> GitLabRepositoryService:
        if not settings.project_id:
            msg = "SDLC_PROJECT_ID is not set"
            raise ValueError(msg)
        token = settings.gitlab_token.get_secret_value() if settings.gitlab_token else None
        return cls(settings.gitlab_url, settings.project_id, token=token, timeout=settings.request_timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> GitLabRepositoryService:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # -- Transport -------------------------------------------------------------

    async def _headers(self) -> dict[str, str]:
        if self._token is None and self._token_provider is not None:
            self._token = await self._token_provider()
        return {"PRIVATE-TOKEN": self._token} if self._token else {}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Any = None,
        json: Any = None,
    ) -> httpx.Response:
        url = f"{self._project_path}{path}"
        try:
            response = await self._client.request(method, url, params=params, json=json, headers=await self._headers())
        except httpx.TimeoutException as exc:
            raise RepositoryServiceError(408, f"{method} {url} timed out") from exc
        except httpx.TransportError as exc:
            raise RepositoryServiceError(503, f"{method} {url} failed: {exc}") from exc
        if response.is_error:
            raise RepositoryServiceError(response.status_code, _error_message(response))
        return response

    async def _paginate(self, path: str, params: dict[str, Any], limit: int | None = None) -> list[Any]:
        items: list[Any] = []
        page = "1"
        while page:
            response = await self._request("GET", path, params={**params, "per_page": _PAGE_SIZE, "page": page})
            items.extend(response.json())
            if limit is not None and len(items) >= limit:
                return items[:limit]
            page = response.headers.get("x-next-page", "")
        return items

    # -- Branches --------------------------------------------------------------

    async def get_branch(self, name: str) -> Branch:
        data = (await self._request("GET", f"/repository/branches/{_quote(name)}")).json()
        return Branch(name=data["name"], revision_id=data["commit"]["id"])

    async def create_branch(self, name: str, from_revision_id: str) -> Branch:
        response = await self._request("POST", "/repository/branches", params={"branch": name, "ref": from_revision_id})
        data = response.json()
        return Branch(name=data["name"], revision_id=data["commit"]["id"])

    async def delete_branch(self, name: str) -> bool:
        try:
            await self._request("DELETE", f"/repository/branches/{_quote(name)}")
        except RepositoryServiceError as exc:
            if exc.status_code != 404:
                raise
        return True

    # -- Commits ---------------------------------------------------------------

    async def commit(self, ref: str, message: str, actions: list[CommitAction]) -> Revision:
        body = {
            "branch": ref,
            "commit_message": message,
            "actions": [_encode_action(a) for a in actions],
        }
        return _parse_revision((await self._request("POST", "/repository/commits", json=body)).json())

    async def list_revisions(self, ref: str, path: str | None = None, limit: int | None = None) -> list[Revision]:
        params: dict[str, Any] = {"ref_name": ref, "first_parent": "true"}
        if path is not None:
            params["path"] = path.lstrip("/")
        return [_parse_revision(d) for d in await self._paginate("/repository/commits", params, limit)]

    async def list_commit_refs(self, revision_id: str) -> list[str]:
        refs = await self._paginate(f"/repository/commits/{_quote(revision_id)}/refs", {"type": "branch"})
        return [r["name"] for r in refs]

    # -- Diffs -----------------------------------------------------------------

    async def diff(self, from_revision_id: str, to_revision_id: str) -> DiffResult:
        params = {"from": from_revision_id, "to": to_revision_id, "straight": "true"}
        data = (await self._request("GET", "/repository/compare", params=params)).json()
        commit = data.get("commit") or {}
        entries = tuple(
            DiffEntry(
                old_path=d["old_path"],
                new_path=d["new_path"],
                is_new=bool(d.get("new_file")),
                is_deleted=bool(d.get("deleted_file")),
                is_renamed=bool(d.get("renamed_file")),
            )
            for d in data.get("diffs") or ()
        )
        return DiffResult(to_revision_id=commit.get("id", to_revision_id), entries=entries)

    async def merge_base(self, ref_a: str, ref_b: str) -> Revision:
        params = [("refs[]", ref_a), ("refs[]", ref_b)]
        return _parse_revision((await self._request("GET", "/repository/merge_base", params=params)).json())

    # -- Files -----------------------------------------------------------------

    async def get_file(self, ref: str, path: str) -> bytes:
        response = await self._request("GET", f"/repository/files/{_quote(path.lstrip('/'))}/raw", params={"ref": ref})
        return response.content

    # -- Integration proposals -------------------------------------------------

    async def create_proposal(self, source_ref: str, target_ref: str, title: str) -> str:
        body = {"source_branch": source_ref, "target_branch": target_ref, "title": title}
        data = (await self._request("POST", "/merge_requests", json=body)).json()
        return str(data["iid"])

    async def get_proposal(self, proposal_id: str) -> ProposalInfo:
        data = (await self._request("GET", f"/merge_requests/{proposal_id}")).json()
        diff_refs = data.get("diff_refs") or {}
        return ProposalInfo(
            proposal_id=str(data["iid"]),
            source_ref=data["source_branch"],
            target_ref=data["target_branch"],
            base_revision_id=diff_refs.get("base_sha"),
            head_revision_id=diff_refs.get("head_sha"),
        )

    async def rebase(self, proposal_id: str) -> None:
        await self._request("PUT", f"/merge_requests/{proposal_id}/rebase")

    async def get_rebase_status(self, proposal_id: str) -> RebaseStatus:
        params = {"include_rebase_in_progress": "true"}
        data = (await self._request("GET", f"/merge_requests/{proposal_id}", params=params)).json()
        return RebaseStatus(in_progress=bool(data.get("rebase_in_progress")), merge_error=data.get("merge_error"))

    async def close_proposal(self, proposal_id: str) -> None:
        await self._request("PUT", f"/merge_requests/{proposal_id}", json={"state_event": "close"})

    # -- Tags ------------------------------------------------------------------

    async def create_tag(self, name: str, revision_id: str, message: str | None = None) -> Tag:
        body: dict[str, Any] = {"tag_name": name, "ref": revision_id}
        if message is not None:
            body["message"] = message
        data = (await self._request("POST", "/repository/tags", json=body)).json()
        return Tag(name=data["name"], revision_id=data["commit"]["id"], message=data.get("message"))

    async def get_tag(self, name: str) -> Tag:
        data = (await self._request("GET", f"/repository/tags/{_quote(name)}")).json()
        return Tag(name=data["name"], revision_id=data["commit"]["id"], message=data.get("message"))

    # -- Housekeeping ----------------------------------------------------------

    async def has_active_pipelines(self, ref: str) -> bool:
        for status in ("pending", "running"):
            response = await self._request("GET", "/pipelines", params={"ref": ref, "status": status, "per_page": 1})
            if response.json():
                return True
        return False

    def invalidate_credentials(self) -> None:
        logger.warning("GitLab rejected the access token; dropping cached credentials")
        self._token = None
