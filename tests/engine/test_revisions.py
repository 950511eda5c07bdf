"""Unit tests for revision references and their resolution."""

from __future__ import annotations

import pytest

from sdlcflow.engine.errors import NotFoundError
from sdlcflow.engine.models.enums import RevisionAlias
from sdlcflow.engine.models.repository import Revision
from sdlcflow.engine.models.workspace import VersionId, WorkspaceSpec
from sdlcflow.engine.revisions import (
    ReferenceSource,
    RevisionAccessContext,
    ServiceRevisionContext,
    parse_revision_ref,
    resolve_revision,
    source_reference,
)


class _ListContext:
    def __init__(self, ids: list[str]) -> None:
        self.revisions = [Revision(id=i) for i in ids]

    async def get_base_revision(self) -> Revision | None:
        return self.revisions[0] if self.revisions else None

    async def get_current_revision(self) -> Revision | None:
        return self.revisions[-1] if self.revisions else None

    async def get_revisions(self) -> list[Revision]:
        return self.revisions


# ---------------------------------------------------------------------------
# Parsing and resolution
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("base", RevisionAlias.BASE),
        ("BASE", RevisionAlias.BASE),
        ("head", RevisionAlias.HEAD),
        ("current", RevisionAlias.HEAD),
        ("Latest", RevisionAlias.HEAD),
        ("1a2b3c", "1a2b3c"),
    ],
)
def test_parse_revision_ref(text: str, expected: object) -> None:
    assert parse_revision_ref(text) == expected


async def test_resolve_aliases() -> None:
    context = _ListContext(["r1", "r2", "r3"])
    assert isinstance(context, RevisionAccessContext)

    assert await resolve_revision(RevisionAlias.BASE, context) == "r1"
    assert await resolve_revision(RevisionAlias.HEAD, context) == "r3"
    assert await resolve_revision("latest", context) == "r3"
    assert await resolve_revision("r2", context) == "r2"


async def test_explicit_id_passes_through_unchecked() -> None:
    assert await resolve_revision("unknown-id", _ListContext([])) == "unknown-id"


async def test_empty_context_resolves_to_none() -> None:
    context = _ListContext([])
    assert await resolve_revision(RevisionAlias.BASE, context) is None
    assert await resolve_revision(RevisionAlias.HEAD, context) is None


# ---------------------------------------------------------------------------
# Reference sources
# ---------------------------------------------------------------------------


def test_source_descriptions() -> None:
    spec = WorkspaceSpec.user("ws1", "alice")
    assert ReferenceSource.for_project("demo").describe() == "project demo"
    assert ReferenceSource.for_workspace("demo", spec).describe() == "user workspace ws1 of project demo"
    assert ReferenceSource.for_version("demo", VersionId(1, 0, 0)).describe() == "version 1.0.0 of project demo"
    assert ReferenceSource.for_review("demo", "7").describe() == "review 7 of project demo"


async def test_source_reference(caller, scheme, service) -> None:
    spec = WorkspaceSpec.group("shared")
    proposal_id = await service.create_proposal("master", "master", "review")

    assert await source_reference(ReferenceSource.for_project("demo"), scheme, caller) == "master"
    assert await source_reference(ReferenceSource.for_workspace("demo", spec), scheme, caller) == "group/shared"
    version = ReferenceSource.for_version("demo", VersionId(1, 0, 0))
    assert await source_reference(version, scheme, caller) == "release-1.0.0"
    review = ReferenceSource.for_review("demo", proposal_id)
    assert await source_reference(review, scheme, caller) == "master"


async def test_service_context_orders_oldest_first(caller, scheme, service) -> None:
    root = (await service.get_branch("master")).revision_id
    second = service.seed_commit("master", {"a.json": b"a"})
    third = service.seed_commit("master", {"b.json": b"b"})
    context = ServiceRevisionContext(caller, scheme, ReferenceSource.for_project("demo"))

    assert [r.id for r in await context.get_revisions()] == [root, second, third]
    assert await resolve_revision(RevisionAlias.BASE, context) == root
    assert await resolve_revision(RevisionAlias.HEAD, context) == third
    assert (await context.get_revision(second)).id == second


async def test_service_context_for_workspace(caller, scheme, service, spec, create_workspace) -> None:
    name = await create_workspace(spec)
    tip = service.seed_commit(name, {"a.json": b"a"})
    context = ServiceRevisionContext(caller, scheme, ReferenceSource.for_workspace("demo", spec))

    assert await resolve_revision(RevisionAlias.HEAD, context) == tip


async def test_workspace_base_is_its_creation_point(caller, scheme, service, spec, create_workspace) -> None:
    service.seed_commit("master", {"early.json": b"early"})
    name = await create_workspace(spec)
    created_at = (await service.get_branch(name)).revision_id
    service.seed_commit(name, {"a.json": b"a"})
    service.seed_commit("master", {"later.json": b"later"})
    context = ServiceRevisionContext(caller, scheme, ReferenceSource.for_workspace("demo", spec))

    assert await resolve_revision(RevisionAlias.BASE, context) == created_at
    assert (await context.get_revisions())[0].id != created_at


async def test_service_context_for_path(caller, scheme, service) -> None:
    touched = service.seed_commit("master", {"entities/model/Person.json": b"v2"})
    service.seed_commit("master", {"other.json": b"x"})
    context = ServiceRevisionContext(
        caller,
        scheme,
        ReferenceSource.for_project("demo"),
        path="/entities/model/Person.json",
        path_description="model::Person",
    )

    assert await resolve_revision(RevisionAlias.HEAD, context) == touched
    assert context.describe() == "model::Person in project demo"
    with pytest.raises(NotFoundError, match="model::Person in project demo"):
        await context.get_revision("does-not-exist")
