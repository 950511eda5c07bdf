from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable
from typing import Any

import click
from pydantic import BaseModel, ValidationError

from sdlcflow.engine.core import WorkspaceEngine
from sdlcflow.engine.errors import EngineError
from sdlcflow.engine.log import setup_logging
from sdlcflow.engine.models.workspace import VersionId, WorkspaceSpec
from sdlcflow.engine.revisions import ReferenceSource, parse_revision_ref
from sdlcflow.engine.settings import EngineSettings, get_settings

EngineFactory = Callable[[EngineSettings], WorkspaceEngine]


@click.group()
@click.pass_context
def main(ctx: click.Context) -> None:
    """sdlcflow - workspace updates and conflict resolution over a versioned repository."""
    ctx.ensure_object(dict)
    ctx.obj.setdefault("engine_factory", WorkspaceEngine.from_settings)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def workspace_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Add the options identifying one workspace."""

    @click.option("--workspace", "-w", "workspace_id", required=True, help="Workspace id.")
    @click.option("--user", "-u", "user_id", default=None, help="Owner of a user workspace.")
    @click.option("--group", "-g", "is_group", is_flag=True, default=False, help="Use a group workspace.")
    @click.option("--patch", "patch_version", default=None, help="Patch release version the workspace targets.")
    @functools.wraps(func)
    def wrapper(
        *args: Any,
        workspace_id: str,
        user_id: str | None,
        is_group: bool,
        patch_version: str | None,
        **kwargs: Any,
    ) -> Any:
        kwargs["spec"] = _build_spec(workspace_id, user_id, is_group, patch_version)
        return func(*args, **kwargs)

    return wrapper


def _build_spec(workspace_id: str, user_id: str | None, is_group: bool, patch_version: str | None) -> WorkspaceSpec:
    if is_group == (user_id is not None):
        msg = "Pass exactly one of --user USER or --group"
        raise click.UsageError(msg)
    try:
        version = VersionId.parse(patch_version) if patch_version else None
        if is_group:
            return WorkspaceSpec.group(workspace_id, patch_version=version)
        assert user_id is not None
        return WorkspaceSpec.user(workspace_id, user_id, patch_version=version)
    except (ValueError, ValidationError) as exc:
        raise click.BadParameter(str(exc)) from exc


def _run(ctx: click.Context, operation: Callable[[WorkspaceEngine], Awaitable[BaseModel]]) -> None:
    """Run ``operation`` on a fresh engine and print its JSON result."""
    settings = get_settings()
    setup_logging(settings)
    factory: EngineFactory = ctx.obj["engine_factory"]

    async def _main() -> BaseModel:
        async with factory(settings) as engine:
            return await operation(engine)

    try:
        result = asyncio.run(_main())
    except EngineError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(result.model_dump_json(indent=2))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@main.command()
@workspace_options
@click.pass_context
def update(ctx: click.Context, spec: WorkspaceSpec) -> None:
    """Bring a workspace up to date with its source branch."""
    _run(ctx, lambda engine: engine.update_workspace(spec))


@main.command()
@workspace_options
@click.pass_context
def status(ctx: click.Context, spec: WorkspaceSpec) -> None:
    """Show whether a workspace is up to date (changes nothing)."""
    _run(ctx, lambda engine: engine.get_workspace_update_status(spec))


@main.command()
@click.argument("from_ref")
@click.argument("to_ref", default="head")
@click.option("--workspace", "-w", "workspace_id", default=None, help="Resolve TO_REF in this workspace.")
@click.option("--user", "-u", "user_id", default=None, help="Owner of a user workspace.")
@click.option("--group", "-g", "is_group", is_flag=True, default=False, help="Use a group workspace.")
@click.option("--patch", "patch_version", default=None, help="Patch release version the workspace targets.")
@click.pass_context
def compare(
    ctx: click.Context,
    from_ref: str,
    to_ref: str,
    workspace_id: str | None,
    user_id: str | None,
    is_group: bool,
    patch_version: str | None,
) -> None:
    """Compare two revisions entity by entity.

    FROM_REF and TO_REF are revision ids or the aliases base / head.  Both
    resolve against the project unless --workspace is given, in which case
    TO_REF resolves in that workspace.
    """
    spec = None if workspace_id is None else _build_spec(workspace_id, user_id, is_group, patch_version)

    def _compare(engine: WorkspaceEngine) -> Awaitable[BaseModel]:
        to_source = None if spec is None else ReferenceSource.for_workspace(engine.project_id, spec)
        return engine.compute_comparison(parse_revision_ref(from_ref), parse_revision_ref(to_ref), to_source=to_source)

    _run(ctx, _compare)


@main.command()
@workspace_options
@click.pass_context
def accept(ctx: click.Context, spec: WorkspaceSpec) -> None:
    """Replace a workspace with its conflict resolution."""
    _run(ctx, lambda engine: engine.accept_conflict_resolution(spec))


@main.command()
@workspace_options
@click.pass_context
def discard(ctx: click.Context, spec: WorkspaceSpec) -> None:
    """Reset a workspace to its source branch, dropping its changes and conflict resolution."""
    _run(ctx, lambda engine: engine.discard_conflict_resolution(spec))
