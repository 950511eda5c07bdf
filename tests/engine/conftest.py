"""Shared fixtures for engine tests.

Everything runs against ``InMemoryRepositoryService`` with a configuration
whose waits are all zero, so retries and polling are instantaneous.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable

import pytest

from sdlcflow.engine.background import BackgroundTaskProcessor
from sdlcflow.engine.branches import BranchOperations
from sdlcflow.engine.commits import ChangesetCommitter
from sdlcflow.engine.core import WorkspaceEngine
from sdlcflow.engine.models.workspace import WorkspaceSpec
from sdlcflow.engine.references import ReferenceScheme
from sdlcflow.engine.retry import ServiceCaller
from sdlcflow.engine.service.memory import InMemoryRepositoryService
from sdlcflow.engine.settings import EngineConfig, RetryPolicy

PROJECT_ID = "demo"

INITIAL_FILES = {
    "project.json": b'{"projectStructureVersion": {"version": 0}}',
    "entities/model/Person.json": b'{"name": "Person"}',
    "entities/model/Firm.json": b'{"name": "Firm"}',
}


def fast_config(**overrides: object) -> EngineConfig:
    values: dict[str, object] = {
        "retry": RetryPolicy(initial_wait=0.0, wait_increment=0.0),
        "background_retry": RetryPolicy(
            max_attempts=10,
            initial_wait=0.0,
            wait_increment=0.0,
            retryable_statuses=frozenset({408, 500, 502, 503, 504}),
        ),
        "rebase_poll_interval": 0.0,
        "rebase_timeout": 5.0,
        "branch_verify_attempts": 3,
        "branch_verify_interval": 0.0,
    }
    values.update(overrides)
    return EngineConfig(**values)


# ---------------------------------------------------------------------------
# Service and components
# ---------------------------------------------------------------------------


@pytest.fixture
def config() -> EngineConfig:
    return fast_config()


@pytest.fixture
def make_config() -> Callable[..., EngineConfig]:
    """Fast configuration with overrides, for tests that need non-default limits."""
    return fast_config


@pytest.fixture
def project_id() -> str:
    return PROJECT_ID


@pytest.fixture
def service() -> InMemoryRepositoryService:
    return InMemoryRepositoryService(initial_files=INITIAL_FILES)


@pytest.fixture
def scheme(config: EngineConfig) -> ReferenceScheme:
    return ReferenceScheme(config.naming)


@pytest.fixture
def caller(service: InMemoryRepositoryService, config: EngineConfig) -> ServiceCaller:
    return ServiceCaller(service, config.retry)


@pytest.fixture
async def background(config: EngineConfig) -> AsyncIterator[BackgroundTaskProcessor]:
    processor = BackgroundTaskProcessor(config.background_retry)
    yield processor
    await processor.shutdown(timeout=1.0)


@pytest.fixture
def branches(caller: ServiceCaller, background: BackgroundTaskProcessor, config: EngineConfig) -> BranchOperations:
    return BranchOperations(caller, background, config)


@pytest.fixture
def committer(
    caller: ServiceCaller, branches: BranchOperations, scheme: ReferenceScheme, config: EngineConfig
) -> ChangesetCommitter:
    return ChangesetCommitter(caller, branches, scheme, config)


@pytest.fixture
async def engine(
    service: InMemoryRepositoryService, config: EngineConfig, project_id: str
) -> AsyncIterator[WorkspaceEngine]:
    async with WorkspaceEngine(service, project_id, config) as eng:
        yield eng


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------


@pytest.fixture
def spec() -> WorkspaceSpec:
    return WorkspaceSpec.user("ws1", "alice")


@pytest.fixture
def create_workspace(
    service: InMemoryRepositoryService, scheme: ReferenceScheme
) -> Callable[[WorkspaceSpec], Awaitable[str]]:
    """Create a workspace branch at the tip of its source branch; returns the branch name."""

    async def _create(workspace: WorkspaceSpec) -> str:
        name = scheme.branch_name(workspace)
        source = await service.get_branch(scheme.source_branch(workspace))
        await service.create_branch(name, source.revision_id)
        return name

    return _create
