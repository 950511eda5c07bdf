"""Unit tests for project structures and entity path mapping."""

from __future__ import annotations

import pytest

from sdlcflow.engine.errors import FatalError
from sdlcflow.engine.structure import (
    EntitySourceDirectory,
    ProjectConfiguration,
    ProjectStructure,
    SourceDirectoryStructure,
    StructureRegistry,
    default_registry,
    is_valid_entity_path,
    load_project_structure,
)

JSON_DIR = EntitySourceDirectory("/entities", "json")


@pytest.mark.parametrize(
    ("path", "valid"),
    [
        ("model::Person", True),
        ("model::domain::Person", True),
        ("meta::pure::$Class", True),
        ("Person", False),
        ("model::", False),
        ("::Person", False),
        ("model:::Person", False),
        ("model::dom ain::Person", False),
    ],
)
def test_entity_path_validity(path: str, valid: bool) -> None:
    assert is_valid_entity_path(path) is valid


def test_source_directory_mapping() -> None:
    assert JSON_DIR.is_possibly_entity_file_path("/entities/model/Person.json")
    assert not JSON_DIR.is_possibly_entity_file_path("/entities/.json")
    assert not JSON_DIR.is_possibly_entity_file_path("/other/model/Person.json")
    assert not JSON_DIR.is_possibly_entity_file_path("/entities/model/Person.pure")
    assert not JSON_DIR.is_possibly_entity_file_path(None)

    assert JSON_DIR.file_path_to_entity_path("/entities/model/domain/Person.json") == "model::domain::Person"
    assert JSON_DIR.entity_path_to_file_path("model::domain::Person") == "/entities/model/domain/Person.json"


def test_configuration_aliases() -> None:
    configuration = ProjectConfiguration.model_validate_json(
        b'{"projectId": "demo", "artifactId": "lib", "projectStructureVersion": {"version": 11}, "extra": 1}'
    )

    assert configuration.artifact_id == "lib"
    assert configuration.project_structure_version.version == 11


def test_registry_picks_highest_version_not_above() -> None:
    registry = default_registry()

    assert registry.for_configuration(None).version == 0
    structure = registry.for_configuration(
        ProjectConfiguration.model_validate({"artifact_id": "lib", "project_structure_version": {"version": 11}})
    )

    assert isinstance(structure, ProjectStructure)
    assert structure.version == 11
    assert isinstance(structure, SourceDirectoryStructure)
    assert structure.find_entity_path("/lib-entities/src/main/pure/model/Person.pure") == "model::Person"
    assert structure.find_entity_path("/lib-entities/src/main/legend/model/Person.json") == "model::Person"
    assert structure.find_entity_path("/entities/model/Person.json") is None


def test_registry_without_matching_version() -> None:
    registry = StructureRegistry()
    registry.register(5, lambda configuration: SourceDirectoryStructure(5, (JSON_DIR,)))

    with pytest.raises(FatalError, match="Unsupported project structure version: 0"):
        registry.for_configuration(None)


# ---------------------------------------------------------------------------
# Loading from a revision
# ---------------------------------------------------------------------------


async def test_load_from_revision(caller, service) -> None:
    tip = (await service.get_branch("master")).revision_id

    structure = await load_project_structure(caller, tip, default_registry(), "project demo")

    assert structure.version == 0
    assert structure.find_source_directory("/entities/model/Person.json") == JSON_DIR


async def test_missing_configuration_uses_default(caller, service) -> None:
    tip = service.seed_commit("master", {"project.json": None})

    structure = await load_project_structure(caller, tip, default_registry(), "project demo")

    assert structure.version == 0


async def test_invalid_configuration_is_fatal(caller, service) -> None:
    tip = service.seed_commit("master", {"project.json": b'{"projectStructureVersion": {"version": "x"}}'})

    with pytest.raises(FatalError, match="Invalid project configuration"):
        await load_project_structure(caller, tip, default_registry(), "project demo")
