"""Project file layout: where entity files live and how they are named.

An entity with path ``model::domain::Person`` is stored in a source
directory as ``<directory>/model/domain/Person.<extension>``.  Which source
directories exist depends on the project structure version recorded in the
project configuration file (``/project.json``), so structures are looked up
per revision through a ``StructureRegistry``.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from sdlcflow.engine.errors import FatalError, RepositoryServiceError

if TYPE_CHECKING:
    from sdlcflow.engine.retry import ServiceCaller

PROJECT_CONFIG_PATH = "/project.json"
PACKAGE_SEPARATOR = "::"

_PACKAGE_NAME = re.compile(r"[A-Za-z0-9_]+")
_ENTITY_NAME = re.compile(r"[A-Za-z0-9_$]+")


# -- Entity paths --------------------------------------------------------------


def is_valid_package_path(path: str) -> bool:
    return bool(path) and all(_PACKAGE_NAME.fullmatch(p) for p in path.split(PACKAGE_SEPARATOR))


def is_valid_entity_path(path: str) -> bool:
    """``pkg::...::Name`` with at least one package and a valid entity name."""
    package, sep, name = path.rpartition(PACKAGE_SEPARATOR)
    return bool(sep) and is_valid_package_path(package) and _ENTITY_NAME.fullmatch(name) is not None


# -- Source directories --------------------------------------------------------


@dataclass(frozen=True)
class EntitySourceDirectory:
    """A directory holding entity files with one file extension."""

    directory: str
    extension: str

    def is_possibly_entity_file_path(self, path: str | None) -> bool:
        """Purely syntactic check; says nothing about whether the file exists."""
        if path is None or len(path) <= len(self.directory) + len(self.extension) + 2:
            return False
        return (
            path.startswith(self.directory + "/")
            and path.endswith("." + self.extension)
        )

    def file_path_to_entity_path(self, path: str) -> str:
        start = len(self.directory) + 1
        end = len(path) - (len(self.extension) + 1)
        return path[start:end].replace("/", PACKAGE_SEPARATOR)

    def entity_path_to_file_path(self, entity_path: str) -> str:
        relative = "/".join(entity_path.split(PACKAGE_SEPARATOR))
        return f"{self.directory}/{relative}.{self.extension}"


@runtime_checkable
class ProjectStructure(Protocol):
    version: int
    source_directories: tuple[EntitySourceDirectory, ...]

    def find_source_directory(self, path: str) -> EntitySourceDirectory | None:
        """First source directory that ``path`` could be an entity file of."""
        ...


@dataclass(frozen=True)
class SourceDirectoryStructure:
    """Project structure defined entirely by an ordered list of source directories."""

    version: int
    source_directories: tuple[EntitySourceDirectory, ...]

    def find_source_directory(self, path: str) -> EntitySourceDirectory | None:
        for source_directory in self.source_directories:
            if source_directory.is_possibly_entity_file_path(path):
                return source_directory
        return None

    def find_entity_path(self, path: str) -> str | None:
        source_directory = self.find_source_directory(path)
        return None if source_directory is None else source_directory.file_path_to_entity_path(path)


# ---------------------------------------------------------------------------
# Project configuration
# ---------------------------------------------------------------------------


class ProjectStructureVersion(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    version: int = 0
    extension_version: int | None = None


class ProjectConfiguration(BaseModel):
    """The subset of ``/project.json`` the engine reads."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    project_id: str | None = None
    group_id: str | None = None
    artifact_id: str | None = None
    project_structure_version: ProjectStructureVersion = Field(default_factory=ProjectStructureVersion)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

StructureFactory = Callable[[ProjectConfiguration | None], ProjectStructure]


def _structure_v0(configuration: ProjectConfiguration | None) -> ProjectStructure:
    return SourceDirectoryStructure(0, (EntitySourceDirectory("/entities", "json"),))


def _structure_v1(configuration: ProjectConfiguration | None) -> ProjectStructure:
    version = configuration.project_structure_version.version if configuration else 1
    artifact = (configuration.artifact_id if configuration else None) or "project"
    module = f"/{artifact}-entities/src/main"
    return SourceDirectoryStructure(
        version,
        (
            EntitySourceDirectory(f"{module}/pure", "pure"),
            EntitySourceDirectory(f"{module}/legend", "json"),
        ),
    )


class StructureRegistry:
    """Maps project structure versions to structure factories.

    A configuration is served by the factory registered for the highest
    version not above its own.
    """

    def __init__(self) -> None:
        self._factories: dict[int, StructureFactory] = {}

    def register(self, version: int, factory: StructureFactory) -> None:
        self._factories[version] = factory

    def for_configuration(self, configuration: ProjectConfiguration | None) -> ProjectStructure:
        version = configuration.project_structure_version.version if configuration else 0
        candidates = [v for v in self._factories if v <= version]
        if not candidates:
            msg = f"Unsupported project structure version: {version}"
            raise FatalError(msg)
        return self._factories[max(candidates)](configuration)


def default_registry() -> StructureRegistry:
    registry = StructureRegistry()
    registry.register(0, _structure_v0)
    registry.register(1, _structure_v1)
    return registry


async def load_project_structure(
    caller: ServiceCaller,
    revision_id: str,
    registry: StructureRegistry,
    subject: str,
) -> ProjectStructure:
    """Read ``/project.json`` at ``revision_id`` and build its structure.

    A revision without a configuration file uses the version 0 layout.
    """
    config_subject = f"project configuration at revision {revision_id} of {subject}"
    try:
        raw = await caller.raw(config_subject, caller.service.get_file, revision_id, PROJECT_CONFIG_PATH)
    except RepositoryServiceError as exc:
        if exc.status_code != 404:
            raise caller.translate(exc, config_subject) from exc
        logger.debug("No project configuration at {}; using default structure", revision_id)
        return registry.for_configuration(None)

    try:
        configuration = ProjectConfiguration.model_validate_json(raw)
    except ValidationError as exc:
        msg = f"Invalid {config_subject}: {exc.error_count()} error(s)"
        raise FatalError(msg) from exc
    return registry.for_configuration(configuration)
