"""Versioned repository service implementations."""

from sdlcflow.engine.service.base import VersionedRepositoryService
from sdlcflow.engine.service.gitlab import GitLabRepositoryService
from sdlcflow.engine.service.memory import InMemoryRepositoryService

__all__ = ["GitLabRepositoryService", "InMemoryRepositoryService", "VersionedRepositoryService"]
