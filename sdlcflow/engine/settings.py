"""Engine configuration loaded from SDLC_* environment variables.

``EngineSettings`` is the mutable, environment-driven layer.  The engine
itself never reads settings directly: it is constructed with an immutable
``EngineConfig`` (see ``EngineSettings.engine_config``) so that tests and
embedding callers can pass explicit values without touching the process
environment.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Immutable engine configuration
# ---------------------------------------------------------------------------


class RetryPolicy(BaseModel):
    """Bounded retry with linearly increasing wait.

    The first retry waits ``initial_wait`` seconds; each subsequent retry
    waits ``wait_increment`` seconds longer than the previous one.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=5, ge=1)
    initial_wait: float = Field(default=1.0, ge=0)
    wait_increment: float = Field(default=1.0, ge=0)
    retryable_statuses: frozenset[int] = frozenset({408, 502, 503, 504})

    def wait_before(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based)."""
        return self.initial_wait + (attempt - 1) * self.wait_increment


class ReferenceNaming(BaseModel):
    """Fixed tokens used to build repository reference names."""

    model_config = ConfigDict(frozen=True)

    delimiter: str = "/"
    mainline: str = "master"

    # -- Workspace prefixes, keyed by (type, access type) ----------------------
    user_workspace: str = "workspace"
    user_conflict_resolution: str = "resolution"
    user_backup: str = "backup"
    group_workspace: str = "group"
    group_conflict_resolution: str = "group-resolution"
    group_backup: str = "group-backup"

    # -- Other references ------------------------------------------------------
    patch: str = "patch"
    patch_release: str = "patch/main"
    temporary: str = "tmp"
    release_tag: str = "release-"


class EngineConfig(BaseModel):
    """Everything the engine needs to know, fixed at construction."""

    model_config = ConfigDict(frozen=True)

    naming: ReferenceNaming = Field(default_factory=ReferenceNaming)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    background_retry: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(
            max_attempts=20,
            initial_wait=1.0,
            wait_increment=0.0,
            retryable_statuses=frozenset({408, 500, 502, 503, 504}),
        )
    )
    """Background tasks retry on server errors too and wait a fixed ``initial_wait`` between runs."""

    max_commit_size: int = Field(default=512, ge=1)
    max_commit_retries: int = Field(default=10, ge=1)

    rebase_poll_interval: float = Field(default=1.0, ge=0)
    rebase_timeout: float = Field(default=600.0, gt=0)

    branch_verify_attempts: int = Field(default=10, ge=1)
    branch_verify_interval: float = Field(default=0.5, ge=0)

    squash_threshold: int = Field(default=2, ge=0)
    """Minimum number of workspace commits past the merge base before squash-and-retry is attempted."""


# ---------------------------------------------------------------------------
# Environment settings
# ---------------------------------------------------------------------------


class EngineSettings(BaseSettings):
    """sdlcflow settings.

    All fields are read from environment variables with the ``SDLC_`` prefix.
    For example, ``SDLC_LOG_LEVEL=DEBUG`` maps to ``log_level``.
    """

    model_config = SettingsConfigDict(
        env_prefix="SDLC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"
    log_json: bool = False
    log_quiet_loggers: list[str] = Field(default_factory=lambda: ["httpx", "httpcore"])
    """Stdlib loggers held at WARNING (JSON list in the environment)."""

    # -- Repository service ----------------------------------------------------
    gitlab_url: str = "https://gitlab.com"
    gitlab_token: SecretStr | None = None
    project_id: str | None = None
    """Numeric id or URL-encoded path of the backing GitLab project."""

    request_timeout: float = 30.0

    # -- References ------------------------------------------------------------
    mainline_branch: str = "master"

    # -- Commits ---------------------------------------------------------------
    max_commit_size: int = 512
    max_commit_retries: int = 10

    # -- Retry -----------------------------------------------------------------
    retry_max_attempts: int = 5
    retry_initial_wait: float = 1.0
    retry_wait_increment: float = 1.0

    background_min_wait: float = 1.0
    background_max_attempts: int = 20

    # -- Workspace update ------------------------------------------------------
    rebase_poll_interval: float = 1.0
    rebase_timeout: float = 600.0
    branch_verify_attempts: int = 10
    branch_verify_interval: float = 0.5
    squash_threshold: int = 2

    # -- Helpers ---------------------------------------------------------------

    def engine_config(self) -> EngineConfig:
        """Build the immutable engine configuration from these settings."""
        return EngineConfig(
            naming=ReferenceNaming(mainline=self.mainline_branch),
            retry=RetryPolicy(
                max_attempts=self.retry_max_attempts,
                initial_wait=self.retry_initial_wait,
                wait_increment=self.retry_wait_increment,
            ),
            background_retry=RetryPolicy(
                max_attempts=self.background_max_attempts,
                initial_wait=self.background_min_wait,
                wait_increment=0.0,
                retryable_statuses=frozenset({408, 500, 502, 503, 504}),
            ),
            max_commit_size=self.max_commit_size,
            max_commit_retries=self.max_commit_retries,
            rebase_poll_interval=self.rebase_poll_interval,
            rebase_timeout=self.rebase_timeout,
            branch_verify_attempts=self.branch_verify_attempts,
            branch_verify_interval=self.branch_verify_interval,
            squash_threshold=self.squash_threshold,
        )


def get_settings() -> EngineSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``_get_settings_cached.cache_clear()`` in tests to force a
    re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> EngineSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return EngineSettings()


# Apply lru_cache at runtime so the function is only called once.
from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
