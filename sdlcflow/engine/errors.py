"""Domain exceptions raised by the engine.

The engine raises these instead of the raw ``RepositoryServiceError`` so
callers (CLI, an HTTP layer) can map them to user-facing responses without
knowing anything about the backing service.  Every message names the
subject (project, workspace, revision) in human terms.
"""

from __future__ import annotations

from collections.abc import Callable


class RepositoryServiceError(Exception):
    """Raw failure reported by the versioned repository service.

    ``status_code`` follows HTTP semantics regardless of the transport so
    that retry classification is uniform across implementations.
    """

    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"[{status_code}] {message}" if message else f"[{status_code}]")


# ---------------------------------------------------------------------------
# Engine taxonomy
# ---------------------------------------------------------------------------


class EngineError(Exception):
    """Base class for all caller-visible engine errors."""


class NotFoundError(EngineError, LookupError):
    """A reference, revision, workspace or file does not exist."""


class ForbiddenError(EngineError, PermissionError):
    """The caller is not allowed to perform the operation."""


class RetryRequestError(EngineError, RuntimeError):
    """Credentials were rejected and dropped; the request may be retried."""


class ConflictError(EngineError, RuntimeError):
    """An optimistic-concurrency check failed."""


class FatalError(EngineError, ValueError):
    """Malformed input or a client-class failure that must not be retried."""


class TransientError(EngineError, RuntimeError):
    """A transient remote failure persisted after all retries."""


class InternalError(EngineError, RuntimeError):
    """An engine invariant was violated."""


class InvalidWorkspaceIdError(ValueError):
    """Workspace id contains characters not allowed in a reference segment."""

    def __init__(self, workspace_id: str) -> None:
        self.workspace_id = workspace_id
        super().__init__(
            f"Invalid workspace id: {workspace_id!r}. A workspace id must be a non-empty string consisting of "
            "characters from the following set: {A-Z, a-z, 0-9, _, ., -}. The characters '-' and '.' may not "
            "occur as the first or last character, and '.' may not occur twice in succession."
        )


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def is_client_error(status_code: int) -> bool:
    """Client-class statuses abort immediately (408 and 429 are transient)."""
    return 400 <= status_code < 500 and status_code not in (408, 429)


def translate_service_error(
    exc: RepositoryServiceError,
    subject: str,
    *,
    on_unauthorized: Callable[[], None] | None = None,
) -> EngineError:
    """Map a raw service error onto the engine taxonomy.

    Parameters
    ----------
    exc:
        The underlying service failure.
    subject:
        Human-readable description of what was being accessed, e.g.
        ``"revision 1a2b of user workspace ws1 of project demo"``.
    on_unauthorized:
        Invoked on 401 to drop cached credentials before asking the caller
        to retry.

    Returns
    -------
    EngineError
        The exception to raise, chained by the caller with ``from exc``.
    """
    status = exc.status_code
    if status == 401:
        if on_unauthorized is not None:
            on_unauthorized()
        return RetryRequestError(f"Credentials were rejected while accessing {subject}. Please retry request")
    if status == 403:
        return ForbiddenError(f"Forbidden: {subject}")
    if status == 404:
        return NotFoundError(f"Unknown: {subject}")
    if status == 409:
        return ConflictError(f"Conflict while accessing {subject}")
    if is_client_error(status):
        return FatalError(f"Invalid request for {subject}: {exc.message or status}")
    return TransientError(f"Error accessing {subject}: {exc.message or status}")
