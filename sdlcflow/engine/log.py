"""Logging for the engine and the CLI, through loguru.

Every record carries two extras: ``project`` is bound once by
``setup_logging`` and ``workspace`` is set by ``workspace_context`` around
workspace-scoped engine operations, so interleaved updates of different
workspaces stay readable.  Stdlib loggers (httpx, an embedding application)
are routed into the same sink.
"""

from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from sdlcflow.engine.settings import EngineSettings

NO_CONTEXT = "-"

TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[project]}</magenta> <blue>{extra[workspace]}</blue> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - "
    "<level>{message}</level>"
)


class _InterceptHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(settings: EngineSettings) -> None:
    """Replace loguru's sinks with one stderr sink configured from ``settings``.

    ``log_json`` switches to loguru's serialized records, one JSON object per
    line.  Loggers named in ``log_quiet_loggers`` are held at WARNING.
    """
    level = settings.log_level.upper()

    logger.remove()
    logger.configure(extra={"project": settings.project_id or NO_CONTEXT, "workspace": NO_CONTEXT})
    if settings.log_json:
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=TEXT_FORMAT)

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    for name in settings.log_quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)


def workspace_context(branch: str) -> AbstractContextManager[None]:
    """Tag every record logged inside the block with the workspace ``branch``."""
    return logger.contextualize(workspace=branch)
