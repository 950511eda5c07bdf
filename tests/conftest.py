"""Shared test fixtures.

Tests never read the developer's environment: every ``SDLC_*`` variable is
cleared and the settings cache is invalidated around each test.  Use
``set_env`` to override a setting for one test.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator

import pytest

from sdlcflow.engine.settings import _get_settings_cached


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Clear SDLC_* variables and the cached settings for every test."""
    for key in list(os.environ):
        if key.startswith("SDLC_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(os.path.dirname(__file__))  # keep a stray .env out of reach
    _get_settings_cached.cache_clear()
    yield
    _get_settings_cached.cache_clear()


@pytest.fixture
def set_env(monkeypatch: pytest.MonkeyPatch) -> Callable[[str, str], None]:
    """Set an env var and invalidate the settings cache."""

    def _set_env(key: str, value: str) -> None:
        monkeypatch.setenv(key, value)
        _get_settings_cached.cache_clear()

    return _set_env
