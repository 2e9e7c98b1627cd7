"""Shared test fixtures for liveconf tests."""

from __future__ import annotations

import pathlib

import pytest

import liveconf.config
import liveconf.handlers
import liveconf.store


@pytest.fixture
def registry() -> liveconf.handlers.HandlerRegistry:
    """A fresh registry with only the built-in handlers."""
    return liveconf.handlers.HandlerRegistry()


@pytest.fixture
def toml_path(tmp_path: pathlib.Path) -> pathlib.Path:
    return tmp_path / "settings.toml"


@pytest.fixture
def stages() -> list[liveconf.config.ReloadStage]:
    """Recorder for reload stages; pass ``stages.append`` as a listener."""
    return []


@pytest.fixture
def make_config(toml_path: pathlib.Path):
    """Factory for an unwatched Config over ``toml_path``."""

    def _create(*elements, listeners=()) -> liveconf.config.Config:
        store = liveconf.store.CommentedTomlFile(toml_path)
        return liveconf.config.Config(
            store, list(elements), listeners=listeners, watch=False
        )

    return _create
