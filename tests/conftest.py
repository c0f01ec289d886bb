"""Shared pytest configuration for the hardenctl suite."""

from __future__ import annotations

import os

import pytest

from hardenctl.config import ENV_PREFIX


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep HARDENCTL_* variables of the invoking shell out of config loading."""
    for key in list(os.environ):
        if key.startswith(ENV_PREFIX):
            monkeypatch.delenv(key)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip tests that sleep or wait on timeouts while mutants are exercised."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    marker = pytest.mark.skip(reason="Timing-dependent; skipped for mutation runs.")
    for item in items:
        if item.get_closest_marker("mutation_timeout") is not None:
            item.add_marker(marker)
