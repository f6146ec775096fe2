"""Shared fixtures for clanker-spanker tests."""

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from clanker_spanker.config import Paths, Settings
from clanker_spanker.models import PrRef
from clanker_spanker.store import MonitorStore

TEST_BUFFER_LINES = 5
TEST_STOP_GRACE_SECONDS = 1.0


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep host CS_* variables, .env files and XDG dirs out of every test."""
    for name in list(os.environ):
        if name.startswith("CS_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg"))
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with a small output buffer and a short stop grace period."""
    return Settings(
        data_dir=tmp_path / "data",
        output_buffer_lines=TEST_BUFFER_LINES,
        stop_grace_seconds=TEST_STOP_GRACE_SECONDS,
    )


@pytest.fixture
def paths(settings: Settings) -> Paths:
    """Paths rooted at the test data directory."""
    result = Paths(settings.data_dir)
    result.ensure_dirs()
    return result


@pytest.fixture
def store(paths: Paths) -> Iterator[MonitorStore]:
    """A file-backed store that is closed after the test."""
    monitor_store = MonitorStore(paths.db_file)
    yield monitor_store
    monitor_store.close()


@pytest.fixture
def pr() -> PrRef:
    """A sample pull request reference."""
    return PrRef(repo="acme/widgets", number=42)
