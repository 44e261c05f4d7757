from __future__ import annotations

from pathlib import Path

import pytest

from claudedir.config import Settings
from claudedir.store import ConfinedFileStore


@pytest.fixture
def fake_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    return home


@pytest.fixture
def root(fake_home: Path) -> Path:
    directory = fake_home / ".claude"
    directory.mkdir()
    return directory


@pytest.fixture
def settings(root: Path) -> Settings:
    return Settings(root=root, heartbeat_interval=30.0, debounce_ms=100)


@pytest.fixture
def store(root: Path) -> ConfinedFileStore:
    return ConfinedFileStore(root)
