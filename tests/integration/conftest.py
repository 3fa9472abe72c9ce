# ==============================
# Integration fixtures
# ==============================
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]


@dataclass
class TillerEnv:
    repo_root: Path
    working_directory: Path
    storage_dir: Path
    db_path: Path


@pytest.fixture
def tiller_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TillerEnv]:
    """
    Shared env fixture for integration tests that go through load_settings().

    Points storage, the sqlite file, and the tool working directory into tmp_path and
    pins the offline echo provider so no test depends on an API key. Root logging is
    restored afterwards because the CLI reconfigures it.
    """
    working_directory = tmp_path / "work"
    working_directory.mkdir()
    storage_dir = tmp_path / "storage"
    db_path = tmp_path / "integration.sqlite"

    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("TILLER__APP__WORKING_DIRECTORY", working_directory.as_posix())
    monkeypatch.setenv("TILLER__APP__PATHS__STORAGE_DIR", storage_dir.as_posix())
    monkeypatch.setenv("TILLER__SECRETS__MEMORY_DB_PATH", db_path.as_posix())
    monkeypatch.setenv("TILLER__MODELS__ROUTING__DEFAULT_PROVIDER", "echo")
    monkeypatch.setenv("TILLER__MODELS__ROUTING__DEFAULT_MODEL", "echo")

    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield TillerEnv(
        repo_root=REPO_ROOT,
        working_directory=working_directory,
        storage_dir=storage_dir,
        db_path=db_path,
    )
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)
