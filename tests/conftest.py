"""Shared test fixtures: one store per backend, throwaway git repositories."""

import os
import shutil
import subprocess
import tempfile
from pathlib import Path

import pytest

from lockstep.db import SqliteStore, get_connection
from lockstep.json_store import JsonStore

BACKENDS = ("json", "sqlite")


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single fully migrated template DB.

    Copying this file is cheaper than running the schema and migrations in
    every test function.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    path = Path(path_str)
    path.unlink()
    try:
        get_connection(path).close()
        yield path
    finally:
        for suffix in ("", "-wal", "-shm"):
            Path(f"{path}{suffix}").unlink(missing_ok=True)


def make_sqlite_store(tmp_path: Path, template: Path | None = None) -> SqliteStore:
    db_path = tmp_path / "data" / "coordinator.db"
    if template is not None and not db_path.exists():
        db_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(template, db_path)
    store = SqliteStore(db_path, tmp_path / "logs")
    store.init()
    return store


def make_json_store(tmp_path: Path, **kwargs) -> JsonStore:
    store = JsonStore(tmp_path / "data", tmp_path / "logs", **kwargs)
    store.init()
    return store


@pytest.fixture()
def sqlite_store(tmp_path: Path, _db_template_path: Path) -> SqliteStore:
    store = make_sqlite_store(tmp_path, _db_template_path)
    try:
        yield store
    finally:
        store.close()


@pytest.fixture()
def json_store(tmp_path: Path) -> JsonStore:
    return make_json_store(tmp_path)


@pytest.fixture(params=BACKENDS)
def store(request, tmp_path: Path, _db_template_path: Path):
    """The same contract, exercised against both backends."""
    if request.param == "json":
        yield make_json_store(tmp_path)
        return
    sqlite = make_sqlite_store(tmp_path, _db_template_path)
    try:
        yield sqlite
    finally:
        sqlite.close()


def git(cwd: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=str(cwd), check=True, capture_output=True, text=True
    ).stdout.strip()


@pytest.fixture()
def git_identity_env(monkeypatch, tmp_path: Path):
    """Ensure commits succeed without relying on global git config."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "lockstep-tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "lockstep-tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "lockstep-tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "lockstep-tests@example.com")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(tmp_path / "gitconfig"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")


@pytest.fixture()
def git_repo(tmp_path: Path, git_identity_env) -> Path:
    """A repository on ``main`` with one commit containing ``a.txt``."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-b", "main")
    (repo / "a.txt").write_text("base\n")
    git(repo, "add", "a.txt")
    git(repo, "commit", "-m", "init")
    return repo
