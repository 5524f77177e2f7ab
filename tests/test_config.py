"""Configuration resolution: overrides, environment, TOML file, defaults."""

from __future__ import annotations

from pathlib import Path

import pytest

from lockstep.config import load_config
from lockstep.paths import DEFAULT_DATA_DIR, DEFAULT_LOG_DIR
from lockstep.store import create_store


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path: Path):
    for key in (
        "LOCKSTEP_STORAGE",
        "LOCKSTEP_DATA_DIR",
        "LOCKSTEP_LOG_DIR",
        "LOCKSTEP_DB_PATH",
        "LOCKSTEP_ROOTS",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("LOCKSTEP_CONFIG", str(tmp_path / "absent.toml"))


def test_defaults():
    config = load_config()
    assert config.storage == "sqlite"
    assert config.data_dir == DEFAULT_DATA_DIR.resolve()
    assert config.log_dir == DEFAULT_LOG_DIR.resolve()
    assert config.db_path == config.data_dir / "coordinator.db"
    assert config.roots == ()
    assert config.default_root == Path.cwd()


def test_environment_overrides_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("LOCKSTEP_STORAGE", "JSON")
    monkeypatch.setenv("LOCKSTEP_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("LOCKSTEP_ROOTS", f"{tmp_path / 'a'}, {tmp_path / 'b'}")
    config = load_config()
    assert config.storage == "json"
    assert config.data_dir == (tmp_path / "data").resolve()
    assert config.db_path == (tmp_path / "data" / "coordinator.db").resolve()
    assert config.roots == ((tmp_path / "a").resolve(), (tmp_path / "b").resolve())
    assert config.default_root == (tmp_path / "a").resolve()


def test_config_file_values(monkeypatch, tmp_path: Path):
    config_file = tmp_path / "config.toml"
    config_file.write_text(
        'storage = "json"\n'
        f'log_dir = "{tmp_path / "logs"}"\n'
        f'db_path = "{tmp_path / "db" / "x.db"}"\n'
        f'roots = ["{tmp_path / "app"}"]\n'
    )
    monkeypatch.setenv("LOCKSTEP_CONFIG", str(config_file))
    config = load_config()
    assert config.storage == "json"
    assert config.log_dir == (tmp_path / "logs").resolve()
    assert config.db_path == (tmp_path / "db" / "x.db").resolve()
    assert config.roots == ((tmp_path / "app").resolve(),)


def test_precedence_override_env_file(monkeypatch, tmp_path: Path):
    config_file = tmp_path / "config.toml"
    config_file.write_text('storage = "json"\n')
    monkeypatch.setenv("LOCKSTEP_CONFIG", str(config_file))
    assert load_config().storage == "json"
    monkeypatch.setenv("LOCKSTEP_STORAGE", "sqlite")
    assert load_config().storage == "sqlite"
    assert load_config(storage="json").storage == "json"


def test_invalid_config_file_is_ignored(monkeypatch, tmp_path: Path, caplog):
    config_file = tmp_path / "config.toml"
    config_file.write_text("storage = \n")
    monkeypatch.setenv("LOCKSTEP_CONFIG", str(config_file))
    assert load_config().storage == "sqlite"
    assert "Failed to parse" in caplog.text


def test_invalid_storage_rejected():
    with pytest.raises(ValueError, match="Invalid storage backend"):
        load_config(storage="postgres")


def test_home_is_expanded(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("HOME", str(tmp_path))
    config = load_config(data_dir="~/lockstep-data")
    assert config.data_dir == (tmp_path / "lockstep-data").resolve()


@pytest.mark.parametrize(("storage", "class_name"), [("json", "JsonStore"), ("sqlite", "SqliteStore")])
def test_create_store_picks_backend(tmp_path: Path, storage: str, class_name: str):
    config = load_config(
        storage=storage, data_dir=tmp_path / "data", log_dir=tmp_path / "logs"
    )
    store = create_store(config)
    try:
        assert type(store).__name__ == class_name
        assert config.log_dir.is_dir()
        assert store.list_tasks() == []
    finally:
        store.close()
