"""Runtime configuration for lockstep.

Values resolve in this order (first wins):

1. keyword overrides passed to :func:`load_config`
2. ``LOCKSTEP_*`` environment variables
3. the TOML config file (``LOCKSTEP_CONFIG`` or ``~/.config/lockstep/config.toml``)
4. built-in defaults from :mod:`lockstep.paths`

Example config file::

    storage = "json"
    data_dir = "~/work/.lockstep/data"
    log_dir = "~/work/.lockstep/logs"
    roots = ["~/work/app"]
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from lockstep.paths import CONFIG_FILE, DB_FILENAME, DEFAULT_DATA_DIR, DEFAULT_LOG_DIR

log = logging.getLogger(__name__)

VALID_STORAGE_BACKENDS = {"json", "sqlite"}
DEFAULT_STORAGE = "sqlite"

_ENV_KEYS = {
    "storage": "LOCKSTEP_STORAGE",
    "data_dir": "LOCKSTEP_DATA_DIR",
    "log_dir": "LOCKSTEP_LOG_DIR",
    "db_path": "LOCKSTEP_DB_PATH",
    "roots": "LOCKSTEP_ROOTS",
}


@dataclass(frozen=True)
class Config:
    storage: str
    data_dir: Path
    log_dir: Path
    db_path: Path
    roots: tuple[Path, ...] = field(default_factory=tuple)

    @property
    def default_root(self) -> Path:
        """First configured project root, falling back to the working directory."""
        return self.roots[0] if self.roots else Path.cwd()


def _config_file_path() -> Path:
    env_path = os.environ.get("LOCKSTEP_CONFIG")
    return Path(env_path).expanduser() if env_path else CONFIG_FILE


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read the TOML config file, returning an empty dict when it is absent."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s", path, exc_info=True)
        return {}
    return raw if isinstance(raw, dict) else {}


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _split_roots(value: object) -> list[str]:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, list):
        return [str(part).strip() for part in value if str(part).strip()]
    return []


def load_config(**overrides: Any) -> Config:
    """Build a :class:`Config` from overrides, environment, config file and defaults.

    Raises ``ValueError`` for an unknown storage backend.
    """
    file_values = _read_config_file(_config_file_path())

    def pick(key: str) -> Any:
        if overrides.get(key) is not None:
            return overrides[key]
        env_value = os.environ.get(_ENV_KEYS[key])
        if env_value:
            return env_value
        return file_values.get(key)

    storage = str(pick("storage") or DEFAULT_STORAGE).strip().lower()
    if storage not in VALID_STORAGE_BACKENDS:
        raise ValueError(
            f"Invalid storage backend '{storage}'. Must be one of: {sorted(VALID_STORAGE_BACKENDS)}"
        )

    data_dir = _resolve_path(pick("data_dir") or DEFAULT_DATA_DIR)
    log_dir = _resolve_path(pick("log_dir") or DEFAULT_LOG_DIR)
    db_value = pick("db_path")
    db_path = _resolve_path(db_value) if db_value else data_dir / DB_FILENAME
    roots = tuple(_resolve_path(root) for root in _split_roots(pick("roots")))

    return Config(
        storage=storage,
        data_dir=data_dir,
        log_dir=log_dir,
        db_path=db_path,
        roots=roots,
    )
