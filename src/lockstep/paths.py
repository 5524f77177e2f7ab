"""Canonical filesystem paths for lockstep configuration and state."""

from __future__ import annotations

from pathlib import Path

LOCKSTEP_HOME = Path.home() / ".lockstep"

DEFAULT_DATA_DIR = LOCKSTEP_HOME / "data"
DEFAULT_LOG_DIR = LOCKSTEP_HOME / "logs"
DB_FILENAME = "coordinator.db"

CONFIG_FILE = Path.home() / ".config" / "lockstep" / "config.toml"

# Per-repository worktree layout, relative to the git root.
WORKTREE_DIR = Path(".lockstep") / "worktrees"
BRANCH_PREFIX = "lockstep/"
