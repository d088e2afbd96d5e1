"""XDG-compliant path helpers for Bonsai state.

``BONSAI_HOME`` pins every directory under one root (the layout the installer
scripts use: ``~/.bonsai``). ``BONSAI_DEV=1`` switches to a separate
``bonsai-dev`` namespace so a development heartbeat never shares state with
the production one.
"""

from __future__ import annotations

import os
from pathlib import Path

from platformdirs import user_config_dir, user_data_dir

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


def is_dev_profile() -> bool:
    """Return whether the development profile is active."""
    return os.environ.get("BONSAI_DEV", "").strip().lower() in _TRUE_VALUES


def get_app_name() -> str:
    return "bonsai-dev" if is_dev_profile() else "bonsai"


def _home_override() -> Path | None:
    override = os.environ.get("BONSAI_HOME")
    if override:
        return Path(override).expanduser().resolve()
    return None


def get_data_dir() -> Path:
    """Get the data directory (database, sessions, logs, lease file)."""
    override = os.environ.get("BONSAI_DATA_DIR")
    if override:
        return Path(override).resolve()
    home = _home_override()
    if home is not None:
        return home
    return Path(user_data_dir(get_app_name()))


def get_config_dir() -> Path:
    """Get the config directory (config.toml)."""
    override = os.environ.get("BONSAI_CONFIG_DIR")
    if override:
        return Path(override).resolve()
    home = _home_override()
    if home is not None:
        return home
    return Path(user_config_dir(get_app_name()))


def get_worktree_base_dir() -> Path:
    """Get the base directory for isolated working copies."""
    override = os.environ.get("BONSAI_WORKTREE_BASE")
    if override:
        return Path(override).resolve()
    return get_data_dir() / "worktrees"


def get_database_path() -> Path:
    return get_data_dir() / "bonsai.db"


def get_config_path() -> Path:
    return get_config_dir() / "config.toml"


def get_logs_dir() -> Path:
    return get_data_dir() / "logs"


def get_sessions_dir() -> Path:
    """Directory holding one transcript folder per work item."""
    return get_data_dir() / "sessions"


def get_cycle_lock_path() -> Path:
    """Get the path of the process-level heartbeat lock file."""
    return get_data_dir() / "heartbeat.lock"


def get_cycle_lease_path() -> Path:
    """Get the path of the heartbeat lease metadata (owner pid, host, times)."""
    return get_data_dir() / "heartbeat.lease.json"


def ensure_directories() -> None:
    """Create all necessary directories if they don't exist."""
    get_data_dir().mkdir(parents=True, exist_ok=True)
    get_config_dir().mkdir(parents=True, exist_ok=True)
    get_logs_dir().mkdir(parents=True, exist_ok=True)
    get_sessions_dir().mkdir(parents=True, exist_ok=True)
    get_worktree_base_dir().mkdir(parents=True, exist_ok=True)
