from __future__ import annotations

import os
from pathlib import Path


def default_rmsgd_dir() -> Path:
    override = os.environ.get("RMSGD_HOME")
    if override:
        return Path(override)
    return Path.home() / ".rmsgd"


def default_config_path() -> Path:
    return default_rmsgd_dir() / "rmsgd.toml"


def default_identity_path() -> Path:
    return default_rmsgd_dir() / "hub_identity"


def default_user_directory_path() -> Path:
    return default_rmsgd_dir() / "users.toml"


def default_message_db_path() -> Path:
    return default_rmsgd_dir() / "messages.sqlite3"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except Exception:
        pass
