"""Per-user locations for saved timelines and logs.

User-authored sessions must never live inside install or temp folders.
Only standard environment variables are consulted (no platformdirs).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

APP_NAME = "MesmerLine"
DATA_DIR_ENV = "MESMERLINE_DATA_DIR"


def is_windows() -> bool:
    return os.name == "nt"


def get_user_data_dir(app_name: str = APP_NAME) -> Path:
    """Return a persistent per-user data directory.

    ``MESMERLINE_DATA_DIR`` overrides everything (tests, portable installs).
    Windows: %APPDATA%\\MesmerLine, elsewhere ~/.mesmerline
    """
    override = os.environ.get(DATA_DIR_ENV)
    if override:
        return Path(override)

    if is_windows():
        base = os.getenv("APPDATA")
        if base:
            return Path(base) / app_name
        return Path.home() / "AppData" / "Roaming" / app_name

    return Path.home() / f".{app_name.lower()}"


def get_sessions_dir(app_name: str = APP_NAME) -> Path:
    return get_user_data_dir(app_name) / "sessions"


def get_log_dir(app_name: str = APP_NAME) -> Path:
    """Log directory; falls back to cwd when the data dir is not writable."""
    path = get_user_data_dir(app_name)
    try:
        path.mkdir(parents=True, exist_ok=True)
        return path
    except OSError as exc:
        logger.debug("Log dir %s unavailable (%s); using cwd", path, exc)
        return Path.cwd()


def ensure_dir(path: Path) -> Path:
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path
