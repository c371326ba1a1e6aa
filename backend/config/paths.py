"""
Where SignalDesk keeps its database and logs.

SIGNALDESK_DATA_DIR wins when set; otherwise the platform's per-user data
location is used. An unwritable location falls back to a temp directory.
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

DATA_DIR_ENV = "SIGNALDESK_DATA_DIR"
APP_DIR_NAME = "signaldesk"
DATABASE_FILE_NAME = "signaldesk.db"


def _platform_data_root() -> Path:
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support"
    if os.name == "nt":
        return Path(os.getenv("APPDATA") or Path.home() / "AppData" / "Roaming")
    return Path(os.getenv("XDG_DATA_HOME") or Path.home() / ".local" / "share")


def _writable(target: Path) -> Path:
    try:
        target.mkdir(parents=True, exist_ok=True)
        if os.access(target, os.W_OK):
            return target
        reason = "read-only"
    except OSError as exc:
        reason = str(exc)
    fallback = (Path(tempfile.gettempdir()) / APP_DIR_NAME).resolve()
    logger.warning("Data directory %s unavailable (%s); using %s", target, reason, fallback)
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


def resolve_app_data_dir() -> Path:
    """Directory holding signaldesk.db and the logs/ folder."""
    override = os.getenv(DATA_DIR_ENV, "").strip()
    if override:
        return _writable(Path(override).expanduser().resolve())
    return _writable((_platform_data_root() / APP_DIR_NAME).expanduser().resolve())


def default_database_url() -> str:
    """SQLite URL for the default database file (absolute path, three slashes)."""
    return f"sqlite:///{resolve_app_data_dir() / DATABASE_FILE_NAME}"


def default_log_directory() -> str:
    return str(resolve_app_data_dir() / "logs")
