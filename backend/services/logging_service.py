"""
File logging for the backend and retention of rotated log files.

The active file is signaldesk.log inside the configured log directory;
rotation produces signaldesk.log.1, signaldesk.log.2 and so on, which
cleanup_old_files prunes by age at startup.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from logging.handlers import RotatingFileHandler
from pathlib import Path

logger = logging.getLogger(__name__)

LOG_FILE_NAME = "signaldesk.log"
FILE_HANDLER_NAME = "signaldesk_file_handler"
_FILE_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _detach_file_handler(root: logging.Logger) -> None:
    for handler in [h for h in root.handlers if h.get_name() == FILE_HANDLER_NAME]:
        root.removeHandler(handler)
        handler.close()


def configure_file_logging(
    log_directory: str,
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 10,
) -> Path:
    """
    Route root logging into a size-rotated signaldesk.log.

    Calling it again replaces the previous file handler, so the lifespan hook
    can run more than once per process (tests, reloads).

    Returns:
        The resolved log directory
    """
    log_dir = Path(log_directory).expanduser().resolve()
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    _detach_file_handler(root)

    handler = RotatingFileHandler(
        log_dir / LOG_FILE_NAME, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8",
    )
    handler.set_name(FILE_HANDLER_NAME)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT))
    root.addHandler(handler)
    if root.level > level:
        root.setLevel(level)
    return log_dir


def cleanup_old_files(directory: str, retention_days: int) -> int:
    """Delete rotated log files older than retention_days. Returns the number removed."""
    target_dir = Path(directory).expanduser().resolve()
    if not target_dir.is_dir():
        return 0

    cutoff = (datetime.now() - timedelta(days=retention_days)).timestamp()
    removed = 0
    for path in target_dir.glob(f"{LOG_FILE_NAME}.*"):
        try:
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except OSError as exc:
            logger.warning("Could not remove old log file %s: %s", path, exc)
    return removed
