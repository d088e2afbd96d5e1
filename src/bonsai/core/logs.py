"""Logging setup for heartbeat runs.

Each cycle is a short-lived process started by cron/launchd, so logs go to a
rotating file under the data directory plus stderr for interactive runs.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import TYPE_CHECKING

from bonsai.core.paths import get_logs_dir

if TYPE_CHECKING:
    from pathlib import Path

LOG_FILE_NAME = "heartbeat.log"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(process)d] %(name)s: %(message)s"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 5

_logging_initialized: bool = False


def resolve_level(verbose: bool = False) -> int:
    if verbose:
        return logging.DEBUG
    raw = os.environ.get("BONSAI_LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.INFO


def setup_logging(*, verbose: bool = False, logs_dir: Path | None = None) -> None:
    """Attach file and stderr handlers to the ``bonsai`` logger.

    This is idempotent - calling it multiple times has no effect after the first call.
    """
    global _logging_initialized

    if _logging_initialized:
        return

    target_dir = logs_dir or get_logs_dir()
    target_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = RotatingFileHandler(
        target_dir / LOG_FILE_NAME,
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    stream_handler.setLevel(resolve_level(verbose))

    package_logger = logging.getLogger("bonsai")
    package_logger.setLevel(logging.DEBUG)
    package_logger.addHandler(file_handler)
    package_logger.addHandler(stream_handler)

    _logging_initialized = True
