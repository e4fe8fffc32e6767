"""Retention for per-session monitor log files.

Every wrapped run writes its own ``session-*.log``. Old files are removed
when they are older than the age limit or fall outside the newest N.
"""

import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from .config import ConfigPaths

logger = logging.getLogger(__name__)

DEFAULT_MAX_LOG_FILES = 50
DEFAULT_MAX_LOG_AGE_SEC = 7 * 24 * 60 * 60


class LogStats(BaseModel):
    total_files: int = 0
    total_size_bytes: int = 0
    oldest_log: Optional[datetime] = None
    newest_log: Optional[datetime] = None


class LogManager:
    """Deletes stale ``*.log`` files from the log directory."""

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        max_log_files: int = DEFAULT_MAX_LOG_FILES,
        max_log_age_sec: float = DEFAULT_MAX_LOG_AGE_SEC,
    ) -> None:
        self.log_dir = log_dir or ConfigPaths.LOG_DIR
        self.max_log_files = max_log_files
        self.max_log_age_sec = max_log_age_sec

    def _log_files(self) -> list[tuple[Path, float, int]]:
        """(path, mtime, size) for every log file, newest first."""
        files = []
        for path in self.log_dir.glob("*.log"):
            try:
                stat = path.stat()
            except FileNotFoundError:
                # Removed by a concurrent cleanup
                continue
            files.append((path, stat.st_mtime, stat.st_size))
        files.sort(key=lambda f: f[1], reverse=True)
        return files

    def cleanup_old_logs(self) -> int:
        """Delete logs past the age limit or beyond the newest ``max_log_files``.

        Returns:
            Number of files deleted
        """
        if not self.log_dir.exists():
            return 0

        now = time.time()
        deleted = 0
        for index, (path, mtime, _size) in enumerate(self._log_files()):
            too_old = now - mtime > self.max_log_age_sec
            too_many = index >= self.max_log_files
            if not (too_old or too_many):
                continue
            try:
                path.unlink()
                deleted += 1
                logger.debug(f"Deleted old log file: {path}")
            except OSError as e:
                logger.error(f"Failed to delete log file {path}: {e}")

        if deleted:
            logger.info(f"Removed {deleted} old log file(s) from {self.log_dir}")
        return deleted

    def log_stats(self) -> LogStats:
        if not self.log_dir.exists():
            return LogStats()

        files = self._log_files()
        if not files:
            return LogStats()

        return LogStats(
            total_files=len(files),
            total_size_bytes=sum(size for _, _, size in files),
            oldest_log=datetime.fromtimestamp(files[-1][1]),
            newest_log=datetime.fromtimestamp(files[0][1]),
        )
