"""Retention sweep for per-job action logs."""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path

SECONDS_PER_DAY = 24 * 60 * 60


class LogRetentionManager:
    """Deletes action log files older than ``retention_days`` and prunes empty dirs."""

    def __init__(
        self,
        *,
        base_path: Path,
        retention_days: int = 30,
        monitor_interval_seconds: float = SECONDS_PER_DAY,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_path = Path(base_path).resolve()
        self.retention_days = retention_days
        self.monitor_interval_seconds = monitor_interval_seconds
        self._logger = logger or logging.getLogger(__name__)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start_monitoring(self) -> None:
        """Sweep now and then every ``monitor_interval_seconds``."""

        if self._thread is not None:
            self._logger.warning("Log cleanup monitoring is already running")
            return
        self._logger.info("Starting log cleanup monitoring retention_days=%d", self.retention_days)
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="log-retention")
        self._thread.start()

    def stop_monitoring(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=15)
        self._thread = None
        self._logger.debug("Stopped log cleanup monitoring")

    def _loop(self) -> None:
        while True:
            self.cleanup_old_logs()
            if self._stop.wait(timeout=self.monitor_interval_seconds):
                return

    def cleanup_old_logs(self, *, now: float | None = None) -> int:
        """Delete files modified before the cutoff; return how many were removed."""

        if not self.base_path.exists():
            return 0
        cutoff = (now if now is not None else time.time()) - self.retention_days * SECONDS_PER_DAY
        deleted = 0
        for current, _dirs, files in os.walk(self.base_path, topdown=False):
            for name in files:
                path = Path(current) / name
                try:
                    if path.is_symlink() or path.stat().st_mtime >= cutoff:
                        continue
                    path.unlink()
                except FileNotFoundError:
                    continue
                except OSError as error:
                    self._logger.error("Failed to delete log file %s: %s", path, error)
                    continue
                deleted += 1
                self._logger.debug("Deleted old log file %s", path.relative_to(self.base_path))
            self._remove_if_empty(Path(current))

        if deleted:
            self._logger.info("Log cleanup complete files_deleted=%d", deleted)
        else:
            self._logger.debug("No old log files to clean up")
        return deleted

    def _remove_if_empty(self, directory: Path) -> None:
        if directory == self.base_path:
            return
        try:
            directory.rmdir()
        except OSError:
            # Not empty, or already gone.
            return
        self._logger.debug("Removed empty directory %s", directory)
