"""Per-event work directories: derivation, locking and disk quota eviction."""

from __future__ import annotations

import logging
import os
import shutil
import threading
from pathlib import Path

from repo_dispatch.events import Event, event_key
from repo_dispatch.queue.locks import LockTable
from repo_dispatch.queue.models import CleanupResult, DirectoryInfo, LockInfo

BYTES_PER_GB = 1024**3
REPOSITORY_DIRNAME = "repository"
CLEANUP_TARGET_RATIO = 0.8


class WorkDirectoryManager:
    """Owns the work tree under ``base_path``.

    One directory per logical unit (issue, pull request or standalone event),
    each holding a ``repository`` checkout. Exclusive use is granted through
    the lock table; total size is kept under quota by deleting the least
    recently accessed directories. Eviction reads the filesystem only and does
    not consult the lock table.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_path: Path,
        max_size_gb: float = 100.0,
        cleanup_threshold_percent: float = 90.0,
        monitor_interval_seconds: float = 3600.0,
        lock_table: LockTable | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_path = Path(base_path).resolve()
        self.max_size_gb = max_size_gb
        self.cleanup_threshold_percent = cleanup_threshold_percent
        self.monitor_interval_seconds = monitor_interval_seconds
        self._logger = logger or logging.getLogger(__name__)
        self.locks = lock_table or LockTable(logger=self._logger)
        self._monitor_stop = threading.Event()
        self._monitor_thread: threading.Thread | None = None

    def initialize(self) -> None:
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._logger.debug(
            "Work directory manager initialized base_path=%s max_size_gb=%s",
            self.base_path,
            self.max_size_gb,
        )

    # -- layout ---------------------------------------------------------------

    def get_work_dir_for_event(self, event: Event) -> Path:
        """Deterministic directory for the issue/PR/event; no filesystem access."""

        return self.base_path / event_key(event)

    @staticmethod
    def get_repository_dir(work_dir: Path) -> Path:
        return Path(work_dir) / REPOSITORY_DIRNAME

    def ensure_work_dir(self, work_dir: Path) -> Path:
        """Create the work directory and its repository subdirectory if absent."""

        work_dir = Path(work_dir)
        if not work_dir.exists():
            work_dir.mkdir(parents=True, exist_ok=True)
            self._logger.info("Created work directory %s", work_dir)
        repo_dir = self.get_repository_dir(work_dir)
        repo_dir.mkdir(parents=True, exist_ok=True)
        return repo_dir

    # -- locking --------------------------------------------------------------

    def acquire_lock(self, work_dir: Path, job_id: int) -> LockInfo:
        """Raise ``WorkDirectoryLockedError`` when another job holds ``work_dir``."""

        return self.locks.acquire(work_dir, job_id)

    def release_lock(self, work_dir: Path, job_id: int) -> bool:
        return self.locks.release(work_dir, job_id)

    def is_locked(self, work_dir: Path) -> bool:
        return self.locks.is_locked(work_dir)

    def get_lock_info(self, work_dir: Path) -> LockInfo | None:
        return self.locks.get(work_dir)

    # -- quota monitoring -----------------------------------------------------

    def start_monitoring(self) -> None:
        """Check size now and then every ``monitor_interval_seconds``."""

        if self._monitor_thread is not None:
            self._logger.warning("Work directory monitoring is already running")
            return
        self._logger.info("Starting work directory size monitoring")
        self._monitor_stop.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitor_loop,
            daemon=True,
            name="workdir-monitor",
        )
        self._monitor_thread.start()

    def stop_monitoring(self) -> None:
        if self._monitor_thread is None:
            return
        self._monitor_stop.set()
        self._monitor_thread.join(timeout=15)
        self._monitor_thread = None

    def _monitor_loop(self) -> None:
        while True:
            self.check_and_cleanup()
            if self._monitor_stop.wait(timeout=self.monitor_interval_seconds):
                return

    def check_and_cleanup(self) -> CleanupResult | None:
        """Evict old directories once usage crosses the cleanup threshold."""

        try:
            total_gb = self.get_total_size_gb()
            threshold_gb = self.max_size_gb * (self.cleanup_threshold_percent / 100)
            self._logger.debug(
                "Work directory size check total_gb=%.2f threshold_gb=%.2f",
                total_gb,
                threshold_gb,
            )
            if total_gb <= threshold_gb:
                return None
            self._logger.info(
                "Work directory size %.2f GB exceeds threshold %.2f GB, cleaning up",
                total_gb,
                threshold_gb,
            )
            return self.cleanup_old_dirs()
        except OSError:
            self._logger.exception("Error checking work directory size")
            return None

    def cleanup_old_dirs(self) -> CleanupResult:
        """Delete least recently accessed directories until usage <= 80% of max."""

        target_bytes = self.max_size_gb * CLEANUP_TARGET_RATIO * BYTES_PER_GB
        candidates = self.get_directories_by_age()
        current_bytes = self.get_total_size_bytes()
        result = CleanupResult(size_before_bytes=current_bytes)

        for directory in candidates:
            if current_bytes <= target_bytes:
                break
            self._logger.info(
                "Deleting old work directory %s size_gb=%.2f",
                directory.name,
                directory.size_bytes / BYTES_PER_GB,
            )
            try:
                shutil.rmtree(directory.path)
            except FileNotFoundError:
                pass
            except OSError as error:
                self._logger.error("Failed to delete directory %s: %s", directory.name, error)
                result.failed.append(directory.name)
                continue
            current_bytes -= directory.size_bytes
            result.deleted.append(directory.name)

        result.size_after_bytes = max(0, current_bytes)
        self._logger.info(
            "Cleanup complete directories_deleted=%d new_size_gb=%.2f",
            len(result.deleted),
            result.size_after_bytes / BYTES_PER_GB,
        )
        return result

    def get_total_size_bytes(self) -> int:
        if not self.base_path.exists():
            return 0
        return _tree_size_bytes(self.base_path)

    def get_total_size_gb(self) -> float:
        return self.get_total_size_bytes() / BYTES_PER_GB

    def get_directories_by_age(self) -> list[DirectoryInfo]:
        """Immediate subdirectories, least recently accessed first."""

        if not self.base_path.exists():
            return []

        # Access times are read before any size scan walks the trees.
        access_times: list[tuple[str, Path, float]] = []
        with os.scandir(self.base_path) as entries:
            for entry in entries:
                try:
                    if not entry.is_dir(follow_symlinks=False):
                        continue
                    stats = entry.stat(follow_symlinks=False)
                except OSError as error:
                    self._logger.error("Error reading directory %s: %s", entry.name, error)
                    continue
                access_times.append((entry.name, Path(entry.path), stats.st_atime))

        directories = [
            DirectoryInfo(
                name=name,
                path=path,
                access_time=access_time,
                size_bytes=_tree_size_bytes(path),
            )
            for name, path, access_time in access_times
        ]
        directories.sort(key=lambda item: item.access_time)
        return directories


def _tree_size_bytes(root: Path) -> int:
    total = 0
    for current, _dirs, files in os.walk(root):
        for name in files:
            try:
                total += os.lstat(os.path.join(current, name)).st_size  # noqa: PTH116, PTH118
            except OSError:
                continue
    return total
