"""In-process exclusive locks over work directories."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from repo_dispatch.queue.models import LockInfo
from repo_dispatch.storage.common import utc_now


class WorkDirectoryLockedError(RuntimeError):
    """Work directory is held by another job."""

    def __init__(self, work_dir: str, owner_job_id: int) -> None:
        super().__init__(f"Work directory {work_dir} is already locked by job {owner_job_id}")
        self.work_dir = work_dir
        self.owner_job_id = owner_job_id


class LockTable:
    """Maps a work-directory path to the job currently holding it.

    Never persisted: a restart drops every lock, and the job store resets the
    matching ``processing`` rows instead.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._guard = threading.Lock()
        self._locks: dict[str, LockInfo] = {}

    def acquire(self, key: str | Path, job_id: int) -> LockInfo:
        """Record ``job_id`` as owner; re-acquiring an owned lock is allowed."""

        name = str(key)
        with self._guard:
            current = self._locks.get(name)
            if current is not None and current.job_id != job_id:
                raise WorkDirectoryLockedError(name, current.job_id)
            info = current or LockInfo(job_id=job_id, acquired_at=utc_now())
            self._locks[name] = info
        self._logger.debug("Acquired lock on %s for job %s", name, job_id)
        return info

    def release(self, key: str | Path, job_id: int) -> bool:
        """Drop the lock only when ``job_id`` is its owner."""

        name = str(key)
        with self._guard:
            current = self._locks.get(name)
            if current is None:
                owner = None
            elif current.job_id == job_id:
                del self._locks[name]
                owner = job_id
            else:
                owner = current.job_id
        if owner is None:
            self._logger.warning(
                "Job %s attempted to release unlocked work directory %s",
                job_id,
                name,
            )
            return False
        if owner != job_id:
            self._logger.warning(
                "Job %s attempted to release lock held by job %s on %s",
                job_id,
                owner,
                name,
            )
            return False
        self._logger.debug("Released lock on %s for job %s", name, job_id)
        return True

    def get(self, key: str | Path) -> LockInfo | None:
        with self._guard:
            return self._locks.get(str(key))

    def is_locked(self, key: str | Path) -> bool:
        return self.get(key) is not None

    def snapshot(self) -> dict[str, LockInfo]:
        with self._guard:
            return dict(self._locks)
