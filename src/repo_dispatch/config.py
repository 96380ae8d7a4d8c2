"""Runtime configuration for the job scheduler and work-directory manager."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(slots=True)
class QueueSettings:
    """Job scheduler settings."""

    max_concurrent: int = 3
    poll_interval_seconds: float = 5.0
    job_retention_days: int = 30


@dataclass(slots=True)
class WorkDirectorySettings:
    """Per-event work directory settings."""

    base_path: Path = Path("./data/work")
    max_size_gb: float = 100.0
    cleanup_threshold_percent: float = 90.0
    monitor_interval_seconds: float = 3600.0


@dataclass(slots=True)
class LoggingSettings:
    """Per-job action log settings."""

    base_path: Path = Path("./data/logs")
    retention_days: int = 30
    level: str = "INFO"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path("./data/repo_dispatch.db")
    actions_path: Path = Path("./actions.json")
    dry_run: bool = False
    sqlite_busy_timeout_ms: int = 5_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    work_directory: WorkDirectorySettings = field(default_factory=WorkDirectorySettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("REPO_DISPATCH_DB_PATH", "./data/repo_dispatch.db")),
            actions_path=Path(os.getenv("REPO_DISPATCH_ACTIONS_PATH", "./actions.json")),
            dry_run=_env_bool("REPO_DISPATCH_DRY_RUN", default=False),
            sqlite_busy_timeout_ms=int(os.getenv("REPO_DISPATCH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            queue=QueueSettings(
                max_concurrent=int(os.getenv("REPO_DISPATCH_QUEUE_MAX_CONCURRENT", "3")),
                poll_interval_seconds=float(os.getenv("REPO_DISPATCH_QUEUE_POLL_INTERVAL", "5")),
                job_retention_days=int(os.getenv("REPO_DISPATCH_QUEUE_JOB_RETENTION_DAYS", "30")),
            ),
            work_directory=WorkDirectorySettings(
                base_path=Path(os.getenv("REPO_DISPATCH_WORK_BASE_PATH", "./data/work")),
                max_size_gb=float(os.getenv("REPO_DISPATCH_WORK_MAX_SIZE_GB", "100")),
                cleanup_threshold_percent=float(
                    os.getenv("REPO_DISPATCH_WORK_CLEANUP_THRESHOLD_PERCENT", "90"),
                ),
                monitor_interval_seconds=float(
                    os.getenv("REPO_DISPATCH_WORK_MONITOR_INTERVAL", "3600"),
                ),
            ),
            logging=LoggingSettings(
                base_path=Path(os.getenv("REPO_DISPATCH_LOGS_PATH", "./data/logs")),
                retention_days=int(os.getenv("REPO_DISPATCH_LOG_RETENTION_DAYS", "30")),
                level=os.getenv("REPO_DISPATCH_LOG_LEVEL", "INFO").strip().upper(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the scheduler cannot run with."""

        if self.queue.max_concurrent <= 0:
            raise ValueError("REPO_DISPATCH_QUEUE_MAX_CONCURRENT must be > 0.")
        if self.queue.poll_interval_seconds <= 0:
            raise ValueError("REPO_DISPATCH_QUEUE_POLL_INTERVAL must be > 0.")
        if self.queue.job_retention_days < 0:
            raise ValueError("REPO_DISPATCH_QUEUE_JOB_RETENTION_DAYS must be >= 0.")
        if self.work_directory.max_size_gb <= 0:
            raise ValueError("REPO_DISPATCH_WORK_MAX_SIZE_GB must be > 0.")
        threshold = self.work_directory.cleanup_threshold_percent
        if not 0 < threshold <= 100:  # noqa: PLR2004
            raise ValueError(
                "REPO_DISPATCH_WORK_CLEANUP_THRESHOLD_PERCENT must be in (0, 100], "
                f"got {threshold!r}.",
            )
        if self.work_directory.monitor_interval_seconds <= 0:
            raise ValueError("REPO_DISPATCH_WORK_MONITOR_INTERVAL must be > 0.")
        if self.logging.retention_days < 0:
            raise ValueError("REPO_DISPATCH_LOG_RETENTION_DAYS must be >= 0.")
        if self.logging.level not in _LOG_LEVELS:
            raise ValueError(f"Invalid REPO_DISPATCH_LOG_LEVEL: {self.logging.level!r}")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("REPO_DISPATCH_SQLITE_BUSY_TIMEOUT_MS must be > 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
