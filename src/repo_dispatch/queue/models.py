"""Domain models for the job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and dispatch logic."""

    id: int
    action_name: str
    event: dict[str, Any]
    status: JobStatus
    log_file: str | None
    error_message: str | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job state transition entry for audit trail."""

    event_id: int
    job_id: int
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class QueueStats:
    """Job counts per status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


@dataclass(slots=True)
class LockInfo:
    """Owner of a work-directory lock."""

    job_id: int
    acquired_at: datetime


@dataclass(slots=True)
class DirectoryInfo:
    """Work directory snapshot read from the filesystem."""

    name: str
    path: Path
    access_time: float
    size_bytes: int


@dataclass(slots=True)
class CleanupResult:
    """Outcome of one quota eviction pass."""

    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    size_before_bytes: int = 0
    size_after_bytes: int = 0
