"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from repo_dispatch.queue.models import (
    TERMINAL_STATUSES,
    JobEventView,
    JobStatus,
    JobView,
    QueueStats,
)
from repo_dispatch.storage.alembic_runner import upgrade_head
from repo_dispatch.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from repo_dispatch.storage.sqlmodel_models import Job, JobEvent

logger = logging.getLogger(__name__)

_STATUS_VALUES = frozenset(status.value for status in JobStatus)


class JobRepository:
    """Queue persistence facade; every state transition is a conditional update."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def enqueue(self, action_name: str, event: Mapping[str, Any]) -> JobView:
        """Durably insert a pending job before returning."""

        now = utc_now()
        event_json = json.dumps(dict(event), ensure_ascii=False)
        with Session(self.engine) as session:
            row = Job(
                action_name=action_name,
                event_json=event_json,
                status=JobStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            if row.id is None:
                raise RuntimeError("Job store did not assign an id on insert.")
            self._add_event(
                session=session,
                job_id=row.id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={"action_name": action_name},
            )
            session.commit()
            session.refresh(row)
            view = _to_job_view(row)
        logger.debug("Enqueued job %s action=%s", view.id, action_name)
        return view

    def count_processing(self) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(Job)
                .where(Job.status == JobStatus.PROCESSING.value),
            ).one()

    def claim_pending(self, *, limit: int) -> list[JobView]:
        """Move up to ``limit`` oldest pending jobs (by id) to processing."""

        if limit <= 0:
            return []
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            candidate_ids = session.exec(
                select(Job.id)
                .where(Job.status == JobStatus.PENDING.value)
                .order_by(col(Job.id).asc())
                .limit(limit),
            ).all()

            claimed_ids: list[int] = []
            for job_id in candidate_ids:
                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.id) == job_id,
                        col(Job.status) == JobStatus.PENDING.value,
                    )
                    .values(
                        status=JobStatus.PROCESSING.value,
                        started_at=now,
                        finished_at=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    continue
                claimed_ids.append(job_id)
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="claimed",
                    status_from=JobStatus.PENDING,
                    status_to=JobStatus.PROCESSING,
                    details={},
                )
            session.commit()

            if not claimed_ids:
                return []
            rows = session.exec(
                select(Job).where(col(Job.id).in_(claimed_ids)).order_by(col(Job.id).asc()),
            ).all()
            return [_to_job_view(row) for row in rows]

    def mark_completed(self, job_id: int, log_file: str | None) -> bool:
        """Mark a processing job as completed; no-op for any other state."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    log_file=log_file,
                    error_message=None,
                    finished_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning("Ignoring completion of job %s: not processing", job_id)
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.COMPLETED,
                details={"log_file": log_file},
            )
            session.commit()
        logger.info("Job %s completed", job_id)
        return True

    def mark_failed(self, job_id: int, error_message: str, log_file: str | None) -> bool:
        """Mark a processing job as failed; no-op for any other state."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    error_message=error_message,
                    log_file=log_file,
                    finished_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning("Ignoring failure of job %s: not processing", job_id)
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="failed",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.FAILED,
                details={"error_message": error_message, "log_file": log_file},
            )
            session.commit()
        logger.error("Job %s failed: %s", job_id, error_message)
        return True

    def reset_to_pending(self, job_id: int) -> bool:
        """Return a processing job to pending without recording a failure.

        Calling it for a job that is already pending is a successful no-op;
        terminal jobs are never reopened.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            if row is None:
                raise RuntimeError(f"Job not found: {job_id}")
            if row.status == JobStatus.PENDING.value:
                return True
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    started_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning("Not requeueing job %s from status=%s", job_id, row.status)
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="requeued",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.PENDING,
                details={},
            )
            session.commit()
            return True

    def reset_orphaned(self) -> int:
        """Return every processing job to pending; used before polling starts."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            orphan_ids = session.exec(
                select(Job.id).where(Job.status == JobStatus.PROCESSING.value),
            ).all()
            if not orphan_ids:
                return 0
            session.exec(
                sa_update(Job)
                .where(
                    col(Job.id).in_(orphan_ids),
                    col(Job.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    started_at=None,
                    updated_at=now,
                ),
            )
            for job_id in orphan_ids:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="orphan_reset",
                    status_from=JobStatus.PROCESSING,
                    status_to=JobStatus.PENDING,
                    details={},
                )
            session.commit()
        logger.info("Reset %d orphaned processing jobs to pending", len(orphan_ids))
        return len(orphan_ids)

    def get_job(self, job_id: int) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, newest first, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.id).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def list_job_events(self, job_id: int) -> list[JobEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.id).asc()),
            ).all()

        events: list[JobEventView] = []
        for row in rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                    status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events

    def get_stats(self) -> QueueStats:
        stats = QueueStats()
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job.status, func.count()).group_by(Job.status),
            ).all()
        for status, count in rows:
            if status in _STATUS_VALUES:
                setattr(stats, status, count)
        return stats

    def cleanup_old_jobs(self, *, older_than_days: int = 30) -> int:
        """Delete completed/failed jobs that finished before the cutoff."""

        cutoff = to_db_datetime(utc_now() - timedelta(days=older_than_days))
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(Job).where(
                    col(Job.status).in_([status.value for status in TERMINAL_STATUSES]),
                    col(Job.finished_at) < cutoff,
                ),
            )
            session.commit()
            removed = result.rowcount or 0
        if removed:
            logger.info("Cleaned up %d old jobs from queue", removed)
        return removed

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: int,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_job_view(row: Job) -> JobView:
    if row.id is None:
        raise RuntimeError("Job row has no id.")
    event = json.loads(row.event_json)
    return JobView(
        id=row.id,
        action_name=row.action_name,
        event=event if isinstance(event, dict) else {"payload": event},
        status=JobStatus(row.status),
        log_file=row.log_file,
        error_message=row.error_message,
        started_at=_optional_aware(row.started_at),
        finished_at=_optional_aware(row.finished_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
