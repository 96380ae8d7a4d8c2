"""Controllers for repo-dispatch CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from repo_dispatch.actions.base import UnknownActionError, load_actions
from repo_dispatch.config import Settings
from repo_dispatch.queue.models import JobStatus
from repo_dispatch.queue.repository import JobRepository
from repo_dispatch.queue.workdir import BYTES_PER_GB, WorkDirectoryManager
from repo_dispatch.service import RepoDispatchService

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class RunCommand:
    """CLI input for the long-running scheduler process."""

    db_path: Path | None
    dry_run: bool | None = None


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for queueing one action for one event."""

    db_path: Path | None
    action_name: str
    event_json: str


@dataclass(slots=True)
class ListJobsCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectJobCommand:
    db_path: Path | None
    job_id: int


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class CleanupJobsCommand:
    db_path: Path | None
    older_than_days: int | None


@dataclass(slots=True)
class WorkdirCheckCommand:
    """CLI input for a one-off quota check of the work tree."""

    cleanup: bool


class RepoDispatchCliController:
    """Coordinates scheduler, queue and work-directory CLI operations."""

    def run(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.dry_run is not None:
            settings.dry_run = command.dry_run
        settings.validate()
        logging.basicConfig(level=settings.logging.level, format=LOG_FORMAT)
        service = RepoDispatchService(settings)
        service.run_forever()
        return ["Scheduler stopped."]

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        event = json.loads(command.event_json)
        if not isinstance(event, dict):
            raise ValueError("Event must be a JSON object.")
        actions = load_actions(settings.actions_path)
        if command.action_name not in actions:
            raise UnknownActionError(command.action_name)
        with _repository(settings) as repository:
            job = repository.enqueue(command.action_name, event)
        return [f"Job enqueued: job_id={job.id} action={job.action_name} status={job.status.value}"]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.id} action={job.action_name} status={job.status.value} "
                f"event={job.event.get('id', '-')} created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: InspectJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.get_job(command.job_id)
            events = repository.list_job_events(command.job_id) if job is not None else []
        if job is None:
            return [f"Job not found: {command.job_id}"]

        lines = [
            f"Job: {job.id}",
            f"Action: {job.action_name}",
            f"Status: {job.status.value}",
            f"Event: {json.dumps(job.event, ensure_ascii=False, sort_keys=True)}",
            f"Log file: {job.log_file or '-'}",
            f"Error: {job.error_message or '-'}",
            f"Started: {job.started_at.isoformat() if job.started_at else '-'}",
            f"Finished: {job.finished_at.isoformat() if job.finished_at else '-'}",
            f"Events: {len(events)}",
        ]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            stats = repository.get_stats()
        return [
            "Queue stats: "
            f"pending={stats.pending} processing={stats.processing} "
            f"completed={stats.completed} failed={stats.failed}",
        ]

    def cleanup_jobs(self, command: CleanupJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        days = (
            command.older_than_days
            if command.older_than_days is not None
            else settings.queue.job_retention_days
        )
        with _repository(settings) as repository:
            removed = repository.cleanup_old_jobs(older_than_days=days)
        return [f"Removed {removed} finished jobs older than {days} days."]

    def workdir_check(self, command: WorkdirCheckCommand) -> list[str]:
        settings = Settings.from_env()
        work = settings.work_directory
        manager = WorkDirectoryManager(
            base_path=work.base_path,
            max_size_gb=work.max_size_gb,
            cleanup_threshold_percent=work.cleanup_threshold_percent,
        )
        directories = manager.get_directories_by_age()
        total_gb = manager.get_total_size_gb()
        threshold_gb = work.max_size_gb * work.cleanup_threshold_percent / 100
        lines = [
            f"Work directory: {manager.base_path}",
            f"Size: {total_gb:.2f} GB "
            f"(threshold {threshold_gb:.2f} GB, max {work.max_size_gb:g} GB)",
            f"Directories: {len(directories)}",
        ]
        for directory in directories:
            lines.append(
                f"  {directory.name} size_gb={directory.size_bytes / BYTES_PER_GB:.3f} "
                f"access_time={directory.access_time:.0f}",
            )
        if command.cleanup:
            result = manager.check_and_cleanup()
            if result is None:
                lines.append("Cleanup: not needed")
            else:
                lines.append(
                    f"Cleanup: deleted={len(result.deleted)} failed={len(result.failed)} "
                    f"new_size_gb={result.size_after_bytes / BYTES_PER_GB:.2f}",
                )
        return lines


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
