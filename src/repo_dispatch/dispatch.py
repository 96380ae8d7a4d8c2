"""Glue between the job scheduler, work-directory locks and action executors."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from repo_dispatch.actions.base import (
    ActionConfig,
    ActionConfigError,
    ActionExecutor,
    UnknownActionError,
)
from repo_dispatch.events import Event, event_key, repository_parts
from repo_dispatch.queue.locks import WorkDirectoryLockedError
from repo_dispatch.queue.models import JobView
from repo_dispatch.queue.scheduler import JobScheduler
from repo_dispatch.queue.workdir import WorkDirectoryManager
from repo_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_JOB_LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


class ActionDispatcher:
    """Runs one claimed job: lock, log, execute, report exactly one outcome.

    Registered as the scheduler's job-ready callback. A job whose work
    directory is held by another job is put back to pending, never failed.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        actions: Mapping[str, ActionConfig],
        scheduler: JobScheduler,
        workdir_manager: WorkDirectoryManager,
        logs_base_path: Path,
        executors: Mapping[str, ActionExecutor],
        dry_run: bool = False,
    ) -> None:
        self.actions = dict(actions)
        self.scheduler = scheduler
        self.workdir_manager = workdir_manager
        self.logs_base_path = Path(logs_base_path)
        self.executors = dict(executors)
        self.dry_run = dry_run
        scheduler.on_job_ready = self.execute_job

    def initialize(self) -> None:
        self.logs_base_path.mkdir(parents=True, exist_ok=True)

    def submit(self, action_name: str, event: Event) -> JobView:
        """Enqueue ``action_name`` for ``event``; the action must be configured."""

        if action_name not in self.actions:
            raise UnknownActionError(action_name)
        job = self.scheduler.repository.enqueue(action_name, event)
        logger.info(
            "Queued action %s for event %s as job %s",
            action_name,
            event.get("id"),
            job.id,
        )
        return job

    def execute_job(self, job_id: int, action_name: str, event: dict[str, Any]) -> None:
        work_dir = self.workdir_manager.get_work_dir_for_event(event)
        try:
            self.workdir_manager.acquire_lock(work_dir, job_id)
        except WorkDirectoryLockedError as error:
            logger.info(
                "Work directory %s is locked by job %s, requeueing job %s",
                work_dir.name,
                error.owner_job_id,
                job_id,
            )
            self.scheduler.reset_to_pending(job_id)
            return

        try:
            log_file, error_message = self._run_action(job_id, action_name, event, work_dir)
            if error_message is None:
                self.scheduler.mark_completed(job_id, log_file)
            else:
                self.scheduler.mark_failed(job_id, error_message, log_file)
        finally:
            self.workdir_manager.release_lock(work_dir, job_id)

    def create_action_logger(
        self,
        event: Event,
        action_name: str,
        job_id: int,
    ) -> tuple[Path, logging.Logger]:
        """Dedicated file logger under ``<logs>/<owner>/<repo>/``.

        The caller closes it with ``close_action_logger``.
        """

        owner, repo = repository_parts(event)
        log_dir = self.logs_base_path / _safe_name(owner) / _safe_name(repo)
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = utc_now().strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        key = _safe_name(event_key(event))
        log_file = log_dir / f"{timestamp}_{key}_{_safe_name(action_name)}.log"

        # Not registered with the logging manager.
        job_logger = logging.Logger(f"repo_dispatch.jobs.{job_id}", logging.DEBUG)
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter(_JOB_LOG_FORMAT))
        job_logger.addHandler(handler)
        return log_file, job_logger

    def _run_action(
        self,
        job_id: int,
        action_name: str,
        event: dict[str, Any],
        work_dir: Path,
    ) -> tuple[str | None, str | None]:
        """Return ``(log_file, error_message)``; ``error_message`` is ``None`` on success."""

        log_file: Path | None = None
        job_logger: logging.Logger | None = None
        try:
            log_file, job_logger = self.create_action_logger(event, action_name, job_id)
            _write_header(job_logger, job_id, action_name, event, work_dir, dry_run=self.dry_run)

            action = self.actions.get(action_name)
            if action is None:
                raise UnknownActionError(action_name)
            executor = self.executors.get(action.type)
            if executor is None:
                raise ActionConfigError(f"No executor registered for action type {action.type!r}")

            if self.dry_run:
                executor.execute_dry_run(action, event, job_logger)
            else:
                executor.execute(action, event, job_logger)
            job_logger.info("Action completed successfully")
        except Exception as error:  # noqa: BLE001
            message = str(error) or type(error).__name__
            if job_logger is not None:
                job_logger.exception("Action failed: %s", message)
            logger.error("Job %s action %s failed: %s", job_id, action_name, message)
            return _optional_str(log_file), message
        finally:
            if job_logger is not None:
                close_action_logger(job_logger)
        return _optional_str(log_file), None


def close_action_logger(job_logger: logging.Logger) -> None:
    for handler in list(job_logger.handlers):
        job_logger.removeHandler(handler)
        handler.close()


def _write_header(  # noqa: PLR0913
    job_logger: logging.Logger,
    job_id: int,
    action_name: str,
    event: Event,
    work_dir: Path,
    *,
    dry_run: bool,
) -> None:
    job_logger.info("=== Action Execution Log ===")
    job_logger.info("Job ID: %s", job_id)
    job_logger.info("Action: %s", action_name)
    job_logger.info("Event ID: %s", event.get("id"))
    job_logger.info("Event type: %s", event.get("type"))
    job_logger.info("Repository: %s", event.get("repository"))
    job_logger.info("Work directory: %s", work_dir)
    if dry_run:
        job_logger.info("Mode: dry run")
    job_logger.info("============================")


def _safe_name(value: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("_", value).strip("._") or "unknown"


def _optional_str(path: Path | None) -> str | None:
    return str(path) if path is not None else None
