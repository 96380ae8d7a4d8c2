from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from repo_dispatch.actions.base import (
    ActionExecutionError,
    ScriptAction,
    ShellAction,
    UnknownActionError,
)
from repo_dispatch.dispatch import ActionDispatcher
from repo_dispatch.queue.models import JobStatus
from repo_dispatch.queue.repository import JobRepository
from repo_dispatch.queue.scheduler import JobScheduler
from repo_dispatch.queue.workdir import WorkDirectoryManager

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Dispatch Outcomes"),
]


class RecordingExecutor:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error
        self.gate: threading.Event | None = None
        self.calls: list[tuple[str, str]] = []
        self.dry_runs: list[str] = []
        self.active: dict[str, int] = {}
        self.peak_per_dir = 0
        self._lock = threading.Lock()

    def execute(self, action, event, logger: logging.Logger) -> None:
        key = str(event.get("issue", {}).get("number"))
        with self._lock:
            self.calls.append((action.type, event["id"]))
            self.active[key] = self.active.get(key, 0) + 1
            self.peak_per_dir = max(self.peak_per_dir, self.active[key])
        logger.info("doing work for %s", event["id"])
        try:
            if self.gate is not None:
                self.gate.wait(timeout=5)
            if self.error is not None:
                raise self.error
        finally:
            with self._lock:
                self.active[key] -= 1

    def execute_dry_run(self, action, event, logger: logging.Logger) -> None:
        self.dry_runs.append(event["id"])
        logger.info("[DRY RUN] would run")


def _event(number: int, event_id: str | None = None) -> dict:
    return {
        "id": event_id or f"evt-{number}",
        "type": "issue_comment",
        "repository": "acme/widgets",
        "issue": {"number": number},
    }


def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _build(
    tmp_path: Path,
    repository: JobRepository,
    workdir_manager: WorkDirectoryManager,
    executor: RecordingExecutor,
    *,
    max_concurrent: int = 1,
    dry_run: bool = False,
) -> ActionDispatcher:
    scheduler = JobScheduler(repository=repository, max_concurrent=max_concurrent)
    dispatcher = ActionDispatcher(
        actions={"triage": ShellAction(command="echo triage")},
        scheduler=scheduler,
        workdir_manager=workdir_manager,
        logs_base_path=tmp_path / "logs",
        executors={"shell": executor},
        dry_run=dry_run,
    )
    dispatcher.initialize()
    return dispatcher


def _drain(dispatcher: ActionDispatcher) -> None:
    scheduler = dispatcher.scheduler
    try:
        while scheduler.poll_once():
            assert scheduler.wait_for_idle(timeout=5)
    finally:
        scheduler.stop_processing()


def test_dispatcher_registers_itself_as_scheduler_callback(
    tmp_path: Path,
    repository: JobRepository,
    workdir_manager: WorkDirectoryManager,
) -> None:
    dispatcher = _build(tmp_path, repository, workdir_manager, RecordingExecutor())

    assert dispatcher.scheduler.on_job_ready == dispatcher.execute_job


def test_successful_job_completes_with_log_file(
    tmp_path: Path,
    repository: JobRepository,
    workdir_manager: WorkDirectoryManager,
) -> None:
    executor = RecordingExecutor()
    dispatcher = _build(tmp_path, repository, workdir_manager, executor)
    job = dispatcher.submit("triage", _event(42))

    _drain(dispatcher)

    stored = repository.get_job(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert executor.calls == [("shell", "evt-42")]
    log_file = Path(stored.log_file)
    assert log_file.parent == tmp_path / "logs" / "acme" / "widgets"
    assert log_file.name.endswith("_issue-42_triage.log")
    text = log_file.read_text("utf-8")
    assert f"Job ID: {job.id}" in text
    assert "doing work for evt-42" in text
    assert "Action completed successfully" in text
    assert not workdir_manager.is_locked(workdir_manager.base_path / "issue-42")


def test_executor_failure_marks_job_failed(
    tmp_path: Path,
    repository: JobRepository,
    workdir_manager: WorkDirectoryManager,
) -> None:
    executor = RecordingExecutor(error=ActionExecutionError("shell action exited with code 3"))
    dispatcher = _build(tmp_path, repository, workdir_manager, executor)
    job = dispatcher.submit("triage", _event(5))

    _drain(dispatcher)

    stored = repository.get_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_message == "shell action exited with code 3"
    assert "Action failed" in Path(stored.log_file).read_text("utf-8")
    assert not workdir_manager.is_locked(workdir_manager.base_path / "issue-5")


def test_locked_work_dir_requeues_instead_of_failing(
    tmp_path: Path,
    repository: JobRepository,
    workdir_manager: WorkDirectoryManager,
) -> None:
    executor = RecordingExecutor()
    dispatcher = _build(tmp_path, repository, workdir_manager, executor)
    work_dir = workdir_manager.base_path / "issue-8"
    workdir_manager.acquire_lock(work_dir, 999)
    job = dispatcher.submit("triage", _event(8))

    try:
        assert dispatcher.scheduler.poll_once() == 1
        assert dispatcher.scheduler.wait_for_idle(timeout=5)

        stored = repository.get_job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.error_message is None
        assert executor.calls == []
        assert workdir_manager.get_lock_info(work_dir).job_id == 999
        assert not (tmp_path / "logs" / "acme").exists()
    finally:
        dispatcher.scheduler.stop_processing()

    workdir_manager.release_lock(work_dir, 999)
    _drain(dispatcher)

    assert repository.get_job(job.id).status == JobStatus.COMPLETED
    event_types = [entry.event_type for entry in repository.list_job_events(job.id)]
    assert event_types == ["enqueued", "claimed", "requeued", "claimed", "completed"]


def test_jobs_sharing_a_work_dir_never_run_together(
    tmp_path: Path,
    repository: JobRepository,
    workdir_manager: WorkDirectoryManager,
) -> None:
    executor = RecordingExecutor()
    executor.gate = threading.Event()
    dispatcher = _build(tmp_path, repository, workdir_manager, executor, max_concurrent=2)
    first = dispatcher.submit("triage", _event(11, "evt-a"))
    second = dispatcher.submit("triage", _event(11, "evt-b"))
    scheduler = dispatcher.scheduler

    try:
        assert scheduler.poll_once() == 2
        assert _wait_until(lambda: repository.get_stats().pending == 1)
        executor.gate.set()
        assert scheduler.wait_for_idle(timeout=5)
    finally:
        executor.gate.set()
    _drain(dispatcher)

    assert executor.peak_per_dir == 1
    assert repository.get_job(first.id).status == JobStatus.COMPLETED
    assert repository.get_job(second.id).status == JobStatus.COMPLETED
    assert sorted(event_id for _, event_id in executor.calls) == ["evt-a", "evt-b"]


def test_submit_rejects_unconfigured_action(
    tmp_path: Path,
    repository: JobRepository,
    workdir_manager: WorkDirectoryManager,
) -> None:
    dispatcher = _build(tmp_path, repository, workdir_manager, RecordingExecutor())

    with pytest.raises(UnknownActionError, match="not found in configuration"):
        dispatcher.submit("missing", _event(1))

    assert repository.get_stats().pending == 0


def test_unconfigured_action_in_queue_fails_job(
    tmp_path: Path,
    repository: JobRepository,
    workdir_manager: WorkDirectoryManager,
) -> None:
    dispatcher = _build(tmp_path, repository, workdir_manager, RecordingExecutor())
    job = repository.enqueue("removed-action", _event(2))

    _drain(dispatcher)

    stored = repository.get_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert "removed-action" in stored.error_message
    assert stored.log_file is not None
    assert not workdir_manager.is_locked(workdir_manager.base_path / "issue-2")


def test_action_type_without_executor_fails_job(
    tmp_path: Path,
    repository: JobRepository,
    workdir_manager: WorkDirectoryManager,
) -> None:
    dispatcher = _build(tmp_path, repository, workdir_manager, RecordingExecutor())
    dispatcher.actions["script-only"] = ScriptAction(path="run.py")
    job = dispatcher.submit("script-only", _event(3))

    _drain(dispatcher)

    stored = repository.get_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert "No executor registered" in stored.error_message


def test_dry_run_uses_dry_run_execution(
    tmp_path: Path,
    repository: JobRepository,
    workdir_manager: WorkDirectoryManager,
) -> None:
    executor = RecordingExecutor()
    dispatcher = _build(tmp_path, repository, workdir_manager, executor, dry_run=True)
    job = dispatcher.submit("triage", _event(4))

    _drain(dispatcher)

    stored = repository.get_job(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert executor.calls == []
    assert executor.dry_runs == ["evt-4"]
    assert "Mode: dry run" in Path(stored.log_file).read_text("utf-8")


def test_create_action_logger_uses_unknown_for_missing_repository(
    tmp_path: Path,
    repository: JobRepository,
    workdir_manager: WorkDirectoryManager,
) -> None:
    dispatcher = _build(tmp_path, repository, workdir_manager, RecordingExecutor())

    log_file, job_logger = dispatcher.create_action_logger({"id": "x1"}, "deploy/all", 77)
    job_logger.info("hello")
    for handler in list(job_logger.handlers):
        handler.close()

    assert log_file.parent == tmp_path / "logs" / "unknown" / "unknown"
    assert log_file.name.endswith("_event-x1_deploy_all.log")
    assert "hello" in log_file.read_text("utf-8")


@pytest.mark.parametrize("dry_run", [False, True])
def test_event_id_with_path_separators_gets_a_flat_log_file(
    tmp_path: Path,
    repository: JobRepository,
    workdir_manager: WorkDirectoryManager,
    dry_run: bool,
) -> None:
    executor = RecordingExecutor()
    dispatcher = _build(tmp_path, repository, workdir_manager, executor, dry_run=dry_run)
    job = dispatcher.submit("triage", {"id": "acme/widgets#99", "repository": "acme/widgets"})

    _drain(dispatcher)

    stored = repository.get_job(job.id)
    assert stored.status == JobStatus.COMPLETED, stored.error_message
    log_file = Path(stored.log_file)
    assert log_file.parent == tmp_path / "logs" / "acme" / "widgets"
    assert log_file.name.endswith("_event-acme_widgets_99_triage.log")
    assert "Action completed successfully" in log_file.read_text("utf-8")
