"""Process wiring: job store, work directories, scheduler, dispatcher and log retention."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager

from repo_dispatch.actions.base import ActionConfig, ActionExecutor, load_actions
from repo_dispatch.actions.executors import default_executors
from repo_dispatch.config import Settings
from repo_dispatch.dispatch import ActionDispatcher
from repo_dispatch.logs import LogRetentionManager
from repo_dispatch.queue.repository import JobRepository
from repo_dispatch.queue.scheduler import JobScheduler
from repo_dispatch.queue.workdir import WorkDirectoryManager

logger = logging.getLogger(__name__)

JOB_RETENTION_SWEEP_SECONDS = 24 * 60 * 60


class QueueProcessingAbortedError(RuntimeError):
    """Scheduler poll loop stopped on a store error."""


class RepoDispatchService:
    """Owns every long-running component of one scheduler process."""

    def __init__(
        self,
        settings: Settings,
        *,
        actions: Mapping[str, ActionConfig] | None = None,
        executors: Mapping[str, ActionExecutor] | None = None,
    ) -> None:
        settings.validate()
        self.settings = settings
        self.repository = JobRepository(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        self.workdir_manager = WorkDirectoryManager(
            base_path=settings.work_directory.base_path,
            max_size_gb=settings.work_directory.max_size_gb,
            cleanup_threshold_percent=settings.work_directory.cleanup_threshold_percent,
            monitor_interval_seconds=settings.work_directory.monitor_interval_seconds,
            logger=logging.getLogger("repo_dispatch.workdir"),
        )
        self.scheduler = JobScheduler(
            repository=self.repository,
            max_concurrent=settings.queue.max_concurrent,
            poll_interval_seconds=settings.queue.poll_interval_seconds,
            logger=logging.getLogger("repo_dispatch.scheduler"),
        )
        self.dispatcher = ActionDispatcher(
            actions=actions if actions is not None else load_actions(settings.actions_path),
            scheduler=self.scheduler,
            workdir_manager=self.workdir_manager,
            logs_base_path=settings.logging.base_path,
            executors=executors
            if executors is not None
            else default_executors(self.workdir_manager),
            dry_run=settings.dry_run,
        )
        self.log_retention = LogRetentionManager(
            base_path=settings.logging.base_path,
            retention_days=settings.logging.retention_days,
        )
        self._stop_requested = threading.Event()
        self._started = False

    def start(self) -> None:
        """Migrate, sweep old jobs, then start monitors and queue processing."""

        if self._started:
            logger.warning("Service is already running")
            return
        self.repository.init_schema()
        self.workdir_manager.initialize()
        self.dispatcher.initialize()
        self.sweep_old_jobs()
        self.workdir_manager.start_monitoring()
        self.log_retention.start_monitoring()
        self.scheduler.start_processing()
        self._started = True
        logger.info(
            "Service started actions=%d dry_run=%s",
            len(self.dispatcher.actions),
            self.settings.dry_run,
        )

    def stop(self, *, wait: bool = True) -> None:
        """Stop polling, let in-flight jobs finish, then stop the monitors."""

        if not self._started:
            return
        logger.info("Shutting down")
        self.scheduler.stop_processing(wait=wait)
        self.workdir_manager.stop_monitoring()
        self.log_retention.stop_monitoring()
        self.repository.close()
        self._started = False
        logger.info("Shutdown complete")

    def request_stop(self) -> None:
        self._stop_requested.set()

    def sweep_old_jobs(self) -> int:
        return self.repository.cleanup_old_jobs(
            older_than_days=self.settings.queue.job_retention_days,
        )

    def run_forever(self, *, check_interval_seconds: float = 1.0) -> None:
        """Run until SIGINT/SIGTERM or ``request_stop``.

        Raises ``QueueProcessingAbortedError`` when the poll loop dies.
        """

        with self._signal_handlers():
            self.start()
            try:
                next_sweep = time.monotonic() + JOB_RETENTION_SWEEP_SECONDS
                while not self._stop_requested.wait(timeout=check_interval_seconds):
                    loop_error = self.scheduler.loop_error
                    if loop_error is not None:
                        raise QueueProcessingAbortedError(
                            f"Queue processing aborted: {loop_error}",
                        ) from loop_error
                    if time.monotonic() >= next_sweep:
                        self.sweep_old_jobs()
                        next_sweep = time.monotonic() + JOB_RETENTION_SWEEP_SECONDS
            finally:
                self.stop()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, shutting down gracefully", name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
