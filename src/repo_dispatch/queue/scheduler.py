"""Polling scheduler that hands pending jobs to a dispatch callback."""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from repo_dispatch.queue.models import JobView
from repo_dispatch.queue.repository import JobRepository

JobReadyCallback = Callable[[int, str, dict[str, Any]], None]


class JobScheduler:
    """Promotes pending jobs to processing, bounded by ``max_concurrent``.

    Each promoted job runs on a thread pool of ``max_concurrent`` workers, so a
    slow job never delays the poll loop or other jobs. The callback reports the
    outcome through ``mark_completed``/``mark_failed``/``reset_to_pending``;
    a callback that raises is recorded as a failure.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        on_job_ready: JobReadyCallback | None = None,
        max_concurrent: int = 3,
        poll_interval_seconds: float = 5.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_concurrent <= 0:
            raise ValueError(f"max_concurrent must be > 0, got {max_concurrent}")
        self.repository = repository
        self.on_job_ready = on_job_ready
        self.max_concurrent = max_concurrent
        self.poll_interval_seconds = poll_interval_seconds
        self.loop_error: BaseException | None = None
        self._logger = logger or logging.getLogger(__name__)
        self._slots = threading.Condition()
        self._in_flight: set[int] = set()
        self._dispatch_seq = itertools.count(1)
        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._poll_thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._orphans_recovered = False

    @property
    def in_flight(self) -> int:
        with self._slots:
            return len(self._in_flight)

    @property
    def is_processing(self) -> bool:
        return self._poll_thread is not None

    def start_processing(self) -> None:
        """Recover orphaned jobs, tick immediately, then every poll interval."""

        if self._poll_thread is not None:
            self._logger.warning("Queue processing is already running")
            return
        self._logger.info(
            "Starting queue processing max_concurrent=%d poll_interval=%.1fs",
            self.max_concurrent,
            self.poll_interval_seconds,
        )
        if not self._orphans_recovered:
            self.repository.reset_orphaned()
            self._orphans_recovered = True
        self._stop.clear()
        self.loop_error = None
        self._poll_thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="job-scheduler",
        )
        self._poll_thread.start()

    def stop_processing(self, *, wait: bool = True) -> None:
        """Stop promoting jobs; in-flight jobs run to completion."""

        if self._poll_thread is None and self._executor is None:
            return
        self._logger.info("Stopping queue processing")
        self._stop.set()
        if self._poll_thread is not None:
            self._poll_thread.join(timeout=max(15.0, self.poll_interval_seconds * 2))
            self._poll_thread = None
        with self._tick_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    def wait_for_idle(self, timeout: float | None = None) -> bool:
        """Block until no dispatch is running; ``False`` on timeout."""

        with self._slots:
            return self._slots.wait_for(lambda: not self._in_flight, timeout=timeout)

    def poll_once(self) -> int:
        """Run one scheduling tick and return the number of jobs dispatched."""

        if self.on_job_ready is None:
            raise RuntimeError("No job-ready callback registered.")
        with self._tick_lock:
            free_slots = self.max_concurrent - self.in_flight
            if free_slots <= 0:
                return 0
            jobs = self.repository.claim_pending(limit=free_slots)
            if not jobs:
                return 0
            executor = self._ensure_executor()
            for job in jobs:
                token = next(self._dispatch_seq)
                with self._slots:
                    self._in_flight.add(token)
                executor.submit(self._run_job, job, self.on_job_ready, token)
            self._logger.debug("Dispatched %d jobs", len(jobs))
            return len(jobs)

    def _poll_loop(self) -> None:
        while True:
            try:
                self.poll_once()
            except Exception as error:  # noqa: BLE001
                self.loop_error = error
                self._logger.exception("Queue processing aborted")
                return
            if self._stop.wait(timeout=self.poll_interval_seconds):
                return

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_concurrent,
                thread_name_prefix="job-dispatch",
            )
        return self._executor

    def _run_job(self, job: JobView, callback: JobReadyCallback, token: int) -> None:
        try:
            self._logger.info("Starting job %s action=%s", job.id, job.action_name)
            callback(job.id, job.action_name, job.event)
        except Exception as error:  # noqa: BLE001
            self._logger.exception("Error processing job %s", job.id)
            try:
                self.repository.mark_failed(job.id, str(error) or type(error).__name__, None)
            except Exception:  # noqa: BLE001
                self._logger.exception("Could not record failure of job %s", job.id)
        finally:
            with self._slots:
                self._in_flight.discard(token)
                self._slots.notify_all()

    # -- outcome calls used by dispatch glue ------------------------------------

    def mark_completed(self, job_id: int, log_file: str | None) -> bool:
        return self.repository.mark_completed(job_id, log_file)

    def mark_failed(self, job_id: int, error_message: str, log_file: str | None) -> bool:
        return self.repository.mark_failed(job_id, error_message, log_file)

    def reset_to_pending(self, job_id: int) -> bool:
        return self.repository.reset_to_pending(job_id)
