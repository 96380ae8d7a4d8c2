from __future__ import annotations

import os
import shutil
import time
from pathlib import Path

import allure
import pytest

from repo_dispatch.queue import workdir as workdir_module
from repo_dispatch.queue.locks import WorkDirectoryLockedError
from repo_dispatch.queue.workdir import BYTES_PER_GB, WorkDirectoryManager

pytestmark = [
    allure.epic("Work Directories"),
    allure.feature("Layout and Quota Eviction"),
]

FILE_BYTES = 1000


def _gb(num_bytes: int) -> float:
    return num_bytes / BYTES_PER_GB


def _populate(base: Path, names: list[str]) -> None:
    """One FILE_BYTES file per directory, oldest access time first."""
    now = time.time()
    for index, name in enumerate(names):
        directory = base / name / "repository"
        directory.mkdir(parents=True)
        (directory / "blob.bin").write_bytes(b"x" * FILE_BYTES)
        stamp = now - 1000 + index * 100
        os.utime(base / name, (stamp, stamp))


def _manager(tmp_path: Path, *, max_bytes: int, threshold: float = 90.0) -> WorkDirectoryManager:
    manager = WorkDirectoryManager(
        base_path=tmp_path / "work",
        max_size_gb=_gb(max_bytes),
        cleanup_threshold_percent=threshold,
    )
    manager.initialize()
    return manager


def test_work_dir_prefers_issue_over_pull_request(workdir_manager: WorkDirectoryManager) -> None:
    event = {"id": "e1", "issue": {"number": 42}, "pull_request": {"number": 7}}

    assert workdir_manager.get_work_dir_for_event(event) == workdir_manager.base_path / "issue-42"


@pytest.mark.parametrize(
    ("event", "expected"),
    [
        ({"id": "e1", "pull_request": {"number": 7}}, "pr-7"),
        ({"id": "e1", "pullRequest": {"number": 8}}, "pr-8"),
        ({"id": "push-123", "type": "push"}, "event-push-123"),
        ({"id": "e2", "issue": {"title": "no number"}}, "event-e2"),
    ],
)
def test_work_dir_derivation(
    workdir_manager: WorkDirectoryManager,
    event: dict,
    expected: str,
) -> None:
    assert workdir_manager.get_work_dir_for_event(event).name == expected


def test_work_dir_is_deterministic_absolute_and_side_effect_free(tmp_path: Path) -> None:
    relative = WorkDirectoryManager(base_path=Path(os.path.relpath(tmp_path / "w")))
    event = {"id": "e1", "issue": {"number": 5}}

    first = relative.get_work_dir_for_event(event)
    second = relative.get_work_dir_for_event(dict(event))

    assert first == second
    assert first.is_absolute()
    assert not first.exists()


def test_ensure_work_dir_creates_repository_subdir_idempotently(
    workdir_manager: WorkDirectoryManager,
) -> None:
    work_dir = workdir_manager.get_work_dir_for_event({"id": "e", "issue": {"number": 3}})

    repo_dir = workdir_manager.ensure_work_dir(work_dir)
    (repo_dir / "keep.txt").write_text("kept", "utf-8")
    again = workdir_manager.ensure_work_dir(work_dir)

    assert repo_dir == again == work_dir / "repository"
    assert (repo_dir / "keep.txt").read_text("utf-8") == "kept"


def test_manager_lock_api_delegates_to_lock_table(workdir_manager: WorkDirectoryManager) -> None:
    work_dir = workdir_manager.base_path / "issue-1"

    workdir_manager.acquire_lock(work_dir, 10)

    assert workdir_manager.is_locked(work_dir)
    assert workdir_manager.get_lock_info(work_dir).job_id == 10
    with pytest.raises(WorkDirectoryLockedError):
        workdir_manager.acquire_lock(work_dir, 11)
    assert workdir_manager.release_lock(work_dir, 11) is False
    assert workdir_manager.release_lock(work_dir, 10) is True
    assert workdir_manager.get_lock_info(work_dir) is None


def test_directories_by_age_orders_by_access_time(tmp_path: Path) -> None:
    manager = _manager(tmp_path, max_bytes=10 * FILE_BYTES)
    _populate(manager.base_path, ["issue-3", "pr-1", "event-x"])
    (manager.base_path / "stray.txt").write_text("not a directory", "utf-8")

    directories = manager.get_directories_by_age()

    assert [item.name for item in directories] == ["issue-3", "pr-1", "event-x"]
    assert all(item.size_bytes == FILE_BYTES for item in directories)


def test_total_size_counts_file_bytes(tmp_path: Path) -> None:
    manager = _manager(tmp_path, max_bytes=10 * FILE_BYTES)
    _populate(manager.base_path, ["a", "b"])

    assert manager.get_total_size_bytes() == 2 * FILE_BYTES
    assert manager.get_total_size_gb() == pytest.approx(_gb(2 * FILE_BYTES))


def test_total_size_of_missing_base_path_is_zero(tmp_path: Path) -> None:
    manager = WorkDirectoryManager(base_path=tmp_path / "missing")

    assert manager.get_total_size_bytes() == 0
    assert manager.get_directories_by_age() == []


def test_cleanup_deletes_oldest_until_under_target(tmp_path: Path) -> None:
    manager = _manager(tmp_path, max_bytes=2 * FILE_BYTES)
    _populate(manager.base_path, ["oldest", "middle", "newest"])

    result = manager.cleanup_old_dirs()

    assert result.deleted == ["oldest", "middle"]
    assert result.failed == []
    assert result.size_before_bytes == 3 * FILE_BYTES
    assert result.size_after_bytes == FILE_BYTES
    assert [path.name for path in manager.base_path.iterdir()] == ["newest"]


def test_check_and_cleanup_converges_below_eighty_percent(tmp_path: Path) -> None:
    max_bytes = 4 * FILE_BYTES
    manager = _manager(tmp_path, max_bytes=max_bytes)
    _populate(manager.base_path, [f"issue-{number}" for number in range(1, 7)])

    result = manager.check_and_cleanup()

    assert result is not None
    assert len(result.deleted) == 3
    assert manager.get_total_size_bytes() <= max_bytes * 0.8


def test_check_and_cleanup_below_threshold_is_a_no_op(tmp_path: Path) -> None:
    manager = _manager(tmp_path, max_bytes=10 * FILE_BYTES)
    _populate(manager.base_path, ["a", "b", "c"])

    assert manager.check_and_cleanup() is None
    assert sorted(path.name for path in manager.base_path.iterdir()) == ["a", "b", "c"]


def test_failed_deletion_is_skipped_and_cleanup_continues(tmp_path: Path, monkeypatch) -> None:
    manager = _manager(tmp_path, max_bytes=2 * FILE_BYTES)
    _populate(manager.base_path, ["stuck", "second", "third"])
    real_rmtree = shutil.rmtree

    def _rmtree(path, *args, **kwargs):
        if Path(path).name == "stuck":
            raise PermissionError("permission denied")
        return real_rmtree(path, *args, **kwargs)

    monkeypatch.setattr(workdir_module.shutil, "rmtree", _rmtree)

    result = manager.cleanup_old_dirs()

    assert result.failed == ["stuck"]
    assert result.deleted == ["second", "third"]
    assert (manager.base_path / "stuck").exists()


def test_eviction_ignores_locks(tmp_path: Path) -> None:
    manager = _manager(tmp_path, max_bytes=FILE_BYTES)
    _populate(manager.base_path, ["issue-1", "issue-2"])
    manager.acquire_lock(manager.base_path / "issue-1", 1)

    result = manager.cleanup_old_dirs()

    assert "issue-1" in result.deleted
    assert manager.is_locked(manager.base_path / "issue-1")


def test_start_monitoring_checks_immediately(tmp_path: Path) -> None:
    manager = _manager(tmp_path, max_bytes=FILE_BYTES)
    manager.monitor_interval_seconds = 60
    _populate(manager.base_path, ["a", "b", "c"])

    manager.start_monitoring()
    try:
        deadline = time.monotonic() + 5
        while manager.get_total_size_bytes() > FILE_BYTES * 0.8 and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        manager.stop_monitoring()

    assert manager.get_total_size_bytes() <= FILE_BYTES * 0.8
