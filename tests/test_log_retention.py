from __future__ import annotations

import os
import time
from pathlib import Path

import allure

from repo_dispatch.logs import SECONDS_PER_DAY, LogRetentionManager

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Log Retention"),
]


def _write_log(path: Path, *, age_days: float) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("log line\n", "utf-8")
    stamp = time.time() - age_days * SECONDS_PER_DAY
    os.utime(path, (stamp, stamp))
    return path


def test_cleanup_removes_only_expired_files(tmp_path: Path) -> None:
    base = tmp_path / "logs"
    old = _write_log(base / "acme" / "widgets" / "old.log", age_days=40)
    fresh = _write_log(base / "acme" / "widgets" / "fresh.log", age_days=2)
    manager = LogRetentionManager(base_path=base, retention_days=30)

    assert manager.cleanup_old_logs() == 1

    assert not old.exists()
    assert fresh.exists()


def test_cleanup_prunes_empty_directories_but_keeps_base(tmp_path: Path) -> None:
    base = tmp_path / "logs"
    _write_log(base / "acme" / "gone" / "a.log", age_days=31)
    _write_log(base / "other" / "repo" / "b.log", age_days=45)
    kept = _write_log(base / "acme" / "kept" / "c.log", age_days=1)
    manager = LogRetentionManager(base_path=base, retention_days=30)

    assert manager.cleanup_old_logs() == 2

    assert base.is_dir()
    assert not (base / "acme" / "gone").exists()
    assert not (base / "other").exists()
    assert kept.exists()


def test_cleanup_of_missing_base_path_is_a_no_op(tmp_path: Path) -> None:
    manager = LogRetentionManager(base_path=tmp_path / "missing", retention_days=1)

    assert manager.cleanup_old_logs() == 0
    assert not (tmp_path / "missing").exists()


def test_start_monitoring_sweeps_immediately(tmp_path: Path) -> None:
    base = tmp_path / "logs"
    old = _write_log(base / "a" / "b" / "old.log", age_days=10)
    manager = LogRetentionManager(base_path=base, retention_days=5, monitor_interval_seconds=60)

    manager.start_monitoring()
    try:
        deadline = time.monotonic() + 5
        while old.exists() and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        manager.stop_monitoring()

    assert not old.exists()
