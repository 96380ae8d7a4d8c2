"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from repo_dispatch.queue.repository import JobRepository
from repo_dispatch.queue.workdir import WorkDirectoryManager


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    """Drop REPO_DISPATCH_* variables leaking in from the developer shell."""
    for name in list(os.environ):
        if name.startswith("REPO_DISPATCH_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "jobs.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def workdir_manager(tmp_path: Path) -> WorkDirectoryManager:
    manager = WorkDirectoryManager(base_path=tmp_path / "work")
    manager.initialize()
    return manager

