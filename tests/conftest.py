"""Shared fixtures for Loop Medic tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import pytest

from loop_medic.config import StatePaths
from loop_medic.models.recovery import Task, TaskBackend

# 2025-01-15T12:00:00Z
EPOCH = 1736942400.0


class FakeClock:
    """Controllable time source in epoch seconds."""

    def __init__(self, start: float = EPOCH):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float = 0.0, ms: float = 0.0) -> None:
        self.now += seconds + ms / 1000.0


class FakeBackend(TaskBackend):
    """In-memory task backend."""

    def __init__(self, tasks: Optional[list[Task]] = None):
        self.tasks = {t.id: t for t in tasks or []}
        self.created: list[tuple[str, dict[str, Any]]] = []

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.tasks.get(task_id)

    def create_sub_task(self, parent_id: str, data: dict[str, Any]) -> Optional[Task]:
        self.created.append((parent_id, data))
        task = Task(id=f"{parent_id}-{len(self.created)}", title=data["title"])
        self.tasks[task.id] = task
        return task


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def state_paths(project_root: Path) -> StatePaths:
    return StatePaths.for_project(project_root)


@pytest.fixture
def sample_task() -> Task:
    return Task(
        id="TASK-001",
        title="Add login form",
        description="Build the form in src/auth/login.py",
        feature="auth",
        priority="high",
    )


@pytest.fixture
def backend(sample_task: Task) -> FakeBackend:
    return FakeBackend([sample_task])


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer credentials and overrides out of the tests."""
    import os

    for name in list(os.environ):
        if name.startswith("MEDIC_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
