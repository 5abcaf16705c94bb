"""Shared fixtures for taskvault tests.

File handling in tests:
- Every store lives under tmp_path; nothing touches the real data directory.
- TASKVAULT_DATA_DIR and DATA_DIR are cleared so the environment cannot leak in.
- Use taskvault.io_utils read_text/write_text for consistent UTF-8 I/O.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from taskvault.config import DATA_DIR_ENV, LEGACY_DATA_DIR_ENV, Config
from taskvault.context import ProjectContext, ProjectResolver
from taskvault.manager import TaskManager
from taskvault.store import TaskStore
from taskvault.tasks.model import RelatedFile, Task, TaskInput, TaskStatus, new_task_id

BASE_TIME = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic-style clock driven by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FixedNow:
    """Wall clock for the store; each call returns the current value."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.value = start

    def __call__(self) -> datetime:
        return self.value

    def advance(self, **delta: float) -> None:
        self.value += timedelta(**delta)


def _make_task(
    name: str,
    id: str | None = None,
    status: TaskStatus = TaskStatus.PENDING,
    dependencies: list[str] | None = None,
    related_files: list[RelatedFile] | None = None,
    created_at: datetime | None = None,
    description: str = "",
    notes: str | None = None,
) -> Task:
    created = created_at or BASE_TIME
    return Task(
        id=id or new_task_id(),
        name=name,
        description=description,
        notes=notes,
        status=status,
        dependencies=dependencies or [],
        related_files=related_files or [],
        created_at=created,
        updated_at=created,
    )


def _make_input(name: str, **kwargs) -> TaskInput:
    return TaskInput(name=name, description=kwargs.pop("description", f"{name} task"), **kwargs)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(DATA_DIR_ENV, raising=False)
    monkeypatch.delenv(LEGACY_DATA_DIR_ENV, raising=False)


@pytest.fixture
def make_task():
    """Factory fixture that creates Task instances."""
    return _make_task


@pytest.fixture
def make_input():
    """Factory fixture that creates TaskInput instances."""
    return _make_input


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def data_root(tmp_path: Path) -> Path:
    return tmp_path / "vault"


@pytest.fixture
def config(data_root: Path, workspace: Path) -> Config:
    return Config(data_dir=str(data_root), project_root=str(workspace), lock_timeout=2.0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def now() -> FixedNow:
    return FixedNow()


@pytest.fixture
def resolver(config: Config, clock: FakeClock) -> ProjectResolver:
    return ProjectResolver(config, clock=clock)


@pytest.fixture
def store(config: Config, now: FixedNow) -> TaskStore:
    return TaskStore(config, now=now)


@pytest.fixture
def ctx(resolver: ProjectResolver) -> ProjectContext:
    return resolver.resolve("checkout-service")


@pytest.fixture
def manager(config: Config, resolver: ProjectResolver, store: TaskStore) -> TaskManager:
    return TaskManager(config, resolver=resolver, store=store)
