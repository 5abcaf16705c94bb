"""Public entry point: one object per process wiring resolver, store and detector.

Every mutating method takes the project id as its first argument and refuses
to run without one. Read methods may omit it inside :func:`use_project`.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskvault.config import Config
from taskvault.conflicts import ConflictReport, DetectorOptions, detect_conflicts
from taskvault.context import ProjectContext, ProjectResolver, project_for_read, require_project
from taskvault.dependencies import DependencyGraph
from taskvault.store import TaskStore, UpdateMode, UpsertResult
from taskvault.tasks.model import Task, TaskInput, TaskPatch, TaskStatus


@dataclass
class LoadResult:
    context: ProjectContext
    tasks: list[Task] = field(default_factory=list)
    conflicts: ConflictReport | None = None


def _as_inputs(tasks: Iterable[TaskInput | dict[str, Any]]) -> list[TaskInput]:
    return [t if isinstance(t, TaskInput) else TaskInput.from_dict(t) for t in tasks]


class TaskManager:
    """Usage::

        manager = TaskManager(Config(data_dir="/var/lib/taskvault"))
        manager.create_or_update_tasks("checkout-service", [{"name": "Design"}])
        result = manager.load_tasks("checkout-service")
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        roots: Sequence[str | Path] = (),
        resolver: ProjectResolver | None = None,
        store: TaskStore | None = None,
        detector_options: DetectorOptions | None = None,
    ) -> None:
        self.config = config or Config()
        self.roots = list(roots)
        self.resolver = resolver or ProjectResolver(self.config)
        self.store = store or TaskStore(self.config)
        self.detector_options = detector_options or DetectorOptions(
            threshold=self.config.conflict_threshold
        )

    def resolve_project(self, project: str | None, roots: Sequence[str | Path] | None = None) -> ProjectContext:
        return self.resolver.resolve(project, roots or self.roots or None)

    # ── reads ────────────────────────────────────────────────────

    def load_tasks(self, project: str | None = None, detect: bool = True) -> LoadResult:
        ctx = self.resolve_project(project_for_read(project, "load_tasks"))
        tasks = self.store.load(ctx).tasks
        report = detect_conflicts(tasks, ctx, self.detector_options) if detect and tasks else None
        return LoadResult(context=ctx, tasks=tasks, conflicts=report)

    def get_task(self, project: str | None, task_id: str) -> Task:
        ctx = self.resolve_project(project_for_read(project, "get_task"))
        return self.store.get_by_id(ctx, task_id)

    def ready_tasks(self, project: str | None = None) -> list[Task]:
        ctx = self.resolve_project(project_for_read(project, "ready_tasks"))
        return DependencyGraph(self.store.load(ctx).tasks).ready()

    def explain_block(self, project: str | None, task_id: str) -> str:
        ctx = self.resolve_project(project_for_read(project, "explain_block"))
        doc = self.store.load(ctx)
        task = self.store.get_by_id(ctx, task_id)
        return DependencyGraph(doc.tasks).explain_block(task)

    def detect_conflicts(self, tasks: Sequence[Task], project: str | ProjectContext | None) -> ConflictReport:
        active: ProjectContext | str | None = project
        if isinstance(project, str):
            active = self.resolve_project(project)
        return detect_conflicts(tasks, active, self.detector_options)

    def list_projects(self) -> list[str]:
        return self.resolver.list_projects(self.roots or None)

    def list_backups(self, project: str | None) -> list[Path]:
        ctx = self.resolve_project(project_for_read(project, "list_backups"))
        return self.store.list_backups(ctx)

    # ── writes ───────────────────────────────────────────────────

    def create_or_update_tasks(
        self,
        project: str,
        tasks: Iterable[TaskInput | dict[str, Any]],
        mode: UpdateMode | str = UpdateMode.APPEND,
        global_analysis: str | None = None,
    ) -> UpsertResult:
        ctx = self.resolve_project(require_project(project, "create_or_update_tasks"))
        return self.store.batch_upsert(ctx, _as_inputs(tasks), mode, global_analysis)

    def update_task_content(self, project: str, task_id: str, patch: TaskPatch | dict[str, Any]) -> Task:
        ctx = self.resolve_project(require_project(project, "update_task_content"))
        if not isinstance(patch, TaskPatch):
            patch = TaskPatch.from_dict(patch)
        return self.store.update_content(ctx, task_id, patch)

    def update_task_status(
        self, project: str, task_id: str, status: TaskStatus | str, summary: str | None = None
    ) -> Task:
        ctx = self.resolve_project(require_project(project, "update_task_status"))
        return self.store.update_status(ctx, task_id, status, summary)

    def clear_all_tasks(self, project: str) -> Path | None:
        ctx = self.resolve_project(require_project(project, "clear_all_tasks"))
        return self.store.clear_all(ctx)

    def restore_backup(self, project: str, name: str | Path) -> list[Task]:
        ctx = self.resolve_project(require_project(project, "restore_backup"))
        return self.store.restore_backup(ctx, name)
