"""Persistent, project-isolated task store.

All writes to a project's document run under that project's
:class:`~taskvault.locking.ProjectLock` as one read-modify-write sequence,
and every save checks the document revision it started from. Two writers
aimed at the same ``tasks.json`` therefore serialize instead of silently
overwriting each other.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path

from taskvault import log
from taskvault.config import Config, DependencyPolicy
from taskvault.context import ProjectContext
from taskvault.dependencies import DependencyGraph
from taskvault.errors import (
    DependencyError,
    MissingProjectError,
    NotFoundError,
    ProjectMismatchError,
    StaleDocumentError,
    ValidationError,
)
from taskvault.locking import ProjectLock
from taskvault.tasks import io as task_io
from taskvault.tasks.model import (
    Task,
    TaskDocument,
    TaskInput,
    TaskPatch,
    TaskStatus,
    new_task_id,
    utc_now,
)
from taskvault.tasks.validate import (
    detect_cycles,
    validate_dependency_refs,
    validate_related_files,
    validate_task_name,
    validate_unique_names,
)


class UpdateMode(str, Enum):
    """How a batch of incoming tasks is merged into the stored ones."""

    APPEND = "append"
    OVERWRITE = "overwrite"
    SELECTIVE = "selective"
    CLEAR_ALL_TASKS = "clearAllTasks"


@dataclass
class UpsertResult:
    tasks: list[Task] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    backup: Path | None = None


@dataclass
class _Plan:
    """Outcome of an update-mode handler, before dependencies are resolved."""

    tasks: list[Task]
    touched: list[tuple[TaskInput, Task]]


def _require_context(ctx: ProjectContext | None, operation: str) -> ProjectContext:
    if not isinstance(ctx, ProjectContext):
        raise MissingProjectError(operation)
    return ctx


class TaskStore:
    """CRUD over one project's ``tasks.json`` at a time.

    *now* supplies timestamps for created/updated tasks and backup names.
    """

    def __init__(self, config: Config | None = None, *, now: Callable[[], datetime] = utc_now) -> None:
        self.config = config or Config()
        self._now = now
        self._handlers: dict[UpdateMode, Callable[[ProjectContext, list[Task], list[TaskInput]], _Plan]] = {
            UpdateMode.APPEND: self._plan_append,
            UpdateMode.OVERWRITE: self._plan_overwrite,
            UpdateMode.SELECTIVE: self._plan_selective,
            UpdateMode.CLEAR_ALL_TASKS: self._plan_clear_all,
        }

    def lock(self, ctx: ProjectContext) -> ProjectLock:
        return ProjectLock(ctx.tasks_file, self.config.lock_timeout, project=ctx.project_id)

    # ── load / save ──────────────────────────────────────────────

    def load(self, ctx: ProjectContext) -> TaskDocument:
        ctx = _require_context(ctx, "load")
        return task_io.load_document(ctx.tasks_file, ctx.project_id)

    def save(self, ctx: ProjectContext, doc: TaskDocument) -> TaskDocument:
        """Persist *doc* atomically and bump its revision.

        Raises :class:`StaleDocumentError` when the file changed since *doc*
        was loaded.
        """
        ctx = _require_context(ctx, "save")
        if doc.project_id and doc.project_id != ctx.project_id:
            raise ProjectMismatchError(ctx.tasks_file, expected=ctx.project_id, actual=doc.project_id)
        with self.lock(ctx):
            current = task_io.load_document(ctx.tasks_file, ctx.project_id).revision
            if current != doc.revision:
                raise StaleDocumentError(ctx.tasks_file, doc.revision, current, project=ctx.project_id)
            updated = TaskDocument(project_id=ctx.project_id, revision=doc.revision + 1, tasks=list(doc.tasks))
            task_io.save_document(ctx.tasks_file, updated)
        doc.project_id = ctx.project_id
        doc.revision = updated.revision
        return doc

    # ── reads ────────────────────────────────────────────────────

    def list_tasks(self, ctx: ProjectContext, status: TaskStatus | str | None = None) -> list[Task]:
        tasks = self.load(ctx).tasks
        if status is None:
            return tasks
        wanted = TaskStatus(status)
        return [t for t in tasks if t.status == wanted]

    def get_by_id(self, ctx: ProjectContext, task_id: str) -> Task:
        ctx = _require_context(ctx, "get_by_id")
        task = self.load(ctx).get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found", key=task_id, project=ctx.project_id)
        return task

    # ── batch writes ─────────────────────────────────────────────

    def batch_upsert(
        self,
        ctx: ProjectContext,
        tasks: Sequence[TaskInput],
        mode: UpdateMode | str = UpdateMode.APPEND,
        global_analysis: str | None = None,
        dependency_policy: DependencyPolicy | str | None = None,
    ) -> UpsertResult:
        """Create or update a batch of tasks according to *mode*.

        The whole batch is validated before anything is written; any error
        leaves the stored document untouched.
        """
        ctx = _require_context(ctx, "batch_upsert")
        mode = UpdateMode(mode)
        policy = DependencyPolicy(dependency_policy or self.config.dependency_policy)
        incoming = list(tasks)

        for item in incoming:
            validate_task_name(item.name, project=ctx.project_id)
            validate_related_files(item.related_files or [], task=item.name, project=ctx.project_id)
            validate_dependency_refs(item.dependencies, task=item.name, project=ctx.project_id)
        validate_unique_names((item.name for item in incoming), project=ctx.project_id)

        with self.lock(ctx):
            doc = self.load(ctx)
            plan = self._handlers[mode](ctx, doc.tasks, incoming)
            warnings = self._apply_dependencies(ctx, plan, policy)
            for _, task in plan.touched:
                if task.analysis_result is None and global_analysis is not None and not task.is_completed:
                    task.analysis_result = global_analysis
            self._check_cycles(ctx, plan.tasks)

            backup = None
            if mode == UpdateMode.CLEAR_ALL_TASKS and doc.tasks:
                backup = task_io.write_backup(ctx.data_dir, doc, "clearAllTasks", self._now())

            doc.tasks = plan.tasks
            self.save(ctx, doc)

        for warning in warnings:
            log.warn(warning, ctx.project_id)
        log.debug(f"{mode.value}: {len(plan.touched)} tasks written", ctx.project_id)
        return UpsertResult(tasks=[task for _, task in plan.touched], warnings=warnings, backup=backup)

    def _new_task(self, item: TaskInput) -> Task:
        now = self._now()
        return Task(
            id=new_task_id(),
            name=item.name,
            description=item.description or "",
            notes=item.notes,
            related_files=list(item.related_files or []),
            implementation_guide=item.implementation_guide,
            verification_criteria=item.verification_criteria,
            analysis_result=item.analysis_result,
            assigned_agent=item.assigned_agent,
            created_at=now,
            updated_at=now,
        )

    def _plan_append(self, ctx: ProjectContext, existing: list[Task], incoming: list[TaskInput]) -> _Plan:
        open_names = {t.name for t in existing if not t.is_completed}
        for item in incoming:
            if item.name in open_names:
                raise ValidationError(
                    f"Task '{item.name}' already exists and is not completed",
                    task=item.name,
                    field="name",
                    expected="name unused by open tasks",
                    actual=item.name,
                    project=ctx.project_id,
                )
        created = [(item, self._new_task(item)) for item in incoming]
        return _Plan(tasks=list(existing) + [t for _, t in created], touched=created)

    def _plan_overwrite(self, ctx: ProjectContext, existing: list[Task], incoming: list[TaskInput]) -> _Plan:
        kept = [t for t in existing if t.is_completed]
        dropped = len(existing) - len(kept)
        if dropped:
            log.debug(f"overwrite: dropping {dropped} unfinished tasks", ctx.project_id)
        created = [(item, self._new_task(item)) for item in incoming]
        return _Plan(tasks=kept + [t for _, t in created], touched=created)

    def _plan_selective(self, ctx: ProjectContext, existing: list[Task], incoming: list[TaskInput]) -> _Plan:
        graph = DependencyGraph(existing)
        tasks = list(existing)
        position = {t.id: i for i, t in enumerate(tasks)}
        touched: list[tuple[TaskInput, Task]] = []
        for item in incoming:
            match = graph.by_name(item.name)
            if match is None:
                task = self._new_task(item)
                tasks.append(task)
                touched.append((item, task))
                continue
            if match.is_completed:
                # Completed tasks only take new related files, as in update_content.
                ignored = [k for k, v in vars(item).items() if v is not None and k not in ("name", "related_files")]
                if ignored:
                    log.debug(
                        f"selective: '{item.name}' is completed, ignoring {', '.join(ignored)}",
                        ctx.project_id,
                    )
                item = TaskInput(name=item.name, related_files=item.related_files)
                if item.related_files is None:
                    touched.append((item, match))
                    continue
            merged = self._merge(match, item)
            tasks[position[match.id]] = merged
            touched.append((item, merged))
        return _Plan(tasks=tasks, touched=touched)

    def _plan_clear_all(self, ctx: ProjectContext, existing: list[Task], incoming: list[TaskInput]) -> _Plan:
        return self._plan_append(ctx, [], incoming)

    def _merge(self, task: Task, item: TaskInput) -> Task:
        updates = {
            "description": item.description,
            "notes": item.notes,
            "related_files": list(item.related_files) if item.related_files is not None else None,
            "implementation_guide": item.implementation_guide,
            "verification_criteria": item.verification_criteria,
            "analysis_result": item.analysis_result,
            "assigned_agent": item.assigned_agent,
        }
        supplied = {k: v for k, v in updates.items() if v is not None}
        return replace(task, dependencies=list(task.dependencies), updated_at=self._now(), **supplied)

    def _apply_dependencies(self, ctx: ProjectContext, plan: _Plan, policy: DependencyPolicy) -> list[str]:
        touched_ids = {task.id for _, task in plan.touched}
        graph = DependencyGraph(
            [t for t in plan.tasks if t.id not in touched_ids],
            batch=[task for _, task in plan.touched],
        )
        warnings: list[str] = []
        for item, task in plan.touched:
            if item.dependencies is None:
                continue
            resolution = graph.resolve(item.dependencies)
            if not resolution.ok:
                if policy == DependencyPolicy.ABORT:
                    raise DependencyError(
                        f"Task '{item.name}' has unresolved dependencies: {', '.join(resolution.unresolved)}",
                        task=item.name,
                        unresolved=resolution.unresolved,
                        project=ctx.project_id,
                    )
                warnings.append(
                    f"Task '{item.name}': ignored unresolved dependencies {', '.join(resolution.unresolved)}"
                )
            task.dependencies = resolution.ids
        return warnings

    def _check_cycles(self, ctx: ProjectContext, tasks: list[Task]) -> None:
        if not self.config.check_cycles:
            return
        cycle = detect_cycles(tasks)
        if cycle:
            raise DependencyError(
                f"Dependency cycle: {cycle}", cycle=cycle, project=ctx.project_id
            )

    # ── single-task writes ───────────────────────────────────────

    def update_content(self, ctx: ProjectContext, task_id: str, patch: TaskPatch) -> Task:
        """Apply a content patch to one task.

        Empty patches and patches that match the stored values are rejected,
        as are half-set or inverted line ranges.
        """
        ctx = _require_context(ctx, "update_content")
        if patch.is_empty():
            raise ValidationError(
                "Update contains no fields", task=task_id, field="patch", project=ctx.project_id
            )
        if patch.name is not None:
            validate_task_name(patch.name, project=ctx.project_id)
        if patch.related_files is not None:
            validate_related_files(patch.related_files, task=task_id, project=ctx.project_id)
        validate_dependency_refs(patch.dependencies, task=task_id, project=ctx.project_id)

        with self.lock(ctx):
            doc = self.load(ctx)
            task = doc.get_task(task_id)
            if task is None:
                raise NotFoundError(f"Task {task_id} not found", key=task_id, project=ctx.project_id)

            supplied = patch.supplied()
            if task.is_completed and set(supplied) - {"related_files"}:
                raise ValidationError(
                    f"Task '{task.name}' is completed; only related files can change",
                    task=task.id,
                    field=", ".join(sorted(set(supplied) - {"related_files"})),
                    expected="related_files only",
                    actual=sorted(supplied),
                    project=ctx.project_id,
                )

            if patch.dependencies is not None:
                graph = DependencyGraph(doc.tasks)
                resolution = graph.resolve(patch.dependencies)
                if not resolution.ok:
                    raise DependencyError(
                        f"Task '{task.name}' has unresolved dependencies: {', '.join(resolution.unresolved)}",
                        task=task.id,
                        unresolved=resolution.unresolved,
                        project=ctx.project_id,
                    )
                supplied["dependencies"] = resolution.ids

            changes = {k: v for k, v in supplied.items() if getattr(task, k) != v}
            if not changes:
                raise ValidationError(
                    f"Update leaves task '{task.name}' unchanged",
                    task=task.id,
                    field=", ".join(sorted(supplied)),
                    expected="at least one changed value",
                    actual="identical values",
                    project=ctx.project_id,
                )
            if "name" in changes and any(t.name == changes["name"] for t in doc.tasks if t.id != task.id):
                raise ValidationError(
                    f"Another task is already named '{changes['name']}'",
                    task=task.id,
                    field="name",
                    expected="unique name",
                    actual=changes["name"],
                    project=ctx.project_id,
                )

            updated = replace(task, updated_at=self._now(), **changes)
            doc.tasks = [updated if t.id == task.id else t for t in doc.tasks]
            self._check_cycles(ctx, doc.tasks)
            self.save(ctx, doc)

        log.debug(f"Updated {', '.join(sorted(changes))} of task {task.id}", ctx.project_id)
        return updated

    def update_status(
        self,
        ctx: ProjectContext,
        task_id: str,
        status: TaskStatus | str,
        summary: str | None = None,
    ) -> Task:
        """Move a task along pending -> in_progress -> completed."""
        ctx = _require_context(ctx, "update_status")
        new_status = TaskStatus(status)
        with self.lock(ctx):
            doc = self.load(ctx)
            task = doc.get_task(task_id)
            if task is None:
                raise NotFoundError(f"Task {task_id} not found", key=task_id, project=ctx.project_id)
            DependencyGraph(doc.tasks).check_transition(task, new_status, project=ctx.project_id)

            now = self._now()
            changes: dict[str, object] = {"status": new_status, "updated_at": now}
            if new_status == TaskStatus.COMPLETED:
                changes["completed_at"] = now
                if summary is not None:
                    changes["summary"] = summary
            updated = replace(task, **changes)
            doc.tasks = [updated if t.id == task.id else t for t in doc.tasks]
            self.save(ctx, doc)
        return updated

    # ── destructive operations ───────────────────────────────────

    def clear_all(self, ctx: ProjectContext) -> Path | None:
        """Back up the document, then remove every task.

        Returns the backup path, or ``None`` when there was nothing to clear.
        A failed backup raises and leaves the document unchanged.
        """
        ctx = _require_context(ctx, "clear_all")
        with self.lock(ctx):
            doc = self.load(ctx)
            if not doc.tasks:
                log.info("No tasks to clear", ctx.project_id)
                return None
            backup = task_io.write_backup(ctx.data_dir, doc, "clearAll", self._now())
            cleared = len(doc.tasks)
            doc.tasks = []
            self.save(ctx, doc)
        log.info(f"Cleared {cleared} tasks", ctx.project_id)
        return backup

    def list_backups(self, ctx: ProjectContext) -> list[Path]:
        ctx = _require_context(ctx, "list_backups")
        return task_io.list_backups(ctx.data_dir)

    def snapshot_to_memory(self, ctx: ProjectContext, reason: str) -> Path | None:
        """Keep a copy of the current document under ``memory/``; ``None`` when empty."""
        ctx = _require_context(ctx, "snapshot_to_memory")
        with self.lock(ctx):
            doc = self.load(ctx)
            if not doc.tasks:
                return None
            return task_io.write_snapshot(ctx.memory_dir, doc, reason, self._now())

    def restore_backup(self, ctx: ProjectContext, backup: str | Path) -> list[Task]:
        """Replace the task list with a backup's tasks, snapshotting the current list first."""
        ctx = _require_context(ctx, "restore_backup")
        path = Path(backup)
        if not path.is_absolute():
            path = ctx.data_dir / path
        if path.resolve().parent != ctx.data_dir.resolve():
            raise ValidationError(
                f"Backup {path} is outside the project's data directory",
                field="backup",
                expected=str(ctx.data_dir),
                actual=str(path.parent),
                project=ctx.project_id,
            )
        with self.lock(ctx):
            tasks = task_io.load_backup(path, ctx.project_id)
            self.snapshot_to_memory(ctx, f"before restoring {path.name}")
            doc = self.load(ctx)
            doc.tasks = tasks
            self.save(ctx, doc)
        log.info(f"Restored {len(tasks)} tasks from {path.name}", ctx.project_id)
        return tasks
