"""Dependency engine: reference resolution, readiness and the status machine."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from taskvault import log
from taskvault.errors import DependencyError, TransitionError
from taskvault.tasks.model import Task, TaskStatus

# Status machine: from_status -> statuses it may move to.
TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED}),
    TaskStatus.COMPLETED: frozenset(),
}


@dataclass
class DependencyResolution:
    ids: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.unresolved


class DependencyGraph:
    """Lookup tables over one project's tasks.

    Usage::

        graph = DependencyGraph(doc.tasks)
        graph.resolve(["Design", "4f0c..."])   # refs -> ids
        graph.is_ready(task)                    # all deps completed?
        graph.ready()                           # pending tasks free to start
        graph.explain_block(task)               # why a task cannot start
    """

    def __init__(self, tasks: Iterable[Task], batch: Iterable[Task] = ()) -> None:
        self._batch = list(batch)
        self._tasks = list(tasks)
        self._by_id: dict[str, Task] = {t.id: t for t in self._tasks}
        for t in self._batch:
            self._by_id[t.id] = t

        # Later writes win: completed < open < batch.
        self._by_name: dict[str, Task] = {}
        for t in self._tasks:
            if t.is_completed:
                self._by_name[t.name] = t
        for t in self._tasks:
            if not t.is_completed:
                self._by_name[t.name] = t
        for t in self._batch:
            self._by_name[t.name] = t

    # ── lookups ──────────────────────────────────────────────────

    def get(self, task_id: str) -> Task | None:
        return self._by_id.get(task_id)

    def by_name(self, name: str) -> Task | None:
        return self._by_name.get(name)

    def lookup(self, ref: str) -> Task | None:
        """Resolve one reference: exact id first, then exact name."""
        return self._by_id.get(ref) or self._by_name.get(ref)

    def resolve(self, refs: Iterable[str]) -> DependencyResolution:
        result = DependencyResolution()
        for ref in refs:
            ref = ref.strip() if isinstance(ref, str) else ref
            if not ref:
                continue
            target = self.lookup(ref)
            if target is None:
                if ref not in result.unresolved:
                    result.unresolved.append(ref)
            elif target.id not in result.ids:
                result.ids.append(target.id)
        return result

    # ── readiness ────────────────────────────────────────────────

    def blocking(self, task: Task) -> list[str]:
        """Dependency ids of *task* that are not completed (or no longer exist)."""
        blocked: list[str] = []
        for dep in task.dependencies:
            target = self._by_id.get(dep)
            if target is None or not target.is_completed:
                blocked.append(dep)
        return blocked

    def is_ready(self, task: Task) -> bool:
        return not self.blocking(task)

    def ready(self) -> list[Task]:
        """Pending tasks whose dependencies are all completed."""
        return [
            t for t in self._by_id.values()
            if t.status == TaskStatus.PENDING and self.is_ready(t)
        ]

    def explain_block(self, task: Task) -> str:
        """Human-readable explanation of why *task* cannot start."""
        reasons: list[str] = []
        for dep in self.blocking(task):
            target = self._by_id.get(dep)
            if target is None:
                reasons.append(f"{dep} (missing)")
            else:
                reasons.append(f"{target.name} ({target.status.value})")
        if not reasons:
            return ""
        return f"waiting on: {', '.join(reasons)}"

    # ── transitions ──────────────────────────────────────────────

    def can_transition_to(self, task: Task, new_status: TaskStatus) -> bool:
        if new_status not in TRANSITIONS[task.status]:
            return False
        if new_status == TaskStatus.IN_PROGRESS:
            return self.is_ready(task)
        return True

    def check_transition(self, task: Task, new_status: TaskStatus, *, project: str = "") -> None:
        """Raise :class:`TransitionError` unless *task* may move to *new_status*."""
        if new_status not in TRANSITIONS[task.status]:
            allowed = ", ".join(s.value for s in TRANSITIONS[task.status]) or "none (terminal)"
            raise TransitionError(
                f"Task '{task.name}' cannot go from {task.status.value} to {new_status.value}",
                task=task.id,
                field="status",
                expected=allowed,
                actual=new_status.value,
                project=project,
            )
        if new_status == TaskStatus.IN_PROGRESS and not self.is_ready(task):
            raise TransitionError(
                f"Task '{task.name}' is not ready: {self.explain_block(task)}",
                task=task.id,
                field="dependencies",
                expected="all dependencies completed",
                actual=self.blocking(task),
                project=project,
            )
        log.debug(f"Task {task.id}: {task.status.value} -> {new_status.value}", project or None)


# ── functional surface ───────────────────────────────────────────


def resolve_dependencies(
    all_tasks: Sequence[Task], refs: Iterable[str], *, batch: Iterable[Task] = ()
) -> DependencyResolution:
    """Resolve id-or-name references against *all_tasks* (and an incoming *batch*)."""
    return DependencyGraph(all_tasks, batch).resolve(refs)


def require_dependencies(
    all_tasks: Sequence[Task],
    refs: Iterable[str],
    *,
    task: str = "",
    batch: Iterable[Task] = (),
    project: str = "",
) -> list[str]:
    """Like :func:`resolve_dependencies` but raise when anything is unresolved."""
    resolution = resolve_dependencies(all_tasks, refs, batch=batch)
    if not resolution.ok:
        raise DependencyError(
            f"Task '{task}' has unresolved dependencies: {', '.join(resolution.unresolved)}",
            task=task,
            unresolved=resolution.unresolved,
            project=project,
        )
    return resolution.ids


def is_ready(task: Task, all_tasks: Sequence[Task]) -> bool:
    return DependencyGraph(all_tasks).is_ready(task)


def can_transition_to(task: Task, all_tasks: Sequence[Task], new_status: TaskStatus) -> bool:
    return DependencyGraph(all_tasks).can_transition_to(task, new_status)


def ready_tasks(all_tasks: Sequence[Task]) -> list[Task]:
    return DependencyGraph(all_tasks).ready()


def explain_block(task: Task, all_tasks: Sequence[Task]) -> str:
    return DependencyGraph(all_tasks).explain_block(task)
