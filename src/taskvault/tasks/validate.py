"""Task graph validation: cycles, names, related files and dependency references."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from taskvault.errors import ValidationError
from taskvault.tasks.model import RelatedFile, Task

_WHITE, _GREY, _BLACK = 0, 1, 2


def detect_cycles(tasks: Iterable[Task]) -> str:
    """Return a readable cycle path (``"A -> B -> A"``), or ``""`` when the graph is acyclic.

    Dependencies pointing at ids outside *tasks* are ignored here; unresolved
    references are reported by the dependency engine instead.
    """
    by_id = {t.id: t for t in tasks}
    color = {tid: _WHITE for tid in by_id}

    for root in by_id:
        if color[root] != _WHITE:
            continue
        path: list[str] = [root]
        stack: list[Iterator[str]] = [iter(by_id[root].dependencies)]
        color[root] = _GREY
        while stack:
            dep = next(stack[-1], None)
            if dep is None:
                color[path.pop()] = _BLACK
                stack.pop()
                continue
            if dep not in by_id:
                continue
            if color[dep] == _GREY:
                cycle = path[path.index(dep):] + [dep]
                return " -> ".join(by_id[tid].name for tid in cycle)
            if color[dep] == _WHITE:
                color[dep] = _GREY
                path.append(dep)
                stack.append(iter(by_id[dep].dependencies))
    return ""


def find_duplicate_names(names: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    duplicates: list[str] = []
    for name in names:
        if name in seen and name not in duplicates:
            duplicates.append(name)
        seen.add(name)
    return duplicates


def validate_unique_names(names: Iterable[str], *, project: str = "") -> None:
    """Reject a batch that names the same task twice."""
    duplicates = find_duplicate_names(names)
    if duplicates:
        raise ValidationError(
            f"Duplicate task name in batch: {', '.join(repr(n) for n in duplicates)}",
            task=duplicates[0],
            field="name",
            expected="unique names",
            actual=duplicates,
            project=project,
        )


def validate_task_name(name: object, *, project: str = "") -> None:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError(
            "Task name must be a non-empty string",
            field="name",
            expected="non-empty string",
            actual=name,
            project=project,
        )


def validate_related_files(
    files: Iterable[RelatedFile], *, task: str = "", project: str = ""
) -> None:
    """Line ranges must be set together, be positive, and not be inverted."""
    for f in files:
        if not f.path:
            raise ValidationError(
                "Related file path must not be empty",
                task=task,
                field="related_files.path",
                expected="non-empty path",
                actual=f.path,
                project=project,
            )
        start, end = f.line_start, f.line_end
        if (start is None) != (end is None):
            raise ValidationError(
                f"{f.path}: line_start and line_end must be set together",
                task=task,
                field="related_files.line_range",
                expected="both or neither",
                actual=(start, end),
                project=project,
            )
        if start is None:
            continue
        if start < 1 or end < 1:
            raise ValidationError(
                f"{f.path}: line numbers must be positive",
                task=task,
                field="related_files.line_range",
                expected=">= 1",
                actual=(start, end),
                project=project,
            )
        if start > end:
            raise ValidationError(
                f"{f.path}: line_start {start} is after line_end {end}",
                task=task,
                field="related_files.line_range",
                expected="line_start <= line_end",
                actual=(start, end),
                project=project,
            )


def validate_dependency_refs(refs: object, *, task: str = "", project: str = "") -> None:
    """Dependency references are a list of task ids or task names."""
    if refs is None:
        return
    if not isinstance(refs, list) or not all(isinstance(r, str) for r in refs):
        raise ValidationError(
            "Dependencies must be a list of task ids or names",
            task=task,
            field="dependencies",
            expected="list of strings",
            actual=refs,
            project=project,
        )
