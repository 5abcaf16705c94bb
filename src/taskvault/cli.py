"""taskvault CLI: inspect and edit a project's task store from the shell.

Installed as ``taskvault`` console_script via pip.
"""

from __future__ import annotations

import functools
import json
import re
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.markup import escape
from rich.table import Table

from taskvault import __version__
from taskvault import log
from taskvault.config import Config, DependencyPolicy
from taskvault.errors import TaskVaultError
from taskvault.io_utils import read_text
from taskvault.manager import TaskManager
from taskvault.store import UpdateMode
from taskvault.tasks.model import RelatedFile, RelatedFileType, Task, TaskInput, TaskPatch, TaskStatus

CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])

F = TypeVar("F", bound=Callable[..., Any])

_LINE_RANGE = re.compile(r"^(?P<path>.+):(?P<start>\d+)-(?P<end>\d+)$")

STATUS_STYLE = {
    TaskStatus.PENDING: "yellow",
    TaskStatus.IN_PROGRESS: "cyan",
    TaskStatus.COMPLETED: "green",
}


# ── helpers ──────────────────────────────────────────────────────


def _reports_errors(fn: F) -> F:
    """Turn taskvault errors into a red message and exit status 1."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except TaskVaultError as exc:
            log.error(exc.message, exc.project or None)
            if exc.retryable:
                log.info("This error is transient; retrying the command may succeed.")
            sys.exit(1)

    return wrapper  # type: ignore[return-value]


def _manager(ctx: click.Context) -> TaskManager:
    return ctx.obj["manager"]


def _project(ctx: click.Context) -> str:
    project = ctx.obj["project"]
    if not project:
        raise click.UsageError("--project is required for this command.", ctx=ctx)
    return project


def _parse_file(raw: str) -> RelatedFile:
    """``path`` or ``path:START-END``."""
    m = _LINE_RANGE.match(raw)
    if m:
        return RelatedFile(
            path=m.group("path"),
            type=RelatedFileType.TO_MODIFY,
            line_start=int(m.group("start")),
            line_end=int(m.group("end")),
        )
    return RelatedFile(path=raw, type=RelatedFileType.TO_MODIFY)


def _files(raw: tuple[str, ...]) -> list[RelatedFile] | None:
    return [_parse_file(f) for f in raw] if raw else None


def _short(task_id: str) -> str:
    return task_id[:8]


def _print_tasks(tasks: list[Task], title: str) -> None:
    names = {t.id: t.name for t in tasks}
    table = Table(title=title, show_lines=False)
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Name")
    table.add_column("Status", no_wrap=True)
    table.add_column("Depends on")
    for t in tasks:
        deps = ", ".join(escape(names.get(d, _short(d))) for d in t.dependencies)
        style = STATUS_STYLE[t.status]
        table.add_row(_short(t.id), escape(t.name), f"[{style}]{t.status.value}[/{style}]", deps)
    log.console.print(table)


def _print_task(task: Task) -> None:
    out = log.console
    out.print(f"[bold]{escape(task.name)}[/bold]  [dim]{task.id}[/dim]")
    out.print(f"Status: {task.status.value}")
    if task.description:
        out.print(f"Description: {escape(task.description)}")
    if task.notes:
        out.print(f"Notes: {escape(task.notes)}")
    if task.dependencies:
        out.print(f"Dependencies: {', '.join(task.dependencies)}")
    for f in task.related_files:
        span = f":{f.line_start}-{f.line_end}" if f.line_start is not None else ""
        out.print(f"File: {escape(f.path)}{span} ({f.type.value})")
    if task.implementation_guide:
        out.print(f"Implementation guide: {escape(task.implementation_guide)}")
    if task.verification_criteria:
        out.print(f"Verification: {escape(task.verification_criteria)}")
    if task.summary:
        out.print(f"Summary: {escape(task.summary)}")
    out.print(f"Created: {task.created_at.isoformat()}  Updated: {task.updated_at.isoformat()}")
    if task.completed_at:
        out.print(f"Completed: {task.completed_at.isoformat()}")


def _load_batch(path: Path) -> tuple[list[TaskInput], str | None]:
    try:
        data = json.loads(read_text(path))
    except (OSError, json.JSONDecodeError) as exc:
        raise click.BadParameter(f"Cannot read {path}: {exc}", param_hint="FILE") from exc
    analysis = None
    if isinstance(data, dict):
        analysis = data.get("globalAnalysisResult")
        data = data.get("tasks")
    if not isinstance(data, list):
        raise click.BadParameter(
            f"{path} must hold a list of tasks or an object with a 'tasks' list.",
            param_hint="FILE",
        )
    try:
        return [TaskInput.from_dict(t) for t in data], analysis
    except (KeyError, TypeError, ValueError) as exc:
        raise click.BadParameter(f"{path} holds a malformed task: {exc}", param_hint="FILE") from exc


# ── group ────────────────────────────────────────────────────────


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option("-p", "--project", default="", help="Project id (required by every store command)")
@click.option("--data-dir", default="", help="Data directory (overrides TASKVAULT_DATA_DIR)")
@click.option("--root", "roots", multiple=True, help="Project root path or file:// URI (repeatable)")
@click.option(
    "--dependency-policy",
    type=click.Choice([p.value for p in DependencyPolicy]),
    default=DependencyPolicy.ABORT.value,
    help="What to do with dependencies that match no task",
)
@click.option("--lock-timeout", type=float, default=None, help="Seconds to wait for the project lock")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.version_option(__version__, prog_name="taskvault")
@click.pass_context
def main(
    ctx: click.Context,
    project: str,
    data_dir: str,
    roots: tuple[str, ...],
    dependency_policy: str,
    lock_timeout: float | None,
    verbose: bool,
) -> None:
    """taskvault: project-isolated task store with conflict detection.

    \b
    EXAMPLES:
      taskvault -p checkout-service add "Design" -d "Sketch the API"
      taskvault -p checkout-service add "Implement" --dep Design
      taskvault -p checkout-service list
      taskvault -p checkout-service start <id>
      taskvault -p checkout-service check
    """
    log.set_verbose(verbose)
    cfg = Config(
        data_dir=data_dir,
        dependency_policy=DependencyPolicy(dependency_policy),
        verbose=verbose,
    )
    if lock_timeout is not None:
        cfg.lock_timeout = lock_timeout
    ctx.ensure_object(dict)
    ctx.obj["project"] = project
    ctx.obj["manager"] = TaskManager(cfg, roots=roots)


# ── reads ────────────────────────────────────────────────────────


@main.command("list")
@click.option(
    "--status",
    type=click.Choice([s.value for s in TaskStatus]),
    default=None,
    help="Only show tasks with this status",
)
@click.option("--ready", is_flag=True, help="Only show pending tasks whose dependencies are done")
@click.pass_context
@_reports_errors
def list_cmd(ctx: click.Context, status: str | None, ready: bool) -> None:
    """List the project's tasks."""
    manager = _manager(ctx)
    project = _project(ctx)
    result = manager.load_tasks(project)
    tasks = result.tasks
    if ready:
        ready_ids = {t.id for t in manager.ready_tasks(project)}
        tasks = [t for t in tasks if t.id in ready_ids]
    if status:
        tasks = [t for t in tasks if t.status == TaskStatus(status)]
    if not tasks:
        log.info("No tasks.", result.context.project_id)
    else:
        _print_tasks(tasks, f"Tasks: {result.context.project_id}")
    report = result.conflicts
    if report is not None and report.has_conflicts:
        log.warn(
            f"{len(report.conflicts)} possible project conflicts "
            f"(confidence {report.confidence_score:.2f}). Run 'taskvault check' for details.",
            result.context.project_id,
        )


@main.command()
@click.argument("task_id")
@click.pass_context
@_reports_errors
def show(ctx: click.Context, task_id: str) -> None:
    """Show one task in full."""
    manager = _manager(ctx)
    project = _project(ctx)
    task = manager.get_task(project, task_id)
    _print_task(task)
    if task.status == TaskStatus.PENDING:
        reason = manager.explain_block(project, task_id)
        if reason:
            log.info(f"Blocked, {reason}", project)


@main.command()
@click.pass_context
@_reports_errors
def check(ctx: click.Context) -> None:
    """Check whether the stored tasks look like they belong to this project."""
    result = _manager(ctx).load_tasks(_project(ctx), detect=False)
    report = _manager(ctx).detect_conflicts(result.tasks, result.context)
    project = result.context.project_id
    if not report.has_conflicts:
        log.success(f"No conflicts (confidence {report.confidence_score:.2f})", project)
        return
    log.warn(f"Possible project conflict (confidence {report.confidence_score:.2f})", project)
    for c in report.conflicts:
        log.warn(f"{c.severity.value} {c.type.value}: {c.description}", project)
        for line in c.evidence:
            log.console.print(f"    {escape(line)}")
    for s in report.recovery_suggestions:
        log.console.print(f"[bold]{s.priority.value}[/bold] {s.action}")
        for i, step in enumerate(s.steps, 1):
            log.console.print(f"    {i}. {step}")
        log.console.print(f"    [dim]{s.expected_outcome}[/dim]")


@main.command()
@click.pass_context
@_reports_errors
def projects(ctx: click.Context) -> None:
    """List projects that have a task store."""
    names = _manager(ctx).list_projects()
    if not names:
        log.info("No projects found.")
        return
    for name in names:
        log.console.print(name)


@main.command()
@click.pass_context
@_reports_errors
def backups(ctx: click.Context) -> None:
    """List the project's backups, oldest first."""
    project = _project(ctx)
    paths = _manager(ctx).list_backups(project)
    if not paths:
        log.info("No backups.", project)
        return
    for p in paths:
        log.console.print(p.name)


# ── writes ───────────────────────────────────────────────────────


@main.command()
@click.argument("name")
@click.option("-d", "--description", default="", help="Task description")
@click.option("--notes", default=None, help="Free-form notes")
@click.option("--dep", "deps", multiple=True, help="Dependency by task name or id (repeatable)")
@click.option("--file", "files", multiple=True, help="Related file, PATH or PATH:START-END (repeatable)")
@click.option("--guide", default=None, help="Implementation guide")
@click.option("--verify", default=None, help="Verification criteria")
@click.pass_context
@_reports_errors
def add(
    ctx: click.Context,
    name: str,
    description: str,
    notes: str | None,
    deps: tuple[str, ...],
    files: tuple[str, ...],
    guide: str | None,
    verify: str | None,
) -> None:
    """Add one task."""
    project = _project(ctx)
    item = TaskInput(
        name=name,
        description=description,
        notes=notes,
        dependencies=list(deps) if deps else None,
        related_files=_files(files),
        implementation_guide=guide,
        verification_criteria=verify,
    )
    result = _manager(ctx).create_or_update_tasks(project, [item], UpdateMode.APPEND)
    log.success(f"Added {result.tasks[0].name} ({result.tasks[0].id})", project)


@main.command("import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--mode",
    type=click.Choice([m.value for m in UpdateMode]),
    default=UpdateMode.APPEND.value,
    help="How the batch is merged with stored tasks",
)
@click.pass_context
@_reports_errors
def import_cmd(ctx: click.Context, file: Path, mode: str) -> None:
    """Create or update tasks from a JSON file."""
    project = _project(ctx)
    items, analysis = _load_batch(file)
    result = _manager(ctx).create_or_update_tasks(project, items, mode, analysis)
    if result.backup is not None:
        log.info(f"Previous tasks saved to {result.backup.name}", project)
    log.success(f"{len(result.tasks)} tasks written ({mode})", project)


@main.command()
@click.argument("task_id")
@click.option("--name", default=None, help="New name")
@click.option("-d", "--description", default=None, help="New description")
@click.option("--notes", default=None, help="New notes")
@click.option("--dep", "deps", multiple=True, help="Replace dependencies (repeatable)")
@click.option("--file", "files", multiple=True, help="Replace related files (repeatable)")
@click.option("--guide", default=None, help="New implementation guide")
@click.option("--verify", default=None, help="New verification criteria")
@click.pass_context
@_reports_errors
def edit(
    ctx: click.Context,
    task_id: str,
    name: str | None,
    description: str | None,
    notes: str | None,
    deps: tuple[str, ...],
    files: tuple[str, ...],
    guide: str | None,
    verify: str | None,
) -> None:
    """Change a task's content."""
    project = _project(ctx)
    patch = TaskPatch(
        name=name,
        description=description,
        notes=notes,
        dependencies=list(deps) if deps else None,
        related_files=_files(files),
        implementation_guide=guide,
        verification_criteria=verify,
    )
    task = _manager(ctx).update_task_content(project, task_id, patch)
    log.success(f"Updated {task.name}", project)


@main.command()
@click.argument("task_id")
@click.pass_context
@_reports_errors
def start(ctx: click.Context, task_id: str) -> None:
    """Move a pending task to in_progress."""
    project = _project(ctx)
    task = _manager(ctx).update_task_status(project, task_id, TaskStatus.IN_PROGRESS)
    log.success(f"Started {task.name}", project)


@main.command()
@click.argument("task_id")
@click.option("--summary", default=None, help="What was done")
@click.pass_context
@_reports_errors
def complete(ctx: click.Context, task_id: str, summary: str | None) -> None:
    """Mark an in-progress task completed."""
    project = _project(ctx)
    task = _manager(ctx).update_task_status(project, task_id, TaskStatus.COMPLETED, summary)
    log.success(f"Completed {task.name}", project)


@main.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
@_reports_errors
def clear(ctx: click.Context, yes: bool) -> None:
    """Back up and then delete every task of the project."""
    project = _project(ctx)
    if not yes:
        click.confirm(f"Delete every task of '{project}'? A backup is written first.", abort=True)
    backup = _manager(ctx).clear_all_tasks(project)
    if backup is not None:
        log.success(f"Cleared. Backup: {backup.name}", project)


@main.command()
@click.argument("name")
@click.pass_context
@_reports_errors
def restore(ctx: click.Context, name: str) -> None:
    """Replace the task list with the tasks of backup NAME."""
    project = _project(ctx)
    tasks = _manager(ctx).restore_backup(project, name)
    log.success(f"Restored {len(tasks)} tasks", project)


if __name__ == "__main__":
    main()
