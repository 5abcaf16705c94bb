"""CLI tests: every command runs in-process against a tmp data directory."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from taskvault import __version__
from taskvault.cli import _parse_file, main
from taskvault.config import Config
from taskvault.io_utils import write_text
from taskvault.manager import TaskManager
from taskvault.tasks.model import TaskStatus


@pytest.fixture
def cli_runner():
    """Click CliRunner for invoking the CLI in-process."""
    return CliRunner()


@pytest.fixture
def base_args(data_root: Path, workspace: Path) -> list[str]:
    return ["--data-dir", str(data_root), "--root", str(workspace), "-p", "shop"]


@pytest.fixture
def invoke(cli_runner, base_args):
    def _invoke(*args: str, input: str | None = None):
        return cli_runner.invoke(main, [*base_args, *args], input=input)

    return _invoke


@pytest.fixture
def tasks_of(data_root: Path, workspace: Path):
    def _tasks():
        manager = TaskManager(Config(data_dir=str(data_root), project_root=str(workspace)))
        return manager.load_tasks("shop", detect=False).tasks

    return _tasks


# ── Main entry and help ────────────────────────────────────────────


class TestCliHelpAndVersion:
    def test_help(self, cli_runner):
        r = cli_runner.invoke(main, ["--help"])
        assert r.exit_code == 0
        assert "taskvault" in r.output
        for command in ("list", "add", "import", "check", "clear", "restore"):
            assert command in r.output

    def test_help_short(self, cli_runner):
        assert cli_runner.invoke(main, ["-h"]).exit_code == 0

    def test_version(self, cli_runner):
        r = cli_runner.invoke(main, ["--version"])
        assert r.exit_code == 0
        assert __version__ in r.output

    def test_project_required(self, cli_runner, data_root):
        r = cli_runner.invoke(main, ["--data-dir", str(data_root), "list"])
        assert r.exit_code == 2
        assert "--project" in r.output


# ── Task commands ──────────────────────────────────────────────────


class TestTaskCommands:
    def test_add_and_list(self, invoke, tasks_of):
        assert invoke("add", "Design", "-d", "shop task").exit_code == 0
        r = invoke("add", "Build", "--dep", "Design", "--file", "src/shop/api.py:3-9")
        assert r.exit_code == 0, r.output
        design, build = tasks_of()
        assert build.dependencies == [design.id]
        assert build.related_files[0].line_start == 3

        r = invoke("list")
        assert r.exit_code == 0
        assert "Design" in r.output and "Build" in r.output

    def test_duplicate_name_fails(self, invoke):
        invoke("add", "Implement auth")
        r = invoke("add", "Implement auth")
        assert r.exit_code == 1
        assert "already exists" in r.output

    def test_unknown_dependency_fails(self, invoke, tasks_of):
        r = invoke("add", "Build", "--dep", "Ghost")
        assert r.exit_code == 1
        assert "Ghost" in r.output
        assert tasks_of() == []

    def test_warn_policy(self, cli_runner, base_args, tasks_of):
        r = cli_runner.invoke(main, [*base_args, "--dependency-policy", "warn", "add", "Build", "--dep", "Ghost"])
        assert r.exit_code == 0
        assert "Ghost" in r.output
        assert tasks_of()[0].dependencies == []

    def test_show(self, invoke, tasks_of):
        invoke("add", "Design", "--notes", "see [wiki]")
        task = tasks_of()[0]
        r = invoke("show", task.id)
        assert r.exit_code == 0
        assert "Design" in r.output
        assert "see [wiki]" in r.output

    def test_show_missing(self, invoke):
        r = invoke("show", "nope")
        assert r.exit_code == 1
        assert "not found" in r.output

    def test_start_and_complete(self, invoke, tasks_of):
        invoke("add", "Design")
        invoke("add", "Build", "--dep", "Design")
        design, build = tasks_of()

        r = invoke("start", build.id)
        assert r.exit_code == 1
        assert "not ready" in r.output

        assert invoke("start", design.id).exit_code == 0
        assert invoke("complete", design.id, "--summary", "drafted").exit_code == 0
        design = tasks_of()[0]
        assert design.status == TaskStatus.COMPLETED
        assert design.summary == "drafted"

        r = invoke("list", "--ready")
        assert "Build" in r.output
        assert "Design" not in r.output

    def test_edit(self, invoke, tasks_of):
        invoke("add", "Design")
        task = tasks_of()[0]
        assert invoke("edit", task.id, "--name", "Design v2").exit_code == 0
        assert tasks_of()[0].name == "Design v2"
        r = invoke("edit", task.id)
        assert r.exit_code == 1

    def test_list_status_filter(self, invoke, tasks_of):
        invoke("add", "A")
        invoke("add", "B")
        invoke("start", tasks_of()[0].id)
        r = invoke("list", "--status", "in_progress")
        assert "A" in r.output
        assert " B " not in r.output

    def test_list_empty(self, invoke):
        r = invoke("list")
        assert r.exit_code == 0
        assert "No tasks" in r.output


# ── Import ─────────────────────────────────────────────────────────


class TestImport:
    def test_import_object_with_analysis(self, invoke, tasks_of, tmp_path):
        batch = tmp_path / "batch.json"
        write_text(
            batch,
            json.dumps(
                {
                    "globalAnalysisResult": "shared plan",
                    "tasks": [{"name": "A"}, {"name": "B", "dependencies": ["A"]}],
                }
            ),
        )
        r = invoke("import", str(batch))
        assert r.exit_code == 0, r.output
        a, b = tasks_of()
        assert b.dependencies == [a.id]
        assert a.analysis_result == "shared plan"

    def test_import_clear_all_mode_backs_up(self, invoke, tasks_of, tmp_path, data_root):
        invoke("add", "Old")
        batch = tmp_path / "batch.json"
        write_text(batch, json.dumps([{"name": "New"}]))
        r = invoke("import", str(batch), "--mode", "clearAllTasks")
        assert r.exit_code == 0, r.output
        assert [t.name for t in tasks_of()] == ["New"]
        assert len(list((data_root / "shop").glob("tasks_backup_*.json"))) == 1

    def test_import_bad_file(self, invoke, tmp_path):
        batch = tmp_path / "batch.json"
        write_text(batch, '{"nope": 1}')
        r = invoke("import", str(batch))
        assert r.exit_code == 2


# ── Destructive commands ───────────────────────────────────────────


class TestClearAndRestore:
    def test_clear_requires_confirmation(self, invoke, tasks_of):
        invoke("add", "A")
        r = invoke("clear", input="n\n")
        assert r.exit_code == 1
        assert len(tasks_of()) == 1

    def test_clear_backups_restore(self, invoke, tasks_of):
        invoke("add", "A")
        r = invoke("clear", "--yes")
        assert r.exit_code == 0, r.output
        assert tasks_of() == []

        r = invoke("backups")
        assert r.exit_code == 0
        name = r.output.strip().splitlines()[-1].strip()
        assert name.startswith("tasks_backup_")

        assert invoke("restore", name).exit_code == 0
        assert [t.name for t in tasks_of()] == ["A"]

    def test_no_backups(self, invoke):
        r = invoke("backups")
        assert r.exit_code == 0
        assert "No backups" in r.output


# ── Conflicts and projects ─────────────────────────────────────────


class TestCheckAndProjects:
    def test_check_reports_foreign_paths(self, invoke):
        invoke("add", "Refactor", "--file", "/srv/billing/app.py")
        r = invoke("check")
        assert r.exit_code == 0
        assert "PATH_MISMATCH" in r.output

    def test_check_clean(self, invoke, workspace):
        invoke("add", "shop task", "--file", str(workspace / "src" / "a.py"))
        r = invoke("check")
        assert r.exit_code == 0
        assert "No conflicts" in r.output

    def test_list_warns_on_conflict(self, invoke):
        invoke("add", "Refactor", "--file", "/srv/billing/app.py")
        r = invoke("list")
        assert "possible project conflicts" in r.output

    def test_projects(self, cli_runner, data_root, workspace):
        for project in ("alpha", "beta"):
            cli_runner.invoke(main, ["--data-dir", str(data_root), "--root", str(workspace), "-p", project, "add", "A"])
        r = cli_runner.invoke(main, ["--data-dir", str(data_root), "--root", str(workspace), "projects"])
        assert r.exit_code == 0
        assert "alpha" in r.output and "beta" in r.output


class TestParseFile:
    def test_plain(self):
        f = _parse_file("src/a.py")
        assert f.path == "src/a.py" and f.line_start is None

    def test_range(self):
        f = _parse_file("src/a.py:10-20")
        assert (f.path, f.line_start, f.line_end) == ("src/a.py", 10, 20)

    def test_windows_drive_kept(self):
        assert _parse_file("C:\\src\\a.py").path == "C:\\src\\a.py"
