"""Console logging via Rich, tagged with the project each message concerns."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape

console = Console(highlight=False)
_err_console = Console(highlight=False, stderr=True)

_verbose = False


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def _tag(project: str | None) -> str:
    # Messages carry user text; brackets must not be read as markup.
    return f"\\[{project}] " if project else ""


def info(msg: str, project: str | None = None) -> None:
    console.print(f"[blue]\\[INFO][/blue] {_tag(project)}{escape(msg)}")


def success(msg: str, project: str | None = None) -> None:
    console.print(f"[green]\\[OK][/green] {_tag(project)}{escape(msg)}")


def warn(msg: str, project: str | None = None) -> None:
    console.print(f"[yellow]\\[WARN][/yellow] {_tag(project)}{escape(msg)}")


def error(msg: str, project: str | None = None) -> None:
    _err_console.print(f"[red]\\[ERROR][/red] {_tag(project)}{escape(msg)}")


def debug(msg: str, project: str | None = None) -> None:
    if _verbose:
        console.print(f"[dim]\\[DEBUG] {_tag(project)}{escape(msg)}[/dim]")
