"""Reading and writing task documents, backups and memory snapshots.

Functions here work on plain paths; project resolution and locking happen in
:mod:`taskvault.store`.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

from taskvault import log
from taskvault.errors import PersistenceError, ProjectMismatchError
from taskvault.io_utils import dump_json, read_text, write_json_atomic, write_text_exclusive
from taskvault.tasks.model import Task, TaskDocument, format_timestamp

BACKUP_PREFIX = "tasks_backup_"
SNAPSHOT_PREFIX = "snapshot_"
BACKUP_FORMAT_VERSION = "1.0"
MAX_NAME_COLLISIONS = 1000


def _read_json(path: Path) -> Any:
    try:
        text = read_text(path)
    except (OSError, UnicodeDecodeError) as exc:
        raise PersistenceError(f"Cannot read {path}: {exc}", path=path) from exc
    if not text.strip():
        return {}
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise PersistenceError(f"{path} is not valid JSON: {exc}", path=path) from exc


def read_project_stamp(path: Path) -> str:
    """The ``projectId`` recorded in a task document, or ``""``."""
    if not path.is_file():
        return ""
    data = _read_json(path)
    if not isinstance(data, dict):
        return ""
    return data.get("projectId") or ""


def load_document(path: Path, project_id: str) -> TaskDocument:
    """Load the task document at *path* for *project_id*.

    A missing file is an empty document at revision 0. A document stamped
    with another project raises :class:`ProjectMismatchError`; an unstamped
    (legacy) document is adopted by *project_id*.
    """
    if not path.exists():
        return TaskDocument(project_id=project_id)
    data = _read_json(path)
    if isinstance(data, list):
        data = {"tasks": data}
    if not isinstance(data, dict):
        raise PersistenceError(f"{path} does not hold a task document", path=path)
    try:
        doc = TaskDocument.from_dict(data)
    except (KeyError, TypeError, ValueError) as exc:
        raise PersistenceError(f"{path} holds a malformed task: {exc}", path=path) from exc
    if doc.project_id and doc.project_id != project_id:
        raise ProjectMismatchError(path, expected=project_id, actual=doc.project_id)
    doc.project_id = project_id
    return doc


def save_document(path: Path, doc: TaskDocument) -> None:
    """Atomically replace *path* with *doc* (temp file, fsync, rename)."""
    try:
        write_json_atomic(path, doc.to_dict())
    except OSError as exc:
        raise PersistenceError(
            f"Cannot write {path}: {exc}", path=path, project=doc.project_id
        ) from exc
    log.debug(f"Wrote {path} (revision {doc.revision}, {len(doc.tasks)} tasks)", doc.project_id)


# ── backups ──────────────────────────────────────────────────────


def timestamp_slug(moment: datetime) -> str:
    """ISO-8601 UTC timestamp safe for file names on every platform."""
    return format_timestamp(moment).replace("+00:00", "Z").replace(":", "-")


def _write_unique(directory: Path, prefix: str, moment: datetime, payload: dict[str, Any]) -> Path:
    stem = f"{prefix}{timestamp_slug(moment)}"
    text = dump_json(payload)
    for n in range(MAX_NAME_COLLISIONS):
        candidate = directory / (f"{stem}.json" if n == 0 else f"{stem}_{n}.json")
        try:
            write_text_exclusive(candidate, text)
        except FileExistsError:
            continue
        return candidate
    raise FileExistsError(f"No free backup name for {stem} in {directory}")


def _backup_payload(doc: TaskDocument, reason: str, moment: datetime) -> dict[str, Any]:
    return {
        "metadata": {
            "timestamp": format_timestamp(moment),
            "projectId": doc.project_id,
            "revision": doc.revision,
            "taskCount": len(doc.tasks),
            "reason": reason,
            "version": BACKUP_FORMAT_VERSION,
        },
        "tasks": [t.to_dict() for t in doc.tasks],
    }


def write_backup(directory: Path, doc: TaskDocument, reason: str, moment: datetime) -> Path:
    """Write ``tasks_backup_<timestamp>.json`` into *directory*; never overwrites."""
    try:
        path = _write_unique(directory, BACKUP_PREFIX, moment, _backup_payload(doc, reason, moment))
    except OSError as exc:
        raise PersistenceError(
            f"Backup into {directory} failed: {exc}", path=directory, project=doc.project_id
        ) from exc
    log.info(f"Backed up {len(doc.tasks)} tasks to {path}", doc.project_id)
    return path


def write_snapshot(directory: Path, doc: TaskDocument, reason: str, moment: datetime) -> Path:
    """Write a historical snapshot into the project's ``memory/`` directory."""
    try:
        path = _write_unique(directory, SNAPSHOT_PREFIX, moment, _backup_payload(doc, reason, moment))
    except OSError as exc:
        raise PersistenceError(
            f"Snapshot into {directory} failed: {exc}", path=directory, project=doc.project_id
        ) from exc
    log.debug(f"Snapshot {path}", doc.project_id)
    return path


def list_backups(directory: Path) -> list[Path]:
    """Backups in *directory*, oldest first."""
    if not directory.is_dir():
        return []
    return sorted(directory.glob(f"{BACKUP_PREFIX}*.json"))


def load_backup(path: Path, project_id: str) -> list[Task]:
    """Tasks stored in a backup written by :func:`write_backup`."""
    if not path.is_file():
        raise PersistenceError(f"Backup {path} does not exist", path=path, project=project_id)
    data = _read_json(path)
    if isinstance(data, list):
        data = {"tasks": data}
    if not isinstance(data, dict):
        raise PersistenceError(f"{path} does not hold a backup", path=path, project=project_id)
    metadata = data.get("metadata") or {}
    owner = metadata.get("projectId") or ""
    if owner and owner != project_id:
        raise ProjectMismatchError(path, expected=project_id, actual=owner)
    try:
        return [Task.from_dict(t) for t in data.get("tasks") or []]
    except (KeyError, TypeError, ValueError) as exc:
        raise PersistenceError(f"{path} holds a malformed task: {exc}", path=path) from exc
