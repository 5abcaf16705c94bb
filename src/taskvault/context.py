"""Project context resolution: project id -> isolated data directory.

Every project's tasks live in their own ``tasks.json``. Where that file sits
depends on the configured data directory:

- absolute ``data_dir``: ``<data_dir>/<sanitized id>/tasks.json``
- relative ``data_dir``: ``<project root>/<data_dir>/tasks.json``
- unset: ``<project root>/data/tasks.json``

The "current project" binding used by :func:`use_project` lives in a
:class:`contextvars.ContextVar`, so each thread and each asyncio task sees
its own value. Writes never consult it; see :func:`require_project`.
"""

from __future__ import annotations

import contextvars
import re
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar
from urllib.parse import unquote, urlparse

from taskvault import log
from taskvault.config import (
    Config,
    DEFAULT_DATA_SUBDIR,
    MAX_PROJECT_ID_LENGTH,
    MEMORY_DIR_NAME,
    TASKS_FILE_NAME,
    resolve_repo_root,
)
from taskvault.errors import MissingProjectError, NotFoundError, ValidationError
from taskvault.tasks.io import read_project_stamp
from taskvault.tasks.model import utc_now

T = TypeVar("T")

_ILLEGAL_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')
_WHITESPACE = re.compile(r"\s+")
_REPEATED_SEPARATORS = re.compile(r"_{2,}")
_EDGE_CHARS = "_. "


def sanitize_project_id(raw: str) -> str:
    """Map any string to a filesystem-safe directory name.

    Deterministic and idempotent: ``sanitize_project_id(sanitize_project_id(x))
    == sanitize_project_id(x)``. May return ``""``; callers reject that.
    """
    value = _ILLEGAL_CHARS.sub("_", raw)
    value = _WHITESPACE.sub("_", value)
    value = _REPEATED_SEPARATORS.sub("_", value)
    value = value.strip(_EDGE_CHARS)
    # Cutting can expose a trailing separator, so strip again.
    return value[:MAX_PROJECT_ID_LENGTH].strip(_EDGE_CHARS)


@dataclass(frozen=True)
class ProjectContext:
    project_id: str
    project_name: str
    project_root: Path
    data_dir: Path
    tasks_file: Path
    memory_dir: Path
    last_accessed: datetime


# ── current project binding ──────────────────────────────────────

_current_project: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "taskvault_current_project", default=None
)


def current_project() -> str | None:
    return _current_project.get()


@contextmanager
def use_project(project_id: str) -> Iterator[str]:
    """Bind the current project for the body of a ``with`` block.

    The previous binding is restored on normal exit, on exception and on
    early return.
    """
    token = _current_project.set(require_project(project_id, "use_project"))
    try:
        yield project_id
    finally:
        _current_project.reset(token)


def with_project(project_id: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Call ``fn(*args, **kwargs)`` with *project_id* bound as the current project."""
    with use_project(project_id):
        return fn(*args, **kwargs)


def require_project(project_id: str | None, operation: str = "") -> str:
    """Return *project_id* or raise :class:`MissingProjectError` when it is blank."""
    if project_id is None or not isinstance(project_id, str) or not project_id.strip():
        raise MissingProjectError(operation)
    return project_id


def project_for_read(project_id: str | None, operation: str = "") -> str:
    """Read paths may fall back to the current-project binding."""
    return require_project(project_id or current_project(), operation)


# ── roots ────────────────────────────────────────────────────────


def root_from_hint(hint: str | Path) -> Path | None:
    """Turn a ``file://`` URI or a plain path into a directory path."""
    if isinstance(hint, Path):
        return hint
    text = str(hint).strip()
    if not text:
        return None
    if "://" in text:
        parsed = urlparse(text)
        if parsed.scheme != "file":
            return None
        path = unquote(parsed.path)
        # file:///C:/work -> /C:/work
        if re.match(r"^/[A-Za-z]:", path):
            path = path[1:]
        return Path(path)
    return Path(text)


def first_usable_root(roots: Sequence[str | Path]) -> Path | None:
    for hint in roots:
        root = root_from_hint(hint)
        if root is not None:
            return root
    return None


# ── resolver ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class _CacheEntry:
    context: ProjectContext
    stored_at: float


class ProjectResolver:
    """Resolve project ids to :class:`ProjectContext` values with a short-lived cache.

    *clock* returns seconds (monotonic by default) and is only used for cache
    expiry, so tests can drive it by hand. *root_finder* supplies the project
    root when neither root hints nor ``config.project_root`` are given.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        root_finder: Callable[[], Path] = resolve_repo_root,
    ) -> None:
        self.config = config or Config()
        self._clock = clock
        self._root_finder = root_finder
        self._cache: dict[tuple[str, tuple[str, ...]], _CacheEntry] = {}
        self._cache_lock = threading.Lock()

    # ── public ───────────────────────────────────────────────────

    def resolve(
        self, project_id: str | None, roots: Sequence[str | Path] | None = None
    ) -> ProjectContext:
        raw = require_project(project_id, "resolve")
        safe_id = sanitize_project_id(raw)
        if not safe_id:
            raise ValidationError(
                f"Project id {raw!r} has no filesystem-safe characters",
                field="project",
                expected="at least one safe character",
                actual=raw,
            )

        key = (safe_id, tuple(str(r) for r in roots or ()))
        now = self._clock()
        with self._cache_lock:
            entry = self._cache.get(key)
            if entry is not None and now - entry.stored_at < self.config.cache_ttl:
                return replace(entry.context, last_accessed=utc_now())

        context = self._build(raw, safe_id, roots)
        with self._cache_lock:
            self._cache[key] = _CacheEntry(context, now)
        log.debug(f"Resolved tasks file {context.tasks_file}", safe_id)
        return replace(context)

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def cached_projects(self) -> list[ProjectContext]:
        now = self._clock()
        with self._cache_lock:
            return [
                e.context for e in self._cache.values()
                if now - e.stored_at < self.config.cache_ttl
            ]

    def list_projects(self, roots: Sequence[str | Path] | None = None) -> list[str]:
        """Project directories that hold a task document.

        With an absolute data directory every subdirectory is a project. In the
        per-root layouts only the root's own data directory can exist.
        """
        if self.config.data_dir_is_absolute:
            base = Path(self.config.data_dir)
            if not base.is_dir():
                return []
            return sorted(
                p.name for p in base.iterdir()
                if p.is_dir() and (p / TASKS_FILE_NAME).is_file()
            )
        root = self._project_root(roots)
        data_dir = self._data_dir(root, "")
        stamp = read_project_stamp(data_dir / TASKS_FILE_NAME)
        return [stamp] if stamp else []

    # ── internals ────────────────────────────────────────────────

    def _project_root(self, roots: Sequence[str | Path] | None) -> Path:
        if roots:
            root = first_usable_root(roots)
            if root is None:
                raise NotFoundError(
                    f"None of the supplied roots is a file root: {', '.join(map(str, roots))}",
                    key="roots",
                )
        elif self.config.project_root:
            root = Path(self.config.project_root)
        else:
            root = self._root_finder()
        if not root.is_dir():
            raise NotFoundError(f"Project root {root} does not exist", key=str(root))
        return root.resolve()

    def _data_dir(self, root: Path, safe_id: str) -> Path:
        configured = self.config.data_dir
        if configured and Path(configured).is_absolute():
            return Path(configured) / safe_id
        if configured:
            return root / configured
        return root / DEFAULT_DATA_SUBDIR

    def _build(
        self, raw: str, safe_id: str, roots: Sequence[str | Path] | None
    ) -> ProjectContext:
        root = self._project_root(roots)
        data_dir = self._data_dir(root, safe_id)
        return ProjectContext(
            project_id=safe_id,
            project_name=raw,
            project_root=root,
            data_dir=data_dir,
            tasks_file=data_dir / TASKS_FILE_NAME,
            memory_dir=data_dir / MEMORY_DIR_NAME,
            last_accessed=utc_now(),
        )
