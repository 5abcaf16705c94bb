"""Per-project write serialization.

A :class:`ProjectLock` guards one task document. It combines an in-process
re-entrant lock (one per document, shared by every thread) with an exclusive
``<document>.lock`` file so that separate processes writing the same project
also take turns. Both halves are bounded by a timeout; running out of time
raises :class:`~taskvault.errors.LockTimeoutError`, which callers may retry.
"""

from __future__ import annotations

import json
import os
import socket
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

from taskvault import log
from taskvault.errors import LockTimeoutError, PersistenceError

LOCK_SUFFIX = ".lock"
POLL_INTERVAL = 0.05
MIN_STALE_AFTER = 30.0

_registry_guard = threading.Lock()
_thread_locks: dict[str, threading.RLock] = {}
# Re-entry depth per lock path; only the thread holding that path's RLock touches its entry.
_depths: dict[str, int] = {}


def _thread_lock_for(key: str) -> threading.RLock:
    with _registry_guard:
        lock = _thread_locks.get(key)
        if lock is None:
            lock = threading.RLock()
            _thread_locks[key] = lock
        return lock


def lock_path_for(target: Path) -> Path:
    return target.with_name(target.name + LOCK_SUFFIX)


class ProjectLock:
    """Exclusive, re-entrant write lock for a single task document.

    Usage::

        with ProjectLock(ctx.tasks_file, timeout=10.0, project=ctx.project_id):
            doc = load(...)
            ...
            save(...)
    """

    def __init__(
        self,
        target: Path | str,
        timeout: float,
        *,
        project: str = "",
        stale_after: float | None = None,
    ) -> None:
        self.target = Path(target)
        self.lock_path = lock_path_for(self.target)
        self.timeout = timeout
        self.project = project
        self.stale_after = stale_after if stale_after is not None else max(MIN_STALE_AFTER, timeout * 3)
        self._key = str(self.lock_path.resolve())
        self._rlock = _thread_lock_for(self._key)

    # ── acquire / release ────────────────────────────────────────

    def acquire(self) -> None:
        deadline = time.monotonic() + self.timeout
        if not self._rlock.acquire(timeout=max(self.timeout, 0)):
            raise LockTimeoutError(self.lock_path, self.timeout, project=self.project)
        depth = _depths.get(self._key, 0)
        if depth == 0:
            try:
                self._acquire_file(deadline)
            except BaseException:
                self._rlock.release()
                raise
        _depths[self._key] = depth + 1

    def release(self) -> None:
        depth = _depths.get(self._key, 0) - 1
        if depth <= 0:
            _depths.pop(self._key, None)
            self._release_file()
        else:
            _depths[self._key] = depth
        self._rlock.release()

    def __enter__(self) -> "ProjectLock":
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()

    # ── lock file ────────────────────────────────────────────────

    def _acquire_file(self, deadline: float) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._remove_if_stale():
                    continue
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(self.lock_path, self.timeout, project=self.project)
                time.sleep(POLL_INTERVAL)
                continue
            except OSError as exc:
                raise PersistenceError(
                    f"Cannot create lock file {self.lock_path}: {exc}",
                    path=self.lock_path,
                    project=self.project,
                ) from exc
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(
                    {
                        "pid": os.getpid(),
                        "hostname": socket.gethostname(),
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    },
                    fh,
                )
            log.debug(f"Lock acquired: {self.lock_path}", self.project)
            return

    def _release_file(self) -> None:
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            log.warn(f"Lock file vanished before release: {self.lock_path}", self.project)
        else:
            log.debug(f"Lock released: {self.lock_path}", self.project)

    def _remove_if_stale(self) -> bool:
        try:
            age = time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return True
        if age < self.stale_after:
            return False
        log.warn(f"Removing stale lock {self.lock_path} ({age:.0f}s old)", self.project)
        self.lock_path.unlink(missing_ok=True)
        return True
