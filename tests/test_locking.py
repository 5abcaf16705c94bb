"""Tests for taskvault.locking and the store's write serialization."""

from __future__ import annotations

import json
import os
import threading
import time

import pytest

from taskvault.config import Config
from taskvault.context import ProjectResolver
from taskvault.errors import LockTimeoutError
from taskvault.io_utils import read_text, write_text
from taskvault.locking import ProjectLock, lock_path_for
from taskvault.store import TaskStore


@pytest.fixture
def target(tmp_path):
    return tmp_path / "proj" / "tasks.json"


class TestProjectLock:
    def test_lock_file_lifecycle(self, target):
        with ProjectLock(target, timeout=1.0, project="p") as lock:
            assert lock.lock_path == lock_path_for(target)
            info = json.loads(read_text(lock.lock_path))
            assert info["pid"] == os.getpid()
            assert "hostname" in info and "timestamp" in info
        assert not lock_path_for(target).exists()

    def test_reentrant_in_same_thread(self, target):
        with ProjectLock(target, timeout=1.0):
            with ProjectLock(target, timeout=1.0):
                assert lock_path_for(target).exists()
            assert lock_path_for(target).exists()
        assert not lock_path_for(target).exists()

    def test_foreign_lock_file_times_out(self, target):
        target.parent.mkdir(parents=True)
        write_text(lock_path_for(target), "{}")
        with pytest.raises(LockTimeoutError) as exc_info:
            with ProjectLock(target, timeout=0.2, project="p"):
                pass
        assert exc_info.value.retryable
        assert exc_info.value.project == "p"

    def test_stale_lock_file_removed(self, target):
        target.parent.mkdir(parents=True)
        stale = lock_path_for(target)
        write_text(stale, "{}")
        old = time.time() - 3600
        os.utime(stale, (old, old))
        with ProjectLock(target, timeout=0.2):
            assert json.loads(read_text(stale))["pid"] == os.getpid()

    def test_other_thread_waits(self, target):
        held = threading.Event()
        release = threading.Event()

        def holder():
            with ProjectLock(target, timeout=1.0):
                held.set()
                release.wait(5)

        t = threading.Thread(target=holder)
        t.start()
        held.wait(5)
        try:
            with pytest.raises(LockTimeoutError):
                ProjectLock(target, timeout=0.1).acquire()
        finally:
            release.set()
            t.join()
        with ProjectLock(target, timeout=1.0):
            pass


class TestConcurrentWriters:
    def test_parallel_appends_all_land(self, config, ctx, make_input):
        config.lock_timeout = 10.0
        store = TaskStore(config)
        errors: list[Exception] = []

        def writer(prefix: str) -> None:
            try:
                for i in range(10):
                    store.batch_upsert(ctx, [make_input(f"{prefix}-{i}")])
            except Exception as exc:  # surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=writer, args=(p,)) for p in ("a", "b", "c")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        doc = store.load(ctx)
        assert len(doc.tasks) == 30
        assert doc.revision == 30

    def test_lock_timeout_from_config(self, workspace, tmp_path, make_input):
        cfg = Config(data_dir=str(tmp_path / "vault"), project_root=str(workspace), lock_timeout=0.1)
        ctx = ProjectResolver(cfg).resolve("p")
        ctx.data_dir.mkdir(parents=True)
        write_text(lock_path_for(ctx.tasks_file), "{}")
        with pytest.raises(LockTimeoutError):
            TaskStore(cfg).batch_upsert(ctx, [make_input("A")])
