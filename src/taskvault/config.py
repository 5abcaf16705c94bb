"""Configuration defaults, env vars, and runtime options for taskvault."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path


DATA_DIR_ENV = "TASKVAULT_DATA_DIR"
LEGACY_DATA_DIR_ENV = "DATA_DIR"

DEFAULT_DATA_SUBDIR = "data"
TASKS_FILE_NAME = "tasks.json"
MEMORY_DIR_NAME = "memory"

DEFAULT_CACHE_TTL = 5.0
DEFAULT_LOCK_TIMEOUT = 10.0
DEFAULT_CONFLICT_THRESHOLD = 0.7
MAX_PROJECT_ID_LENGTH = 100


class DependencyPolicy(str, Enum):
    """What a batch write does with dependency references that resolve to nothing."""

    ABORT = "abort"
    WARN = "warn"


@dataclass
class Config:
    """Runtime configuration shared by the resolver, the store and the CLI."""

    # Storage layout
    data_dir: str = ""
    project_root: str = ""

    # Timing
    cache_ttl: float = DEFAULT_CACHE_TTL
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT

    # Policies
    conflict_threshold: float = DEFAULT_CONFLICT_THRESHOLD
    dependency_policy: DependencyPolicy = DependencyPolicy.ABORT
    check_cycles: bool = True

    # Misc
    verbose: bool = False

    def __post_init__(self) -> None:
        if not self.data_dir:
            self.data_dir = (
                os.environ.get(DATA_DIR_ENV)
                or os.environ.get(LEGACY_DATA_DIR_ENV)
                or ""
            )
        if not isinstance(self.dependency_policy, DependencyPolicy):
            self.dependency_policy = DependencyPolicy(self.dependency_policy)

    @property
    def data_dir_is_absolute(self) -> bool:
        return bool(self.data_dir) and Path(self.data_dir).is_absolute()


def resolve_repo_root() -> Path:
    """Return the git repository root, falling back to cwd."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            capture_output=True,
            text=True,
            check=True,
        )
        return Path(result.stdout.strip())
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path.cwd()
