"""Error taxonomy for the task store.

Every error carries enough context (offending task, field, expected vs.
actual) for a caller to correct the request. ``retryable`` tells the caller
whether repeating the same call can succeed without changing its input.
Conflict findings are never raised: they are returned as data by
:mod:`taskvault.conflicts`.
"""

from __future__ import annotations

from pathlib import Path


class TaskVaultError(Exception):
    """Base exception for every failure raised by taskvault."""

    retryable = False

    def __init__(self, message: str, *, project: str = "") -> None:
        self.message = message
        self.project = project
        super().__init__(message)

    def __str__(self) -> str:
        if self.project:
            return f"[{self.project}] {self.message}"
        return self.message


class ValidationError(TaskVaultError):
    """Rejected input: duplicate names, malformed line ranges, no-op patches."""

    def __init__(
        self,
        message: str,
        *,
        task: str = "",
        field: str = "",
        expected: object = None,
        actual: object = None,
        project: str = "",
    ) -> None:
        self.task = task
        self.field = field
        self.expected = expected
        self.actual = actual
        super().__init__(message, project=project)


class TransitionError(ValidationError):
    """A status change that the status machine or readiness gate forbids."""


class NotFoundError(TaskVaultError):
    """A task id or project location that does not exist."""

    def __init__(self, message: str, *, key: str = "", project: str = "") -> None:
        self.key = key
        super().__init__(message, project=project)


class DependencyError(TaskVaultError):
    """Unresolved dependency references or a dependency cycle."""

    def __init__(
        self,
        message: str,
        *,
        task: str = "",
        unresolved: list[str] | None = None,
        cycle: str = "",
        project: str = "",
    ) -> None:
        self.task = task
        self.unresolved = list(unresolved or [])
        self.cycle = cycle
        super().__init__(message, project=project)


class PersistenceError(TaskVaultError):
    """Reading, writing, renaming or backing up a task document failed."""

    retryable = True

    def __init__(self, message: str, *, path: Path | str = "", project: str = "") -> None:
        self.path = str(path)
        super().__init__(message, project=project)


class StaleDocumentError(PersistenceError):
    """The document changed on disk since it was loaded."""

    def __init__(
        self,
        path: Path | str,
        expected_revision: int,
        actual_revision: int,
        *,
        project: str = "",
    ) -> None:
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision
        super().__init__(
            f"Document {path} is at revision {actual_revision}, "
            f"expected {expected_revision}; reload and retry",
            path=path,
            project=project,
        )


class LockTimeoutError(PersistenceError):
    """The project write lock could not be acquired in time."""

    def __init__(self, path: Path | str, timeout: float, *, project: str = "") -> None:
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout:g}s waiting for lock {path}",
            path=path,
            project=project,
        )


class MissingProjectError(TaskVaultError):
    """A mutating call arrived without an explicit project identifier."""

    def __init__(self, operation: str = "") -> None:
        self.operation = operation
        what = f"'{operation}'" if operation else "This operation"
        super().__init__(
            f"{what} modifies task data and requires an explicit project id; "
            "the current-project binding is never used for writes"
        )


class ProjectMismatchError(TaskVaultError):
    """A task document belongs to a different project than the one resolved."""

    def __init__(self, path: Path | str, expected: str, actual: str) -> None:
        self.path = str(path)
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{path} belongs to project '{actual}', not '{expected}'",
            project=expected,
        )
