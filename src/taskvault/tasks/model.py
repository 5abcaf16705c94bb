"""Task, TaskDocument and request models shared by the store, engine and detector.

On disk every model is serialized with camelCase keys (``relatedFiles``,
``createdAt``); in Python the fields are snake_case.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class RelatedFileType(str, Enum):
    TO_MODIFY = "TO_MODIFY"
    REFERENCE = "REFERENCE"
    CREATE = "CREATE"
    DEPENDENCY = "DEPENDENCY"
    OTHER = "OTHER"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_task_id() -> str:
    return str(uuid.uuid4())


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif not isinstance(value, str):
        raise TypeError(f"Expected an ISO-8601 string, got {type(value).__name__}")
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return default


def dependency_ref(dep: Any) -> Any:
    """Unwrap the ``{"taskId": ...}`` form older documents stored dependencies in."""
    if isinstance(dep, dict) and "taskId" in dep:
        return dep["taskId"]
    return dep


def _dependency_refs(raw: Any) -> Any:
    if not isinstance(raw, list):
        return raw
    return [dependency_ref(d) for d in raw]


@dataclass
class RelatedFile:
    path: str
    type: RelatedFileType = RelatedFileType.OTHER
    description: str = ""
    line_start: int | None = None
    line_end: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.type, RelatedFileType):
            self.type = RelatedFileType(str(self.type).upper())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RelatedFile:
        return cls(
            path=data["path"],
            type=_pick(data, "type", "kind", default=RelatedFileType.OTHER),
            description=data.get("description") or "",
            line_start=_pick(data, "lineStart", "line_start"),
            line_end=_pick(data, "lineEnd", "line_end"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "path": self.path,
            "type": self.type.value,
            "description": self.description,
        }
        if self.line_start is not None:
            out["lineStart"] = self.line_start
        if self.line_end is not None:
            out["lineEnd"] = self.line_end
        return out


@dataclass
class Task:
    id: str
    name: str
    description: str = ""
    notes: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[str] = field(default_factory=list)
    related_files: list[RelatedFile] = field(default_factory=list)
    implementation_guide: str | None = None
    verification_criteria: str | None = None
    analysis_result: str | None = None
    summary: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None
    assigned_agent: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.status, TaskStatus):
            self.status = TaskStatus(self.status)
        # Timestamps are always aware UTC so the detector can compare them.
        self.created_at = parse_timestamp(self.created_at) or utc_now()
        self.updated_at = parse_timestamp(self.updated_at) or utc_now()
        self.completed_at = parse_timestamp(self.completed_at)

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    def text(self) -> str:
        """Name, description and notes joined for keyword analysis."""
        return f"{self.name} {self.description} {self.notes or ''}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        deps: list[str] = []
        for dep in data.get("dependencies") or []:
            dep_id = dependency_ref(dep)
            if dep_id and dep_id not in deps:
                deps.append(dep_id)
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description") or "",
            notes=data.get("notes"),
            status=data.get("status", TaskStatus.PENDING),
            dependencies=deps,
            related_files=[
                RelatedFile.from_dict(f) for f in _pick(data, "relatedFiles", "related_files", default=[]) or []
            ],
            implementation_guide=_pick(data, "implementationGuide", "implementation_guide"),
            verification_criteria=_pick(data, "verificationCriteria", "verification_criteria"),
            analysis_result=_pick(data, "analysisResult", "analysis_result"),
            summary=data.get("summary"),
            created_at=parse_timestamp(_pick(data, "createdAt", "created_at")) or utc_now(),
            updated_at=parse_timestamp(_pick(data, "updatedAt", "updated_at")) or utc_now(),
            completed_at=parse_timestamp(_pick(data, "completedAt", "completed_at")),
            assigned_agent=_pick(data, "assignedAgent", "assigned_agent"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "dependencies": list(self.dependencies),
            "relatedFiles": [f.to_dict() for f in self.related_files],
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }
        optional = {
            "notes": self.notes,
            "implementationGuide": self.implementation_guide,
            "verificationCriteria": self.verification_criteria,
            "analysisResult": self.analysis_result,
            "summary": self.summary,
            "completedAt": format_timestamp(self.completed_at) if self.completed_at else None,
            "assignedAgent": self.assigned_agent,
        }
        out.update({k: v for k, v in optional.items() if v is not None})
        return out


@dataclass
class TaskDocument:
    """The full contents of one project's ``tasks.json``."""

    project_id: str = ""
    revision: int = 0
    tasks: list[Task] = field(default_factory=list)

    def get_task(self, task_id: str) -> Task | None:
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None

    def pending_ids(self) -> list[str]:
        return [t.id for t in self.tasks if not t.is_completed]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskDocument:
        return cls(
            project_id=_pick(data, "projectId", "project_id", default="") or "",
            revision=int(data.get("revision") or 0),
            tasks=[Task.from_dict(t) for t in data.get("tasks") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectId": self.project_id,
            "revision": self.revision,
            "tasks": [t.to_dict() for t in self.tasks],
        }


@dataclass
class TaskInput:
    """One incoming task of a batch write.

    ``dependencies`` holds references (task ids or task names); they are
    resolved to ids when the batch is stored. ``None`` fields are "not
    supplied" and leave a matched task's value alone in selective mode.
    """

    name: str
    description: str | None = None
    notes: str | None = None
    dependencies: list[str] | None = None
    related_files: list[RelatedFile] | None = None
    implementation_guide: str | None = None
    verification_criteria: str | None = None
    analysis_result: str | None = None
    assigned_agent: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskInput:
        files = _pick(data, "relatedFiles", "related_files")
        return cls(
            name=data["name"],
            description=data.get("description"),
            notes=data.get("notes"),
            dependencies=_dependency_refs(data.get("dependencies")),
            related_files=[RelatedFile.from_dict(f) for f in files] if files is not None else None,
            implementation_guide=_pick(data, "implementationGuide", "implementation_guide"),
            verification_criteria=_pick(data, "verificationCriteria", "verification_criteria"),
            analysis_result=_pick(data, "analysisResult", "analysis_result"),
            assigned_agent=_pick(data, "assignedAgent", "assigned_agent"),
        )


@dataclass
class TaskPatch:
    """Content update for one task; ``None`` means "leave unchanged"."""

    name: str | None = None
    description: str | None = None
    notes: str | None = None
    dependencies: list[str] | None = None
    related_files: list[RelatedFile] | None = None
    implementation_guide: str | None = None
    verification_criteria: str | None = None
    assigned_agent: str | None = None

    def supplied(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    def is_empty(self) -> bool:
        return not self.supplied()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskPatch:
        files = _pick(data, "relatedFiles", "related_files")
        return cls(
            name=data.get("name"),
            description=data.get("description"),
            notes=data.get("notes"),
            dependencies=_dependency_refs(data.get("dependencies")),
            related_files=[RelatedFile.from_dict(f) for f in files] if files is not None else None,
            implementation_guide=_pick(data, "implementationGuide", "implementation_guide"),
            verification_criteria=_pick(data, "verificationCriteria", "verification_criteria"),
            assigned_agent=_pick(data, "assignedAgent", "assigned_agent"),
        )
