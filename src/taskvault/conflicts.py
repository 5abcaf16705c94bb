"""Cross-project contamination detector.

Scores how likely it is that a loaded task list belongs to a project other
than the active one. Three independent signals each yield a score in [0, 1]:

- temporal: creation-time gaps far above the mean, and future timestamps
- path: related-file paths that do not point into the active project
- content: task text that shares few keywords with the project

Their weighted sum is the report's ``confidence_score``. Everything here is a
pure function of its inputs; findings are returned as data and never raised.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from taskvault.config import DEFAULT_CONFLICT_THRESHOLD
from taskvault.context import ProjectContext, sanitize_project_id
from taskvault.tasks.model import Task, format_timestamp, parse_timestamp, utc_now

TEMPORAL_WEIGHT = 0.4
PATH_WEIGHT = 0.4
CONTENT_WEIGHT = 0.2

SUDDEN_JUMP_FACTOR = 3.0
HIGH_SEVERITY_FACTOR = 6.0
CLUSTER_FACTOR = 0.5

CONTENT_MATCH_RATIO = 0.3
CONTENT_CONFLICT_RATIO = 0.1
NO_PROJECT_CONTENT_SCORE = 0.5

COMPREHENSIVE_REVIEW_THRESHOLD = 0.5

DEFAULT_SYSTEM_KEYWORDS = ("task", "project", "taskvault")
ROOT_SEGMENT_HINTS = ("project",)

PROJECT_MARKER = re.compile(r"<!-- Project: (.+?) -->")


class ConflictType(str, Enum):
    TIME_ANOMALY = "TIME_ANOMALY"
    PATH_MISMATCH = "PATH_MISMATCH"
    CONTENT_INCONSISTENCY = "CONTENT_INCONSISTENCY"
    PROJECT_CONTEXT_ERROR = "PROJECT_CONTEXT_ERROR"


class ConflictSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SuggestionType(str, Enum):
    SWITCH_PROJECT = "SWITCH_PROJECT"
    MERGE_TASKS = "MERGE_TASKS"
    BACKUP_AND_RESTORE = "BACKUP_AND_RESTORE"
    MANUAL_REVIEW = "MANUAL_REVIEW"


class SuggestionPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


@dataclass
class Conflict:
    type: ConflictType
    severity: ConflictSeverity
    affected_tasks: list[str]
    description: str
    evidence: list[str] = field(default_factory=list)


@dataclass
class RecoverySuggestion:
    type: SuggestionType
    priority: SuggestionPriority
    action: str
    steps: list[str]
    expected_outcome: str


# ── per-signal analysis ─────────────────────────────────────────


@dataclass
class TimeAnomaly:
    task_id: str
    task_name: str
    kind: str  # SUDDEN_JUMP | FUTURE_DATE
    seconds: float
    description: str


@dataclass
class TimeCluster:
    start: datetime
    end: datetime
    task_ids: list[str]


@dataclass
class TimeAnalysis:
    average_gap: float = 0.0
    anomalies: list[TimeAnomaly] = field(default_factory=list)
    clusters: list[TimeCluster] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    score: float = 1.0


@dataclass
class PathMismatch:
    task_id: str
    path: str
    expected_project: str
    detected_root: str


@dataclass
class PathAnalysis:
    root_patterns: list[str] = field(default_factory=list)
    mismatches: list[PathMismatch] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    total_paths: int = 0
    score: float = 1.0


@dataclass
class ContentInconsistency:
    task_id: str
    task_name: str
    match_ratio: float
    matched: list[str]


@dataclass
class ContentAnalysis:
    keywords: list[str] = field(default_factory=list)
    inconsistencies: list[ContentInconsistency] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    score: float = 1.0


@dataclass
class AnalysisDetails:
    total_tasks: int
    analyzed_at: datetime
    time: TimeAnalysis
    paths: PathAnalysis
    content: ContentAnalysis


@dataclass
class ConflictReport:
    has_conflicts: bool
    confidence_score: float
    current_project: str | None
    conflicts: list[Conflict]
    recovery_suggestions: list[RecoverySuggestion]
    details: AnalysisDetails

    def conflict_types(self) -> list[ConflictType]:
        seen: list[ConflictType] = []
        for c in self.conflicts:
            if c.type not in seen:
                seen.append(c.type)
        return seen


@dataclass
class DetectorOptions:
    enable_time_analysis: bool = True
    enable_path_analysis: bool = True
    enable_content_analysis: bool = True
    threshold: float = DEFAULT_CONFLICT_THRESHOLD
    system_keywords: Sequence[str] = DEFAULT_SYSTEM_KEYWORDS
    now: datetime | None = None


@dataclass
class ProjectDetection:
    """Result of :func:`auto_detect_project`."""

    project: str | None
    confidence: float
    marker_count: int
    consistent: bool


# ── temporal signal ─────────────────────────────────────────────


def time_clusters(ordered: Sequence[Task], max_gap: float) -> list[TimeCluster]:
    """Runs of consecutive tasks created within *max_gap* seconds of each other."""
    clusters: list[TimeCluster] = []
    current: TimeCluster | None = None
    for task in ordered:
        if current is not None and (task.created_at - current.end).total_seconds() <= max_gap:
            current.end = task.created_at
            current.task_ids.append(task.id)
            continue
        if current is not None and len(current.task_ids) > 1:
            clusters.append(current)
        current = TimeCluster(start=task.created_at, end=task.created_at, task_ids=[task.id])
    if current is not None and len(current.task_ids) > 1:
        clusters.append(current)
    return clusters


def analyze_time(tasks: Sequence[Task], now: datetime) -> TimeAnalysis:
    result = TimeAnalysis()
    ordered = sorted(tasks, key=lambda t: t.created_at)

    for task in ordered:
        ahead = (task.created_at - now).total_seconds()
        if ahead > 0:
            result.anomalies.append(
                TimeAnomaly(task.id, task.name, "FUTURE_DATE", ahead, "Task created in the future")
            )
            result.conflicts.append(
                Conflict(
                    type=ConflictType.TIME_ANOMALY,
                    severity=ConflictSeverity.CRITICAL,
                    affected_tasks=[task.id],
                    description=f'Task "{task.name}" has a future creation date',
                    evidence=[
                        f"Created at: {format_timestamp(task.created_at)}",
                        f"Current time: {format_timestamp(now)}",
                    ],
                )
            )

    if len(ordered) >= 2:
        gaps = [
            (b.created_at - a.created_at).total_seconds() for a, b in zip(ordered, ordered[1:])
        ]
        result.average_gap = sum(gaps) / len(gaps)
        limit = result.average_gap * SUDDEN_JUMP_FACTOR
        for task, gap in zip(ordered[1:], gaps):
            if gap <= limit:
                continue
            minutes = round(gap / 60)
            result.anomalies.append(
                TimeAnomaly(
                    task.id, task.name, "SUDDEN_JUMP", gap,
                    f"Unusual time gap of {minutes} minutes between tasks",
                )
            )
            severity = (
                ConflictSeverity.HIGH
                if gap > result.average_gap * HIGH_SEVERITY_FACTOR
                else ConflictSeverity.MEDIUM
            )
            result.conflicts.append(
                Conflict(
                    type=ConflictType.TIME_ANOMALY,
                    severity=severity,
                    affected_tasks=[task.id],
                    description=f'Task "{task.name}" has an unusual creation time gap',
                    evidence=[
                        f"Time gap: {minutes} minutes",
                        f"Average gap: {round(result.average_gap / 60)} minutes",
                    ],
                )
            )
        result.clusters = time_clusters(ordered, result.average_gap * CLUSTER_FACTOR)

    if tasks:
        result.score = max(0.0, 1.0 - len(result.anomalies) / len(tasks))
    return result


# ── path signal ─────────────────────────────────────────────────


def _norm(path: str | Path) -> str:
    return str(path).replace("\\", "/").lower().rstrip("/")


def _is_under(path: str, base: str) -> bool:
    return bool(base) and (path == base or path.startswith(base + "/"))


def infer_project_root(path: str, project_id: str) -> str:
    """Leading segments of *path* up to the first one that looks like a project directory."""
    parts = path.replace("\\", "/").split("/")
    needle = project_id.lower()
    for i, part in enumerate(parts[:-1]):
        lowered = part.lower()
        if (needle and needle in lowered) or any(h in lowered for h in ROOT_SEGMENT_HINTS):
            return "/".join(parts[: i + 1])
    return ""


def path_matches_project(path: str, project_id: str, bases: Iterable[str | Path] = ()) -> bool:
    """Does *path* mention *project_id*, or lie under one of *bases*?"""
    lowered = _norm(path)
    needle = project_id.lower()
    if needle and needle in lowered:
        return True
    if needle and needle in infer_project_root(path, project_id).lower():
        return True
    return any(_is_under(lowered, _norm(b)) for b in bases)


def analyze_paths(
    tasks: Sequence[Task], project_id: str | None, bases: Sequence[str | Path] = ()
) -> PathAnalysis:
    result = PathAnalysis()
    if not project_id:
        return result

    refs = [(task, f.path) for task in tasks for f in task.related_files]
    result.total_paths = len(refs)
    if not refs:
        return result

    roots: list[str] = []
    matching = 0
    for task, path in refs:
        root = infer_project_root(path, project_id)
        if root and root not in roots:
            roots.append(root)
        if path_matches_project(path, project_id, bases):
            matching += 1
            continue
        result.mismatches.append(PathMismatch(task.id, path, project_id, root or "unknown"))
        result.conflicts.append(
            Conflict(
                type=ConflictType.PATH_MISMATCH,
                severity=ConflictSeverity.MEDIUM,
                affected_tasks=[task.id],
                description=f'Task "{task.name}" references files outside the current project',
                evidence=[
                    f"File path: {path}",
                    f"Expected project: {project_id}",
                    f"Detected project root: {root or 'unknown'}",
                ],
            )
        )
    result.root_patterns = roots
    result.score = matching / len(refs)
    return result


# ── content signal ──────────────────────────────────────────────


def project_keywords(project_id: str, system_keywords: Iterable[str]) -> list[str]:
    keywords: list[str] = []
    for word in [project_id, *system_keywords]:
        word = word.lower()
        if word and word not in keywords:
            keywords.append(word)
    return keywords


def keyword_ratio(text: str, keywords: Sequence[str]) -> tuple[float, list[str]]:
    if not keywords:
        return 1.0, []
    lowered = text.lower()
    matched = [k for k in keywords if k in lowered]
    return len(matched) / len(keywords), matched


def analyze_content(
    tasks: Sequence[Task], project_id: str | None, system_keywords: Iterable[str]
) -> ContentAnalysis:
    result = ContentAnalysis()
    if not project_id:
        result.score = NO_PROJECT_CONTENT_SCORE
        return result

    result.keywords = project_keywords(project_id, system_keywords)
    if not tasks:
        return result

    matching = 0
    for task in tasks:
        ratio, matched = keyword_ratio(task.text(), result.keywords)
        if ratio >= CONTENT_MATCH_RATIO:
            matching += 1
            continue
        result.inconsistencies.append(ContentInconsistency(task.id, task.name, ratio, matched))
        if ratio < CONTENT_CONFLICT_RATIO:
            result.conflicts.append(
                Conflict(
                    type=ConflictType.CONTENT_INCONSISTENCY,
                    severity=ConflictSeverity.LOW,
                    affected_tasks=[task.id],
                    description=f'Task "{task.name}" content seems unrelated to the current project',
                    evidence=[
                        f"Current project: {project_id}",
                        f"Keyword match ratio: {round(ratio * 100)}%",
                    ],
                )
            )
    result.score = matching / len(tasks)
    return result


# ── project markers ─────────────────────────────────────────────


def project_marker(project: str) -> str:
    return f"<!-- Project: {project} -->"


def find_project_markers(text: str) -> list[str]:
    return [m.strip() for m in PROJECT_MARKER.findall(text) if m.strip()]


def auto_detect_project(text: str) -> ProjectDetection:
    """Guess the owning project from ``<!-- Project: X -->`` markers in *text*.

    One consistent project yields 0.5 plus 0.1 per marker, capped at 0.9;
    markers naming several projects yield 0.3 for the most frequent one.
    """
    names = find_project_markers(text)
    if not names:
        return ProjectDetection(project=None, confidence=0.0, marker_count=0, consistent=False)
    counts = Counter(names)
    project = counts.most_common(1)[0][0]
    consistent = len(counts) == 1
    confidence = min(0.9, 0.5 + 0.1 * len(names)) if consistent else 0.3
    return ProjectDetection(project=project, confidence=confidence, marker_count=len(names), consistent=consistent)


def marker_conflicts(tasks: Sequence[Task], project_id: str | None) -> list[Conflict]:
    if not project_id:
        return []
    conflicts: list[Conflict] = []
    for task in tasks:
        foreign = [
            m for m in find_project_markers(f"{task.text()} {task.analysis_result or ''}")
            if sanitize_project_id(m).lower() != project_id.lower()
        ]
        if not foreign:
            continue
        conflicts.append(
            Conflict(
                type=ConflictType.PROJECT_CONTEXT_ERROR,
                severity=ConflictSeverity.CRITICAL,
                affected_tasks=[task.id],
                description=f'Task "{task.name}" is marked as belonging to project "{foreign[0]}"',
                evidence=[project_marker(m) for m in foreign] + [f"Current project: {project_id}"],
            )
        )
    return conflicts


# ── aggregation ─────────────────────────────────────────────────


def confidence_score(temporal: float, path: float, content: float) -> float:
    return temporal * TEMPORAL_WEIGHT + path * PATH_WEIGHT + content * CONTENT_WEIGHT


def _suggestion(kind: ConflictType) -> RecoverySuggestion:
    if kind == ConflictType.TIME_ANOMALY:
        return RecoverySuggestion(
            SuggestionType.MANUAL_REVIEW,
            SuggestionPriority.MEDIUM,
            "Review tasks with time anomalies",
            [
                "Check whether the tasks were created in the correct project",
                "Verify the task creation timestamps",
                "Consider whether the tasks belong to different projects",
            ],
            "Task ownership and project context are clarified",
        )
    if kind == ConflictType.PATH_MISMATCH:
        return RecoverySuggestion(
            SuggestionType.SWITCH_PROJECT,
            SuggestionPriority.HIGH,
            "Switch to the correct project",
            [
                "Identify the owning project from the related file paths",
                "Re-run the command with --project set to that project",
                "Verify that every task is in the correct project",
            ],
            "All tasks are read from the correct project",
        )
    if kind == ConflictType.CONTENT_INCONSISTENCY:
        return RecoverySuggestion(
            SuggestionType.MERGE_TASKS,
            SuggestionPriority.LOW,
            "Review and organize task content",
            [
                "Review the task descriptions",
                "Move unrelated tasks to their own projects",
                "Update descriptions to match the project",
            ],
            "Task content is consistent with the project",
        )
    return RecoverySuggestion(
        SuggestionType.BACKUP_AND_RESTORE,
        SuggestionPriority.URGENT,
        "Back up the current tasks and restore the correct project data",
        [
            "Create a backup of the current task list",
            "Identify the correct project data source",
            "Restore tasks from the correct project's backup",
            "Re-add any valid tasks from the backup",
        ],
        "Project data is restored to the correct state",
    )


def recovery_suggestions(conflicts: Sequence[Conflict], score: float) -> list[RecoverySuggestion]:
    suggestions: list[RecoverySuggestion] = []
    seen: set[ConflictType] = set()
    for c in conflicts:
        if c.type not in seen:
            seen.add(c.type)
            suggestions.append(_suggestion(c.type))
    if score < COMPREHENSIVE_REVIEW_THRESHOLD:
        suggestions.append(
            RecoverySuggestion(
                SuggestionType.MANUAL_REVIEW,
                SuggestionPriority.URGENT,
                "Comprehensive project context review",
                [
                    "Review all tasks and their project context",
                    "Check that you are working in the correct project",
                    "Consider backing up and switching projects",
                    "Verify file paths and task content",
                ],
                "A clear understanding of the correct project context",
            )
        )
    return suggestions


def _active_project(active: ProjectContext | str | None) -> tuple[str | None, list[Path]]:
    if isinstance(active, ProjectContext):
        return active.project_id, [active.project_root, active.data_dir]
    if active:
        return sanitize_project_id(active) or None, []
    return None, []


def detect_conflicts(
    tasks: Sequence[Task],
    active: ProjectContext | str | None,
    options: DetectorOptions | None = None,
) -> ConflictReport:
    """Score *tasks* against the *active* project and propose recovery steps."""
    options = options or DetectorOptions()
    now = parse_timestamp(options.now) or utc_now()
    project_id, bases = _active_project(active)

    time_result = analyze_time(tasks, now) if options.enable_time_analysis else TimeAnalysis()
    path_result = analyze_paths(tasks, project_id, bases) if options.enable_path_analysis else PathAnalysis()
    content_result = (
        analyze_content(tasks, project_id, options.system_keywords)
        if options.enable_content_analysis
        else ContentAnalysis()
    )

    conflicts = [
        *time_result.conflicts,
        *path_result.conflicts,
        *content_result.conflicts,
        *marker_conflicts(tasks, project_id),
    ]
    score = confidence_score(time_result.score, path_result.score, content_result.score)
    has_conflicts = bool(conflicts) or score < options.threshold

    return ConflictReport(
        has_conflicts=has_conflicts,
        confidence_score=score,
        current_project=project_id,
        conflicts=conflicts,
        recovery_suggestions=recovery_suggestions(conflicts, score) if has_conflicts else [],
        details=AnalysisDetails(
            total_tasks=len(tasks),
            analyzed_at=now,
            time=time_result,
            paths=path_result,
            content=content_result,
        ),
    )
