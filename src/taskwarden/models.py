from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

TaskCategory = Literal["frontend", "backend", "testing", "deployment"]
TaskStatus = Literal["pending", "in_progress", "done", "failed", "blocked"]
TaskPriority = Literal["P0", "P1", "P2"]
Assignment = Literal["unassigned", "automated", "human"]
SessionStatus = Literal["pending", "running", "completed", "failed", "timeout", "cancelled"]
DependencyKind = Literal["hard", "soft"]

TASK_CATEGORIES: tuple[str, ...] = ("frontend", "backend", "testing", "deployment")
TASK_STATUSES: tuple[str, ...] = ("pending", "in_progress", "done", "failed", "blocked")
TASK_PRIORITIES: tuple[str, ...] = ("P0", "P1", "P2")
ASSIGNMENTS: tuple[str, ...] = ("unassigned", "automated", "human")
SESSION_STATUSES: tuple[str, ...] = (
    "pending",
    "running",
    "completed",
    "failed",
    "timeout",
    "cancelled",
)
TERMINAL_SESSION_STATUSES = frozenset({"completed", "failed", "timeout", "cancelled"})


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _choice(payload: dict[str, Any], key: str, allowed: tuple[str, ...], default: str) -> str:
    value = str(payload.get(key) or default)
    if value not in allowed:
        raise ValueError(f"Invalid {key} '{value}'; expected one of {', '.join(allowed)}")
    return value


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


def _unique(items: list[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        result.append(item)
    return result


@dataclass(slots=True)
class QualityMetrics:
    code_quality_score: float | None = None
    test_coverage: float | None = None
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code_quality_score": self.code_quality_score,
            "test_coverage": self.test_coverage,
            "issues": list(self.issues),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> QualityMetrics:
        return cls(
            code_quality_score=_optional_float(payload.get("code_quality_score")),
            test_coverage=_optional_float(payload.get("test_coverage")),
            issues=[str(item) for item in payload.get("issues", [])],
        )


@dataclass(slots=True)
class Task:
    id: str
    requirement_id: str
    name: str
    category: TaskCategory
    description: str = ""
    status: TaskStatus = "pending"
    priority: TaskPriority = "P1"
    estimated_hours: float = 2.0
    actual_hours: float | None = None
    depends_on: list[str] = field(default_factory=list)
    assigned_to: Assignment = "unassigned"
    feature_id: str | None = None
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None
    quality_metrics: QualityMetrics | None = None

    def __post_init__(self) -> None:
        self.depends_on = _unique([str(item) for item in self.depends_on])

    def add_dependency(self, task_id: str) -> bool:
        if task_id in self.depends_on:
            return False
        self.depends_on.append(task_id)
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "requirement_id": self.requirement_id,
            "feature_id": self.feature_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "status": self.status,
            "priority": self.priority,
            "estimated_hours": self.estimated_hours,
            "actual_hours": self.actual_hours,
            "depends_on": list(self.depends_on),
            "assigned_to": self.assigned_to,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "quality_metrics": (
                self.quality_metrics.to_dict() if self.quality_metrics is not None else None
            ),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        try:
            task_id = str(payload["id"])
            name = str(payload["name"])
        except KeyError as exc:
            raise ValueError(f"Task payload is missing required field {exc}") from exc
        now = _utcnow_iso()
        metrics = payload.get("quality_metrics")
        return cls(
            id=task_id,
            requirement_id=str(payload.get("requirement_id") or ""),
            feature_id=payload.get("feature_id"),
            name=name,
            description=str(payload.get("description", "")),
            category=_choice(payload, "category", TASK_CATEGORIES, "backend"),  # type: ignore[arg-type]
            status=_choice(payload, "status", TASK_STATUSES, "pending"),  # type: ignore[arg-type]
            priority=_choice(payload, "priority", TASK_PRIORITIES, "P1"),  # type: ignore[arg-type]
            estimated_hours=float(payload.get("estimated_hours", 2.0)),
            actual_hours=_optional_float(payload.get("actual_hours")),
            depends_on=[str(item) for item in payload.get("depends_on", [])],
            assigned_to=_choice(payload, "assigned_to", ASSIGNMENTS, "unassigned"),  # type: ignore[arg-type]
            created_at=str(payload.get("created_at") or now),
            updated_at=str(payload.get("updated_at") or now),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
            quality_metrics=(
                QualityMetrics.from_dict(metrics) if isinstance(metrics, dict) else None
            ),
        )


@dataclass(slots=True, frozen=True)
class Dependency:
    from_id: str
    to_id: str
    kind: DependencyKind = "hard"
    implicit: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.from_id,
            "to": self.to_id,
            "kind": self.kind,
            "implicit": self.implicit,
        }


@dataclass(slots=True)
class FileChange:
    path: str
    action: Literal["created", "modified", "deleted"] = "created"
    lines_added: int = 0
    lines_deleted: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "action": self.action,
            "lines_added": self.lines_added,
            "lines_deleted": self.lines_deleted,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> FileChange:
        return cls(
            path=str(payload["path"]),
            action=payload.get("action", "created"),
            lines_added=int(payload.get("lines_added", 0)),
            lines_deleted=int(payload.get("lines_deleted", 0)),
        )


@dataclass(slots=True)
class Artifact:
    path: str
    kind: str = "file"
    language: str = "text"
    size: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "kind": self.kind, "language": self.language, "size": self.size}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Artifact:
        return cls(
            path=str(payload["path"]),
            kind=str(payload.get("kind", "file")),
            language=str(payload.get("language", "text")),
            size=int(payload.get("size", 0)),
        )


@dataclass(slots=True)
class ExecutionResult:
    success: bool
    summary: str = ""
    changes: list[FileChange] = field(default_factory=list)
    artifacts: list[Artifact] = field(default_factory=list)
    quality_score: float | None = None
    test_coverage: float | None = None
    quality_passed: bool | None = None
    tokens_used: int = 0
    api_calls: int = 0
    error_kind: str | None = None
    recoverable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "summary": self.summary,
            "changes": [change.to_dict() for change in self.changes],
            "artifacts": [artifact.to_dict() for artifact in self.artifacts],
            "quality_score": self.quality_score,
            "test_coverage": self.test_coverage,
            "quality_passed": self.quality_passed,
            "tokens_used": self.tokens_used,
            "api_calls": self.api_calls,
            "error_kind": self.error_kind,
            "recoverable": self.recoverable,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ExecutionResult:
        quality_passed = payload.get("quality_passed")
        return cls(
            success=bool(payload.get("success", False)),
            summary=str(payload.get("summary", "")),
            changes=[FileChange.from_dict(item) for item in payload.get("changes", [])],
            artifacts=[Artifact.from_dict(item) for item in payload.get("artifacts", [])],
            quality_score=_optional_float(payload.get("quality_score")),
            test_coverage=_optional_float(payload.get("test_coverage")),
            quality_passed=None if quality_passed is None else bool(quality_passed),
            tokens_used=int(payload.get("tokens_used", 0)),
            api_calls=int(payload.get("api_calls", 0)),
            error_kind=payload.get("error_kind"),
            recoverable=bool(payload.get("recoverable", True)),
        )


@dataclass(slots=True)
class ErrorRecord:
    timestamp: str
    kind: str
    message: str
    recoverable: bool = True
    attempt: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "kind": self.kind,
            "message": self.message,
            "recoverable": self.recoverable,
            "attempt": self.attempt,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ErrorRecord:
        return cls(
            timestamp=str(payload.get("timestamp", "")),
            kind=str(payload.get("kind", "unknown")),
            message=str(payload.get("message", "")),
            recoverable=bool(payload.get("recoverable", True)),
            attempt=int(payload.get("attempt", 1)),
        )


@dataclass(slots=True)
class AttemptRecord:
    number: int
    started_at: str
    ended_at: str | None = None
    outcome: str = "running"

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "outcome": self.outcome,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AttemptRecord:
        return cls(
            number=int(payload.get("number", 1)),
            started_at=str(payload.get("started_at", "")),
            ended_at=payload.get("ended_at"),
            outcome=str(payload.get("outcome", "running")),
        )


@dataclass(slots=True)
class SessionMetrics:
    duration: float = 0.0
    tokens_used: int = 0
    api_calls: int = 0
    files_generated: int = 0
    lines_of_code: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration": self.duration,
            "tokens_used": self.tokens_used,
            "api_calls": self.api_calls,
            "files_generated": self.files_generated,
            "lines_of_code": self.lines_of_code,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SessionMetrics:
        return cls(
            duration=float(payload.get("duration", 0.0)),
            tokens_used=int(payload.get("tokens_used", 0)),
            api_calls=int(payload.get("api_calls", 0)),
            files_generated=int(payload.get("files_generated", 0)),
            lines_of_code=int(payload.get("lines_of_code", 0)),
        )


@dataclass(slots=True)
class ExecutionSession:
    session_id: str
    task_id: str
    created_at: str
    max_retries: int
    status: SessionStatus = "pending"
    work_order: str = ""
    started_at: str | None = None
    completed_at: str | None = None
    result: ExecutionResult | None = None
    errors: list[ErrorRecord] = field(default_factory=list)
    retry_count: int = 0
    artifacts: list[Artifact] = field(default_factory=list)
    metrics: SessionMetrics = field(default_factory=SessionMetrics)
    attempts: list[AttemptRecord] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "task_id": self.task_id,
            "status": self.status,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "work_order": self.work_order,
            "result": self.result.to_dict() if self.result is not None else None,
            "errors": [error.to_dict() for error in self.errors],
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "artifacts": [artifact.to_dict() for artifact in self.artifacts],
            "metrics": self.metrics.to_dict(),
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ExecutionSession:
        result = payload.get("result")
        return cls(
            session_id=str(payload["session_id"]),
            task_id=str(payload["task_id"]),
            status=_choice(payload, "status", SESSION_STATUSES, "pending"),  # type: ignore[arg-type]
            created_at=str(payload.get("created_at") or _utcnow_iso()),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
            work_order=str(payload.get("work_order", "")),
            result=ExecutionResult.from_dict(result) if isinstance(result, dict) else None,
            errors=[ErrorRecord.from_dict(item) for item in payload.get("errors", [])],
            retry_count=int(payload.get("retry_count", 0)),
            max_retries=int(payload.get("max_retries", 0)),
            artifacts=[Artifact.from_dict(item) for item in payload.get("artifacts", [])],
            metrics=SessionMetrics.from_dict(payload.get("metrics") or {}),
            attempts=[AttemptRecord.from_dict(item) for item in payload.get("attempts", [])],
        )
