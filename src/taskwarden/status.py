from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from taskwarden.clock import seconds_between, to_iso
from taskwarden.config import SupervisionConfig
from taskwarden.models import TASK_STATUSES, ExecutionSession, Task

SystemHealth = Literal["healthy", "degraded", "critical"]

CRITICAL_FAILURE_RATIO = 0.3


@dataclass(slots=True)
class SupervisionStatus:
    counts: dict[str, int]
    total_tasks: int
    active_sessions: list[str] = field(default_factory=list)
    estimated_time_remaining: float = 0.0
    average_task_duration: float = 0.0
    average_quality_score: float = 0.0
    total_issues: int = 0
    system_health: SystemHealth = "healthy"
    last_update: str = ""

    @property
    def pending_tasks(self) -> int:
        return self.counts.get("pending", 0)

    @property
    def running_tasks(self) -> int:
        return self.counts.get("in_progress", 0)

    @property
    def completed_tasks(self) -> int:
        return self.counts.get("done", 0)

    @property
    def failed_tasks(self) -> int:
        return self.counts.get("failed", 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "counts": dict(self.counts),
            "total_tasks": self.total_tasks,
            "active_sessions": list(self.active_sessions),
            "estimated_time_remaining": self.estimated_time_remaining,
            "average_task_duration": self.average_task_duration,
            "average_quality_score": self.average_quality_score,
            "total_issues": self.total_issues,
            "system_health": self.system_health,
            "last_update": self.last_update,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SupervisionStatus:
        counts = {status: 0 for status in TASK_STATUSES}
        counts.update({str(key): int(value) for key, value in payload.get("counts", {}).items()})
        return cls(
            counts=counts,
            total_tasks=int(payload.get("total_tasks", sum(counts.values()))),
            active_sessions=[str(item) for item in payload.get("active_sessions", [])],
            estimated_time_remaining=float(payload.get("estimated_time_remaining", 0.0)),
            average_task_duration=float(payload.get("average_task_duration", 0.0)),
            average_quality_score=float(payload.get("average_quality_score", 0.0)),
            total_issues=int(payload.get("total_issues", 0)),
            system_health=payload.get("system_health", "healthy"),
            last_update=str(payload.get("last_update", "")),
        )


def classify_health(
    *,
    failed: int,
    done: int,
    average_quality: float | None,
    min_quality_score: float,
) -> SystemHealth:
    if failed > done * CRITICAL_FAILURE_RATIO:
        return "critical"
    if average_quality is not None and average_quality < min_quality_score:
        return "degraded"
    return "healthy"


def compute_status(
    tasks: Iterable[Task],
    sessions: Iterable[ExecutionSession],
    config: SupervisionConfig,
    now: datetime,
) -> SupervisionStatus:
    task_list = list(tasks)
    session_list = list(sessions)

    counts = {status: 0 for status in TASK_STATUSES}
    for task in task_list:
        counts[task.status] = counts.get(task.status, 0) + 1

    completed = [session for session in session_list if session.status == "completed"]
    durations = [
        seconds_between(session.started_at, session.completed_at) for session in completed
    ]
    average_duration = sum(durations) / len(durations) if durations else 0.0

    scores = [
        float(session.result.quality_score)
        for session in session_list
        if session.result is not None and session.result.quality_score is not None
    ]
    average_quality = sum(scores) / len(scores) if scores else None

    return SupervisionStatus(
        counts=counts,
        total_tasks=len(task_list),
        active_sessions=[
            session.session_id for session in session_list if session.status == "running"
        ],
        estimated_time_remaining=counts["pending"] * average_duration,
        average_task_duration=average_duration,
        average_quality_score=average_quality if average_quality is not None else 0.0,
        total_issues=sum(len(session.errors) for session in session_list),
        system_health=classify_health(
            failed=counts["failed"],
            done=counts["done"],
            average_quality=average_quality,
            min_quality_score=config.min_quality_score,
        ),
        last_update=to_iso(now),
    )
