from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from taskwarden.clock import to_iso
from taskwarden.graph import DependencyGraph
from taskwarden.models import TASK_CATEGORIES, Task

MILESTONE_NAMES = {
    "frontend": "Frontend complete",
    "backend": "Backend complete",
    "testing": "Testing complete",
    "deployment": "Released",
}


@dataclass(slots=True)
class PlanMilestone:
    name: str
    tasks: list[str]
    status: str = "planned"

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "tasks": list(self.tasks), "status": self.status}


@dataclass(slots=True)
class GanttEntry:
    id: str
    name: str
    start: str
    end: str
    dependencies: list[str] = field(default_factory=list)
    progress: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "start": self.start,
            "end": self.end,
            "progress": self.progress,
            "dependencies": list(self.dependencies),
        }


@dataclass(slots=True)
class ExecutionPlan:
    graph: DependencyGraph
    milestones: list[PlanMilestone]
    estimated_total_hours: float
    gantt: list[GanttEntry]
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "graph": self.graph.to_dict(),
            "milestones": [milestone.to_dict() for milestone in self.milestones],
            "estimated_total_hours": self.estimated_total_hours,
            "gantt": [entry.to_dict() for entry in self.gantt],
            "created_at": self.created_at,
        }


def _milestone_status(tasks: list[Task]) -> str:
    if all(task.status == "done" for task in tasks):
        return "completed"
    if any(task.status in {"in_progress", "done"} for task in tasks):
        return "active"
    return "planned"


def build_milestones(tasks: list[Task]) -> list[PlanMilestone]:
    milestones: list[PlanMilestone] = []
    for category in TASK_CATEGORIES:
        members = [task for task in tasks if task.category == category]
        if not members:
            continue
        milestones.append(
            PlanMilestone(
                name=MILESTONE_NAMES[category],
                tasks=[task.id for task in members],
                status=_milestone_status(members),
            )
        )
    return milestones


def build_gantt(graph: DependencyGraph, start: datetime) -> list[GanttEntry]:
    """Lay tasks out back to back along the topological order."""
    by_id = {task.id: task for task in graph.nodes}
    cursor = start
    entries: list[GanttEntry] = []
    for task_id in graph.order:
        task = by_id[task_id]
        end = cursor + timedelta(hours=task.estimated_hours)
        entries.append(
            GanttEntry(
                id=task.id,
                name=task.name,
                start=to_iso(cursor),
                end=to_iso(end),
                dependencies=list(task.depends_on),
                progress=100 if task.status == "done" else 0,
            )
        )
        cursor = end
    return entries


def build_plan(graph: DependencyGraph, start: datetime) -> ExecutionPlan:
    return ExecutionPlan(
        graph=graph,
        milestones=build_milestones(graph.nodes),
        estimated_total_hours=sum(task.estimated_hours for task in graph.nodes),
        gantt=build_gantt(graph, start),
        created_at=to_iso(start),
    )
