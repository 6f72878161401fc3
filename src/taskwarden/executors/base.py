from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from taskwarden.models import Artifact, ExecutionResult, Task


@dataclass(slots=True)
class WorkOrder:
    session_id: str
    task_id: str
    prompt: str
    attempt: int = 1
    timeout_seconds: float | None = None
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()


@dataclass(slots=True)
class QualityReport:
    score: float
    passed: bool
    coverage: float | None = None


def render_prompt(task: Task) -> str:
    dependencies = ", ".join(task.depends_on) or "none"
    return "\n".join(
        [
            "Complete the following task and produce the corresponding code and files.",
            "",
            f"Task ID: {task.id}",
            f"Name: {task.name}",
            f"Description: {task.description}",
            f"Category: {task.category}",
            f"Priority: {task.priority}",
            f"Estimated hours: {task.estimated_hours:g}",
            f"Depends on: {dependencies}",
            "",
            "When finished, report:",
            "1. An execution summary",
            "2. The list of generated files",
            "3. Test results, if applicable",
            "4. A quality assessment",
        ]
    )


class Executor(ABC):
    @abstractmethod
    async def execute(self, task: Task, work_order: WorkOrder) -> ExecutionResult:
        """Perform one attempt of a task.

        Implementations raise ``ExecutionError`` for typed failures and should
        stop early once ``work_order.cancelled`` is set.
        """


class QualityChecker(ABC):
    @abstractmethod
    async def check(self, artifacts: list[Artifact]) -> QualityReport:
        """Score the artifacts produced by a successful attempt."""
