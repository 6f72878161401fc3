from __future__ import annotations

from typing import Literal

ErrorKind = Literal["syntax", "runtime", "timeout", "api", "unknown"]
ERROR_KINDS: tuple[str, ...] = ("syntax", "runtime", "timeout", "api", "unknown")


class WardenError(RuntimeError):
    """Base class for every error raised by the supervision engine."""


class ConfigError(WardenError):
    """Raised when supervision configuration is invalid."""


class StateStoreError(WardenError):
    """Raised when persisted state cannot be read or written."""


class StateConflictError(StateStoreError):
    """Raised when a revision check fails because another writer got there first."""


class GraphError(WardenError):
    """Raised when a task collection cannot form a dependency graph."""


class CycleError(GraphError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, message: str, *, task_ids: list[str] | None = None) -> None:
        super().__init__(message)
        self.task_ids = list(task_ids or [])


class UnknownDependencyError(GraphError):
    """Raised when a task depends on an identifier that does not exist."""

    def __init__(self, task_id: str, dependency_id: str) -> None:
        super().__init__(f"Task {task_id} depends on unknown task {dependency_id}")
        self.task_id = task_id
        self.dependency_id = dependency_id


class TaskNotFoundError(WardenError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class SessionNotFoundError(WardenError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class DependencyNotSatisfiedError(WardenError):
    """Raised when a task is started before all of its dependencies are done."""

    def __init__(self, task_id: str, pending: list[str]) -> None:
        super().__init__(
            f"Task {task_id} has incomplete dependencies: {', '.join(pending)}"
        )
        self.task_id = task_id
        self.pending = list(pending)


class InvalidStateError(WardenError):
    """Raised when a transition is not legal from the current status."""


class ExecutionError(WardenError):
    """Raised by executors when a task attempt fails."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = "runtime",
        recoverable: bool = True,
    ) -> None:
        super().__init__(message)
        if kind not in ERROR_KINDS:
            kind = "unknown"
        self.kind: ErrorKind = kind
        self.recoverable = recoverable
