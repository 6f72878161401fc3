from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from taskwarden.anomaly import AnomalyDetector, AnomalyRule, default_rules
from taskwarden.clock import Clock, to_iso
from taskwarden.config import SupervisionConfig
from taskwarden.errors import (
    InvalidStateError,
    StateConflictError,
    StateStoreError,
    TaskNotFoundError,
)
from taskwarden.events import Event, EventBroadcaster, NotificationPolicy, Subscriber
from taskwarden.executors.base import Executor, QualityChecker
from taskwarden.graph import DependencyGraph, build_graph, merge_tasks
from taskwarden.models import ExecutionSession, Task
from taskwarden.plan import ExecutionPlan, build_plan
from taskwarden.sessions import SessionManager, new_session_id
from taskwarden.status import SupervisionStatus, compute_status
from taskwarden.store import StateStore

logger = logging.getLogger(__name__)

SAVE_ATTEMPTS = 4


@dataclass(slots=True)
class RunSummary:
    started_at: str
    ended_at: str
    total_tasks: int
    completed_tasks: list[str] = field(default_factory=list)
    failed_tasks: list[str] = field(default_factory=list)
    blocked_tasks: list[str] = field(default_factory=list)
    session_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "total_tasks": self.total_tasks,
            "completed_tasks": list(self.completed_tasks),
            "failed_tasks": list(self.failed_tasks),
            "blocked_tasks": list(self.blocked_tasks),
            "session_ids": list(self.session_ids),
        }


@dataclass(slots=True)
class StateSnapshot:
    tasks: list[Task]
    sessions: list[ExecutionSession]
    status: SupervisionStatus
    config: dict[str, Any]
    rules: list[AnomalyRule]


def policy_from_config(config: SupervisionConfig) -> NotificationPolicy:
    return NotificationPolicy(
        enabled=config.enable_notifications,
        on_progress=config.notify_on_progress,
        on_completion=config.notify_on_completion,
        on_error=config.notify_on_error,
    )


class Supervisor:
    def __init__(
        self,
        executor: Executor,
        *,
        config: SupervisionConfig | None = None,
        quality_checker: QualityChecker | None = None,
        store: StateStore | None = None,
        clock: Clock | None = None,
        broadcaster: EventBroadcaster | None = None,
        rules: list[AnomalyRule] | None = None,
        id_factory: Callable[[str], str] = new_session_id,
    ) -> None:
        self.config = config or SupervisionConfig()
        self.config.validate()
        self.clock = clock or Clock()
        self.store = store
        self.broadcaster = broadcaster or EventBroadcaster(policy=policy_from_config(self.config))
        self.detector = AnomalyDetector(
            rules if rules is not None else default_rules(self.config),
            self.broadcaster,
        )
        self.tasks: dict[str, Task] = {}
        self.graph: DependencyGraph | None = None
        self.sessions = SessionManager(
            tasks=self.tasks,
            executor=executor,
            config=self.config,
            broadcaster=self.broadcaster,
            detector=self.detector,
            clock=self.clock,
            quality_checker=quality_checker,
            on_change=self._on_session_change,
            refresh=self.sync_external,
            id_factory=id_factory,
        )
        self._writer: asyncio.Task[None] | None = None
        self._dirty = False
        self._lock: asyncio.Lock | None = None
        self._lock_loop: asyncio.AbstractEventLoop | None = None

    @property
    def rules(self) -> list[AnomalyRule]:
        return self.detector.rules

    def load(self) -> None:
        """Restore tasks, sessions and rules from the state store."""
        if self.store is None:
            return
        tasks = self.store.load_tasks()
        self._replace_tasks(tasks)
        self.graph = build_graph(tasks) if tasks else None
        self.sessions.load(self.store.load_sessions())
        stored_rules = self.store.load_rules()
        if stored_rules is not None:
            self.detector.rules = stored_rules

    def save(self) -> None:
        """Persist state, first folding in cancellations recorded by other processes."""
        if self.store is None:
            return
        for _ in range(SAVE_ATTEMPTS):
            revision, stored = self._read_stored()
            self._absorb_external(stored)
            try:
                self._write_snapshot(revision, self._snapshot())
                return
            except StateConflictError:
                logger.debug("State changed while saving; retrying")
        raise StateStoreError("Could not save state after repeated concurrent updates.")

    async def persist(self) -> None:
        """Same as ``save`` but keeps file I/O off the event loop."""
        if self.store is None:
            return
        async with self._persist_lock():
            for _ in range(SAVE_ATTEMPTS):
                revision, stored = await asyncio.to_thread(self._read_stored)
                self._absorb_external(stored)
                try:
                    await asyncio.to_thread(self._write_snapshot, revision, self._snapshot())
                    return
                except StateConflictError:
                    logger.debug("State changed while saving; retrying")
        raise StateStoreError("Could not save state after repeated concurrent updates.")

    async def sync_external(self) -> None:
        """Apply cancellations that another process wrote to the state store."""
        if self.store is None:
            return
        stored = await asyncio.to_thread(self.store.load_sessions)
        if self._absorb_external(stored):
            self._schedule_persist()

    async def flush(self) -> None:
        writer = self._writer
        if writer is not None and not writer.done():
            await writer
        await self.persist()

    def import_tasks(self, incoming: Iterable[Task]) -> DependencyGraph:
        batch = list(incoming)
        for task in batch:
            current = self.tasks.get(task.id)
            if current is not None and current.status == "in_progress":
                raise InvalidStateError(f"Task {task.id} is running and cannot be replaced.")
        tasks, graph = merge_tasks(list(self.tasks.values()), batch)
        self._replace_tasks(tasks)
        self.graph = graph
        logger.info("Imported %d task(s); %d in graph", len(batch), len(tasks))
        self.save()
        return graph

    def build_graph(self) -> DependencyGraph:
        self.graph = build_graph(list(self.tasks.values()))
        return self.graph

    def plan(self, start: datetime | None = None) -> ExecutionPlan:
        return build_plan(self.build_graph(), start or self.clock.now())

    def get_task(self, task_id: str) -> Task:
        task = self.tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def start(self, task_id: str) -> ExecutionSession:
        """Create a session for a ready task and schedule its attempt loop."""
        return self.sessions.start(task_id)

    def cancel(self, session_id: str) -> ExecutionSession:
        return self.sessions.cancel(session_id)

    async def wait(self, session_id: str) -> ExecutionSession:
        return await self.sessions.wait(session_id)

    def get_session(self, session_id: str) -> ExecutionSession:
        return self.sessions.get(session_id)

    def task_sessions(self, task_id: str) -> list[ExecutionSession]:
        self.get_task(task_id)
        return self.sessions.sessions_for(task_id)

    def list_sessions(self) -> list[ExecutionSession]:
        return list(self.sessions.sessions.values())

    def detect_anomalies(self, session_id: str) -> list[AnomalyRule]:
        session = self.sessions.get(session_id)
        outcome = self.detector.evaluate(session, self.clock.now())
        if outcome.abort:
            self.sessions.abort(session_id, reason=f"aborted by {', '.join(outcome.rule_ids)}")
        return outcome.triggered

    def status(self) -> SupervisionStatus:
        return compute_status(
            self.tasks.values(),
            self.sessions.sessions.values(),
            self.config,
            self.clock.now(),
        )

    def subscribe(self, subscriber: Subscriber) -> None:
        self.broadcaster.subscribe(subscriber)
        snapshot = self._status_event()
        try:
            subscriber(snapshot)
        except Exception:
            logger.exception("Subscriber failed while handling the initial status snapshot")

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self.broadcaster.unsubscribe(subscriber)

    async def run(self, task_ids: Iterable[str] | None = None) -> RunSummary:
        """Execute ready tasks in topological order until nothing more can start."""
        graph = self.build_graph()
        if task_ids is None:
            selected = set(graph.order)
        else:
            selected = set(task_ids)
            for task_id in selected:
                self.get_task(task_id)

        started_at = to_iso(self.clock.now())
        await self.sync_external()
        self.recover_stale_sessions()
        self.sessions.reset_deadline()
        admitted: set[str] = set()
        session_ids: list[str] = []
        in_flight: dict[asyncio.Task[None], str] = {}

        while True:
            if in_flight:
                await self.sync_external()
            free_slots = self.config.max_concurrent_tasks - len(in_flight)
            for task_id in graph.order:
                if free_slots <= 0:
                    break
                if task_id not in selected or task_id in admitted:
                    continue
                if not self._is_ready(self.tasks[task_id]):
                    continue
                session = self.sessions.start(task_id)
                admitted.add(task_id)
                session_ids.append(session.session_id)
                runner = self.sessions.runner(session.session_id)
                if runner is not None:
                    in_flight[runner] = session.session_id
                free_slots -= 1

            if not in_flight:
                break
            done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            for runner in done:
                session_id = in_flight.pop(runner)
                if runner.cancelled():
                    continue
                error = runner.exception()
                if error is not None:
                    logger.error("Attempt loop for %s crashed: %s", session_id, error)
                    self.sessions.abort(session_id, reason=f"internal error: {error}")

        blocked = self._blocked_tasks(graph, selected)
        summary = RunSummary(
            started_at=started_at,
            ended_at=to_iso(self.clock.now()),
            total_tasks=len(selected),
            completed_tasks=[
                task_id for task_id in graph.order
                if task_id in selected and self.tasks[task_id].status == "done"
            ],
            failed_tasks=[
                task_id for task_id in graph.order
                if task_id in selected and self.tasks[task_id].status == "failed"
            ],
            blocked_tasks=blocked,
            session_ids=session_ids,
        )
        logger.info(
            "Run finished: %d done, %d failed, %d blocked",
            len(summary.completed_tasks),
            len(summary.failed_tasks),
            len(summary.blocked_tasks),
        )
        await self.flush()
        self._publish_status()
        return summary

    def recover_stale_sessions(self) -> list[str]:
        """Cancel persisted sessions that no attempt loop in this process owns."""
        recovered: list[str] = []
        for session in self.sessions.active():
            if self.sessions.runner(session.session_id) is not None:
                continue
            logger.warning("Recovering stale session %s", session.session_id)
            self.sessions.cancel(session.session_id)
            recovered.append(session.session_id)
        return recovered

    def _is_ready(self, task: Task) -> bool:
        if task.status != "pending":
            return False
        return all(
            dependency in self.tasks and self.tasks[dependency].status == "done"
            for dependency in task.depends_on
        )

    def _blocked_tasks(self, graph: DependencyGraph, selected: set[str]) -> list[str]:
        """Pending tasks that can never start because a dependency chain ends in failure.

        Their status stays ``pending``; they are only reported.
        """
        stuck: set[str] = set()
        blocked: list[str] = []
        for task_id in graph.order:
            task = self.tasks[task_id]
            if task.status == "failed":
                stuck.add(task_id)
                continue
            if task.status != "pending":
                continue
            if any(dependency in stuck for dependency in task.depends_on):
                stuck.add(task_id)
                if task_id in selected:
                    blocked.append(task_id)
        if blocked:
            logger.warning("Blocked by failed dependencies: %s", ", ".join(blocked))
        return blocked

    def _replace_tasks(self, tasks: list[Task]) -> None:
        # SessionManager holds a reference to this dict.
        self.tasks.clear()
        self.tasks.update({task.id: task for task in tasks})

    def ordered_tasks(self) -> list[Task]:
        if self.graph is not None and len(self.graph.order) == len(self.tasks):
            return [self.tasks[task_id] for task_id in self.graph.order if task_id in self.tasks]
        return list(self.tasks.values())

    def _status_event(self) -> Event:
        status = self.status()
        return Event(kind="system_status", timestamp=status.last_update, payload=status.to_dict())

    def _publish_status(self) -> None:
        self.broadcaster.publish(self._status_event())

    def _read_stored(self) -> tuple[int, list[ExecutionSession]]:
        assert self.store is not None
        return self.store.revision("tasks"), self.store.load_sessions()

    def _absorb_external(self, stored: list[ExecutionSession]) -> bool:
        absorbed = False
        for session in stored:
            if session.status != "cancelled":
                continue
            if self.sessions.absorb_cancel(session.session_id, session.completed_at):
                absorbed = True
        if absorbed:
            self._publish_status()
        return absorbed

    def _snapshot(self) -> StateSnapshot:
        return StateSnapshot(
            tasks=copy.deepcopy(self.ordered_tasks()),
            sessions=copy.deepcopy(list(self.sessions.sessions.values())),
            status=self.status(),
            config=self.config.to_dict(),
            rules=copy.deepcopy(self.rules),
        )

    def _write_snapshot(self, revision: int, snapshot: StateSnapshot) -> None:
        assert self.store is not None
        self.store.save_tasks(snapshot.tasks, expected_revision=revision)
        self.store.save_supervision(
            sessions=snapshot.sessions,
            status=snapshot.status,
            config=snapshot.config,
            rules=snapshot.rules,
        )

    def _persist_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    def _schedule_persist(self) -> None:
        if self.store is None:
            return
        self._dirty = True
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(self._write_pending())

    async def _write_pending(self) -> None:
        while self._dirty:
            self._dirty = False
            try:
                await self.persist()
            except StateStoreError:
                logger.exception("Could not persist supervision state")
                raise

    def _on_session_change(self, session: ExecutionSession) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self.save()
        else:
            self._schedule_persist()
        if session.is_terminal:
            self._publish_status()
