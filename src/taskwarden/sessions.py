from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from taskwarden.anomaly import AnomalyDetector
from taskwarden.clock import Clock, seconds_between, to_iso
from taskwarden.config import SupervisionConfig
from taskwarden.errors import (
    DependencyNotSatisfiedError,
    ExecutionError,
    InvalidStateError,
    SessionNotFoundError,
    TaskNotFoundError,
)
from taskwarden.events import Event, EventBroadcaster
from taskwarden.executors.base import (
    Executor,
    QualityChecker,
    QualityReport,
    WorkOrder,
    render_prompt,
)
from taskwarden.models import (
    AttemptRecord,
    ErrorRecord,
    ExecutionResult,
    ExecutionSession,
    QualityMetrics,
    SessionStatus,
    Task,
)
from taskwarden.retry import RetryController, RetryPolicy

logger = logging.getLogger(__name__)

SessionListener = Callable[[ExecutionSession], None]
Refresh = Callable[[], Awaitable[None]]


def new_session_id(task_id: str) -> str:
    return f"session_{task_id}_{uuid.uuid4().hex[:12]}"


class SessionManager:
    """Owns execution sessions and drives each one through its attempts.

    Every state transition happens synchronously between awaits on the event
    loop, so a session is never mutated by two coroutines at once.
    """

    def __init__(
        self,
        *,
        tasks: dict[str, Task],
        executor: Executor,
        config: SupervisionConfig,
        broadcaster: EventBroadcaster,
        detector: AnomalyDetector,
        clock: Clock | None = None,
        quality_checker: QualityChecker | None = None,
        retry: RetryController | None = None,
        on_change: SessionListener | None = None,
        refresh: Refresh | None = None,
        id_factory: Callable[[str], str] = new_session_id,
    ) -> None:
        self.tasks = tasks
        self.executor = executor
        self.config = config
        self.broadcaster = broadcaster
        self.detector = detector
        self.clock = clock or Clock()
        self.quality_checker = quality_checker
        self.retry = retry or RetryController(RetryPolicy.from_config(config))
        self.on_change = on_change
        self.refresh = refresh
        self.id_factory = id_factory
        self.sessions: dict[str, ExecutionSession] = {}
        self._work_orders: dict[str, WorkOrder] = {}
        self._runners: dict[str, asyncio.Task[None]] = {}
        self._semaphore: asyncio.Semaphore | None = None
        self._semaphore_loop: asyncio.AbstractEventLoop | None = None
        self._deadline: float | None = None

    def get(self, session_id: str) -> ExecutionSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def sessions_for(self, task_id: str) -> list[ExecutionSession]:
        return [session for session in self.sessions.values() if session.task_id == task_id]

    def active(self) -> list[ExecutionSession]:
        return [session for session in self.sessions.values() if not session.is_terminal]

    def load(self, sessions: list[ExecutionSession]) -> None:
        for session in sessions:
            self.sessions[session.session_id] = session

    def reset_deadline(self) -> None:
        self._deadline = self.clock.monotonic() + self.config.total_timeout_seconds

    def remaining_total(self) -> float:
        if self._deadline is None:
            self.reset_deadline()
        assert self._deadline is not None
        return self._deadline - self.clock.monotonic()

    def start(self, task_id: str) -> ExecutionSession:
        task = self.tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        pending = [
            dependency
            for dependency in task.depends_on
            if dependency not in self.tasks or self.tasks[dependency].status != "done"
        ]
        if pending:
            raise DependencyNotSatisfiedError(task_id, pending)
        if task.status != "pending":
            raise InvalidStateError(
                f"Task {task_id} is {task.status}; only pending tasks can start."
            )

        loop = asyncio.get_running_loop()
        now = self._now()
        session = ExecutionSession(
            session_id=self.id_factory(task_id),
            task_id=task_id,
            created_at=now,
            max_retries=self.config.max_retries,
            work_order=render_prompt(task),
        )
        order = WorkOrder(
            session_id=session.session_id,
            task_id=task_id,
            prompt=session.work_order,
            timeout_seconds=self.config.timeout_seconds,
        )
        self.sessions[session.session_id] = session
        self._work_orders[session.session_id] = order

        task.status = "in_progress"
        task.assigned_to = "automated"
        task.updated_at = now
        logger.info("Starting %s in %s", task_id, session.session_id)
        self._publish("task_started", task_id=task_id, session_id=session.session_id)
        self._publish("session_created", session=session.to_dict())
        self._changed(session)

        runner = loop.create_task(self._drive(session, task, order))
        self._runners[session.session_id] = runner
        runner.add_done_callback(lambda _: self._runners.pop(session.session_id, None))
        return session

    def cancel(self, session_id: str) -> ExecutionSession:
        session = self.get(session_id)
        if session.status not in {"pending", "running"}:
            raise InvalidStateError(
                f"Session {session_id} is {session.status}; "
                "only pending or running sessions can be cancelled."
            )
        self._mark_cancelled(session, self._now())
        logger.info("Cancelled %s", session_id)
        self._publish_cancelled(session)
        self._changed(session)
        return session

    def absorb_cancel(self, session_id: str, cancelled_at: str | None = None) -> bool:
        """Apply a cancellation that was recorded outside this manager."""
        session = self.sessions.get(session_id)
        if session is None or session.is_terminal:
            return False
        self._mark_cancelled(session, cancelled_at or self._now())
        logger.warning("Session %s was cancelled by another process", session_id)
        self._publish_cancelled(session)
        return True

    def _mark_cancelled(self, session: ExecutionSession, now: str) -> None:
        session.status = "cancelled"
        session.completed_at = now
        session.metrics.duration = seconds_between(session.started_at or session.created_at, now)
        order = self._work_orders.get(session.session_id)
        if order is not None:
            order.cancelled.set()

        task = self.tasks.get(session.task_id)
        if task is not None:
            task.status = "pending"
            task.assigned_to = "unassigned"
            task.started_at = None
            task.updated_at = now

    def _publish_cancelled(self, session: ExecutionSession) -> None:
        self._publish(
            "task_failed",
            task_id=session.task_id,
            session_id=session.session_id,
            reason="cancelled",
        )
        self._publish("session_update", session=session.to_dict())

    def abort(self, session_id: str, reason: str = "aborted") -> bool:
        session = self.get(session_id)
        if session.is_terminal:
            return False
        order = self._work_orders.get(session_id)
        if order is not None:
            order.cancelled.set()
        return self._finish(session, "failed", reason=reason)

    async def wait(self, session_id: str) -> ExecutionSession:
        runner = self._runners.get(session_id)
        if runner is not None:
            await asyncio.shield(runner)
        return self.get(session_id)

    def runner(self, session_id: str) -> asyncio.Task[None] | None:
        return self._runners.get(session_id)

    def _slots(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.config.max_concurrent_tasks)
            self._semaphore_loop = loop
        return self._semaphore

    async def _drive(self, session: ExecutionSession, task: Task, order: WorkOrder) -> None:
        async with self._slots():
            if session.is_terminal:
                return
            now = self._now()
            session.status = "running"
            session.started_at = now
            task.started_at = now
            task.updated_at = now
            self._publish("session_update", session=session.to_dict())
            self._changed(session)

            while True:
                order.attempt = session.retry_count + 1
                attempt = AttemptRecord(number=order.attempt, started_at=self._now())
                session.attempts.append(attempt)
                self._publish(
                    "task_progress",
                    task_id=task.id,
                    session_id=session.session_id,
                    attempt=order.attempt,
                )
                budget = min(self.config.timeout_seconds, self.remaining_total())
                if budget <= 0:
                    self._close_attempt(attempt, "timeout")
                    self._time_out(session, order, budget)
                    return

                error: ExecutionError
                try:
                    result = await asyncio.wait_for(self.executor.execute(task, order), budget)
                    if not result.success:
                        raise ExecutionError(
                            result.summary or f"Execution of {task.id} reported failure",
                            kind=result.error_kind or "runtime",
                            recoverable=result.recoverable,
                        )
                except TimeoutError:
                    self._close_attempt(attempt, "timeout")
                    if not session.is_terminal:
                        self._time_out(session, order, budget)
                    return
                except ExecutionError as exc:
                    error = exc
                except Exception as exc:
                    logger.exception("Executor raised while running %s", task.id)
                    error = ExecutionError(str(exc) or type(exc).__name__, kind="runtime")
                else:
                    if session.is_terminal:
                        self._close_attempt(attempt, "discarded")
                        return
                    report = await self._check_quality(result)
                    await self._refresh()
                    if session.is_terminal:
                        self._close_attempt(attempt, "discarded")
                        return
                    self._close_attempt(attempt, "succeeded")
                    self._complete(session, task, result, report)
                    return

                await self._refresh()
                self._close_attempt(attempt, "failed")
                if session.is_terminal:
                    logger.debug("Discarding failure for terminal session %s", session.session_id)
                    return
                if not await self._handle_failure(session, error, order.attempt):
                    return

    async def _handle_failure(
        self,
        session: ExecutionSession,
        error: ExecutionError,
        attempt: int,
    ) -> bool:
        record = ErrorRecord(
            timestamp=self._now(),
            kind=error.kind,
            message=str(error),
            recoverable=error.recoverable,
            attempt=attempt,
        )
        session.errors.append(record)
        session.metrics.api_calls += 1
        logger.warning(
            "Attempt %d of %s failed (%s): %s",
            attempt,
            session.session_id,
            record.kind,
            record.message,
        )

        decision = self.retry.decide(session, record)
        self._publish(
            "error_detected",
            session_id=session.session_id,
            task_id=session.task_id,
            error=record.to_dict(),
            will_retry=decision.retry,
            retry_count=session.retry_count,
        )
        if not decision.retry:
            self._finish(session, "failed", reason=decision.reason)
            return False

        outcome = self.detector.evaluate(session, self.clock.now())
        if outcome.abort:
            self._finish(session, "failed", reason=f"aborted by {', '.join(outcome.rule_ids)}")
            return False

        session.retry_count += 1
        self._publish("session_update", session=session.to_dict())
        self._changed(session)
        await self.clock.sleep(decision.delay_seconds)
        return not session.is_terminal

    async def _refresh(self) -> None:
        if self.refresh is not None:
            await self.refresh()

    async def _check_quality(self, result: ExecutionResult) -> QualityReport | None:
        if self.quality_checker is None:
            return None
        try:
            return await self.quality_checker.check(result.artifacts)
        except Exception:
            logger.exception("Quality check failed; completing without a quality report")
            return None

    def _complete(
        self,
        session: ExecutionSession,
        task: Task,
        result: ExecutionResult,
        report: QualityReport | None,
    ) -> None:
        if report is not None:
            result.quality_score = report.score
            result.test_coverage = report.coverage
            result.quality_passed = report.passed
        elif result.quality_score is not None and result.quality_passed is None:
            result.quality_passed = self._passes_gate(result.quality_score, result.test_coverage)

        session.result = result
        session.artifacts = list(result.artifacts)
        session.metrics.tokens_used += result.tokens_used
        session.metrics.api_calls += max(result.api_calls, 1)
        session.metrics.files_generated = len(result.artifacts)
        session.metrics.lines_of_code = sum(change.lines_added for change in result.changes)

        if result.quality_score is not None or result.test_coverage is not None:
            issues = [] if result.quality_passed is not False else ["quality gate not met"]
            task.quality_metrics = QualityMetrics(
                code_quality_score=result.quality_score,
                test_coverage=result.test_coverage,
                issues=issues,
            )
        self._finish(session, "completed")

    def _passes_gate(self, score: float, coverage: float | None) -> bool:
        if score < self.config.min_quality_score:
            return False
        return coverage is None or coverage >= self.config.min_test_coverage

    def _time_out(self, session: ExecutionSession, order: WorkOrder, budget: float) -> None:
        order.cancelled.set()
        session.errors.append(
            ErrorRecord(
                timestamp=self._now(),
                kind="timeout",
                message=f"Attempt exceeded {max(budget, 0.0):g}s",
                recoverable=False,
                attempt=order.attempt,
            )
        )
        self._finish(session, "timeout", reason="timeout")

    def _finish(
        self,
        session: ExecutionSession,
        status: SessionStatus,
        *,
        reason: str = "",
    ) -> bool:
        if session.is_terminal:
            return False
        now = self._now()
        session.status = status
        session.completed_at = now
        session.metrics.duration = seconds_between(session.started_at or session.created_at, now)

        task = self.tasks.get(session.task_id)
        if task is not None:
            task.updated_at = now
            if status == "completed":
                task.status = "done"
                task.completed_at = now
                task.actual_hours = round(session.metrics.duration / 3600.0, 4)
            else:
                task.status = "failed"

        if status == "completed":
            logger.info("Completed %s in %.2fs", session.task_id, session.metrics.duration)
            self._publish(
                "task_completed",
                task_id=session.task_id,
                session_id=session.session_id,
                result=session.result.to_dict() if session.result is not None else None,
            )
        else:
            last_error = session.errors[-1].message if session.errors else ""
            logger.error(
                "Session %s ended %s: %s",
                session.session_id,
                status,
                reason or last_error,
            )
            self._publish(
                "task_failed",
                task_id=session.task_id,
                session_id=session.session_id,
                reason=reason or status,
                error=last_error,
            )
        self._publish("session_update", session=session.to_dict())
        self.detector.evaluate(session, self.clock.now())
        self._changed(session)
        return True

    def _close_attempt(self, attempt: AttemptRecord, outcome: str) -> None:
        attempt.ended_at = self._now()
        attempt.outcome = outcome

    def _now(self) -> str:
        return to_iso(self.clock.now())

    def _publish(self, kind: str, **payload: Any) -> None:
        event = Event(kind=kind, timestamp=self._now(), payload=payload)  # type: ignore[arg-type]
        self.broadcaster.publish(event)

    def _changed(self, session: ExecutionSession) -> None:
        if self.on_change is not None:
            self.on_change(session)
