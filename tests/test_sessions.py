import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from taskwarden.anomaly import (
    AbortAction,
    AnomalyDetector,
    AnomalyRule,
    RuleCondition,
    default_rules,
)
from taskwarden.clock import Clock
from taskwarden.config import SupervisionConfig
from taskwarden.errors import (
    DependencyNotSatisfiedError,
    ExecutionError,
    InvalidStateError,
    SessionNotFoundError,
)
from taskwarden.events import EventBroadcaster, LocalSink
from taskwarden.executors.base import Executor, QualityChecker, QualityReport, WorkOrder
from taskwarden.models import Artifact, ExecutionResult, Task
from taskwarden.sessions import SessionManager


class FakeClock(Clock):
    def __init__(self) -> None:
        self.current = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
        self.ticks = 0.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.ticks

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        self.ticks += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


class ScriptedExecutor(Executor):
    def __init__(self, outcomes: list[ExecutionResult | Exception]) -> None:
        self.outcomes = list(outcomes)
        self.attempts: list[int] = []

    async def execute(self, task: Task, work_order: WorkOrder) -> ExecutionResult:
        self.attempts.append(work_order.attempt)
        await asyncio.sleep(0)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class CooperativeExecutor(Executor):
    def __init__(self) -> None:
        self.running = asyncio.Event()
        self.saw_cancel = False

    async def execute(self, task: Task, work_order: WorkOrder) -> ExecutionResult:
        self.running.set()
        await work_order.cancelled.wait()
        self.saw_cancel = True
        raise ExecutionError("stopped", kind="unknown", recoverable=False)


class StubbornExecutor(Executor):
    def __init__(self) -> None:
        self.running = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, task: Task, work_order: WorkOrder) -> ExecutionResult:
        self.running.set()
        await self.release.wait()
        return ExecutionResult(success=True, summary="late result")


class SlowExecutor(Executor):
    def __init__(self) -> None:
        self.calls = 0

    async def execute(self, task: Task, work_order: WorkOrder) -> ExecutionResult:
        self.calls += 1
        await asyncio.sleep(5)
        return ExecutionResult(success=True)


class FixedQualityChecker(QualityChecker):
    def __init__(self, report: QualityReport) -> None:
        self.report = report
        self.checked: list[list[Artifact]] = []

    async def check(self, artifacts: list[Artifact]) -> QualityReport:
        self.checked.append(list(artifacts))
        return self.report


def _task(task_id: str, *, depends_on: list[str] | None = None) -> Task:
    return Task(
        id=task_id,
        requirement_id="REQ-1",
        name=f"Build {task_id}",
        category="backend",
        depends_on=list(depends_on or []),
    )


def _manager(
    executor: Executor,
    tasks: dict[str, Task],
    *,
    config: SupervisionConfig | None = None,
    rules: list[AnomalyRule] | None = None,
    quality_checker: QualityChecker | None = None,
) -> tuple[SessionManager, LocalSink, FakeClock]:
    sink = LocalSink(echo=False)
    broadcaster = EventBroadcaster(sink=sink)
    clock = FakeClock()
    runtime_config = config or SupervisionConfig(retry_delay_seconds=5.0)
    manager = SessionManager(
        tasks=tasks,
        executor=executor,
        config=runtime_config,
        broadcaster=broadcaster,
        detector=AnomalyDetector(list(rules or []), broadcaster),
        clock=clock,
        quality_checker=quality_checker,
    )
    return manager, sink, clock


def _run_to_end(manager: SessionManager, task_id: str):
    async def _run():
        session = manager.start(task_id)
        return await manager.wait(session.session_id)

    return asyncio.run(_run())


def test_two_recoverable_failures_then_success_takes_three_attempts() -> None:
    executor = ScriptedExecutor(
        [
            ExecutionError("rate limited", kind="api"),
            ExecutionError("rate limited", kind="api"),
            ExecutionResult(success=True, summary="done", tokens_used=120, api_calls=2),
        ]
    )
    tasks = {"T1": _task("T1")}
    manager, sink, clock = _manager(
        executor,
        tasks,
        config=SupervisionConfig(max_retries=2, retry_delay_seconds=5.0),
    )

    session = _run_to_end(manager, "T1")

    assert executor.attempts == [1, 2, 3]
    assert session.status == "completed"
    assert session.retry_count == 2
    assert [error.kind for error in session.errors] == ["api", "api"]
    assert [attempt.outcome for attempt in session.attempts] == ["failed", "failed", "succeeded"]
    assert clock.sleeps == [5.0, 5.0]
    assert tasks["T1"].status == "done"
    assert tasks["T1"].actual_hours is not None
    assert sink.kinds().count("error_detected") == 2
    assert sink.kinds().count("task_completed") == 1


def test_three_recoverable_failures_exhaust_retries() -> None:
    executor = ScriptedExecutor([ExecutionError("flaky") for _ in range(3)])
    tasks = {"T1": _task("T1")}
    manager, sink, _ = _manager(
        executor,
        tasks,
        config=SupervisionConfig(max_retries=2, retry_delay_seconds=0.0),
    )

    session = _run_to_end(manager, "T1")

    assert executor.attempts == [1, 2, 3]
    assert session.status == "failed"
    assert tasks["T1"].status == "failed"
    assert sink.kinds().count("task_failed") == 1
    assert sink.kinds().count("task_completed") == 0


def test_non_recoverable_error_is_not_retried() -> None:
    executor = ScriptedExecutor([ExecutionError("bad syntax", kind="syntax", recoverable=False)])
    tasks = {"T1": _task("T1")}
    manager, _, clock = _manager(executor, tasks)

    session = _run_to_end(manager, "T1")

    assert executor.attempts == [1]
    assert session.status == "failed"
    assert session.retry_count == 0
    assert clock.sleeps == []


def test_unsuccessful_result_becomes_typed_error() -> None:
    executor = ScriptedExecutor(
        [
            ExecutionResult(
                success=False,
                summary="tests do not compile",
                error_kind="syntax",
                recoverable=False,
            )
        ]
    )
    tasks = {"T1": _task("T1")}
    manager, _, _ = _manager(executor, tasks)

    session = _run_to_end(manager, "T1")

    assert session.status == "failed"
    assert session.errors[0].kind == "syntax"
    assert session.errors[0].message == "tests do not compile"


def test_unexpected_exception_is_treated_as_recoverable_runtime_error() -> None:
    executor = ScriptedExecutor([ValueError("boom"), ExecutionResult(success=True)])
    tasks = {"T1": _task("T1")}
    manager, _, _ = _manager(
        executor,
        tasks,
        config=SupervisionConfig(max_retries=1, retry_delay_seconds=0.0),
    )

    session = _run_to_end(manager, "T1")

    assert session.status == "completed"
    assert session.errors[0].kind == "runtime"
    assert "boom" in session.errors[0].message


def test_start_requires_completed_dependencies() -> None:
    tasks = {"T1": _task("T1"), "T2": _task("T2", depends_on=["T1"])}
    manager, sink, _ = _manager(ScriptedExecutor([]), tasks)

    with pytest.raises(DependencyNotSatisfiedError) as excinfo:
        manager.start("T2")

    assert excinfo.value.pending == ["T1"]
    assert manager.sessions == {}
    assert tasks["T2"].status == "pending"
    assert sink.kinds() == []


def test_start_rejects_tasks_that_are_not_pending() -> None:
    tasks = {"T1": _task("T1")}
    tasks["T1"].status = "done"
    manager, _, _ = _manager(ScriptedExecutor([]), tasks)

    with pytest.raises(InvalidStateError):
        manager.start("T1")


def test_cancel_running_session_signals_executor_and_resets_task() -> None:
    executor = CooperativeExecutor()
    tasks = {"T1": _task("T1")}
    manager, sink, _ = _manager(executor, tasks)

    async def _run():
        session = manager.start("T1")
        await executor.running.wait()
        assert session.status == "running"
        manager.cancel(session.session_id)
        return await manager.wait(session.session_id)

    session = asyncio.run(_run())

    assert executor.saw_cancel is True
    assert session.status == "cancelled"
    assert session.errors == []
    assert tasks["T1"].status == "pending"
    assert tasks["T1"].assigned_to == "unassigned"
    assert "task_failed" in sink.kinds()
    failed = [event for event in sink.events if event.kind == "task_failed"]
    assert failed[-1].payload["reason"] == "cancelled"


def test_late_result_for_cancelled_session_is_discarded() -> None:
    executor = StubbornExecutor()
    tasks = {"T1": _task("T1")}
    manager, sink, _ = _manager(executor, tasks)

    async def _run():
        session = manager.start("T1")
        await executor.running.wait()
        manager.cancel(session.session_id)
        executor.release.set()
        return await manager.wait(session.session_id)

    session = asyncio.run(_run())

    assert session.status == "cancelled"
    assert session.result is None
    assert session.attempts[-1].outcome == "discarded"
    assert tasks["T1"].status == "pending"
    assert "task_completed" not in sink.kinds()


def test_cancel_of_terminal_session_is_rejected() -> None:
    tasks = {"T1": _task("T1")}
    manager, _, _ = _manager(ScriptedExecutor([ExecutionResult(success=True)]), tasks)
    session = _run_to_end(manager, "T1")

    with pytest.raises(InvalidStateError):
        manager.cancel(session.session_id)

    assert session.status == "completed"
    assert tasks["T1"].status == "done"


def test_cancel_unknown_session_raises() -> None:
    manager, _, _ = _manager(ScriptedExecutor([]), {})

    with pytest.raises(SessionNotFoundError):
        manager.cancel("session_missing")


def test_attempt_exceeding_timeout_ends_session_without_retry() -> None:
    executor = SlowExecutor()
    tasks = {"T1": _task("T1")}
    manager, sink, _ = _manager(
        executor,
        tasks,
        config=SupervisionConfig(timeout_seconds=0.05, max_retries=3),
    )

    session = _run_to_end(manager, "T1")

    assert executor.calls == 1
    assert session.status == "timeout"
    assert session.errors[-1].kind == "timeout"
    assert session.errors[-1].recoverable is False
    assert tasks["T1"].status == "failed"
    assert sink.kinds().count("task_failed") == 1


def test_overall_deadline_stops_retries() -> None:
    executor = ScriptedExecutor([ExecutionError("flaky"), ExecutionResult(success=True)])
    tasks = {"T1": _task("T1")}
    manager, _, _ = _manager(
        executor,
        tasks,
        config=SupervisionConfig(total_timeout_seconds=10.0, retry_delay_seconds=20.0),
    )

    session = _run_to_end(manager, "T1")

    assert executor.attempts == [1]
    assert session.status == "timeout"
    assert tasks["T1"].status == "failed"


def test_quality_report_is_attached_without_failing_the_task() -> None:
    config = SupervisionConfig()
    checker = FixedQualityChecker(QualityReport(score=72.0, passed=False, coverage=55.0))
    artifact = Artifact(path="src/api.py", language="python", size=120)
    executor = ScriptedExecutor([ExecutionResult(success=True, artifacts=[artifact])])
    tasks = {"T1": _task("T1")}
    manager, sink, _ = _manager(
        executor,
        tasks,
        config=config,
        rules=default_rules(config),
        quality_checker=checker,
    )

    session = _run_to_end(manager, "T1")

    assert session.status == "completed"
    assert session.result is not None
    assert session.result.quality_score == 72.0
    assert session.result.quality_passed is False
    assert session.metrics.files_generated == 1
    assert checker.checked == [[artifact]]
    assert tasks["T1"].quality_metrics is not None
    assert tasks["T1"].quality_metrics.test_coverage == 55.0
    alerts = [event for event in sink.events if event.kind == "quality_alert"]
    assert [alert.payload["rule_id"] for alert in alerts] == ["quality-drop"]


def test_abort_rule_fails_session_before_retrying() -> None:
    rule = AnomalyRule(
        id="any-error",
        name="Any error aborts",
        condition=RuleCondition(kind="error_rate", threshold=0.0),
        actions=[AbortAction()],
    )
    executor = ScriptedExecutor([ExecutionError("flaky"), ExecutionResult(success=True)])
    tasks = {"T1": _task("T1")}
    manager, _, clock = _manager(executor, tasks, rules=[rule])

    session = _run_to_end(manager, "T1")

    assert executor.attempts == [1]
    assert session.status == "failed"
    assert clock.sleeps == []


def test_abort_on_terminal_session_is_a_no_op() -> None:
    tasks = {"T1": _task("T1")}
    manager, _, _ = _manager(ScriptedExecutor([ExecutionResult(success=True)]), tasks)
    session = _run_to_end(manager, "T1")

    assert manager.abort(session.session_id) is False
    assert session.status == "completed"
