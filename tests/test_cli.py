import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from taskwarden.cli import cli
from taskwarden.config import load_config
from taskwarden.executors.base import Executor, WorkOrder
from taskwarden.models import ExecutionResult, Task
from taskwarden.store import StateStore


class FakeExecutor(Executor):
    def __init__(self, *, failing: set[str] | None = None) -> None:
        self.failing = failing or set()

    async def execute(self, task: Task, work_order: WorkOrder) -> ExecutionResult:
        if task.id in self.failing:
            return ExecutionResult(
                success=False,
                summary="broken build",
                error_kind="syntax",
                recoverable=False,
            )
        return ExecutionResult(success=True, summary=f"{task.id} done", api_calls=1)


TASKS = {
    "tasks": [
        {"id": "T-001", "requirement_id": "REQ-1", "name": "Login form", "category": "frontend"},
        {"id": "T-002", "requirement_id": "REQ-1", "name": "Auth API", "category": "backend"},
        {"id": "T-003", "requirement_id": "REQ-1", "name": "Auth tests", "category": "testing"},
    ]
}


def _workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, executor: Executor) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    monkeypatch.chdir(repo)
    monkeypatch.setattr("taskwarden.cli._build_executor", lambda config, repo_root: executor)
    (repo / "tasks.json").write_text(json.dumps(TASKS), encoding="utf-8")
    return repo


def test_cli_full_lifecycle_commands(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo = _workspace(tmp_path, monkeypatch, FakeExecutor())
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init", "--executor", "codex"])
    assert init_result.exit_code == 0
    assert load_config(repo / "taskwarden.toml").executor.kind == "codex"
    assert (repo / ".taskwarden").is_dir()

    import_result = runner.invoke(cli, ["import", "tasks.json"])
    assert import_result.exit_code == 0
    assert "Imported 3 task(s)" in import_result.output
    assert "2 implicit" in import_result.output

    tasks_result = runner.invoke(cli, ["tasks", "--json"])
    assert tasks_result.exit_code == 0
    listed = json.loads(tasks_result.output)
    assert [task["id"] for task in listed] == ["T-001", "T-002", "T-003"]
    assert listed[2]["depends_on"] == ["T-001", "T-002"]

    plan_result = runner.invoke(cli, ["plan"])
    assert plan_result.exit_code == 0
    plan = json.loads(plan_result.output)
    assert plan["estimated_total_hours"] == 6.0
    assert [entry["id"] for entry in plan["gantt"]] == ["T-001", "T-002", "T-003"]

    run_result = runner.invoke(cli, ["run"])
    assert run_result.exit_code == 0
    assert "Completed: 3/3" in run_result.output
    assert "Health: healthy" in run_result.output

    status_result = runner.invoke(cli, ["status", "--json"])
    assert status_result.exit_code == 0
    status = json.loads(status_result.output)
    assert status["counts"]["done"] == 3
    assert status["system_health"] == "healthy"

    sessions_result = runner.invoke(cli, ["sessions", "--task", "T-003"])
    assert sessions_result.exit_code == 0
    assert "completed" in sessions_result.output

    session_id = StateStore(repo / ".taskwarden").load_sessions()[0].session_id
    session_result = runner.invoke(cli, ["session", session_id])
    assert session_result.exit_code == 0
    assert json.loads(session_result.output)["status"] == "completed"

    cancel_result = runner.invoke(cli, ["cancel", session_id])
    assert cancel_result.exit_code != 0
    assert "Error" in cancel_result.output

    rules_result = runner.invoke(cli, ["rules"])
    assert rules_result.exit_code == 0
    assert {rule["id"] for rule in json.loads(rules_result.output)} == {
        "timeout-alert",
        "quality-drop",
        "high-error-rate",
    }


def test_start_reports_unsatisfied_dependencies(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _workspace(tmp_path, monkeypatch, FakeExecutor())
    runner = CliRunner()
    runner.invoke(cli, ["import", "tasks.json"])

    result = runner.invoke(cli, ["start", "T-003"])

    assert result.exit_code != 0
    assert "T-003" in result.output


def test_start_runs_a_single_task(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _workspace(tmp_path, monkeypatch, FakeExecutor(failing={"T-002"}))
    runner = CliRunner()
    runner.invoke(cli, ["import", "tasks.json"])

    ok = runner.invoke(cli, ["start", "T-001"])
    failed = runner.invoke(cli, ["start", "T-002"])

    assert ok.exit_code == 0
    assert "completed" in ok.output
    assert failed.exit_code != 0
    assert "ended failed" in failed.output


def test_run_reports_failed_and_blocked_tasks(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _workspace(tmp_path, monkeypatch, FakeExecutor(failing={"T-002"}))
    runner = CliRunner()
    runner.invoke(cli, ["import", "tasks.json"])

    result = runner.invoke(cli, ["run"])

    assert result.exit_code == 0
    assert "Failed: T-002" in result.output
    assert "Blocked: T-003" in result.output
    assert "Health: critical" in result.output


def test_import_rejects_cyclic_tasks(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo = _workspace(tmp_path, monkeypatch, FakeExecutor())
    cyclic = [
        {"id": "A", "name": "A", "category": "backend", "depends_on": ["B"]},
        {"id": "B", "name": "B", "category": "backend", "depends_on": ["A"]},
    ]
    (repo / "cyclic.json").write_text(json.dumps(cyclic), encoding="utf-8")

    result = CliRunner().invoke(cli, ["import", "cyclic.json"])

    assert result.exit_code != 0
    assert "cycle" in result.output.lower()


def test_import_reports_malformed_fields_without_a_traceback(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    repo = _workspace(tmp_path, monkeypatch, FakeExecutor())
    broken = [{"id": "A", "name": "A", "category": "backend", "estimated_hours": None}]
    (repo / "broken.json").write_text(json.dumps(broken), encoding="utf-8")

    result = CliRunner().invoke(cli, ["import", "broken.json"])

    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    assert "Error" in result.output


def test_invalid_config_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo = _workspace(tmp_path, monkeypatch, FakeExecutor())
    (repo / "taskwarden.toml").write_text(
        "[supervision]\nmax_concurrent_tasks = 0\n", encoding="utf-8"
    )

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code != 0
    assert "max_concurrent_tasks" in result.output
