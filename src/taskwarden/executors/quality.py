from __future__ import annotations

import asyncio
import json
import logging
import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskwarden.executors.base import QualityChecker, QualityReport
from taskwarden.models import Artifact

logger = logging.getLogger(__name__)

COVERAGE_PATTERN = re.compile(r"\b(\d{1,3}(?:\.\d+)?)%")
SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")

PASSING_CHECK_SCORE = 100.0
FAILING_CHECK_SCORE = 70.0
DEFAULT_SCORE = 85.0


@dataclass(slots=True)
class CommandOutcome:
    command: str
    exit_code: int
    stdout_tail: str = ""
    stderr_tail: str = ""

    @property
    def passed(self) -> bool:
        return self.exit_code == 0


def _extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def _clamp_percent(value: float) -> float:
    return min(100.0, max(0.0, float(value)))


def _coverage_from_payload(payload: dict[str, Any]) -> float | None:
    if "coverage_percent" in payload:
        try:
            return _clamp_percent(float(payload["coverage_percent"]))
        except (TypeError, ValueError):
            return None
    coverage = payload.get("coverage")
    if isinstance(coverage, (int, float)):
        return _clamp_percent(coverage)
    if isinstance(coverage, dict):
        percent = coverage.get("percent")
        if isinstance(percent, (int, float)):
            return _clamp_percent(percent)
    totals = payload.get("totals")
    if isinstance(totals, dict):
        percent = totals.get("percent_covered")
        if isinstance(percent, (int, float)):
            return _clamp_percent(percent)
    return None


def extract_coverage_percent(output: str) -> float | None:
    for payload in _extract_json_objects(output):
        percent = _coverage_from_payload(payload)
        if percent is not None:
            return percent
    matches = COVERAGE_PATTERN.findall(output)
    if not matches:
        return None
    return _clamp_percent(max(float(item) for item in matches))


class CommandQualityChecker(QualityChecker):
    """Scores an attempt by running the configured lint and test commands."""

    def __init__(
        self,
        *,
        lint_command: str = "",
        test_command: str = "",
        working_directory: Path | None = None,
        min_quality_score: float = 90.0,
        min_test_coverage: float = 80.0,
    ) -> None:
        self.lint_command = lint_command
        self.test_command = test_command
        self.working_directory = working_directory
        self.min_quality_score = min_quality_score
        self.min_test_coverage = min_test_coverage

    async def run_command(self, command: str) -> CommandOutcome:
        command_text = command.strip()
        if not command_text:
            return CommandOutcome(command=command, exit_code=1, stderr_tail="Command is empty.")
        cwd = str(self.working_directory) if self.working_directory else None
        use_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        argv: list[str] = []
        if not use_shell:
            try:
                argv = shlex.split(command_text)
            except ValueError:
                use_shell = True
        try:
            if use_shell:
                process = await asyncio.create_subprocess_shell(
                    command_text,
                    cwd=cwd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=cwd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
        except FileNotFoundError as exc:
            return CommandOutcome(command=command, exit_code=127, stderr_tail=str(exc))
        stdout, stderr = await process.communicate()
        return CommandOutcome(
            command=command,
            exit_code=process.returncode if process.returncode is not None else 1,
            stdout_tail=stdout.decode("utf-8", errors="replace").strip()[-1000:],
            stderr_tail=stderr.decode("utf-8", errors="replace").strip()[-1000:],
        )

    async def check(self, artifacts: list[Artifact]) -> QualityReport:
        scores: list[float] = []
        coverage: float | None = None

        if self.lint_command:
            lint = await self.run_command(self.lint_command)
            scores.append(PASSING_CHECK_SCORE if lint.passed else FAILING_CHECK_SCORE)
            if not lint.passed:
                logger.info("Lint command failed with exit code %s", lint.exit_code)

        if self.test_command:
            tests = await self.run_command(self.test_command)
            scores.append(PASSING_CHECK_SCORE if tests.passed else FAILING_CHECK_SCORE)
            coverage = extract_coverage_percent(f"{tests.stdout_tail}\n{tests.stderr_tail}")
            if not tests.passed:
                logger.info("Test command failed with exit code %s", tests.exit_code)

        score = sum(scores) / len(scores) if scores else DEFAULT_SCORE
        passed = score >= self.min_quality_score
        if coverage is not None and coverage < self.min_test_coverage:
            passed = False
        logger.debug(
            "Quality check over %d artifact(s): score=%.1f coverage=%s",
            len(artifacts),
            score,
            coverage,
        )
        return QualityReport(score=score, passed=passed, coverage=coverage)
