from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from taskwarden.errors import ExecutionError
from taskwarden.executors.base import Executor, WorkOrder
from taskwarden.models import Artifact, ExecutionResult, FileChange, Task

logger = logging.getLogger(__name__)

LANGUAGE_BY_SUFFIX = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".py": "python",
    ".go": "go",
    ".java": "java",
    ".rb": "ruby",
    ".rs": "rust",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".json": "json",
    ".md": "markdown",
}


def language_for_path(path: str) -> str:
    return LANGUAGE_BY_SUFFIX.get(Path(path).suffix.lower(), "text")


def estimate_tokens(text: str) -> int:
    return (len(text) + 3) // 4


class CommandExecutor(Executor):
    """Runs an agent CLI as a subprocess and parses its streamed JSON output."""

    def __init__(
        self,
        kind: str = "claude",
        *,
        binary: str | None = None,
        working_directory: Path | None = None,
    ) -> None:
        self.kind = kind
        self.binary = binary or kind
        self.working_directory = working_directory

    def build_command(self, prompt: str) -> list[str]:
        if self.kind == "codex":
            return [self.binary, "exec", "--json", prompt]
        return [self.binary, "-p", prompt, "--output-format", "stream-json"]

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        result = event.get("result")
        if isinstance(result, str):
            return result
        return ""

    @staticmethod
    def _extract_files(event: dict[str, Any]) -> list[str]:
        files = event.get("files")
        if isinstance(files, list):
            return [str(item) for item in files if isinstance(item, str)]
        return []

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def parse_output(self, raw_output: str) -> tuple[str, list[str]]:
        chunks: list[str] = []
        files: list[str] = []
        parse_buffer = ""
        for raw_line in raw_output.splitlines():
            line = raw_line.strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                chunks.append(line)
                continue
            if not isinstance(event, dict):
                continue
            content = self._extract_content(event)
            if content:
                chunks.append(content)
            files.extend(self._extract_files(event))
        if parse_buffer:
            chunks.append(parse_buffer)
        return "".join(chunks).strip(), files

    def _artifact(self, path: str) -> Artifact:
        resolved = Path(path)
        if not resolved.is_absolute() and self.working_directory is not None:
            resolved = self.working_directory / resolved
        size = resolved.stat().st_size if resolved.exists() else 0
        return Artifact(path=path, language=language_for_path(path), size=size)

    async def execute(self, task: Task, work_order: WorkOrder) -> ExecutionResult:
        command = self.build_command(work_order.prompt)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ExecutionError(
                f"Executor binary not found: {self.binary}",
                kind="runtime",
                recoverable=False,
            ) from exc

        communicate = asyncio.ensure_future(process.communicate())
        cancelled = asyncio.ensure_future(work_order.cancelled.wait())
        try:
            done, _ = await asyncio.wait(
                {communicate, cancelled},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self._terminate(process)
            communicate.cancel()
            raise
        finally:
            cancelled.cancel()

        if communicate not in done:
            logger.info("Stopping executor process for %s after cancellation", task.id)
            await self._terminate(process)
            communicate.cancel()
            raise ExecutionError(
                f"Execution of {task.id} was cancelled",
                kind="unknown",
                recoverable=False,
            )

        stdout, stderr = communicate.result()
        raw_output = stdout.decode("utf-8", errors="replace")
        stderr_output = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            raise ExecutionError(
                f"{self.kind} executor failed with exit code {process.returncode}: "
                f"{stderr_output[-1000:]}",
                kind="runtime",
                recoverable=True,
            )

        summary, files = self.parse_output(raw_output)
        artifacts = [self._artifact(path) for path in files]
        lines = len(summary.splitlines())
        return ExecutionResult(
            success=True,
            summary=summary or f"Task {task.id} executed",
            changes=[FileChange(path=item.path, lines_added=lines) for item in artifacts],
            artifacts=artifacts,
            tokens_used=estimate_tokens(raw_output),
            api_calls=1,
        )

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except TimeoutError:
            process.kill()
            await process.wait()
