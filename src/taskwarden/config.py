from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from taskwarden.errors import ConfigError

ExecutorKind = Literal["claude", "codex"]
EXECUTOR_KINDS: tuple[str, ...] = ("claude", "codex")


@dataclass(slots=True)
class SupervisionConfig:
    timeout_seconds: float = 3600.0
    total_timeout_seconds: float = 28800.0
    max_retries: int = 3
    retry_delay_seconds: float = 5.0
    min_quality_score: float = 90.0
    min_test_coverage: float = 80.0
    max_concurrent_tasks: int = 3
    enable_notifications: bool = True
    notify_on_progress: bool = True
    notify_on_completion: bool = True
    notify_on_error: bool = True

    def validate(self) -> None:
        if self.timeout_seconds <= 0:
            raise ConfigError("timeout_seconds must be positive.")
        if self.total_timeout_seconds <= 0:
            raise ConfigError("total_timeout_seconds must be positive.")
        if self.max_retries < 0:
            raise ConfigError("max_retries cannot be negative.")
        if self.retry_delay_seconds < 0:
            raise ConfigError("retry_delay_seconds cannot be negative.")
        if not 0 <= self.min_quality_score <= 100:
            raise ConfigError("min_quality_score must be between 0 and 100.")
        if not 0 <= self.min_test_coverage <= 100:
            raise ConfigError("min_test_coverage must be between 0 and 100.")
        if self.max_concurrent_tasks < 1:
            raise ConfigError("max_concurrent_tasks must be at least 1.")

    def to_dict(self) -> dict[str, Any]:
        return {
            "timeout_seconds": self.timeout_seconds,
            "total_timeout_seconds": self.total_timeout_seconds,
            "max_retries": self.max_retries,
            "retry_delay_seconds": self.retry_delay_seconds,
            "min_quality_score": self.min_quality_score,
            "min_test_coverage": self.min_test_coverage,
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "enable_notifications": self.enable_notifications,
            "notify_on_progress": self.notify_on_progress,
            "notify_on_completion": self.notify_on_completion,
            "notify_on_error": self.notify_on_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SupervisionConfig:
        try:
            config = cls(**data)
        except TypeError as exc:
            raise ConfigError(f"Invalid supervision configuration: {exc}") from exc
        config.validate()
        return config


@dataclass(slots=True)
class ExecutorConfig:
    kind: ExecutorKind = "claude"
    binary: str = ""
    working_directory: str = "."

    def validate(self) -> None:
        if self.kind not in EXECUTOR_KINDS:
            raise ConfigError(f"Unsupported executor kind: {self.kind}")


@dataclass(slots=True)
class QualityConfig:
    lint_command: str = ""
    test_command: str = ""


@dataclass(slots=True)
class StateConfig:
    directory: str = ".taskwarden"


@dataclass(slots=True)
class WardenConfig:
    supervision: SupervisionConfig = field(default_factory=SupervisionConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> WardenConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> WardenConfig:
        supervision = dict(data.get("supervision", {}))
        notifications = data.get("notifications", {})
        for key, target in (
            ("enabled", "enable_notifications"),
            ("on_progress", "notify_on_progress"),
            ("on_completion", "notify_on_completion"),
            ("on_error", "notify_on_error"),
        ):
            if key in notifications:
                supervision[target] = notifications[key]
        try:
            config = cls(
                supervision=SupervisionConfig(**supervision),
                executor=ExecutorConfig(**data.get("executor", {})),
                quality=QualityConfig(**data.get("quality", {})),
                state=StateConfig(**data.get("state", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        self.supervision.validate()
        self.executor.validate()

    def to_dict(self) -> dict:
        return {
            "supervision": {
                "timeout_seconds": self.supervision.timeout_seconds,
                "total_timeout_seconds": self.supervision.total_timeout_seconds,
                "max_retries": self.supervision.max_retries,
                "retry_delay_seconds": self.supervision.retry_delay_seconds,
                "min_quality_score": self.supervision.min_quality_score,
                "min_test_coverage": self.supervision.min_test_coverage,
                "max_concurrent_tasks": self.supervision.max_concurrent_tasks,
            },
            "notifications": {
                "enabled": self.supervision.enable_notifications,
                "on_progress": self.supervision.notify_on_progress,
                "on_completion": self.supervision.notify_on_completion,
                "on_error": self.supervision.notify_on_error,
            },
            "executor": {
                "kind": self.executor.kind,
                "binary": self.executor.binary,
                "working_directory": self.executor.working_directory,
            },
            "quality": {
                "lint_command": self.quality.lint_command,
                "test_command": self.quality.test_command,
            },
            "state": {
                "directory": self.state.directory,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: WardenConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["supervision", "notifications", "executor", "quality", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> WardenConfig:
    if not path.exists():
        return WardenConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc
    return WardenConfig.from_dict(data)


def save_config(path: Path, config: WardenConfig) -> None:
    config.validate()
    path.write_text(dumps_toml(config), encoding="utf-8")
