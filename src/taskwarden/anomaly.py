from __future__ import annotations

import logging
import operator
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from taskwarden.clock import parse_iso, to_iso
from taskwarden.config import SupervisionConfig
from taskwarden.errors import ConfigError
from taskwarden.events import Event, EventBroadcaster
from taskwarden.models import ExecutionSession

logger = logging.getLogger(__name__)

ConditionKind = Literal["timeout", "quality_drop", "error_rate"]
Severity = Literal["low", "medium", "high", "critical"]

CONDITION_KINDS: tuple[str, ...] = ("timeout", "quality_drop", "error_rate")
SEVERITIES: tuple[str, ...] = ("low", "medium", "high", "critical")
OPERATORS: dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
}


@dataclass(slots=True)
class RuleCondition:
    kind: ConditionKind
    threshold: float
    operator: str = ">"
    duration_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.kind not in CONDITION_KINDS:
            raise ConfigError(f"Unsupported anomaly condition: {self.kind}")
        if self.operator not in OPERATORS:
            raise ConfigError(f"Unsupported comparison operator: {self.operator}")

    def compare(self, value: float) -> bool:
        return OPERATORS[self.operator](value, self.threshold)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "threshold": self.threshold,
            "operator": self.operator,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RuleCondition:
        duration = payload.get("duration_seconds", payload.get("duration"))
        return cls(
            kind=payload.get("kind", payload.get("type")),
            threshold=float(payload["threshold"]),
            operator=str(payload.get("operator", ">")),
            duration_seconds=None if duration is None else float(duration),
        )


@dataclass(slots=True, frozen=True)
class AlertAction:
    message: str = ""
    type: Literal["alert"] = "alert"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message}


@dataclass(slots=True, frozen=True)
class RetryAction:
    max_retries: int | None = None
    type: Literal["retry"] = "retry"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "max_retries": self.max_retries}


@dataclass(slots=True, frozen=True)
class AbortAction:
    type: Literal["abort"] = "abort"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type}


@dataclass(slots=True, frozen=True)
class EscalateAction:
    notify_user: bool = True
    type: Literal["escalate"] = "escalate"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "notify_user": self.notify_user}


RuleAction = AlertAction | RetryAction | AbortAction | EscalateAction


def action_from_dict(payload: dict[str, Any]) -> RuleAction:
    # Older documents nest action settings under "config".
    settings = dict(payload.get("config") or {})
    settings.update({key: value for key, value in payload.items() if key not in {"config"}})
    action_type = settings.get("type")
    if action_type == "alert":
        return AlertAction(message=str(settings.get("message", "")))
    if action_type == "retry":
        max_retries = settings.get("max_retries", settings.get("maxRetries"))
        return RetryAction(max_retries=None if max_retries is None else int(max_retries))
    if action_type == "abort":
        return AbortAction()
    if action_type == "escalate":
        notify = settings.get("notify_user", settings.get("notifyUser", True))
        return EscalateAction(notify_user=bool(notify))
    raise ConfigError(f"Unsupported anomaly action: {action_type}")


@dataclass(slots=True)
class AnomalyRule:
    id: str
    name: str
    condition: RuleCondition
    actions: list[RuleAction] = field(default_factory=list)
    severity: Severity = "medium"
    enabled: bool = True
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "condition": self.condition.to_dict(),
            "actions": [action.to_dict() for action in self.actions],
            "severity": self.severity,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AnomalyRule:
        severity = str(payload.get("severity", "medium"))
        if severity not in SEVERITIES:
            raise ConfigError(f"Unsupported rule severity: {severity}")
        try:
            return cls(
                id=str(payload["id"]),
                name=str(payload.get("name") or payload["id"]),
                description=str(payload.get("description", "")),
                enabled=bool(payload.get("enabled", True)),
                condition=RuleCondition.from_dict(payload["condition"]),
                actions=[action_from_dict(item) for item in payload.get("actions", [])],
                severity=severity,  # type: ignore[arg-type]
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid anomaly rule {payload.get('id')}: {exc}") from exc


def default_rules(config: SupervisionConfig) -> list[AnomalyRule]:
    return [
        AnomalyRule(
            id="timeout-alert",
            name="Task execution timeout",
            description="Fires when a session runs longer than the per-task timeout.",
            condition=RuleCondition(kind="timeout", threshold=config.timeout_seconds),
            actions=[
                AlertAction(message="Task execution timeout"),
                RetryAction(max_retries=config.max_retries),
            ],
            severity="high",
        ),
        AnomalyRule(
            id="quality-drop",
            name="Quality below threshold",
            description="Fires when a reported quality score is below the quality gate.",
            condition=RuleCondition(
                kind="quality_drop",
                threshold=config.min_quality_score,
                operator="<",
            ),
            actions=[
                AlertAction(message="Quality score below threshold"),
                EscalateAction(notify_user=True),
            ],
            severity="medium",
        ),
        AnomalyRule(
            id="high-error-rate",
            name="High error rate",
            description="Fires when errors per API call exceed the threshold.",
            condition=RuleCondition(kind="error_rate", threshold=0.3),
            actions=[
                AlertAction(message="High error rate detected"),
                EscalateAction(notify_user=True),
            ],
            severity="critical",
        ),
    ]


@dataclass(slots=True)
class AnomalyOutcome:
    triggered: list[AnomalyRule] = field(default_factory=list)
    abort: bool = False

    @property
    def rule_ids(self) -> list[str]:
        return [rule.id for rule in self.triggered]


class AnomalyDetector:
    def __init__(self, rules: list[AnomalyRule], broadcaster: EventBroadcaster) -> None:
        self.rules = rules
        self.broadcaster = broadcaster

    @staticmethod
    def measure(
        condition: RuleCondition,
        session: ExecutionSession,
        now: datetime,
    ) -> float | None:
        if condition.kind == "timeout":
            started = parse_iso(session.started_at)
            if started is None:
                return None
            ended = parse_iso(session.completed_at) or now
            return max(0.0, (ended - started).total_seconds())
        if condition.kind == "quality_drop":
            if session.result is None or session.result.quality_score is None:
                return None
            return float(session.result.quality_score)
        errors = session.errors
        if condition.duration_seconds is not None:
            window_start = now - timedelta(seconds=condition.duration_seconds)
            errors = [
                error
                for error in errors
                if (parse_iso(error.timestamp) or now) >= window_start
            ]
        return len(errors) / max(session.metrics.api_calls, 1)

    def evaluate(self, session: ExecutionSession, now: datetime) -> AnomalyOutcome:
        outcome = AnomalyOutcome()
        for rule in self.rules:
            if not rule.enabled:
                continue
            value = self.measure(rule.condition, session, now)
            if value is None or not rule.condition.compare(value):
                continue
            outcome.triggered.append(rule)
            logger.info(
                "Anomaly rule %s triggered for %s (value=%.3f)",
                rule.id,
                session.session_id,
                value,
            )
            for action in rule.actions:
                if isinstance(action, AlertAction):
                    self.broadcaster.publish(
                        Event(
                            kind="quality_alert",
                            timestamp=to_iso(now),
                            payload={
                                "rule_id": rule.id,
                                "severity": rule.severity,
                                "message": action.message or rule.name,
                                "session_id": session.session_id,
                                "task_id": session.task_id,
                                "value": value,
                            },
                        )
                    )
                elif isinstance(action, RetryAction):
                    logger.debug("Rule %s advised a retry", rule.id)
                elif isinstance(action, AbortAction):
                    outcome.abort = True
                elif isinstance(action, EscalateAction) and action.notify_user:
                    logger.warning(
                        "Escalation: %s (%s) on session %s",
                        rule.name,
                        rule.severity,
                        session.session_id,
                    )
        return outcome
