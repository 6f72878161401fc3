from __future__ import annotations

from dataclasses import dataclass

from taskwarden.config import SupervisionConfig
from taskwarden.models import ErrorRecord, ExecutionSession


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 3
    delay_seconds: float = 5.0

    @classmethod
    def from_config(cls, config: SupervisionConfig) -> RetryPolicy:
        return cls(max_retries=config.max_retries, delay_seconds=config.retry_delay_seconds)


@dataclass(slots=True, frozen=True)
class RetryDecision:
    retry: bool
    delay_seconds: float = 0.0
    reason: str = ""


class RetryController:
    """Decides whether a failed attempt is retried or becomes terminal."""

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy

    def decide(self, session: ExecutionSession, error: ErrorRecord) -> RetryDecision:
        if session.is_terminal:
            return RetryDecision(retry=False, reason=f"session already {session.status}")
        if not error.recoverable:
            return RetryDecision(retry=False, reason=f"non-recoverable {error.kind} error")
        if session.retry_count >= session.max_retries:
            return RetryDecision(
                retry=False,
                reason=f"retries exhausted after {session.retry_count}",
            )
        return RetryDecision(retry=True, delay_seconds=self.policy.delay_seconds)
