from taskwarden.executors.base import (
    Executor,
    QualityChecker,
    QualityReport,
    WorkOrder,
    render_prompt,
)
from taskwarden.executors.command import CommandExecutor
from taskwarden.executors.quality import CommandQualityChecker

__all__ = [
    "CommandExecutor",
    "CommandQualityChecker",
    "Executor",
    "QualityChecker",
    "QualityReport",
    "WorkOrder",
    "render_prompt",
]
