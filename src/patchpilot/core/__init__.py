"""Shared models, errors and the lifecycle event bus."""

from patchpilot.core.errors import ErrorCode, PatchPilotError, Severity
from patchpilot.core.events import EventBus
from patchpilot.core.models import (
    DeferredReason,
    ExecutionPlan,
    ExecutionResult,
    Job,
    JobStatus,
    Task,
    TaskComplexity,
    TokenEstimate,
)

__all__ = [
    "DeferredReason",
    "ErrorCode",
    "EventBus",
    "ExecutionPlan",
    "ExecutionResult",
    "Job",
    "JobStatus",
    "PatchPilotError",
    "Severity",
    "Task",
    "TaskComplexity",
    "TokenEstimate",
]
