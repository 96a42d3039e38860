"""Sandboxed, concurrent execution of planned tasks."""

from patchpilot.execution.engine import ExecutionEngine, sanitize_branch_segment
from patchpilot.execution.retry import CircuitBreaker, calculate_backoff, is_transient_error
from patchpilot.execution.sandbox import SandboxContext, SandboxManager, SerialQueue
from patchpilot.execution.worker import build_task_prompt, execute_task

__all__ = [
    "CircuitBreaker",
    "ExecutionEngine",
    "SandboxContext",
    "SandboxManager",
    "SerialQueue",
    "build_task_prompt",
    "calculate_backoff",
    "execute_task",
    "is_transient_error",
    "sanitize_branch_segment",
]
