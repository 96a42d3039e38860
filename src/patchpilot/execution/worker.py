"""Run one task attempt through an agent inside a sandbox."""

import asyncio
import logging
import math
import time
import uuid
from typing import Any

from patchpilot.agents.protocol import (
    AgentEvent,
    AgentExecuteParams,
    AgentProvider,
    AgentResult,
    ErrorEvent,
    FileEditEvent,
    OutputEvent,
    TokenEvent,
    ToolUseEvent,
)
from patchpilot.core.errors import normalize_execution_error
from patchpilot.core.events import EventBus, JobProgress
from patchpilot.core.models import ExecutionResult, Task
from patchpilot.execution.sandbox import SandboxContext

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_BUDGET = 50_000
DEFAULT_TIMEOUT = 300.0


def build_task_prompt(task: Task) -> str:
    """Prompt handed to the agent for one task."""
    lines = [
        "You are implementing a scoped repository contribution task.",
        f"Task ID: {task.id}",
        f"Title: {task.title}",
        f"Source: {task.source.value}",
        f"Priority: {task.priority}",
        f"Complexity: {task.complexity.value}",
        f"Execution mode: {task.execution_mode.value}",
    ]

    if task.linked_issue:
        issue = task.linked_issue
        lines.extend(["", f"GitHub Issue #{issue.number}: {issue.url}"])
        if issue.labels:
            lines.append(f"Labels: {', '.join(issue.labels)}")
        lines.append(
            "Resolve this issue completely. Read the issue description carefully and implement the fix."
        )

    lines.extend(
        [
            "",
            "Description:",
            task.description,
            "",
            "Target files:",
            "\n".join(task.target_files) or "(none provided)",
            "",
            "Apply minimal, safe changes and ensure the repository remains buildable.",
        ]
    )
    return "\n".join(lines)


def stage_for(event: AgentEvent) -> str:
    """Short progress label for an agent event."""
    if isinstance(event, OutputEvent):
        return event.stream
    if isinstance(event, TokenEvent):
        return "tokens"
    if isinstance(event, FileEditEvent):
        return f"file:{event.action}"
    if isinstance(event, ToolUseEvent):
        return f"tool:{event.tool}"
    if isinstance(event, ErrorEvent):
        return "agent-warning" if event.recoverable else "agent-error"
    return "running"


def _metadata_number(task: Task, key: str) -> float | None:
    value: Any = task.metadata.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


async def execute_task(
    agent: AgentProvider,
    task: Task,
    sandbox: SandboxContext,
    event_bus: EventBus,
    job_id: str | None = None,
    execution_id: str | None = None,
    token_budget: int | None = None,
    timeout: float | None = None,
    allow_commits: bool = True,
) -> ExecutionResult:
    """Execute ``task`` with ``agent`` in ``sandbox`` and return the merged result.

    Agent events are drained by a single reader that publishes JobProgress;
    the reader is always awaited before returning or raising. Failures are
    normalized with task and execution context.
    """
    execution_id = execution_id or str(uuid.uuid4())
    job_id = job_id or execution_id
    budget = token_budget or int(_metadata_number(task, "tokenBudget") or DEFAULT_TOKEN_BUDGET)
    limit = timeout or _metadata_number(task, "timeout") or DEFAULT_TIMEOUT

    started = time.monotonic()
    observed_tokens = 0
    observed_files: dict[str, None] = {}

    try:
        execution = await agent.execute(
            AgentExecuteParams(
                execution_id=execution_id,
                working_directory=str(sandbox.path),
                prompt=build_task_prompt(task),
                target_files=list(task.target_files),
                token_budget=budget,
                allow_commits=allow_commits,
                timeout=limit,
            )
        )
    except Exception as e:
        raise normalize_execution_error(e, task_id=task.id, job_id=job_id, execution_id=execution_id)

    async def drain() -> None:
        nonlocal observed_tokens
        async for event in execution.events:
            if isinstance(event, TokenEvent):
                observed_tokens = max(observed_tokens, event.cumulative_tokens)
            elif isinstance(event, FileEditEvent):
                observed_files[event.path] = None
            event_bus.publish(
                JobProgress(
                    job_id=job_id,
                    task_id=task.id,
                    tokens_used=observed_tokens,
                    stage=stage_for(event),
                    files_changed=tuple(observed_files),
                )
            )

    reader = asyncio.create_task(drain())
    try:
        result: AgentResult = await execution.result
    except asyncio.CancelledError:
        reader.cancel()
        await asyncio.gather(reader, return_exceptions=True)
        raise
    except Exception as e:
        await _settle(reader)
        raise normalize_execution_error(
            e, task_id=task.id, job_id=job_id, execution_id=execution_id, tokens_used=observed_tokens
        )

    await _settle(reader)

    for path in result.files_changed:
        observed_files[path] = None
    return ExecutionResult(
        success=result.success,
        exit_code=result.exit_code,
        total_tokens_used=max(result.total_tokens_used, observed_tokens),
        files_changed=list(observed_files),
        duration=result.duration if result.duration > 0 else time.monotonic() - started,
        error=result.error,
    )


async def _settle(reader: "asyncio.Task[None]") -> None:
    """Wait for the event reader; its own failure never masks the result."""
    try:
        await reader
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.debug("Agent event stream ended with %s", e)
