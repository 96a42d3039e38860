"""Token cost estimation for tasks."""

import asyncio
import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from patchpilot.budget.complexity import analyze_task_complexity
from patchpilot.budget.counters import TokenCounter, approximate_token_count, get_token_counter
from patchpilot.core.events import EventBus, TaskEstimated
from patchpilot.core.models import Task, TaskComplexity, TokenEstimate

logger = logging.getLogger(__name__)

ESTIMATION_PADDING = 1.2
FALLBACK_CONFIDENCE = 0.5
DEFAULT_MAX_CONCURRENT_READS = 50

COMPLEXITY_MULTIPLIERS: dict[TaskComplexity, float] = {
    TaskComplexity.TRIVIAL: 0.5,
    TaskComplexity.SIMPLE: 1.0,
    TaskComplexity.MODERATE: 2.0,
    TaskComplexity.COMPLEX: 3.5,
}

COMPLEXITY_CONFIDENCE: dict[TaskComplexity, float] = {
    TaskComplexity.TRIVIAL: 0.9,
    TaskComplexity.SIMPLE: 0.75,
    TaskComplexity.MODERATE: 0.6,
    TaskComplexity.COMPLEX: 0.4,
}


@dataclass
class _Count:
    tokens: int
    used_fallback: bool = False
    missing: bool = False


def _count(text: str, counter: TokenCounter) -> _Count:
    try:
        return _Count(counter.count_tokens(text))
    except Exception as e:
        logger.warning("Token counter failed, approximating: %s", e)
        return _Count(approximate_token_count(text), used_fallback=True)


def _dump_metadata(task: Task) -> str:
    try:
        return json.dumps(task.metadata, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError):
        return "[unserializable]"


def build_prompt_seed(task: Task, files: list[str]) -> str:
    """Text that approximates the task-specific part of the agent prompt."""
    return "\n\n".join(
        [
            f"Task ID: {task.id}",
            f"Title: {task.title}",
            f"Source: {task.source.value}",
            f"Priority: {task.priority}",
            f"Description:\n{task.description}",
            "Target Files:\n" + ("\n".join(files) or "(none)"),
            f"Metadata: {_dump_metadata(task)}",
        ]
    )


def more_conservative(declared: TaskComplexity, analyzed: TaskComplexity) -> TaskComplexity:
    return declared if declared.rank >= analyzed.rank else analyzed


class TokenEstimator:
    """Estimates the token cost of tasks for a given provider.

    Target files are read off the event loop, with at most
    ``max_concurrent_reads`` reads in flight across every estimate made
    by this instance.
    """

    def __init__(
        self,
        max_concurrent_reads: int = DEFAULT_MAX_CONCURRENT_READS,
        counter_factory: Callable[[str], TokenCounter] = get_token_counter,
        base_dir: Path | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        if max_concurrent_reads < 1:
            raise ValueError("max_concurrent_reads must be at least 1")
        self.max_concurrent_reads = max_concurrent_reads
        self.counter_factory = counter_factory
        self.base_dir = base_dir
        self.event_bus = event_bus
        self._read_slots = asyncio.Semaphore(max_concurrent_reads)

    def _resolve(self, target_file: str) -> Path:
        path = Path(target_file)
        if path.is_absolute():
            return path
        return (self.base_dir or Path.cwd()) / path

    def _read_and_count(self, target_file: str, counter: TokenCounter) -> _Count:
        try:
            content = self._resolve(target_file).read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.debug("Cannot read %s for estimation: %s", target_file, e)
            return _Count(0, missing=True)
        return _count(content, counter)

    async def _read_file(self, target_file: str, counter: TokenCounter) -> _Count:
        async with self._read_slots:
            return await asyncio.to_thread(self._read_and_count, target_file, counter)

    async def estimate(self, task: Task, provider_id: str) -> TokenEstimate:
        """Estimate the total tokens one agent run on ``task`` will use."""
        counter = self.counter_factory(provider_id)
        files = list(dict.fromkeys(task.target_files))

        file_counts = await asyncio.gather(*(self._read_file(f, counter) for f in files))

        structure = _count("\n".join(files), counter)
        context_tokens = structure.tokens + sum(c.tokens for c in file_counts)

        prompt_content = _count(build_prompt_seed(task, files), counter)
        prompt_tokens = counter.invocation_overhead + prompt_content.tokens

        analyzed = analyze_task_complexity(task)
        effective = more_conservative(task.complexity, analyzed)
        expected_output_tokens = math.ceil(context_tokens * COMPLEXITY_MULTIPLIERS[effective])

        total = math.ceil(
            (context_tokens + prompt_tokens + expected_output_tokens) * ESTIMATION_PADDING
        )

        used_fallback = (
            structure.used_fallback
            or prompt_content.used_fallback
            or any(c.used_fallback for c in file_counts)
        )
        missing = sum(1 for c in file_counts if c.missing)

        confidence = COMPLEXITY_CONFIDENCE[effective]
        if used_fallback:
            confidence = min(confidence, FALLBACK_CONFIDENCE)
        if missing:
            confidence -= min(0.25, missing * 0.05)
        if not files:
            confidence -= 0.1
        if task.complexity != analyzed:
            confidence -= 0.05

        estimate = TokenEstimate(
            task_id=task.id,
            provider_id=provider_id,
            context_tokens=context_tokens,
            prompt_tokens=prompt_tokens,
            expected_output_tokens=expected_output_tokens,
            total_estimated_tokens=total,
            confidence=round(min(0.95, max(0.1, confidence)), 4),
            feasible=total <= counter.max_context_tokens,
        )

        if self.event_bus is not None:
            self.event_bus.publish(
                TaskEstimated(
                    task_id=task.id,
                    provider_id=provider_id,
                    total_estimated_tokens=total,
                    confidence=estimate.confidence,
                    feasible=estimate.feasible,
                )
            )
        return estimate

    async def estimate_all(self, tasks: Iterable[Task], provider_id: str) -> dict[str, TokenEstimate]:
        """Estimate every task concurrently; keyed by task id."""
        task_list = list(tasks)
        estimates = await asyncio.gather(*(self.estimate(t, provider_id) for t in task_list))
        return {e.task_id: e for e in estimates}


async def estimate_tokens(task: Task, provider_id: str) -> TokenEstimate:
    """Estimate one task with a default estimator."""
    return await TokenEstimator().estimate(task, provider_id)
