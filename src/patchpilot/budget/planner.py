"""Budget planner: split tasks into a selected set and a deferred set."""

import logging
import math
from typing import Any, Mapping, Sequence

from patchpilot.core.events import EventBus, PlanBuilt
from patchpilot.core.models import (
    DeferredReason,
    DeferredTask,
    ExecutionPlan,
    SelectedTask,
    Task,
    TaskComplexity,
    TokenEstimate,
)

logger = logging.getLogger(__name__)

DEFAULT_RESERVE_PERCENT = 0.10
MIN_CONFIDENCE = 0.5
TOO_COMPLEX_BUDGET_SHARE = 0.6


def normalize_budget(budget: Any) -> int:
    """Non-numeric, non-finite or non-positive budgets become 0."""
    if isinstance(budget, bool) or not isinstance(budget, (int, float)):
        return 0
    if not math.isfinite(budget) or budget <= 0:
        return 0
    return math.floor(budget)


def classify(task: Task, estimate: TokenEstimate, effective_budget: int) -> DeferredReason | None:
    """Reason a task can't be a candidate at all, or None."""
    if not estimate.feasible:
        return DeferredReason.BUDGET_EXCEEDED
    if estimate.confidence < MIN_CONFIDENCE:
        return DeferredReason.LOW_CONFIDENCE
    if (
        task.complexity == TaskComplexity.COMPLEX
        and effective_budget > 0
        and estimate.total_estimated_tokens > effective_budget * TOO_COMPLEX_BUDGET_SHARE
    ):
        return DeferredReason.TOO_COMPLEX
    return None


def priority_per_token(task: Task, estimate: TokenEstimate) -> float:
    if estimate.total_estimated_tokens <= 0:
        return float(task.priority)
    return task.priority / estimate.total_estimated_tokens


def build_execution_plan(
    tasks: Sequence[Task],
    estimates: Mapping[str, TokenEstimate],
    total_budget: Any,
    reserve_percent: float = DEFAULT_RESERVE_PERCENT,
    event_bus: EventBus | None = None,
) -> ExecutionPlan:
    """Greedily select tasks by priority per token within the budget.

    A share of the budget (10% by default) is held back for retries. The
    selection is a single pass: once a candidate would overflow the
    effective budget, it and every lower-ranked candidate are deferred.
    """
    total = normalize_budget(total_budget)
    reserve = math.floor(total * reserve_percent)
    effective = max(0, total - reserve)

    deferred: list[DeferredTask] = []
    candidates: list[tuple[Task, TokenEstimate]] = []

    for task in tasks:
        estimate = estimates.get(task.id) or TokenEstimate.infeasible(task)
        reason = classify(task, estimate, effective)
        if reason is not None:
            deferred.append(DeferredTask(task, estimate, reason))
        else:
            candidates.append((task, estimate))

    candidates.sort(
        key=lambda c: (
            -priority_per_token(c[0], c[1]),
            -c[0].priority,
            c[1].total_estimated_tokens,
        )
    )

    selected: list[SelectedTask] = []
    used = 0
    overflowed = False

    for task, estimate in candidates:
        if not overflowed and used + estimate.total_estimated_tokens <= effective:
            used += estimate.total_estimated_tokens
            selected.append(SelectedTask(task, estimate, used))
            continue
        overflowed = True
        deferred.append(DeferredTask(task, estimate, DeferredReason.BUDGET_EXCEEDED))

    plan = ExecutionPlan(
        total_budget=total,
        reserve_tokens=reserve,
        remaining_tokens=max(0, effective - used),
        selected_tasks=tuple(selected),
        deferred_tasks=tuple(deferred),
    )

    logger.info(
        "Planned %d task(s), deferred %d, %d of %d tokens remaining",
        len(selected),
        len(deferred),
        plan.remaining_tokens,
        total,
    )
    if event_bus is not None:
        event_bus.publish(
            PlanBuilt(
                total_budget=total,
                selected=len(selected),
                deferred=len(deferred),
                remaining_tokens=plan.remaining_tokens,
            )
        )
    return plan
