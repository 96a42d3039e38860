"""Token estimation and budget planning."""

from patchpilot.budget.counters import TokenCounter, get_token_counter
from patchpilot.budget.estimator import TokenEstimator, estimate_tokens
from patchpilot.budget.planner import build_execution_plan

__all__ = [
    "TokenCounter",
    "TokenEstimator",
    "build_execution_plan",
    "estimate_tokens",
    "get_token_counter",
]
