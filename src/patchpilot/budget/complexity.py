"""Heuristic complexity analysis for discovered tasks."""

import math
from typing import Any

from patchpilot.core.models import Task, TaskComplexity, TaskSource

# Typical lines changed for a task from each source
SOURCE_LOC_BASELINE: dict[TaskSource, int] = {
    TaskSource.LINT: 8,
    TaskSource.TODO: 16,
    TaskSource.TEST_GAP: 48,
    TaskSource.DEAD_CODE: 36,
    TaskSource.GITHUB_ISSUE: 88,
    TaskSource.GITHUB_PR_REVIEW: 56,
    TaskSource.CUSTOM: 40,
}

SOURCE_COMPLEXITY_SCORE: dict[TaskSource, int] = {
    TaskSource.LINT: 0,
    TaskSource.TODO: 0,
    TaskSource.TEST_GAP: 1,
    TaskSource.DEAD_CODE: 1,
    TaskSource.GITHUB_ISSUE: 2,
    TaskSource.GITHUB_PR_REVIEW: 2,
    TaskSource.CUSTOM: 1,
}

ESTIMATED_LOC_KEYS = (
    "estimatedLoc",
    "estimatedLOC",
    "estimatedLocChanges",
    "estimatedDiffSize",
    "estimated_loc",
    "loc",
    "locChanges",
    "linesChanged",
    "lines_changed",
    "lineCount",
    "diffSize",
    "changeSize",
)


def _parse_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isfinite(number) and number >= 0:
        return number
    return None


def _metadata_loc(metadata: dict[str, Any]) -> float | None:
    for source in (metadata, metadata.get("metrics")):
        if not isinstance(source, dict):
            continue
        for key in ESTIMATED_LOC_KEYS:
            value = _parse_number(source.get(key))
            if value is not None:
                return value
    return None


def estimate_loc_changes(task: Task) -> int:
    """Estimate lines of code a task will touch."""
    from_metadata = _metadata_loc(task.metadata)
    if from_metadata is not None:
        return max(1, math.floor(from_metadata + 0.5))

    baseline = SOURCE_LOC_BASELINE.get(task.source, SOURCE_LOC_BASELINE[TaskSource.CUSTOM])
    return max(baseline, max(len(task.target_files), 1) * 8)


def _file_score(file_count: int) -> int:
    if file_count <= 1:
        return 0
    if file_count <= 3:
        return 1
    if file_count <= 6:
        return 2
    return 3


def _loc_score(loc: int) -> int:
    if loc <= 20:
        return 0
    if loc <= 80:
        return 1
    if loc <= 200:
        return 2
    return 3


def analyze_task_complexity(task: Task) -> TaskComplexity:
    """Score a task by file count, expected LOC and source.

    Scores add up to 0-8: <=1 trivial, <=3 simple, <=6 moderate, else complex.
    """
    score = (
        _file_score(len(task.target_files))
        + _loc_score(estimate_loc_changes(task))
        + SOURCE_COMPLEXITY_SCORE.get(task.source, SOURCE_COMPLEXITY_SCORE[TaskSource.CUSTOM])
    )

    if score <= 1:
        return TaskComplexity.TRIVIAL
    if score <= 3:
        return TaskComplexity.SIMPLE
    if score <= 6:
        return TaskComplexity.MODERATE
    return TaskComplexity.COMPLEX
