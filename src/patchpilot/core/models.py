"""Core data models for planning and executing contribution tasks."""

import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class TaskComplexity(str, Enum):
    """Declared or analyzed size of a task."""

    TRIVIAL = "trivial"
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"

    @property
    def rank(self) -> int:
        return _COMPLEXITY_ORDER.index(self)


_COMPLEXITY_ORDER = [
    TaskComplexity.TRIVIAL,
    TaskComplexity.SIMPLE,
    TaskComplexity.MODERATE,
    TaskComplexity.COMPLEX,
]


class TaskSource(str, Enum):
    """Where the task was discovered."""

    LINT = "lint"
    TODO = "todo"
    TEST_GAP = "test-gap"
    DEAD_CODE = "dead-code"
    GITHUB_ISSUE = "github-issue"
    GITHUB_PR_REVIEW = "github-pr-review"
    CUSTOM = "custom"


class ExecutionMode(str, Enum):
    """How the resulting change is delivered."""

    NEW_PR = "new-pr"
    UPDATE_PR = "update-pr"
    DIRECT_COMMIT = "direct-commit"


class DeferredReason(str, Enum):
    """Why a task was left out of the plan."""

    BUDGET_EXCEEDED = "budget_exceeded"
    LOW_CONFIDENCE = "low_confidence"
    TOO_COMPLEX = "too_complex"


class JobStatus(str, Enum):
    """Lifecycle state of a job."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ABORTED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LinkedIssue:
    """Issue a task was created from."""

    number: int
    url: str = ""
    labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class Task:
    """A discrete unit of proposed work. Immutable input from discovery."""

    id: str
    title: str
    source: TaskSource = TaskSource.CUSTOM
    description: str = ""
    target_files: tuple[str, ...] = ()
    priority: int = 50
    complexity: TaskComplexity = TaskComplexity.SIMPLE
    execution_mode: ExecutionMode = ExecutionMode.NEW_PR
    metadata: dict[str, Any] = field(default_factory=dict)
    discovered_at: datetime = field(default_factory=utcnow)
    linked_issue: LinkedIssue | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Build a task from discovery output (camelCase or snake_case keys)."""

        def pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        discovered = pick("discovered_at", "discoveredAt")
        if isinstance(discovered, str):
            discovered = datetime.fromisoformat(discovered.replace("Z", "+00:00"))

        issue_data = pick("linked_issue", "linkedIssue")
        linked_issue = None
        if isinstance(issue_data, dict):
            linked_issue = LinkedIssue(
                number=int(issue_data["number"]),
                url=issue_data.get("url", ""),
                labels=tuple(issue_data.get("labels", ())),
            )

        return cls(
            id=str(data["id"]),
            title=str(pick("title", default="")),
            source=TaskSource(pick("source", default=TaskSource.CUSTOM.value)),
            description=str(pick("description", default="")),
            target_files=tuple(pick("target_files", "targetFiles", default=())),
            priority=int(pick("priority", default=50)),
            complexity=TaskComplexity(pick("complexity", default=TaskComplexity.SIMPLE.value)),
            execution_mode=ExecutionMode(
                pick("execution_mode", "executionMode", default=ExecutionMode.NEW_PR.value)
            ),
            metadata=dict(pick("metadata", default={})),
            discovered_at=discovered or utcnow(),
            linked_issue=linked_issue,
        )


@dataclass(frozen=True)
class TokenEstimate:
    """Estimated token cost of one task under one provider."""

    task_id: str
    provider_id: str
    context_tokens: int
    prompt_tokens: int
    expected_output_tokens: int
    total_estimated_tokens: int
    confidence: float  # 0.0 - 1.0
    feasible: bool

    @classmethod
    def infeasible(cls, task: Task) -> "TokenEstimate":
        """Fallback used when a task has no estimate."""
        return cls(
            task_id=task.id,
            provider_id="unknown",
            context_tokens=0,
            prompt_tokens=0,
            expected_output_tokens=0,
            total_estimated_tokens=sys.maxsize,
            confidence=0.0,
            feasible=False,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "provider_id": self.provider_id,
            "context_tokens": self.context_tokens,
            "prompt_tokens": self.prompt_tokens,
            "expected_output_tokens": self.expected_output_tokens,
            "total_estimated_tokens": self.total_estimated_tokens,
            "confidence": self.confidence,
            "feasible": self.feasible,
        }


@dataclass(frozen=True)
class SelectedTask:
    task: Task
    estimate: TokenEstimate
    cumulative_budget_used: int


@dataclass(frozen=True)
class DeferredTask:
    task: Task
    estimate: TokenEstimate
    reason: DeferredReason


@dataclass(frozen=True)
class ExecutionPlan:
    """Immutable snapshot of one planning pass."""

    total_budget: int
    reserve_tokens: int
    remaining_tokens: int
    selected_tasks: tuple[SelectedTask, ...] = ()
    deferred_tasks: tuple[DeferredTask, ...] = ()

    @property
    def effective_budget(self) -> int:
        return max(0, self.total_budget - self.reserve_tokens)

    @property
    def selected_tokens(self) -> int:
        return sum(s.estimate.total_estimated_tokens for s in self.selected_tasks)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for display."""
        return {
            "total_budget": self.total_budget,
            "reserve_tokens": self.reserve_tokens,
            "remaining_tokens": self.remaining_tokens,
            "selected": [
                {
                    "task_id": s.task.id,
                    "tokens": s.estimate.total_estimated_tokens,
                    "cumulative_budget_used": s.cumulative_budget_used,
                }
                for s in self.selected_tasks
            ],
            "deferred": [
                {"task_id": d.task.id, "reason": d.reason.value}
                for d in self.deferred_tasks
            ],
        }


@dataclass
class ExecutionResult:
    """Terminal result of one job attempt, handed to the completion step."""

    success: bool
    exit_code: int
    total_tokens_used: int = 0
    files_changed: list[str] = field(default_factory=list)
    duration: float = 0.0  # seconds
    error: str | None = None


@dataclass
class Job:
    """One task moving through the execution engine.

    A job keeps its id across retries; each attempt gets a fresh sandbox
    and a branch suffixed with the attempt number.
    """

    id: str
    task: Task
    estimate: TokenEstimate
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 3
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: ExecutionResult | None = None
    error: Exception | None = None
    worker_id: str | None = None
    branch_name: str | None = None
    # Summed over every attempt, including ones that were retried
    tokens_used: int = 0


@dataclass
class RunResult:
    """Outcome of one ExecutionEngine.run() call."""

    jobs: list[Job] = field(default_factory=list)

    def _with_status(self, status: JobStatus) -> list[Job]:
        return [job for job in self.jobs if job.status == status]

    @property
    def completed(self) -> list[Job]:
        return self._with_status(JobStatus.COMPLETED)

    @property
    def failed(self) -> list[Job]:
        return self._with_status(JobStatus.FAILED)

    @property
    def aborted(self) -> list[Job]:
        return self._with_status(JobStatus.ABORTED)


@dataclass
class RunSummary:
    """Batch-level summary for the contribution log."""

    run_id: str
    provider_ids: list[str]
    started_at: datetime
    completed_at: datetime
    budget: dict[str, int] = field(default_factory=dict)
    tasks: dict[str, int] = field(default_factory=dict)
    files_changed: list[str] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)

    @property
    def duration(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "provider_ids": list(self.provider_ids),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration": self.duration,
            "budget": dict(self.budget),
            "tasks": dict(self.tasks),
            "files_changed": list(self.files_changed),
            "failures": list(self.failures),
        }
