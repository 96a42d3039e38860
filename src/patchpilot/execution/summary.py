"""Batch-level run summary handed to contribution tracking."""

import uuid
from datetime import datetime
from typing import Sequence

from patchpilot.core.errors import PatchPilotError
from patchpilot.core.models import ExecutionPlan, Job, JobStatus, RunSummary


def build_run_summary(
    plan: ExecutionPlan,
    jobs: Sequence[Job],
    provider_ids: Sequence[str],
    started_at: datetime,
    completed_at: datetime,
    discovered: int | None = None,
    run_id: str | None = None,
) -> RunSummary:
    """Summarize budget use, task outcomes and changed files for one run."""
    counts = {status: 0 for status in JobStatus}
    for job in jobs:
        counts[job.status] += 1

    used = sum(job.tokens_used for job in jobs)

    files: dict[str, None] = {}
    failures = []
    for job in jobs:
        if job.status == JobStatus.COMPLETED and job.result is not None:
            files.update(dict.fromkeys(job.result.files_changed))
        elif job.status == JobStatus.FAILED:
            error = job.error
            failures.append(
                {
                    "task_id": job.task.id,
                    "job_id": job.id,
                    "attempts": job.attempts,
                    "code": error.code.value if isinstance(error, PatchPilotError) else None,
                    "message": str(error) if error is not None else None,
                }
            )

    selected = len(plan.selected_tasks)
    return RunSummary(
        run_id=run_id or str(uuid.uuid4()),
        provider_ids=list(provider_ids),
        started_at=started_at,
        completed_at=completed_at,
        budget={
            "total": plan.total_budget,
            "reserve": plan.reserve_tokens,
            "estimated": plan.selected_tokens,
            "used": used,
            "remaining": max(0, plan.total_budget - used),
        },
        tasks={
            "discovered": discovered if discovered is not None else selected + len(plan.deferred_tasks),
            "selected": selected,
            "deferred": len(plan.deferred_tasks),
            "attempted": sum(1 for job in jobs if job.attempts > 0),
            "succeeded": counts[JobStatus.COMPLETED],
            "failed": counts[JobStatus.FAILED],
            "aborted": counts[JobStatus.ABORTED],
        },
        files_changed=list(files),
        failures=failures,
    )
