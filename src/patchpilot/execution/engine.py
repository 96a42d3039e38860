"""Execution engine: run planned tasks through agents under bounded concurrency."""

import asyncio
import itertools
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from patchpilot.agents.protocol import AgentProvider
from patchpilot.config.schema import ExecutionConfig
from patchpilot.core.errors import (
    ErrorCode,
    PatchPilotError,
    SandboxError,
    execution_error,
    normalize_execution_error,
)
from patchpilot.core.events import (
    EventBus,
    JobAborted,
    JobCompleted,
    JobFailed,
    JobQueued,
    JobStarted,
    bus,
)
from patchpilot.core.models import (
    ExecutionPlan,
    ExecutionResult,
    Job,
    JobStatus,
    RunResult,
    RunSummary,
    Task,
    utcnow,
)
from patchpilot.execution.retry import CircuitBreaker, calculate_backoff, is_transient_error
from patchpilot.execution.sandbox import SandboxContext, SandboxManager
from patchpilot.execution.summary import build_run_summary
from patchpilot.execution.worker import execute_task

logger = logging.getLogger(__name__)

CompletionHook = Callable[[Job, ExecutionResult, SandboxContext], Awaitable[None]]

_BRANCH_UNSAFE_RE = re.compile(r"[^a-z0-9/_-]+")
_DASHES_RE = re.compile(r"-+")


def sanitize_branch_segment(value: str) -> str:
    """Lowercase ``value`` and squeeze it into characters safe for a branch name."""
    sanitized = _DASHES_RE.sub("-", _BRANCH_UNSAFE_RE.sub("-", value.lower())).strip("-/")
    return sanitized or "task"


@dataclass
class _ActiveJob:
    job: Job
    agent: AgentProvider
    attempt: "asyncio.Task[None]"
    sandbox: SandboxContext | None = None
    # False once the attempt is tearing down; abort must not interrupt cleanup
    cancellable: bool = True


class ExecutionEngine:
    """Drives sandboxes and agents across many jobs.

    Jobs are pulled in task-priority order by ``concurrency`` worker
    coroutines. Each attempt runs in a fresh sandbox; transient failures are
    re-queued with backoff until ``1 + max_retries`` attempts are used.
    Every state change is published on the event bus.
    """

    def __init__(
        self,
        agents: Sequence[AgentProvider],
        event_bus: EventBus | None = None,
        config: ExecutionConfig | None = None,
        repo_path: Path | str | None = None,
        sandbox_manager: SandboxManager | None = None,
        on_job_complete: CompletionHook | None = None,
    ) -> None:
        if not agents:
            raise execution_error(
                ErrorCode.AGENT_NOT_AVAILABLE,
                "ExecutionEngine requires at least one agent provider",
            )

        self.agents = list(agents)
        self.event_bus = event_bus or bus
        self.config = config or ExecutionConfig()
        self.repo_path = Path(repo_path) if repo_path else Path.cwd()
        self.sandbox_manager = sandbox_manager or SandboxManager()
        self.on_job_complete = on_job_complete

        self._jobs: dict[str, Job] = {}
        self._queue: asyncio.PriorityQueue[tuple[int, int, Job]] = asyncio.PriorityQueue()
        self._seq = itertools.count()
        self._active: dict[str, _ActiveJob] = {}
        self._retry_timers: set[asyncio.Task[None]] = set()
        self._finished: set[str] = set()
        self._idle = asyncio.Event()
        self._breakers = {
            agent.id: CircuitBreaker(
                failure_threshold=self.config.circuit_failure_threshold,
                reset_timeout=self.config.circuit_reset_timeout,
            )
            for agent in self.agents
        }
        self._available: list[AgentProvider] = list(self.agents)
        self._next_agent = 0
        self._aborted = False
        self.started_at: datetime | None = None
        self.completed_at: datetime | None = None

    @property
    def jobs(self) -> list[Job]:
        return list(self._jobs.values())

    def circuit_for(self, agent: AgentProvider) -> CircuitBreaker:
        return self._breakers[agent.id]

    def enqueue(self, plan: ExecutionPlan) -> list[Job]:
        """Create one queued job per selected task."""
        jobs = []
        for selected in plan.selected_tasks:
            job = Job(
                id=str(uuid.uuid4()),
                task=selected.task,
                estimate=selected.estimate,
                max_attempts=self.config.max_attempts,
            )
            self._jobs[job.id] = job
            jobs.append(job)
            self._put(job)
        return jobs

    def _put(self, job: Job) -> None:
        self._queue.put_nowait((-job.task.priority, next(self._seq), job))
        self.event_bus.publish(JobQueued(job_id=job.id, task_id=job.task.id, priority=job.task.priority))

    def _outstanding(self) -> int:
        return len(self._jobs) - len(self._finished)

    async def run(self) -> RunResult:
        """Run every queued job to a terminal state."""
        self._aborted = False
        self.started_at = utcnow()
        self._available = await self._check_agents()
        if not self._available:
            raise execution_error(
                ErrorCode.AGENT_NOT_AVAILABLE,
                "No agent provider is available",
                context={"providers": [a.id for a in self.agents]},
            )

        if self._outstanding() > 0:
            self._idle.clear()
            workers = [
                asyncio.create_task(self._worker(i), name=f"patchpilot-worker-{i}")
                for i in range(self.config.concurrency)
            ]
            try:
                await self._idle.wait()
            finally:
                for worker in workers:
                    worker.cancel()
                await asyncio.gather(*workers, return_exceptions=True)

        self.completed_at = utcnow()
        result = RunResult(jobs=self.jobs)
        logger.info(
            "Run finished: %d completed, %d failed, %d aborted",
            len(result.completed),
            len(result.failed),
            len(result.aborted),
        )
        return result

    async def _check_agents(self) -> list[AgentProvider]:
        checks = await asyncio.gather(
            *(agent.check_availability() for agent in self.agents), return_exceptions=True
        )
        available = []
        for agent, check in zip(self.agents, checks):
            if isinstance(check, BaseException):
                logger.warning("Availability check for %s failed: %s", agent.id, check)
            elif check.available:
                available.append(agent)
            else:
                logger.warning("Agent %s unavailable: %s", agent.id, check.error)
        return available

    def _select_agent(self) -> AgentProvider:
        """Round-robin over available agents whose circuit is not open."""
        healthy = [a for a in self._available if not self._breakers[a.id].is_open()]
        candidates = healthy or self._available
        agent = candidates[self._next_agent % len(candidates)]
        self._next_agent += 1
        return agent

    def branch_name_for(self, job: Job) -> str:
        date = datetime.now(timezone.utc).strftime("%Y%m%d")
        task_segment = sanitize_branch_segment(job.task.id)
        return f"{self.config.branch_prefix}/{date}/{task_segment}-{job.id[:8]}-a{job.attempts}"

    async def _worker(self, index: int) -> None:
        while True:
            _, _, job = await self._queue.get()
            if job.status != JobStatus.QUEUED or self._aborted:
                continue

            attempt = asyncio.create_task(self._run_job(job), name=f"patchpilot-job-{job.id[:8]}")
            try:
                await attempt
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Bookkeeping bug, not an agent failure; don't leave run() waiting
                logger.exception("Worker %d lost job %s", index, job.id)
                self._fail(job, normalize_execution_error(e, job_id=job.id, task_id=job.task.id))
                self._finish(job)

    async def _run_job(self, job: Job) -> None:
        # abort() may have run between dequeue and start
        if job.status != JobStatus.QUEUED or self._aborted:
            return
        job.attempts += 1
        job.status = JobStatus.RUNNING
        job.started_at = job.started_at or utcnow()
        job.branch_name = self.branch_name_for(job)

        agent = self._select_agent()
        job.worker_id = agent.id
        breaker = self._breakers[agent.id]
        active = _ActiveJob(job=job, agent=agent, attempt=asyncio.current_task())
        self._active[job.id] = active

        self.event_bus.publish(
            JobStarted(job_id=job.id, task_id=job.task.id, attempt=job.attempts, provider_id=agent.id)
        )
        logger.info("Job %s (%s) attempt %d on %s", job.id[:8], job.task.id, job.attempts, agent.id)

        try:
            active.sandbox = await self.sandbox_manager.create(
                self.repo_path, job.branch_name, self.config.base_branch
            )
            result = await execute_task(
                agent,
                job.task,
                active.sandbox,
                self.event_bus,
                job_id=job.id,
                execution_id=job.id,
                token_budget=job.estimate.total_estimated_tokens
                if job.estimate.total_estimated_tokens > 0
                else self.config.default_token_budget,
                timeout=self.config.task_timeout,
                allow_commits=self.config.allow_commits,
            )
            job.result = result
            job.tokens_used += result.total_tokens_used

            if result.success:
                breaker.record_success()
                await self._complete(job, result, active.sandbox)
            else:
                breaker.record_failure()
                self._handle_failure(
                    job,
                    execution_error(
                        ErrorCode.AGENT_EXECUTION_FAILED,
                        result.error or f"Task {job.task.id} exited with code {result.exit_code}.",
                        context={
                            "task_id": job.task.id,
                            "job_id": job.id,
                            "exit_code": result.exit_code,
                            "attempt": job.attempts,
                        },
                    ),
                )
        except asyncio.CancelledError:
            if job.status != JobStatus.ABORTED:
                self._mark_aborted(job, JobStatus.RUNNING)
                raise
        except Exception as e:
            if not isinstance(e, SandboxError):
                breaker.record_failure()
            error = normalize_execution_error(e, job_id=job.id, task_id=job.task.id, attempt=job.attempts)
            job.tokens_used += error.context.get("tokens_used", 0)
            self._handle_failure(job, error)
        finally:
            active.cancellable = False
            self._active.pop(job.id, None)
            try:
                if active.sandbox is not None:
                    await self._cleanup(job, active.sandbox)
            finally:
                if job.status.is_terminal:
                    self._finish(job)

    async def _complete(self, job: Job, result: ExecutionResult, sandbox: SandboxContext) -> None:
        if job.status == JobStatus.ABORTED:
            return
        job.status = JobStatus.COMPLETED
        job.completed_at = utcnow()
        self.event_bus.publish(
            JobCompleted(
                job_id=job.id,
                task_id=job.task.id,
                attempt=job.attempts,
                tokens_used=result.total_tokens_used,
                files_changed=tuple(result.files_changed),
                duration=result.duration,
            )
        )

        if self.on_job_complete is None:
            return
        try:
            await self.on_job_complete(job, result, sandbox)
        except Exception:
            logger.exception("Completion handler failed for job %s", job.id)

    def _handle_failure(self, job: Job, error: PatchPilotError) -> None:
        if self._aborted or job.status == JobStatus.ABORTED:
            return
        job.error = error

        if job.attempts < job.max_attempts and is_transient_error(error):
            delay = calculate_backoff(
                job.attempts - 1,
                base=self.config.retry_base_delay,
                cap=self.config.retry_max_delay,
                jitter=self.config.retry_jitter,
            )
            job.status = JobStatus.QUEUED
            self.event_bus.publish(
                JobFailed(
                    job_id=job.id,
                    task_id=job.task.id,
                    attempt=job.attempts,
                    error_code=error.code.value,
                    message=error.message,
                    will_retry=True,
                )
            )
            logger.info("Retrying job %s in %.1fs after %s", job.id[:8], delay, error.code.value)
            self._schedule_retry(job, delay)
            return

        self._fail(job, error)

    def _fail(self, job: Job, error: PatchPilotError) -> None:
        job.status = JobStatus.FAILED
        job.completed_at = utcnow()
        job.error = error
        self.event_bus.publish(
            JobFailed(
                job_id=job.id,
                task_id=job.task.id,
                attempt=job.attempts,
                error_code=error.code.value,
                message=error.message,
            )
        )
        logger.warning("Job %s (%s) failed: %s", job.id[:8], job.task.id, error)

    def _schedule_retry(self, job: Job, delay: float) -> None:
        async def requeue() -> None:
            await asyncio.sleep(delay)
            if job.status == JobStatus.QUEUED and not self._aborted:
                self._put(job)

        timer = asyncio.create_task(requeue())
        self._retry_timers.add(timer)
        timer.add_done_callback(self._retry_timers.discard)

    async def _cleanup(self, job: Job, sandbox: SandboxContext) -> None:
        try:
            await sandbox.cleanup()
        except Exception as e:
            logger.warning("Sandbox cleanup failed for job %s (%s): %s", job.id[:8], sandbox.path, e)

    def _mark_aborted(self, job: Job, previous: JobStatus) -> None:
        job.status = JobStatus.ABORTED
        job.completed_at = utcnow()
        job.error = execution_error(
            ErrorCode.AGENT_EXECUTION_FAILED,
            "Execution aborted by user.",
            context={"job_id": job.id, "task_id": job.task.id, "attempt": job.attempts},
        )
        self.event_bus.publish(JobAborted(job_id=job.id, task_id=job.task.id, previous_status=previous))

    def _finish(self, job: Job) -> None:
        if job.id in self._finished:
            return
        self._finished.add(job.id)
        if self._outstanding() == 0:
            self._idle.set()

    async def abort(self) -> None:
        """Cancel the run.

        Queued jobs (including those waiting to retry) become aborted without
        starting. Running jobs are aborted at the agent and their sandboxes
        cleaned up before this returns.
        """
        self._aborted = True
        for timer in list(self._retry_timers):
            timer.cancel()

        for job in self._jobs.values():
            if job.status == JobStatus.QUEUED:
                self._mark_aborted(job, JobStatus.QUEUED)
                self._finish(job)

        active = [e for e in self._active.values() if e.job.status == JobStatus.RUNNING]
        for entry in active:
            self._mark_aborted(entry.job, JobStatus.RUNNING)
        await asyncio.gather(*(self._abort_active(entry) for entry in active))

    async def _abort_active(self, entry: _ActiveJob) -> None:
        try:
            await entry.agent.abort(entry.job.id)
        except Exception as e:
            logger.warning("Agent %s failed to abort %s: %s", entry.agent.id, entry.job.id[:8], e)

        if entry.cancellable and not entry.attempt.done():
            entry.attempt.cancel()
        # The attempt's own cleanup removes the sandbox
        await asyncio.gather(entry.attempt, return_exceptions=True)

    def summarize(self, plan: ExecutionPlan, discovered: Sequence[Task] | None = None) -> RunSummary:
        """Batch summary of the last run for the contribution log."""
        return build_run_summary(
            plan=plan,
            jobs=self.jobs,
            provider_ids=[a.id for a in self.agents],
            started_at=self.started_at or utcnow(),
            completed_at=self.completed_at or utcnow(),
            discovered=len(discovered) if discovered is not None else None,
        )
