"""Tests for ExecutionEngine."""
import asyncio
import logging

import pytest

from conftest import HANG, FakeAgent, FakeGit, SlowAbortAgent, make_estimate, make_task
from patchpilot.agents.protocol import TokenEvent
from patchpilot.config.schema import ExecutionConfig
from patchpilot.core.errors import ErrorCode, PatchPilotError, SandboxError, execution_error
from patchpilot.core.events import (
    EventBus,
    JobAborted,
    JobCompleted,
    JobEvent,
    JobFailed,
    JobStarted,
)
from patchpilot.core.models import ExecutionPlan, ExecutionResult, JobStatus, SelectedTask
from patchpilot.execution.engine import ExecutionEngine, sanitize_branch_segment
from patchpilot.execution.sandbox import SandboxManager


def make_plan(*tasks):
    selected = []
    used = 0
    for task in tasks:
        estimate = make_estimate(task.id, 1_000)
        used += 1_000
        selected.append(SelectedTask(task, estimate, used))
    return ExecutionPlan(
        total_budget=100_000,
        reserve_tokens=10_000,
        remaining_tokens=90_000 - used,
        selected_tasks=tuple(selected),
    )


def fast_config(**overrides):
    fields = {"retry_base_delay": 0.0, "retry_jitter": 0.0, "concurrency": 2}
    fields.update(overrides)
    return ExecutionConfig(**fields)


def make_engine(agents, repo_path, git=None, bus=None, **kwargs):
    config = kwargs.pop("config", None) or fast_config()
    return ExecutionEngine(
        agents,
        event_bus=bus or EventBus(),
        config=config,
        repo_path=repo_path,
        sandbox_manager=SandboxManager(git=git or FakeGit()),
        **kwargs,
    )


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def test_requires_an_agent(repo_path):
    with pytest.raises(PatchPilotError) as exc_info:
        ExecutionEngine([], repo_path=repo_path)
    assert exc_info.value.code == ErrorCode.AGENT_NOT_AVAILABLE


def test_sanitize_branch_segment():
    assert sanitize_branch_segment("Lint: Fix #12!") == "lint-fix-12"
    assert sanitize_branch_segment("***") == "task"


@pytest.mark.asyncio
async def test_runs_all_jobs_to_completion(repo_path):
    git = FakeGit()
    bus = EventBus()
    events = []
    bus.subscribe(JobEvent, events.append)
    engine = make_engine([FakeAgent()], repo_path, git=git, bus=bus)

    jobs = engine.enqueue(make_plan(make_task("a"), make_task("b")))
    result = await engine.run()

    assert len(result.completed) == 2
    assert all(job.attempts == 1 for job in jobs)
    assert all(job.result.total_tokens_used == 100 for job in jobs)
    assert git.commands().count("worktree add") == 2
    assert git.commands().count("worktree remove") == 2
    assert sum(isinstance(e, JobCompleted) for e in events) == 2


@pytest.mark.asyncio
async def test_branch_name_includes_task_and_attempt(repo_path):
    git = FakeGit()
    engine = make_engine([FakeAgent()], repo_path, git=git)
    [job] = engine.enqueue(make_plan(make_task("Lint 42")))

    await engine.run()

    assert job.branch_name.startswith("patchpilot/")
    assert job.branch_name.endswith(f"/lint-42-{job.id[:8]}-a1")
    add_args = git.calls[0][0]
    assert add_args[4] == job.branch_name
    assert add_args[5] == "origin/main"


@pytest.mark.asyncio
async def test_transient_failure_is_retried(repo_path):
    git = FakeGit()
    bus = EventBus()
    failures = []
    bus.subscribe(JobFailed, failures.append)
    agent = FakeAgent(outcomes=[asyncio.TimeoutError(), ExecutionResult(success=True, exit_code=0)])
    engine = make_engine([agent], repo_path, git=git, bus=bus)
    [job] = engine.enqueue(make_plan(make_task("a")))

    result = await engine.run()

    assert result.completed == [job]
    assert job.attempts == 2
    assert len(agent.calls) == 2
    assert [f.will_retry for f in failures] == [True]
    branches = [args[4] for args, _ in git.calls if args[:2] == ["worktree", "add"]]
    assert branches[0].endswith("-a1")
    assert branches[1].endswith("-a2")


@pytest.mark.asyncio
async def test_tokens_from_retried_attempts_are_counted(repo_path):
    agent = FakeAgent(
        outcomes=[asyncio.TimeoutError(), ExecutionResult(success=True, exit_code=0, total_tokens_used=100)],
        events=[TokenEvent(200, 100, 300)],
    )
    engine = make_engine([agent], repo_path)
    plan = make_plan(make_task("a"))
    [job] = engine.enqueue(plan)

    await engine.run()

    assert job.attempts == 2
    assert job.tokens_used == 600
    assert engine.summarize(plan).budget["used"] == 600


@pytest.mark.asyncio
async def test_no_job_exceeds_three_attempts(repo_path):
    agent = FakeAgent(outcomes=[asyncio.TimeoutError()])
    engine = make_engine([agent], repo_path)
    [job] = engine.enqueue(make_plan(make_task("a")))

    result = await engine.run()

    assert result.failed == [job]
    assert job.attempts == 3
    assert len(agent.calls) == 3
    assert job.error.code == ErrorCode.AGENT_TIMEOUT


@pytest.mark.asyncio
async def test_max_retries_is_configurable(repo_path):
    agent = FakeAgent(outcomes=[execution_error(ErrorCode.NETWORK_ERROR, "offline")])
    engine = make_engine([agent], repo_path, config=fast_config(max_retries=0))
    [job] = engine.enqueue(make_plan(make_task("a")))

    await engine.run()

    assert job.status == JobStatus.FAILED
    assert job.attempts == 1


@pytest.mark.asyncio
async def test_fatal_error_is_not_retried(repo_path):
    agent = FakeAgent(outcomes=[ValueError("syntax error in patch")])
    engine = make_engine([agent], repo_path)
    [job] = engine.enqueue(make_plan(make_task("a")))

    await engine.run()

    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert job.error.code == ErrorCode.AGENT_EXECUTION_FAILED


@pytest.mark.asyncio
async def test_unsuccessful_result_fails_job(repo_path):
    agent = FakeAgent(outcomes=[ExecutionResult(success=False, exit_code=2, error="tests failed")])
    engine = make_engine([agent], repo_path)
    [job] = engine.enqueue(make_plan(make_task("a")))

    await engine.run()

    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert job.error.message == "tests failed"
    assert job.error.context["exit_code"] == 2


@pytest.mark.asyncio
async def test_abort_before_run_leaves_attempts_at_zero(repo_path):
    bus = EventBus()
    aborted = []
    bus.subscribe(JobAborted, aborted.append)
    agent = FakeAgent()
    engine = make_engine([agent], repo_path, bus=bus)
    jobs = engine.enqueue(make_plan(make_task("a"), make_task("b")))

    await engine.abort()
    result = await engine.run()

    assert len(result.aborted) == 2
    assert all(job.attempts == 0 for job in jobs)
    assert agent.calls == []
    assert [e.previous_status for e in aborted] == [JobStatus.QUEUED, JobStatus.QUEUED]


@pytest.mark.asyncio
async def test_abort_during_run(repo_path):
    git = FakeGit()
    agent = FakeAgent(outcomes=[HANG])
    engine = make_engine([agent], repo_path, git=git, config=fast_config(concurrency=1))
    first, second = engine.enqueue(make_plan(make_task("a", priority=90), make_task("b", priority=10)))

    run = asyncio.create_task(engine.run())
    await wait_until(lambda: len(agent.calls) == 1)
    await engine.abort()
    result = await asyncio.wait_for(run, timeout=2)

    assert len(result.aborted) == 2
    assert first.attempts == 1
    assert second.attempts == 0
    assert agent.aborted == [first.id]
    assert git.commands().count("worktree remove") == 1


@pytest.mark.asyncio
async def test_abort_does_not_interrupt_cleanup(repo_path):
    git = FakeGit(delays={"worktree remove": 0.3})
    agent = SlowAbortAgent(outcomes=[HANG])
    engine = make_engine([agent], repo_path, git=git, config=fast_config(concurrency=1))
    [job] = engine.enqueue(make_plan(make_task("a")))

    run = asyncio.create_task(engine.run())
    await wait_until(lambda: len(agent.calls) == 1)
    await engine.abort()
    result = await asyncio.wait_for(run, timeout=2)

    assert len(result.aborted) == 1
    assert job.status == JobStatus.ABORTED
    assert "aborted" in job.error.message
    assert git.completed == ["worktree add", "worktree remove", "worktree prune"]


@pytest.mark.asyncio
async def test_abort_during_sandbox_creation(repo_path):
    git = FakeGit(delays={"worktree add": 0.5})
    agent = SlowAbortAgent()
    engine = make_engine([agent], repo_path, git=git, config=fast_config(concurrency=1))
    [job] = engine.enqueue(make_plan(make_task("a")))

    run = asyncio.create_task(engine.run())
    await wait_until(lambda: git.commands() == ["worktree add"])
    await engine.abort()
    result = await asyncio.wait_for(run, timeout=2)

    assert len(result.aborted) == 1
    assert job.status == JobStatus.ABORTED
    assert agent.calls == []
    assert git.commands() == ["worktree add", "worktree remove", "worktree prune"]


@pytest.mark.asyncio
async def test_cleanup_failure_is_swallowed(repo_path, caplog):
    git = FakeGit(fail_on={"worktree remove": SandboxError("worktree is locked")})
    engine = make_engine([FakeAgent()], repo_path, git=git)
    [job] = engine.enqueue(make_plan(make_task("a")))

    with caplog.at_level(logging.WARNING):
        await engine.run()

    assert job.status == JobStatus.COMPLETED
    assert "cleanup failed" in caplog.text.lower()


@pytest.mark.asyncio
async def test_completion_hook_runs_before_cleanup(repo_path):
    seen = []

    async def on_complete(job, result, sandbox):
        seen.append((job.status, sandbox.cleaned_up, result.success))

    engine = make_engine([FakeAgent()], repo_path, on_job_complete=on_complete)
    engine.enqueue(make_plan(make_task("a")))

    await engine.run()

    assert seen == [(JobStatus.COMPLETED, False, True)]


@pytest.mark.asyncio
async def test_completion_hook_failure_keeps_job_completed(repo_path):
    async def on_complete(job, result, sandbox):
        raise RuntimeError("could not open PR")

    engine = make_engine([FakeAgent()], repo_path, on_job_complete=on_complete)
    [job] = engine.enqueue(make_plan(make_task("a")))

    await engine.run()

    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_sandbox_failure_fails_job(repo_path):
    git = FakeGit(fail_on={"worktree add": SandboxError("invalid reference: origin/main")})
    agent = FakeAgent()
    engine = make_engine([agent], repo_path, git=git)
    [job] = engine.enqueue(make_plan(make_task("a")))

    await engine.run()

    assert job.status == JobStatus.FAILED
    assert agent.calls == []
    assert engine.circuit_for(agent).failures == 0


@pytest.mark.asyncio
async def test_higher_priority_runs_first(repo_path):
    bus = EventBus()
    started = []
    bus.subscribe(JobStarted, started.append)
    engine = make_engine([FakeAgent()], repo_path, bus=bus, config=fast_config(concurrency=1))
    engine.enqueue(make_plan(make_task("low", priority=10), make_task("high", priority=90)))

    await engine.run()

    assert [e.task_id for e in started] == ["high", "low"]


class SlowAgent(FakeAgent):
    """Resolves each execution after a short delay, tracking overlap."""

    def __init__(self):
        super().__init__()
        self.active = 0
        self.max_active = 0

    async def execute(self, params):
        execution = await super().execute(params)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        slow = asyncio.get_running_loop().create_future()

        async def finish():
            await asyncio.sleep(0.02)
            self.active -= 1
            slow.set_result(await execution.result)

        asyncio.create_task(finish())
        execution.result = slow
        return execution


@pytest.mark.asyncio
async def test_concurrency_is_bounded(repo_path):
    agent = SlowAgent()
    engine = make_engine([agent], repo_path, config=fast_config(concurrency=2))
    engine.enqueue(make_plan(*(make_task(f"t{i}") for i in range(5))))

    result = await engine.run()

    assert len(result.completed) == 5
    assert agent.max_active == 2


@pytest.mark.asyncio
async def test_round_robin_across_agents(repo_path):
    first, second = FakeAgent("one"), FakeAgent("two")
    engine = make_engine([first, second], repo_path, config=fast_config(concurrency=1))
    jobs = engine.enqueue(make_plan(make_task("a"), make_task("b")))

    await engine.run()

    assert sorted(job.worker_id for job in jobs) == ["one", "two"]


@pytest.mark.asyncio
async def test_unavailable_agents_are_skipped(repo_path):
    down, up = FakeAgent("down", available=False), FakeAgent("up")
    engine = make_engine([down, up], repo_path)
    jobs = engine.enqueue(make_plan(make_task("a"), make_task("b")))

    await engine.run()

    assert all(job.worker_id == "up" for job in jobs)
    assert down.calls == []


@pytest.mark.asyncio
async def test_run_fails_when_no_agent_available(repo_path):
    engine = make_engine([FakeAgent(available=False)], repo_path)
    engine.enqueue(make_plan(make_task("a")))

    with pytest.raises(PatchPilotError) as exc_info:
        await engine.run()

    assert exc_info.value.code == ErrorCode.AGENT_NOT_AVAILABLE


@pytest.mark.asyncio
async def test_run_with_nothing_queued(repo_path):
    result = await make_engine([FakeAgent()], repo_path).run()
    assert result.jobs == []


@pytest.mark.asyncio
async def test_summary_after_run(repo_path):
    agent = FakeAgent(
        outcomes=[ExecutionResult(success=True, exit_code=0, total_tokens_used=700, files_changed=["x.py"])]
    )
    engine = make_engine([agent], repo_path)
    plan = make_plan(make_task("a"), make_task("b"))
    engine.enqueue(plan)

    await engine.run()
    summary = engine.summarize(plan)

    assert summary.provider_ids == ["fake"]
    assert summary.tasks["succeeded"] == 2
    assert summary.tasks["attempted"] == 2
    assert summary.budget["used"] == 1_400
    assert summary.budget["estimated"] == 2_000
    assert summary.files_changed == ["x.py"]
    assert summary.completed_at >= summary.started_at
