"""Pytest configuration and fixtures."""

import asyncio
from pathlib import Path
from typing import Any, Sequence

import pytest

from patchpilot.agents.protocol import (
    AgentAvailability,
    AgentEvent,
    AgentExecuteParams,
    AgentExecution,
    AgentProvider,
    EventChannel,
    TokenEstimateParams,
)
from patchpilot.agents.registry import AgentRegistry
from patchpilot.config.manager import ConfigManager
from patchpilot.core.models import ExecutionResult, Task, TaskComplexity, TokenEstimate
from patchpilot.output import formatter


@pytest.fixture(autouse=True)
def reset_registry():
    """Reset the agent registry and cached config before each test."""
    AgentRegistry._initialized = False
    AgentRegistry._factories.clear()
    AgentRegistry._aliases.clear()
    ConfigManager.reset()
    formatter.reset_formatter()
    yield


HANG = "hang"


class FakeAgent(AgentProvider):
    """Scripted provider.

    Each call to ``execute`` takes the next outcome: an ExecutionResult,
    an exception (raised from the result future) or ``HANG`` to wait until
    aborted. When the script runs out the last outcome repeats.
    """

    def __init__(
        self,
        provider_id: str = "fake",
        outcomes: Sequence[Any] | None = None,
        events: Sequence[AgentEvent] = (),
        available: bool = True,
    ) -> None:
        self._id = provider_id
        self.outcomes = list(outcomes or [ExecutionResult(success=True, exit_code=0, total_tokens_used=100)])
        self.events = list(events)
        self.available = available
        self.calls: list[AgentExecuteParams] = []
        self.aborted: list[str] = []
        self._pending: dict[str, tuple[asyncio.Future, EventChannel]] = {}

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str:
        return f"Fake {self._id}"

    async def check_availability(self) -> AgentAvailability:
        if self.available:
            return AgentAvailability(available=True, version="1.0.0")
        return AgentAvailability(available=False, error="not installed")

    async def execute(self, params: AgentExecuteParams) -> AgentExecution:
        index = min(len(self.calls), len(self.outcomes) - 1)
        outcome = self.outcomes[index]
        self.calls.append(params)

        channel: EventChannel[AgentEvent] = EventChannel()
        for event in self.events:
            channel.push(event)

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        if outcome == HANG:
            self._pending[params.execution_id] = (future, channel)
        elif isinstance(outcome, BaseException):
            future.set_exception(outcome)
            channel.close()
        else:
            future.set_result(outcome)
            channel.close()
        return AgentExecution(
            execution_id=params.execution_id, provider_id=self._id, events=channel, result=future
        )

    async def estimate_tokens(self, params: TokenEstimateParams) -> TokenEstimate:
        return TokenEstimate(
            task_id=params.task_id,
            provider_id=self._id,
            context_tokens=0,
            prompt_tokens=len(params.prompt),
            expected_output_tokens=0,
            total_estimated_tokens=len(params.prompt),
            confidence=0.5,
            feasible=True,
        )

    async def abort(self, execution_id: str) -> None:
        self.aborted.append(execution_id)
        pending = self._pending.pop(execution_id, None)
        if pending is None:
            return
        future, channel = pending
        if not future.done():
            future.set_result(ExecutionResult(success=False, exit_code=-15, error="aborted"))
        channel.close()


class SlowAbortAgent(FakeAgent):
    """Like a CLI backend, abort returns only after the process has exited."""

    def __init__(self, *args: Any, abort_delay: float = 0.05, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.abort_delay = abort_delay

    async def abort(self, execution_id: str) -> None:
        await super().abort(execution_id)
        await asyncio.sleep(self.abort_delay)


class FakeGit:
    """Records git invocations instead of running them."""

    def __init__(
        self,
        fail_on: dict[str, Exception] | None = None,
        delay: float = 0.0,
        delays: dict[str, float] | None = None,
    ) -> None:
        self.calls: list[tuple[list[str], Path]] = []
        self.completed: list[str] = []
        self.fail_on = fail_on or {}
        self.delay = delay
        self.delays = delays or {}
        self.active = 0
        self.max_active = 0

    async def __call__(self, args: Sequence[str], cwd: Path) -> str:
        command = " ".join(args[:2])
        self.calls.append((list(args), cwd))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            delay = self.delays.get(command, self.delay)
            if delay:
                await asyncio.sleep(delay)
            error = self.fail_on.get(command)
            if error is not None:
                raise error
            self.completed.append(command)
            return ""
        finally:
            self.active -= 1

    def commands(self) -> list[str]:
        return [" ".join(args[:2]) for args, _ in self.calls]


def make_task(task_id: str = "task-1", **overrides: Any) -> Task:
    fields: dict[str, Any] = {
        "id": task_id,
        "title": f"Fix {task_id}",
        "description": "Remove the unused import.",
        "target_files": (),
        "priority": 50,
        "complexity": TaskComplexity.SIMPLE,
    }
    fields.update(overrides)
    return Task(**fields)


def make_estimate(task_id: str, total: int, confidence: float = 0.8, feasible: bool = True) -> TokenEstimate:
    return TokenEstimate(
        task_id=task_id,
        provider_id="codex",
        context_tokens=0,
        prompt_tokens=0,
        expected_output_tokens=0,
        total_estimated_tokens=total,
        confidence=confidence,
        feasible=feasible,
    )


@pytest.fixture
def fake_agent():
    return FakeAgent()


@pytest.fixture
def fake_git():
    return FakeGit()


@pytest.fixture
def repo_path(tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()
    return repo
