"""Agent provider protocol - interface for every coding-agent backend."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Generic, Literal, TypeVar

from patchpilot.core.models import ExecutionResult, TokenEstimate

# Terminal result of an agent run
AgentResult = ExecutionResult

FileAction = Literal["create", "modify", "delete"]
StreamName = Literal["stdout", "stderr"]


@dataclass
class AgentAvailability:
    """Whether a backend can be used right now."""

    available: bool
    version: str | None = None
    error: str | None = None


@dataclass
class AgentExecuteParams:
    """Everything a backend needs to run one job attempt."""

    execution_id: str
    working_directory: str
    prompt: str
    target_files: list[str] = field(default_factory=list)
    token_budget: int = 50_000
    allow_commits: bool = True
    timeout: float = 300.0  # seconds
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class TokenEstimateParams:
    task_id: str
    prompt: str
    target_files: list[str] = field(default_factory=list)
    context_tokens: int | None = None
    expected_output_tokens: int | None = None


@dataclass(frozen=True)
class AgentEvent:
    """Base class for progress notices streamed from a running agent."""


@dataclass(frozen=True)
class OutputEvent(AgentEvent):
    content: str
    stream: StreamName = "stdout"


@dataclass(frozen=True)
class TokenEvent(AgentEvent):
    input_tokens: int
    output_tokens: int
    cumulative_tokens: int


@dataclass(frozen=True)
class FileEditEvent(AgentEvent):
    path: str
    action: FileAction


@dataclass(frozen=True)
class ToolUseEvent(AgentEvent):
    tool: str
    input: Any = None


@dataclass(frozen=True)
class ErrorEvent(AgentEvent):
    message: str
    recoverable: bool = True


T = TypeVar("T")

_CLOSED = object()


class EventChannel(Generic[T]):
    """Unbounded single-consumer async channel.

    The producer pushes items and then either closes the channel or fails
    it with an exception. The consumer drains everything pushed before the
    close; a failure is raised after the buffered items.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._done = False
        self._error: BaseException | None = None

    @property
    def done(self) -> bool:
        return self._done

    def push(self, item: T) -> None:
        if self._done:
            return
        self._queue.put_nowait(item)

    def close(self) -> None:
        if self._done:
            return
        self._done = True
        self._queue.put_nowait(_CLOSED)

    def fail(self, error: BaseException) -> None:
        if self._done:
            return
        self._error = error
        self.close()

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the sentinel so later reads stop too
            self._queue.put_nowait(_CLOSED)
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration
        return item


@dataclass
class AgentExecution:
    """Handle for a running agent.

    ``events`` must be drained by exactly one reader and ``result`` awaited
    by exactly one caller, on every path, so the process is never leaked.
    """

    execution_id: str
    provider_id: str
    events: EventChannel[AgentEvent]
    result: "asyncio.Future[AgentResult]"
    pid: int | None = None


class AgentProvider(ABC):
    """Abstract base class for all coding-agent backends.

    Implement this and register a factory with AgentRegistry to add a backend.
    """

    @property
    @abstractmethod
    def id(self) -> str:
        """Provider id (e.g., 'claude-code', 'codex')."""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name (e.g., 'Claude Code')."""
        ...

    @abstractmethod
    async def check_availability(self) -> AgentAvailability:
        ...

    @abstractmethod
    async def execute(self, params: AgentExecuteParams) -> AgentExecution:
        """Start an agent run and return its handle without waiting for it."""
        ...

    @abstractmethod
    async def estimate_tokens(self, params: TokenEstimateParams) -> TokenEstimate:
        ...

    @abstractmethod
    async def abort(self, execution_id: str) -> None:
        """Ask a running execution to stop, forcing it after a grace period."""
        ...
