"""Typed publish/subscribe channel for job lifecycle events."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, TypeVar

from patchpilot.core.models import JobStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    """Base class for everything published on the bus."""

    timestamp: datetime = field(default_factory=utcnow, kw_only=True)


@dataclass(frozen=True)
class TaskEstimated(Event):
    task_id: str
    provider_id: str
    total_estimated_tokens: int
    confidence: float
    feasible: bool


@dataclass(frozen=True)
class PlanBuilt(Event):
    total_budget: int
    selected: int
    deferred: int
    remaining_tokens: int


@dataclass(frozen=True)
class JobEvent(Event):
    job_id: str
    task_id: str


@dataclass(frozen=True)
class JobQueued(JobEvent):
    priority: int


@dataclass(frozen=True)
class JobStarted(JobEvent):
    attempt: int
    provider_id: str


@dataclass(frozen=True)
class JobProgress(JobEvent):
    tokens_used: int
    stage: str
    files_changed: tuple[str, ...] = ()


@dataclass(frozen=True)
class JobCompleted(JobEvent):
    attempt: int
    tokens_used: int
    files_changed: tuple[str, ...]
    duration: float


@dataclass(frozen=True)
class JobFailed(JobEvent):
    attempt: int
    error_code: str
    message: str
    will_retry: bool = False


@dataclass(frozen=True)
class JobAborted(JobEvent):
    previous_status: JobStatus


E = TypeVar("E", bound=Event)
Handler = Callable[[Any], None]


class EventBus:
    """Synchronous typed event bus.

    Handlers subscribe to an event class (and receive its subclasses too) or
    to everything. A failing handler is logged and never reaches the publisher.
    """

    def __init__(self) -> None:
        self._handlers: list[tuple[type[Event], Handler]] = []

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        """Register a handler; returns a callable that removes it."""
        entry = (event_type, handler)
        self._handlers.append(entry)

        def unsubscribe() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return unsubscribe

    def subscribe_all(self, handler: Callable[[Event], None]) -> Callable[[], None]:
        return self.subscribe(Event, handler)

    def publish(self, event: Event) -> None:
        for event_type, handler in list(self._handlers):
            if not isinstance(event, event_type):
                continue
            try:
                handler(event)
            except Exception:
                logger.warning(
                    "Event handler %r failed for %s", handler, type(event).__name__, exc_info=True
                )

    def clear(self) -> None:
        self._handlers.clear()


# Process-wide bus for callers that don't inject their own
bus = EventBus()
