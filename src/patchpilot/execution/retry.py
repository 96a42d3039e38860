"""Retry classification, backoff and per-provider circuit breaking."""

import logging
import random
import time
from enum import Enum
from typing import Callable

from patchpilot.core.errors import ErrorCode, PatchPilotError, normalize_execution_error

logger = logging.getLogger(__name__)

TRANSIENT_CODES = frozenset(
    {
        ErrorCode.AGENT_TIMEOUT,
        ErrorCode.AGENT_OOM,
        ErrorCode.NETWORK_ERROR,
        ErrorCode.GIT_LOCK_FAILED,
    }
)


def is_transient_error(error: BaseException) -> bool:
    """True only for timeouts, out-of-memory, network failures and lock contention."""
    if not isinstance(error, PatchPilotError):
        error = normalize_execution_error(error)
    return error.code in TRANSIENT_CODES


def calculate_backoff(
    attempt: int,
    base: float = 1.0,
    cap: float = 30.0,
    jitter: float = 0.5,
) -> float:
    """Exponential backoff in seconds: min(base * 2**attempt, cap) plus jitter."""
    delay = min(base * (2 ** max(0, attempt)), cap)
    if jitter > 0:
        delay += random.uniform(0, jitter)
    return delay


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """Stops routing work to a provider after repeated failures.

    Opens after ``failure_threshold`` consecutive failures and lets a trial
    request through (half-open) once ``reset_timeout`` seconds have passed.
    A success closes it again.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._failures = 0
        self._opened_at: float | None = None

    @property
    def state(self) -> CircuitState:
        if self._opened_at is None:
            return CircuitState.CLOSED
        if self._clock() - self._opened_at >= self.reset_timeout:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    @property
    def failures(self) -> int:
        return self._failures

    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def record_success(self) -> None:
        self._failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failures += 1
        if self.state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._opened_at is None:
                logger.warning("Circuit opened after %d consecutive failures", self._failures)
            self._opened_at = self._clock()

    def reset(self) -> None:
        self.record_success()
