"""Error taxonomy shared by the planner, sandbox and execution engine."""

import asyncio
import re
from enum import Enum
from typing import Any


class Severity(str, Enum):
    """How an error affects the run."""

    FATAL = "fatal"
    RECOVERABLE = "recoverable"
    WARNING = "warning"


class ErrorCode(str, Enum):
    """Stable error codes carried by every PatchPilotError."""

    # Budget
    BUDGET_INSUFFICIENT = "BUDGET_INSUFFICIENT"
    TOKENIZER_UNAVAILABLE = "TOKENIZER_UNAVAILABLE"

    # Execution
    AGENT_NOT_AVAILABLE = "AGENT_NOT_AVAILABLE"
    AGENT_EXECUTION_FAILED = "AGENT_EXECUTION_FAILED"
    AGENT_TIMEOUT = "AGENT_TIMEOUT"
    AGENT_OOM = "AGENT_OOM"
    AGENT_TOKEN_LIMIT = "AGENT_TOKEN_LIMIT"
    AGENT_RATE_LIMITED = "AGENT_RATE_LIMITED"
    VALIDATION_FAILED = "VALIDATION_FAILED"

    # Config
    CONFIG_INVALID = "CONFIG_INVALID"
    CONFIG_SECRET_MISSING = "CONFIG_SECRET_MISSING"

    # System
    NETWORK_ERROR = "NETWORK_ERROR"
    DISK_SPACE_LOW = "DISK_SPACE_LOW"
    GIT_LOCK_FAILED = "GIT_LOCK_FAILED"


class PatchPilotError(Exception):
    """Base error with a code, a severity and identifying context."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.AGENT_EXECUTION_FAILED,
        severity: Severity = Severity.FATAL,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.severity = severity
        self.context = dict(context or {})
        if cause is not None:
            self.__cause__ = cause

    @property
    def recoverable(self) -> bool:
        return self.severity == Severity.RECOVERABLE

    def with_context(self, **context: Any) -> "PatchPilotError":
        """Add identifying context without overwriting keys already set."""
        for key, value in context.items():
            if value is not None:
                self.context.setdefault(key, value)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for events and summaries."""
        return {
            "code": self.code.value,
            "severity": self.severity.value,
            "message": self.message,
            "context": dict(self.context),
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


class ExecutionError(PatchPilotError):
    """Failure while running a job through an agent."""


class BudgetError(PatchPilotError):
    """Failure while estimating or planning token usage."""


class ConfigError(PatchPilotError):
    """Invalid or incomplete configuration."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("code", ErrorCode.CONFIG_INVALID)
        super().__init__(message, **kwargs)


class SandboxError(PatchPilotError):
    """Failure while creating or removing a worktree sandbox."""


RECOVERABLE_CODES = frozenset(
    {
        ErrorCode.AGENT_TIMEOUT,
        ErrorCode.AGENT_OOM,
        ErrorCode.AGENT_RATE_LIMITED,
        ErrorCode.NETWORK_ERROR,
        ErrorCode.GIT_LOCK_FAILED,
    }
)


def execution_error(
    code: ErrorCode,
    message: str,
    context: dict[str, Any] | None = None,
    cause: BaseException | None = None,
) -> ExecutionError:
    """Build an ExecutionError whose severity follows from its code."""
    severity = Severity.RECOVERABLE if code in RECOVERABLE_CODES else Severity.FATAL
    return ExecutionError(message, code=code, severity=severity, context=context, cause=cause)


_TIMEOUT_RE = re.compile(r"timed out|timeout", re.IGNORECASE)
_OOM_RE = re.compile(r"out of memory|ENOMEM|JavaScript heap", re.IGNORECASE)
_NETWORK_RE = re.compile(r"network|ECONN|ENOTFOUND|EAI_AGAIN", re.IGNORECASE)
_GIT_LOCK_RE = re.compile(r"index\.lock|cannot lock ref", re.IGNORECASE)


def normalize_execution_error(error: BaseException, **context: Any) -> PatchPilotError:
    """Classify any exception into a PatchPilotError carrying ``context``.

    Errors that are already PatchPilotErrors keep their code and only gain
    the missing context keys.
    """
    if isinstance(error, PatchPilotError):
        return error.with_context(**context)

    message = str(error) or type(error).__name__
    ctx = {k: v for k, v in context.items() if v is not None}
    ctx["message"] = message

    if isinstance(error, asyncio.CancelledError):
        return execution_error(ErrorCode.AGENT_EXECUTION_FAILED, "Execution aborted", ctx, error)
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)) or _TIMEOUT_RE.search(message):
        return execution_error(ErrorCode.AGENT_TIMEOUT, "Agent execution timed out", ctx, error)
    if isinstance(error, MemoryError) or _OOM_RE.search(message):
        return execution_error(ErrorCode.AGENT_OOM, "Agent execution ran out of memory", ctx, error)
    if isinstance(error, ConnectionError) or _NETWORK_RE.search(message):
        return execution_error(
            ErrorCode.NETWORK_ERROR, "Agent execution failed due to network issues", ctx, error
        )
    if _GIT_LOCK_RE.search(message):
        return execution_error(ErrorCode.GIT_LOCK_FAILED, "Git lock contention", ctx, error)
    return execution_error(
        ErrorCode.AGENT_EXECUTION_FAILED, f"Agent execution failed: {message}", ctx, error
    )
