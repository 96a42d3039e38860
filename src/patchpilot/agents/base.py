"""Base implementation for CLI-driven agent providers."""

import asyncio
import logging
import math
import os
import shutil
import time
from abc import abstractmethod

from patchpilot.agents.parsing import (
    TokenState,
    parse_error_event,
    parse_file_edit_event,
    parse_token_event,
    parse_tool_use_event,
)
from patchpilot.agents.protocol import (
    AgentAvailability,
    AgentEvent,
    AgentExecuteParams,
    AgentExecution,
    AgentProvider,
    AgentResult,
    ErrorEvent,
    EventChannel,
    OutputEvent,
    StreamName,
    TokenEstimateParams,
)
from patchpilot.budget.counters import approximate_token_count
from patchpilot.core.errors import ErrorCode, Severity, execution_error, normalize_execution_error
from patchpilot.core.models import TokenEstimate

logger = logging.getLogger(__name__)

# Long JSON lines from stream output exceed asyncio's 64 KiB default
STREAM_LIMIT = 4 * 1024 * 1024


class BaseCliAgent(AgentProvider):
    """Runs a coding-agent CLI as a subprocess inside the sandbox.

    Output is read line by line from stdout and stderr concurrently and
    turned into events; the process exit becomes the terminal result.
    """

    # Env vars removed so a nested agent session can be spawned
    stripped_env: tuple[str, ...] = ()
    abort_grace_period: float = 5.0

    def __init__(self) -> None:
        self._executable_cache: str | None = None
        self._running: dict[str, asyncio.subprocess.Process] = {}
        self._aborted: set[str] = set()

    @property
    def executable(self) -> str:
        """Get the executable path, caching the result."""
        if self._executable_cache is None:
            self._executable_cache = shutil.which(self.cli_name) or self.cli_name
        return self._executable_cache

    @property
    @abstractmethod
    def cli_name(self) -> str:
        """The CLI command name to look up (e.g., 'claude', 'codex')."""
        ...

    @abstractmethod
    def build_command(self, params: AgentExecuteParams) -> list[str]:
        """Build the command line for one run."""
        ...

    def build_env(self, params: AgentExecuteParams) -> dict[str, str]:
        env = {k: v for k, v in os.environ.items() if k not in self.stripped_env}
        env.update(params.env)
        env["PATCHPILOT_TOKEN_BUDGET"] = str(params.token_budget)
        env["PATCHPILOT_ALLOW_COMMITS"] = "true" if params.allow_commits else "false"
        return env

    def is_running(self, execution_id: str) -> bool:
        return execution_id in self._running

    async def check_availability(self) -> AgentAvailability:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.executable,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=15)
        except FileNotFoundError:
            return AgentAvailability(
                available=False, error=f"CLI '{self.cli_name}' not found. Is it installed?"
            )
        except (OSError, asyncio.TimeoutError) as e:
            return AgentAvailability(available=False, error=str(e) or type(e).__name__)

        stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
        if proc.returncode == 0:
            version = stdout.splitlines()[0] if stdout else None
            return AgentAvailability(available=True, version=version)

        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        return AgentAvailability(
            available=False,
            error=stderr or f"{self.cli_name} --version exited with code {proc.returncode}",
        )

    async def execute(self, params: AgentExecuteParams) -> AgentExecution:
        cmd = self.build_command(params)
        channel: EventChannel[AgentEvent] = EventChannel()

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=params.working_directory,
                env=self.build_env(params),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as e:
            raise execution_error(
                ErrorCode.AGENT_NOT_AVAILABLE,
                f"CLI '{self.cli_name}' not found. Is it installed?",
                context={"execution_id": params.execution_id},
                cause=e,
            ) from e

        self._running[params.execution_id] = proc
        logger.debug("Started %s (pid %s) for %s", self.cli_name, proc.pid, params.execution_id)

        result = asyncio.create_task(self._run(proc, params, channel))
        return AgentExecution(
            execution_id=params.execution_id,
            provider_id=self.id,
            events=channel,
            result=result,
            pid=proc.pid,
        )

    async def _consume(
        self,
        stream: asyncio.StreamReader | None,
        name: StreamName,
        channel: EventChannel[AgentEvent],
        tokens: TokenState,
        files: dict[str, None],
        stderr_tail: list[str],
    ) -> None:
        if stream is None:
            return
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            channel.push(OutputEvent(content=line, stream=name))
            if name == "stderr":
                stderr_tail.append(line)
                del stderr_tail[:-20]

            token_event = parse_token_event(line, tokens)
            if token_event:
                channel.push(token_event)

            file_event = parse_file_edit_event(line)
            if file_event:
                files[file_event.path] = None
                channel.push(file_event)

            tool_event = parse_tool_use_event(line)
            if tool_event:
                channel.push(tool_event)

            error_event = parse_error_event(line, name, f"Unknown {self.name} error")
            if error_event:
                channel.push(error_event)

    async def _run(
        self,
        proc: asyncio.subprocess.Process,
        params: AgentExecuteParams,
        channel: EventChannel[AgentEvent],
    ) -> AgentResult:
        started = time.monotonic()
        tokens = TokenState()
        files: dict[str, None] = {}
        stderr_tail: list[str] = []
        readers = asyncio.gather(
            self._consume(proc.stdout, "stdout", channel, tokens, files, stderr_tail),
            self._consume(proc.stderr, "stderr", channel, tokens, files, stderr_tail),
        )

        try:
            try:
                await asyncio.wait_for(asyncio.shield(readers), timeout=params.timeout)
                await proc.wait()
            except asyncio.TimeoutError:
                await self._terminate(proc)
                raise execution_error(
                    ErrorCode.AGENT_TIMEOUT,
                    f"{self.name} execution timed out for {params.execution_id}",
                    context={"execution_id": params.execution_id, "timeout": params.timeout},
                )
            except asyncio.CancelledError:
                await self._terminate(proc)
                raise
            finally:
                # Readers end once the process's pipes close
                await asyncio.gather(readers, return_exceptions=True)

            exit_code = proc.returncode if proc.returncode is not None else 1
            duration = time.monotonic() - started

            if params.execution_id in self._aborted:
                return AgentResult(
                    success=False,
                    exit_code=exit_code,
                    total_tokens_used=tokens.total,
                    files_changed=list(files),
                    duration=duration,
                    error=f"{self.name} execution was cancelled.",
                )

            success = exit_code == 0
            return AgentResult(
                success=success,
                exit_code=exit_code,
                total_tokens_used=tokens.total,
                files_changed=list(files),
                duration=duration,
                error=None if success else self._failure_message(stderr_tail, exit_code),
            )
        except Exception as e:
            normalized = normalize_execution_error(e, execution_id=params.execution_id)
            channel.push(
                ErrorEvent(
                    message=normalized.message,
                    recoverable=normalized.severity != Severity.FATAL,
                )
            )
            channel.fail(normalized)
            raise normalized
        finally:
            self._running.pop(params.execution_id, None)
            self._aborted.discard(params.execution_id)
            channel.close()

    def _failure_message(self, stderr_tail: list[str], exit_code: int) -> str:
        text = "\n".join(stderr_tail).strip()
        return text or f"{self.cli_name} exited with a non-zero status ({exit_code})."

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL once the grace period runs out."""
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.abort_grace_period)
        except asyncio.TimeoutError:
            logger.warning("Agent pid %s ignored SIGTERM, killing", proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()

    async def abort(self, execution_id: str) -> None:
        proc = self._running.get(execution_id)
        if proc is None:
            return
        self._aborted.add(execution_id)
        await self._terminate(proc)

    async def estimate_tokens(self, params: TokenEstimateParams) -> TokenEstimate:
        """Rough estimate from the prompt alone, without reading files."""
        context_tokens = params.context_tokens
        if context_tokens is None:
            context_tokens = len(params.target_files) * 80 + len("\n".join(params.target_files))
        prompt_tokens = approximate_token_count(params.prompt)
        expected_output = params.expected_output_tokens
        if expected_output is None:
            expected_output = max(128, math.ceil(prompt_tokens * 0.6))

        return TokenEstimate(
            task_id=params.task_id,
            provider_id=self.id,
            context_tokens=context_tokens,
            prompt_tokens=prompt_tokens,
            expected_output_tokens=expected_output,
            total_estimated_tokens=context_tokens + prompt_tokens + expected_output,
            confidence=0.6,
            feasible=True,
        )
