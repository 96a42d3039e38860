"""Per-job git worktree sandboxes.

Each job attempt gets its own worktree on a fresh branch cut from the
remote tip of the base branch. Commands that change the parent
repository's worktree registry (add, remove, prune) take git's config and
index locks, so they run one at a time per repository through a
SerialQueue; work inside a sandbox directory is not serialized.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Awaitable, Callable, Sequence, TypeVar

from patchpilot.core.errors import ErrorCode, SandboxError, Severity

logger = logging.getLogger(__name__)

T = TypeVar("T")

GitRunner = Callable[[Sequence[str], Path], Awaitable[str]]

SAFE_BRANCH_RE = re.compile(r"^[a-zA-Z0-9/_.-]+$")
WORKTREE_DIR_NAME = ".patchpilot-worktrees"

_GIT_LOCK_RE = re.compile(r"index\.lock|cannot lock ref|could not lock config", re.IGNORECASE)


class SerialQueue:
    """FIFO mutex for async operations.

    Every operation passed to ``run`` is invoked exactly once, after all
    earlier operations have finished (successfully or not), and only its
    own result or exception reaches its caller.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._pending = 0

    @property
    def pending(self) -> int:
        """Operations running or waiting to run."""
        return self._pending

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        self._pending += 1
        try:
            await self._lock.acquire()
            try:
                return await operation()
            finally:
                self._lock.release()
        finally:
            self._pending -= 1


async def run_git(args: Sequence[str], cwd: Path) -> str:
    """Run a git command and return its stdout."""
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout_bytes, stderr_bytes = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
        raise
    if proc.returncode != 0:
        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        locked = bool(_GIT_LOCK_RE.search(stderr))
        raise SandboxError(
            f"git {' '.join(args)} failed: {stderr or f'exit code {proc.returncode}'}",
            code=ErrorCode.GIT_LOCK_FAILED if locked else ErrorCode.AGENT_EXECUTION_FAILED,
            severity=Severity.RECOVERABLE if locked else Severity.FATAL,
            context={"cwd": str(cwd), "exit_code": proc.returncode},
        )
    return stdout_bytes.decode("utf-8", errors="replace")


def validate_branch_name(name: str, label: str = "branch") -> None:
    """Reject names that could be read as git options or escape the worktree root."""
    if (
        not name
        or not SAFE_BRANCH_RE.match(name)
        or name.startswith(("-", "/"))
        or ".." in name
    ):
        raise SandboxError(
            f"Invalid {label} name: {name!r}",
            code=ErrorCode.AGENT_EXECUTION_FAILED,
            severity=Severity.FATAL,
            context={label: name},
        )


class SandboxContext:
    """An isolated worktree owned by one job attempt."""

    def __init__(self, path: Path, branch_name: str, remove: Callable[[], Awaitable[None]]) -> None:
        self.path = path
        self.branch_name = branch_name
        self._remove = remove
        self._cleaned_up = False

    @property
    def cleaned_up(self) -> bool:
        return self._cleaned_up

    async def cleanup(self) -> None:
        """Remove the worktree. Calls after the first are no-ops."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        # A cancelled caller must not leave the worktree half removed
        await asyncio.shield(self._remove())

    def __repr__(self) -> str:
        return f"SandboxContext(path={str(self.path)!r}, branch_name={self.branch_name!r})"


class SandboxManager:
    """Creates and removes worktree sandboxes, one serial queue per repository."""

    def __init__(self, git: GitRunner = run_git, worktree_dir_name: str = WORKTREE_DIR_NAME) -> None:
        self._git = git
        self.worktree_dir_name = worktree_dir_name
        self._queues: dict[Path, SerialQueue] = {}

    def queue_for(self, repo_path: Path | str) -> SerialQueue:
        key = Path(repo_path).resolve()
        if key not in self._queues:
            self._queues[key] = SerialQueue()
        return self._queues[key]

    def worktree_root(self, repo_path: Path | str) -> Path:
        return Path(repo_path).resolve().parent / self.worktree_dir_name

    def worktree_path(self, repo_path: Path | str, branch_name: str) -> Path:
        return self.worktree_root(repo_path) / branch_name

    async def create(
        self,
        repo_path: Path | str,
        branch_name: str,
        base_branch: str = "main",
    ) -> SandboxContext:
        validate_branch_name(branch_name)
        validate_branch_name(base_branch, "base branch")

        repo = Path(repo_path).resolve()
        root = self.worktree_root(repo)
        path = self.worktree_path(repo, branch_name)

        add_started = False

        async def add() -> None:
            nonlocal add_started
            await asyncio.to_thread(root.mkdir, parents=True, exist_ok=True)
            add_started = True
            await self._git(
                ["worktree", "add", str(path), "-b", branch_name, f"origin/{base_branch}"],
                repo,
            )

        try:
            await self.queue_for(repo).run(add)
        except asyncio.CancelledError:
            if add_started:
                # git may have registered the worktree before it was stopped
                await asyncio.shield(self._discard(repo, path))
            raise
        logger.info("Created sandbox %s on %s", path, branch_name)

        async def remove() -> None:
            await self.queue_for(repo).run(lambda: self._remove(repo, path))

        return SandboxContext(path=path, branch_name=branch_name, remove=remove)

    async def _discard(self, repo: Path, path: Path) -> None:
        try:
            await self.queue_for(repo).run(lambda: self._remove(repo, path))
        except Exception as e:
            logger.warning("Could not discard interrupted sandbox %s: %s", path, e)

    async def _remove(self, repo: Path, path: Path) -> None:
        try:
            await self._git(["worktree", "remove", str(path), "--force"], repo)
            logger.info("Removed sandbox %s", path)
        finally:
            try:
                await self._git(["worktree", "prune"], repo)
            except Exception as e:
                logger.warning("git worktree prune failed in %s: %s", repo, e)
