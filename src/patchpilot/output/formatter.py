"""Output formatting using Rich for terminal output."""

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

from patchpilot.core.models import ExecutionPlan, JobStatus, RunResult, RunSummary

PATCHPILOT_THEME = Theme(
    {
        "success": "green",
        "error": "red bold",
        "warning": "yellow",
        "info": "blue",
        "metadata": "dim",
        "status.queued": "dim",
        "status.running": "cyan",
        "status.completed": "green",
        "status.failed": "red",
        "status.aborted": "yellow",
    }
)


class OutputFormatter:
    """Handles all output formatting for patchpilot."""

    def __init__(self, color: bool = True, verbose: bool = False) -> None:
        self.console = Console(theme=PATCHPILOT_THEME, no_color=not color)
        self.verbose = verbose

    def print_error(self, message: str) -> None:
        self.console.print(f"[error]Error: {escape(message)}[/error]")

    def print_success(self, message: str) -> None:
        self.console.print(f"[success]{escape(message)}[/success]")

    def print_info(self, message: str) -> None:
        self.console.print(f"[info]{escape(message)}[/info]")

    def print_warning(self, message: str) -> None:
        self.console.print(f"[warning]{escape(message)}[/warning]")

    def print_plan(self, plan: ExecutionPlan) -> None:
        """Print selected and deferred tasks with the budget breakdown."""
        table = Table(title="Execution Plan")
        table.add_column("Task", style="bold")
        table.add_column("Priority", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Confidence", justify="right")
        table.add_column("Cumulative", justify="right")
        table.add_column("Decision")

        for selected in plan.selected_tasks:
            table.add_row(
                selected.task.id,
                str(selected.task.priority),
                f"{selected.estimate.total_estimated_tokens:,}",
                f"{selected.estimate.confidence:.2f}",
                f"{selected.cumulative_budget_used:,}",
                "[success]selected[/success]",
            )
        for deferred in plan.deferred_tasks:
            tokens = deferred.estimate.total_estimated_tokens
            table.add_row(
                deferred.task.id,
                str(deferred.task.priority),
                f"{tokens:,}" if deferred.estimate.feasible else "-",
                f"{deferred.estimate.confidence:.2f}",
                "",
                f"[warning]deferred: {deferred.reason.value}[/warning]",
            )

        self.console.print(table)
        self.console.print(
            f"[metadata]budget={plan.total_budget:,} reserve={plan.reserve_tokens:,} "
            f"remaining={plan.remaining_tokens:,}[/metadata]"
        )

    def print_run_result(self, result: RunResult) -> None:
        table = Table(title="Jobs")
        table.add_column("Task", style="bold")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")
        table.add_column("Agent")
        table.add_column("Tokens", justify="right")
        table.add_column("Branch / Error")

        for job in result.jobs:
            status = job.status.value
            detail = job.branch_name or ""
            if job.status in (JobStatus.FAILED, JobStatus.ABORTED) and job.error is not None:
                detail = escape(str(job.error))
            tokens = job.tokens_used
            table.add_row(
                job.task.id,
                f"[status.{status}]{status}[/status.{status}]",
                str(job.attempts),
                job.worker_id or "-",
                f"{tokens:,}",
                detail,
            )
        self.console.print(table)

    def print_summary(self, summary: RunSummary) -> None:
        tasks = summary.tasks
        budget = summary.budget
        body = (
            f"Succeeded: {tasks.get('succeeded', 0)}  Failed: {tasks.get('failed', 0)}  "
            f"Aborted: {tasks.get('aborted', 0)}  Deferred: {tasks.get('deferred', 0)}\n"
            f"Tokens used: {budget.get('used', 0):,} of {budget.get('total', 0):,}\n"
            f"Files changed: {len(summary.files_changed)}  Duration: {summary.duration:.1f}s"
        )
        self.console.print(Panel(body, title=f"Run {summary.run_id[:8]}", border_style="blue"))

    def print_agent_list(self, agents: list[tuple[str, str, bool, str | None]]) -> None:
        """Print a table of (id, name, available, version or error) rows."""
        table = Table(title="Agent Providers")
        table.add_column("ID", style="bold")
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("Details", style="dim")

        for provider_id, name, is_available, detail in agents:
            status = "[success]available[/success]" if is_available else "[error]unavailable[/error]"
            table.add_row(provider_id, name, status, detail or "")

        self.console.print(table)

    def print_metadata(self, metadata: dict[str, Any]) -> None:
        parts = [f"{k}={v}" for k, v in metadata.items()]
        self.console.print(f"[metadata]({', '.join(parts)})[/metadata]")


# Global formatter instance
_formatter: OutputFormatter | None = None


def get_formatter(color: bool = True, verbose: bool = False) -> OutputFormatter:
    """Get or create the global formatter instance."""
    global _formatter
    if _formatter is None:
        _formatter = OutputFormatter(color=color, verbose=verbose)
    return _formatter


def reset_formatter() -> None:
    global _formatter
    _formatter = None
