"""Main CLI entry point for patchpilot."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler

from patchpilot.agents.registry import AgentRegistry
from patchpilot.budget.estimator import TokenEstimator
from patchpilot.budget.planner import build_execution_plan
from patchpilot.config.manager import ConfigManager
from patchpilot.config.schema import ExecutionConfig, PatchPilotConfig, get_config_file
from patchpilot.core.errors import PatchPilotError
from patchpilot.core.events import EventBus, JobCompleted, JobFailed, JobStarted
from patchpilot.core.models import ExecutionPlan, RunSummary, Task
from patchpilot.execution.engine import ExecutionEngine
from patchpilot.output.formatter import get_formatter

logger = logging.getLogger(__name__)


class AliasedGroup(click.Group):
    """Click group that also accepts unambiguous command prefixes."""

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        rv = super().get_command(ctx, cmd_name)
        if rv is not None:
            return rv

        matches = [name for name in self.list_commands(ctx) if name.startswith(cmd_name)]
        if len(matches) == 1:
            return super().get_command(ctx, matches[0])
        if len(matches) > 1:
            ctx.fail(f"Too many matches: {', '.join(sorted(matches))}")
        return None

    def resolve_command(
        self, ctx: click.Context, args: list[str]
    ) -> tuple[str | None, click.Command | None, list[str]]:
        _, cmd, args = super().resolve_command(ctx, args)
        return cmd.name if cmd else None, cmd, args


def load_tasks(path: Path) -> list[Task]:
    """Load tasks from a JSON file holding a list or ``{"tasks": [...]}``."""
    try:
        data: Any = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"{path} is not valid JSON: {e}") from e

    if isinstance(data, dict):
        data = data.get("tasks", [])
    if not isinstance(data, list):
        raise click.BadParameter(f"{path} must contain a list of tasks")

    tasks = []
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise click.BadParameter(f"Task #{index} in {path} is not an object")
        try:
            tasks.append(Task.from_dict(item))
        except (KeyError, TypeError, ValueError) as e:
            raise click.BadParameter(f"Task #{index} in {path} is invalid: {e}") from e
    return tasks


def _configure_logging(verbose: bool, color: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(
                console=Console(stderr=True, no_color=not color),
                show_path=verbose,
                rich_tracebacks=verbose,
            )
        ],
        force=True,
    )


def _load_config() -> PatchPilotConfig:
    try:
        return ConfigManager.get_config()
    except PatchPilotError as e:
        get_formatter().print_error(e.message)
        raise SystemExit(2) from e


async def _plan(
    tasks: list[Task],
    provider_id: str,
    budget: int,
    config: PatchPilotConfig,
    base_dir: Path | None,
    event_bus: EventBus | None = None,
) -> ExecutionPlan:
    estimator = TokenEstimator(
        max_concurrent_reads=config.estimator.max_concurrent_reads,
        base_dir=base_dir,
        event_bus=event_bus,
    )
    estimates = await estimator.estimate_all(tasks, provider_id)
    return build_execution_plan(
        tasks,
        estimates,
        budget,
        reserve_percent=config.budget.reserve_percent,
        event_bus=event_bus,
    )


@click.group(cls=AliasedGroup)
@click.option("-v", "--verbose", is_flag=True, help="Verbose output")
@click.option("--no-color", is_flag=True, help="Disable colors")
@click.version_option(package_name="patchpilot")
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    no_color: bool,
) -> None:
    """PatchPilot - budgeted coding-agent runs over isolated worktrees.

    \b
    Examples:
        patchpilot plan tasks.json --budget 200000
        patchpilot run tasks.json --repo . --provider codex
        patchpilot agent list --all
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["no_color"] = no_color

    _configure_logging(verbose, not no_color)
    get_formatter(color=not no_color, verbose=verbose)


@cli.command()
@click.argument("tasks_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-b", "--budget", type=int, help="Total token budget")
@click.option("-p", "--provider", "provider_id", help="Provider to estimate for")
@click.option("--repo", type=click.Path(exists=True, file_okay=False, path_type=Path), help="Resolve target files here")
@click.option("--json", "output_json", is_flag=True, help="JSON output")
def plan(
    tasks_file: Path,
    budget: int | None,
    provider_id: str | None,
    repo: Path | None,
    output_json: bool,
) -> None:
    """Estimate tasks and show which fit the budget."""
    formatter = get_formatter()
    config = _load_config()
    tasks = load_tasks(tasks_file)

    provider = AgentRegistry.resolve_id(provider_id or config.provider.id)
    total = budget if budget is not None else config.budget.total_tokens
    execution_plan = asyncio.run(_plan(tasks, provider, total, config, repo))

    if output_json:
        formatter.console.print_json(json.dumps(execution_plan.to_dict()))
        return
    formatter.print_plan(execution_plan)


@cli.command()
@click.argument("tasks_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--repo",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="Repository to create worktrees from",
)
@click.option("-b", "--budget", type=int, help="Total token budget")
@click.option("-p", "--provider", "provider_ids", multiple=True, help="Provider(s) to run with")
@click.option("-c", "--concurrency", type=click.IntRange(min=1), help="Parallel jobs")
@click.option("--base-branch", help="Branch new worktrees start from")
@click.option("--json", "output_json", is_flag=True, help="JSON summary output")
def run(
    tasks_file: Path,
    repo: Path,
    budget: int | None,
    provider_ids: tuple[str, ...],
    concurrency: int | None,
    base_branch: str | None,
    output_json: bool,
) -> None:
    """Plan tasks against the budget and execute the selected ones."""
    formatter = get_formatter()
    config = _load_config()
    tasks = load_tasks(tasks_file)

    updates: dict[str, Any] = {}
    if concurrency is not None:
        updates["concurrency"] = concurrency
    if base_branch is not None:
        updates["base_branch"] = base_branch
    execution_config = config.execution.model_copy(update=updates)

    ids = list(provider_ids) or config.provider.ids
    total = budget if budget is not None else config.budget.total_tokens

    try:
        summary = asyncio.run(
            _execute(tasks, ids, total, config, execution_config, repo.resolve(), output_json)
        )
    except KeyboardInterrupt:
        formatter.print_warning("Interrupted")
        raise SystemExit(130)
    except PatchPilotError as e:
        formatter.print_error(e.message)
        raise SystemExit(1) from e

    if summary is not None and summary.tasks.get("failed", 0):
        raise SystemExit(1)


async def _execute(
    tasks: list[Task],
    provider_ids: list[str],
    budget: int,
    config: PatchPilotConfig,
    execution_config: ExecutionConfig,
    repo: Path,
    output_json: bool,
) -> RunSummary | None:
    formatter = get_formatter()
    event_bus = EventBus()
    agents = [AgentRegistry.create(pid) for pid in provider_ids]

    execution_plan = await _plan(tasks, agents[0].id, budget, config, repo, event_bus)
    if not output_json:
        formatter.print_plan(execution_plan)
    if not execution_plan.selected_tasks:
        formatter.print_warning("No tasks fit the budget")
        return None

    if not output_json:
        event_bus.subscribe(
            JobStarted,
            lambda e: formatter.print_info(f"[{e.task_id}] attempt {e.attempt} on {e.provider_id}"),
        )
        event_bus.subscribe(
            JobCompleted,
            lambda e: formatter.print_success(f"[{e.task_id}] completed ({e.tokens_used:,} tokens)"),
        )
        event_bus.subscribe(
            JobFailed,
            lambda e: formatter.print_warning(
                f"[{e.task_id}] {e.error_code}: {e.message}" + (" (retrying)" if e.will_retry else "")
            ),
        )

    engine = ExecutionEngine(agents, event_bus=event_bus, config=execution_config, repo_path=repo)
    engine.enqueue(execution_plan)

    run_task = asyncio.create_task(engine.run())
    try:
        result = await asyncio.shield(run_task)
    except asyncio.CancelledError:
        formatter.print_warning("Aborting running jobs...")
        await engine.abort()
        result = await run_task

    summary = engine.summarize(execution_plan, discovered=tasks)
    if output_json:
        formatter.console.print_json(json.dumps(summary.to_dict()))
    else:
        formatter.print_run_result(result)
        formatter.print_summary(summary)
    return summary


@cli.group()
def agent() -> None:
    """Inspect agent providers."""
    pass


@agent.command("list")
@click.option("--all", "show_all", is_flag=True, help="Show unavailable agents too")
def agent_list(show_all: bool) -> None:
    """List registered agent providers and whether their CLI is installed."""
    formatter = get_formatter()
    rows = asyncio.run(_check_all())
    if not show_all:
        rows = [row for row in rows if row[2]]

    if not rows:
        formatter.print_warning("No agents available (use --all to list every provider)")
        return
    formatter.print_agent_list(rows)


async def _check_all() -> list[tuple[str, str, bool, str | None]]:
    providers = [AgentRegistry.create(pid) for pid in AgentRegistry.registered_ids()]
    checks = await asyncio.gather(*(p.check_availability() for p in providers))
    return [
        (p.id, p.name, check.available, check.version if check.available else check.error)
        for p, check in zip(providers, checks)
    ]


@cli.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Show the merged configuration."""
    formatter = get_formatter()
    merged = _load_config()
    formatter.console.print_json(json.dumps(merged.model_dump(by_alias=True)))


@config.command("path")
def config_path() -> None:
    """Print the user config file path."""
    click.echo(str(get_config_file()))


if __name__ == "__main__":
    cli()
