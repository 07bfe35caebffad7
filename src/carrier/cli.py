"""CLI interface for Carrier."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.table import Table

from carrier import __version__
from carrier.config import CarrierConfig, configure_logging
from carrier.exceptions import CarrierError, NotFoundError
from carrier.log_render import FORMATS, render_event
from carrier.models import DeployedFleet, Status
from carrier.orchestrator import Carrier
from carrier.stream import stream_stats, watch_stream
from carrier.ui import Icons, Theme, status_label

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="carrier",
    help="Carrier - deploy and supervise fleets of coding agents.",
    no_args_is_help=True,
)
console = Console()

# Loaded by the main callback; commands read it through _carrier().
_state: dict[str, CarrierConfig] = {}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"carrier version {__version__}")
        raise typer.Exit()


def _config() -> CarrierConfig:
    if "config" not in _state:
        _state["config"] = CarrierConfig.load()
    return _state["config"]


def _carrier() -> Carrier:
    return Carrier(_config())


def _fail(e: Exception) -> None:
    console.print(f"[{Theme.ERROR}]Error: {escape(str(e))}[/{Theme.ERROR}]")
    raise typer.Exit(1) from None


def _exit_code(deployed: DeployedFleet) -> int:
    """0 unless the deployment failed; then the failed task's exit code when known."""
    if deployed.status == Status.FAILED:
        for task in reversed(deployed.tasks):
            if task.status == Status.FAILED and task.exit_code:
                return task.exit_code if task.exit_code > 0 else 1
        return 1
    if deployed.status == Status.CANCELLED:
        return 1
    return 0


def _print_outcome(deployed: DeployedFleet, detached: bool) -> None:
    text, style = status_label(deployed.status)
    label = f"[bold]{deployed.id}[/bold] ({deployed.fleet_id})"
    if detached and deployed.status == Status.ACTIVE:
        console.print(f"{Icons.ROBOT} Deployed {label} in the background: [{style}]{text}[/{style}]")
        console.print(f"[{Theme.MUTED}]Follow with: carrier watch {deployed.id} --follow[/{Theme.MUTED}]")
        return
    console.print(f"{Icons.ARROW_RIGHT} Deployment {label}: [{style}]{text}[/{style}]")
    if deployed.status == Status.AWAITING_APPROVAL:
        console.print(
            f"[{Theme.WARNING}]Task {deployed.current_task} needs approval: "
            f"carrier approve {deployed.id}[/{Theme.WARNING}]"
        )


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = False,
    config_path: Annotated[
        Path | None, typer.Option("--config", "-c", help="Path to a TOML config file")
    ] = None,
    carrier_path: Annotated[
        Path | None, typer.Option("--carrier-path", help="Carrier root directory")
    ] = None,
) -> None:
    """Carrier - deploy and supervise fleets of coding agents."""
    try:
        config = CarrierConfig.load(config_path, carrier_path=carrier_path)
    except (ValueError, OSError) as e:
        _fail(e)
    _state["config"] = config
    configure_logging(config)


@app.command()
def deploy(
    fleet_id: Annotated[str, typer.Argument(help="Fleet to deploy")],
    request: Annotated[str, typer.Argument(help="What the fleet should do")],
    detach: Annotated[
        bool, typer.Option("--detach", "-d", help="Run in the background and return at once")
    ] = False,
    timeout: Annotated[
        float | None, typer.Option("--timeout", "-t", help="Per-task timeout in seconds")
    ] = None,
) -> None:
    """Deploy a fleet for a request."""
    carrier = _carrier()
    try:
        deployed = asyncio.run(
            carrier.deploy(
                fleet_id, request, detach=detach, timeout=timeout or carrier.config.task_timeout
            )
        )
    except CarrierError as e:
        _fail(e)
    _print_outcome(deployed, detach)
    code = _exit_code(deployed)
    if code:
        raise typer.Exit(code)


@app.command()
def start(
    deployed_id: Annotated[str, typer.Argument(help="Deployment id or unique id")],
    from_start: Annotated[
        bool, typer.Option("--from-start", help="Restart from the first task with the original request")
    ] = False,
    detach: Annotated[
        bool, typer.Option("--detach", "-d", help="Run in the background and return at once")
    ] = False,
    timeout: Annotated[
        float | None, typer.Option("--timeout", "-t", help="Per-task timeout in seconds")
    ] = None,
) -> None:
    """Resume a cancelled or failed deployment."""
    carrier = _carrier()
    try:
        deployed = asyncio.run(
            carrier.start(
                deployed_id,
                from_start=from_start,
                detach=detach,
                timeout=timeout or carrier.config.task_timeout,
            )
        )
    except CarrierError as e:
        _fail(e)
    _print_outcome(deployed, detach)
    code = _exit_code(deployed)
    if code:
        raise typer.Exit(code)


@app.command()
def stop(
    deployed_id: Annotated[str, typer.Argument(help="Deployment id or unique id")],
    task_id: Annotated[str | None, typer.Option("--task", help="Task to stop")] = None,
) -> None:
    """Stop a running deployment."""
    try:
        result = _carrier().stop(deployed_id, task_id)
    except CarrierError as e:
        _fail(e)
    console.print(
        f"{Icons.DONE} Stopped deployment [bold]{result.deployed_id}[/bold] "
        f"at task {result.task_id or '-'}"
    )
    if result.killed or result.orphans:
        pids = ", ".join(str(pid) for pid in [*result.killed, *result.orphans])
        console.print(f"[{Theme.MUTED}]Signaled: {pids}[/{Theme.MUTED}]")


@app.command()
def approve(
    deployed_id: Annotated[str, typer.Argument(help="Deployment id or unique id")],
    detach: Annotated[
        bool, typer.Option("--detach", "-d", help="Run the next task in the background")
    ] = False,
) -> None:
    """Approve the task a deployment is waiting on and continue."""
    try:
        deployed = asyncio.run(_carrier().approve(deployed_id, detach=detach))
    except CarrierError as e:
        _fail(e)
    _print_outcome(deployed, detach)
    code = _exit_code(deployed)
    if code:
        raise typer.Exit(code)


@app.command()
def status(
    deployed_id: Annotated[
        str | None, typer.Argument(help="Deployment id (omit to list all)")
    ] = None,
) -> None:
    """Show deployments, or the tasks of one deployment."""
    carrier = _carrier()
    try:
        result = carrier.status(deployed_id)
    except CarrierError as e:
        _fail(e)

    if isinstance(result, list):
        if not result:
            console.print(f"[{Theme.MUTED}]No deployments.[/{Theme.MUTED}]")
            return
        table = Table(title="Deployments", border_style=Theme.BORDER)
        table.add_column("ID", style=Theme.PRIMARY)
        table.add_column("Fleet")
        table.add_column("Status")
        table.add_column("Current task")
        table.add_column("Deployed", style=Theme.MUTED)
        for deployed in result:
            text, style = status_label(deployed.status)
            table.add_row(
                deployed.id,
                deployed.fleet_id,
                f"[{style}]{text}[/{style}]",
                deployed.current_task or "-",
                deployed.deployed_at,
            )
        console.print(table)
        return

    processes = carrier.processes.describe(result.id)
    text, style = status_label(result.status)
    console.print(f"[bold]{result.id}[/bold] {result.fleet_id}  [{style}]{text}[/{style}]")
    if result.unique_id:
        console.print(f"[{Theme.MUTED}]{result.unique_id}[/{Theme.MUTED}]")
    if processes["stop_requested"]:
        console.print(f"[{Theme.WARNING}]{Icons.WARNING} Stop requested[/{Theme.WARNING}]")
    table = Table(border_style=Theme.BORDER)
    table.add_column("Task", style=Theme.PRIMARY)
    table.add_column("Status")
    table.add_column("PID")
    table.add_column("Exit")
    table.add_column("Completed", style=Theme.MUTED)
    for task in result.tasks:
        text, style = status_label(task.status)
        pid = processes["running"].get(task.task_id)
        table.add_row(
            task.task_id,
            f"[{style}]{text}[/{style}]",
            str(pid) if pid else "-",
            "-" if task.exit_code is None else str(task.exit_code),
            task.completed_at or "-",
        )
    console.print(table)


async def _watch(
    carrier: Carrier,
    deployed_id: str,
    follow: bool,
    tail: int | None,
    task_filter: str | None,
    pattern: str | None,
    fmt: str,
) -> None:
    def is_finished() -> bool:
        try:
            return carrier.registry.get(deployed_id).status != Status.ACTIVE
        except NotFoundError:
            return True

    async for event in watch_stream(
        carrier.config.carrier_path,
        deployed_id,
        follow=follow,
        tail=tail,
        task_filter=task_filter,
        pattern=pattern,
        poll_interval=carrier.config.poll_interval,
        is_finished=is_finished if follow else None,
    ):
        render_event(event, console, fmt)


@app.command()
def watch(
    deployed_id: Annotated[str, typer.Argument(help="Deployment id or unique id")],
    follow: Annotated[bool, typer.Option("--follow", "-f", help="Keep following new events")] = False,
    tail: Annotated[int | None, typer.Option("--tail", "-n", help="Show only the last N events")] = None,
    task_id: Annotated[str | None, typer.Option("--task", help="Only this task's stream")] = None,
    pattern: Annotated[
        str | None, typer.Option("--filter", help="Regex matched against each event")
    ] = None,
    fmt: Annotated[str, typer.Option("--format", help="pretty, json or raw")] = "pretty",
    stats: Annotated[bool, typer.Option("--stats", help="Print event counts and exit")] = False,
) -> None:
    """Show a deployment's stream events."""
    if fmt not in FORMATS:
        raise typer.BadParameter(f"Invalid format. Valid: {', '.join(FORMATS)}")
    carrier = _carrier()
    try:
        deployed = carrier.registry.get(deployed_id)
    except CarrierError as e:
        _fail(e)

    if stats:
        counts = stream_stats(carrier.config.carrier_path, deployed.id)
        console.print(f"[bold]{counts['total']}[/bold] events")
        for name, count in sorted(counts["by_type"].items()):
            console.print(f"  {Icons.BULLET} {name}: {count}")
        for name, count in sorted(counts["by_task"].items()):
            console.print(f"  {Icons.ARROW_RIGHT} {name}: {count}")
        return

    try:
        asyncio.run(_watch(carrier, deployed.id, follow, tail, task_id, pattern, fmt))
    except KeyboardInterrupt:
        console.print(f"\n[{Theme.MUTED}]Detached; the deployment keeps running.[/{Theme.MUTED}]")


@app.command()
def summary(
    deployed_id: Annotated[str, typer.Argument(help="Deployment id or unique id")],
) -> None:
    """Print a markdown summary of a deployment."""
    try:
        report = _carrier().summary(deployed_id)
    except CarrierError as e:
        _fail(e)
    console.print(Markdown(report))


@app.command()
def clean(
    deployed_id: Annotated[
        str | None, typer.Argument(help="Deployment to remove (omit to clean all completed)")
    ] = None,
    keep_outputs: Annotated[
        bool, typer.Option("--keep-outputs", help="Keep the deployment's outputs directory")
    ] = False,
) -> None:
    """Remove finished deployments from the registry and disk."""
    carrier = _carrier()
    try:
        if deployed_id is None:
            removed = carrier.registry.clean_completed()
        else:
            deployed = carrier.registry.get(deployed_id)
            if deployed.status.is_running:
                console.print(
                    f"[{Theme.ERROR}]Deployment {deployed.id} is {deployed.status.value}; "
                    f"stop it first[/{Theme.ERROR}]"
                )
                raise typer.Exit(1)
            carrier.registry.remove(deployed.id, keep_outputs=keep_outputs)
            removed = [deployed.id]
    except CarrierError as e:
        _fail(e)
    if not removed:
        console.print(f"[{Theme.MUTED}]Nothing to clean.[/{Theme.MUTED}]")
        return
    console.print(f"{Icons.DONE} Removed {len(removed)} deployment(s): {', '.join(removed)}")


@app.command("run-task", hidden=True)
def run_task(
    deployed_id: Annotated[str, typer.Argument()],
    task_id: Annotated[str, typer.Argument()],
    agent: Annotated[str, typer.Option("--agent")],
    prompt_file: Annotated[Path, typer.Option("--prompt-file")],
    carrier_path: Annotated[Path | None, typer.Option("--carrier-path")] = None,
) -> None:
    """Run a task chain in this process (entry point of detached launches)."""
    config = _config()
    if carrier_path is not None:
        config = config.model_copy(update={"carrier_path": carrier_path})
    carrier = Carrier(config)
    try:
        prompt = prompt_file.read_text(encoding="utf-8")
    except OSError as e:
        logger.error("Cannot read prompt for %s/%s: %s", deployed_id, task_id, e)
        _fail(e)
    try:
        deployed = asyncio.run(
            carrier.run_task(deployed_id, task_id, prompt, agent_type=agent, timeout=None)
        )
    except CarrierError as e:
        logger.error("Detached task %s/%s failed: %s", deployed_id, task_id, e)
        _fail(e)
    code = _exit_code(deployed)
    if code:
        raise typer.Exit(code)


if __name__ == "__main__":
    app()
