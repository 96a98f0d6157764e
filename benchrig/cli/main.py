#!/usr/bin/env python3
"""
Main CLI entry point for the benchmarking rig.

Provides command-line access to the control plane:
- Live telemetry from the cluster, the process manager and the host
- Cluster lifecycle (setup, stop, resume, clean, status)
- Worker lifecycle through the process manager
- Auto-scaled load tests
"""

import asyncio
import sys
from collections.abc import Awaitable, Callable

import click
from loguru import logger
from rich.console import Console

from benchrig.cli.display import RigDisplay
from benchrig.config import RigSettings
from benchrig.control import ControlPlane
from benchrig.core.errors import InvalidRequestError
from benchrig.core.executor import CommandExecution
from benchrig.core.logging import configure_logging
from benchrig.core.scaling import scale as derive_scaling
from benchrig.core.snapshots import (
    STREAM_BENCHMARK,
    STREAM_CLUSTER,
    STREAM_HOST,
    STREAM_PROCESS_MANAGER,
    STREAM_TELEMETRY_ERRORS,
)

console = Console()
display = RigDisplay(console)

type Action = Callable[[ControlPlane], Awaitable[CommandExecution]]


def _settings(ctx: click.Context) -> RigSettings:
    return ctx.obj["settings"]


def _run_action(ctx: click.Context, action: Action) -> None:
    """Run one administrative action and exit non-zero unless it succeeded."""

    async def _run() -> CommandExecution:
        plane = ControlPlane(_settings(ctx))
        return await action(plane)

    execution = asyncio.run(_run())
    display.execution(execution)
    if not execution.succeeded:
        sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--debug-scope",
    "-d",
    multiple=True,
    help="Module prefix to log at DEBUG (e.g. core.topology)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug_scope: tuple[str, ...]):
    """
    Benchmark rig control plane.

    Watches the cluster under test, the worker processes and the host, and
    runs administrative commands and load tests against them.
    """
    settings = RigSettings()
    configure_logging(
        "DEBUG" if verbose else settings.log_level,
        debug_scopes=(*settings.debug_scopes, *debug_scope),
        colorize=True,
    )
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.option(
    "--duration",
    "-t",
    type=float,
    default=0,
    help="Seconds to watch before exiting (0 watches until interrupted)",
)
@click.option(
    "--stream",
    "-s",
    "streams",
    multiple=True,
    type=click.Choice(
        [
            STREAM_CLUSTER,
            STREAM_PROCESS_MANAGER,
            STREAM_HOST,
            STREAM_BENCHMARK,
            STREAM_TELEMETRY_ERRORS,
        ]
    ),
    help="Streams to show (default: all)",
)
@click.pass_context
def watch(ctx: click.Context, duration: float, streams: tuple[str, ...]):
    """Stream live telemetry until interrupted."""
    selected = streams or (
        STREAM_HOST,
        STREAM_CLUSTER,
        STREAM_PROCESS_MANAGER,
        STREAM_BENCHMARK,
        STREAM_TELEMETRY_ERRORS,
    )

    async def _watch():
        plane = ControlPlane(_settings(ctx))
        for stream in selected:
            plane.subscribe(stream, display.snapshot)
        console.print(
            f"[bold green]📡 Watching {', '.join(selected)} "
            f"(fast {plane.scheduler.fast_interval}s, slow {plane.scheduler.slow_interval}s)[/bold green]"
        )
        async with plane:
            if duration > 0:
                await asyncio.sleep(duration)
            else:
                await asyncio.Event().wait()

    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠️ Watch stopped[/yellow]")


@cli.command()
@click.pass_context
def primaries(ctx: click.Context):
    """Discover and list the cluster primaries."""

    async def _primaries():
        plane = ControlPlane(_settings(ctx))
        view = await plane.topology.get_topology()
        display.primaries(view.primaries, view)
        for event in plane.topology.discovery_events:
            if event.error:
                logger.warning(f"[CLI] Discovery ({event.source.value}): {event.error}")

    asyncio.run(_primaries())


@cli.command()
@click.argument("instances", type=click.IntRange(min=1))
@click.option("--connections", "-c", type=int, help="Override connection count")
@click.option("--workers", "-w", type=int, help="Override load-generator workers")
@click.option("--pipelining", "-p", type=int, help="Override pipelining factor")
def scale(
    instances: int,
    connections: int | None,
    workers: int | None,
    pipelining: int | None,
):
    """Show the load parameters derived for INSTANCES serving processes."""
    params = derive_scaling(
        instances, connections=connections, workers=workers, pipelining=pipelining
    )
    display.scaling(instances, params)


@cli.group()
def cluster():
    """Cluster lifecycle commands."""
    pass


@cluster.command("start")
@click.argument("nodes", type=int)
@click.option("--replicas", "-r", type=int, help="Replicas per primary")
@click.pass_context
def cluster_start(ctx: click.Context, nodes: int, replicas: int | None):
    """Create a cluster of NODES nodes."""
    _run_action(ctx, lambda plane: plane.start_cluster(nodes, replicas))


@cluster.command("stop")
@click.pass_context
def cluster_stop(ctx: click.Context):
    """Stop every cluster node, keeping data."""
    _run_action(ctx, lambda plane: plane.stop_cluster())


@cluster.command("resume")
@click.pass_context
def cluster_resume(ctx: click.Context):
    """Restart stopped cluster nodes."""
    _run_action(ctx, lambda plane: plane.resume_cluster())


@cluster.command("clean")
@click.pass_context
def cluster_clean(ctx: click.Context):
    """Delete cluster data."""
    _run_action(ctx, lambda plane: plane.clean_cluster())


@cluster.command("status")
@click.pass_context
def cluster_status(ctx: click.Context):
    """Report cluster health through the cluster script."""

    async def _status() -> CommandExecution:
        plane = ControlPlane(_settings(ctx))
        return await plane.cluster_status()

    execution = asyncio.run(_status())
    if execution.stdout.strip():
        console.print(execution.stdout.rstrip())
    display.execution(execution)
    if not execution.succeeded:
        sys.exit(1)


@cli.group()
def workers():
    """Worker process commands."""
    pass


@workers.command("start")
@click.argument("framework")
@click.option("--instances", "-i", type=int, default=6, help="Instances to start")
@click.option("--yes", "-y", is_flag=True, help="Confirm unusually high instance counts")
@click.pass_context
def workers_start(ctx: click.Context, framework: str, instances: int, yes: bool):
    """Start FRAMEWORK under the process manager."""
    _run_action(
        ctx, lambda plane: plane.start_workers(framework, instances, confirm=yes)
    )


@workers.command("stop")
@click.argument("framework")
@click.pass_context
def workers_stop(ctx: click.Context, framework: str):
    """Stop FRAMEWORK workers."""
    _run_action(ctx, lambda plane: plane.stop_workers(framework))


@workers.command("restart")
@click.argument("framework", default="all")
@click.pass_context
def workers_restart(ctx: click.Context, framework: str):
    """Restart FRAMEWORK workers (default: all)."""
    _run_action(ctx, lambda plane: plane.restart_workers(framework))


@workers.command("delete")
@click.argument("framework", default="all")
@click.pass_context
def workers_delete(ctx: click.Context, framework: str):
    """Remove FRAMEWORK workers from the process manager (default: all)."""
    _run_action(ctx, lambda plane: plane.delete_workers(framework))


@cli.group()
def bench():
    """Load test commands."""
    pass


def _load_options(func):
    options = [
        click.option("--instances", "-i", type=int, help="Instance count hint"),
        click.option("--connections", "-c", type=int, help="Override connections"),
        click.option("--workers", "-w", type=int, help="Override workers"),
        click.option("--pipelining", "-p", type=int, help="Override pipelining"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@bench.command("run")
@click.argument("framework")
@click.option("--endpoint", "-e", default="/", help="Path to load")
@click.option("--method", "-m", default="GET", help="HTTP method")
@_load_options
@click.pass_context
def bench_run(
    ctx: click.Context,
    framework: str,
    endpoint: str,
    method: str,
    instances: int | None,
    connections: int | None,
    workers: int | None,
    pipelining: int | None,
):
    """Run an auto-scaled load test against FRAMEWORK."""

    async def _bench() -> tuple[CommandExecution, ControlPlane]:
        plane = ControlPlane(_settings(ctx))
        execution = await plane.run_benchmark(
            framework,
            endpoint=endpoint,
            method=method,
            instances=instances,
            connections=connections,
            workers=workers,
            pipelining=pipelining,
        )
        return execution, plane

    execution, plane = asyncio.run(_bench())
    display.execution(execution)
    if not execution.succeeded:
        sys.exit(1)
    for result in plane.history.recent(1):
        display.benchmark(result)


@bench.command("plan")
@click.argument("framework")
@_load_options
@click.pass_context
def bench_plan(
    ctx: click.Context,
    framework: str,
    instances: int | None,
    connections: int | None,
    workers: int | None,
    pipelining: int | None,
):
    """Show the load parameters a run against FRAMEWORK would use."""

    async def _plan():
        plane = ControlPlane(_settings(ctx))
        return await plane.scaling_for(
            framework.lower(),
            instances=instances,
            connections=connections,
            workers=workers,
            pipelining=pipelining,
        )

    try:
        count, params = asyncio.run(_plan())
    except InvalidRequestError as e:
        console.print(f"[yellow]⚠️ {e.reason}[/yellow]")
        sys.exit(1)
    display.scaling(count, params)


def main():
    """Main CLI entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠️ Operation cancelled by user[/yellow]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]❌ Unexpected error: {e}[/red]")
        if "--verbose" in sys.argv or "-v" in sys.argv:
            import traceback

            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
