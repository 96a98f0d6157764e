"""Rich rendering of control-plane results for the CLI."""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.table import Table

from benchrig.core.executor import (
    CommandExecution,
    Fatal,
    Success,
    ValidationFailure,
)
from benchrig.core.history import BenchmarkResult
from benchrig.core.scaling import ScalingParameters
from benchrig.core.snapshots import (
    BenchmarkSnapshot,
    ClusterSnapshot,
    HostSnapshot,
    ProcessManagerSnapshot,
    TelemetryError,
)
from benchrig.core.topology import ClusterNode, TopologySnapshot


def _titled(title: str) -> Table:
    # rich wraps a title to the table width; keep the table at least as wide.
    return Table(title=title, min_width=len(title) + 4)


class RigDisplay:
    """Formats executions, snapshots and tables onto a rich console."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def execution(self, execution: CommandExecution) -> None:
        match execution.outcome:
            case Success(message=message):
                self.console.print(f"[green]✅ {message}[/green]")
            case ValidationFailure(reason=reason):
                self.console.print(f"[yellow]⚠️ {reason}[/yellow]")
            case Fatal(error=error):
                self.console.print(f"[red]❌ {error}[/red]")
                if execution.stderr.strip():
                    self.console.print(f"[dim]{execution.stderr.strip()}[/dim]")
        if execution.duration_ms:
            self.console.print(
                f"[dim]{execution.label} ({execution.category.value}) "
                f"took {execution.duration_ms:.0f}ms[/dim]"
            )

    def primaries(
        self, nodes: tuple[ClusterNode, ...], snapshot: TopologySnapshot
    ) -> None:
        if not nodes:
            self.console.print("[yellow]⚠️ No cluster nodes found[/yellow]")
            return

        table = _titled(f"Cluster primaries ({snapshot.source.value})")
        table.add_column("Address", style="cyan", no_wrap=True)
        table.add_column("Port", justify="right")
        table.add_column("Role", justify="center")
        for node in nodes:
            role = {
                "primary": "[green]primary[/green]",
                "unknown": "[yellow]unknown[/yellow]",
            }.get(node.role.value, f"[dim]{node.role.value}[/dim]")
            table.add_row(node.address, str(node.port), role)
        self.console.print(table)

    def scaling(self, instance_count: int, params: ScalingParameters) -> None:
        table = _titled(f"Load parameters for {instance_count} instance(s)")
        table.add_column("Parameter", style="cyan")
        table.add_column("Value", justify="right", style="magenta")
        table.add_row("connections", str(params.connections))
        table.add_row("workers", str(params.workers))
        table.add_row("pipelining", str(params.pipelining))
        self.console.print(table)

    def benchmark(self, result: BenchmarkResult) -> None:
        table = _titled(f"{result.framework} {result.method} {result.endpoint}")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right")
        table.add_row("req/s", f"{result.req_per_sec:,}")
        table.add_row("avg latency", f"{result.avg_latency}ms")
        table.add_row("p50 / p90 / p99", f"{result.p50_latency} / {result.p90_latency} / {result.p99_latency}ms")
        table.add_row("total requests", f"{result.total_requests:,}")
        errors = f"{result.errors} errors, {result.timeouts} timeouts, {result.non_2xx} non-2xx"
        table.add_row("failures", f"[red]{errors}[/red]" if result.has_errors else errors)
        self.console.print(table)

    def snapshot(self, stream: str, payload: Any) -> None:
        flag = " [yellow](stale)[/yellow]" if getattr(payload, "stale", False) else ""
        error = getattr(payload, "error", None)
        suffix = f" [red]{error}[/red]" if error else ""
        self.console.print(f"[cyan]{stream:<16}[/cyan] {describe(payload)}{flag}{suffix}")


def describe(payload: Any) -> str:
    """One-line summary of a published payload."""
    match payload:
        case ClusterSnapshot():
            fallback = " (fallback discovery)" if payload.fallback else ""
            if payload.expected == 0:
                return payload.describe()
            return f"{payload.describe()}, {payload.total_ops_per_sec:,} ops/s{fallback}"
        case ProcessManagerSnapshot():
            names = ", ".join(payload.names_online()) or "none"
            return f"{payload.online}/{payload.total} workers online ({names})"
        case HostSnapshot():
            return (
                f"cpu {payload.cpu_percent:.1f}%, "
                f"mem {payload.memory_used_mb:.0f}/{payload.memory_total_mb:.0f}MB, "
                f"load {payload.load_average[0]:.2f}"
            )
        case BenchmarkSnapshot():
            if not payload.recent:
                return "no benchmarks yet"
            latest = payload.recent[0]
            return f"{payload.total} results, latest {latest.framework} {latest.req_per_sec:,} req/s"
        case TelemetryError():
            return f"{payload.stream} ({payload.lane} lane) failed: {payload.error}"
    return repr(payload)
