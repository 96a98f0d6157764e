"""
Metrics aggregators, one per telemetry stream.

Each aggregator is an async callable returning a fresh snapshot. Gateway
errors stop here: a failing node is omitted from the cluster snapshot and a
failing process-manager query yields an empty snapshot with ``error`` set.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Awaitable, Callable, Iterable

import psutil
from loguru import logger

from benchrig.datastructures.type_aliases import (
    ByteSize,
    CommandString,
    DurationSeconds,
    FrameworkName,
)

from .errors import GatewayError
from .gateway import CommandRunner
from .history import BenchmarkStore
from .snapshots import (
    BenchmarkSnapshot,
    ClusterSnapshot,
    HostSnapshot,
    MetricSnapshot,
    NodeStats,
    ProcessManagerSnapshot,
    WorkerStatus,
)
from .topology import ClusterNode, TopologyCache, TopologySource

type Aggregator = Callable[[], Awaitable[MetricSnapshot]]

_OPS_PATTERN = re.compile(r"instantaneous_ops_per_sec:(\d+)")
_MEMORY_PATTERN = re.compile(r"used_memory_human:([^\r\n]+)")
_CLIENTS_PATTERN = re.compile(r"connected_clients:(\d+)")
_CONNECT_FAILURE = re.compile(r"Could not connect|Connection refused", re.IGNORECASE)

_STATUS_PATTERN = re.compile(
    r"(?<![\w-])(online|stopped|stopping|errored|launching|waiting restart|one-launch-status)(?![\w-])"
)
_CPU_PATTERN = re.compile(r"(?<![\w.])(\d+(?:\.\d+)?)\s*%")
_MEMORY_COLUMN_PATTERN = re.compile(r"(?<![\w.])(\d+(?:\.\d+)?\s*(?:[kmgt]i?)?b)(?![\w])", re.IGNORECASE)
_TOKEN_SPLIT = re.compile(r"[\s│┃║|]+")


class ClusterAggregator:
    """Per-primary throughput, memory and client counts."""

    def __init__(
        self,
        gateway: CommandRunner,
        topology: TopologyCache,
        *,
        info_command: CommandString = "redis-cli -h {host} -p {port} INFO {section}",
        timeout: DurationSeconds = 5.0,
    ) -> None:
        self.gateway = gateway
        self.topology = topology
        self.info_command = info_command
        self.timeout = timeout

    async def __call__(self) -> ClusterSnapshot:
        view = await self.topology.get_topology()
        primaries = view.primaries
        if not primaries:
            return ClusterSnapshot()

        fallback = view.source is TopologySource.FALLBACK
        results = await asyncio.gather(
            *(self._node_stats(node) for node in primaries)
        )
        nodes = tuple(stats for stats in results if stats is not None)
        if len(nodes) < len(primaries):
            logger.debug(
                f"[ClusterAggregator] {len(nodes)}/{len(primaries)} primaries responded"
            )
        return ClusterSnapshot(nodes=nodes, expected=len(primaries), fallback=fallback)

    async def _info(self, node: ClusterNode, section: str) -> str:
        command = self.info_command.format(
            host=node.host, port=node.port, section=section
        )
        result = await self.gateway.run(command, timeout=self.timeout)
        if not result.ok or _CONNECT_FAILURE.search(result.stdout):
            raise GatewayError(
                command,
                f"INFO {section} failed on {node.address}",
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result.stdout

    async def _node_stats(self, node: ClusterNode) -> NodeStats | None:
        outputs = await asyncio.gather(
            self._info(node, "stats"),
            self._info(node, "memory"),
            self._info(node, "clients"),
            return_exceptions=True,
        )
        failures = [out for out in outputs if isinstance(out, BaseException)]
        if failures:
            logger.debug(f"[ClusterAggregator] {node.address} omitted: {failures[0]}")
            return None

        stats_text, memory_text, clients_text = outputs
        ops = _OPS_PATTERN.search(stats_text)
        memory = _MEMORY_PATTERN.search(memory_text)
        clients = _CLIENTS_PATTERN.search(clients_text)
        return NodeStats(
            address=node.address,
            ops_per_sec=int(ops.group(1)) if ops else 0,
            used_memory_human=memory.group(1).strip() if memory else "0B",
            connected_clients=int(clients.group(1)) if clients else 0,
        )


def parse_process_list(
    text: str, frameworks: Iterable[FrameworkName]
) -> tuple[WorkerStatus, ...]:
    """Pattern-match process-manager output line by line.

    A worker line holds one declared name as a token and one status word.
    Column order, borders and extra columns are not assumed.
    """
    declared = set(frameworks)
    workers: list[WorkerStatus] = []
    for line in text.splitlines():
        status = _STATUS_PATTERN.search(line)
        if status is None:
            continue
        name = next(
            (token for token in _TOKEN_SPLIT.split(line) if token in declared), None
        )
        if name is None:
            continue
        cpu = _CPU_PATTERN.search(line)
        memory = _MEMORY_COLUMN_PATTERN.search(line)
        workers.append(
            WorkerStatus(
                name=name,
                status=status.group(1),
                cpu_percent=float(cpu.group(1)) if cpu else None,
                memory=memory.group(1).replace(" ", "") if memory else None,
            )
        )
    return tuple(workers)


class ProcessManagerAggregator:
    """Worker status from the external process manager's text listing."""

    def __init__(
        self,
        gateway: CommandRunner,
        *,
        frameworks: Iterable[FrameworkName],
        command: CommandString = "pm2 ls",
        timeout: DurationSeconds = 10.0,
        max_output_bytes: ByteSize = 5 * 1024 * 1024,
    ) -> None:
        self.gateway = gateway
        self.frameworks = tuple(frameworks)
        self.command = command
        self.timeout = timeout
        self.max_output_bytes = max_output_bytes

    async def __call__(self) -> ProcessManagerSnapshot:
        try:
            result = await self.gateway.run(
                self.command,
                timeout=self.timeout,
                max_output_bytes=self.max_output_bytes,
            )
        except GatewayError as e:
            logger.warning(f"[ProcessManagerAggregator] {e}")
            return ProcessManagerSnapshot.empty(error=str(e))

        if not result.ok:
            reason = (result.stderr or result.stdout).strip().splitlines()
            error = reason[0] if reason else f"exit code {result.exit_code}"
            return ProcessManagerSnapshot.empty(error=error)

        return ProcessManagerSnapshot(
            workers=parse_process_list(result.stdout, self.frameworks)
        )


class HostAggregator:
    """CPU, memory, uptime and load of the rig host."""

    async def __call__(self) -> HostSnapshot:
        memory = psutil.virtual_memory()
        load = psutil.getloadavg() if hasattr(psutil, "getloadavg") else (0.0, 0.0, 0.0)
        return HostSnapshot(
            cpu_percent=psutil.cpu_percent(interval=None),
            memory_used_mb=round(memory.used / 1024 / 1024, 2),
            memory_total_mb=round(memory.total / 1024 / 1024, 2),
            uptime_seconds=max(time.time() - psutil.boot_time(), 0.0),
            load_average=(float(load[0]), float(load[1]), float(load[2])),
            cpu_count=psutil.cpu_count() or 1,
        )


class BenchmarkAggregator:
    """Read-side summary of the benchmark history."""

    def __init__(self, history: BenchmarkStore, *, recent_count: int = 3) -> None:
        self.history = history
        self.recent_count = recent_count

    async def __call__(self) -> BenchmarkSnapshot:
        return BenchmarkSnapshot(
            recent=self.history.recent(self.recent_count),
            latest_per_key=self.history.latest_per_key(),
            total=len(self.history.all()),
        )
