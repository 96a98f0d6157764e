"""
Metric snapshot types published by the telemetry scheduler.

Every snapshot is immutable and carries its capture time. A snapshot is
superseded by the next one for its stream, never merged with it. When an
aggregator fails, the scheduler republishes the previous snapshot marked
``stale`` or the kind's explicit empty snapshot with ``error`` set.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from benchrig.datastructures.type_aliases import (
    BenchmarkKey,
    FrameworkName,
    NodeAddress,
    OpsPerSecond,
    Percentage,
    StreamName,
    Timestamp,
)

from .history import BenchmarkResult

STREAM_CLUSTER: StreamName = "cluster"
STREAM_PROCESS_MANAGER: StreamName = "processManager"
STREAM_HOST: StreamName = "host"
STREAM_BENCHMARK: StreamName = "benchmark"
STREAM_TELEMETRY_ERRORS: StreamName = "telemetry.errors"


class SnapshotKind(Enum):
    CLUSTER = STREAM_CLUSTER
    PROCESS_MANAGER = STREAM_PROCESS_MANAGER
    HOST = STREAM_HOST
    BENCHMARK = STREAM_BENCHMARK

    @property
    def stream(self) -> StreamName:
        return self.value


@dataclass(frozen=True, slots=True)
class NodeStats:
    """Live stats of one cluster primary."""

    address: NodeAddress
    ops_per_sec: OpsPerSecond = 0
    used_memory_human: str = "0B"
    connected_clients: int = 0


@dataclass(frozen=True, slots=True)
class ClusterSnapshot:
    nodes: tuple[NodeStats, ...] = ()
    expected: int = 0
    fallback: bool = False
    captured_at: Timestamp = field(default_factory=time.time)
    stale: bool = False
    error: str | None = None
    kind: SnapshotKind = SnapshotKind.CLUSTER

    @property
    def online(self) -> int:
        return len(self.nodes)

    @property
    def total_ops_per_sec(self) -> int:
        return sum(node.ops_per_sec for node in self.nodes)

    def describe(self) -> str:
        if self.expected == 0:
            return "cluster not running"
        return f"{self.online}/{self.expected} online"

    @classmethod
    def empty(cls, error: str | None = None) -> ClusterSnapshot:
        return cls(error=error)


@dataclass(frozen=True, slots=True)
class WorkerStatus:
    """One process-manager row, matched by declared name and status word."""

    name: FrameworkName
    status: str
    cpu_percent: Percentage | None = None
    memory: str | None = None
    pid: int | None = None

    @property
    def online(self) -> bool:
        return self.status == "online"


@dataclass(frozen=True, slots=True)
class ProcessManagerSnapshot:
    workers: tuple[WorkerStatus, ...] = ()
    captured_at: Timestamp = field(default_factory=time.time)
    stale: bool = False
    error: str | None = None
    kind: SnapshotKind = SnapshotKind.PROCESS_MANAGER

    @property
    def total(self) -> int:
        return len(self.workers)

    @property
    def online(self) -> int:
        return sum(1 for worker in self.workers if worker.online)

    def online_count(self, name: FrameworkName) -> int:
        return sum(1 for w in self.workers if w.online and w.name == name)

    def names_online(self) -> tuple[FrameworkName, ...]:
        seen: dict[FrameworkName, None] = {}
        for worker in self.workers:
            if worker.online:
                seen.setdefault(worker.name, None)
        return tuple(seen)

    @classmethod
    def empty(cls, error: str | None = None) -> ProcessManagerSnapshot:
        return cls(error=error)


@dataclass(frozen=True, slots=True)
class HostSnapshot:
    cpu_percent: Percentage = 0.0
    memory_used_mb: float = 0.0
    memory_total_mb: float = 0.0
    uptime_seconds: float = 0.0
    load_average: tuple[float, float, float] = (0.0, 0.0, 0.0)
    cpu_count: int = 1
    captured_at: Timestamp = field(default_factory=time.time)
    stale: bool = False
    error: str | None = None
    kind: SnapshotKind = SnapshotKind.HOST

    @property
    def memory_percent(self) -> Percentage:
        if self.memory_total_mb <= 0:
            return 0.0
        return (self.memory_used_mb / self.memory_total_mb) * 100.0

    @classmethod
    def empty(cls, error: str | None = None) -> HostSnapshot:
        return cls(error=error)


@dataclass(frozen=True, slots=True)
class BenchmarkSnapshot:
    recent: tuple[BenchmarkResult, ...] = ()
    latest_per_key: Mapping[BenchmarkKey, BenchmarkResult] = field(
        default_factory=dict
    )
    total: int = 0
    captured_at: Timestamp = field(default_factory=time.time)
    stale: bool = False
    error: str | None = None
    kind: SnapshotKind = SnapshotKind.BENCHMARK

    @classmethod
    def empty(cls, error: str | None = None) -> BenchmarkSnapshot:
        return cls(error=error)


type MetricSnapshot = (
    ClusterSnapshot | ProcessManagerSnapshot | HostSnapshot | BenchmarkSnapshot
)

_EMPTY_BY_KIND = {
    SnapshotKind.CLUSTER: ClusterSnapshot.empty,
    SnapshotKind.PROCESS_MANAGER: ProcessManagerSnapshot.empty,
    SnapshotKind.HOST: HostSnapshot.empty,
    SnapshotKind.BENCHMARK: BenchmarkSnapshot.empty,
}


def empty_snapshot(kind: SnapshotKind, error: str | None = None) -> MetricSnapshot:
    return _EMPTY_BY_KIND[kind](error)


@dataclass(frozen=True, slots=True)
class TelemetryError:
    """Observability event for one failed aggregator run."""

    stream: StreamName
    lane: str
    error: str
    timestamp: Timestamp = field(default_factory=time.time)
