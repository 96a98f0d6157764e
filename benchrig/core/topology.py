"""
Topology cache for the sharded key-value cluster under test.

Discovery has two steps: list candidate node ports from a directory-style
source, then ask one candidate for the full ``CLUSTER NODES`` table and keep
the primaries. The primary set is cached for ``ttl`` seconds.

Rules the cache keeps:
- a read returns a snapshot younger than ``ttl`` or triggers discovery;
- zero candidates is never cached, the next read retries immediately;
- if the topology query fails, every candidate is reported as a node of
  unknown role (fallback), with a warning and a recorded ``DiscoveryEvent``;
- a failed candidate listing never stores a partial snapshot: previous
  primaries are returned but left expired;
- concurrent reads on a cold cache share one in-flight discovery;
- ``invalidate()`` forces the next read to discover, and a discovery that
  was already in flight when it was called is not stored.
"""

from __future__ import annotations

import asyncio
import os
import re
import time
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from loguru import logger

from benchrig.datastructures.type_aliases import (
    CommandString,
    DurationSeconds,
    HostAddress,
    NodeAddress,
    PortNumber,
    PortRange,
    Timestamp,
)

from .errors import DiscoveryError, GatewayError
from .gateway import CommandRunner

DEFAULT_PORT_RANGE: PortRange = (7000, 7999)
DEFAULT_TTL_SECONDS = 5.0

type CandidateLister = Callable[[], Awaitable[Sequence[PortNumber]]]
type TopologyQuery = Callable[[PortNumber], Awaitable[str]]
type Clock = Callable[[], Timestamp]


class NodeRole(Enum):
    """Role of a cluster member as reported by the cluster itself."""

    PRIMARY = "primary"
    REPLICA = "replica"
    UNKNOWN = "unknown"


class TopologySource(Enum):
    """Where the current primary set came from."""

    DISCOVERED = "discovered"
    FALLBACK = "fallback"
    EMPTY = "empty"
    STALE = "stale"


@dataclass(frozen=True, slots=True)
class ClusterNode:
    """One cluster member address and its role."""

    address: NodeAddress
    role: NodeRole = NodeRole.UNKNOWN

    @property
    def host(self) -> HostAddress:
        return self.address.rsplit(":", 1)[0]

    @property
    def port(self) -> PortNumber:
        return int(self.address.rsplit(":", 1)[1])

    @classmethod
    def at(
        cls, host: HostAddress, port: PortNumber, role: NodeRole = NodeRole.UNKNOWN
    ) -> ClusterNode:
        return cls(address=f"{host}:{port}", role=role)


@dataclass(frozen=True, slots=True)
class TopologySnapshot:
    primaries: tuple[ClusterNode, ...] = ()
    fetched_at: Timestamp | None = None
    source: TopologySource = TopologySource.EMPTY


@dataclass(frozen=True, slots=True)
class DiscoveryEvent:
    """Observability record for one discovery attempt."""

    timestamp: Timestamp
    source: TopologySource
    candidates: tuple[PortNumber, ...] = ()
    primaries: int = 0
    error: str | None = None
    stored: bool = True


def _role_from_flags(flags: set[str]) -> NodeRole:
    if "slave" in flags or "replica" in flags:
        return NodeRole.REPLICA
    if "master" in flags:
        return NodeRole.PRIMARY
    return NodeRole.UNKNOWN


def parse_cluster_nodes(
    text: str,
    *,
    host_pattern: re.Pattern[str] | str = r"127\.0\.0\.1",
    port_range: PortRange = DEFAULT_PORT_RANGE,
) -> tuple[ClusterNode, ...]:
    """Parse ``CLUSTER NODES`` output into nodes sorted by port.

    Each line reads ``<id> <ip:port@cport[,hostname]> <flags> ...``. Lines
    whose host does not match ``host_pattern`` or whose port falls outside
    ``port_range`` are dropped.
    """
    pattern = re.compile(host_pattern) if isinstance(host_pattern, str) else host_pattern
    low, high = port_range
    nodes: dict[PortNumber, ClusterNode] = {}

    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 3:
            continue
        address = parts[1].split("@", 1)[0].split(",", 1)[0]
        host, sep, port_text = address.rpartition(":")
        if not sep or not port_text.isdigit():
            continue
        port = int(port_text)
        if not (low <= port <= high) or not pattern.fullmatch(host):
            continue
        flags = set(parts[2].split(","))
        if "noaddr" in flags:
            continue
        nodes[port] = ClusterNode.at(host, port, _role_from_flags(flags))

    return tuple(nodes[port] for port in sorted(nodes))


def list_cluster_ports(path: Path | str) -> list[PortNumber]:
    """List numeric entries of the cluster directory as candidate ports.

    A missing directory means no cluster. Any other read failure raises
    ``DiscoveryError``.
    """
    try:
        entries = os.listdir(path)
    except FileNotFoundError:
        return []
    except OSError as e:
        raise DiscoveryError(f"Cannot list cluster directory {path}: {e}") from e
    return sorted(int(name) for name in entries if name.isdigit())


def directory_candidate_lister(path: Path | str) -> CandidateLister:
    async def _list() -> Sequence[PortNumber]:
        return list_cluster_ports(path)

    return _list


def gateway_topology_query(
    gateway: CommandRunner,
    template: CommandString,
    *,
    host: HostAddress,
    timeout: DurationSeconds,
) -> TopologyQuery:
    """Build a topology query that runs ``template`` against one node."""

    async def _query(port: PortNumber) -> str:
        command = template.format(host=host, port=port)
        result = await gateway.run(command, timeout=timeout)
        if not result.ok:
            raise GatewayError(
                command,
                f"Topology query exited {result.exit_code}",
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result.stdout

    return _query


@dataclass(slots=True, eq=False)
class TopologyCache:
    """Cached primary set of the cluster with explicit invalidation."""

    list_candidates: CandidateLister
    query_topology: TopologyQuery
    ttl: DurationSeconds = DEFAULT_TTL_SECONDS
    clock: Clock = time.monotonic
    host: HostAddress = "127.0.0.1"
    host_pattern: str | None = None
    port_range: PortRange = DEFAULT_PORT_RANGE
    max_events: int = 100
    discovery_count: int = 0
    _primaries: tuple[ClusterNode, ...] = ()
    _fetched_at: Timestamp | None = None
    _source: TopologySource = TopologySource.EMPTY
    _generation: int = 0
    _inflight: asyncio.Task[TopologySnapshot] | None = None
    _events: deque[DiscoveryEvent] = field(default_factory=deque)

    def __post_init__(self) -> None:
        self._events = deque(maxlen=self.max_events)

    @property
    def snapshot(self) -> TopologySnapshot:
        return TopologySnapshot(
            primaries=self._primaries,
            fetched_at=self._fetched_at,
            source=self._source,
        )

    @property
    def discovery_events(self) -> tuple[DiscoveryEvent, ...]:
        return tuple(self._events)

    def is_fresh(self, now: Timestamp | None = None) -> bool:
        if self._fetched_at is None:
            return False
        current = self.clock() if now is None else now
        return (current - self._fetched_at) < self.ttl

    async def get_primaries(self) -> tuple[ClusterNode, ...]:
        """Return the cached primaries or discover them."""
        return (await self.get_topology()).primaries

    async def get_topology(self) -> TopologySnapshot:
        """Like ``get_primaries`` but with the source the primaries came from.

        The source belongs to the same discovery as the primaries, so an
        ``invalidate()`` racing with the caller cannot change it.
        """
        if self.is_fresh():
            return self.snapshot

        task = self._inflight
        if task is None:
            task = asyncio.create_task(
                self._discover(self._generation), name="topology-discovery"
            )
            self._inflight = task
            task.add_done_callback(self._clear_inflight)
        return await asyncio.shield(task)

    def invalidate(self) -> None:
        """Drop the cached primaries so the next read re-discovers."""
        self._generation += 1
        self._primaries = ()
        self._fetched_at = None
        self._source = TopologySource.EMPTY
        self._inflight = None
        logger.debug(f"[TopologyCache] Invalidated (generation {self._generation})")

    def _clear_inflight(self, task: asyncio.Task[TopologySnapshot]) -> None:
        if self._inflight is task:
            self._inflight = None

    def _record(self, event: DiscoveryEvent) -> None:
        self._events.append(event)

    def _fallback_nodes(self, ports: Sequence[PortNumber]) -> tuple[ClusterNode, ...]:
        return tuple(ClusterNode.at(self.host, port) for port in ports)

    async def _discover(self, generation: int) -> TopologySnapshot:
        self.discovery_count += 1
        low, high = self.port_range

        try:
            listed = await self.list_candidates()
        except Exception as e:
            current = generation == self._generation
            stale = self._primaries if current else ()
            source = TopologySource.STALE if stale else TopologySource.EMPTY
            if current:
                self._fetched_at = None
                self._source = source
            logger.warning(f"[TopologyCache] Candidate listing failed: {e}")
            self._record(
                DiscoveryEvent(
                    timestamp=self.clock(),
                    source=source,
                    primaries=len(stale),
                    error=str(e),
                    stored=False,
                )
            )
            return TopologySnapshot(primaries=stale, source=source)

        ports = tuple(sorted(port for port in listed if low <= port <= high))
        if not ports:
            if generation == self._generation:
                self._primaries = ()
                self._fetched_at = None
                self._source = TopologySource.EMPTY
            logger.debug("[TopologyCache] No cluster nodes found")
            self._record(
                DiscoveryEvent(
                    timestamp=self.clock(), source=TopologySource.EMPTY, stored=False
                )
            )
            return TopologySnapshot()

        primaries, source, error = await self._query_primaries(ports)

        fetched_at = self.clock()
        stored = generation == self._generation
        if stored:
            self._primaries = primaries
            self._fetched_at = fetched_at
            self._source = source
        else:
            logger.debug(
                "[TopologyCache] Discarding discovery result from before invalidation"
            )
        self._record(
            DiscoveryEvent(
                timestamp=self.clock(),
                source=source,
                candidates=ports,
                primaries=len(primaries),
                error=error,
                stored=stored,
            )
        )
        return TopologySnapshot(primaries, fetched_at, source)

    async def _query_primaries(
        self, ports: tuple[PortNumber, ...]
    ) -> tuple[tuple[ClusterNode, ...], TopologySource, str | None]:
        error: str | None = None
        try:
            text = await self.query_topology(ports[0])
        except Exception as e:
            error = str(e) or e.__class__.__name__
        else:
            nodes = parse_cluster_nodes(
                text,
                host_pattern=self.host_pattern or re.escape(self.host),
                port_range=self.port_range,
            )
            primaries = tuple(node for node in nodes if node.role is NodeRole.PRIMARY)
            if primaries:
                return primaries, TopologySource.DISCOVERED, None
            error = "no primary entries in topology output"

        logger.warning(
            f"[TopologyCache] Topology query on port {ports[0]} failed ({error}); "
            f"treating all {len(ports)} candidates as primaries"
        )
        return self._fallback_nodes(ports), TopologySource.FALLBACK, error
