"""
Load-generator parameters derived from the number of serving instances.

``scale()`` is pure. ``resolve_instance_count()`` decides which instance
count to feed it: an explicit hint wins, remote targets without a hint are
treated as a single instance, and local targets are looked up in the latest
process-manager snapshot.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from loguru import logger

from benchrig.datastructures.type_aliases import FrameworkName, InstanceCount

from .errors import InvalidRequestError
from .snapshots import ProcessManagerSnapshot

CONNECTIONS_PER_INSTANCE = 50
MIN_CONNECTIONS = 100
MIN_WORKERS = 4
MAX_WORKERS = 16


@dataclass(frozen=True, slots=True)
class ScalingParameters:
    connections: int
    workers: int
    pipelining: int


def _pipelining_for(instance_count: InstanceCount) -> int:
    if instance_count >= 10:
        return 10
    if instance_count >= 4:
        return 6
    return 2


def scale(
    instance_count: InstanceCount,
    *,
    connections: int | None = None,
    workers: int | None = None,
    pipelining: int | None = None,
) -> ScalingParameters:
    """Derive load parameters for ``instance_count``; explicit values win.

    >>> scale(10)
    ScalingParameters(connections=500, workers=5, pipelining=10)
    """
    if instance_count < 1:
        raise ValueError(f"instance count must be at least 1, got {instance_count}")
    return ScalingParameters(
        connections=(
            connections
            if connections is not None
            else max(MIN_CONNECTIONS, instance_count * CONNECTIONS_PER_INSTANCE)
        ),
        workers=(
            workers
            if workers is not None
            else max(MIN_WORKERS, min(math.ceil(instance_count / 2), MAX_WORKERS))
        ),
        pipelining=(
            pipelining if pipelining is not None else _pipelining_for(instance_count)
        ),
    )


def resolve_instance_count(
    framework: FrameworkName,
    *,
    hint: InstanceCount | None,
    processes: ProcessManagerSnapshot | None,
    remote: bool = False,
) -> InstanceCount:
    """Pick the instance count used for scaling.

    Raises ``InvalidRequestError`` when a local target has no online workers.
    """
    if hint is not None:
        if hint < 1:
            raise InvalidRequestError(f"Instance hint must be at least 1, got {hint}")
        return hint

    if remote:
        logger.warning(
            f"[Scaling] No instance count given for remote {framework}; scaling for 1 instance"
        )
        return 1

    running = processes.names_online() if processes is not None else ()
    if not running:
        raise InvalidRequestError(
            f"No worker processes are running - start {framework} first"
        )

    count = processes.online_count(framework) if processes is not None else 0
    if count == 0:
        raise InvalidRequestError(
            f"{framework} is not running - currently running: {', '.join(running)}"
        )
    return count
