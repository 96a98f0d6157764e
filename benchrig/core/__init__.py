"""
benchrig core module

Process gateway, topology discovery, telemetry and command execution.
"""

from .errors import (
    BenchRigError,
    CommandTimeoutError,
    DiscoveryError,
    GatewayError,
    InvalidRequestError,
    OutputTooLargeError,
    SpawnError,
    SubscriptionLimitError,
)
from .event_bus import EventBus, SubscriptionHandle
from .executor import (
    CommandExecution,
    CommandExecutor,
    CommandOutcome,
    Fatal,
    Success,
    ValidationFailure,
)
from .gateway import ProcessGateway, ProcessResult
from .history import BenchmarkHistory, BenchmarkResult
from .scaling import ScalingParameters, resolve_instance_count, scale
from .scheduler import Lane, TelemetryJob, TelemetryScheduler
from .topology import ClusterNode, NodeRole, TopologyCache, TopologySource

__all__ = [
    "BenchRigError",
    "BenchmarkHistory",
    "BenchmarkResult",
    "ClusterNode",
    "CommandExecution",
    "CommandExecutor",
    "CommandOutcome",
    "CommandTimeoutError",
    "DiscoveryError",
    "EventBus",
    "Fatal",
    "GatewayError",
    "InvalidRequestError",
    "Lane",
    "NodeRole",
    "OutputTooLargeError",
    "ProcessGateway",
    "ProcessResult",
    "ScalingParameters",
    "SpawnError",
    "Success",
    "SubscriptionHandle",
    "SubscriptionLimitError",
    "TelemetryJob",
    "TelemetryScheduler",
    "TopologyCache",
    "TopologySource",
    "ValidationFailure",
    "resolve_instance_count",
    "scale",
]
