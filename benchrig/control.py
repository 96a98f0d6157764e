"""
Composition root for the rig.

``ControlPlane`` builds every component from ``RigSettings`` and exposes the
named administrative actions. Each action validates its inputs first; an
invalid request comes back as a ``ValidationFailure`` execution without
anything being spawned.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from typing import Any

from loguru import logger

from benchrig.config import RigSettings
from benchrig.core.aggregators import (
    Aggregator,
    BenchmarkAggregator,
    ClusterAggregator,
    HostAggregator,
    ProcessManagerAggregator,
)
from benchrig.core.classification import CommandCategory, format_number
from benchrig.core.errors import InvalidRequestError
from benchrig.core.event_bus import EventBus, Subscriber, SubscriptionHandle
from benchrig.core.executor import (
    CommandExecution,
    CommandExecutor,
    Fatal,
    Success,
    rejected,
)
from benchrig.core.gateway import CommandRunner, ProcessGateway
from benchrig.core.history import BenchmarkHistory, BenchmarkResult, parse_load_report
from benchrig.core.scaling import ScalingParameters, resolve_instance_count, scale
from benchrig.core.scheduler import Sleeper, TelemetryJob, TelemetryScheduler
from benchrig.core.snapshots import (
    MetricSnapshot,
    ProcessManagerSnapshot,
    SnapshotKind,
)
from benchrig.core.topology import (
    CandidateLister,
    Clock,
    ClusterNode,
    TopologyCache,
    directory_candidate_lister,
    gateway_topology_query,
)
from benchrig.core.validators import (
    validate_cluster_nodes,
    validate_endpoint,
    validate_framework,
    validate_instances,
    validate_replicas,
)
from benchrig.datastructures.type_aliases import (
    EndpointPath,
    FrameworkName,
    HttpMethod,
    InstanceCount,
    StreamName,
)

ALL_WORKERS = "all"


def benchmark_summary(result: BenchmarkResult) -> str:
    return (
        f"Benchmark {result.framework}: {format_number(result.req_per_sec)} req/s "
        f"({result.avg_latency}ms avg, {format_number(result.total_requests)} total)"
    )


class ControlPlane:
    """Topology cache, telemetry lanes and command execution, wired together."""

    def __init__(
        self,
        settings: RigSettings | None = None,
        *,
        gateway: CommandRunner | None = None,
        list_candidates: CandidateLister | None = None,
        host_aggregator: Aggregator | None = None,
        history: BenchmarkHistory | None = None,
        sleep: Sleeper = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self.settings = settings or RigSettings()
        s = self.settings

        self.gateway: CommandRunner = gateway or ProcessGateway(
            cwd=s.project_root,
            default_timeout=s.command_timeout,
            default_max_output_bytes=s.max_output_bytes,
        )
        self.topology = TopologyCache(
            list_candidates=list_candidates
            or directory_candidate_lister(s.project_root / s.cluster_path),
            query_topology=gateway_topology_query(
                self.gateway,
                s.topology_command,
                host=s.cluster_host,
                timeout=s.stats_timeout,
            ),
            ttl=s.topology_ttl,
            clock=clock,
            host=s.cluster_host,
            port_range=s.port_range,
        )
        self.history = history or BenchmarkHistory(limit=s.history_limit)
        self.bus = EventBus(max_subscribers_per_stream=s.max_subscribers_per_stream)

        self.process_aggregator = ProcessManagerAggregator(
            self.gateway,
            frameworks=s.frameworks,
            command=s.process_list_command,
            timeout=s.process_timeout,
            max_output_bytes=s.process_output_bytes,
        )
        self.scheduler = TelemetryScheduler(
            self.bus,
            fast_jobs=(
                TelemetryJob(SnapshotKind.HOST, host_aggregator or HostAggregator()),
                TelemetryJob(
                    SnapshotKind.CLUSTER,
                    ClusterAggregator(
                        self.gateway,
                        self.topology,
                        info_command=s.node_info_command,
                        timeout=s.stats_timeout,
                    ),
                ),
                TelemetryJob(SnapshotKind.PROCESS_MANAGER, self.process_aggregator),
            ),
            slow_jobs=(
                TelemetryJob(
                    SnapshotKind.BENCHMARK,
                    BenchmarkAggregator(self.history, recent_count=s.benchmark_recent),
                ),
            ),
            fast_interval=s.fast_interval,
            slow_interval=s.slow_interval,
            refresh_delay=s.refresh_delay,
            sleep=sleep,
        )
        self.executor = CommandExecutor(
            self.gateway,
            self.topology,
            self.scheduler,
            timeout=s.command_timeout,
            max_output_bytes=s.max_output_bytes,
        )

    async def start(self) -> None:
        self.scheduler.start()

    async def stop(self, drain_timeout: float | None = None) -> None:
        await self.scheduler.stop()
        await self.scheduler.wait_idle(drain_timeout)

    async def __aenter__(self) -> ControlPlane:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop(self.settings.command_timeout)

    def subscribe(
        self, stream: StreamName, callback: Subscriber, **options: Any
    ) -> SubscriptionHandle:
        return self.bus.subscribe(stream, callback, **options)

    def latest(self, stream: StreamName) -> MetricSnapshot | None:
        return self.scheduler.latest(stream)

    async def primaries(self) -> tuple[ClusterNode, ...]:
        return await self.topology.get_primaries()

    # Cluster actions

    async def start_cluster(
        self, nodes: int, replicas: int | None = None
    ) -> CommandExecution:
        label = f"Start cluster ({nodes} nodes)"
        check = (
            validate_cluster_nodes(nodes, minimum=self.settings.min_cluster_nodes)
            if replicas is None
            else validate_replicas(
                nodes, replicas, minimum=self.settings.min_cluster_nodes
            )
        )
        command = self.settings.cluster_setup_command.format(
            nodes=nodes, replicas=check.replicas if replicas is None else replicas
        )
        if not check.valid:
            return rejected(command, label, check.message, CommandCategory.TOPOLOGY)
        logger.info(f"[ControlPlane] Cluster layout: {check.message}")
        return await self.executor.execute(command, label)

    async def stop_cluster(self) -> CommandExecution:
        return await self.executor.execute(
            self.settings.cluster_stop_command, "Stop cluster"
        )

    async def resume_cluster(self) -> CommandExecution:
        return await self.executor.execute(
            self.settings.cluster_resume_command, "Resume cluster"
        )

    async def clean_cluster(self) -> CommandExecution:
        return await self.executor.execute(
            self.settings.cluster_clean_command, "Clean cluster"
        )

    async def cluster_status(self) -> CommandExecution:
        return await self.executor.execute(
            self.settings.cluster_status_command, "Cluster status"
        )

    # Worker actions

    def _check_framework(
        self, framework: FrameworkName, *, allow_all: bool = False
    ) -> str | None:
        if allow_all and framework == ALL_WORKERS:
            return None
        check = validate_framework(framework, self.settings.frameworks)
        return None if check.valid else check.message

    async def start_workers(
        self, framework: FrameworkName, instances: InstanceCount, *, confirm: bool = False
    ) -> CommandExecution:
        framework = framework.lower()
        label = f"Start {framework} x{instances}"
        command = self.settings.worker_start_command.format(
            framework=framework, instances=instances
        )
        problem = self._check_framework(framework)
        if problem is None:
            check = validate_instances(
                instances,
                maximum=self.settings.max_instances,
                warn_above=self.settings.warn_instances,
            )
            if not check.valid or (check.needs_confirmation and not confirm):
                problem = check.message
        if problem:
            return rejected(command, label, problem, CommandCategory.PROCESS)
        return await self.executor.execute(command, label)

    async def stop_workers(self, framework: FrameworkName) -> CommandExecution:
        return await self._worker_action(
            framework, self.settings.worker_stop_command, "Stop"
        )

    async def restart_workers(self, framework: FrameworkName) -> CommandExecution:
        return await self._worker_action(
            framework, self.settings.worker_restart_command, "Restart", allow_all=True
        )

    async def delete_workers(
        self, framework: FrameworkName = ALL_WORKERS
    ) -> CommandExecution:
        return await self._worker_action(
            framework, self.settings.worker_delete_command, "Delete", allow_all=True
        )

    async def _worker_action(
        self,
        framework: FrameworkName,
        template: str,
        verb: str,
        *,
        allow_all: bool = False,
    ) -> CommandExecution:
        framework = framework.lower()
        command = template.format(framework=framework)
        label = f"{verb} {framework}"
        problem = self._check_framework(framework, allow_all=allow_all)
        if problem:
            return rejected(command, label, problem, CommandCategory.PROCESS)
        return await self.executor.execute(command, label)

    # Benchmarks

    async def scaling_for(
        self,
        framework: FrameworkName,
        *,
        instances: InstanceCount | None = None,
        connections: int | None = None,
        workers: int | None = None,
        pipelining: int | None = None,
    ) -> tuple[InstanceCount, ScalingParameters]:
        """Resolve the instance count and derive load parameters.

        Raises ``InvalidRequestError`` when the target has no online workers.
        """
        remote = self.settings.is_remote_benchmark
        processes: ProcessManagerSnapshot | None = None
        if instances is None and not remote:
            processes = await self.process_aggregator()
            if processes.error:
                raise InvalidRequestError(
                    f"Process manager unavailable: {processes.error}"
                )
        count = resolve_instance_count(
            framework, hint=instances, processes=processes, remote=remote
        )
        params = scale(
            count, connections=connections, workers=workers, pipelining=pipelining
        )
        return count, params

    async def run_benchmark(
        self,
        framework: FrameworkName,
        *,
        endpoint: EndpointPath = "/",
        method: HttpMethod = "GET",
        instances: InstanceCount | None = None,
        connections: int | None = None,
        workers: int | None = None,
        pipelining: int | None = None,
    ) -> CommandExecution:
        framework = framework.lower()
        method = method.upper()
        label = f"Benchmark {framework} {method} {endpoint}"

        problem = self._check_framework(framework)
        if problem is None:
            endpoint_check = validate_endpoint(endpoint)
            problem = None if endpoint_check.valid else endpoint_check.message
        if problem is None and instances is not None:
            instance_check = validate_instances(
                instances,
                maximum=self.settings.max_instances,
                warn_above=self.settings.max_instances,
            )
            problem = None if instance_check.valid else instance_check.message
        if problem:
            return rejected("", label, problem, CommandCategory.BENCHMARK)

        try:
            count, params = await self.scaling_for(
                framework,
                instances=instances,
                connections=connections,
                workers=workers,
                pipelining=pipelining,
            )
        except InvalidRequestError as e:
            return rejected("", label, e.reason, CommandCategory.BENCHMARK)

        logger.info(
            f"[ControlPlane] Scaled for {count} instance(s): "
            f"{params.connections} connections, {params.workers} workers, "
            f"pipelining {params.pipelining}"
        )
        command = self.settings.load_test_command.format(
            connections=params.connections,
            workers=params.workers,
            pipelining=params.pipelining,
            duration=self.settings.benchmark_duration,
            method=method,
            url=self.settings.framework_url(framework, endpoint),
        )
        execution = await self.executor.execute(
            command,
            label,
            category=CommandCategory.BENCHMARK,
            timeout=self.settings.benchmark_timeout,
        )
        if not execution.succeeded:
            return execution

        try:
            result = parse_load_report(
                execution.stdout,
                framework=framework,
                endpoint=endpoint,
                method=method,
                connections=params.connections,
                workers=params.workers,
                pipelining=params.pipelining,
            )
        except (ValueError, TypeError) as e:
            logger.error(f"[ControlPlane] Unreadable load report for {label}: {e}")
            return dataclasses.replace(
                execution, outcome=Fatal(f"Unreadable load report: {e}")
            )

        self.history.append(result)
        if result.has_errors:
            logger.warning(
                f"[ControlPlane] {label}: {result.errors} errors, "
                f"{result.timeouts} timeouts, {result.non_2xx} non-2xx responses"
            )
        return dataclasses.replace(execution, outcome=Success(benchmark_summary(result)))
