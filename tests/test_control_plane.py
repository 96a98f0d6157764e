"""
Tests for the composition root and its administrative actions.

The control plane is wired with ``FakeGateway`` and a fixed candidate
lister, so every command it would spawn is visible in ``gateway.calls``.
"""

import pytest

from benchrig.config import RigSettings
from benchrig.control import ControlPlane, benchmark_summary
from benchrig.core.classification import CommandCategory
from benchrig.core.executor import Fatal, Success, ValidationFailure
from benchrig.core.history import BenchmarkResult
from benchrig.core.snapshots import HostSnapshot
from benchrig.core.topology import TopologySource

from tests.conftest import PM2_LIST_OUTPUT, script_cluster

LOAD_REPORT = (
    '{"requests":{"average":48213.4,"total":482134},'
    '"latency":{"average":2.41,"p50":2,"p90":4,"p99":7},'
    '"duration":10.02,"errors":0,"timeouts":0,"non2xx":0}'
)

CLUSTER_PORTS = (7000, 7001, 7002, 7003, 7004, 7005)


async def fixed_candidates():
    return list(CLUSTER_PORTS)


async def steady_host():
    return HostSnapshot(cpu_percent=12.5, memory_used_mb=512.0, memory_total_mb=2048.0)


def make_plane(settings, gateway, **kwargs) -> ControlPlane:
    return ControlPlane(
        settings,
        gateway=gateway,
        list_candidates=fixed_candidates,
        host_aggregator=steady_host,
        **kwargs,
    )


@pytest.fixture
def plane(settings, gateway) -> ControlPlane:
    return make_plane(settings, gateway)


class TestClusterActions:
    @pytest.mark.asyncio
    async def test_too_few_nodes_spawns_nothing(self, plane, gateway):
        execution = await plane.start_cluster(2)

        assert execution.outcome == ValidationFailure(
            "Redis cluster requires at least 3 nodes"
        )
        assert execution.category is CommandCategory.TOPOLOGY
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_explicit_replicas_fill_the_template(self, plane, gateway):
        gateway.on("redis.js -setup", stdout="✅ Redis Cluster is ready!")

        execution = await plane.start_cluster(6, replicas=1)

        assert gateway.calls == ["node redis.js -setup -n 6 -r 1"]
        assert execution.outcome == Success("Cluster ready")

    @pytest.mark.asyncio
    async def test_uneven_replica_split_is_rejected(self, plane, gateway):
        execution = await plane.start_cluster(7, replicas=1)

        assert isinstance(execution.outcome, ValidationFailure)
        assert execution.message.startswith("Invalid topology")
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_derived_replicas_fill_the_template(self, plane, gateway):
        await plane.start_cluster(4)

        assert gateway.calls == ["node redis.js -setup -n 4 -r 0"]

    @pytest.mark.asyncio
    async def test_topology_command_drops_cached_primaries(self, plane, gateway):
        script_cluster(gateway)
        primaries = await plane.primaries()
        assert len(primaries) == 3
        assert plane.topology.snapshot.source is TopologySource.DISCOVERED

        gateway.on("redis.js -stop", stdout="✅ Cluster stopped")
        execution = await plane.stop_cluster()

        assert execution.succeeded
        assert plane.topology.snapshot.fetched_at is None
        assert plane.topology.snapshot.primaries == ()

    @pytest.mark.asyncio
    async def test_status_does_not_touch_topology(self, plane, gateway):
        script_cluster(gateway)
        await plane.primaries()

        await plane.cluster_status()

        assert plane.topology.snapshot.fetched_at is not None

    @pytest.mark.asyncio
    async def test_remaining_cluster_commands(self, plane, gateway):
        await plane.resume_cluster()
        await plane.clean_cluster()

        assert gateway.calls == ["node redis.js -resume", "node redis.js -clean"]


class TestWorkerActions:
    @pytest.mark.asyncio
    async def test_start_workers(self, plane, gateway):
        gateway.on("pm2.js -start", stdout="✓ fastify started successfully")

        execution = await plane.start_workers("Fastify", 6)

        assert gateway.calls == ["node pm2.js -start -f fastify -i 6"]
        assert execution.outcome == Success("Started fastify")

    @pytest.mark.asyncio
    async def test_high_instance_count_needs_confirmation(self, plane, gateway):
        execution = await plane.start_workers("bun", 64)

        assert isinstance(execution.outcome, ValidationFailure)
        assert "very high" in execution.message
        assert gateway.calls == []

        confirmed = await plane.start_workers("bun", 64, confirm=True)

        assert confirmed.succeeded
        assert gateway.calls == ["node pm2.js -start -f bun -i 64"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("instances", [0, 101])
    async def test_instance_limits(self, plane, gateway, instances):
        execution = await plane.start_workers("bun", instances, confirm=True)

        assert not execution.succeeded
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_unknown_framework(self, plane, gateway):
        execution = await plane.stop_workers("nope")

        assert execution.message.startswith("Framework must be one of:")
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_all_only_where_it_makes_sense(self, plane, gateway):
        await plane.restart_workers("all")
        await plane.delete_workers()
        stop_all = await plane.stop_workers("all")

        assert gateway.calls == ["pm2 restart all", "pm2 delete all"]
        assert isinstance(stop_all.outcome, ValidationFailure)


class TestBenchmarks:
    @pytest.mark.asyncio
    async def test_scales_from_online_workers_and_records_result(self, plane, gateway):
        gateway.on("pm2 ls", stdout=PM2_LIST_OUTPUT)
        gateway.on("autocannon", stdout=LOAD_REPORT)

        execution = await plane.run_benchmark("fastify")

        assert gateway.calls[-1] == (
            "autocannon --json -c 100 -w 4 -p 2 -d 10 -m GET http://localhost:3002/"
        )
        assert gateway.timeouts[-1] == 60.0
        assert execution.outcome == Success(
            "Benchmark fastify: 48,213 req/s (2.41ms avg, 482,134 total)"
        )
        (result,) = plane.history.all()
        assert result.key == ("fastify", "/", "GET")
        assert result.connections == 100
        assert result.pipelining == 2

    @pytest.mark.asyncio
    async def test_explicit_parameters_skip_process_lookup(self, plane, gateway):
        gateway.on("autocannon", stdout=LOAD_REPORT)

        await plane.run_benchmark(
            "bun", endpoint="/users", method="post", instances=10, workers=2
        )

        assert gateway.calls_matching("pm2") == []
        assert gateway.calls == [
            "autocannon --json -c 500 -w 2 -p 10 -d 10 -m POST http://localhost:3003/users"
        ]

    @pytest.mark.asyncio
    async def test_target_not_running(self, plane, gateway):
        gateway.on("pm2 ls", stdout=PM2_LIST_OUTPUT)

        execution = await plane.run_benchmark("bun")

        assert execution.outcome == ValidationFailure(
            "bun is not running - currently running: fastify"
        )
        assert gateway.calls_matching("autocannon") == []

    @pytest.mark.asyncio
    async def test_process_manager_unavailable(self, plane, gateway):
        gateway.on("pm2 ls", exit_code=127, stderr="sh: pm2: not found")

        execution = await plane.run_benchmark("fastify")

        assert execution.message == "Process manager unavailable: sh: pm2: not found"

    @pytest.mark.asyncio
    async def test_remote_target_scales_for_one_instance(self, tmp_path, gateway):
        settings = RigSettings(
            project_root=tmp_path, benchmark_host="10.0.0.5", _env_file=None
        )
        plane = make_plane(settings, gateway)
        gateway.on("autocannon", stdout=LOAD_REPORT)

        execution = await plane.run_benchmark("csharp")

        assert execution.succeeded
        assert gateway.calls == [
            "autocannon --json -c 100 -w 4 -p 2 -d 10 -m GET http://10.0.0.5:3004/"
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs,reason",
        [
            ({"endpoint": "users"}, "Endpoint must start with /"),
            ({"instances": 0}, "Instance count must be at least 1"),
        ],
    )
    async def test_invalid_requests(self, plane, gateway, kwargs, reason):
        execution = await plane.run_benchmark("fastify", **kwargs)

        assert execution.outcome == ValidationFailure(reason)
        assert execution.command == ""
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_unreadable_report_is_fatal(self, plane, gateway):
        gateway.on("autocannon", stdout="Running 10s test...\nno json here")

        execution = await plane.run_benchmark("fastify", instances=2)

        assert isinstance(execution.outcome, Fatal)
        assert execution.message.startswith("Unreadable load report")
        assert len(plane.history) == 0

    @pytest.mark.asyncio
    async def test_report_with_non_numeric_field_is_fatal(self, plane, gateway):
        gateway.on("autocannon", stdout='{"requests": {"average": [1]}, "latency": {}}')

        execution = await plane.run_benchmark("fastify", instances=2)

        assert isinstance(execution.outcome, Fatal)
        assert execution.message.startswith("Unreadable load report")
        assert len(plane.history) == 0

    @pytest.mark.asyncio
    async def test_load_generator_failure_is_returned_as_is(self, plane, gateway):
        gateway.on("autocannon", exit_code=1, stderr="Error: connect ECONNREFUSED")

        execution = await plane.run_benchmark("fastify", instances=2)

        assert isinstance(execution.outcome, Fatal)
        assert "ECONNREFUSED" in execution.message
        assert len(plane.history) == 0

    def test_summary_format(self):
        result = BenchmarkResult(
            framework="bun", req_per_sec=1234, avg_latency=0.8, total_requests=12345
        )

        assert benchmark_summary(result) == (
            "Benchmark bun: 1,234 req/s (0.8ms avg, 12,345 total)"
        )


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_streams_publish_while_running(self, settings, gateway, vtime):
        script_cluster(gateway)
        gateway.on("pm2 ls", stdout=PM2_LIST_OUTPUT)
        plane = make_plane(settings, gateway, sleep=vtime.sleep, clock=vtime.clock)
        seen: list[str] = []
        plane.subscribe("cluster", lambda stream, payload: seen.append(stream))

        async with plane:
            await vtime.settle(rounds=50)

            assert plane.latest("host").cpu_percent == 12.5
            assert plane.latest("cluster").online == 3
            assert plane.latest("processManager").online == 2
            assert plane.latest("benchmark").total == 0
            assert seen == ["cluster"]

        assert not plane.scheduler.running

    @pytest.mark.asyncio
    async def test_command_triggers_delayed_refresh(self, settings, gateway, vtime):
        plane = make_plane(settings, gateway, sleep=vtime.sleep, clock=vtime.clock)

        async with plane:
            await vtime.settle()
            await plane.restart_workers("all")
            assert plane.scheduler.refresh_count == 0

            await vtime.advance(settings.refresh_delay)

            assert plane.scheduler.refresh_count == 1
