"""Tests for load-parameter scaling and instance-count resolution."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from benchrig.core.errors import InvalidRequestError
from benchrig.core.scaling import (
    MAX_WORKERS,
    MIN_CONNECTIONS,
    MIN_WORKERS,
    ScalingParameters,
    resolve_instance_count,
    scale,
)
from benchrig.core.snapshots import ProcessManagerSnapshot, WorkerStatus

instance_counts = st.integers(min_value=1, max_value=500)


def processes(*rows: tuple[str, str]) -> ProcessManagerSnapshot:
    return ProcessManagerSnapshot(
        workers=tuple(WorkerStatus(name=name, status=status) for name, status in rows)
    )


class TestScale:
    @pytest.mark.parametrize(
        "instances,expected",
        [
            (1, ScalingParameters(connections=100, workers=4, pipelining=2)),
            (3, ScalingParameters(connections=150, workers=4, pipelining=2)),
            (4, ScalingParameters(connections=200, workers=4, pipelining=6)),
            (10, ScalingParameters(connections=500, workers=5, pipelining=10)),
            (40, ScalingParameters(connections=2000, workers=16, pipelining=10)),
        ],
    )
    def test_known_points(self, instances, expected):
        assert scale(instances) == expected

    @given(instance_counts)
    def test_parameters_stay_within_bounds(self, n):
        params = scale(n)

        assert params.connections >= MIN_CONNECTIONS
        assert MIN_WORKERS <= params.workers <= MAX_WORKERS
        assert params.pipelining in (2, 6, 10)

    @given(instance_counts, instance_counts)
    def test_more_instances_never_means_less_load(self, a, b):
        low, high = scale(min(a, b)), scale(max(a, b))

        assert low.connections <= high.connections
        assert low.workers <= high.workers
        assert low.pipelining <= high.pipelining

    @given(
        instance_counts,
        st.integers(min_value=1, max_value=10_000),
        st.integers(min_value=1, max_value=64),
        st.integers(min_value=1, max_value=100),
    )
    def test_explicit_values_win(self, n, connections, workers, pipelining):
        params = scale(n, connections=connections, workers=workers, pipelining=pipelining)

        assert params == ScalingParameters(connections, workers, pipelining)

    def test_partial_override_keeps_derived_values(self):
        assert scale(10, workers=2) == ScalingParameters(
            connections=500, workers=2, pipelining=10
        )

    @pytest.mark.parametrize("n", [0, -3])
    def test_rejects_non_positive_counts(self, n):
        with pytest.raises(ValueError):
            scale(n)


class TestResolveInstanceCount:
    def test_hint_wins_over_process_manager(self):
        snapshot = processes(("fastify", "online"))

        assert resolve_instance_count("fastify", hint=12, processes=snapshot) == 12

    def test_hint_must_be_positive(self):
        with pytest.raises(InvalidRequestError):
            resolve_instance_count("fastify", hint=0, processes=None)

    def test_remote_without_hint_scales_for_one(self):
        assert resolve_instance_count("bun", hint=None, processes=None, remote=True) == 1

    def test_counts_online_workers_of_the_target(self):
        snapshot = processes(
            ("fastify", "online"),
            ("fastify", "online"),
            ("fastify", "errored"),
            ("bun", "online"),
        )

        assert resolve_instance_count("fastify", hint=None, processes=snapshot) == 2

    def test_nothing_running(self):
        snapshot = processes(("express", "stopped"))

        with pytest.raises(InvalidRequestError) as exc_info:
            resolve_instance_count("express", hint=None, processes=snapshot)

        assert exc_info.value.reason == (
            "No worker processes are running - start express first"
        )

    def test_missing_snapshot_counts_as_nothing_running(self):
        with pytest.raises(InvalidRequestError, match="No worker processes"):
            resolve_instance_count("bun", hint=None, processes=None)

    def test_other_framework_running(self):
        snapshot = processes(("bun", "online"), ("cpeak", "online"))

        with pytest.raises(InvalidRequestError) as exc_info:
            resolve_instance_count("fastify", hint=None, processes=snapshot)

        assert exc_info.value.reason == (
            "fastify is not running - currently running: bun, cpeak"
        )
