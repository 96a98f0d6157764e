"""
Tests for the bounded benchmark history and load-report parsing.

Retention is checked as a property: whatever order results arrive in, the
history holds exactly the ``limit`` newest by timestamp, newest first.
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from benchrig.core.history import (
    BenchmarkHistory,
    BenchmarkResult,
    FrameworkStats,
    parse_load_report,
)

AUTOCANNON_REPORT = """\
Running 10s test @ http://localhost:3002/
{"title":null,"url":"http://localhost:3002/","requests":{"average":48213.4,"p50":48000,"total":482134},"latency":{"average":2.413,"p50":2,"p90":4,"p99":7.5},"duration":10.03,"errors":0,"timeouts":0,"non2xx":0}
"""

REPORT_ARGS = dict(
    framework="fastify",
    endpoint="/",
    method="GET",
    connections=300,
    workers=4,
    pipelining=6,
)


def result(framework="fastify", timestamp=0.0, **fields) -> BenchmarkResult:
    return BenchmarkResult(framework=framework, timestamp=timestamp, **fields)


class TestRetention:
    @given(
        st.lists(st.floats(min_value=0, max_value=1e9), max_size=60),
        st.integers(min_value=1, max_value=25),
    )
    def test_keeps_newest_limit_entries(self, timestamps, limit):
        history = BenchmarkHistory(limit=limit)
        for ts in timestamps:
            history.append(result(timestamp=ts))

        kept = [r.timestamp for r in history.all()]

        assert len(history) == min(limit, len(timestamps))
        assert kept == sorted(timestamps, reverse=True)[:limit]

    def test_timestamp_ties_keep_arrival_order(self):
        history = BenchmarkHistory(limit=2)
        history.append(result("fastify", 5.0))
        history.append(result("bun", 5.0))
        history.append(result("express", 5.0))

        assert [r.framework for r in history.all()] == ["express", "bun"]

    def test_recent(self):
        history = BenchmarkHistory()
        for i, name in enumerate(("fastify", "bun", "express")):
            history.append(result(name, float(i)))

        assert [r.framework for r in history.recent(2)] == ["express", "bun"]
        assert history.recent(0) == ()
        assert len(history.recent(10)) == 3

    def test_clear(self):
        history = BenchmarkHistory()
        history.append(result())

        history.clear()

        assert len(history) == 0
        assert history.all() == ()

    def test_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            BenchmarkHistory(limit=0)


class TestQueries:
    def test_latest_per_key(self):
        history = BenchmarkHistory()
        history.append(result("fastify", 1.0, req_per_sec=100))
        history.append(result("fastify", 2.0, req_per_sec=200))
        history.append(result("fastify", 3.0, endpoint="/users", req_per_sec=50))
        history.append(result("fastify", 4.0, method="POST", req_per_sec=40))

        latest = history.latest_per_key()

        assert latest[("fastify", "/", "GET")].req_per_sec == 200
        assert latest[("fastify", "/users", "GET")].req_per_sec == 50
        assert latest[("fastify", "/", "POST")].req_per_sec == 40
        assert len(latest) == 3

    def test_by_framework(self):
        history = BenchmarkHistory()
        history.append(result("fastify", 1.0))
        history.append(result("bun", 2.0))
        history.append(result("fastify", 3.0))

        assert [r.timestamp for r in history.by_framework("fastify")] == [3.0, 1.0]

    def test_stats(self):
        history = BenchmarkHistory()
        history.append(result("fastify", 1.0, req_per_sec=1000, avg_latency=2.0))
        history.append(result("fastify", 2.0, req_per_sec=2001, avg_latency=3.0))
        history.append(result("bun", 3.0, req_per_sec=500, avg_latency=1.234))

        stats = history.stats()

        assert stats["fastify"] == FrameworkStats(
            count=2,
            avg_req_per_sec=1500,
            max_req_per_sec=2001,
            min_req_per_sec=1000,
            avg_latency=2.5,
        )
        assert stats["bun"].avg_latency == 1.23

    def test_error_flag(self):
        assert not result().has_errors
        assert result(non_2xx=3).has_errors
        assert result(timeouts=1).has_errors


class TestParseLoadReport:
    def test_report_after_progress_output(self):
        parsed = parse_load_report(AUTOCANNON_REPORT, timestamp=42.0, **REPORT_ARGS)

        assert parsed.req_per_sec == 48213
        assert parsed.avg_latency == 2.41
        assert parsed.p99_latency == 7.5
        assert parsed.total_requests == 482134
        assert parsed.duration == 10.03
        assert parsed.connections == 300
        assert parsed.pipelining == 6
        assert parsed.timestamp == 42.0
        assert not parsed.has_errors

    def test_error_counters(self):
        text = '{"requests":{"average":10},"latency":{},"errors":2,"non2xx":5}'

        parsed = parse_load_report(text, **REPORT_ARGS)

        assert parsed.errors == 2
        assert parsed.non_2xx == 5
        assert parsed.has_errors

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "Error: connect ECONNREFUSED 127.0.0.1:3002",
            "[1, 2, 3]",
            '{"requests": 5}',
            '{"requests": {"average": [1]}, "latency": {}}',
            '{"requests": {"average": "fast"}, "latency": {}}',
            '{"requests": {}, "latency": {"p99": {"ms": 7}}}',
            '{"requests": {}, "latency": {}, "errors": true}',
            '{"requests": {"total": "inf"}, "latency": {}}',
        ],
    )
    def test_unreadable_reports(self, text):
        with pytest.raises(ValueError):
            parse_load_report(text, **REPORT_ARGS)
