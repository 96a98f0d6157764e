"""
Bounded benchmark history.

Results are kept newest-first and the store retains only the most recent
``limit`` entries: ring retention by timestamp, not LRU. The storage engine
is deliberately in-memory; anything that satisfies ``BenchmarkStore`` can be
substituted by the composition root.
"""

from __future__ import annotations

import itertools
import math
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import orjson
from loguru import logger
from sortedcontainers import SortedList  # type: ignore

from benchrig.datastructures.type_aliases import (
    BenchmarkKey,
    EndpointPath,
    FrameworkName,
    HttpMethod,
    LatencyMs,
    RequestsPerSecond,
    Timestamp,
)

DEFAULT_HISTORY_LIMIT = 20


@dataclass(frozen=True, slots=True)
class BenchmarkResult:
    """One completed load test."""

    framework: FrameworkName
    endpoint: EndpointPath = "/"
    method: HttpMethod = "GET"
    req_per_sec: RequestsPerSecond = 0
    avg_latency: LatencyMs = 0.0
    p50_latency: LatencyMs = 0.0
    p90_latency: LatencyMs = 0.0
    p99_latency: LatencyMs = 0.0
    total_requests: int = 0
    duration: float = 0.0
    connections: int = 0
    workers: int = 0
    pipelining: int = 0
    errors: int = 0
    timeouts: int = 0
    non_2xx: int = 0
    timestamp: Timestamp = field(default_factory=time.time)

    @property
    def key(self) -> BenchmarkKey:
        return (self.framework, self.endpoint, self.method)

    @property
    def has_errors(self) -> bool:
        return (self.errors + self.timeouts + self.non_2xx) > 0


@dataclass(frozen=True, slots=True)
class FrameworkStats:
    count: int
    avg_req_per_sec: int
    max_req_per_sec: int
    min_req_per_sec: int
    avg_latency: float


class BenchmarkStore(Protocol):
    def append(self, result: BenchmarkResult) -> None: ...

    def recent(self, n: int) -> tuple[BenchmarkResult, ...]: ...

    def all(self) -> tuple[BenchmarkResult, ...]: ...

    def clear(self) -> None: ...

    def latest_per_key(self) -> dict[BenchmarkKey, BenchmarkResult]: ...


class BenchmarkHistory:
    """Append-only ring of benchmark results ordered by timestamp."""

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if limit < 1:
            raise ValueError("history limit must be at least 1")
        self.limit = limit
        # (timestamp, sequence, result), ascending; sequence breaks timestamp ties
        self._entries: SortedList[tuple[Timestamp, int, BenchmarkResult]] = SortedList()
        self._sequence = itertools.count()

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, result: BenchmarkResult) -> None:
        self._entries.add((result.timestamp, next(self._sequence), result))
        evicted = 0
        while len(self._entries) > self.limit:
            self._entries.pop(0)
            evicted += 1
        if evicted:
            logger.debug(f"[BenchmarkHistory] Evicted {evicted} oldest result(s)")

    def recent(self, n: int) -> tuple[BenchmarkResult, ...]:
        if n <= 0:
            return ()
        return tuple(entry[2] for entry in reversed(self._entries[-n:]))

    def all(self) -> tuple[BenchmarkResult, ...]:
        return tuple(entry[2] for entry in reversed(self._entries))

    def clear(self) -> None:
        self._entries.clear()

    def latest_per_key(self) -> dict[BenchmarkKey, BenchmarkResult]:
        latest: dict[BenchmarkKey, BenchmarkResult] = {}
        for result in self.all():
            latest.setdefault(result.key, result)
        return latest

    def by_framework(self, framework: FrameworkName) -> tuple[BenchmarkResult, ...]:
        return tuple(r for r in self.all() if r.framework == framework)

    def stats(self) -> dict[FrameworkName, FrameworkStats]:
        grouped: dict[FrameworkName, list[BenchmarkResult]] = {}
        for result in self.all():
            grouped.setdefault(result.framework, []).append(result)

        stats: dict[FrameworkName, FrameworkStats] = {}
        for framework, results in grouped.items():
            rps = [r.req_per_sec for r in results]
            latencies = [r.avg_latency for r in results]
            stats[framework] = FrameworkStats(
                count=len(results),
                avg_req_per_sec=round(sum(rps) / len(rps)),
                max_req_per_sec=max(rps),
                min_req_per_sec=min(rps),
                avg_latency=round(sum(latencies) / len(latencies), 2),
            )
        return stats


def _extract_json(text: str) -> Mapping[str, Any]:
    stripped = text.strip()
    try:
        payload = orjson.loads(stripped)
    except orjson.JSONDecodeError:
        start, end = stripped.find("{"), stripped.rfind("}")
        if start < 0 or end <= start:
            raise
        payload = orjson.loads(stripped[start : end + 1])
    if not isinstance(payload, dict):
        raise ValueError("load report is not a JSON object")
    return payload


def _number(section: Mapping[str, Any], key: str) -> float:
    value = section.get(key, 0) or 0
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"load report field {key!r} is not a number: {value!r}")
    try:
        number = float(value)
    except ValueError:
        raise ValueError(f"load report field {key!r} is not a number: {value!r}") from None
    if not math.isfinite(number):
        raise ValueError(f"load report field {key!r} is not finite: {value!r}")
    return number


def parse_load_report(
    text: str,
    *,
    framework: FrameworkName,
    endpoint: EndpointPath,
    method: HttpMethod,
    connections: int,
    workers: int,
    pipelining: int,
    timestamp: Timestamp | None = None,
) -> BenchmarkResult:
    """Build a ``BenchmarkResult`` from the load generator's JSON report.

    Raises ``ValueError`` when the text holds no usable report.
    """
    report = _extract_json(text)
    requests = report.get("requests") or {}
    latency = report.get("latency") or {}
    if not isinstance(requests, Mapping) or not isinstance(latency, Mapping):
        raise ValueError("load report is missing requests/latency sections")

    return BenchmarkResult(
        framework=framework,
        endpoint=endpoint,
        method=method,
        req_per_sec=round(_number(requests, "average")),
        avg_latency=round(_number(latency, "average"), 2),
        p50_latency=round(_number(latency, "p50"), 2),
        p90_latency=round(_number(latency, "p90"), 2),
        p99_latency=round(_number(latency, "p99"), 2),
        total_requests=int(_number(requests, "total")),
        duration=round(_number(report, "duration"), 2),
        connections=connections,
        workers=workers,
        pipelining=pipelining,
        errors=int(_number(report, "errors")),
        timeouts=int(_number(report, "timeouts")),
        non_2xx=int(_number(report, "non2xx")),
        timestamp=time.time() if timestamp is None else timestamp,
    )
