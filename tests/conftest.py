"""Pytest configuration and fixtures for benchrig testing.

Nothing here spawns a real subprocess: ``FakeGateway`` answers commands from
a script keyed by command fragments, and ``VirtualTime`` stands in for both
the monotonic clock and ``asyncio.sleep`` so scheduler cadence can be
driven deterministically.
"""

import asyncio
import heapq
import itertools
import sys
from collections.abc import Callable, Generator
from dataclasses import dataclass

import pytest
from loguru import logger

from benchrig.config import RigSettings
from benchrig.core.gateway import ProcessResult


@dataclass
class ScriptedResponse:
    """How ``FakeGateway`` answers commands containing a fragment."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    error: Exception | None = None
    gate: asyncio.Event | None = None
    on_call: Callable[[str], None] | None = None


class FakeGateway:
    """CommandRunner double with scripted responses and a call log.

    The most recently registered matching fragment wins, so a test can
    override a default answer part-way through.
    """

    def __init__(self) -> None:
        self.script: list[tuple[str, ScriptedResponse]] = []
        self.calls: list[str] = []
        self.timeouts: list[float | None] = []

    def on(self, fragment: str, **response) -> ScriptedResponse:
        scripted = ScriptedResponse(**response)
        self.script.append((fragment, scripted))
        return scripted

    def calls_matching(self, fragment: str) -> list[str]:
        return [call for call in self.calls if fragment in call]

    async def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        max_output_bytes: int | None = None,
    ) -> ProcessResult:
        self.calls.append(command)
        self.timeouts.append(timeout)
        response = next(
            (resp for fragment, resp in reversed(self.script) if fragment in command),
            ScriptedResponse(),
        )
        if response.on_call is not None:
            response.on_call(command)
        if response.gate is not None:
            await response.gate.wait()
        if response.error is not None:
            raise response.error
        return ProcessResult(
            command=command,
            stdout=response.stdout,
            stderr=response.stderr,
            exit_code=response.exit_code,
        )


class VirtualTime:
    """Deterministic clock and sleeper for timer-driven components."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self._sleepers: list[tuple[float, int, asyncio.Future[None]]] = []
        self._sequence = itertools.count()

    def clock(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self.now + delay, next(self._sequence), future))
        await future

    async def settle(self, rounds: int = 20) -> None:
        """Let every ready task run until it blocks again."""
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking sleepers in deadline order."""
        target = self.now + seconds
        await self.settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            when, _, future = heapq.heappop(self._sleepers)
            self.now = when
            if not future.done():
                future.set_result(None)
            await self.settle()
        self.now = target
        await self.settle()


CLUSTER_NODES_OUTPUT = """\
a1 127.0.0.1:7002@17002 master - 0 1700000000000 3 connected 10923-16383
b2 127.0.0.1:7000@17000 myself,master - 0 1700000000000 1 connected 0-5460
c3 127.0.0.1:7003@17003 slave a1 0 1700000000000 3 connected
d4 127.0.0.1:7001@17001 master - 0 1700000000000 2 connected 5461-10922
e5 127.0.0.1:7004@17004 slave b2 0 1700000000000 1 connected
f6 127.0.0.1:7005@17005 slave d4 0 1700000000000 2 connected
"""

PM2_LIST_OUTPUT = """\
┌────┬────────────┬─────────┬──────┬───────────┬──────────┬──────────┐
│ id │ name       │ mode    │ ↺    │ status    │ cpu      │ memory   │
├────┼────────────┼─────────┼──────┼───────────┼──────────┼──────────┤
│ 0  │ fastify    │ cluster │ 0    │ online    │ 0.3%     │ 61.2mb   │
│ 1  │ fastify    │ cluster │ 0    │ online    │ 0.1%     │ 60.8mb   │
│ 2  │ fastify    │ cluster │ 2    │ errored   │ 0%       │ 0b       │
│ 3  │ express    │ fork    │ 0    │ stopped   │ 0%       │ 0b       │
└────┴────────────┴─────────┴──────┴───────────┴──────────┴──────────┘
"""

INFO_STATS = "# Stats\r\ninstantaneous_ops_per_sec:1250\r\ntotal_commands_processed:9\r\n"
INFO_MEMORY = "# Memory\r\nused_memory:1048576\r\nused_memory_human:1.00M\r\n"
INFO_CLIENTS = "# Clients\r\nconnected_clients:7\r\n"


def script_cluster(gateway: FakeGateway) -> None:
    """Answer topology and per-node INFO queries for a healthy cluster."""
    gateway.on("CLUSTER NODES", stdout=CLUSTER_NODES_OUTPUT)
    gateway.on("INFO stats", stdout=INFO_STATS)
    gateway.on("INFO memory", stdout=INFO_MEMORY)
    gateway.on("INFO clients", stdout=INFO_CLIENTS)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def vtime() -> VirtualTime:
    return VirtualTime()


@pytest.fixture
def settings(tmp_path) -> RigSettings:
    return RigSettings(
        project_root=tmp_path,
        cluster_path=tmp_path / "cluster",
        benchmark_host="localhost",
        _env_file=None,
    )


@pytest.fixture(autouse=True)
def _restore_logger() -> Generator[None, None, None]:
    """CLI tests reconfigure loguru onto captured streams; put it back."""
    yield
    logger.remove()
    logger.add(sys.stderr, level="WARNING")
