"""
Dual-lane telemetry scheduler.

Two independent timers drive the aggregators:

- fast lane (default 1s): host, cluster and process-manager snapshots;
- slow lane (default 5s): benchmark history summary.

Both lanes tick immediately on ``start()`` and then on their own interval.
Each lane keeps at most one tick in flight; a timer that fires while the
previous tick of that lane is still running is skipped. Jobs inside a tick
run concurrently, and a failing job only degrades its own stream.

Out-of-band refreshes are requested with ``request_refresh()``. The request
is a signal consumed by the scheduler's own refresh loop, which waits
``refresh_delay`` and then runs both lanes once. Requests arriving during
the delay coalesce into one refresh.

``stop()`` cancels the timer and refresh loops only. Ticks already running
are left to finish or hit their own gateway timeouts.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from loguru import logger

from benchrig.datastructures.type_aliases import DurationSeconds, StreamName

from .aggregators import Aggregator
from .event_bus import EventBus
from .snapshots import (
    STREAM_TELEMETRY_ERRORS,
    MetricSnapshot,
    SnapshotKind,
    TelemetryError,
    empty_snapshot,
)
from .task_manager import BackgroundTasks

DEFAULT_FAST_INTERVAL = 1.0
DEFAULT_SLOW_INTERVAL = 5.0
DEFAULT_REFRESH_DELAY = 1.0

type Sleeper = Callable[[float], Awaitable[Any]]


class Lane(Enum):
    FAST = "fast"
    SLOW = "slow"


@dataclass(frozen=True, slots=True)
class TelemetryJob:
    """One aggregator and the stream its snapshots are published on."""

    kind: SnapshotKind
    aggregator: Aggregator

    @property
    def stream(self) -> StreamName:
        return self.kind.stream


class TelemetryScheduler:
    """Runs the fast and slow polling lanes and publishes to the event bus."""

    def __init__(
        self,
        bus: EventBus,
        *,
        fast_jobs: Sequence[TelemetryJob],
        slow_jobs: Sequence[TelemetryJob],
        fast_interval: DurationSeconds = DEFAULT_FAST_INTERVAL,
        slow_interval: DurationSeconds = DEFAULT_SLOW_INTERVAL,
        refresh_delay: DurationSeconds = DEFAULT_REFRESH_DELAY,
        sleep: Sleeper = asyncio.sleep,
        max_errors: int = 100,
    ) -> None:
        if fast_interval <= 0 or slow_interval <= 0:
            raise ValueError("lane intervals must be positive")
        self.bus = bus
        self.fast_interval = fast_interval
        self.slow_interval = slow_interval
        self.refresh_delay = refresh_delay
        self._sleep = sleep
        self._jobs: dict[Lane, tuple[TelemetryJob, ...]] = {
            Lane.FAST: tuple(fast_jobs),
            Lane.SLOW: tuple(slow_jobs),
        }
        self._timers = BackgroundTasks("TelemetryScheduler.timers")
        self._ticks = BackgroundTasks("TelemetryScheduler.ticks")
        self._lane_ticks: dict[Lane, asyncio.Task[Any]] = {}
        self._latest: dict[StreamName, MetricSnapshot] = {}
        self._errors: deque[TelemetryError] = deque(maxlen=max_errors)
        self._refresh_requested = asyncio.Event()
        self._running = False
        self.tick_counts: dict[Lane, int] = {Lane.FAST: 0, Lane.SLOW: 0}
        self.skipped_ticks: dict[Lane, int] = {Lane.FAST: 0, Lane.SLOW: 0}
        self.refresh_count = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def errors(self) -> tuple[TelemetryError, ...]:
        return tuple(self._errors)

    def latest(self, stream: StreamName) -> MetricSnapshot | None:
        return self._latest.get(stream)

    def interval(self, lane: Lane) -> DurationSeconds:
        return self.fast_interval if lane is Lane.FAST else self.slow_interval

    def start(self) -> None:
        """Start both lanes; each fires once immediately. Needs a running loop."""
        if self._running:
            return
        self._running = True
        self._refresh_requested.clear()
        for lane in Lane:
            self._timers.spawn(self._lane_loop(lane), name=f"telemetry-{lane.value}-timer")
        self._timers.spawn(self._refresh_loop(), name="telemetry-refresh-timer")
        logger.info(
            f"[TelemetryScheduler] Started (fast={self.fast_interval}s, slow={self.slow_interval}s)"
        )

    async def stop(self) -> None:
        """Cancel the lane timers. Safe to call repeatedly or before start."""
        if not self._running and not self._timers:
            return
        self._running = False
        await self._timers.cancel()
        logger.info(
            f"[TelemetryScheduler] Stopped ({len(self._ticks)} tick(s) still in flight)"
        )

    async def wait_idle(self, timeout: DurationSeconds | None = None) -> None:
        """Wait for in-flight ticks to finish."""
        await self._ticks.drain(timeout)

    async def refresh(self) -> None:
        """Run both lanes once, out of band, without touching their timers."""
        await asyncio.gather(self._run_lane(Lane.FAST), self._run_lane(Lane.SLOW))
        self.refresh_count += 1

    def request_refresh(self) -> bool:
        """Ask the refresh loop for a delayed out-of-band refresh.

        Returns False when the scheduler is not running, in which case
        nothing will be refreshed.
        """
        if not self._running:
            logger.debug("[TelemetryScheduler] Refresh requested while stopped; ignored")
            return False
        self._refresh_requested.set()
        return True

    async def _lane_loop(self, lane: Lane) -> None:
        interval = self.interval(lane)
        while True:
            self._launch_tick(lane)
            await self._sleep(interval)

    def _launch_tick(self, lane: Lane) -> None:
        current = self._lane_ticks.get(lane)
        if current is not None and not current.done():
            self.skipped_ticks[lane] += 1
            logger.debug(
                f"[TelemetryScheduler] {lane.value} lane still busy; skipping tick"
            )
            return
        self._lane_ticks[lane] = self._ticks.spawn(
            self._run_lane(lane), name=f"telemetry-{lane.value}-tick"
        )

    async def _refresh_loop(self) -> None:
        while True:
            await self._refresh_requested.wait()
            await self._sleep(self.refresh_delay)
            # Cleared after the delay so requests made during it coalesce
            self._refresh_requested.clear()
            self._ticks.spawn(self.refresh(), name="telemetry-refresh")

    async def _run_lane(self, lane: Lane) -> None:
        await asyncio.gather(*(self._run_job(lane, job) for job in self._jobs[lane]))
        self.tick_counts[lane] += 1

    async def _run_job(self, lane: Lane, job: TelemetryJob) -> None:
        try:
            snapshot = await job.aggregator()
        except Exception as e:
            snapshot = self._degraded(lane, job, e)
        self._latest[job.stream] = snapshot
        self.bus.publish(job.stream, snapshot)

    def _degraded(
        self, lane: Lane, job: TelemetryJob, error: Exception
    ) -> MetricSnapshot:
        message = str(error) or error.__class__.__name__
        logger.error(f"[TelemetryScheduler] {job.stream} poll failed: {message}")
        event = TelemetryError(stream=job.stream, lane=lane.value, error=message)
        self._errors.append(event)
        self.bus.publish(STREAM_TELEMETRY_ERRORS, event)

        previous = self._latest.get(job.stream)
        if previous is not None:
            return dataclasses.replace(previous, stale=True, error=message)
        return empty_snapshot(job.kind, message)
