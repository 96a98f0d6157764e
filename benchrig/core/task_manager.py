"""
Owned background tasks for the telemetry scheduler.

The scheduler keeps two groups with different shutdown rules. Timer loops
are cancelled on stop. Poll ticks are left to finish, so a subprocess that
is mid-flight still delivers its output and its snapshot. A group remembers
how its tasks ended so ``stop()`` can report what it left behind.
"""

import asyncio
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from benchrig.datastructures.type_aliases import DurationSeconds


@dataclass(slots=True)
class TaskOutcomes:
    completed: int = 0
    cancelled: int = 0
    failed: int = 0


@dataclass(slots=True, eq=False)
class BackgroundTasks:
    """A named group of asyncio tasks spawned and reaped together."""

    name: str
    outcomes: TaskOutcomes = field(default_factory=TaskOutcomes)
    _live: set[asyncio.Task[Any]] = field(default_factory=set)

    def __len__(self) -> int:
        return len(self._live)

    def __bool__(self) -> bool:
        return bool(self._live)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(sorted(task.get_name() for task in self._live))

    def spawn(
        self, coro: Coroutine[Any, Any, Any], *, name: str
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._live.add(task)
        task.add_done_callback(self._reap)
        return task

    def _reap(self, task: asyncio.Task[Any]) -> None:
        self._live.discard(task)
        if task.cancelled():
            self.outcomes.cancelled += 1
            return
        error = task.exception()
        if error is None:
            self.outcomes.completed += 1
            return
        self.outcomes.failed += 1
        logger.opt(exception=error).error(
            f"[{self.name}] {task.get_name()} crashed: {error}"
        )

    async def cancel(self, timeout: DurationSeconds = 5.0) -> int:
        """Cancel every live task; return how many outlived ``timeout``."""
        pending = [task for task in self._live if not task.done()]
        for task in pending:
            task.cancel()
        if not pending:
            return 0
        _, stuck = await asyncio.wait(pending, timeout=timeout)
        for task in stuck:
            logger.warning(f"[{self.name}] {task.get_name()} ignored cancellation")
        return len(stuck)

    async def drain(self, timeout: DurationSeconds | None = None) -> int:
        """Wait for live tasks to end on their own; return how many are left."""
        pending = [task for task in self._live if not task.done()]
        if not pending:
            return 0
        _, unfinished = await asyncio.wait(pending, timeout=timeout)
        return len(unfinished)
