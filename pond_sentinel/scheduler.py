"""In-process scheduling on asyncio tasks.

Three pieces, all driven by an injectable ``Clock``:
    - IntervalTask  runs a coroutine now and then every N seconds
    - DelayedCall   runs a coroutine once after a delay, cancellable
    - ManualClock   test clock whose ``advance`` wakes due sleepers

No external dependencies (no Celery, no APScheduler).

Usage:
    task = IntervalTask("sweep", 5, monitor.sweep_all, clock=SystemClock())
    task.start()   # Non-blocking, spawns background task
    task.stop()
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

logger = logging.getLogger("sentinel.scheduler")

TickFn = Callable[[], Awaitable[None]]


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------


class Clock(ABC):
    @abstractmethod
    def now_ms(self) -> int: ...

    @abstractmethod
    async def sleep(self, seconds: float) -> None: ...

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.now_ms() / 1000, tz=UTC)


class SystemClock(Clock):
    def now_ms(self) -> int:
        return int(time.time() * 1000)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock(Clock):
    """Deterministic clock for tests.

    ``sleep`` parks the caller until ``advance`` moves time past its
    deadline. Sleepers wake in deadline order, and the loop gets a few
    turns after each wake-up so woken tasks can run and re-sleep.
    """

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self._now_ms = start_ms
        self._sleepers: list[tuple[int, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def now_ms(self) -> int:
        return self._now_ms

    def set(self, when: datetime) -> None:
        self._now_ms = int(when.timestamp() * 1000)

    async def sleep(self, seconds: float) -> None:
        fut = asyncio.get_running_loop().create_future()
        deadline = self._now_ms + int(seconds * 1000)
        heapq.heappush(self._sleepers, (deadline, next(self._seq), fut))
        await fut

    async def advance(self, seconds: float) -> None:
        target = self._now_ms + int(seconds * 1000)
        await self._settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, fut = heapq.heappop(self._sleepers)
            self._now_ms = max(self._now_ms, deadline)
            if not fut.done():
                fut.set_result(None)
                await self._settle()
        self._now_ms = target
        await self._settle()

    @staticmethod
    async def _settle(turns: int = 20) -> None:
        for _ in range(turns):
            await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class IntervalTask:
    """Background loop: run ``fn``, then sleep ``interval`` seconds, repeat.

    A failing tick is logged and the loop keeps going; the next tick is the
    retry.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        fn: TickFn,
        *,
        clock: Clock | None = None,
    ):
        self.name = name
        self.interval = interval
        self.fn = fn
        self.clock = clock or SystemClock()
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        """Start the loop as a background task."""
        if self._task and not self._task.done():
            logger.warning("Interval task %s already running", self.name)
            return
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Interval task %s started (interval=%ss)", self.name, self.interval)

    def stop(self) -> None:
        """Stop the loop. An in-flight tick is cancelled at its next await."""
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("Interval task %s stopped", self.name)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.fn()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Interval task %s tick failed", self.name)
            try:
                await self.clock.sleep(self.interval)
            except asyncio.CancelledError:
                break


class DelayedCall:
    """Run ``fn`` once after ``delay`` seconds unless cancelled first."""

    def __init__(
        self,
        delay: float,
        fn: TickFn,
        *,
        clock: Clock | None = None,
        name: str = "delayed-call",
    ):
        self.delay = delay
        self.fn = fn
        self.clock = clock or SystemClock()
        self.name = name
        self._fired = False
        self._cancelled = False
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        try:
            await self.clock.sleep(self.delay)
        except asyncio.CancelledError:
            return
        self._fired = True
        try:
            await self.fn()
        except Exception:
            logger.exception("Delayed call %s failed", self.name)

    def cancel(self) -> bool:
        """Cancel if still waiting. Returns False once ``fn`` has started."""
        if self._fired or self._cancelled or self._task.done():
            return False
        self._cancelled = True
        self._task.cancel()
        logger.debug("Delayed call %s cancelled", self.name)
        return True

    @property
    def pending(self) -> bool:
        return not (self._fired or self._cancelled or self._task.done())

    @property
    def fired(self) -> bool:
        return self._fired
