"""Injectable clocks — wall time for production, advanceable time for tests."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time


class Clock:
    """Wall-clock time source backed by ``time.time`` and ``asyncio.sleep``."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, secs: float) -> None:
        await asyncio.sleep(max(secs, 0.0))


class FakeClock(Clock):
    """Deterministic clock whose time only moves when advanced.

    Sleepers are parked on futures and released in deadline order by
    ``advance()``.  Zero or negative sleeps return immediately.

    Usage::

        clock = FakeClock(start=1_000.0)
        clock.advance(600)          # ten minutes pass
        await clock.tick(30)        # advance and let woken tasks run
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._sleepers: list[tuple[float, int, asyncio.Future[None]]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    @property
    def sleepers(self) -> int:
        """Number of coroutines currently parked in ``sleep``."""
        return sum(1 for _, _, fut in self._sleepers if not fut.done())

    async def sleep(self, secs: float) -> None:
        if secs <= 0:
            await asyncio.sleep(0)
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + secs, next(self._seq), fut))
        await fut

    def advance(self, secs: float) -> None:
        """Move time forward and wake every sleeper whose deadline passed."""
        self._now += secs
        while self._sleepers and self._sleepers[0][0] <= self._now:
            _, _, fut = heapq.heappop(self._sleepers)
            if not fut.done():
                fut.set_result(None)

    def set(self, when: float) -> None:
        """Jump to an absolute time (never backwards)."""
        if when > self._now:
            self.advance(when - self._now)

    async def tick(self, secs: float = 0.0, rounds: int = 5) -> None:
        """Advance, then yield to the loop so woken tasks can progress."""
        self.advance(secs)
        for _ in range(rounds):
            await asyncio.sleep(0)
