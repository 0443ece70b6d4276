"""Keyed delayed-task scheduler driven by an injectable clock."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from types import TracebackType

import structlog

from hazardwatch.core.clock import Clock

logger = structlog.stdlib.get_logger()

TimerCallback = Callable[[], Awaitable[None]]


@dataclass
class _Timer:
    key: str
    due_at: float
    callback: TimerCallback
    failures: int = 0


class TimerScheduler:
    """Delayed callbacks keyed by string, swept periodically.

    At most one timer exists per key; scheduling an existing key replaces
    it.  A due timer is removed before its callback runs, so it fires at
    most once even when ``run_due`` is invoked concurrently.  A callback
    that raises is re-armed ``retry_delay_secs`` later.  The background
    sweep starts each due callback as a task and moves on.

    Usage::

        scheduler = TimerScheduler(clock, sweep_interval_secs=5)
        scheduler.schedule("alert-1", 600, on_timeout)
        await scheduler.start()
        ...
        scheduler.cancel("alert-1")
        await scheduler.stop()
    """

    def __init__(
        self,
        clock: Clock | None = None,
        sweep_interval_secs: float = 5.0,
        retry_delay_secs: float = 30.0,
        drain_timeout_secs: float = 10.0,
    ) -> None:
        self._clock = clock or Clock()
        self._sweep_interval_secs = sweep_interval_secs
        self._retry_delay_secs = retry_delay_secs
        self._drain_timeout_secs = drain_timeout_secs
        self._timers: dict[str, _Timer] = {}
        self._paused = False
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._in_flight: set[asyncio.Task[bool]] = set()
        self._fired = 0
        self._failed = 0

    def __len__(self) -> int:
        return len(self._timers)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def stats(self) -> dict[str, int]:
        return {
            "pending": len(self._timers),
            "fired": self._fired,
            "failed": self._failed,
        }

    def schedule(self, key: str, delay_secs: float, callback: TimerCallback) -> float:
        """Arm (or re-arm) the timer for *key*; returns its due time."""
        due_at = self._clock.now() + max(delay_secs, 0.0)
        self._timers[key] = _Timer(key=key, due_at=due_at, callback=callback)
        logger.debug("timer_scheduled", key=key, due_at=due_at)
        return due_at

    def cancel(self, key: str) -> bool:
        """Remove the timer for *key*. True only for the call that removed it."""
        removed = self._timers.pop(key, None) is not None
        if removed:
            logger.debug("timer_cancelled", key=key)
        return removed

    def pending(self, key: str) -> bool:
        return key in self._timers

    def due_at(self, key: str) -> float | None:
        timer = self._timers.get(key)
        return timer.due_at if timer is not None else None

    def pause(self) -> None:
        """Stop firing timers; they keep accumulating and fire after ``resume``."""
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    @property
    def in_flight(self) -> int:
        """Callbacks started by the background sweep that have not finished."""
        return len(self._in_flight)

    def _take_due(self) -> list[_Timer]:
        if self._paused:
            return []
        now = self._clock.now()
        due = sorted(
            (t for t in self._timers.values() if t.due_at <= now),
            key=lambda t: (t.due_at, t.key),
        )
        for timer in due:
            del self._timers[timer.key]
        return due

    async def _fire(self, timer: _Timer) -> bool:
        try:
            await timer.callback()
        except Exception:
            self._failed += 1
            logger.exception(
                "timer_callback_error",
                key=timer.key,
                failures=timer.failures + 1,
            )
            # A replacement scheduled by the callback wins over the retry.
            if timer.key not in self._timers:
                timer.failures += 1
                timer.due_at = self._clock.now() + self._retry_delay_secs
                self._timers[timer.key] = timer
            return False
        self._fired += 1
        return True

    async def run_due(self) -> list[str]:
        """Fire every due timer concurrently and wait for all of them.

        Callbacks start earliest first; a slow callback never delays the
        others.  Returns the keys whose callbacks succeeded.
        """
        due = self._take_due()
        if not due:
            return []
        results = await asyncio.gather(*(self._fire(t) for t in due))
        return [t.key for t, ok in zip(due, results, strict=True) if ok]

    def _spawn_due(self) -> int:
        due = self._take_due()
        for timer in due:
            task = asyncio.create_task(self._fire(timer))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
        return len(due)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("timer_scheduler_started", sweep_interval_secs=self._sweep_interval_secs)

    async def stop(self) -> None:
        """Stop sweeping, then give running callbacks ``drain_timeout_secs`` to finish."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("timer_scheduler_stopped", pending=len(self._timers))
        await self._drain()

    async def _drain(self) -> None:
        if not self._in_flight:
            return
        tasks = list(self._in_flight)
        _, unfinished = await asyncio.wait(tasks, timeout=self._drain_timeout_secs)
        for task in unfinished:
            task.cancel()
        if unfinished:
            logger.warning("timer_callbacks_cancelled", count=len(unfinished))
            await asyncio.gather(*unfinished, return_exceptions=True)

    async def _loop(self) -> None:
        # Callbacks run as their own tasks so one slow alert never holds the sweep.
        while self._running:
            try:
                self._spawn_due()
            except Exception:
                logger.exception("timer_sweep_error")
            try:
                await self._clock.sleep(self._sweep_interval_secs)
            except asyncio.CancelledError:
                return

    async def __aenter__(self) -> TimerScheduler:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()
