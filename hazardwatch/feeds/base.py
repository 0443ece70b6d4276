"""BaseFeed — polling hazard source with backoff and staleness tracking."""

from __future__ import annotations

import abc
import asyncio
from collections.abc import Awaitable, Callable
from types import TracebackType

import structlog

from hazardwatch.core.clock import Clock
from hazardwatch.core.types import FeedEvent, FeedEventType

logger = structlog.stdlib.get_logger()

FeedEventCallback = Callable[[FeedEvent], Awaitable[None] | None]

# A feed with no successful poll for this many intervals is reported stale.
STALE_AFTER_INTERVALS = 3


class BaseFeed(abc.ABC):
    """A hazard source polled on a fixed interval.

    Subclasses fetch one batch of reports in ``poll()``.  Reports are
    at-least-once: the same hazard may come back on a later poll or after a
    restart, and the normalizer de-duplicates it.

    A failing source is polled less often: the wait doubles with every
    consecutive failure, up to ``max_backoff_ms``, and returns to
    ``poll_interval_ms`` after the next successful poll.

    Usage::

        feed = UsgsFeed()
        feed.on_event(orchestrator.on_feed_event)
        async with feed:
            await asyncio.sleep(600)
    """

    def __init__(
        self,
        source: str,
        poll_interval_ms: int = 60_000,
        clock: Clock | None = None,
        max_backoff_ms: int | None = None,
    ) -> None:
        self._source = source
        self._poll_interval_ms = poll_interval_ms
        self._max_backoff_ms = max_backoff_ms or poll_interval_ms * 10
        self._clock = clock or Clock()
        self._callbacks: list[FeedEventCallback] = []
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._started_at: float | None = None

        self._poll_count = 0
        self._error_count = 0
        self._consecutive_errors = 0
        self._reports = 0
        self._last_poll_time = 0.0

    @property
    def source(self) -> str:
        return self._source

    @property
    def running(self) -> bool:
        return self._running

    @property
    def poll_count(self) -> int:
        """Successful polls."""
        return self._poll_count

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def consecutive_errors(self) -> int:
        return self._consecutive_errors

    @property
    def last_poll_time(self) -> float:
        """Clock time of the last successful poll, 0.0 before the first."""
        return self._last_poll_time

    @property
    def stale(self) -> bool:
        """Running, but without a successful poll for several intervals."""
        if not self._running or self._started_at is None:
            return False
        since = self._last_poll_time or self._started_at
        limit = STALE_AFTER_INTERVALS * self._poll_interval_ms / 1000.0
        return self._clock.now() - since > limit

    def next_delay_secs(self) -> float:
        """Wait before the next poll given the current failure streak."""
        if self._consecutive_errors == 0:
            delay_ms = self._poll_interval_ms
        else:
            delay_ms = min(
                self._max_backoff_ms,
                self._poll_interval_ms * 2 ** (self._consecutive_errors - 1),
            )
        return delay_ms / 1000.0

    def on_event(self, callback: FeedEventCallback) -> None:
        self._callbacks.append(callback)

    async def _emit(self, event: FeedEvent) -> None:
        for cb in self._callbacks:
            try:
                result = cb(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(
                    "feed_event_callback_error",
                    source=self._source,
                    event_type=event.event_type,
                )

    async def _emit_lifecycle(self, event_type: FeedEventType) -> None:
        await self._emit(FeedEvent(
            source=self._source,
            event_type=event_type,
            received_at=self._clock.now(),
        ))

    # ── Source contract ──────────────────────────────────────────

    @abc.abstractmethod
    async def connect(self) -> None:
        """Open whatever the source needs (HTTP client, socket)."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release what ``connect()`` opened."""

    @abc.abstractmethod
    async def poll(self) -> list[FeedEvent]:
        """Fetch the reports that are new since the previous poll."""

    # ── Polling ──────────────────────────────────────────────────

    async def poll_once(self) -> int:
        """Poll once and emit the reports; returns how many were emitted.

        A failed poll is counted and announced as ``FEED_ERROR``; it never
        raises.
        """
        try:
            events = await self.poll()
        except Exception:
            self._error_count += 1
            self._consecutive_errors += 1
            logger.exception(
                "feed_poll_error",
                source=self._source,
                consecutive_errors=self._consecutive_errors,
                retry_in_secs=self.next_delay_secs(),
            )
            await self._emit_lifecycle(FeedEventType.FEED_ERROR)
            return 0

        if self._consecutive_errors:
            logger.info(
                "feed_recovered",
                source=self._source,
                after_errors=self._consecutive_errors,
            )
        self._consecutive_errors = 0
        self._poll_count += 1
        self._last_poll_time = self._clock.now()
        for event in events:
            await self._emit(event)
        self._reports += len(events)
        return len(events)

    async def _poll_loop(self) -> None:
        while self._running:
            await self.poll_once()
            await self._clock.sleep(self.next_delay_secs())

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        await self.connect()
        self._running = True
        self._started_at = self._clock.now()
        self._task = asyncio.create_task(self._poll_loop())
        await self._emit_lifecycle(FeedEventType.FEED_CONNECTED)
        logger.info(
            "feed_started",
            source=self._source,
            poll_interval_ms=self._poll_interval_ms,
        )

    async def stop(self) -> None:
        if self._task is None and not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.close()
        await self._emit_lifecycle(FeedEventType.FEED_DISCONNECTED)
        logger.info(
            "feed_stopped",
            source=self._source,
            polls=self._poll_count,
            errors=self._error_count,
            reports=self._reports,
        )

    async def __aenter__(self) -> BaseFeed:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()
