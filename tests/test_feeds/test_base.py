"""Tests for BaseFeed — lifecycle, event system, error handling."""

from __future__ import annotations

from unittest.mock import AsyncMock

from hazardwatch.core.clock import FakeClock
from hazardwatch.core.types import FeedEvent, FeedEventType
from hazardwatch.feeds.base import BaseFeed


def _hazard_event(external_id: str = "us1") -> FeedEvent:
    return FeedEvent(
        source="stub",
        event_type=FeedEventType.HAZARD_REPORTED,
        record={"externalId": external_id},
        received_at=1.0,
    )


class StubFeed(BaseFeed):
    """Concrete BaseFeed for testing."""

    def __init__(
        self,
        poll_results: list[list[FeedEvent]] | None = None,
        poll_error: Exception | None = None,
        poll_interval_ms: int = 1_000,
    ) -> None:
        self.clock = FakeClock(start=100.0)
        super().__init__(source="stub", poll_interval_ms=poll_interval_ms, clock=self.clock)
        self._poll_results = poll_results or []
        self._poll_error = poll_error
        self._poll_index = 0
        self.connect_called = False
        self.close_called = False

    async def connect(self) -> None:
        self.connect_called = True

    async def close(self) -> None:
        self.close_called = True

    async def poll(self) -> list[FeedEvent]:
        if self._poll_error is not None:
            raise self._poll_error
        if self._poll_index < len(self._poll_results):
            result = self._poll_results[self._poll_index]
            self._poll_index += 1
            return result
        return []


class TestBaseFeedLifecycle:
    async def test_start_calls_connect(self) -> None:
        feed = StubFeed()
        await feed.start()
        assert feed.connect_called
        assert feed.running
        await feed.stop()

    async def test_stop_calls_close(self) -> None:
        feed = StubFeed()
        await feed.start()
        await feed.stop()
        assert feed.close_called
        assert not feed.running

    async def test_start_is_idempotent(self) -> None:
        feed = StubFeed()
        await feed.start()
        task1 = feed._task
        await feed.start()  # should be no-op
        assert feed._task is task1
        await feed.stop()

    async def test_stop_without_start_is_noop(self) -> None:
        feed = StubFeed()
        await feed.stop()
        assert not feed.close_called

    async def test_async_context_manager(self) -> None:
        feed = StubFeed()
        async with feed:
            assert feed.running
            assert feed.connect_called
        assert not feed.running
        assert feed.close_called


class TestBaseFeedEvents:
    async def test_event_callback_receives_events(self) -> None:
        feed = StubFeed(poll_results=[[_hazard_event()]])
        received: list[FeedEvent] = []
        feed.on_event(received.append)  # type: ignore[arg-type]
        await feed.start()
        await feed.clock.tick()
        await feed.stop()
        hazard_events = [e for e in received if e.event_type == FeedEventType.HAZARD_REPORTED]
        assert len(hazard_events) == 1
        assert hazard_events[0].record["externalId"] == "us1"

    async def test_polls_on_interval(self) -> None:
        feed = StubFeed(
            poll_results=[[_hazard_event("us1")], [_hazard_event("us2")]],
            poll_interval_ms=60_000,
        )
        received: list[FeedEvent] = []
        feed.on_event(received.append)  # type: ignore[arg-type]
        await feed.start()
        await feed.clock.tick()
        assert feed.poll_count == 1
        await feed.clock.tick(30)
        assert feed.poll_count == 1
        await feed.clock.tick(30)
        assert feed.poll_count == 2
        await feed.stop()
        ids = [e.record["externalId"] for e in received if e.record]
        assert ids == ["us1", "us2"]

    async def test_start_and_stop_emit_lifecycle_events(self) -> None:
        feed = StubFeed()
        received: list[FeedEvent] = []
        feed.on_event(received.append)  # type: ignore[arg-type]
        await feed.start()
        await feed.stop()
        types = [e.event_type for e in received]
        assert types[0] == FeedEventType.FEED_CONNECTED
        assert types[-1] == FeedEventType.FEED_DISCONNECTED
        assert all(e.source == "stub" for e in received)

    async def test_async_callback(self) -> None:
        feed = StubFeed(poll_results=[[_hazard_event()]])
        cb = AsyncMock()
        feed.on_event(cb)
        await feed.start()
        await feed.clock.tick()
        await feed.stop()
        assert cb.await_count >= 2


class TestBaseFeedErrorHandling:
    async def test_poll_error_increments_error_count(self) -> None:
        feed = StubFeed(poll_error=RuntimeError("boom"))
        await feed.start()
        await feed.clock.tick()
        await feed.clock.tick(1)
        await feed.stop()
        assert feed.error_count == 2

    async def test_poll_error_emits_feed_error_event(self) -> None:
        feed = StubFeed(poll_error=RuntimeError("boom"))
        received: list[FeedEvent] = []
        feed.on_event(received.append)  # type: ignore[arg-type]
        await feed.start()
        await feed.clock.tick()
        await feed.stop()
        error_events = [e for e in received if e.event_type == FeedEventType.FEED_ERROR]
        assert len(error_events) == 1

    async def test_callback_exception_does_not_crash_loop(self) -> None:
        feed = StubFeed(poll_results=[[_hazard_event("us1")], [_hazard_event("us2")]])

        def bad_callback(evt: FeedEvent) -> None:
            raise ValueError("callback exploded")

        feed.on_event(bad_callback)
        await feed.start()
        await feed.clock.tick()
        await feed.clock.tick(1)
        await feed.stop()
        assert feed.poll_count == 2
        assert feed.error_count == 0


class TestBaseFeedProperties:
    async def test_last_poll_time_updates(self) -> None:
        feed = StubFeed()
        assert feed.last_poll_time == 0.0
        await feed.start()
        await feed.clock.tick()
        await feed.stop()
        assert feed.last_poll_time == 100.0

    def test_source_property(self) -> None:
        assert StubFeed().source == "stub"


class FlakyFeed(StubFeed):
    """Fails a fixed number of polls before returning reports."""

    def __init__(self, failures: int, **kwargs: object) -> None:
        super().__init__(**kwargs)  # type: ignore[arg-type]
        self.failures = failures

    async def poll(self) -> list[FeedEvent]:
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("feed down")
        return await super().poll()


class TestBaseFeedBackoff:
    def test_delay_is_interval_without_errors(self) -> None:
        assert StubFeed(poll_interval_ms=2_000).next_delay_secs() == 2.0

    async def test_delay_doubles_per_consecutive_error(self) -> None:
        feed = StubFeed(poll_error=RuntimeError("boom"), poll_interval_ms=1_000)
        delays = []
        for _ in range(3):
            await feed.poll_once()
            delays.append(feed.next_delay_secs())
        assert delays == [1.0, 2.0, 4.0]
        assert feed.consecutive_errors == 3

    async def test_delay_capped_at_max_backoff(self) -> None:
        feed = StubFeed(poll_error=RuntimeError("boom"), poll_interval_ms=1_000)
        for _ in range(8):
            await feed.poll_once()
        assert feed.next_delay_secs() == 10.0

    async def test_success_resets_streak(self) -> None:
        feed = FlakyFeed(failures=2, poll_results=[[_hazard_event()]])
        assert await feed.poll_once() == 0
        assert await feed.poll_once() == 0
        assert await feed.poll_once() == 1
        assert feed.consecutive_errors == 0
        assert feed.error_count == 2
        assert feed.next_delay_secs() == 1.0

    async def test_loop_recovers_after_failure(self) -> None:
        feed = FlakyFeed(failures=1, poll_interval_ms=1_000)
        await feed.start()
        await feed.clock.tick()
        assert feed.error_count == 1
        await feed.clock.tick(1)
        assert feed.poll_count == 1
        await feed.stop()


class TestBaseFeedStaleness:
    async def test_not_stale_when_stopped(self) -> None:
        feed = StubFeed()
        feed.clock.advance(3_600)
        assert not feed.stale

    async def test_stale_after_failed_intervals(self) -> None:
        feed = StubFeed(poll_error=RuntimeError("boom"), poll_interval_ms=1_000)
        await feed.start()
        await feed.clock.tick()
        assert not feed.stale
        await feed.clock.tick(1)
        await feed.clock.tick(2)
        await feed.clock.tick(4)
        assert feed.stale
        await feed.stop()

    async def test_fresh_after_successful_poll(self) -> None:
        feed = StubFeed(poll_interval_ms=1_000)
        await feed.start()
        for _ in range(5):
            await feed.clock.tick(1)
        assert not feed.stale
        await feed.stop()
