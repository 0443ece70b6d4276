"""CircuitBreaker — rolling failure-rate breaker per delivery channel."""

from __future__ import annotations

from collections import deque
from enum import StrEnum

import structlog

from hazardwatch.core.clock import Clock
from hazardwatch.core.config import CircuitBreakerConfig
from hazardwatch.delivery.exceptions import CircuitOpenError

logger = structlog.stdlib.get_logger()


class CircuitState(StrEnum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Opens when the failure rate inside a rolling window crosses a threshold.

    The rate is only evaluated once ``minimum_calls`` outcomes are in the
    window.  An open breaker rejects calls until ``reset_timeout_secs``
    passes, then lets a single trial call through (half-open): success closes
    it, failure re-opens it.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._name = name
        self._config = config or CircuitBreakerConfig()
        self._clock = clock or Clock()
        self._state = CircuitState.CLOSED
        self._outcomes: deque[tuple[float, bool]] = deque()
        self._opened_at: float | None = None
        self._trial_in_flight = False

    # ── Properties ────────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN → HALF_OPEN once the reset timeout passed."""
        if self._state == CircuitState.OPEN and self._reset_due():
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
        return self._state

    @property
    def failure_rate(self) -> float:
        """Failure percentage within the rolling window."""
        self._prune()
        if not self._outcomes:
            return 0.0
        failures = sum(1 for _, ok in self._outcomes if not ok)
        return failures / len(self._outcomes) * 100.0

    @property
    def window_calls(self) -> int:
        """Outcomes currently held in the rolling window."""
        self._prune()
        return len(self._outcomes)

    @property
    def retry_at(self) -> float | None:
        if self._opened_at is None:
            return None
        return self._opened_at + self._config.reset_timeout_secs

    # ── Checks ───────────────────────────────────────────────────

    def allow(self) -> bool:
        """Whether a call may proceed right now."""
        if not self._config.enabled:
            return True
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def check(self) -> None:
        """Raise ``CircuitOpenError`` unless a call may proceed."""
        if not self.allow():
            raise CircuitOpenError(self._name, self.retry_at)

    # ── State mutation ───────────────────────────────────────────

    def release_trial(self) -> None:
        """Give back a half-open trial slot whose call ended without an outcome."""
        self._trial_in_flight = False

    def record_success(self) -> None:
        self._outcomes.append((self._clock.now(), True))
        self._prune()
        if self._state == CircuitState.HALF_OPEN:
            self._close()

    def record_failure(self) -> None:
        now = self._clock.now()
        self._outcomes.append((now, False))
        self._prune()
        if self._state == CircuitState.HALF_OPEN:
            self._open(now)
            return
        if self._state == CircuitState.CLOSED and self._should_open():
            self._open(now)

    def reset(self) -> None:
        self._close()
        self._outcomes.clear()

    # ── Internals ────────────────────────────────────────────────

    def _should_open(self) -> bool:
        self._prune()
        if len(self._outcomes) < self._config.minimum_calls:
            return False
        return self.failure_rate >= self._config.failure_threshold_pct

    def _reset_due(self) -> bool:
        retry_at = self.retry_at
        return retry_at is not None and self._clock.now() >= retry_at

    def _prune(self) -> None:
        cutoff = self._clock.now() - self._config.window_secs
        while self._outcomes and self._outcomes[0][0] < cutoff:
            self._outcomes.popleft()

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._trial_in_flight = False
        logger.warning(
            "circuit_opened",
            circuit=self._name,
            failure_rate=round(self.failure_rate, 1),
            retry_at=self.retry_at,
        )

    def _close(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("circuit_closed", circuit=self._name)
        self._state = CircuitState.CLOSED
        self._opened_at = None
        self._trial_in_flight = False
