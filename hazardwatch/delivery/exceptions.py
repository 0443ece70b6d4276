"""Delivery-layer exceptions.

Send failures are reported as ``SendResult`` values; these exceptions cover
conditions raised around the senders.
"""

from __future__ import annotations


class DeliveryError(Exception):
    """Base exception for delivery errors."""


class CircuitOpenError(DeliveryError):
    """A channel's circuit breaker is open and rejected the call."""

    def __init__(self, name: str, retry_at: float | None = None) -> None:
        super().__init__(f"Circuit breaker for {name} is open")
        self.name = name
        self.retry_at = retry_at
