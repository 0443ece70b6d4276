"""Escalation-layer exceptions."""

from __future__ import annotations


class EscalationError(Exception):
    """Base exception for escalation errors."""


class ConfigurationError(EscalationError):
    """Channel or escalation policy tables are incomplete.

    Fatal: indicates a missing invariant that needs operator attention.
    """


class AlertNotFoundError(EscalationError):
    """Raised when an operation references an unknown alert."""

    def __init__(self, alert_id: str) -> None:
        super().__init__(f"Alert {alert_id} not found")
        self.alert_id = alert_id


class InvalidTransitionError(EscalationError):
    """Raised when a state transition is not allowed from the current status."""
