"""Escalation — channel policy, timers and the alert state machine."""

from hazardwatch.escalation.engine import AlertEventCallback, EscalationEngine
from hazardwatch.escalation.exceptions import (
    AlertNotFoundError,
    ConfigurationError,
    EscalationError,
    InvalidTransitionError,
)
from hazardwatch.escalation.policy import ChannelPolicy, channels_for_contact
from hazardwatch.escalation.scheduler import TimerScheduler

__all__ = [
    "AlertEventCallback",
    "AlertNotFoundError",
    "ChannelPolicy",
    "ConfigurationError",
    "EscalationEngine",
    "EscalationError",
    "InvalidTransitionError",
    "TimerScheduler",
    "channels_for_contact",
]
