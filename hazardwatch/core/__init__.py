"""Core module — config, types, logging, clocks."""

from hazardwatch.core.clock import Clock, FakeClock
from hazardwatch.core.config import Settings, get_settings, load_settings, reset_settings
from hazardwatch.core.logging import setup_logging
from hazardwatch.core.types import (
    AffectedEntity,
    Alert,
    AlertScope,
    AlertStatus,
    Asset,
    Channel,
    Contact,
    DeliveryLog,
    DeliveryStatus,
    EscalationPolicy,
    EscalationStep,
    HazardEvent,
    HazardType,
    Position,
    SendResult,
)

__all__ = [
    "AffectedEntity",
    "Alert",
    "AlertScope",
    "AlertStatus",
    "Asset",
    "Channel",
    "Clock",
    "Contact",
    "DeliveryLog",
    "DeliveryStatus",
    "EscalationPolicy",
    "EscalationStep",
    "FakeClock",
    "HazardEvent",
    "HazardType",
    "Position",
    "SendResult",
    "Settings",
    "get_settings",
    "load_settings",
    "reset_settings",
    "setup_logging",
]
