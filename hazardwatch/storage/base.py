"""Persistence contracts consumed by the engine.

``AlertStore`` holds the engine's durable entities; ``Directory`` exposes the
externally owned contacts and assets it only reads.
"""

from __future__ import annotations

import abc
from typing import Any

from hazardwatch.core.types import (
    AffectedEntity,
    Alert,
    AlertStatus,
    Asset,
    Channel,
    Contact,
    DeliveryLog,
    EscalationPolicy,
    HazardEvent,
)


class AlertStore(abc.ABC):
    """Durable storage for hazards, alerts, affected entities and deliveries."""

    # ── Hazard events ────────────────────────────────────────────

    @abc.abstractmethod
    async def create_hazard_if_absent(self, event: HazardEvent) -> tuple[HazardEvent, bool]:
        """Insert *event* unless its dedup key exists.

        Returns the stored event and whether it was created.
        """

    @abc.abstractmethod
    async def get_hazard(self, hazard_id: str) -> HazardEvent | None:
        """Return the hazard event with the given dedup key."""

    @abc.abstractmethod
    async def mark_hazard_alerted(self, hazard_id: str, at: float) -> None:
        """Record that every alert the hazard qualifies for has been opened."""

    @abc.abstractmethod
    async def hazard_alerted(self, hazard_id: str) -> bool:
        """Whether ``mark_hazard_alerted`` was recorded for the hazard."""

    # ── Alerts ───────────────────────────────────────────────────

    @abc.abstractmethod
    async def create_alert_if_absent(self, alert: Alert) -> tuple[Alert, bool]:
        """Insert *alert* unless a non-terminal alert exists for its (hazard, scope)."""

    @abc.abstractmethod
    async def get_alert(self, alert_id: str) -> Alert | None:
        """Return the alert, or None."""

    @abc.abstractmethod
    async def list_alerts(self, statuses: set[AlertStatus] | None = None) -> list[Alert]:
        """Return alerts, optionally filtered by status."""

    @abc.abstractmethod
    async def compare_and_set_alert(
        self, alert_id: str, expected_version: int, **changes: Any,
    ) -> Alert:
        """Apply *changes* if the stored version equals *expected_version*.

        Bumps the version on success; raises ``ConcurrencyConflictError`` on
        a stale version and ``RecordNotFoundError`` for unknown alerts.
        """

    # ── Affected entities ────────────────────────────────────────

    @abc.abstractmethod
    async def add_affected_entities(
        self,
        alert_id: str,
        entities: list[AffectedEntity],
        unresolved: list[str] | None = None,
    ) -> list[AffectedEntity]:
        """Store a new immutable resolution snapshot for an alert."""

    @abc.abstractmethod
    async def list_affected_entities(
        self, alert_id: str, snapshot: int | None = None,
    ) -> list[AffectedEntity]:
        """Return one snapshot (the latest by default)."""

    @abc.abstractmethod
    async def list_unresolved_assets(self, alert_id: str) -> list[str]:
        """Asset ids excluded from the latest snapshot for lacking a position."""

    # ── Delivery logs ────────────────────────────────────────────

    @abc.abstractmethod
    async def claim_idempotency_key(self, key: str) -> bool:
        """Record *key*; return False if it was already claimed."""

    @abc.abstractmethod
    async def append_delivery_log(self, log: DeliveryLog) -> DeliveryLog:
        """Append a delivery attempt row."""

    @abc.abstractmethod
    async def update_delivery_log(self, log_id: str, **changes: Any) -> DeliveryLog:
        """Update status fields of an existing attempt row."""

    @abc.abstractmethod
    async def find_delivery_log(self, provider_message_id: str) -> DeliveryLog | None:
        """Look up an attempt by the provider's message id."""

    @abc.abstractmethod
    async def list_delivery_logs(
        self,
        alert_id: str | None = None,
        since: float | None = None,
        until: float | None = None,
        channel: Channel | None = None,
    ) -> list[DeliveryLog]:
        """Return attempt rows in insertion order."""

    # ── Escalation policies ──────────────────────────────────────

    @abc.abstractmethod
    async def save_policy(self, policy: EscalationPolicy) -> None:
        """Create or replace an escalation policy."""

    @abc.abstractmethod
    async def get_policy(self, policy_id: str) -> EscalationPolicy | None:
        """Return a policy by id."""

    @abc.abstractmethod
    async def list_policies(self) -> list[EscalationPolicy]:
        """Return all policies."""


class Directory(abc.ABC):
    """Read access to externally owned contacts and assets."""

    @abc.abstractmethod
    async def list_assets(self) -> list[Asset]:
        """Return every asset that is a candidate for geospatial resolution."""

    @abc.abstractmethod
    async def get_contact(self, contact_id: str) -> Contact | None:
        """Return a contact by id."""

    @abc.abstractmethod
    async def list_contacts(self, active_only: bool = True) -> list[Contact]:
        """Return contacts (active ones by default)."""

    @abc.abstractmethod
    async def find_contacts_by_address(self, address: str) -> list[Contact]:
        """Return contacts owning *address* on any channel."""
