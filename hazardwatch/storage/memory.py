"""In-memory store and directory — the reference persistence implementation."""

from __future__ import annotations

from collections import defaultdict
from pathlib import Path
from typing import Any

import structlog
import yaml

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
from hazardwatch.storage.base import AlertStore, Directory
from hazardwatch.storage.exceptions import (
    ConcurrencyConflictError,
    IntegrityError,
    RecordNotFoundError,
)

logger = structlog.stdlib.get_logger()


class InMemoryDirectory(Directory):
    """Contacts and assets held in dictionaries."""

    def __init__(
        self,
        contacts: list[Contact] | None = None,
        assets: list[Asset] | None = None,
    ) -> None:
        self._contacts: dict[str, Contact] = {c.id: c for c in contacts or []}
        self._assets: dict[str, Asset] = {a.id: a for a in assets or []}

    @classmethod
    def from_yaml(cls, path: str | Path) -> InMemoryDirectory:
        """Load contacts and assets from a YAML file.

        Expected structure::

            contacts:
              - {id: c1, name: Captain, phone: "+15550100", priority: 1}
            assets:
              - id: v1
                kind: vessel
                position: {lat: 35.0, lon: 141.0}
                contacts: [{contact_id: c1, priority: 1, role: master}]
        """
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raw = {}
        directory = cls(
            contacts=[Contact(**c) for c in raw.get("contacts") or []],
            assets=[Asset(**a) for a in raw.get("assets") or []],
        )
        logger.info(
            "directory_loaded",
            path=str(path),
            contacts=len(directory._contacts),
            assets=len(directory._assets),
        )
        return directory

    def add_contact(self, contact: Contact) -> None:
        self._contacts[contact.id] = contact

    def add_asset(self, asset: Asset) -> None:
        self._assets[asset.id] = asset

    async def list_assets(self) -> list[Asset]:
        return list(self._assets.values())

    async def get_contact(self, contact_id: str) -> Contact | None:
        return self._contacts.get(contact_id)

    async def list_contacts(self, active_only: bool = True) -> list[Contact]:
        return [c for c in self._contacts.values() if c.active or not active_only]

    async def find_contacts_by_address(self, address: str) -> list[Contact]:
        needle = _normalise_address(address)
        return [
            c for c in self._contacts.values()
            if needle in {
                _normalise_address(a)
                for a in (c.phone, c.email, c.chat_handle)
                if a
            }
        ]


def _normalise_address(address: str) -> str:
    value = address.strip().lower()
    if value.startswith("whatsapp:"):
        value = value[len("whatsapp:"):]
    return value


class InMemoryAlertStore(AlertStore):
    """Single-process store.

    Alert and hazard methods never await, so each call is atomic with
    respect to other coroutines on the same event loop.  When a *directory*
    is given, delivery rows are checked against it for contact existence.
    """

    def __init__(self, directory: Directory | None = None) -> None:
        self._directory = directory
        self._hazards: dict[str, HazardEvent] = {}
        self._alerted_at: dict[str, float] = {}
        self._alerts: dict[str, Alert] = {}
        self._entities: dict[str, list[list[AffectedEntity]]] = defaultdict(list)
        self._unresolved: dict[str, list[str]] = {}
        self._logs: dict[str, DeliveryLog] = {}
        self._log_order: list[str] = []
        self._by_provider_id: dict[str, str] = {}
        self._claimed_keys: set[str] = set()
        self._policies: dict[str, EscalationPolicy] = {}

    # ── Hazard events ────────────────────────────────────────────

    async def create_hazard_if_absent(self, event: HazardEvent) -> tuple[HazardEvent, bool]:
        existing = self._hazards.get(event.id)
        if existing is not None:
            return existing, False
        self._hazards[event.id] = event
        return event, True

    async def get_hazard(self, hazard_id: str) -> HazardEvent | None:
        return self._hazards.get(hazard_id)

    async def mark_hazard_alerted(self, hazard_id: str, at: float) -> None:
        if hazard_id not in self._hazards:
            raise RecordNotFoundError(f"Hazard {hazard_id} not found")
        self._alerted_at.setdefault(hazard_id, at)

    async def hazard_alerted(self, hazard_id: str) -> bool:
        return hazard_id in self._alerted_at

    # ── Alerts ───────────────────────────────────────────────────

    async def create_alert_if_absent(self, alert: Alert) -> tuple[Alert, bool]:
        for existing in self._alerts.values():
            if (
                existing.hazard_id == alert.hazard_id
                and existing.scope == alert.scope
                and not existing.status.terminal
            ):
                return existing.model_copy(), False
        if alert.id in self._alerts:
            raise IntegrityError(f"Alert id {alert.id} already exists")
        self._alerts[alert.id] = alert.model_copy()
        return alert.model_copy(), True

    async def get_alert(self, alert_id: str) -> Alert | None:
        alert = self._alerts.get(alert_id)
        return alert.model_copy() if alert is not None else None

    async def list_alerts(self, statuses: set[AlertStatus] | None = None) -> list[Alert]:
        return [
            a.model_copy() for a in self._alerts.values()
            if statuses is None or a.status in statuses
        ]

    async def compare_and_set_alert(
        self, alert_id: str, expected_version: int, **changes: Any,
    ) -> Alert:
        current = self._alerts.get(alert_id)
        if current is None:
            raise RecordNotFoundError(f"Alert {alert_id} not found")
        if current.version != expected_version:
            raise ConcurrencyConflictError(alert_id, expected_version, current.version)

        new_step = changes.get("escalation_step_index", current.escalation_step_index)
        if new_step < current.escalation_step_index:
            raise IntegrityError(
                f"Alert {alert_id}: step index cannot regress"
                f" ({current.escalation_step_index} -> {new_step})"
            )
        if current.acknowledged and changes.get("acknowledged") is False:
            raise IntegrityError(f"Alert {alert_id}: acknowledgement is permanent")

        updated = current.model_copy(update={**changes, "version": current.version + 1})
        self._alerts[alert_id] = updated
        return updated.model_copy()

    # ── Affected entities ────────────────────────────────────────

    async def add_affected_entities(
        self,
        alert_id: str,
        entities: list[AffectedEntity],
        unresolved: list[str] | None = None,
    ) -> list[AffectedEntity]:
        if alert_id not in self._alerts:
            raise IntegrityError(f"Alert {alert_id} not found for affected entities")
        snapshots = self._entities[alert_id]
        number = len(snapshots) + 1
        stored = [
            e.model_copy(update={"alert_id": alert_id, "snapshot": number})
            for e in entities
        ]
        snapshots.append(stored)
        self._unresolved[alert_id] = list(unresolved or [])
        return list(stored)

    async def list_affected_entities(
        self, alert_id: str, snapshot: int | None = None,
    ) -> list[AffectedEntity]:
        snapshots = self._entities.get(alert_id, [])
        if not snapshots:
            return []
        if snapshot is None:
            return list(snapshots[-1])
        if 1 <= snapshot <= len(snapshots):
            return list(snapshots[snapshot - 1])
        return []

    async def list_unresolved_assets(self, alert_id: str) -> list[str]:
        return list(self._unresolved.get(alert_id, []))

    # ── Delivery logs ────────────────────────────────────────────

    async def claim_idempotency_key(self, key: str) -> bool:
        if key in self._claimed_keys:
            return False
        self._claimed_keys.add(key)
        return True

    async def append_delivery_log(self, log: DeliveryLog) -> DeliveryLog:
        if log.alert_id not in self._alerts:
            raise IntegrityError(f"Delivery {log.id} references unknown alert {log.alert_id}")
        if not log.contact_id:
            raise IntegrityError(f"Delivery {log.id} has no contact")
        if self._directory is not None:
            contact = await self._directory.get_contact(log.contact_id)
            if contact is None:
                raise IntegrityError(
                    f"Delivery {log.id} references unknown contact {log.contact_id}"
                )
        if log.id in self._logs:
            raise IntegrityError(f"Delivery {log.id} already exists")
        self._logs[log.id] = log.model_copy()
        self._log_order.append(log.id)
        if log.provider_message_id:
            self._by_provider_id[log.provider_message_id] = log.id
        return log.model_copy()

    async def update_delivery_log(self, log_id: str, **changes: Any) -> DeliveryLog:
        current = self._logs.get(log_id)
        if current is None:
            raise RecordNotFoundError(f"Delivery {log_id} not found")
        updated = current.model_copy(update=changes)
        self._logs[log_id] = updated
        if updated.provider_message_id:
            self._by_provider_id[updated.provider_message_id] = log_id
        return updated.model_copy()

    async def find_delivery_log(self, provider_message_id: str) -> DeliveryLog | None:
        log_id = self._by_provider_id.get(provider_message_id)
        if log_id is None:
            return None
        return self._logs[log_id].model_copy()

    async def list_delivery_logs(
        self,
        alert_id: str | None = None,
        since: float | None = None,
        until: float | None = None,
        channel: Channel | None = None,
    ) -> list[DeliveryLog]:
        rows: list[DeliveryLog] = []
        for log_id in self._log_order:
            log = self._logs[log_id]
            if alert_id is not None and log.alert_id != alert_id:
                continue
            if channel is not None and log.channel != channel:
                continue
            if since is not None and log.queued_at < since:
                continue
            if until is not None and log.queued_at >= until:
                continue
            rows.append(log.model_copy())
        return rows

    # ── Escalation policies ──────────────────────────────────────

    async def save_policy(self, policy: EscalationPolicy) -> None:
        self._policies[policy.id] = policy.model_copy(deep=True)
        logger.debug("policy_saved", policy_id=policy.id, steps=len(policy.steps))

    async def get_policy(self, policy_id: str) -> EscalationPolicy | None:
        policy = self._policies.get(policy_id)
        return policy.model_copy(deep=True) if policy is not None else None

    async def list_policies(self) -> list[EscalationPolicy]:
        return [p.model_copy(deep=True) for p in self._policies.values()]
