"""EscalationEngine — per-alert state machine driven by step timers.

Lifecycle::

    PENDING ──open──▶ NOTIFYING ──timeout──▶ ESCALATING ──timeout──▶ …
        │                 │                      │
        └──── acknowledge / resolve (any non-terminal state) ────▶ ACKNOWLEDGED | RESOLVED
                          └──── last step's timeout ────────────▶ EXPIRED

Step *n* is dispatched when the alert enters it; its ``wait_secs`` then runs
as the acknowledgement window.  When the window of the last step closes
with no acknowledgement the alert expires.

Every transition takes the alert's ``asyncio.Lock`` and commits through the
store's compare-and-set on ``Alert.version``; a stale version re-reads and
re-decides.  Notifications are sent outside the lock so an acknowledgement
can interrupt a long fan-out.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import structlog

from hazardwatch.core.clock import Clock
from hazardwatch.core.config import EscalationConfig, get_settings
from hazardwatch.core.logging import bind_alert
from hazardwatch.core.types import (
    AffectedEntity,
    Alert,
    AlertEvent,
    AlertEventType,
    AlertScope,
    AlertStatus,
    DeliveryLog,
    EscalationPolicy,
    EscalationStep,
    HazardEvent,
    Recipient,
)
from hazardwatch.escalation.exceptions import (
    AlertNotFoundError,
    ConfigurationError,
    InvalidTransitionError,
)
from hazardwatch.escalation.policy import ChannelPolicy
from hazardwatch.escalation.scheduler import TimerScheduler
from hazardwatch.storage.base import AlertStore, Directory
from hazardwatch.storage.exceptions import ConcurrencyConflictError

if TYPE_CHECKING:
    from hazardwatch.delivery.dispatcher import DeliveryDispatcher

logger = structlog.stdlib.get_logger()
audit = structlog.stdlib.get_logger("audit")

AlertEventCallback = Callable[[AlertEvent], Awaitable[None] | None]

# Decides the changes for a fresh alert snapshot, or None to leave it alone.
_Mutation = Callable[[Alert], dict[str, Any] | None]

_ACTIVE_STATUSES = {AlertStatus.PENDING, AlertStatus.NOTIFYING, AlertStatus.ESCALATING}


class EscalationEngine:
    """Owns alert state and escalation timers.

    Usage::

        engine = EscalationEngine(store, directory, dispatcher, policy, scheduler)
        engine.on_event(my_callback)
        alert, created = await engine.open_alert(hazard, AlertScope.AFFECTED, entities)
        ...
        await engine.acknowledge(alert.id, acknowledged_by="captain")
    """

    def __init__(
        self,
        store: AlertStore,
        directory: Directory,
        dispatcher: DeliveryDispatcher,
        policy: ChannelPolicy,
        scheduler: TimerScheduler,
        config: EscalationConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._directory = directory
        self._dispatcher = dispatcher
        self._policy = policy
        self._scheduler = scheduler
        self._config = config or get_settings().escalation
        self._clock = clock or Clock()

        self._locks: dict[str, asyncio.Lock] = {}
        self._callbacks: list[AlertEventCallback] = []

        # Stats
        self._alerts_opened = 0
        self._steps_dispatched = 0
        self._acknowledged = 0
        self._resolved = 0
        self._expired = 0
        self._conflicts = 0

    @property
    def stats(self) -> dict[str, int]:
        """Current engine statistics."""
        return {
            "alerts_opened": self._alerts_opened,
            "steps_dispatched": self._steps_dispatched,
            "acknowledged": self._acknowledged,
            "resolved": self._resolved,
            "expired": self._expired,
            "conflicts": self._conflicts,
        }

    def on_event(self, callback: AlertEventCallback) -> None:
        """Register a callback for alert transition events."""
        self._callbacks.append(callback)

    async def _emit(self, event: AlertEvent) -> None:
        for cb in self._callbacks:
            try:
                result = cb(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("alert_event_callback_error", event_type=event.event_type)

    def _lock_for(self, alert_id: str) -> asyncio.Lock:
        lock = self._locks.get(alert_id)
        if lock is None:
            lock = self._locks[alert_id] = asyncio.Lock()
        return lock

    def _release_lock(self, alert_id: str) -> None:
        # Terminal alerts never mutate again, so their lock can go.
        lock = self._locks.get(alert_id)
        if lock is not None and not lock.locked():
            del self._locks[alert_id]

    @property
    def tracked_locks(self) -> int:
        return len(self._locks)

    # ── Opening ──────────────────────────────────────────────────

    async def open_alert(
        self,
        hazard: HazardEvent,
        scope: AlertScope,
        entities: list[AffectedEntity] | None = None,
        unresolved: list[str] | None = None,
    ) -> tuple[Alert, bool]:
        """Create the alert for (hazard, scope) and dispatch its first step.

        Returns the existing non-terminal alert with ``created=False`` when
        one is already open for the same hazard and scope.
        """
        policy = self._policy.policy_for(hazard.severity, hazard.type)
        channels = self._policy.channels_for(hazard.severity, hazard.type)
        now = self._clock.now()
        alert = Alert(
            id=uuid.uuid4().hex,
            hazard_id=hazard.id,
            scope=scope,
            severity=hazard.severity,
            policy_id=policy.id,
            channels=channels,
            created_at=now,
            updated_at=now,
        )
        stored, created = await self._store.create_alert_if_absent(alert)
        if not created:
            logger.info(
                "alert_already_open",
                alert_id=stored.id,
                hazard_id=hazard.id,
                scope=scope,
            )
            return stored, False

        if scope == AlertScope.AFFECTED or entities:
            await self._store.add_affected_entities(stored.id, entities or [], unresolved)

        self._alerts_opened += 1
        audit.info(
            "alert_transition",
            alert_id=stored.id,
            from_status=None,
            to_status=stored.status,
            step_index=stored.escalation_step_index,
            version=stored.version,
        )
        logger.info(
            "alert_opened",
            alert_id=stored.id,
            hazard_id=hazard.id,
            scope=scope,
            severity=stored.severity,
            policy_id=policy.id,
            channels=channels,
            affected=len(entities or []),
        )
        await self._emit(AlertEvent(
            event_type=AlertEventType.ALERT_OPENED,
            alert=stored,
            timestamp=now,
        ))

        advanced = await self._advance(stored.id, from_step=-1)
        return advanced, True

    # ── Timer-driven and manual advancement ──────────────────────

    async def on_step_timeout(self, alert_id: str, step_index: int) -> None:
        """Timer callback: the acknowledgement window of *step_index* closed."""
        try:
            with bind_alert(alert_id):
                await self._advance(alert_id, from_step=step_index)
        except AlertNotFoundError:
            logger.warning("step_timeout_for_unknown_alert", alert_id=alert_id, step_index=step_index)

    async def escalate(self, alert_id: str) -> Alert:
        """Advance to the next step now, without waiting for the timer.

        Terminal alerts are returned unchanged.

        Raises:
            AlertNotFoundError: unknown alert.
            InvalidTransitionError: the alert is already on its last step.
        """
        alert = await self._require(alert_id)
        if alert.status.terminal:
            return alert
        policy = await self._policy_of(alert)
        if alert.escalation_step_index + 1 >= len(policy.steps):
            raise InvalidTransitionError(
                f"Alert {alert_id} is on its last escalation step"
            )
        logger.info("alert_manual_escalation", alert_id=alert_id, from_step=alert.escalation_step_index)
        return await self._advance(alert_id, from_step=alert.escalation_step_index)

    async def _advance(self, alert_id: str, from_step: int) -> Alert:
        """Move the alert past *from_step*: dispatch the next step or expire."""
        # Alerts are never deleted, so an unknown id never gets a lock.
        current = await self._store.get_alert(alert_id)
        if current is None:
            logger.warning("escalation_alert_missing", alert_id=alert_id)
            raise AlertNotFoundError(alert_id)
        policy = await self._policy_of(current)
        async with self._lock_for(alert_id):
            next_step = from_step + 1
            now = self._clock.now()

            def mutate(alert: Alert) -> dict[str, Any] | None:
                if alert.status.terminal or alert.escalation_step_index != from_step:
                    return None
                if next_step >= len(policy.steps):
                    return {
                        "status": AlertStatus.EXPIRED,
                        "expired_at": now,
                        "updated_at": now,
                    }
                return {
                    "status": AlertStatus.NOTIFYING if next_step == 0 else AlertStatus.ESCALATING,
                    "escalation_step_index": next_step,
                    "last_escalated_at": now,
                    "updated_at": now,
                }

            alert, committed = await self._commit(alert_id, mutate)
            expired = committed and alert.status == AlertStatus.EXPIRED
            if expired:
                self._scheduler.cancel(alert_id)
            elif committed:
                step = policy.steps[next_step]
                self._arm_timer(alert_id, next_step, step.wait_secs)
                claimed = await self._store.claim_idempotency_key(
                    f"dispatch:{alert_id}:{next_step}",
                )

        if alert.status.terminal:
            self._release_lock(alert_id)
        if not committed:
            logger.debug(
                "stale_escalation_trigger",
                alert_id=alert_id,
                from_step=from_step,
                current_step=alert.escalation_step_index,
                status=alert.status,
            )
            return alert

        if expired:
            self._expired += 1
            logger.warning("alert_expired", alert_id=alert_id, steps=len(policy.steps))
            await self._emit(AlertEvent(
                event_type=AlertEventType.ALERT_EXPIRED,
                alert=alert,
                step_index=alert.escalation_step_index,
                timestamp=now,
            ))
            return alert

        if not claimed:
            logger.warning("step_dispatch_already_claimed", alert_id=alert_id, step_index=next_step)
            return alert

        deliveries = await self._dispatch(alert, step, next_step)
        self._steps_dispatched += 1
        await self._emit(AlertEvent(
            event_type=AlertEventType.STEP_DISPATCHED,
            alert=alert,
            step_index=next_step,
            deliveries=deliveries,
            timestamp=self._clock.now(),
        ))
        return alert

    def _arm_timer(self, alert_id: str, step_index: int, delay_secs: float) -> None:
        async def _fire() -> None:
            await self.on_step_timeout(alert_id, step_index)

        self._scheduler.schedule(alert_id, delay_secs, _fire)

    async def _dispatch(self, alert: Alert, step: EscalationStep, step_index: int) -> int:
        hazard = await self._store.get_hazard(alert.hazard_id)
        if hazard is None:
            logger.error("alert_hazard_missing", alert_id=alert.id, hazard_id=alert.hazard_id)
            return 0
        recipients = await self.recipients_for(alert, step)
        channels = list(step.channels) if step.channels else list(alert.channels)
        logger.info(
            "step_dispatching",
            alert_id=alert.id,
            step_index=step_index,
            recipients=len(recipients),
            channels=channels,
        )
        try:
            with bind_alert(alert.id, alert.hazard_id):
                logs = await self._dispatcher.dispatch_step(
                    alert, hazard, step_index, recipients, channels,
                )
        except Exception:
            # The step timer is already armed, so escalation continues.
            logger.exception("step_dispatch_error", alert_id=alert.id, step_index=step_index)
            return 0
        return len(logs)

    # ── Terminal signals ─────────────────────────────────────────

    async def acknowledge(
        self,
        alert_id: str,
        acknowledged_by: str = "",
        at: float | None = None,
    ) -> Alert:
        """Mark the alert acknowledged and stop all further escalation.

        Idempotent: an alert already in a terminal state is returned as is.

        Raises:
            AlertNotFoundError: unknown alert.
        """
        await self._require(alert_id)
        async with self._lock_for(alert_id):
            when = at if at is not None else self._clock.now()

            def mutate(alert: Alert) -> dict[str, Any] | None:
                if alert.status.terminal:
                    return None
                return {
                    "status": AlertStatus.ACKNOWLEDGED,
                    "acknowledged": True,
                    "acknowledged_at": when,
                    "acknowledged_by": acknowledged_by,
                    "updated_at": self._clock.now(),
                }

            alert, committed = await self._commit(alert_id, mutate)
            if committed:
                self._dispatcher.halt(alert_id)
                self._scheduler.cancel(alert_id)

        self._release_lock(alert_id)
        if not committed:
            return alert
        self._acknowledged += 1
        logger.info("alert_acknowledged", alert_id=alert_id, acknowledged_by=acknowledged_by)
        await self._dispatcher.cancel_voice_calls(alert_id)
        await self._emit(AlertEvent(
            event_type=AlertEventType.ALERT_ACKNOWLEDGED,
            alert=alert,
            step_index=alert.escalation_step_index,
            timestamp=when,
        ))
        return alert

    async def resolve(self, alert_id: str, reason: str = "") -> Alert:
        """Close the alert regardless of its state. Idempotent.

        Raises:
            AlertNotFoundError: unknown alert.
        """
        await self._require(alert_id)
        async with self._lock_for(alert_id):
            now = self._clock.now()

            def mutate(alert: Alert) -> dict[str, Any] | None:
                if alert.status.terminal:
                    return None
                return {
                    "status": AlertStatus.RESOLVED,
                    "resolved_at": now,
                    "resolution_reason": reason,
                    "updated_at": now,
                }

            alert, committed = await self._commit(alert_id, mutate)
            if committed:
                self._dispatcher.halt(alert_id)
                self._scheduler.cancel(alert_id)

        self._release_lock(alert_id)
        if not committed:
            return alert
        self._resolved += 1
        logger.info("alert_resolved", alert_id=alert_id, reason=reason)
        await self._emit(AlertEvent(
            event_type=AlertEventType.ALERT_RESOLVED,
            alert=alert,
            step_index=alert.escalation_step_index,
            timestamp=now,
        ))
        return alert

    # ── Redelivery ───────────────────────────────────────────────

    async def redeliver(self, alert_id: str) -> list[DeliveryLog]:
        """Retry the dead-lettered deliveries of an alert.

        Acknowledged and resolved alerts are left alone.

        Raises:
            AlertNotFoundError: unknown alert.
        """
        alert = await self._require(alert_id)
        if alert.status in (AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED):
            logger.info("redelivery_skipped_closed", alert_id=alert_id, status=alert.status)
            return []
        hazard = await self._store.get_hazard(alert.hazard_id)
        if hazard is None:
            logger.error("alert_hazard_missing", alert_id=alert_id, hazard_id=alert.hazard_id)
            return []
        recipients = await self.recipients_for(alert, EscalationStep(wait_secs=0))
        return await self._dispatcher.redeliver(alert, hazard, recipients)

    # ── Restart safety ───────────────────────────────────────────

    async def recover(self) -> int:
        """Re-arm timers for every open alert in the store.

        Overdue windows fire on the next sweep.  Alerts that never left
        PENDING get their first step dispatched now.  Returns the number of
        alerts recovered.
        """
        recovered = 0
        for alert in await self._store.list_alerts(_ACTIVE_STATUSES):
            if self._scheduler.pending(alert.id):
                continue
            if alert.status == AlertStatus.PENDING:
                await self._advance(alert.id, from_step=-1)
                recovered += 1
                continue
            policy = await self._policy_of(alert)
            step = policy.steps[min(alert.escalation_step_index, len(policy.steps) - 1)]
            started = alert.last_escalated_at or alert.updated_at
            delay = started + step.wait_secs - self._clock.now()
            self._arm_timer(alert.id, alert.escalation_step_index, delay)
            recovered += 1
        if recovered:
            logger.info("escalation_timers_recovered", count=recovered)
        return recovered

    # ── Recipients ───────────────────────────────────────────────

    async def recipients_for(self, alert: Alert, step: EscalationStep) -> list[Recipient]:
        """Contacts targeted by *step*, lowest priority number first.

        Affected alerts reach the contacts linked to the latest affected
        entity snapshot, each at its best priority and closest asset; a link
        with ``notify_on`` set only fires for the listed severities.
        Global alerts reach every active contact.
        """
        by_contact: dict[str, Recipient] = {}
        if alert.scope == AlertScope.GLOBAL:
            for contact in await self._directory.list_contacts(active_only=True):
                by_contact[contact.id] = Recipient(
                    contact=contact, priority=contact.priority, role=contact.role,
                )
        else:
            for entity in await self._store.list_affected_entities(alert.id):
                for link in entity.contacts:
                    if not link.wants(alert.severity):
                        continue
                    contact = await self._directory.get_contact(link.contact_id)
                    if contact is None or not contact.active:
                        continue
                    existing = by_contact.get(contact.id)
                    if existing is not None and existing.priority <= link.priority:
                        continue
                    by_contact[contact.id] = Recipient(
                        contact=contact,
                        priority=link.priority,
                        role=link.role or contact.role,
                        asset_id=entity.asset_id,
                        asset_name=entity.asset_name,
                        distance_km=entity.distance_km,
                        risk_band=entity.risk_band,
                        recommendation=entity.recommendation,
                    )

        selected = [
            r for r in by_contact.values()
            if (step.max_priority is None or r.priority <= step.max_priority)
            and (not step.roles or r.role in step.roles)
        ]
        selected.sort(key=lambda r: (r.priority, r.contact.id))
        return selected

    # ── Internals ────────────────────────────────────────────────

    async def _require(self, alert_id: str) -> Alert:
        alert = await self._store.get_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return alert

    async def _policy_of(self, alert: Alert) -> EscalationPolicy:
        policy = await self._store.get_policy(alert.policy_id)
        if policy is None:
            policy = self._policy.get_policy(alert.policy_id)
        if policy is None:
            raise ConfigurationError(
                f"Escalation policy {alert.policy_id} of alert {alert.id} not found"
            )
        return policy

    async def _commit(self, alert_id: str, mutate: _Mutation) -> tuple[Alert, bool]:
        """Apply *mutate* through compare-and-set, re-reading on conflict."""
        attempts = self._config.max_transition_retries + 1
        alert = await self._require(alert_id)
        for attempt in range(1, attempts + 1):
            changes = mutate(alert)
            if changes is None:
                return alert, False
            try:
                updated = await self._store.compare_and_set_alert(
                    alert_id, alert.version, **changes,
                )
            except ConcurrencyConflictError as exc:
                self._conflicts += 1
                logger.info(
                    "alert_transition_conflict",
                    alert_id=alert_id,
                    expected=exc.expected,
                    actual=exc.actual,
                    attempt=attempt,
                )
                alert = await self._require(alert_id)
                continue
            audit.info(
                "alert_transition",
                alert_id=alert_id,
                from_status=alert.status,
                to_status=updated.status,
                step_index=updated.escalation_step_index,
                version=updated.version,
            )
            return updated, True

        logger.warning("alert_transition_abandoned", alert_id=alert_id, attempts=attempts)
        return alert, False
