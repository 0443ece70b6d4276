"""AlertOrchestrator — wires ingestion, resolution, escalation and delivery."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from types import TracebackType
from typing import Any

import structlog

from hazardwatch.core.clock import Clock
from hazardwatch.core.config import Settings, get_settings
from hazardwatch.core.types import (
    AckChannel,
    AcknowledgementSignal,
    Alert,
    AlertEvent,
    AlertEventType,
    AlertScope,
    AlertStatus,
    AlertView,
    Channel,
    DeliveryLog,
    DeliveryStatus,
    DeliverySummary,
    EscalationPolicy,
    FeedEvent,
    FeedEventType,
    HazardEvent,
    IngestOutcome,
    IngestStatus,
    ServiceState,
    ServiceStatus,
)
from hazardwatch.delivery.channels import ChannelSender
from hazardwatch.delivery.dispatcher import DeliveryDispatcher
from hazardwatch.delivery.factory import create_senders
from hazardwatch.delivery.tracker import DeliveryTracker
from hazardwatch.escalation.engine import EscalationEngine
from hazardwatch.escalation.exceptions import AlertNotFoundError, ConfigurationError
from hazardwatch.escalation.policy import ChannelPolicy
from hazardwatch.escalation.scheduler import TimerScheduler
from hazardwatch.feeds.base import BaseFeed
from hazardwatch.hazards.geo import resolve
from hazardwatch.hazards.normalizer import HazardNormalizer
from hazardwatch.storage.base import AlertStore, Directory

logger = structlog.stdlib.get_logger()

_OPEN_STATUSES = {AlertStatus.PENDING, AlertStatus.NOTIFYING, AlertStatus.ESCALATING}


class AlertOrchestrator:
    """Hazard alerting service with explicitly injected collaborators.

    Pipeline for every new hazard::

        record → normalize → resolve affected assets → channel policy
               → open AFFECTED alert (and GLOBAL broadcast when enabled)

    The orchestrator does not own the store or the directory.  It owns the
    timer sweep, the feeds it was given and the channel senders.

    Usage::

        orchestrator = AlertOrchestrator(store, directory, feeds=[UsgsFeed()])
        async with orchestrator:
            await stop_event.wait()
    """

    def __init__(
        self,
        store: AlertStore,
        directory: Directory,
        senders: dict[Channel, ChannelSender] | None = None,
        settings: Settings | None = None,
        clock: Clock | None = None,
        feeds: Iterable[BaseFeed] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._directory = directory
        self._clock = clock or Clock()
        cfg = self._settings

        self._normalizer = HazardNormalizer(store, cfg.severity, self._clock)
        self._policy = ChannelPolicy(cfg.channel_policy, cfg.escalation.policies)
        self._scheduler = TimerScheduler(
            self._clock,
            sweep_interval_secs=cfg.escalation.sweep_interval_secs,
            retry_delay_secs=cfg.escalation.timer_retry_secs,
            drain_timeout_secs=cfg.escalation.drain_timeout_secs,
        )
        self._dispatcher = DeliveryDispatcher(
            store,
            senders if senders is not None else create_senders(cfg),
            cfg.delivery,
            self._clock,
        )
        self._tracker = DeliveryTracker(
            store, directory, self._clock, max_dead_letters=cfg.delivery.max_dead_letters,
        )
        self._engine = EscalationEngine(
            store,
            directory,
            self._dispatcher,
            self._policy,
            self._scheduler,
            cfg.escalation,
            self._clock,
        )
        self._dispatcher.on_dead_letter(self._tracker.record_dead_letter)
        self._tracker.on_acknowledgement(self._apply_acknowledgement)
        self._engine.on_event(self._on_alert_event)

        self._feeds: list[BaseFeed] = list(feeds or [])
        self._ingest_tasks: set[asyncio.Task[None]] = set()
        for feed in self._feeds:
            feed.on_event(self.on_feed_event)

        self._state = ServiceState.STOPPED
        self._started_at: float | None = None
        self._policies_saved = False

        # Stats
        self._hazards_ingested = 0
        self._duplicates_ignored = 0
        self._records_rejected = 0

    # ── Components ───────────────────────────────────────────────

    @property
    def engine(self) -> EscalationEngine:
        return self._engine

    @property
    def dispatcher(self) -> DeliveryDispatcher:
        return self._dispatcher

    @property
    def tracker(self) -> DeliveryTracker:
        return self._tracker

    @property
    def scheduler(self) -> TimerScheduler:
        return self._scheduler

    @property
    def running(self) -> bool:
        return self._state == ServiceState.RUNNING

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Recover open alerts, then start the timer sweep and feeds."""
        if self.running:
            return
        await self._save_policies()
        recovered = await self._engine.recover()
        await self._scheduler.start()
        for feed in self._feeds:
            await feed.start()
        self._state = ServiceState.RUNNING
        self._started_at = self._clock.now()
        logger.info(
            "orchestrator_started",
            feeds=[f.source for f in self._feeds],
            recovered_alerts=recovered,
        )

    async def stop(self) -> None:
        """Stop feeds and timers; pending timers are re-armed by the next start."""
        if not self.running:
            return
        for feed in self._feeds:
            try:
                await feed.stop()
            except Exception:
                logger.exception("feed_stop_error", source=feed.source)
        await self._drain_ingests()
        await self._scheduler.stop()
        await self._dispatcher.close()
        self._state = ServiceState.STOPPED
        logger.info("orchestrator_stopped", pending_timers=len(self._scheduler))

    async def __aenter__(self) -> AlertOrchestrator:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()

    async def _save_policies(self) -> None:
        if self._policies_saved:
            return
        for policy in self._policy.policies:
            await self._store.save_policy(policy)
        self._policies_saved = True

    # ── Ingestion ────────────────────────────────────────────────

    async def ingest(self, record: Mapping[str, Any]) -> IngestOutcome:
        """Normalise one feed record and open alerts for a new hazard.

        A hazard counts as handled only once its alerts are open.  If an
        earlier ingest stored the hazard but failed before that, the next
        report of the same hazard finishes the job instead of being ignored.

        Raises:
            ConfigurationError: the channel or escalation tables have a gap.
        """
        await self._save_policies()
        outcome = await self._normalizer.ingest(record)
        if outcome.status == IngestStatus.REJECTED:
            self._records_rejected += 1
            return outcome
        hazard = outcome.event
        if hazard is None:
            return outcome

        if outcome.status == IngestStatus.DUPLICATE:
            if await self._store.hazard_alerted(hazard.id):
                self._duplicates_ignored += 1
                return outcome
            logger.warning("hazard_alerting_resumed", hazard_id=hazard.id)
            alert_ids = await self._open_alerts(hazard, resume=True)
        else:
            self._hazards_ingested += 1
            alert_ids = await self._open_alerts(hazard)

        await self._store.mark_hazard_alerted(hazard.id, self._clock.now())
        return outcome.model_copy(update={"alert_ids": alert_ids})

    async def ingest_batch(self, records: Iterable[Mapping[str, Any]]) -> list[IngestOutcome]:
        """Ingest records one by one; a failing record never aborts the batch."""
        outcomes: list[IngestOutcome] = []
        for record in records:
            try:
                outcomes.append(await self.ingest(record))
            except ConfigurationError:
                raise
            except Exception as exc:
                logger.exception("ingest_record_error")
                self._records_rejected += 1
                outcomes.append(IngestOutcome(status=IngestStatus.REJECTED, error=str(exc)))
        return outcomes

    async def on_feed_event(self, event: FeedEvent) -> None:
        """Feed callback; designed to be passed to ``feed.on_event()``.

        Reported hazards are ingested in their own task so first-step
        delivery never holds up the feed's poll loop.  ``join()`` waits
        for them.
        """
        if event.event_type != FeedEventType.HAZARD_REPORTED:
            return
        task = asyncio.create_task(self._ingest_reported(event))
        self._ingest_tasks.add(task)
        task.add_done_callback(self._ingest_tasks.discard)

    async def _ingest_reported(self, event: FeedEvent) -> None:
        try:
            await self.ingest(event.record)
        except Exception:
            logger.exception("feed_ingest_error", source=event.source)

    async def join(self) -> None:
        """Wait until every feed-reported hazard has been ingested."""
        while self._ingest_tasks:
            await asyncio.gather(*list(self._ingest_tasks), return_exceptions=True)

    async def _drain_ingests(self) -> None:
        if not self._ingest_tasks:
            return
        tasks = list(self._ingest_tasks)
        _, unfinished = await asyncio.wait(
            tasks, timeout=self._settings.escalation.drain_timeout_secs,
        )
        for task in unfinished:
            task.cancel()
        if unfinished:
            logger.warning("feed_ingests_cancelled", count=len(unfinished))
            await asyncio.gather(*unfinished, return_exceptions=True)

    async def _open_alerts(self, hazard: HazardEvent, resume: bool = False) -> list[str]:
        channels = self._policy.channels_for(hazard.severity, hazard.type)
        if not channels:
            logger.info("hazard_type_excluded", hazard_id=hazard.id, type=hazard.type)
            return []

        # Scopes already alerted by an interrupted earlier ingest keep their alert.
        existing: dict[AlertScope, str] = {}
        if resume:
            for alert in await self._store.list_alerts():
                if alert.hazard_id == hazard.id:
                    existing.setdefault(alert.scope, alert.id)

        assets = await self._directory.list_assets()
        resolution = resolve(hazard, assets, self._settings.geo)
        if resolution.unresolved:
            logger.info(
                "assets_unresolved",
                hazard_id=hazard.id,
                count=len(resolution.unresolved),
            )

        alert_ids: list[str] = []
        if resolution.affected:
            if AlertScope.AFFECTED in existing:
                alert_ids.append(existing[AlertScope.AFFECTED])
            else:
                alert, _ = await self._engine.open_alert(
                    hazard, AlertScope.AFFECTED, resolution.affected, resolution.unresolved,
                )
                alert_ids.append(alert.id)

        broadcast = self._settings.broadcast
        if broadcast.enabled and hazard.severity >= broadcast.min_severity:
            if AlertScope.GLOBAL in existing:
                alert_ids.append(existing[AlertScope.GLOBAL])
            else:
                alert, _ = await self._engine.open_alert(hazard, AlertScope.GLOBAL)
                alert_ids.append(alert.id)

        if not alert_ids:
            logger.info(
                "hazard_no_alert",
                hazard_id=hazard.id,
                severity=hazard.severity,
                weak_radius_km=round(resolution.radii.weak, 1),
            )
        return alert_ids

    # ── Signals ──────────────────────────────────────────────────

    async def acknowledge(
        self,
        alert_id: str,
        acknowledged_by: str = "",
        at: float | None = None,
        via: AckChannel = AckChannel.WEB,
    ) -> Alert | None:
        return await self._tracker.acknowledge(AcknowledgementSignal(
            alert_id=alert_id, acknowledged_by=acknowledged_by, at=at, via=via,
        ))

    async def _apply_acknowledgement(self, signal: AcknowledgementSignal) -> Alert:
        return await self._engine.acknowledge(
            signal.alert_id, acknowledged_by=signal.acknowledged_by, at=signal.at,
        )

    async def resolve(self, alert_id: str, reason: str = "") -> Alert:
        return await self._engine.resolve(alert_id, reason)

    async def resolve_hazard(self, hazard_id: str, reason: str = "") -> list[Alert]:
        """Close every open alert of a retracted or ended hazard."""
        resolved = []
        for alert in await self._store.list_alerts(_OPEN_STATUSES):
            if alert.hazard_id == hazard_id:
                resolved.append(await self._engine.resolve(alert.id, reason))
        return resolved

    async def escalate(self, alert_id: str) -> Alert:
        return await self._engine.escalate(alert_id)

    async def redeliver(self, alert_id: str) -> list[DeliveryLog]:
        """Retry the dead-lettered deliveries of an open or expired alert.

        Raises:
            AlertNotFoundError: unknown alert.
        """
        redriven = [log.id for log in self._tracker.dead_letters(alert_id)]
        logs = await self._engine.redeliver(alert_id)
        if logs:
            self._tracker.discard_dead_letters(alert_id, redriven)
        return logs

    def _on_alert_event(self, event: AlertEvent) -> None:
        if event.event_type in (AlertEventType.ALERT_ACKNOWLEDGED, AlertEventType.ALERT_RESOLVED):
            self._tracker.discard_dead_letters(event.alert.id)

    async def handle_reply(self, address: str, text: str, at: float | None = None) -> list[Alert]:
        return await self._tracker.handle_reply(address, text, at)

    async def record_receipt(
        self,
        provider_message_id: str,
        status: DeliveryStatus,
        at: float | None = None,
        error: str = "",
    ) -> DeliveryLog | None:
        return await self._tracker.record_receipt(provider_message_id, status, at, error)

    # ── Queries ──────────────────────────────────────────────────

    async def get_alert(self, alert_id: str) -> AlertView:
        """Alert with its hazard, affected entities and delivery summary.

        Raises:
            AlertNotFoundError: unknown alert.
        """
        alert = await self._store.get_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return AlertView(
            alert=alert,
            hazard=await self._store.get_hazard(alert.hazard_id),
            affected=await self._store.list_affected_entities(alert_id),
            unresolved_assets=await self._store.list_unresolved_assets(alert_id),
            deliveries=await self._tracker.summary(alert_id),
        )

    async def delivery_stats(
        self,
        since: float | None = None,
        until: float | None = None,
        channel: Channel | None = None,
    ) -> DeliverySummary:
        return await self._tracker.stats(since, until, channel)

    async def policies(self) -> list[EscalationPolicy]:
        await self._save_policies()
        return await self._store.list_policies()

    async def active_alerts(self) -> list[Alert]:
        return await self._store.list_alerts(_OPEN_STATUSES)

    async def status(self) -> ServiceStatus:
        return ServiceStatus(
            state=self._state,
            started_at=self._started_at,
            feeds=[f.source for f in self._feeds],
            stale_feeds=[f.source for f in self._feeds if f.stale],
            pending_timers=len(self._scheduler),
            active_alerts=len(await self.active_alerts()),
            hazards_ingested=self._hazards_ingested,
            duplicates_ignored=self._duplicates_ignored,
            records_rejected=self._records_rejected,
        )
