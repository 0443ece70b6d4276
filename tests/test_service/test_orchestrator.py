"""Tests for AlertOrchestrator — end-to-end ingestion, escalation and delivery."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hazardwatch.core.clock import FakeClock
from hazardwatch.core.config import Settings
from hazardwatch.core.types import (
    AlertScope,
    AlertStatus,
    Asset,
    Channel,
    Contact,
    ContactLink,
    DeliveryStatus,
    ErrorKind,
    FeedEvent,
    FeedEventType,
    HazardType,
    IngestStatus,
    Position,
    SendResult,
    ServiceState,
)
from hazardwatch.delivery.channels import DryRunSender
from hazardwatch.delivery.formatters import RenderedMessage
from hazardwatch.escalation.exceptions import AlertNotFoundError, ConfigurationError
from hazardwatch.service.orchestrator import AlertOrchestrator
from hazardwatch.storage.memory import InMemoryAlertStore, InMemoryDirectory

START = 1_700_000_000.0

# ── Helpers ─────────────────────────────────────────────────────


def _record(**overrides: object) -> dict[str, object]:
    defaults: dict[str, object] = {
        "source": "usgs",
        "externalId": "us7000abcd",
        "type": "seismic",
        "magnitude": 7.4,
        "depth": 10.0,
        "epicenter": {"lat": 38.3, "lon": 142.4},
        "occurredAt": START,
        "tsunamiFlag": False,
        "place": "off the east coast of Honshu",
    }
    defaults.update(overrides)
    return defaults


def _contacts() -> list[Contact]:
    return [
        Contact(id="captain", phone="+15550001", email="captain@example.com"),
        Contact(id="harbour-office"),
        Contact(id="owner", email="owner@example.com", priority=2),
    ]


def _assets() -> list[Asset]:
    return [
        Asset(
            id="vessel-near",
            name="MV Pacific Star",
            position=Position(lat=38.5, lon=142.4),
            contacts=[ContactLink(contact_id="captain")],
        ),
        Asset(
            id="vessel-silent",
            position=Position(lat=39.0, lon=142.4),
            contacts=[ContactLink(contact_id="harbour-office")],
        ),
        Asset(id="vessel-ghost", position=None),
    ]


class _Harness:
    """Orchestrator wired to in-memory storage, dry-run senders and a FakeClock."""

    def __init__(
        self,
        settings: Settings | None = None,
        directory: InMemoryDirectory | None = None,
        store: InMemoryAlertStore | None = None,
        feeds: list[MagicMock] | None = None,
        senders: dict[Channel, DryRunSender] | None = None,
    ) -> None:
        self.clock = FakeClock(start=START)
        self.settings = settings or Settings()
        self.directory = directory or InMemoryDirectory(contacts=_contacts(), assets=_assets())
        self.store = store or InMemoryAlertStore(self.directory)
        self.senders = {channel: DryRunSender(channel) for channel in Channel}
        self.senders.update(senders or {})
        self.orchestrator = AlertOrchestrator(
            self.store,
            self.directory,
            senders=self.senders,  # type: ignore[arg-type]
            settings=self.settings,
            clock=self.clock,
            feeds=feeds,  # type: ignore[arg-type]
        )

    @property
    def sent(self) -> int:
        return sum(len(s.sent) for s in self.senders.values())

    async def elapse(self, secs: float) -> None:
        self.clock.advance(secs)
        await self.orchestrator.scheduler.run_due()


# ── Ingestion ───────────────────────────────────────────────────


class TestIngest:
    async def test_new_hazard_opens_affected_alert(self) -> None:
        h = _Harness()
        outcome = await h.orchestrator.ingest(_record())

        assert outcome.status == IngestStatus.CREATED
        assert outcome.event is not None
        assert outcome.event.severity == 4
        assert len(outcome.alert_ids) == 1

        view = await h.orchestrator.get_alert(outcome.alert_ids[0])
        assert view.alert.scope == AlertScope.AFFECTED
        assert view.alert.status == AlertStatus.NOTIFYING
        assert view.alert.policy_id == "critical"
        assert view.hazard == outcome.event
        assert [e.asset_id for e in view.affected] == ["vessel-near", "vessel-silent"]
        assert view.unresolved_assets == ["vessel-ghost"]
        assert set(view.deliveries.channels) == {Channel.EMAIL, Channel.SMS, Channel.VOICE}
        assert h.sent == 3

    async def test_duplicate_record_opens_nothing(self) -> None:
        h = _Harness()
        first = await h.orchestrator.ingest(_record())
        second = await h.orchestrator.ingest(_record())
        h.clock.advance(300)
        retried = await h.orchestrator.ingest(_record(magnitude=7.5))

        assert second.status == IngestStatus.DUPLICATE
        assert retried.status == IngestStatus.DUPLICATE
        assert second.alert_ids == []
        assert len(await h.store.list_alerts()) == 1
        assert h.sent == 3
        status = await h.orchestrator.status()
        assert status.hazards_ingested == 1
        assert status.duplicates_ignored == 2
        assert first.alert_ids

    async def test_contact_without_address_gets_alert_but_no_deliveries(self) -> None:
        directory = InMemoryDirectory(
            contacts=[Contact(id="harbour-office")],
            assets=[Asset(
                id="port-1",
                position=Position(lat=38.4, lon=142.4),
                contacts=[ContactLink(contact_id="harbour-office")],
            )],
        )
        h = _Harness(directory=directory)
        outcome = await h.orchestrator.ingest(_record())

        assert len(outcome.alert_ids) == 1
        view = await h.orchestrator.get_alert(outcome.alert_ids[0])
        assert [e.asset_id for e in view.affected] == ["port-1"]
        assert await h.store.list_delivery_logs(alert_id=view.alert.id) == []
        assert view.deliveries.total_attempts == 0

    async def test_far_hazard_opens_no_alert(self) -> None:
        h = _Harness()
        outcome = await h.orchestrator.ingest(_record(epicenter={"lat": -40.0, "lon": -70.0}))
        assert outcome.status == IngestStatus.CREATED
        assert outcome.alert_ids == []
        assert await h.store.list_alerts() == []

    async def test_rejected_record(self) -> None:
        h = _Harness()
        outcome = await h.orchestrator.ingest(_record(epicenter=None))
        assert outcome.status == IngestStatus.REJECTED
        assert (await h.orchestrator.status()).records_rejected == 1

    async def test_excluded_hazard_type(self) -> None:
        settings = Settings()
        settings.channel_policy.excluded_hazard_types = [HazardType.TSUNAMI]
        h = _Harness(settings=settings)
        outcome = await h.orchestrator.ingest(_record(type="tsunami", warningLevel="warning"))
        assert outcome.status == IngestStatus.CREATED
        assert outcome.alert_ids == []
        assert h.sent == 0


class TestBroadcast:
    async def test_global_alert_reaches_every_active_contact(self) -> None:
        settings = Settings()
        settings.broadcast.enabled = True
        h = _Harness(settings=settings)
        outcome = await h.orchestrator.ingest(_record())

        assert len(outcome.alert_ids) == 2
        views = [await h.orchestrator.get_alert(a) for a in outcome.alert_ids]
        assert [v.alert.scope for v in views] == [AlertScope.AFFECTED, AlertScope.GLOBAL]
        global_logs = await h.store.list_delivery_logs(alert_id=outcome.alert_ids[1])
        assert {log.contact_id for log in global_logs} == {"captain"}

    async def test_broadcast_without_affected_assets(self) -> None:
        settings = Settings()
        settings.broadcast.enabled = True
        h = _Harness(settings=settings)
        outcome = await h.orchestrator.ingest(_record(epicenter={"lat": -40.0, "lon": -70.0}))
        assert len(outcome.alert_ids) == 1
        view = await h.orchestrator.get_alert(outcome.alert_ids[0])
        assert view.alert.scope == AlertScope.GLOBAL

    async def test_below_broadcast_severity(self) -> None:
        settings = Settings()
        settings.broadcast.enabled = True
        h = _Harness(settings=settings)
        outcome = await h.orchestrator.ingest(_record(magnitude=6.2))
        assert len(outcome.alert_ids) == 1


class TestIngestBatch:
    async def test_mixed_batch(self) -> None:
        h = _Harness()
        outcomes = await h.orchestrator.ingest_batch([
            _record(),
            _record(epicenter=None),
            _record(),
        ])
        assert [o.status for o in outcomes] == [
            IngestStatus.CREATED, IngestStatus.REJECTED, IngestStatus.DUPLICATE,
        ]

    async def test_unexpected_error_rejects_record_only(self) -> None:
        h = _Harness()
        with patch.object(
            h.orchestrator, "_open_alerts", new_callable=AsyncMock,
        ) as mock_open:
            mock_open.side_effect = [RuntimeError("store down"), ["a2"]]
            outcomes = await h.orchestrator.ingest_batch([
                _record(externalId="us1"),
                _record(externalId="us2"),
            ])
        assert outcomes[0].status == IngestStatus.REJECTED
        assert "store down" in outcomes[0].error
        assert outcomes[1].alert_ids == ["a2"]

    async def test_configuration_error_propagates(self) -> None:
        h = _Harness()
        with patch.object(
            h.orchestrator, "_open_alerts", new_callable=AsyncMock,
        ) as mock_open:
            mock_open.side_effect = ConfigurationError("no policy")
            with pytest.raises(ConfigurationError):
                await h.orchestrator.ingest_batch([_record()])


# ── Escalation & acknowledgement ────────────────────────────────


class TestEscalation:
    async def test_unacknowledged_alert_escalates_then_expires(self) -> None:
        h = _Harness()
        outcome = await h.orchestrator.ingest(_record())
        alert_id = outcome.alert_ids[0]

        await h.elapse(600)
        view = await h.orchestrator.get_alert(alert_id)
        assert view.alert.escalation_step_index == 1
        assert h.sent == 6

        await h.elapse(1200)
        view = await h.orchestrator.get_alert(alert_id)
        assert view.alert.escalation_step_index == 2
        assert h.sent == 8  # last step uses sms and voice only

        await h.elapse(1800)
        view = await h.orchestrator.get_alert(alert_id)
        assert view.alert.status == AlertStatus.EXPIRED
        assert await h.orchestrator.active_alerts() == []

    async def test_acknowledge_stops_escalation(self) -> None:
        h = _Harness()
        outcome = await h.orchestrator.ingest(_record())
        alert_id = outcome.alert_ids[0]

        alert = await h.orchestrator.acknowledge(alert_id, acknowledged_by="captain")
        assert alert is not None
        assert alert.status == AlertStatus.ACKNOWLEDGED
        assert h.senders[Channel.VOICE].cancelled == ["dry-voice-1"]

        await h.elapse(10_000)
        assert h.sent == 3

    async def test_reply_acknowledges(self) -> None:
        h = _Harness()
        outcome = await h.orchestrator.ingest(_record())
        acked = await h.orchestrator.handle_reply("+15550001", "ACK")
        assert [a.id for a in acked] == outcome.alert_ids
        assert acked[0].acknowledged_by == "captain"

    async def test_manual_escalate_and_resolve(self) -> None:
        h = _Harness()
        outcome = await h.orchestrator.ingest(_record())
        alert_id = outcome.alert_ids[0]
        escalated = await h.orchestrator.escalate(alert_id)
        assert escalated.escalation_step_index == 1
        resolved = await h.orchestrator.resolve(alert_id, reason="drill over")
        assert resolved.status == AlertStatus.RESOLVED

    async def test_resolve_hazard_closes_all_scopes(self) -> None:
        settings = Settings()
        settings.broadcast.enabled = True
        h = _Harness(settings=settings)
        outcome = await h.orchestrator.ingest(_record())
        assert outcome.event is not None
        resolved = await h.orchestrator.resolve_hazard(outcome.event.id, reason="retracted")
        assert len(resolved) == 2
        assert all(a.status == AlertStatus.RESOLVED for a in resolved)
        assert len(h.orchestrator.scheduler) == 0


# ── Receipts & queries ──────────────────────────────────────────


class TestQueries:
    async def test_receipts_feed_delivery_stats(self) -> None:
        h = _Harness()
        await h.orchestrator.ingest(_record())
        updated = await h.orchestrator.record_receipt("dry-sms-1", DeliveryStatus.DELIVERED)
        assert updated is not None
        stats = await h.orchestrator.delivery_stats()
        assert stats.channels[Channel.SMS].delivered == 1
        assert stats.total_attempts == 3

    async def test_get_unknown_alert(self) -> None:
        h = _Harness()
        with pytest.raises(AlertNotFoundError):
            await h.orchestrator.get_alert("missing")

    async def test_policies_are_persisted(self) -> None:
        h = _Harness()
        policies = await h.orchestrator.policies()
        assert sorted(p.id for p in policies) == ["critical", "standard"]


# ── Lifecycle ───────────────────────────────────────────────────


def _mock_feed(source: str = "usgs") -> MagicMock:
    feed = MagicMock()
    feed.source = source
    feed.start = AsyncMock()
    feed.stop = AsyncMock()
    feed.stale = False
    return feed


class TestLifecycle:
    async def test_start_and_stop(self) -> None:
        feed = _mock_feed()
        h = _Harness(feeds=[feed])
        feed.on_event.assert_called_once_with(h.orchestrator.on_feed_event)

        await h.orchestrator.start()
        await h.orchestrator.start()
        status = await h.orchestrator.status()
        assert status.state == ServiceState.RUNNING
        assert status.started_at == START
        assert status.feeds == ["usgs"]
        feed.start.assert_awaited_once()

        await h.orchestrator.stop()
        await h.orchestrator.stop()
        assert not h.orchestrator.running
        feed.stop.assert_awaited_once()

    async def test_feed_stop_error_does_not_block_shutdown(self) -> None:
        feed = _mock_feed()
        feed.stop.side_effect = RuntimeError("socket stuck")
        h = _Harness(feeds=[feed])
        async with h.orchestrator:
            assert h.orchestrator.running
        assert not h.orchestrator.running
        assert not h.orchestrator.scheduler.running

    async def test_restart_recovers_timers(self) -> None:
        first = _Harness()
        outcome = await first.orchestrator.ingest(_record())

        second = _Harness(directory=first.directory, store=first.store)
        await second.orchestrator.start()
        try:
            status = await second.orchestrator.status()
            assert status.pending_timers == 1
            assert status.active_alerts == 1
            assert second.orchestrator.scheduler.due_at(outcome.alert_ids[0]) == START + 600
        finally:
            await second.orchestrator.stop()

    async def test_feed_events(self) -> None:
        h = _Harness()
        await h.orchestrator.on_feed_event(FeedEvent(
            source="usgs", event_type=FeedEventType.FEED_ERROR,
        ))
        await h.orchestrator.on_feed_event(FeedEvent(
            source="usgs", event_type=FeedEventType.HAZARD_REPORTED, record=_record(),
        ))
        await h.orchestrator.join()
        assert (await h.orchestrator.status()).hazards_ingested == 1

    async def test_feed_report_ingested_in_background(self) -> None:
        h = _Harness()
        await h.orchestrator.on_feed_event(FeedEvent(
            source="usgs", event_type=FeedEventType.HAZARD_REPORTED, record=_record(),
        ))
        assert h.sent == 0
        await h.orchestrator.join()
        assert h.sent == 3

    async def test_failing_feed_ingest_is_contained(self) -> None:
        h = _Harness()
        with patch.object(
            h.orchestrator, "ingest", new_callable=AsyncMock,
        ) as mock_ingest:
            mock_ingest.side_effect = RuntimeError("store down")
            await h.orchestrator.on_feed_event(FeedEvent(
                source="usgs", event_type=FeedEventType.HAZARD_REPORTED, record=_record(),
            ))
            await h.orchestrator.join()
        mock_ingest.assert_awaited_once()

    async def test_stop_finishes_pending_feed_ingests(self) -> None:
        h = _Harness()
        await h.orchestrator.start()
        await h.orchestrator.on_feed_event(FeedEvent(
            source="usgs", event_type=FeedEventType.HAZARD_REPORTED, record=_record(),
        ))
        await h.orchestrator.stop()
        assert (await h.orchestrator.status()).hazards_ingested == 1
        assert h.sent == 3

    async def test_stale_feed_reported(self) -> None:
        feed = _mock_feed()
        feed.stale = True
        h = _Harness(feeds=[feed])
        assert (await h.orchestrator.status()).stale_feeds == ["usgs"]


# ── Interrupted ingestion ───────────────────────────────────────


class _FlakyDirectory(InMemoryDirectory):
    """Directory whose asset listing fails a set number of times."""

    def __init__(self, failures: int = 1, **kwargs: object) -> None:
        super().__init__(**kwargs)  # type: ignore[arg-type]
        self.failures = failures

    async def list_assets(self) -> list[Asset]:
        if self.failures:
            self.failures -= 1
            raise ConnectionError("directory unavailable")
        return await super().list_assets()


class TestInterruptedIngest:
    async def test_next_report_opens_the_missing_alert(self) -> None:
        directory = _FlakyDirectory(contacts=_contacts(), assets=_assets())
        h = _Harness(directory=directory)

        first = await h.orchestrator.ingest_batch([_record()])
        assert first[0].status == IngestStatus.REJECTED
        assert await h.store.get_hazard("usgs:us7000abcd") is not None
        assert await h.store.list_alerts() == []

        second = await h.orchestrator.ingest(_record())
        assert second.status == IngestStatus.DUPLICATE
        assert len(second.alert_ids) == 1
        assert len(await h.store.list_alerts()) == 1
        assert h.sent == 3

        third = await h.orchestrator.ingest(_record())
        assert third.alert_ids == []
        assert h.sent == 3

        status = await h.orchestrator.status()
        assert status.hazards_ingested == 1
        assert status.duplicates_ignored == 1
        assert status.records_rejected == 1

    async def test_scope_opened_before_failure_is_kept(self) -> None:
        settings = Settings()
        settings.broadcast.enabled = True
        h = _Harness(settings=settings)
        real_open = h.orchestrator.engine.open_alert
        scopes: list[AlertScope] = []

        async def _open_alert(hazard, scope, *args, **kwargs):  # type: ignore[no-untyped-def]
            scopes.append(scope)
            if scope == AlertScope.GLOBAL and scopes.count(AlertScope.GLOBAL) == 1:
                raise ConnectionError("store unavailable")
            return await real_open(hazard, scope, *args, **kwargs)

        with patch.object(h.orchestrator.engine, "open_alert", new=_open_alert):
            first = await h.orchestrator.ingest_batch([_record()])
            second = await h.orchestrator.ingest(_record())

        assert first[0].status == IngestStatus.REJECTED
        assert scopes == [AlertScope.AFFECTED, AlertScope.GLOBAL, AlertScope.GLOBAL]
        alerts = {a.scope: a.id for a in await h.store.list_alerts()}
        assert second.alert_ids == [alerts[AlertScope.AFFECTED], alerts[AlertScope.GLOBAL]]


# ── Redelivery ──────────────────────────────────────────────────


class _RecoveringSender(DryRunSender):
    """Fails transiently a set number of times, then sends."""

    def __init__(self, channel: Channel, failures: int) -> None:
        super().__init__(channel)
        self.failures = failures

    async def send(self, address: str, message: RenderedMessage) -> SendResult:
        if self.failures:
            self.failures -= 1
            return SendResult(success=False, error_kind=ErrorKind.TRANSIENT, error="503")
        return await super().send(address, message)


def _retry_now_settings() -> Settings:
    settings = Settings()
    settings.delivery.backoff_base_secs = 0.0
    return settings


class TestRedeliver:
    async def test_dead_lettered_sms_sent_on_redelivery(self) -> None:
        sms = _RecoveringSender(Channel.SMS, failures=3)
        h = _Harness(settings=_retry_now_settings(), senders={Channel.SMS: sms})
        outcome = await h.orchestrator.ingest(_record())
        alert_id = outcome.alert_ids[0]
        assert [d.channel for d in h.orchestrator.tracker.dead_letters(alert_id)] == [Channel.SMS]

        logs = await h.orchestrator.redeliver(alert_id)

        assert [(log.channel, log.attempt, log.status) for log in logs] == [
            (Channel.SMS, 4, DeliveryStatus.SENT),
        ]
        assert h.orchestrator.tracker.dead_letters(alert_id) == []
        view = await h.orchestrator.get_alert(alert_id)
        assert view.deliveries.channels[Channel.SMS].sent == 1
        assert view.deliveries.channels[Channel.SMS].dead_lettered == 0

    async def test_still_failing_keeps_new_dead_letter(self) -> None:
        sms = _RecoveringSender(Channel.SMS, failures=6)
        h = _Harness(settings=_retry_now_settings(), senders={Channel.SMS: sms})
        outcome = await h.orchestrator.ingest(_record())
        alert_id = outcome.alert_ids[0]
        first_dead = h.orchestrator.tracker.dead_letters(alert_id)

        logs = await h.orchestrator.redeliver(alert_id)

        remaining = h.orchestrator.tracker.dead_letters(alert_id)
        assert [d.id for d in remaining] == [logs[-1].id]
        assert remaining[0].id != first_dead[0].id

    async def test_acknowledgement_clears_dead_letters(self) -> None:
        sms = DryRunSender(Channel.SMS, fail_with=ErrorKind.TRANSIENT)
        h = _Harness(settings=_retry_now_settings(), senders={Channel.SMS: sms})
        outcome = await h.orchestrator.ingest(_record())
        alert_id = outcome.alert_ids[0]
        assert h.orchestrator.tracker.dead_letters(alert_id)

        await h.orchestrator.acknowledge(alert_id, acknowledged_by="captain")
        assert h.orchestrator.tracker.dead_letters(alert_id) == []
        assert await h.orchestrator.redeliver(alert_id) == []

    async def test_unknown_alert(self) -> None:
        h = _Harness()
        with pytest.raises(AlertNotFoundError):
            await h.orchestrator.redeliver("missing")


# ── Subscriptions ───────────────────────────────────────────────


class TestSeveritySubscription:
    async def test_link_outside_subscription_not_notified(self) -> None:
        directory = InMemoryDirectory(
            contacts=_contacts(),
            assets=[Asset(
                id="vessel-near",
                position=Position(lat=38.5, lon=142.4),
                contacts=[
                    ContactLink(contact_id="captain", notify_on=[5]),
                    ContactLink(contact_id="owner"),
                ],
            )],
        )
        h = _Harness(directory=directory)
        outcome = await h.orchestrator.ingest(_record())
        logs = await h.store.list_delivery_logs(alert_id=outcome.alert_ids[0])
        assert {log.contact_id for log in logs} == {"owner"}
