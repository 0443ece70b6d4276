"""DeliveryTracker — provider receipts, aggregate counts and acknowledgement intake."""

from __future__ import annotations

import re
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable

import structlog

from hazardwatch.core.clock import Clock
from hazardwatch.core.types import (
    AckChannel,
    AcknowledgementSignal,
    Alert,
    AlertStatus,
    Channel,
    ChannelSummary,
    DeliveryLog,
    DeliveryStatus,
    DeliverySummary,
    ErrorKind,
)
from hazardwatch.storage.base import AlertStore, Directory

logger = structlog.stdlib.get_logger()

AckHandler = Callable[[AcknowledgementSignal], Awaitable[Alert]]

ACK_KEYWORDS = frozenset({"ACK", "SAFE", "YES", "OK"})

_OPEN_STATUSES = {AlertStatus.PENDING, AlertStatus.NOTIFYING, AlertStatus.ESCALATING}

_TIMESTAMP_FIELD: dict[DeliveryStatus, str] = {
    DeliveryStatus.SENT: "sent_at",
    DeliveryStatus.DELIVERED: "delivered_at",
    DeliveryStatus.READ: "read_at",
    DeliveryStatus.FAILED: "failed_at",
    DeliveryStatus.BOUNCED: "failed_at",
    DeliveryStatus.CANCELED: "failed_at",
}

_WORD = re.compile(r"[A-Za-z0-9]+")
_REFERENCE = re.compile(r"[0-9A-F]{4,32}")


def best_status(attempts: Iterable[DeliveryLog]) -> DeliveryStatus:
    """Furthest progress across the attempts of one notification.

    Any attempt that reached the recipient wins over failed attempts;
    otherwise the latest attempt decides.
    """
    rows = sorted(attempts, key=lambda log: log.attempt)
    reached = [r.status for r in rows if DeliveryStatus.SENT <= r.status <= DeliveryStatus.READ]
    if reached:
        return max(reached)
    return rows[-1].status if rows else DeliveryStatus.QUEUED


def aggregate(logs: Iterable[DeliveryLog]) -> dict[Channel, ChannelSummary]:
    """Per-channel counters, counting each idempotency key once."""
    by_key: dict[str, list[DeliveryLog]] = defaultdict(list)
    for log in logs:
        by_key[log.idempotency_key].append(log)

    summaries: dict[Channel, ChannelSummary] = {}
    for attempts in by_key.values():
        channel = attempts[0].channel
        summary = summaries.setdefault(channel, ChannelSummary(channel=channel))
        summary.attempts += len(attempts)
        summary.notifications += 1
        best = best_status(attempts)
        if DeliveryStatus.SENT <= best <= DeliveryStatus.READ:
            summary.sent += 1
        if DeliveryStatus.DELIVERED <= best <= DeliveryStatus.READ:
            summary.delivered += 1
        if best == DeliveryStatus.READ:
            summary.read += 1
        if best in (DeliveryStatus.FAILED, DeliveryStatus.BOUNCED):
            summary.failed += 1
            if any(a.dead_letter for a in attempts):
                summary.dead_lettered += 1
        if best == DeliveryStatus.CANCELED:
            summary.canceled += 1
    return dict(sorted(summaries.items()))


class DeliveryTracker:
    """Folds provider receipts into delivery rows and routes acknowledgements.

    Receipts only move an attempt forward (queued → sent → delivered →
    read, or into a terminal failure); a late receipt for an older attempt
    updates that attempt alone.

    Usage::

        tracker = DeliveryTracker(store, directory)
        tracker.on_acknowledgement(handle_ack)
        await tracker.record_receipt("SM123", DeliveryStatus.DELIVERED)
        await tracker.handle_reply("+15550100", "ACK")
    """

    def __init__(
        self,
        store: AlertStore,
        directory: Directory,
        clock: Clock | None = None,
        max_dead_letters: int = 1000,
    ) -> None:
        self._store = store
        self._directory = directory
        self._clock = clock or Clock()
        self._ack_handlers: list[AckHandler] = []
        # Insertion ordered; the oldest entry is evicted first.
        self._dead_letters: dict[str, DeliveryLog] = {}
        self._max_dead_letters = max_dead_letters
        self._receipts_applied = 0
        self._receipts_ignored = 0

    @property
    def counters(self) -> dict[str, int]:
        return {
            "receipts_applied": self._receipts_applied,
            "receipts_ignored": self._receipts_ignored,
            "dead_letters": len(self._dead_letters),
        }

    # ── Receipts ─────────────────────────────────────────────────

    async def record_receipt(
        self,
        provider_message_id: str,
        status: DeliveryStatus,
        at: float | None = None,
        error: str = "",
    ) -> DeliveryLog | None:
        """Apply a provider status callback to the matching attempt."""
        log = await self._store.find_delivery_log(provider_message_id)
        if log is None:
            self._receipts_ignored += 1
            logger.warning("receipt_unknown_message", provider_message_id=provider_message_id)
            return None
        if log.status.terminal or status <= log.status:
            self._receipts_ignored += 1
            logger.debug(
                "receipt_not_forward",
                delivery_id=log.id,
                current=log.status.name,
                received=status.name,
            )
            return log

        when = at if at is not None else self._clock.now()
        changes: dict[str, object] = {"status": status, _TIMESTAMP_FIELD[status]: when}
        if status in (DeliveryStatus.DELIVERED, DeliveryStatus.READ) and log.sent_at is None:
            changes["sent_at"] = when
        if status == DeliveryStatus.READ and log.delivered_at is None:
            changes["delivered_at"] = when
        if status == DeliveryStatus.BOUNCED:
            changes["error_kind"] = ErrorKind.PERMANENT
        if error:
            changes["error"] = error

        updated = await self._store.update_delivery_log(log.id, **changes)
        self._receipts_applied += 1
        logger.info(
            "delivery_receipt_applied",
            delivery_id=log.id,
            alert_id=log.alert_id,
            channel=log.channel,
            attempt=log.attempt,
            status=status.name,
        )
        return updated

    # ── Aggregates ───────────────────────────────────────────────

    async def summary(self, alert_id: str) -> DeliverySummary:
        logs = await self._store.list_delivery_logs(alert_id=alert_id)
        return DeliverySummary(alert_id=alert_id, channels=aggregate(logs))

    async def stats(
        self,
        since: float | None = None,
        until: float | None = None,
        channel: Channel | None = None,
    ) -> DeliverySummary:
        """Counts across all alerts for attempts queued in [since, until)."""
        logs = await self._store.list_delivery_logs(since=since, until=until, channel=channel)
        return DeliverySummary(since=since, until=until, channels=aggregate(logs))

    # ── Dead letters ─────────────────────────────────────────────

    def record_dead_letter(self, log: DeliveryLog) -> None:
        self._dead_letters[log.id] = log
        while len(self._dead_letters) > self._max_dead_letters:
            del self._dead_letters[next(iter(self._dead_letters))]
        logger.error(
            "delivery_dead_lettered",
            delivery_id=log.id,
            alert_id=log.alert_id,
            contact_id=log.contact_id,
            channel=log.channel,
            attempts=log.attempt,
            error=log.error,
        )

    def dead_letters(self, alert_id: str | None = None) -> list[DeliveryLog]:
        return [
            log for log in self._dead_letters.values()
            if alert_id is None or log.alert_id == alert_id
        ]

    def discard_dead_letters(
        self, alert_id: str, delivery_ids: Iterable[str] | None = None,
    ) -> int:
        """Forget dead letters of an alert that was redriven or closed.

        Only *delivery_ids* are dropped when given, otherwise all of them.
        """
        wanted = set(delivery_ids) if delivery_ids is not None else None
        ids = [
            d for d, log in self._dead_letters.items()
            if log.alert_id == alert_id and (wanted is None or d in wanted)
        ]
        for delivery_id in ids:
            del self._dead_letters[delivery_id]
        return len(ids)

    # ── Acknowledgements ─────────────────────────────────────────

    def on_acknowledgement(self, handler: AckHandler) -> None:
        """Register the handler that commits acknowledgements."""
        self._ack_handlers.append(handler)

    async def acknowledge(self, signal: AcknowledgementSignal) -> Alert | None:
        """Forward an acknowledgement from the web, a reply or an operator."""
        if not self._ack_handlers:
            logger.warning("acknowledgement_unhandled", alert_id=signal.alert_id)
            return None
        if signal.at is None:
            signal = signal.model_copy(update={"at": self._clock.now()})
        logger.info(
            "acknowledgement_received",
            alert_id=signal.alert_id,
            acknowledged_by=signal.acknowledged_by,
            via=signal.via,
        )
        alert: Alert | None = None
        for handler in self._ack_handlers:
            alert = await handler(signal)
        return alert

    async def handle_reply(
        self, address: str, text: str, at: float | None = None,
    ) -> list[Alert]:
        """Treat an inbound reply as an acknowledgement when it starts with a keyword.

        ``ACK <ref>`` acknowledges only the alert whose reference matches;
        a bare keyword acknowledges every open alert that notified the sender.
        """
        words = [w.upper() for w in _WORD.findall(text)]
        if not words or words[0] not in ACK_KEYWORDS:
            logger.info("reply_ignored", address=address, text=text[:40])
            return []

        contacts = await self._directory.find_contacts_by_address(address)
        if not contacts:
            logger.warning("reply_from_unknown_address", address=address)
            return []
        contact_ids = {c.id for c in contacts}
        reference = words[1] if len(words) > 1 and _REFERENCE.fullmatch(words[1]) else None

        acknowledged: list[Alert] = []
        for alert in await self._store.list_alerts(_OPEN_STATUSES):
            if reference and not alert.id.upper().startswith(reference):
                continue
            logs = await self._store.list_delivery_logs(alert_id=alert.id)
            sender_ids = {log.contact_id for log in logs} & contact_ids
            if not sender_ids:
                continue
            result = await self.acknowledge(AcknowledgementSignal(
                alert_id=alert.id,
                acknowledged_by=sorted(sender_ids)[0],
                at=at,
                via=AckChannel.REPLY,
            ))
            if result is not None:
                acknowledged.append(result)
        if not acknowledged:
            logger.info("reply_matched_no_open_alert", address=address)
        return acknowledged
