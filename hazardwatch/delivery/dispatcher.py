"""DeliveryDispatcher — idempotent fan-out with retries and circuit breaking."""

from __future__ import annotations

import asyncio
import uuid
import weakref
from collections.abc import Awaitable, Callable

import structlog

from hazardwatch.core.clock import Clock
from hazardwatch.core.config import DeliveryConfig, get_settings
from hazardwatch.core.types import (
    Alert,
    Channel,
    DeliveryLog,
    DeliveryStatus,
    ErrorKind,
    HazardEvent,
    IdempotencyKey,
    Recipient,
    SendResult,
)
from hazardwatch.delivery.channels import ChannelSender
from hazardwatch.delivery.circuit_breaker import CircuitBreaker
from hazardwatch.delivery.exceptions import CircuitOpenError
from hazardwatch.delivery.formatters import MessageContext, RenderedMessage, render
from hazardwatch.escalation.policy import channels_for_contact
from hazardwatch.storage.base import AlertStore

logger = structlog.stdlib.get_logger()

DeadLetterCallback = Callable[[DeliveryLog], Awaitable[None] | None]


def backoff_delay(attempt: int, base_secs: float, cap_secs: float) -> float:
    """Delay before retrying after failed *attempt* (1-based)."""
    return min(cap_secs, base_secs * 2 ** (attempt - 1))


class DeliveryDispatcher:
    """Sends one escalation step to every recipient × channel pair.

    Each pair has an idempotency key ``alert:contact:channel:step``; the
    key is claimed in the store before the first attempt, so a repeated
    dispatch of the same step makes no provider call.  Pairs run
    concurrently under a semaphore while attempts for one key run in
    sequence, each attempt appending its own ``DeliveryLog`` row.

    Usage::

        dispatcher = DeliveryDispatcher(store, senders, clock=clock)
        dispatcher.on_dead_letter(tracker.record_dead_letter)
        logs = await dispatcher.dispatch_step(alert, hazard, 0, recipients, channels)
    """

    def __init__(
        self,
        store: AlertStore,
        senders: dict[Channel, ChannelSender],
        config: DeliveryConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._senders = dict(senders)
        self._config = config or get_settings().delivery
        self._clock = clock or Clock()
        self._semaphore = asyncio.Semaphore(self._config.max_concurrency)
        self._key_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._breakers: dict[Channel, CircuitBreaker] = {
            channel: CircuitBreaker(
                f"channel:{channel.value}", self._config.circuit_breaker, self._clock,
            )
            for channel in Channel
        }
        self._halted: dict[str, float] = {}
        self._dead_letter_callbacks: list[DeadLetterCallback] = []

        # Stats
        self._attempts = 0
        self._sent = 0
        self._failed = 0
        self._dead_lettered = 0
        self._duplicates = 0

    @property
    def stats(self) -> dict[str, int]:
        return {
            "attempts": self._attempts,
            "sent": self._sent,
            "failed": self._failed,
            "dead_lettered": self._dead_lettered,
            "duplicates_suppressed": self._duplicates,
        }

    @property
    def channels(self) -> list[Channel]:
        """Channels with a configured sender."""
        return list(self._senders)

    def breaker(self, channel: Channel) -> CircuitBreaker:
        return self._breakers[channel]

    def on_dead_letter(self, callback: DeadLetterCallback) -> None:
        """Register a callback for deliveries that exhausted their retries."""
        self._dead_letter_callbacks.append(callback)

    async def _emit_dead_letter(self, log: DeliveryLog) -> None:
        for cb in self._dead_letter_callbacks:
            try:
                result = cb(log)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("dead_letter_callback_error", delivery_id=log.id)

    # ── Halting ──────────────────────────────────────────────────

    def halt(self, alert_id: str) -> None:
        """No attempt for *alert_id* starts after this call; in-flight sends finish.

        Halts older than ``halt_retention_secs`` are forgotten; by then the
        alert's retries have long finished.
        """
        now = self._clock.now()
        self._prune_halted(now)
        if alert_id not in self._halted:
            self._halted[alert_id] = now
            logger.info("delivery_halted", alert_id=alert_id)

    def halted(self, alert_id: str) -> bool:
        return alert_id in self._halted

    @property
    def halted_count(self) -> int:
        return len(self._halted)

    def _prune_halted(self, now: float) -> None:
        cutoff = now - self._config.halt_retention_secs
        for alert_id in [a for a, at in self._halted.items() if at < cutoff]:
            del self._halted[alert_id]

    async def cancel_voice_calls(self, alert_id: str) -> int:
        """Cancel voice calls of *alert_id* that have not connected yet."""
        sender = self._senders.get(Channel.VOICE)
        if sender is None:
            return 0
        logs = await self._store.list_delivery_logs(alert_id=alert_id, channel=Channel.VOICE)
        cancelled = 0
        for log in logs:
            if log.status != DeliveryStatus.SENT or not log.provider_message_id:
                continue
            if await self._cancel_call(sender, log):
                cancelled += 1
        if cancelled:
            logger.info("voice_calls_cancelled", alert_id=alert_id, count=cancelled)
        return cancelled

    async def _cancel_call(self, sender: ChannelSender, log: DeliveryLog) -> bool:
        try:
            ok = await sender.cancel(log.provider_message_id or "")
        except Exception:
            logger.exception("voice_cancel_error", delivery_id=log.id)
            return False
        if ok:
            await self._store.update_delivery_log(
                log.id, status=DeliveryStatus.CANCELED, failed_at=self._clock.now(),
            )
        return ok

    # ── Dispatch ─────────────────────────────────────────────────

    async def dispatch_step(
        self,
        alert: Alert,
        hazard: HazardEvent,
        step_index: int,
        recipients: list[Recipient],
        channels: list[Channel],
    ) -> list[DeliveryLog]:
        """Deliver one escalation step; returns every attempt row written."""
        if self.halted(alert.id):
            logger.info("dispatch_skipped_halted", alert_id=alert.id, step_index=step_index)
            return []

        pairs: list[tuple[Recipient, Channel]] = []
        for recipient in recipients:
            reachable = channels_for_contact(recipient.contact, channels)
            if not reachable:
                logger.info(
                    "recipient_unreachable",
                    alert_id=alert.id,
                    contact_id=recipient.contact.id,
                    channels=channels,
                )
            pairs.extend((recipient, channel) for channel in reachable)

        results = await asyncio.gather(
            *(self._deliver(alert, hazard, step_index, r, ch) for r, ch in pairs),
            return_exceptions=True,
        )
        logs: list[DeliveryLog] = []
        for (recipient, channel), result in zip(pairs, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "delivery_pair_error",
                    alert_id=alert.id,
                    contact_id=recipient.contact.id,
                    channel=channel,
                    error=str(result),
                )
                continue
            logs.extend(result)

        logger.info(
            "step_dispatched",
            alert_id=alert.id,
            step_index=step_index,
            pairs=len(pairs),
            attempts=len(logs),
        )
        return logs

    def _key_lock(self, key: str) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        return lock

    async def _deliver(
        self,
        alert: Alert,
        hazard: HazardEvent,
        step_index: int,
        recipient: Recipient,
        channel: Channel,
    ) -> list[DeliveryLog]:
        contact = recipient.contact
        key = str(IdempotencyKey(
            alert_id=alert.id, contact_id=contact.id, channel=channel, step_index=step_index,
        ))
        async with self._key_lock(key):
            if not await self._store.claim_idempotency_key(key):
                self._duplicates += 1
                logger.info("duplicate_delivery_suppressed", idempotency_key=key)
                return []
            return await self._attempt(alert, hazard, step_index, recipient, channel, key)

    async def _attempt(
        self,
        alert: Alert,
        hazard: HazardEvent,
        step_index: int,
        recipient: Recipient,
        channel: Channel,
        key: str,
        first_attempt: int = 1,
    ) -> list[DeliveryLog]:
        """Run up to ``max_attempts`` attempts for *key*, numbered from *first_attempt*."""
        contact = recipient.contact
        address = contact.address_for(channel) or ""
        sender = self._senders.get(channel)
        message = render(channel, MessageContext(
            alert=alert,
            hazard=hazard,
            step_index=step_index,
            recipient=recipient,
            app_base_url=self._config.app_base_url,
        ))

        last_attempt = first_attempt + self._config.max_attempts - 1
        logs: list[DeliveryLog] = []
        for attempt in range(first_attempt, last_attempt + 1):
            if self.halted(alert.id):
                logger.info("delivery_attempt_skipped_halted", idempotency_key=key, attempt=attempt)
                break
            log = await self._store.append_delivery_log(DeliveryLog(
                id=uuid.uuid4().hex,
                alert_id=alert.id,
                contact_id=contact.id,
                channel=channel,
                step_index=step_index,
                attempt=attempt,
                idempotency_key=key,
                address=address,
                provider=sender.provider if sender is not None else "",
                queued_at=self._clock.now(),
            ))
            self._attempts += 1

            if sender is None:
                result = SendResult(
                    success=False,
                    error_kind=ErrorKind.PERMANENT,
                    error=f"No sender configured for channel {channel.value}",
                )
            else:
                result = await self._send(sender, channel, address, message)

            log = await self._record(log, result, final=attempt == last_attempt)
            logs.append(log)
            if result.success:
                if channel == Channel.VOICE and self.halted(alert.id) and sender is not None:
                    # Acknowledged while the call was being placed.
                    await self._cancel_call(sender, log)
                break
            if log.dead_letter:
                await self._emit_dead_letter(log)
            if log.error_kind == ErrorKind.PERMANENT or log.dead_letter:
                break

            delay = backoff_delay(
                attempt - first_attempt + 1,
                self._config.backoff_base_secs,
                self._config.backoff_cap_secs,
            )
            logger.info(
                "delivery_retry_scheduled",
                idempotency_key=key,
                attempt=attempt,
                delay_secs=delay,
                error=log.error,
            )
            await self._clock.sleep(delay)
        return logs

    # ── Redelivery ───────────────────────────────────────────────

    async def redeliver(
        self,
        alert: Alert,
        hazard: HazardEvent,
        recipients: list[Recipient],
    ) -> list[DeliveryLog]:
        """Give every dead-lettered delivery of *alert* a fresh round of attempts.

        New rows keep the original idempotency key, so summaries count the
        notification once and a successful redelivery replaces the failure.
        Each dead letter is redriven at most once; a redelivery that dead
        letters again can be redriven in turn.
        """
        if self.halted(alert.id):
            logger.info("redelivery_skipped_halted", alert_id=alert.id)
            return []
        by_contact = {r.contact.id: r for r in recipients}
        dead = [
            log for log in await self._store.list_delivery_logs(alert_id=alert.id)
            if log.dead_letter
        ]
        jobs = []
        for log in dead:
            recipient = by_contact.get(log.contact_id)
            if recipient is None:
                logger.info(
                    "redelivery_recipient_gone",
                    alert_id=alert.id,
                    contact_id=log.contact_id,
                    delivery_id=log.id,
                )
                continue
            jobs.append(self._redeliver_one(alert, hazard, recipient, log))

        results = await asyncio.gather(*jobs, return_exceptions=True)
        logs: list[DeliveryLog] = []
        for result in results:
            if isinstance(result, BaseException):
                logger.error("redelivery_error", alert_id=alert.id, error=str(result))
                continue
            logs.extend(result)
        logger.info(
            "redelivery_finished",
            alert_id=alert.id,
            dead_letters=len(dead),
            attempts=len(logs),
            sent=sum(1 for log in logs if log.status == DeliveryStatus.SENT),
        )
        return logs

    async def _redeliver_one(
        self,
        alert: Alert,
        hazard: HazardEvent,
        recipient: Recipient,
        dead: DeliveryLog,
    ) -> list[DeliveryLog]:
        async with self._key_lock(dead.idempotency_key):
            if not await self._store.claim_idempotency_key(f"redeliver:{dead.id}"):
                self._duplicates += 1
                return []
            return await self._attempt(
                alert,
                hazard,
                dead.step_index,
                recipient,
                dead.channel,
                dead.idempotency_key,
                first_attempt=dead.attempt + 1,
            )

    async def _send(
        self,
        sender: ChannelSender,
        channel: Channel,
        address: str,
        message: RenderedMessage,
    ) -> SendResult:
        breaker = self._breakers[channel]
        try:
            breaker.check()
        except CircuitOpenError as exc:
            return SendResult(success=False, error_kind=ErrorKind.TRANSIENT, error=str(exc))

        result: SendResult | None = None
        try:
            async with self._semaphore:
                result = await asyncio.wait_for(
                    sender.send(address, message), timeout=self._config.send_timeout_secs,
                )
        except TimeoutError:
            result = SendResult(
                success=False,
                error_kind=ErrorKind.TRANSIENT,
                error=f"Send timed out after {self._config.send_timeout_secs}s",
            )
        except Exception as exc:
            logger.exception("sender_error", channel=channel, provider=sender.provider)
            result = SendResult(success=False, error_kind=ErrorKind.TRANSIENT, error=str(exc))
        finally:
            if result is None:
                # Cancelled mid-send: no outcome to record, free the trial slot.
                breaker.release_trial()

        if result.success or result.error_kind == ErrorKind.PERMANENT:
            breaker.record_success()
        else:
            breaker.record_failure()
        return result

    async def _record(self, log: DeliveryLog, result: SendResult, final: bool) -> DeliveryLog:
        now = self._clock.now()
        if result.success:
            self._sent += 1
            return await self._store.update_delivery_log(
                log.id,
                status=DeliveryStatus.SENT,
                provider_message_id=result.provider_message_id,
                sent_at=now,
            )

        kind = result.error_kind or ErrorKind.TRANSIENT
        exhausted = kind == ErrorKind.TRANSIENT and final
        self._failed += 1
        if exhausted:
            self._dead_lettered += 1
        logger.warning(
            "delivery_attempt_failed",
            idempotency_key=log.idempotency_key,
            attempt=log.attempt,
            error_kind=kind,
            error=result.error,
            dead_letter=exhausted,
        )
        return await self._store.update_delivery_log(
            log.id,
            status=DeliveryStatus.FAILED,
            error_kind=kind,
            error=result.error,
            failed_at=now,
            dead_letter=exhausted,
        )

    # ── Lifecycle ───────────────────────────────────────────────

    async def close(self) -> None:
        for sender in self._senders.values():
            try:
                await sender.close()
            except Exception:
                logger.exception("sender_close_error", provider=sender.provider)
