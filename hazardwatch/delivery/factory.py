"""Convenience factory for wiring channel senders from settings."""

from __future__ import annotations

import structlog

from hazardwatch.core.config import Settings
from hazardwatch.core.types import Channel
from hazardwatch.delivery.channels import (
    ChannelSender,
    DryRunSender,
    SendGridSender,
    TelegramSender,
    TwilioSmsSender,
    TwilioVoiceSender,
    TwilioWhatsAppSender,
)

logger = structlog.stdlib.get_logger()


def create_senders(settings: Settings) -> dict[Channel, ChannelSender]:
    """Build one sender per enabled channel.

    With ``delivery.dry_run`` every channel gets a ``DryRunSender``.
    Channels whose provider is disabled get no sender; the dispatcher
    records their deliveries as permanent failures.
    """
    if settings.delivery.dry_run:
        return {channel: DryRunSender(channel) for channel in Channel}

    providers = settings.providers
    senders: dict[Channel, ChannelSender] = {}

    if providers.twilio.enabled:
        senders[Channel.SMS] = TwilioSmsSender(providers.twilio)
        senders[Channel.VOICE] = TwilioVoiceSender(providers.twilio)
        if providers.chat_provider == "whatsapp":
            senders[Channel.CHAT] = TwilioWhatsAppSender(providers.twilio)

    if providers.sendgrid.enabled:
        senders[Channel.EMAIL] = SendGridSender(providers.sendgrid)

    if providers.telegram.enabled and providers.chat_provider == "telegram":
        senders[Channel.CHAT] = TelegramSender(providers.telegram)

    missing = [c.value for c in Channel if c not in senders]
    if missing:
        logger.warning("channels_without_sender", channels=missing)
    return senders
