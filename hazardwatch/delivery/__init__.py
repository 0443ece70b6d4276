"""Delivery — channel senders, message rendering, dispatch and tracking."""

from hazardwatch.delivery.channels import (
    ChannelSender,
    DryRunSender,
    SendGridSender,
    TelegramSender,
    TwilioSmsSender,
    TwilioVoiceSender,
    TwilioWhatsAppSender,
)
from hazardwatch.delivery.circuit_breaker import CircuitBreaker, CircuitState
from hazardwatch.delivery.dispatcher import DeliveryDispatcher, backoff_delay
from hazardwatch.delivery.exceptions import CircuitOpenError, DeliveryError
from hazardwatch.delivery.factory import create_senders
from hazardwatch.delivery.formatters import (
    ChatMessage,
    EmailMessage,
    MessageContext,
    RenderedMessage,
    SmsMessage,
    VoiceMessage,
    render,
)
from hazardwatch.delivery.tracker import ACK_KEYWORDS, DeliveryTracker

__all__ = [
    "ACK_KEYWORDS",
    "ChannelSender",
    "ChatMessage",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "DeliveryDispatcher",
    "DeliveryError",
    "DeliveryTracker",
    "DryRunSender",
    "EmailMessage",
    "MessageContext",
    "RenderedMessage",
    "SendGridSender",
    "SmsMessage",
    "TelegramSender",
    "TwilioSmsSender",
    "TwilioVoiceSender",
    "TwilioWhatsAppSender",
    "VoiceMessage",
    "backoff_delay",
    "create_senders",
    "render",
]
