"""Channel senders — Twilio SMS/WhatsApp/voice, SendGrid email, Telegram chat."""

from __future__ import annotations

import abc
import itertools
import json
from html import escape as html_escape
from typing import Any

import aiohttp
import structlog

from hazardwatch.core.config import SendGridConfig, TelegramConfig, TwilioConfig
from hazardwatch.core.types import Channel, ErrorKind, SendResult
from hazardwatch.delivery.formatters import (
    ChatMessage,
    EmailMessage,
    RenderedMessage,
    SmsMessage,
    VoiceMessage,
)

logger = structlog.stdlib.get_logger()


def classify_status(status: int) -> ErrorKind | None:
    """Map an HTTP status to an error kind; None means success."""
    if 200 <= status < 300:
        return None
    if status == 429 or status >= 500:
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


def _parse_body(text: str) -> dict[str, Any]:
    try:
        body = json.loads(text) if text else {}
    except ValueError:
        return {"raw": text[:200]}
    return body if isinstance(body, dict) else {"raw": body}


class ChannelSender(abc.ABC):
    """Base class for per-channel provider clients.

    ``send`` reports transient and permanent failures as ``SendResult``
    values; unexpected exceptions are left to the dispatcher, which treats
    them as transient.
    """

    channel: Channel
    provider: str = ""

    @abc.abstractmethod
    async def send(self, address: str, message: RenderedMessage) -> SendResult:
        """Deliver *message* to *address*."""

    async def cancel(self, provider_message_id: str) -> bool:
        """Cancel a delivery that has not completed. Returns True on success."""
        return False

    @abc.abstractmethod
    async def close(self) -> None:
        """Release resources (HTTP sessions, etc.)."""

    def _unsupported(self, message: RenderedMessage) -> SendResult:
        return SendResult(
            success=False,
            error_kind=ErrorKind.PERMANENT,
            error=f"{self.provider} cannot send {message.channel} messages",
        )


class _HttpSender(ChannelSender):
    """Shared aiohttp session handling."""

    def __init__(self) -> None:
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _post(self, url: str, **kwargs: Any) -> tuple[int, dict[str, Any], Any]:
        session = self._get_session()
        async with session.post(url, **kwargs) as resp:
            text = await resp.text()
            return resp.status, _parse_body(text), resp.headers

    def _failure(self, status: int, body: dict[str, Any]) -> SendResult:
        kind = classify_status(status) or ErrorKind.PERMANENT
        detail = body.get("message") or body.get("description") or body.get("errors") or body
        logger.warning(
            "provider_send_failed",
            provider=self.provider,
            channel=self.channel,
            status=status,
            error_kind=kind,
            body=str(detail)[:200],
        )
        return SendResult(
            success=False,
            error_kind=kind,
            error=f"HTTP {status}: {str(detail)[:200]}",
            raw=body,
        )

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


# ── Twilio ──────────────────────────────────────────────────────


class _TwilioSender(_HttpSender):
    provider = "twilio"

    def __init__(self, config: TwilioConfig) -> None:
        super().__init__()
        self._config = config
        self._auth = aiohttp.BasicAuth(
            config.account_sid, config.auth_token.get_secret_value(),
        )

    def _url(self, resource: str) -> str:
        base = self._config.base_url.rstrip("/")
        return f"{base}/Accounts/{self._config.account_sid}/{resource}"

    async def _create(self, resource: str, data: dict[str, str]) -> SendResult:
        status, body, _ = await self._post(self._url(resource), data=data, auth=self._auth)
        if classify_status(status) is not None:
            return self._failure(status, body)
        return SendResult(success=True, provider_message_id=body.get("sid"), raw=body)


class TwilioSmsSender(_TwilioSender):
    """SMS through the Twilio Messages API."""

    channel = Channel.SMS

    async def send(self, address: str, message: RenderedMessage) -> SendResult:
        if not isinstance(message, SmsMessage):
            return self._unsupported(message)
        return await self._create("Messages.json", {
            "To": address,
            "From": self._config.from_number,
            "Body": message.text,
        })


class TwilioWhatsAppSender(_TwilioSender):
    """WhatsApp chat through the Twilio Messages API."""

    channel = Channel.CHAT

    @staticmethod
    def _whatsapp(number: str) -> str:
        return number if number.startswith("whatsapp:") else f"whatsapp:{number}"

    async def send(self, address: str, message: RenderedMessage) -> SendResult:
        if not isinstance(message, ChatMessage):
            return self._unsupported(message)
        return await self._create("Messages.json", {
            "To": self._whatsapp(address),
            "From": self._whatsapp(self._config.whatsapp_from or self._config.from_number),
            "Body": message.text,
        })


class TwilioVoiceSender(_TwilioSender):
    """Text-to-speech calls through the Twilio Calls API.

    Calls still queued or ringing can be cancelled; connected calls cannot.
    """

    channel = Channel.VOICE

    def _twiml(self, message: VoiceMessage) -> str:
        return (
            "<Response>"
            f"<Say voice=\"{self._config.voice}\" loop=\"{message.repeat}\">"
            f"{html_escape(message.script)}"
            "</Say>"
            "</Response>"
        )

    async def send(self, address: str, message: RenderedMessage) -> SendResult:
        if not isinstance(message, VoiceMessage):
            return self._unsupported(message)
        return await self._create("Calls.json", {
            "To": address,
            "From": self._config.from_number,
            "Twiml": self._twiml(message),
        })

    async def cancel(self, provider_message_id: str) -> bool:
        status, body, _ = await self._post(
            self._url(f"Calls/{provider_message_id}.json"),
            data={"Status": "canceled"},
            auth=self._auth,
        )
        if classify_status(status) is not None:
            logger.warning(
                "voice_cancel_failed",
                call_sid=provider_message_id,
                status=status,
                body=str(body)[:200],
            )
            return False
        return True


# ── SendGrid ────────────────────────────────────────────────────


class SendGridSender(_HttpSender):
    """Transactional email through the SendGrid v3 API."""

    channel = Channel.EMAIL
    provider = "sendgrid"

    def __init__(self, config: SendGridConfig) -> None:
        super().__init__()
        self._config = config

    async def send(self, address: str, message: RenderedMessage) -> SendResult:
        if not isinstance(message, EmailMessage):
            return self._unsupported(message)
        payload = {
            "personalizations": [{"to": [{"email": address}]}],
            "from": {"email": self._config.from_email, "name": self._config.from_name},
            "subject": message.subject,
            "content": [
                {"type": "text/plain", "value": message.text},
                {"type": "text/html", "value": message.html},
            ],
        }
        headers = {"Authorization": f"Bearer {self._config.api_key.get_secret_value()}"}
        status, body, resp_headers = await self._post(
            f"{self._config.base_url.rstrip('/')}/mail/send",
            json=payload,
            headers=headers,
        )
        if classify_status(status) is not None:
            return self._failure(status, body)
        message_id = resp_headers.get("X-Message-Id") if resp_headers else None
        return SendResult(success=True, provider_message_id=message_id, raw=body)


# ── Telegram ────────────────────────────────────────────────────


class TelegramSender(_HttpSender):
    """Chat messages via the Telegram Bot API; the address is a chat id."""

    channel = Channel.CHAT
    provider = "telegram"

    def __init__(self, config: TelegramConfig) -> None:
        super().__init__()
        self._token = config.bot_token.get_secret_value()

    async def send(self, address: str, message: RenderedMessage) -> SendResult:
        if not isinstance(message, ChatMessage):
            return self._unsupported(message)
        url = f"https://api.telegram.org/bot{self._token}/sendMessage"
        payload = {"chat_id": address, "text": message.text}
        status, body, _ = await self._post(url, json=payload)
        if classify_status(status) is not None or not body.get("ok", False):
            return self._failure(status if status >= 300 else 400, body)
        result = body.get("result") or {}
        message_id = result.get("message_id")
        return SendResult(
            success=True,
            provider_message_id=f"{address}:{message_id}" if message_id is not None else None,
            raw=body,
        )


# ── Dry run ─────────────────────────────────────────────────────


class DryRunSender(ChannelSender):
    """Logs instead of sending; used for drills and tests.

    ``fail_with`` makes every send fail with the given error kind.
    """

    provider = "dry-run"

    def __init__(self, channel: Channel, fail_with: ErrorKind | None = None) -> None:
        self.channel = channel
        self._fail_with = fail_with
        self._ids = itertools.count(1)
        self.sent: list[tuple[str, RenderedMessage]] = []
        self.cancelled: list[str] = []

    async def send(self, address: str, message: RenderedMessage) -> SendResult:
        if self._fail_with is not None:
            return SendResult(
                success=False,
                error_kind=self._fail_with,
                error=f"dry-run {self._fail_with.value} failure",
            )
        self.sent.append((address, message))
        message_id = f"dry-{self.channel.value}-{next(self._ids)}"
        logger.info(
            "dry_run_send",
            channel=self.channel,
            address=address,
            provider_message_id=message_id,
        )
        return SendResult(success=True, provider_message_id=message_id)

    async def cancel(self, provider_message_id: str) -> bool:
        self.cancelled.append(provider_message_id)
        return True

    async def close(self) -> None:
        return None
