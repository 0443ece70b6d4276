"""Pure functions that render alert notifications per channel."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from html import escape as html_escape
from typing import Annotated, Literal

from pydantic import BaseModel, Field

from hazardwatch.core.types import (
    Alert,
    AlertScope,
    Channel,
    HazardEvent,
    HazardType,
    Recipient,
    RiskBand,
)
from hazardwatch.hazards.geo import tsunami_eta_minutes

SMS_MAX_CHARS = 160

_SEVERITY_LABELS: dict[int, str] = {
    1: "INFO",
    2: "LOW",
    3: "MODERATE",
    4: "HIGH",
    5: "CRITICAL",
}

_REPLY_INSTRUCTION = "Reply ACK to confirm."


class MessageContext(BaseModel):
    """Everything a renderer needs for one recipient."""

    alert: Alert
    hazard: HazardEvent
    step_index: int = 0
    recipient: Recipient | None = None
    app_base_url: str = ""


class SmsMessage(BaseModel):
    channel: Literal["sms"] = "sms"
    text: str


class ChatMessage(BaseModel):
    channel: Literal["chat"] = "chat"
    text: str


class EmailMessage(BaseModel):
    channel: Literal["email"] = "email"
    subject: str
    text: str
    html: str


class VoiceMessage(BaseModel):
    channel: Literal["voice"] = "voice"
    script: str
    repeat: int = 2


RenderedMessage = Annotated[
    SmsMessage | ChatMessage | EmailMessage | VoiceMessage,
    Field(discriminator="channel"),
]


# ── Shared pieces ───────────────────────────────────────────────


def severity_label(severity: int) -> str:
    return _SEVERITY_LABELS.get(severity, str(severity))


def ack_link(ctx: MessageContext) -> str:
    base = ctx.app_base_url.rstrip("/")
    return f"{base}/alerts/{ctx.alert.id}/acknowledge"


def _reference(ctx: MessageContext) -> str:
    return ctx.alert.id[:8].upper()


def _summary(hazard: HazardEvent) -> str:
    kind = "Tsunami" if hazard.type == HazardType.TSUNAMI else "Earthquake"
    where = f" {hazard.place}" if hazard.place else ""
    return f"M{hazard.magnitude:.1f} {kind}{where}"


def _tsunami_risk(ctx: MessageContext) -> bool:
    hazard = ctx.hazard
    return hazard.tsunami_flag or hazard.tsunami_warning is not None


def _proximity(ctx: MessageContext) -> str:
    r = ctx.recipient
    if ctx.alert.scope != AlertScope.AFFECTED or r is None or r.distance_km is None:
        return ""
    name = r.asset_name or r.asset_id or "your asset"
    band = r.risk_band.value.upper() if r.risk_band else ""
    return f"{name}: {r.distance_km:.0f} km, {band} risk"


def _eta(ctx: MessageContext) -> int | None:
    r = ctx.recipient
    if not _tsunami_risk(ctx) or r is None or r.distance_km is None:
        return None
    if r.risk_band not in (RiskBand.CRITICAL, RiskBand.HIGH):
        return None
    return tsunami_eta_minutes(r.distance_km)


def _occurred(hazard: HazardEvent) -> str:
    return datetime.fromtimestamp(hazard.occurred_at, tz=UTC).strftime("%Y-%m-%d %H:%M UTC")


# ── Renderers ───────────────────────────────────────────────────


def render_sms(ctx: MessageContext) -> SmsMessage:
    """Single-segment text: severity, summary, proximity and reference."""
    parts = [f"[{severity_label(ctx.alert.severity)}] {_summary(ctx.hazard)}."]
    proximity = _proximity(ctx)
    if proximity:
        parts.append(proximity + ".")
    eta = _eta(ctx)
    if eta is not None:
        parts.append(f"Tsunami ETA ~{eta} min.")
    tail = f" {_REPLY_INSTRUCTION} Ref {_reference(ctx)}"
    body = " ".join(parts)
    budget = SMS_MAX_CHARS - len(tail)
    if len(body) > budget:
        body = body[: budget - 1].rstrip() + "…"
    return SmsMessage(text=body + tail)


def render_chat(ctx: MessageContext) -> ChatMessage:
    lines = [
        f"*{severity_label(ctx.alert.severity)} HAZARD ALERT*",
        _summary(ctx.hazard),
        f"Depth {ctx.hazard.depth_km:.0f} km · {_occurred(ctx.hazard)}",
    ]
    proximity = _proximity(ctx)
    if proximity:
        lines.append(proximity)
    eta = _eta(ctx)
    if eta is not None:
        lines.append(f"Tsunami arrival in ~{eta} min")
    if ctx.recipient is not None and ctx.recipient.recommendation:
        lines.append(ctx.recipient.recommendation)
    if ctx.step_index > 0:
        lines.append(f"Escalation level {ctx.step_index + 1}")
    lines.append(f"{_REPLY_INSTRUCTION} {ack_link(ctx)}")
    return ChatMessage(text="\n".join(lines))


def render_email(ctx: MessageContext) -> EmailMessage:
    label = severity_label(ctx.alert.severity)
    subject = f"[{label}] {_summary(ctx.hazard)}"
    if ctx.step_index > 0:
        subject += f" (escalation {ctx.step_index + 1})"

    rows: list[tuple[str, str]] = [
        ("Severity", f"{label} ({ctx.alert.severity}/5)"),
        ("Magnitude", f"{ctx.hazard.magnitude:.1f}"),
        ("Depth", f"{ctx.hazard.depth_km:.0f} km"),
        ("Epicenter", f"{ctx.hazard.epicenter.lat:.3f}, {ctx.hazard.epicenter.lon:.3f}"),
        ("Occurred", _occurred(ctx.hazard)),
    ]
    proximity = _proximity(ctx)
    if proximity:
        rows.append(("Impact", proximity))
    eta = _eta(ctx)
    if eta is not None:
        rows.append(("Tsunami ETA", f"~{eta} min"))

    recommendation = ctx.recipient.recommendation if ctx.recipient else ""
    link = ack_link(ctx)

    text_lines = [subject, ""]
    text_lines.extend(f"{k}: {v}" for k, v in rows)
    if recommendation:
        text_lines.extend(["", recommendation])
    text_lines.extend(["", f"Acknowledge: {link}"])

    html_rows = "".join(
        f"<tr><th align='left'>{html_escape(k)}</th><td>{html_escape(v)}</td></tr>"
        for k, v in rows
    )
    html = (
        f"<h2>{html_escape(subject)}</h2>"
        f"<table>{html_rows}</table>"
        + (f"<p>{html_escape(recommendation)}</p>" if recommendation else "")
        + f"<p><a href='{html_escape(link)}'>Acknowledge this alert</a></p>"
    )
    return EmailMessage(subject=subject, text="\n".join(text_lines), html=html)


def render_voice(ctx: MessageContext) -> VoiceMessage:
    """Plain sentences for text-to-speech."""
    parts = [
        f"This is a {severity_label(ctx.alert.severity).lower()} severity hazard alert.",
        f"A magnitude {ctx.hazard.magnitude:.1f} "
        f"{'tsunami' if ctx.hazard.type == HazardType.TSUNAMI else 'earthquake'} has occurred"
        + (f" near {ctx.hazard.place}." if ctx.hazard.place else "."),
    ]
    r = ctx.recipient
    if r is not None and r.distance_km is not None:
        parts.append(
            f"{r.asset_name or 'Your asset'} is {r.distance_km:.0f} kilometres from the epicenter."
        )
    eta = _eta(ctx)
    if eta is not None:
        parts.append(f"Tsunami waves may arrive in about {eta} minutes.")
    parts.append("Please acknowledge this alert by text reply or online.")
    return VoiceMessage(script=" ".join(parts))


_RENDERERS: dict[Channel, Callable[[MessageContext], RenderedMessage]] = {
    Channel.SMS: render_sms,
    Channel.CHAT: render_chat,
    Channel.EMAIL: render_email,
    Channel.VOICE: render_voice,
}


def render(channel: Channel, ctx: MessageContext) -> RenderedMessage:
    """Render the notification for *channel*."""
    return _RENDERERS[channel](ctx)
