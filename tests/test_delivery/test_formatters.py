"""Tests for notification renderers — length limits, proximity, escaping."""

from __future__ import annotations

from hazardwatch.core.types import (
    Alert,
    AlertScope,
    Channel,
    Contact,
    HazardEvent,
    HazardType,
    Position,
    Recipient,
    RiskBand,
)
from hazardwatch.delivery.formatters import (
    SMS_MAX_CHARS,
    ChatMessage,
    EmailMessage,
    MessageContext,
    SmsMessage,
    VoiceMessage,
    ack_link,
    render,
    render_chat,
    render_email,
    render_sms,
    render_voice,
    severity_label,
)

# ── Helpers ─────────────────────────────────────────────────────


def _ctx(
    recipient: Recipient | None = None,
    scope: AlertScope = AlertScope.AFFECTED,
    step_index: int = 0,
    **hazard_kw: object,
) -> MessageContext:
    hazard_defaults: dict[str, object] = {
        "id": "usgs:us1",
        "source": "usgs",
        "external_id": "us1",
        "type": HazardType.SEISMIC,
        "magnitude": 7.4,
        "depth_km": 12.0,
        "epicenter": Position(lat=38.297, lon=142.373),
        "occurred_at": 1_700_000_000.0,
        "severity": 4,
        "place": "100 km E of Miyako, Japan",
    }
    hazard_defaults.update(hazard_kw)
    hazard = HazardEvent(**hazard_defaults)  # type: ignore[arg-type]
    alert = Alert(
        id="abcd1234ef567890",
        hazard_id=hazard.id,
        scope=scope,
        severity=hazard.severity,
        policy_id="critical",
    )
    return MessageContext(
        alert=alert,
        hazard=hazard,
        step_index=step_index,
        recipient=recipient,
        app_base_url="https://alerts.example.com/",
    )


def _recipient(**kw: object) -> Recipient:
    defaults: dict[str, object] = {
        "contact": Contact(id="captain", phone="+15550001"),
        "asset_id": "v1",
        "asset_name": "MV Pacific Star",
        "distance_km": 150.0,
        "risk_band": RiskBand.CRITICAL,
        "recommendation": "Move to deep water.",
    }
    defaults.update(kw)
    return Recipient(**defaults)  # type: ignore[arg-type]


# ── SMS ─────────────────────────────────────────────────────────


class TestRenderSms:
    def test_fits_single_segment(self) -> None:
        msg = render_sms(_ctx(_recipient(), tsunami_flag=True))
        assert len(msg.text) <= SMS_MAX_CHARS
        assert msg.text.endswith("Reply ACK to confirm. Ref ABCD1234")
        assert msg.text.startswith("[HIGH] M7.4 Earthquake")

    def test_long_place_is_truncated(self) -> None:
        msg = render_sms(_ctx(_recipient(asset_name="X" * 200), place="Y" * 200))
        assert len(msg.text) <= SMS_MAX_CHARS
        assert "…" in msg.text
        assert msg.text.endswith("Ref ABCD1234")

    def test_includes_proximity(self) -> None:
        msg = render_sms(_ctx(_recipient(), place=""))
        assert "MV Pacific Star: 150 km, CRITICAL risk." in msg.text

    def test_tsunami_eta_for_close_assets(self) -> None:
        msg = render_sms(_ctx(_recipient(), tsunami_flag=True, place=""))
        assert "Tsunami ETA ~12 min." in msg.text

    def test_no_eta_for_low_risk(self) -> None:
        msg = render_sms(_ctx(_recipient(risk_band=RiskBand.LOW), tsunami_flag=True))
        assert "ETA" not in msg.text

    def test_global_scope_has_no_proximity(self) -> None:
        msg = render_sms(_ctx(_recipient(), scope=AlertScope.GLOBAL))
        assert "MV Pacific Star" not in msg.text


# ── Chat ────────────────────────────────────────────────────────


class TestRenderChat:
    def test_contents(self) -> None:
        msg = render_chat(_ctx(_recipient(), step_index=1))
        assert msg.text.startswith("*HIGH HAZARD ALERT*")
        assert "Depth 12 km · 2023-11-14 22:13 UTC" in msg.text
        assert "Move to deep water." in msg.text
        assert "Escalation level 2" in msg.text
        assert msg.text.endswith(
            "https://alerts.example.com/alerts/abcd1234ef567890/acknowledge"
        )

    def test_first_step_has_no_escalation_line(self) -> None:
        assert "Escalation level" not in render_chat(_ctx()).text


# ── Email ───────────────────────────────────────────────────────


class TestRenderEmail:
    def test_subject_and_rows(self) -> None:
        msg = render_email(_ctx(_recipient(), step_index=2, tsunami_flag=True))
        assert msg.subject == "[HIGH] M7.4 Earthquake 100 km E of Miyako, Japan (escalation 3)"
        assert "Severity: HIGH (4/5)" in msg.text
        assert "Epicenter: 38.297, 142.373" in msg.text
        assert "Tsunami ETA: ~12 min" in msg.text
        assert "Acknowledge: https://alerts.example.com/alerts/abcd1234ef567890/acknowledge" in msg.text

    def test_html_is_escaped(self) -> None:
        recipient = _recipient(recommendation="Leave <berth> & anchor")
        msg = render_email(_ctx(recipient, place="<script>alert(1)</script>"))
        assert "<script>" not in msg.html
        assert "&lt;script&gt;" in msg.html
        assert "Leave &lt;berth&gt; &amp; anchor" in msg.html


# ── Voice ───────────────────────────────────────────────────────


class TestRenderVoice:
    def test_script(self) -> None:
        msg = render_voice(_ctx(_recipient(), tsunami_flag=True))
        assert msg.script.startswith("This is a high severity hazard alert.")
        assert "MV Pacific Star is 150 kilometres from the epicenter." in msg.script
        assert "about 12 minutes" in msg.script
        assert msg.repeat == 2

    def test_tsunami_wording(self) -> None:
        msg = render_voice(_ctx(type=HazardType.TSUNAMI, place=""))
        assert "magnitude 7.4 tsunami has occurred." in msg.script


# ── Dispatch by channel ─────────────────────────────────────────


class TestRender:
    def test_each_channel_gets_its_type(self) -> None:
        ctx = _ctx(_recipient())
        assert isinstance(render(Channel.SMS, ctx), SmsMessage)
        assert isinstance(render(Channel.CHAT, ctx), ChatMessage)
        assert isinstance(render(Channel.EMAIL, ctx), EmailMessage)
        assert isinstance(render(Channel.VOICE, ctx), VoiceMessage)

    def test_helpers(self) -> None:
        assert severity_label(5) == "CRITICAL"
        assert severity_label(9) == "9"
        assert ack_link(_ctx()) == "https://alerts.example.com/alerts/abcd1234ef567890/acknowledge"
