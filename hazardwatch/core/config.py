"""Pydantic settings loaded from YAML configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, SecretStr

from hazardwatch.core.types import Channel, EscalationPolicy, EscalationStep, HazardType

_settings: Settings | None = None

_DEFAULT_CONFIG_PATH = Path("config/settings.yaml")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    # Alert transitions are also appended here as JSON lines when set.
    audit_path: str = ""
    redact_addresses: bool = True


class UsgsFeedConfig(BaseModel):
    """USGS GeoJSON summary feed polling."""

    enabled: bool = False
    source: str = "usgs"
    url: str = "https://earthquake.usgs.gov/earthquakes/feed/v1.0/summary/4.5_hour.geojson"
    poll_interval_ms: int = 60_000
    min_magnitude: float = 5.0
    timeout_secs: float = 10.0


class FeedsConfig(BaseModel):
    """Container for all hazard feed configurations."""

    usgs: UsgsFeedConfig = UsgsFeedConfig()


class MagnitudeThreshold(BaseModel):
    """Events at or above ``min_magnitude`` start at ``severity``."""

    min_magnitude: float
    severity: int = Field(ge=1, le=5)


class DepthPenalty(BaseModel):
    """Events at ``min_depth_km`` or deeper lose ``penalty`` severity points."""

    min_depth_km: float
    penalty: int = Field(ge=0)


class SeverityConfig(BaseModel):
    """Severity scoring — magnitude base, depth penalty, tsunami bump."""

    magnitude_thresholds: list[MagnitudeThreshold] = [
        MagnitudeThreshold(min_magnitude=8.0, severity=5),
        MagnitudeThreshold(min_magnitude=7.0, severity=4),
        MagnitudeThreshold(min_magnitude=6.0, severity=3),
        MagnitudeThreshold(min_magnitude=5.0, severity=2),
    ]
    depth_penalties: list[DepthPenalty] = [
        DepthPenalty(min_depth_km=300.0, penalty=2),
        DepthPenalty(min_depth_km=70.0, penalty=1),
    ]
    tsunami_bump: int = 1


class GeoConfig(BaseModel):
    """Impact-radius model parameters."""

    # 10^(0.5·M) is a radius in metres; this converts it to km.
    base_radius_scale_km: float = 0.001
    band_multipliers: dict[str, float] = {
        "strong": 10.0,
        "moderate": 30.0,
        "light": 80.0,
        "weak": 150.0,
    }
    use_bounding_box: bool = True


class ChannelPolicyConfig(BaseModel):
    """Severity → channel matrix, with per-hazard-type overrides."""

    matrix: dict[int, list[Channel]] = {
        1: [Channel.EMAIL],
        2: [Channel.EMAIL],
        3: [Channel.EMAIL, Channel.CHAT, Channel.SMS],
        4: [Channel.EMAIL, Channel.CHAT, Channel.SMS, Channel.VOICE],
        5: [Channel.EMAIL, Channel.CHAT, Channel.SMS, Channel.VOICE],
    }
    overrides: dict[HazardType, dict[int, list[Channel]]] = Field(default_factory=dict)
    excluded_hazard_types: list[HazardType] = Field(default_factory=list)


def _default_policies() -> list[EscalationPolicy]:
    return [
        EscalationPolicy(
            id="standard",
            name="Standard notification",
            min_severity=1,
            max_severity=3,
            steps=[
                EscalationStep(wait_secs=1800.0, max_priority=1),
                EscalationStep(wait_secs=3600.0),
            ],
        ),
        EscalationPolicy(
            id="critical",
            name="Critical hazard escalation",
            min_severity=4,
            max_severity=5,
            steps=[
                EscalationStep(wait_secs=600.0, max_priority=1),
                EscalationStep(wait_secs=1200.0, max_priority=2),
                EscalationStep(
                    wait_secs=1800.0,
                    channels=[Channel.SMS, Channel.VOICE],
                ),
            ],
        ),
    ]


class EscalationConfig(BaseModel):
    """Escalation engine and timer sweeping."""

    sweep_interval_secs: float = 5.0
    timer_retry_secs: float = 30.0
    max_transition_retries: int = 3
    drain_timeout_secs: float = 10.0
    policies: list[EscalationPolicy] = Field(default_factory=_default_policies)


class CircuitBreakerConfig(BaseModel):
    """Per-channel circuit breaker."""

    enabled: bool = True
    failure_threshold_pct: float = 50.0
    minimum_calls: int = 10
    window_secs: float = 300.0
    reset_timeout_secs: float = 60.0


class DeliveryConfig(BaseModel):
    """Dispatcher retry, concurrency and rendering settings."""

    max_attempts: int = Field(default=3, ge=1)
    backoff_base_secs: float = 2.0
    backoff_cap_secs: float = 60.0
    send_timeout_secs: float = 15.0
    max_concurrency: int = Field(default=20, ge=1)
    dry_run: bool = False
    app_base_url: str = "http://localhost:3000"
    circuit_breaker: CircuitBreakerConfig = CircuitBreakerConfig()
    # How long a halted alert stays blocked for late attempts and retries.
    halt_retention_secs: float = 3600.0
    max_dead_letters: int = Field(default=1000, ge=1)


class TwilioConfig(BaseModel):
    """Twilio SMS, WhatsApp and voice."""

    enabled: bool = False
    account_sid: str = ""
    auth_token: SecretStr = SecretStr("")
    from_number: str = ""
    whatsapp_from: str = ""
    base_url: str = "https://api.twilio.com/2010-04-01"
    voice: str = "alice"


class SendGridConfig(BaseModel):
    """SendGrid transactional email."""

    enabled: bool = False
    api_key: SecretStr = SecretStr("")
    from_email: str = ""
    from_name: str = "Hazard Alerts"
    base_url: str = "https://api.sendgrid.com/v3"


class TelegramConfig(BaseModel):
    """Telegram bot used as the chat channel."""

    enabled: bool = False
    bot_token: SecretStr = SecretStr("")


class ProvidersConfig(BaseModel):
    """Channel provider credentials."""

    twilio: TwilioConfig = TwilioConfig()
    sendgrid: SendGridConfig = SendGridConfig()
    telegram: TelegramConfig = TelegramConfig()
    chat_provider: str = "whatsapp"


class BroadcastConfig(BaseModel):
    """Global broadcast alerts to every active contact."""

    enabled: bool = False
    min_severity: int = Field(default=4, ge=1, le=5)


class Settings(BaseModel):
    """Root settings container."""

    feeds: FeedsConfig = FeedsConfig()
    severity: SeverityConfig = SeverityConfig()
    geo: GeoConfig = GeoConfig()
    channel_policy: ChannelPolicyConfig = ChannelPolicyConfig()
    escalation: EscalationConfig = EscalationConfig()
    delivery: DeliveryConfig = DeliveryConfig()
    providers: ProvidersConfig = ProvidersConfig()
    broadcast: BroadcastConfig = BroadcastConfig()
    logging: LoggingConfig = LoggingConfig()


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from a YAML file and cache globally.

    Args:
        path: Path to YAML config. Defaults to config/settings.yaml.

    Returns:
        Parsed Settings instance.
    """
    global _settings  # noqa: PLW0603

    config_path = Path(path) if path else _DEFAULT_CONFIG_PATH

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f)
            if isinstance(raw, dict):
                data = raw

    _settings = Settings(**data)
    return _settings


def get_settings() -> Settings:
    """Return the cached settings, loading defaults if not yet loaded."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset the cached settings (useful for testing)."""
    global _settings  # noqa: PLW0603
    _settings = None
