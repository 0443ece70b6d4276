"""Domain types for hazard alerting — events, alerts, contacts, deliveries."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import IntEnum, StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ── Hazards ─────────────────────────────────────────────────────


class HazardType(StrEnum):
    """Kind of natural hazard."""

    SEISMIC = "seismic"
    TSUNAMI = "tsunami"


class TsunamiWarningLevel(StrEnum):
    """Bulletin levels issued by tsunami warning centres (lowest first)."""

    INFORMATION = "information"
    ADVISORY = "advisory"
    WATCH = "watch"
    WARNING = "warning"


class Position(BaseModel):
    """A geographic point in decimal degrees."""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90.0, le=90.0)
    lon: float = Field(ge=-180.0, le=180.0)


class _RawRecord(BaseModel):
    """Fields shared by every hazard feed record (wire keys are camelCase)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    source: str = Field(min_length=1)
    external_id: str = Field(alias="externalId", min_length=1)
    magnitude: float
    depth: float = Field(ge=0.0)
    epicenter: Position
    occurred_at: float = Field(alias="occurredAt")
    tsunami_flag: bool = Field(default=False, alias="tsunamiFlag")
    place: str = ""

    @field_validator("occurred_at", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> Any:
        """Accept epoch seconds, epoch milliseconds or ISO-8601 strings."""
        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=UTC)
                return parsed.timestamp()
        if isinstance(value, int | float) and value > _EPOCH_MS_THRESHOLD:
            return value / 1000.0
        return value


# Anything larger is a millisecond timestamp (year 5138 in seconds).
_EPOCH_MS_THRESHOLD = 1e11


class SeismicRecord(_RawRecord):
    """Earthquake record from a seismic network."""

    type: Literal["seismic"] = "seismic"


class TsunamiRecord(_RawRecord):
    """Tsunami bulletin, optionally carrying a warning level."""

    type: Literal["tsunami"] = "tsunami"
    warning_level: TsunamiWarningLevel | None = Field(default=None, alias="warningLevel")


HazardRecord = Annotated[SeismicRecord | TsunamiRecord, Field(discriminator="type")]


class HazardEvent(BaseModel):
    """Normalised, immutable hazard occurrence."""

    model_config = ConfigDict(frozen=True)

    id: str
    source: str
    external_id: str
    type: HazardType
    magnitude: float
    depth_km: float
    epicenter: Position
    occurred_at: float
    tsunami_flag: bool = False
    tsunami_warning: TsunamiWarningLevel | None = None
    severity: int = Field(ge=1, le=5)
    place: str = ""
    ingested_at: float = 0.0


class IngestStatus(StrEnum):
    """Outcome of ingesting a single raw record."""

    CREATED = "created"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class IngestOutcome(BaseModel):
    """Result of normalising and storing one feed record."""

    status: IngestStatus
    event: HazardEvent | None = None
    error: str = ""
    alert_ids: list[str] = Field(default_factory=list)


class FeedEventType(StrEnum):
    """Type of feed event."""

    HAZARD_REPORTED = "HAZARD_REPORTED"
    FEED_CONNECTED = "FEED_CONNECTED"
    FEED_DISCONNECTED = "FEED_DISCONNECTED"
    FEED_ERROR = "FEED_ERROR"


class FeedEvent(BaseModel):
    """Source-agnostic event emitted by a hazard feed.

    ``record`` carries the wire-format hazard record for HAZARD_REPORTED
    events and is empty for lifecycle events.
    """

    source: str
    event_type: FeedEventType
    record: dict[str, Any] = Field(default_factory=dict)
    received_at: float = 0.0
    raw: dict[str, Any] = Field(default_factory=dict)


# ── Geospatial ──────────────────────────────────────────────────


class ImpactBand(StrEnum):
    """Shaking-intensity ring around an epicentre (tightest first)."""

    STRONG = "strong"
    MODERATE = "moderate"
    LIGHT = "light"
    WEAK = "weak"


class RiskBand(StrEnum):
    """Risk classification assigned to an affected entity."""

    CRITICAL = "critical"
    HIGH = "high"
    MODERATE = "moderate"
    LOW = "low"


class ImpactRadii(BaseModel):
    """Radius in km of each impact band for one event."""

    model_config = ConfigDict(frozen=True)

    strong: float
    moderate: float
    light: float
    weak: float

    def band_for(self, distance_km: float) -> ImpactBand | None:
        """Return the tightest band containing *distance_km*, or None."""
        for band in ImpactBand:
            if distance_km <= getattr(self, band.value):
                return band
        return None


# ── Contacts & assets ───────────────────────────────────────────


class Channel(StrEnum):
    """Delivery channel, declared in ascending cost order."""

    EMAIL = "email"
    CHAT = "chat"
    SMS = "sms"
    VOICE = "voice"


class Contact(BaseModel):
    """Externally owned recipient with zero or more channel addresses."""

    id: str
    name: str = ""
    phone: str | None = None
    email: str | None = None
    chat_handle: str | None = None
    priority: int = 1
    role: str = ""
    active: bool = True
    preferred_channels: list[Channel] = Field(default_factory=list)
    country: str = ""

    def address_for(self, channel: Channel) -> str | None:
        """Return the address this contact can be reached at on *channel*."""
        if channel in (Channel.SMS, Channel.VOICE):
            return self.phone or None
        if channel == Channel.EMAIL:
            return self.email or None
        return self.chat_handle or None


class AssetKind(StrEnum):
    """Kind of recipient-bearing asset."""

    VESSEL = "vessel"
    PORT = "port"
    LOCATION = "location"


class ContactLink(BaseModel):
    """Association between an asset and one of its contacts.

    ``notify_on`` lists the severities this contact subscribed to for the
    asset; empty means every severity.
    """

    contact_id: str
    priority: int = 1
    role: str = ""
    notify_on: list[int] = Field(default_factory=list)

    def wants(self, severity: int) -> bool:
        return not self.notify_on or severity in self.notify_on


class Asset(BaseModel):
    """Vessel, port or fixed location whose contacts may need warning."""

    id: str
    kind: AssetKind = AssetKind.VESSEL
    name: str = ""
    position: Position | None = None
    contacts: list[ContactLink] = Field(default_factory=list)


class AffectedEntity(BaseModel):
    """Immutable link between an alert and an asset inside the impact zone."""

    model_config = ConfigDict(frozen=True)

    alert_id: str = ""
    asset_id: str
    asset_kind: AssetKind
    asset_name: str = ""
    snapshot: int = 0
    distance_km: float
    impact_band: ImpactBand
    risk_band: RiskBand
    recommendation: str = ""
    contacts: list[ContactLink] = Field(default_factory=list)


class Recipient(BaseModel):
    """A contact selected for one escalation step, with its closest asset."""

    contact: Contact
    priority: int = 1
    role: str = ""
    asset_id: str | None = None
    asset_name: str = ""
    distance_km: float | None = None
    risk_band: RiskBand | None = None
    recommendation: str = ""


# ── Escalation ──────────────────────────────────────────────────


class EscalationStep(BaseModel):
    """One notify-then-wait step of an escalation policy.

    ``wait_secs`` is how long the step waits for an acknowledgement after
    its notifications go out before the next step (or expiry) triggers.
    """

    wait_secs: float = Field(ge=0.0)
    max_priority: int | None = None
    roles: list[str] = Field(default_factory=list)
    channels: list[Channel] | None = None


class EscalationPolicy(BaseModel):
    """Ordered escalation steps applicable to a hazard-type/severity range."""

    id: str
    name: str = ""
    hazard_types: list[HazardType] = Field(
        default_factory=lambda: [HazardType.SEISMIC, HazardType.TSUNAMI],
    )
    min_severity: int = Field(default=1, ge=1, le=5)
    max_severity: int = Field(default=5, ge=1, le=5)
    steps: list[EscalationStep] = Field(default_factory=list)

    def applies_to(self, severity: int, hazard_type: HazardType) -> bool:
        return (
            hazard_type in self.hazard_types
            and self.min_severity <= severity <= self.max_severity
        )


class AlertStatus(StrEnum):
    """Alert lifecycle state."""

    PENDING = "PENDING"
    NOTIFYING = "NOTIFYING"
    ESCALATING = "ESCALATING"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"
    EXPIRED = "EXPIRED"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({
    AlertStatus.ACKNOWLEDGED,
    AlertStatus.RESOLVED,
    AlertStatus.EXPIRED,
})


class AlertScope(StrEnum):
    """Target scope of an alert."""

    GLOBAL = "global"
    AFFECTED = "affected"


class Alert(BaseModel):
    """One alert per (hazard event, scope), driven by an escalation policy."""

    id: str
    hazard_id: str
    scope: AlertScope = AlertScope.AFFECTED
    severity: int = Field(ge=1, le=5)
    status: AlertStatus = AlertStatus.PENDING
    policy_id: str
    channels: list[Channel] = Field(default_factory=list)
    escalation_step_index: int = -1
    version: int = 0
    created_at: float = 0.0
    updated_at: float = 0.0
    last_escalated_at: float | None = None
    acknowledged: bool = False
    acknowledged_at: float | None = None
    acknowledged_by: str = ""
    resolved_at: float | None = None
    resolution_reason: str = ""
    expired_at: float | None = None


class AlertEventType(StrEnum):
    """Transition notifications emitted by the escalation engine."""

    ALERT_OPENED = "ALERT_OPENED"
    STEP_DISPATCHED = "STEP_DISPATCHED"
    ALERT_ACKNOWLEDGED = "ALERT_ACKNOWLEDGED"
    ALERT_RESOLVED = "ALERT_RESOLVED"
    ALERT_EXPIRED = "ALERT_EXPIRED"


class AlertEvent(BaseModel):
    """Emitted after an alert transition is committed."""

    event_type: AlertEventType
    alert: Alert
    step_index: int = -1
    deliveries: int = 0
    timestamp: float = 0.0


class AckChannel(StrEnum):
    """Where an acknowledgement came from."""

    WEB = "web"
    REPLY = "reply"
    OPERATOR = "operator"


class AcknowledgementSignal(BaseModel):
    """External confirmation that a recipient has seen an alert."""

    alert_id: str
    acknowledged_by: str = ""
    at: float | None = None
    via: AckChannel = AckChannel.WEB


# ── Delivery ────────────────────────────────────────────────────


class DeliveryStatus(IntEnum):
    """Per-attempt delivery status, ordered by progress.

    FAILED, BOUNCED and CANCELED are terminal regardless of ordering.
    """

    QUEUED = 0
    SENT = 1
    DELIVERED = 2
    READ = 3
    FAILED = 10
    BOUNCED = 11
    CANCELED = 12

    @property
    def terminal(self) -> bool:
        return self >= DeliveryStatus.FAILED


class ErrorKind(StrEnum):
    """Classification of a failed send."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class SendResult(BaseModel):
    """Outcome reported by a channel sender."""

    success: bool
    provider_message_id: str | None = None
    error_kind: ErrorKind | None = None
    error: str = ""
    raw: dict[str, Any] = Field(default_factory=dict)


class IdempotencyKey(BaseModel):
    """Identifies one logical notification: alert × contact × channel × step."""

    model_config = ConfigDict(frozen=True)

    alert_id: str
    contact_id: str
    channel: Channel
    step_index: int

    def __str__(self) -> str:
        return f"{self.alert_id}:{self.contact_id}:{self.channel.value}:{self.step_index}"


class DeliveryLog(BaseModel):
    """One row per delivery attempt; retries append a new row."""

    id: str
    alert_id: str
    contact_id: str
    channel: Channel
    step_index: int
    attempt: int = 1
    idempotency_key: str
    status: DeliveryStatus = DeliveryStatus.QUEUED
    address: str = ""
    provider: str = ""
    provider_message_id: str | None = None
    error_kind: ErrorKind | None = None
    error: str = ""
    dead_letter: bool = False
    queued_at: float = 0.0
    sent_at: float | None = None
    delivered_at: float | None = None
    read_at: float | None = None
    failed_at: float | None = None


class ChannelSummary(BaseModel):
    """Delivery counters for one channel."""

    channel: Channel
    attempts: int = 0
    notifications: int = 0
    sent: int = 0
    delivered: int = 0
    read: int = 0
    failed: int = 0
    canceled: int = 0
    dead_lettered: int = 0


class DeliverySummary(BaseModel):
    """Aggregated delivery state for an alert or a time window."""

    alert_id: str | None = None
    since: float | None = None
    until: float | None = None
    channels: dict[Channel, ChannelSummary] = Field(default_factory=dict)

    @property
    def total_attempts(self) -> int:
        return sum(c.attempts for c in self.channels.values())

    @property
    def total_failed(self) -> int:
        return sum(c.failed for c in self.channels.values())


class AlertView(BaseModel):
    """Query-surface projection of an alert with its related records."""

    alert: Alert
    hazard: HazardEvent | None = None
    affected: list[AffectedEntity] = Field(default_factory=list)
    unresolved_assets: list[str] = Field(default_factory=list)
    deliveries: DeliverySummary = Field(default_factory=DeliverySummary)


class ServiceState(StrEnum):
    """Lifecycle state of the orchestrator."""

    STOPPED = "STOPPED"
    RUNNING = "RUNNING"


class ServiceStatus(BaseModel):
    """Observable orchestrator status."""

    state: ServiceState = ServiceState.STOPPED
    started_at: float | None = None
    feeds: list[str] = Field(default_factory=list)
    stale_feeds: list[str] = Field(default_factory=list)
    pending_timers: int = 0
    active_alerts: int = 0
    hazards_ingested: int = 0
    duplicates_ignored: int = 0
    records_rejected: int = 0
