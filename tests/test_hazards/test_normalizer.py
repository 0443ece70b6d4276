"""Tests for HazardNormalizer — validation, severity scoring, dedup."""

from __future__ import annotations

import pytest

from hazardwatch.core.clock import FakeClock
from hazardwatch.core.config import (
    ChannelPolicyConfig,
    DepthPenalty,
    MagnitudeThreshold,
    SeverityConfig,
    Settings,
)
from hazardwatch.core.types import Channel, HazardType, IngestStatus, TsunamiWarningLevel
from hazardwatch.escalation.policy import ChannelPolicy
from hazardwatch.hazards.exceptions import HazardValidationError
from hazardwatch.hazards.normalizer import (
    HazardNormalizer,
    compute_severity,
    dedup_key,
)
from hazardwatch.storage.memory import InMemoryAlertStore

# ── Helpers ─────────────────────────────────────────────────────


def _record(**overrides: object) -> dict[str, object]:
    defaults: dict[str, object] = {
        "source": "usgs",
        "externalId": "us7000abcd",
        "type": "seismic",
        "magnitude": 6.2,
        "depth": 10.0,
        "epicenter": {"lat": 38.3, "lon": 142.4},
        "occurredAt": 1_700_000_000,
        "tsunamiFlag": False,
    }
    defaults.update(overrides)
    return defaults


def _normalizer() -> tuple[HazardNormalizer, InMemoryAlertStore]:
    store = InMemoryAlertStore()
    return HazardNormalizer(store, SeverityConfig(), FakeClock(start=5_000.0)), store


def _policy() -> ChannelPolicy:
    return ChannelPolicy(ChannelPolicyConfig(), Settings().escalation.policies)


# ── Severity ────────────────────────────────────────────────────


class TestComputeSeverity:
    def test_great_shallow_tsunamigenic_event_is_critical(self) -> None:
        severity = compute_severity(7.8, 5.0, tsunami=True, config=SeverityConfig())
        assert severity == 5
        channels = _policy().channels_for(severity, HazardType.SEISMIC)
        assert set(channels) == {Channel.VOICE, Channel.SMS, Channel.CHAT, Channel.EMAIL}

    def test_strong_shallow_event_without_tsunami(self) -> None:
        severity = compute_severity(6.2, 10.0, tsunami=False, config=SeverityConfig())
        assert severity == 3
        channels = _policy().channels_for(severity, HazardType.SEISMIC)
        assert set(channels) == {Channel.SMS, Channel.CHAT, Channel.EMAIL}
        assert Channel.VOICE not in channels

    def test_small_event_floors_at_one(self) -> None:
        assert compute_severity(3.0, 10.0, config=SeverityConfig()) == 1

    def test_deep_event_is_penalised(self) -> None:
        cfg = SeverityConfig()
        assert compute_severity(7.5, 30.0, config=cfg) == 4
        assert compute_severity(7.5, 100.0, config=cfg) == 3
        assert compute_severity(7.5, 400.0, config=cfg) == 2

    def test_clamped_to_five(self) -> None:
        assert compute_severity(9.5, 0.0, tsunami=True, config=SeverityConfig()) == 5

    def test_monotonic_in_magnitude(self) -> None:
        cfg = SeverityConfig()
        for depth in (0.0, 50.0, 150.0, 500.0):
            for tsunami in (False, True):
                scores = [
                    compute_severity(m / 10, depth, tsunami, cfg) for m in range(30, 100)
                ]
                assert scores == sorted(scores)

    def test_monotonic_in_depth(self) -> None:
        cfg = SeverityConfig()
        for magnitude in (5.5, 6.5, 7.5, 8.5):
            scores = [compute_severity(magnitude, d, config=cfg) for d in range(0, 700, 10)]
            assert scores == sorted(scores, reverse=True)

    def test_custom_thresholds(self) -> None:
        cfg = SeverityConfig(
            magnitude_thresholds=[MagnitudeThreshold(min_magnitude=4.0, severity=5)],
            depth_penalties=[DepthPenalty(min_depth_km=10.0, penalty=3)],
            tsunami_bump=0,
        )
        assert compute_severity(4.0, 0.0, config=cfg) == 5
        assert compute_severity(4.0, 10.0, config=cfg) == 2


# ── Normalisation ───────────────────────────────────────────────


class TestNormalize:
    def test_builds_event(self) -> None:
        normalizer, _ = _normalizer()
        event = normalizer.normalize(_record())
        assert event.id == "usgs:us7000abcd"
        assert event.type == HazardType.SEISMIC
        assert event.severity == 3
        assert event.depth_km == 10.0
        assert event.ingested_at == 5_000.0

    def test_tsunami_flag_bumps_severity(self) -> None:
        normalizer, _ = _normalizer()
        event = normalizer.normalize(_record(magnitude=7.8, depth=5.0, tsunamiFlag=True))
        assert event.severity == 5

    def test_tsunami_bulletin_bumps_severity(self) -> None:
        normalizer, _ = _normalizer()
        event = normalizer.normalize(_record(type="tsunami", warningLevel="warning"))
        assert event.type == HazardType.TSUNAMI
        assert event.tsunami_warning == TsunamiWarningLevel.WARNING
        assert event.severity == 4

    def test_information_bulletin_does_not_bump(self) -> None:
        normalizer, _ = _normalizer()
        event = normalizer.normalize(_record(type="tsunami", warningLevel="information"))
        assert event.severity == 3

    @pytest.mark.parametrize(
        "overrides",
        [
            {"epicenter": None},
            {"epicenter": {"lat": 120.0, "lon": 0.0}},
            {"magnitude": None},
            {"magnitude": float("nan")},
            {"depth": -3.0},
            {"occurredAt": "not a date"},
            {"type": "flood"},
            {"externalId": ""},
        ],
    )
    def test_rejects_malformed_records(self, overrides: dict[str, object]) -> None:
        normalizer, _ = _normalizer()
        with pytest.raises(HazardValidationError):
            normalizer.normalize(_record(**overrides))

    def test_dedup_key_is_stable(self) -> None:
        assert dedup_key("USGS ", " us1 ") == dedup_key("usgs", "us1") == "usgs:us1"


# ── Ingestion ───────────────────────────────────────────────────


class TestIngest:
    async def test_first_ingest_creates(self) -> None:
        normalizer, store = _normalizer()
        outcome = await normalizer.ingest(_record())
        assert outcome.status == IngestStatus.CREATED
        assert outcome.event is not None
        assert await store.get_hazard(outcome.event.id) is not None

    async def test_repeat_ingest_is_duplicate(self) -> None:
        normalizer, _ = _normalizer()
        first = await normalizer.ingest(_record())
        second = await normalizer.ingest(_record(magnitude=6.4))
        assert second.status == IngestStatus.DUPLICATE
        assert second.event == first.event

    async def test_invalid_record_rejected_without_raising(self) -> None:
        normalizer, store = _normalizer()
        outcome = await normalizer.ingest(_record(epicenter=None))
        assert outcome.status == IngestStatus.REJECTED
        assert "epicenter" in outcome.error
        assert await store.get_hazard("usgs:us7000abcd") is None
