"""HazardNormalizer — validation, dedup keys and severity scoring."""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import TypeAdapter, ValidationError

from hazardwatch.core.clock import Clock
from hazardwatch.core.config import SeverityConfig, get_settings
from hazardwatch.core.types import (
    HazardEvent,
    HazardRecord,
    HazardType,
    IngestOutcome,
    IngestStatus,
    SeismicRecord,
    TsunamiRecord,
    TsunamiWarningLevel,
)
from hazardwatch.hazards.exceptions import HazardValidationError
from hazardwatch.storage.base import AlertStore

logger = structlog.stdlib.get_logger()

_RECORD_ADAPTER: TypeAdapter[SeismicRecord | TsunamiRecord] = TypeAdapter(HazardRecord)

MIN_SEVERITY = 1
MAX_SEVERITY = 5


def dedup_key(source: str, external_id: str) -> str:
    """Stable identity of a hazard across feed polls."""
    return f"{source.strip().lower()}:{external_id.strip()}"


def compute_severity(
    magnitude: float,
    depth_km: float,
    tsunami: bool = False,
    config: SeverityConfig | None = None,
) -> int:
    """Score an event 1–5.

    Monotonic by construction: the magnitude base only grows with
    magnitude, the depth penalty only grows with depth, and the tsunami
    bump is a constant.  The result is clamped to [1, 5].
    """
    cfg = config or get_settings().severity

    base = MIN_SEVERITY
    for threshold in sorted(cfg.magnitude_thresholds, key=lambda t: t.min_magnitude):
        if magnitude >= threshold.min_magnitude:
            base = max(base, threshold.severity)

    penalty = 0
    for rule in cfg.depth_penalties:
        if depth_km >= rule.min_depth_km:
            penalty = max(penalty, rule.penalty)

    score = base - penalty + (cfg.tsunami_bump if tsunami else 0)
    return max(MIN_SEVERITY, min(MAX_SEVERITY, score))


def has_tsunami_context(record: SeismicRecord | TsunamiRecord) -> bool:
    """Whether the record carries a tsunami flag or an actionable bulletin."""
    if record.tsunami_flag:
        return True
    if isinstance(record, TsunamiRecord):
        return record.warning_level != TsunamiWarningLevel.INFORMATION
    return False


class HazardNormalizer:
    """Turns raw feed records into stored, de-duplicated ``HazardEvent``s.

    Usage::

        normalizer = HazardNormalizer(store)
        outcome = await normalizer.ingest(record)
        if outcome.status == IngestStatus.CREATED:
            ...
    """

    def __init__(
        self,
        store: AlertStore,
        config: SeverityConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._config = config or get_settings().severity
        self._clock = clock or Clock()

    def normalize(
        self, record: Mapping[str, Any] | SeismicRecord | TsunamiRecord,
    ) -> HazardEvent:
        """Validate *record* and build a ``HazardEvent``.

        Raises:
            HazardValidationError: missing/invalid coordinates, magnitude,
                depth, timestamp or hazard type.
        """
        if isinstance(record, SeismicRecord | TsunamiRecord):
            parsed = record
        else:
            try:
                parsed = _RECORD_ADAPTER.validate_python(record)
            except ValidationError as exc:
                fields = sorted({".".join(str(p) for p in e["loc"]) for e in exc.errors()})
                raise HazardValidationError(
                    f"Invalid hazard record: {', '.join(fields)}", record,
                ) from exc

        if not math.isfinite(parsed.magnitude) or not math.isfinite(parsed.depth):
            raise HazardValidationError("Magnitude and depth must be finite", record)

        tsunami = has_tsunami_context(parsed)
        warning = parsed.warning_level if isinstance(parsed, TsunamiRecord) else None
        return HazardEvent(
            id=dedup_key(parsed.source, parsed.external_id),
            source=parsed.source,
            external_id=parsed.external_id,
            type=HazardType(parsed.type),
            magnitude=parsed.magnitude,
            depth_km=parsed.depth,
            epicenter=parsed.epicenter,
            occurred_at=parsed.occurred_at,
            tsunami_flag=parsed.tsunami_flag,
            tsunami_warning=warning,
            severity=compute_severity(parsed.magnitude, parsed.depth, tsunami, self._config),
            place=parsed.place,
            ingested_at=self._clock.now(),
        )

    async def ingest(
        self, record: Mapping[str, Any] | SeismicRecord | TsunamiRecord,
    ) -> IngestOutcome:
        """Normalise and store *record*; duplicates are ignored without side effects."""
        try:
            event = self.normalize(record)
        except HazardValidationError as exc:
            logger.warning("hazard_record_rejected", error=str(exc))
            return IngestOutcome(status=IngestStatus.REJECTED, error=str(exc))

        stored, created = await self._store.create_hazard_if_absent(event)
        if not created:
            logger.debug("hazard_duplicate_ignored", hazard_id=stored.id)
            return IngestOutcome(status=IngestStatus.DUPLICATE, event=stored)

        logger.info(
            "hazard_ingested",
            hazard_id=stored.id,
            type=stored.type,
            magnitude=stored.magnitude,
            depth_km=stored.depth_km,
            severity=stored.severity,
            tsunami=stored.tsunami_flag,
        )
        return IngestOutcome(status=IngestStatus.CREATED, event=stored)
