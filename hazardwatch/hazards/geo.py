"""Geospatial resolution — haversine distance and impact-band classification.

All distances are in kilometres, coordinates in decimal degrees.  Every
function here is pure: the same inputs always produce the same output, and
``resolve`` is independent of the order in which candidates are supplied.

Impact radius model
===================
Deeper events shed energy before reaching the surface, so magnitude is
reduced by one unit per 100 km of depth before the exponential radius::

    base   = 10 ^ (0.5 · (M − depth/100)) · scale
    strong = base × 10      moderate = base × 30
    light  = base × 80      weak     = base × 150

An asset inside the weak ring (or tighter) is affected; its risk band
follows the tightest ring containing it.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

from pydantic import BaseModel, Field

from hazardwatch.core.config import GeoConfig, get_settings
from hazardwatch.core.types import (
    AffectedEntity,
    Asset,
    HazardEvent,
    ImpactBand,
    ImpactRadii,
    Position,
    RiskBand,
)

EARTH_RADIUS_KM: float = 6_371.0088  # IAU mean radius

# Average deep-ocean tsunami wave speed.
TSUNAMI_WAVE_SPEED_KMH: float = 750.0

RISK_BY_IMPACT: dict[ImpactBand, RiskBand] = {
    ImpactBand.STRONG: RiskBand.CRITICAL,
    ImpactBand.MODERATE: RiskBand.HIGH,
    ImpactBand.LIGHT: RiskBand.MODERATE,
    ImpactBand.WEAK: RiskBand.LOW,
}


class Resolution(BaseModel):
    """Outcome of one resolution pass."""

    radii: ImpactRadii
    affected: list[AffectedEntity] = Field(default_factory=list)
    unresolved: list[str] = Field(default_factory=list)


def haversine_km(a: Position, b: Position) -> float:
    """Great-circle distance between two points."""
    lat1, lon1 = math.radians(a.lat), math.radians(a.lon)
    lat2, lon2 = math.radians(b.lat), math.radians(b.lon)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


def impact_radii(
    magnitude: float, depth_km: float, config: GeoConfig | None = None,
) -> ImpactRadii:
    """Radius of each impact band for an event."""
    cfg = config or get_settings().geo
    surface_magnitude = magnitude - depth_km / 100.0
    base = 10 ** (0.5 * surface_magnitude) * cfg.base_radius_scale_km
    mult = cfg.band_multipliers
    return ImpactRadii(
        strong=base * mult["strong"],
        moderate=base * mult["moderate"],
        light=base * mult["light"],
        weak=base * mult["weak"],
    )


def depth_class(depth_km: float) -> str:
    """Shallow (<70 km), intermediate (<300 km) or deep."""
    if depth_km >= 300:
        return "deep"
    if depth_km >= 70:
        return "intermediate"
    return "shallow"


def tsunami_eta_minutes(distance_km: float) -> int:
    """Rough arrival time of a tsunami wave at *distance_km*."""
    return round(distance_km / TSUNAMI_WAVE_SPEED_KMH * 60)


def _in_bounding_box(origin: Position, radius_km: float, point: Position) -> bool:
    """Cheap rectangular pre-filter; never rejects a point inside the circle."""
    dlat = math.degrees(radius_km / EARTH_RADIUS_KM)
    if dlat >= 90 or abs(origin.lat) + dlat >= 90:
        return True
    if abs(point.lat - origin.lat) > dlat:
        return False
    dlon = math.degrees(
        math.asin(min(1.0, math.sin(radius_km / EARTH_RADIUS_KM) / math.cos(math.radians(origin.lat))))
    )
    diff = abs(point.lon - origin.lon) % 360
    return min(diff, 360 - diff) <= dlon


def recommendation(event: HazardEvent, risk: RiskBand, distance_km: float) -> str:
    """Guidance text for an asset at the given risk band."""
    parts = [f"M{event.magnitude:.1f} {event.type.value} event {distance_km:.0f} km away."]
    tsunami = event.tsunami_flag or event.tsunami_warning is not None
    if tsunami and risk in (RiskBand.CRITICAL, RiskBand.HIGH):
        parts.append(
            "TSUNAMI RISK: move to deep water (>200 m) or safe harbour immediately."
            f" Estimated arrival in {tsunami_eta_minutes(distance_km)} min."
        )
    elif tsunami:
        parts.append("Possible tsunami. Monitor warning-centre bulletins.")
    if risk == RiskBand.CRITICAL:
        parts.append("Strong shaking expected. Secure cargo and prepare for aftershocks.")
    elif risk == RiskBand.HIGH:
        parts.append("Prepare to alter course and secure loose items.")
    else:
        parts.append("Monitor local authorities and remain vigilant.")
    return " ".join(parts)


def resolve(
    event: HazardEvent,
    candidates: Iterable[Asset],
    config: GeoConfig | None = None,
) -> Resolution:
    """Classify *candidates* against the event's impact rings.

    Assets without a position are reported in ``unresolved``.  The affected
    list is sorted by distance, then asset id, so output never depends on
    input order.
    """
    cfg = config or get_settings().geo
    radii = impact_radii(event.magnitude, event.depth_km, cfg)

    affected: list[AffectedEntity] = []
    unresolved: list[str] = []
    for asset in candidates:
        if asset.position is None:
            unresolved.append(asset.id)
            continue
        if cfg.use_bounding_box and not _in_bounding_box(event.epicenter, radii.weak, asset.position):
            continue
        distance = haversine_km(event.epicenter, asset.position)
        band = radii.band_for(distance)
        if band is None:
            continue
        risk = RISK_BY_IMPACT[band]
        affected.append(AffectedEntity(
            asset_id=asset.id,
            asset_kind=asset.kind,
            asset_name=asset.name,
            distance_km=round(distance, 3),
            impact_band=band,
            risk_band=risk,
            recommendation=recommendation(event, risk, distance),
            contacts=list(asset.contacts),
        ))

    affected.sort(key=lambda e: (e.distance_km, e.asset_id))
    unresolved.sort()
    return Resolution(radii=radii, affected=affected, unresolved=unresolved)
