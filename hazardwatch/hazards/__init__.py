"""Hazard normalisation and geospatial impact resolution."""

from hazardwatch.hazards.exceptions import HazardError, HazardValidationError
from hazardwatch.hazards.geo import (
    RISK_BY_IMPACT,
    Resolution,
    depth_class,
    haversine_km,
    impact_radii,
    resolve,
    tsunami_eta_minutes,
)
from hazardwatch.hazards.normalizer import (
    HazardNormalizer,
    compute_severity,
    dedup_key,
    has_tsunami_context,
)

__all__ = [
    "RISK_BY_IMPACT",
    "HazardError",
    "HazardNormalizer",
    "HazardValidationError",
    "Resolution",
    "compute_severity",
    "dedup_key",
    "depth_class",
    "has_tsunami_context",
    "haversine_km",
    "impact_radii",
    "resolve",
    "tsunami_eta_minutes",
]
