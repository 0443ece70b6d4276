"""Service wiring — the alert orchestrator."""

from hazardwatch.service.orchestrator import AlertOrchestrator

__all__ = ["AlertOrchestrator"]
