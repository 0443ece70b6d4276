"""Hazard alert orchestration and escalation engine."""
