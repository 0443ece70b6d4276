"""Hazard ingestion exceptions."""

from __future__ import annotations


class HazardError(Exception):
    """Base exception for hazard processing errors."""


class HazardValidationError(HazardError):
    """A raw feed record is malformed and was rejected."""

    def __init__(self, message: str, record: object = None) -> None:
        super().__init__(message)
        self.record = record
