"""Persistence exceptions."""

from __future__ import annotations


class StorageError(Exception):
    """Base exception for persistence errors."""


class RecordNotFoundError(StorageError):
    """The requested record does not exist."""


class ConcurrencyConflictError(StorageError):
    """A compare-and-set update lost against a newer version."""

    def __init__(self, record_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"{record_id}: expected version {expected}, found {actual}"
        )
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


class IntegrityError(StorageError):
    """A write would break a referential or monotonicity invariant."""
