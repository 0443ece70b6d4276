"""Persistence contracts and the in-memory reference store."""

from hazardwatch.storage.base import AlertStore, Directory
from hazardwatch.storage.exceptions import (
    ConcurrencyConflictError,
    IntegrityError,
    RecordNotFoundError,
    StorageError,
)
from hazardwatch.storage.memory import InMemoryAlertStore, InMemoryDirectory

__all__ = [
    "AlertStore",
    "ConcurrencyConflictError",
    "Directory",
    "InMemoryAlertStore",
    "InMemoryDirectory",
    "IntegrityError",
    "RecordNotFoundError",
    "StorageError",
]
