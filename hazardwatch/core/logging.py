"""Structured logging setup using structlog.

Everything goes to stderr.  The ``audit`` logger carries alert state
transitions; it stays at INFO or below whatever the root level is, and can
additionally be appended to a JSON-lines file (``logging.audit_path``).
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import structlog

from hazardwatch.core.config import get_settings

AUDIT_LOGGER = "audit"

# Event keys that may hold a phone number, e-mail or chat handle.
ADDRESS_KEYS = frozenset({"address", "to", "from_address"})


def redact_address(value: str) -> str:
    """Mask a recipient address, keeping enough to tell recipients apart.

    >>> redact_address("+15550100")
    '*****0100'
    >>> redact_address("master@pacific-star.example.com")
    'm***@pacific-star.example.com'
    """
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"
    if len(value) <= 4:
        return "*" * len(value)
    return "*" * (len(value) - 4) + value[-4:]


def redact_addresses(
    logger: Any, method_name: str, event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """structlog processor masking contact addresses in event fields."""
    for key in event_dict.keys() & ADDRESS_KEYS:
        value = event_dict[key]
        if isinstance(value, str) and value:
            event_dict[key] = redact_address(value)
    return event_dict


@contextmanager
def bind_alert(alert_id: str, hazard_id: str | None = None) -> Iterator[None]:
    """Attach alert (and hazard) ids to every log line emitted inside the block."""
    ids = {"alert_id": alert_id}
    if hazard_id is not None:
        ids["hazard_id"] = hazard_id
    with structlog.contextvars.bound_contextvars(**ids):
        yield


def setup_logging(
    level: str | None = None,
    fmt: str | None = None,
    audit_path: str | None = None,
) -> None:
    """Configure structlog with JSON or console renderer.

    Args:
        level: Log level override (e.g. "DEBUG"). Uses config if None.
        fmt: Renderer format override ("json" or "console"). Uses config if None.
        audit_path: File receiving alert transitions as JSON lines. Uses
            config if None; an empty string disables the file.
    """
    settings = get_settings().logging
    log_level = getattr(logging, (level or settings.level).upper(), logging.INFO)
    log_format = fmt or settings.format
    audit_file = settings.audit_path if audit_path is None else audit_path

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.redact_addresses:
        shared_processors.append(redact_addresses)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if log_format == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_formatter(renderer))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    audit_logger = logging.getLogger(AUDIT_LOGGER)
    for old in list(audit_logger.handlers):
        audit_logger.removeHandler(old)
        old.close()
    # Transition records are always kept, even when the root level is higher.
    audit_logger.setLevel(min(log_level, logging.INFO))
    if audit_file:
        Path(audit_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(audit_file, encoding="utf-8")
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
        audit_logger.addHandler(file_handler)


def _formatter(renderer: structlog.types.Processor) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
