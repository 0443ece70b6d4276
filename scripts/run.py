#!/usr/bin/env python3
"""Service entrypoint — wires the alert orchestrator and runs until interrupted.

Usage::

    # Run with default config
    python scripts/run.py --directory config/directory.yaml

    # Custom config file
    python scripts/run.py --config config/settings.yaml --directory config/directory.yaml

    # Override log level
    python scripts/run.py --directory config/directory.yaml --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

import structlog

from hazardwatch.core.config import load_settings
from hazardwatch.core.logging import setup_logging
from hazardwatch.core.types import AlertEvent
from hazardwatch.feeds.base import BaseFeed
from hazardwatch.feeds.usgs import UsgsFeed
from hazardwatch.service.orchestrator import AlertOrchestrator
from hazardwatch.storage.memory import InMemoryAlertStore, InMemoryDirectory

logger = structlog.get_logger(__name__)


async def run(args: argparse.Namespace) -> int:
    """Start all components and run until interrupted."""
    settings = load_settings(args.config)
    setup_logging(level=args.log_level)

    logger.info(
        "service_starting",
        usgs=settings.feeds.usgs.enabled,
        dry_run=settings.delivery.dry_run,
        broadcast=settings.broadcast.enabled,
    )

    # ── Directory + store ────────────────────────────────────────
    directory = InMemoryDirectory.from_yaml(args.directory)
    store = InMemoryAlertStore(directory)

    # ── Data feeds ───────────────────────────────────────────────
    feeds: list[BaseFeed] = []

    if settings.feeds.usgs.enabled:
        feeds.append(UsgsFeed(settings.feeds.usgs))
        logger.info("feed_enabled", feed="usgs")

    if not feeds:
        logger.error("no_feeds_enabled")
        print(
            "No feeds enabled. Enable at least one feed in config/settings.yaml "
            "(feeds.usgs.enabled).",
            file=sys.stderr,
        )
        return 1

    # ── Orchestrator ─────────────────────────────────────────────
    orchestrator = AlertOrchestrator(store, directory, settings=settings, feeds=feeds)

    def _log_transition(event: AlertEvent) -> None:
        logger.info(
            "alert_event",
            event_type=event.event_type,
            alert_id=event.alert.id,
            status=event.alert.status,
            step_index=event.step_index,
        )

    orchestrator.engine.on_event(_log_transition)

    # ── Start everything ─────────────────────────────────────────
    await orchestrator.start()
    logger.info("service_running", feeds=len(feeds))

    # ── Wait for shutdown signal ─────────────────────────────────
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("shutdown_signal_received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows: signal handlers not supported on ProactorEventLoop
            pass

    try:
        await stop_event.wait()
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")

    # ── Graceful shutdown ────────────────────────────────────────
    logger.info("service_shutting_down")
    await orchestrator.stop()

    # ── Final summary ────────────────────────────────────────────
    status = await orchestrator.status()
    stats = await orchestrator.delivery_stats()
    logger.info(
        "service_stopped",
        hazards_ingested=status.hazards_ingested,
        duplicates_ignored=status.duplicates_ignored,
        active_alerts=status.active_alerts,
        delivery_attempts=stats.total_attempts,
        delivery_failures=stats.total_failed,
        **orchestrator.engine.stats,
    )

    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run the hazard alert orchestration service.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to settings YAML (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--directory",
        default="config/directory.yaml",
        help="Path to the contacts/assets YAML (default: config/directory.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level override: DEBUG, INFO, WARNING, ERROR",
    )
    args = parser.parse_args()

    code = asyncio.run(run(args))
    sys.exit(code)


if __name__ == "__main__":
    main()
