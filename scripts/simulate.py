#!/usr/bin/env python3
"""Alert drill — replay hazard records against a directory on simulated time.

Nothing is sent: every channel uses a dry-run sender, and escalation
timers run on a fake clock that advances in fixed ticks.

Usage:
    python -m scripts.simulate records.json --directory config/directory.yaml
    python -m scripts.simulate records.json --directory dir.yaml --ack-after 900
    python -m scripts.simulate records.json --directory dir.yaml --hours 2 --tick 60

Records JSON is a single wire-format record or a list of them::

    [
        {
            "source": "usgs",
            "externalId": "us7000drill",
            "type": "seismic",
            "magnitude": 7.4,
            "depth": 15,
            "epicenter": {"lat": 38.3, "lon": 142.4},
            "occurredAt": "2024-01-01T00:00:00Z",
            "tsunamiFlag": true
        }
    ]
"""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any

from hazardwatch.core.clock import FakeClock
from hazardwatch.core.config import load_settings
from hazardwatch.core.logging import setup_logging
from hazardwatch.core.types import AckChannel, AlertEvent
from hazardwatch.delivery.channels import DryRunSender
from hazardwatch.delivery.factory import create_senders
from hazardwatch.service.orchestrator import AlertOrchestrator
from hazardwatch.storage.memory import InMemoryAlertStore, InMemoryDirectory


def load_records(path: str) -> list[dict[str, Any]]:
    """Load one record or a list of records from a JSON file."""
    with open(path) as f:
        data = json.load(f)
    return data if isinstance(data, list) else [data]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Replay hazard records through the alert pipeline on simulated time.",
    )
    parser.add_argument(
        "records",
        help="Path to records JSON file",
    )
    parser.add_argument(
        "--directory",
        default="config/directory.yaml",
        help="Path to the contacts/assets YAML (default: config/directory.yaml)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to settings YAML (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--hours",
        type=float,
        default=3.0,
        help="Simulated hours to run after ingestion (default: 3)",
    )
    parser.add_argument(
        "--tick",
        type=float,
        default=30.0,
        help="Simulated seconds per timer sweep (default: 30)",
    )
    parser.add_argument(
        "--ack-after",
        type=float,
        default=None,
        help="Acknowledge every open alert after this many simulated seconds",
    )
    parser.add_argument(
        "--start",
        type=float,
        default=1_700_000_000.0,
        help="Simulated epoch seconds at ingestion (default: 1700000000)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Log level (default: WARNING)",
    )
    return parser.parse_args(argv)


async def run_drill(args: argparse.Namespace) -> None:
    settings = load_settings(args.config)
    settings.delivery.dry_run = True
    setup_logging(level=args.log_level, fmt="console")

    records = load_records(args.records)
    directory = InMemoryDirectory.from_yaml(args.directory)
    store = InMemoryAlertStore(directory)
    clock = FakeClock(start=args.start)
    senders = create_senders(settings)

    orchestrator = AlertOrchestrator(
        store, directory, senders=senders, settings=settings, clock=clock,
    )

    timeline: list[str] = []

    def _record(event: AlertEvent) -> None:
        elapsed = clock.now() - args.start
        timeline.append(
            f"  t+{elapsed:>7.0f}s  {event.event_type:<20} {event.alert.id[:8]}"
            f"  step={event.step_index}  deliveries={event.deliveries}"
        )

    orchestrator.engine.on_event(_record)

    print(f"Running drill: {args.records}")
    print(f"  Records: {len(records)}")
    print(f"  Horizon: {args.hours:g} h in {args.tick:g} s ticks")
    print()

    outcomes = await orchestrator.ingest_batch(records)
    for outcome in outcomes:
        hazard = outcome.event
        label = f"{hazard.id} sev={hazard.severity}" if hazard else outcome.error
        print(f"  [{outcome.status.upper()}] {label} alerts={len(outcome.alert_ids)}")
    print()

    acknowledged = False
    elapsed = 0.0
    horizon = args.hours * 3600
    while elapsed < horizon:
        clock.advance(args.tick)
        elapsed += args.tick
        if args.ack_after is not None and not acknowledged and elapsed >= args.ack_after:
            for alert in await orchestrator.active_alerts():
                await orchestrator.acknowledge(alert.id, "drill", via=AckChannel.OPERATOR)
            acknowledged = True
        await orchestrator.scheduler.run_due()
        if not await orchestrator.active_alerts():
            break

    print("TIMELINE")
    print("-" * 72)
    print("\n".join(timeline) or "  (no alert activity)")
    print()

    print("ALERTS")
    print("-" * 72)
    for outcome in outcomes:
        for alert_id in outcome.alert_ids:
            view = await orchestrator.get_alert(alert_id)
            alert = view.alert
            print(
                f"  {alert.id[:8]} {alert.scope:<8} {alert.status:<12}"
                f" step={alert.escalation_step_index} affected={len(view.affected)}"
                f" unresolved={len(view.unresolved_assets)}"
            )
            for summary in view.deliveries.channels.values():
                print(
                    f"      {summary.channel:<6} notifications={summary.notifications}"
                    f" sent={summary.sent} failed={summary.failed}"
                )
    print()

    sent = sum(len(s.sent) for s in senders.values() if isinstance(s, DryRunSender))
    print(f"Drill complete: {sent} messages rendered, {elapsed:g}s simulated")


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    asyncio.run(run_drill(args))


if __name__ == "__main__":
    main()
