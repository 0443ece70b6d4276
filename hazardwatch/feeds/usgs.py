"""USGS earthquake feed — polls the GeoJSON summary feed."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from hazardwatch.core.clock import Clock
from hazardwatch.core.config import UsgsFeedConfig, get_settings
from hazardwatch.core.types import FeedEvent, FeedEventType
from hazardwatch.feeds.base import BaseFeed
from hazardwatch.feeds.exceptions import (
    FeedConnectionError,
    FeedParseError,
    FeedRateLimitError,
)

logger = structlog.stdlib.get_logger()


def _parse_feature(feature: dict[str, Any], source: str) -> dict[str, Any] | None:
    """Convert one GeoJSON feature into a wire-format hazard record.

    Expected structure::

        {
            "id": "us7000abcd",
            "properties": {"mag": 7.1, "place": "...", "time": 1700000000000,
                           "tsunami": 1},
            "geometry": {"coordinates": [lon, lat, depth_km]}
        }

    Returns None for features that are not earthquakes or lack an id.
    Field validation is left to the normalizer.
    """
    feature_id = feature.get("id")
    if not feature_id:
        return None

    props = feature.get("properties")
    if not isinstance(props, dict):
        props = {}
    if props.get("type", "earthquake") != "earthquake":
        return None

    geometry = feature.get("geometry")
    coords = geometry.get("coordinates") if isinstance(geometry, dict) else None
    epicenter: dict[str, Any] | None = None
    depth: Any = None
    if isinstance(coords, list) and len(coords) >= 2:
        epicenter = {"lat": coords[1], "lon": coords[0]}
        if len(coords) >= 3 and isinstance(coords[2], int | float):
            # Events above sea level report a small negative depth.
            depth = max(float(coords[2]), 0.0)

    return {
        "source": source,
        "externalId": str(feature_id),
        "type": "seismic",
        "magnitude": props.get("mag"),
        "depth": depth,
        "epicenter": epicenter,
        "occurredAt": props.get("time"),
        "tsunamiFlag": bool(props.get("tsunami")),
        "place": props.get("place") or "",
    }


class UsgsFeed(BaseFeed):
    """Seismic feed backed by the USGS real-time GeoJSON summaries.

    Only features not present in the previous response are emitted; a
    restart re-emits everything, which the normalizer de-duplicates.

    Usage::

        feed = UsgsFeed()
        feed.on_event(orchestrator.on_feed_event)
        async with feed:
            await asyncio.sleep(3600)
    """

    def __init__(
        self, config: UsgsFeedConfig | None = None, clock: Clock | None = None,
    ) -> None:
        cfg = config or get_settings().feeds.usgs
        super().__init__(
            source=cfg.source,
            poll_interval_ms=cfg.poll_interval_ms,
            clock=clock,
        )
        self._config = cfg
        self._http: httpx.AsyncClient | None = None
        self._seen: set[str] = set()

    @property
    def connected(self) -> bool:
        """Whether the HTTP client is active."""
        return self._http is not None and not self._http.is_closed

    async def connect(self) -> None:
        """Create the httpx async client."""
        self._http = httpx.AsyncClient(timeout=httpx.Timeout(self._config.timeout_secs))

    async def close(self) -> None:
        """Close the httpx async client."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def poll(self) -> list[FeedEvent]:
        """Fetch the summary feed and return events for unseen features."""
        if self._http is None:
            raise FeedConnectionError("HTTP client not connected")

        try:
            response = await self._http.get(self._config.url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 429:
                raise FeedRateLimitError("USGS feed rate limited") from exc
            raise FeedConnectionError(
                f"USGS feed returned {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise FeedConnectionError(f"USGS feed request failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise FeedParseError("USGS feed returned invalid JSON") from exc

        features = body.get("features") if isinstance(body, dict) else None
        if not isinstance(features, list):
            raise FeedParseError("USGS feed response has no features list")

        now = self._clock.now()
        current: set[str] = set()
        events: list[FeedEvent] = []
        for feature in features:
            if not isinstance(feature, dict):
                continue
            record = _parse_feature(feature, self._config.source)
            if record is None:
                continue
            current.add(record["externalId"])
            if record["externalId"] in self._seen:
                continue
            magnitude = record["magnitude"]
            if isinstance(magnitude, int | float) and magnitude < self._config.min_magnitude:
                continue
            events.append(FeedEvent(
                source=self._config.source,
                event_type=FeedEventType.HAZARD_REPORTED,
                record=record,
                received_at=now,
                raw=feature,
            ))

        self._seen = current
        if events:
            logger.info(
                "usgs_new_features",
                count=len(events),
                ids=[e.record["externalId"] for e in events],
            )
        return events
