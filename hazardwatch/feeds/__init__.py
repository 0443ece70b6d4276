"""Hazard feed connectors — external sources of seismic and tsunami reports."""

from hazardwatch.feeds.base import BaseFeed, FeedEventCallback
from hazardwatch.feeds.exceptions import (
    FeedConnectionError,
    FeedError,
    FeedParseError,
    FeedRateLimitError,
)
from hazardwatch.feeds.usgs import UsgsFeed

__all__ = [
    "BaseFeed",
    "FeedConnectionError",
    "FeedError",
    "FeedEventCallback",
    "FeedParseError",
    "FeedRateLimitError",
    "UsgsFeed",
]
