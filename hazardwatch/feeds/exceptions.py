"""Exception hierarchy for hazard feed connectors."""

from __future__ import annotations


class FeedError(Exception):
    """Base exception for all feed errors."""


class FeedConnectionError(FeedError):
    """Failed to reach a hazard data source."""


class FeedParseError(FeedError):
    """Failed to parse a response from a hazard data source."""


class FeedRateLimitError(FeedError):
    """Rate limited by the data source."""
