from __future__ import annotations

from typing import Optional


class AggregatorError(Exception):
    """Root of every error raised by the aggregator."""


class ConfigError(AggregatorError):
    """Invalid static configuration (unknown venue family, bad venue file)."""


class ValidationError(AggregatorError):
    """Malformed or incomplete client request."""

    def __init__(self, message: str, *, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NoRouteError(AggregatorError):
    """No viable route could be built from the collected quotes."""


class VenueError(AggregatorError):
    """Per-venue pricing failure. Recoverable by excluding the venue."""

    reason = "venue_error"

    def __init__(self, venue: str, message: str = ""):
        super().__init__(f"{venue}: {message or self.reason}")
        self.venue = str(venue)


class VenueUnavailable(VenueError):
    """No liquidity, insufficient depth, RPC failure or timeout."""

    reason = "unavailable"


class InvalidPair(VenueError):
    """The venue has no pool for the asset pair."""

    reason = "invalid_pair"


class StaleState(VenueError):
    """Venue state is older than the configured tolerance."""

    reason = "stale_state"
