"""Shared exception types for core rebalancing logic."""

from typing import Optional


class VenueOrderError(RuntimeError):
    """Raised when a venue rejects or fails a corrective order."""

    def __init__(self, venue: str, action: str, original: Optional[Exception] = None):
        detail = f"{venue}: {action} failed"
        if original is not None:
            detail = f"{detail} ({original})"
        super().__init__(detail)
        self.venue = venue
        self.action = action
        self.original = original


class PositionUnavailable(RuntimeError):
    """Raised when a venue's base asset position cannot be read."""

    def __init__(self, venue: str, original: Optional[Exception] = None):
        super().__init__(venue)
        self.venue = venue
        self.original = original
