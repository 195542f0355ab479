"""Test helpers for venue-rebalancer test suite"""

from tests.helpers.venue_stubs import (
    StubVenueAdapter,
    StaticPositions,
    StaticActivePairs,
    make_venue,
)

__all__ = [
    "StubVenueAdapter",
    "StaticPositions",
    "StaticActivePairs",
    "make_venue",
]
