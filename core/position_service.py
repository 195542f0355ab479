"""
venue-rebalancer Core: Position Service

Builds the per-iteration position snapshot (venue -> base asset position)
from the venue adapters.
"""

import logging
from typing import Dict, Mapping

from core.exceptions import PositionUnavailable
from core.venues import VenueAdapter

logger = logging.getLogger(__name__)


class PositionService:
    """Position provider over a set of venue adapters."""

    def __init__(self, adapters: Mapping[str, VenueAdapter]):
        self.adapters = adapters

    def get_positions(self) -> Dict[str, float]:
        """
        Query every venue for its base asset position.

        Venues whose read fails are left out of the snapshot and logged, so
        the caller treats them as "position unknown".
        """
        positions: Dict[str, float] = {}
        for venue, adapter in self.adapters.items():
            try:
                positions[venue] = self.read_position(venue, adapter)
            except PositionUnavailable as exc:
                logger.warning(f"Position unavailable for {venue}: {exc.original or exc}")
        return positions

    @staticmethod
    def read_position(venue: str, adapter: VenueAdapter) -> float:
        try:
            return float(adapter.base_position())
        except Exception as exc:
            raise PositionUnavailable(venue, exc) from exc
