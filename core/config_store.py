"""
venue-rebalancer Core: Config Store

Owns the validated venue list and the dynamic settings that other components
update at runtime (e.g. the spread-stat threshold).
"""

import logging
import threading
from copy import deepcopy
from typing import Any, Dict, Iterable, List, Optional

from core.venues import VenueConfig

logger = logging.getLogger(__name__)


class ConfigStore:
    """
    Read-mostly configuration with partial-update merges.

    Venue configs are replaced only by reload(); dynamic settings accept
    merges from any thread.
    """

    def __init__(self, venues: Iterable[VenueConfig], settings: Optional[Dict[str, Any]] = None):
        self._lock = threading.Lock()
        self._venues: List[VenueConfig] = list(venues)
        self._settings: Dict[str, Any] = dict(settings or {})

    @classmethod
    def from_config(cls, venues_config: Dict[str, Any], settings: Optional[Dict[str, Any]] = None) -> "ConfigStore":
        venues = [VenueConfig.from_dict(raw) for raw in (venues_config.get("venues") or [])]
        base = {"symbol": venues_config.get("symbol", "BTC/JPY")}
        base.update(settings or {})
        return cls(venues, base)

    @property
    def venues(self) -> List[VenueConfig]:
        with self._lock:
            return list(self._venues)

    def enabled_venues(self) -> List[VenueConfig]:
        return [v for v in self.venues if v.enabled]

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._settings.get(key, default)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return deepcopy(self._settings)

    def merge(self, partial: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Merge a partial update into the dynamic settings.

        Args:
            partial: Mapping of changed keys; None or empty is a no-op

        Returns:
            Dict of keys whose value actually changed
        """
        if not partial:
            return {}
        changed: Dict[str, Any] = {}
        with self._lock:
            for key, value in partial.items():
                if self._settings.get(key) != value:
                    changed[key] = value
                self._settings[key] = value
        if changed:
            logger.info("Config updated: %s", ", ".join(f"{k}={v}" for k, v in changed.items()))
        return changed

    def reload(self, venues: Iterable[VenueConfig]) -> None:
        with self._lock:
            self._venues = list(venues)
        logger.info("Reloaded %d venue config(s)", len(self._venues))
