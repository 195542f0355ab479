"""
venue-rebalancer Infrastructure: State Store

JSON state shared with the arbitrage engine. The engine writes its open
arbitrage pairs and the spread stats it observes; the rebalancer only reads
that file. The keys the rebalancer publishes back (the adaptive threshold)
live in a separate overrides file that only the rebalancer writes.
"""

import json
import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from pathlib import Path
import logging

from core.spread_stats import SpreadSample

logger = logging.getLogger(__name__)


DEFAULT_STATE = {
    "active_pairs": [],  # open arbitrage pairs (engine-owned)
    "spread_stats": [],  # [{timestamp, profit_percent}] (engine-owned)
}


class StateStore:
    """
    Persistent state storage using JSON files.

    Features:
    - Atomic writes (temp file + rename)
    - Defaults merged on load
    - Thread-safe operations
    - Rebalancer-owned overrides kept out of the engine's state file
    """

    def __init__(self, state_file: Optional[str] = None, overrides_file: Optional[str] = None):
        """
        Initialize state store.

        Args:
            state_file: Path to state JSON file (default: data/.state.json)
            overrides_file: Path to published overrides (default: <state>.overrides.json
                next to the state file)
        """
        if state_file:
            self.state_file = Path(state_file)
        else:
            self.state_file = Path(os.getenv("STATE_FILE", "data/.state.json"))

        if overrides_file:
            self.overrides_file = Path(overrides_file)
        else:
            self.overrides_file = self.state_file.with_name(f"{self.state_file.stem}.overrides.json")

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self.overrides_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        logger.info(f"Initialized StateStore at {self.state_file} (overrides: {self.overrides_file})")

    def load(self) -> Dict[str, Any]:
        """
        Load state from file.

        Returns:
            State dict with defaults merged
        """
        data = self._read_json(self.state_file)
        if data is None:
            return json.loads(json.dumps(DEFAULT_STATE))
        return {**DEFAULT_STATE, **data}

    def save(self, state: Dict[str, Any]) -> None:
        """
        Save state to file atomically.

        Args:
            state: State dict to save
        """
        self._write_json(self.state_file, state)
        logger.debug("Saved state to file")

    def get_active_pair_count(self) -> int:
        """Number of arbitrage pairs currently open."""
        pairs = self.load().get("active_pairs") or []
        return len(pairs)

    def spread_stats_since(self, after: Optional[datetime]) -> List[SpreadSample]:
        """
        Samples newer than `after`, oldest first.

        Malformed entries are skipped with a warning.
        """
        samples = []
        for raw in self.load().get("spread_stats") or []:
            try:
                sample = SpreadSample.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning(f"Skipping malformed spread stat {raw!r}: {exc}")
                continue
            if after is None or sample.timestamp > after:
                samples.append(sample)
        samples.sort(key=lambda s: s.timestamp)
        return samples

    def spread_stats_history(self, window_seconds: float, now: Optional[datetime] = None) -> List[SpreadSample]:
        """Samples inside the trailing window, used to backfill the tracker."""
        now = now or datetime.now(timezone.utc)
        return self.spread_stats_since(now - timedelta(seconds=window_seconds))

    def load_overrides(self) -> Dict[str, Any]:
        """Config keys previously published by the rebalancer."""
        return self._read_json(self.overrides_file) or {}

    def publish_overrides(self, overrides: Dict[str, Any]) -> None:
        """Persist config keys changed at runtime so the engine can pick them up."""
        if not overrides:
            return
        current = self.load_overrides()
        current.update(overrides)
        self._write_json(self.overrides_file, current)
        logger.debug(f"Published overrides: {sorted(overrides)}")

    def _read_json(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            logger.debug(f"No file at {path}, using defaults")
            return None

        with self._lock:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)

        if not isinstance(data, dict):
            logger.warning(f"Invalid format in {path}, using defaults")
            return None
        return data

    def _write_json(self, path: Path, data: Dict[str, Any]) -> None:
        with self._lock:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=path.parent,
                prefix=f"{path.stem}_",
                suffix=".json.tmp",
            )
            try:
                with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                os.replace(temp_path, path)
            except Exception:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
