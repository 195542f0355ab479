"""
venue-rebalancer Core: Spread Statistics

Tracks the profitability of recent spread observations over a trailing time
window and derives the minimum target profit percent used to gate new
arbitrage pairs.

The window statistics are maintained with a sliding Welford update: samples
are added on observe and removed again when they age out, so mean and
variance always describe exactly the samples currently in the window.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Deque, Dict, Iterable, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 180.0
DEFAULT_MIN_THRESHOLD = 0.25
DEFAULT_PRECISION = 3

THRESHOLD_KEY = "min_target_profit_percent"


@dataclass(frozen=True)
class SpreadSample:
    """One observation of the best-case profit percent against notional"""
    timestamp: datetime
    profit_percent: float

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "SpreadSample":
        ts = raw["timestamp"]
        if isinstance(ts, (int, float)):
            # Epoch milliseconds
            timestamp = datetime.fromtimestamp(float(ts) / 1000.0, tz=timezone.utc)
        elif isinstance(ts, datetime):
            timestamp = ts
        else:
            timestamp = datetime.fromisoformat(str(ts).replace("Z", "+00:00"))
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(timestamp=timestamp, profit_percent=float(raw["profit_percent"]))

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "profit_percent": self.profit_percent}


def round_half_up(value: float, precision: int) -> float:
    """Round like a spreadsheet does (0.0005 -> 0.001), not banker's rounding."""
    quantum = Decimal(1).scaleb(-precision)
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))


class SpreadStatTracker:
    """
    Online mean/variance of spread profit percent over a trailing window.

    Constructed once with historical backfill, then driven by repeated
    observe() calls. Never performs I/O.
    """

    def __init__(
        self,
        history: Iterable[SpreadSample] = (),
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        min_threshold: float = DEFAULT_MIN_THRESHOLD,
        precision: int = DEFAULT_PRECISION,
    ):
        """
        Args:
            history: Initial samples (population stats computed directly)
            window_seconds: Trailing window length
            min_threshold: Floor applied to the derived threshold
            precision: Decimal places of the derived threshold
        """
        self.window_duration = timedelta(seconds=float(window_seconds))
        self.min_threshold = float(min_threshold)
        self.precision = int(precision)

        samples = sorted(history, key=lambda s: s.timestamp)
        self._window: Deque[SpreadSample] = deque(samples)

        values = np.array([s.profit_percent for s in samples], dtype=float)
        self._count = len(samples)
        if self._count:
            self._mean = float(np.mean(values))
            # Welford's M2: sum of squared deviations from the mean
            self._m2 = float(np.var(values)) * self._count
        else:
            self._mean = 0.0
            self._m2 = 0.0

        logger.info(
            "Initialized SpreadStatTracker with %d historical samples (window=%ss)",
            self._count,
            self.window_duration.total_seconds(),
        )

    @property
    def window(self) -> Tuple[SpreadSample, ...]:
        return tuple(self._window)

    @property
    def sample_count(self) -> int:
        return self._count

    @property
    def mean(self) -> float:
        return self._mean

    @property
    def variance(self) -> float:
        """Population variance of the window (0 when empty)"""
        if self._count == 0:
            return 0.0
        return self._m2 / self._count

    @property
    def std_dev(self) -> float:
        """Bessel-corrected sample standard deviation; NaN when n <= 1"""
        if self._count <= 1:
            return math.nan
        return math.sqrt(self._m2 / (self._count - 1))

    def observe(self, sample: SpreadSample, now: Optional[datetime] = None) -> Optional[Dict[str, float]]:
        """
        Record a new sample and derive the adaptive threshold.

        Args:
            sample: New spread observation
            now: Current time (defaults to wall clock, UTC)

        Returns:
            Partial config update {"min_target_profit_percent": value}, or None
            when the statistic is not finite (fewer than two samples).
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.window_duration

        self._append(sample)
        self._prune(cutoff)

        n = self._count
        mean = self._mean
        std_dev = self.std_dev
        raw = mean + std_dev
        if not math.isfinite(raw):
            logger.debug("Spread stats not finite yet (n=%d); no threshold update", n)
            return None

        threshold = max(round_half_up(raw, self.precision), self.min_threshold)
        logger.info(
            "μ: %s, σ: %s, n: %d => %s: %s",
            round_half_up(mean, self.precision),
            round_half_up(std_dev, self.precision),
            n,
            THRESHOLD_KEY,
            threshold,
        )
        return {THRESHOLD_KEY: threshold}

    def _append(self, sample: SpreadSample) -> None:
        if self._window and sample.timestamp < self._window[-1].timestamp:
            # Out-of-order arrival: keep the deque ordered so pruning from the left stays exact
            self._window = deque(sorted([*self._window, sample], key=lambda s: s.timestamp))
        else:
            self._window.append(sample)
        self._add(sample.profit_percent)

    def _prune(self, cutoff: datetime) -> None:
        while self._window and self._window[0].timestamp <= cutoff:
            expired = self._window.popleft()
            self._remove(expired.profit_percent)

    def _add(self, value: float) -> None:
        self._count += 1
        delta = value - self._mean
        self._mean += delta / self._count
        self._m2 += delta * (value - self._mean)

    def _remove(self, value: float) -> None:
        if self._count <= 1:
            self._count = 0
            self._mean = 0.0
            self._m2 = 0.0
            return
        self._count -= 1
        delta = value - self._mean
        self._mean -= delta / self._count
        self._m2 -= delta * (value - self._mean)
        # Floating point drift can push M2 fractionally negative
        if self._m2 < 0.0:
            self._m2 = 0.0
