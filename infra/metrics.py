"""Prometheus-backed metrics hooks for the position adjuster and spread stats."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


@dataclass
class TickStats:
    status: str
    venues_evaluated: int
    actions_dispatched: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose adjuster stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_tick_stats: Optional[TickStats] = None
        self._tick_outcomes: Dict[str, int] = {}
        self._venue_actions: Dict[str, int] = {}
        self._guard_resets = 0
        self._last_threshold: Optional[float] = None
        self._last_window_size = 0

        if not self._enabled:
            self._tick_summary = None
            self._tick_counter = None
            self._venue_action_counter = None
            self._guard_reset_counter = None
            self._threshold_gauge = None
            self._window_gauge = None
            return

        self._tick_summary = Summary(
            "adjuster_tick_duration_seconds",
            "Duration of a full position adjuster iteration",
        )
        self._tick_counter = Counter(
            "adjuster_tick_total",
            "Position adjuster ticks by outcome",
            labelnames=("status",),
        )
        self._venue_action_counter = Counter(
            "adjuster_venue_actions_total",
            "Corrective venue actions by venue, action and result",
            labelnames=("venue", "action", "result"),
        )
        self._guard_reset_counter = Counter(
            "adjuster_guard_resets_total",
            "Times the running guard was force-cleared after overlapping ticks",
        )
        self._threshold_gauge = Gauge(
            "spread_min_target_profit_percent",
            "Current adaptive minimum target profit percent",
        )
        self._window_gauge = Gauge(
            "spread_stat_window_samples",
            "Samples in the spread statistics window",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            from prometheus_client import REGISTRY
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(("adjuster_", "spread_")) for name in names):
                    try:
                        REGISTRY.unregister(collector)
                    except KeyError:
                        pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2]
        last_error: Optional[OSError] = None

        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning("Port %s in use, successfully bound to port %s instead", self._port, port)
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc

        logger.error("Failed to start Prometheus exporter on ports %s: %s", ports_to_try, last_error)

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_tick(self, stats: TickStats) -> None:
        self._tick_outcomes[stats.status] = self._tick_outcomes.get(stats.status, 0) + 1
        if self._enabled:
            assert self._tick_summary and self._tick_counter
            self._tick_summary.observe(stats.duration_seconds)
            self._tick_counter.labels(status=stats.status).inc()
        self._last_tick_stats = stats

    def record_venue_action(self, venue: str, action: str, result: str) -> None:
        key = f"{venue}:{action}:{result}"
        self._venue_actions[key] = self._venue_actions.get(key, 0) + 1
        if self._enabled and self._venue_action_counter:
            self._venue_action_counter.labels(venue=venue, action=action, result=result).inc()

    def record_guard_reset(self) -> None:
        self._guard_resets += 1
        if self._enabled and self._guard_reset_counter:
            self._guard_reset_counter.inc()

    def record_threshold(self, threshold: float, window_size: int) -> None:
        self._last_threshold = threshold
        self._last_window_size = window_size
        if self._enabled and self._threshold_gauge and self._window_gauge:
            self._threshold_gauge.set(threshold)
            self._window_gauge.set(window_size)

    def last_tick(self) -> Optional[TickStats]:
        return self._last_tick_stats

    def tick_outcomes(self) -> Dict[str, int]:
        return dict(self._tick_outcomes)

    def venue_actions(self) -> Dict[str, int]:
        return dict(self._venue_actions)

    def guard_resets(self) -> int:
        return self._guard_resets

    def last_threshold(self) -> Optional[float]:
        return self._last_threshold
