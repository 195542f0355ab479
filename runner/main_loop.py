"""
venue-rebalancer Runner: Main Loop

Wires the position adjuster and the spread statistics tracker to their
collaborators and drives both on fixed cadences.

Flow:
1. Validate and load config (app.yaml, venues.yaml)
2. Build venue adapters (paper or registered live adapters)
3. Backfill the spread stat tracker from shared state
4. Every loop interval: fire a position adjuster tick on its own thread
5. Every stats interval: feed new spread stats to the tracker and publish
   the resulting threshold
"""

import signal
import threading
import time
import yaml
from datetime import datetime
from typing import Dict, List, Optional
from pathlib import Path
import logging

from core.config_store import ConfigStore
from core.paper_venue import PaperVenueAdapter
from core.position_adjuster import AdjusterSettings, PositionAdjuster, TickResult
from core.position_service import PositionService
from core.spread_stats import SpreadStatTracker, THRESHOLD_KEY
from core.venues import VenueAdapter, VenueConfig, build_live_adapters
from infra.alerting import AlertService
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore

logger = logging.getLogger(__name__)


class AdjusterLoop:
    """
    Process-level orchestrator.

    Responsibilities:
    - Load and validate config
    - Configure logging, metrics and alerts
    - Schedule adjuster ticks and spread stat polls
    - Shut down cleanly on SIGINT/SIGTERM
    """

    def __init__(self, config_dir: str = "config"):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                logger.error(f"{idx:>2}. {error}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.venues_config = self._load_yaml("venues.yaml")

        self.mode = str((self.app_config.get("app") or {}).get("mode", "PAPER")).upper()
        if self.mode not in {"PAPER", "LIVE"}:
            raise ValueError(f"Invalid mode: {self.mode}")

        # Logging setup
        log_cfg = self.app_config.get("logging") or {}
        log_file = log_cfg.get("file", "logs/venue-rebalancer.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )
        logger.info(f"Starting venue-rebalancer in mode={self.mode}")

        self.loop_config = self.app_config.get("loop") or {}
        self.stats_config = self.app_config.get("stats") or {}
        self.interval_seconds = float(self.loop_config.get("interval_seconds", 3.0))
        self.stats_interval_seconds = float(self.stats_config.get("interval_seconds", 3.0))
        self.stats_enabled = bool(self.stats_config.get("enabled", True))

        monitoring_cfg = self.app_config.get("monitoring") or {}
        self.metrics = MetricsRecorder(
            enabled=bool(monitoring_cfg.get("metrics_enabled", False)),
            port=int(monitoring_cfg.get("metrics_port", 9100)),
        )
        self.metrics.start()
        self.alerts = AlertService.from_config(
            bool(monitoring_cfg.get("alerts_enabled", False)),
            monitoring_cfg.get("alerts"),
        )

        state_cfg = self.app_config.get("state") or {}
        self.state_store = StateStore(state_cfg.get("file"), state_cfg.get("overrides_file"))
        overrides = self.state_store.load_overrides()
        self.config_store = ConfigStore.from_config(self.venues_config, settings=overrides)

        self.adapters = self._build_adapters(self.config_store.venues)
        self.position_service = PositionService(self.adapters)

        window_seconds = float(self.stats_config.get("window_seconds", 180.0))
        history = self.state_store.spread_stats_history(window_seconds)
        self.tracker = SpreadStatTracker(
            history=history,
            window_seconds=window_seconds,
            min_threshold=float(self.stats_config.get("min_threshold", 0.25)),
            precision=int(self.stats_config.get("precision", 3)),
        )
        self._last_sample_at: Optional[datetime] = history[-1].timestamp if history else None

        self.adjuster = PositionAdjuster(
            config_store=self.config_store,
            position_provider=self.position_service,
            active_pair_store=self.state_store,
            adapters=self.adapters,
            settings=AdjusterSettings.from_config(self.loop_config),
            metrics=self.metrics,
            alerts=self.alerts,
        )

        self._running = False
        self._tick_threads: List[threading.Thread] = []

    def _load_yaml(self, filename: str) -> dict:
        """Load YAML config file"""
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _build_adapters(self, venues: List[VenueConfig]) -> Dict[str, VenueAdapter]:
        enabled = [v for v in venues if v.enabled]
        if self.mode == "LIVE":
            return build_live_adapters(enabled)
        return {v.venue: PaperVenueAdapter.from_config(v) for v in enabled}

    def poll_stats(self) -> Optional[float]:
        """
        Feed new spread stats to the tracker and publish the threshold.

        Returns:
            The latest threshold merged into config, if any
        """
        latest: Optional[float] = None
        try:
            samples = self.state_store.spread_stats_since(self._last_sample_at)
            for sample in samples:
                self._last_sample_at = sample.timestamp
                update = self.tracker.observe(sample)
                if not update:
                    continue
                changed = self.config_store.merge(update)
                latest = update[THRESHOLD_KEY]
                if changed:
                    self.state_store.publish_overrides(changed)
            if latest is not None:
                self.metrics.record_threshold(latest, self.tracker.sample_count)
        except Exception as exc:
            logger.warning(f"Spread stat poll failed: {exc}", exc_info=True)
        return latest

    def fire_tick(self) -> threading.Thread:
        """Start a tick without waiting for it; a slow tick overlaps the next one."""
        thread = threading.Thread(target=self._safe_tick, name="adjuster-tick", daemon=True)
        thread.start()
        self._tick_threads = [t for t in self._tick_threads if t.is_alive()]
        self._tick_threads.append(thread)
        return thread

    def _safe_tick(self) -> None:
        try:
            self.adjuster.tick()
        except Exception as exc:
            logger.error(f"Adjuster tick raised: {exc}", exc_info=True)

    def run_once(self) -> TickResult:
        """Single pass for --once: poll stats, rebalance without warm-up, wait for orders."""
        if self.stats_enabled:
            self.poll_stats()
        result = self.adjuster.run_once()
        self.adjuster.wait_for_orders()
        logger.info(f"Single pass finished: status={result.status}, actions={len(result.actions)}")
        return result

    def run_forever(self) -> None:
        """Drive ticks and stats polls until stop() or a termination signal."""
        self._running = True
        self._install_signal_handlers()
        self.adjuster.start()
        logger.info(
            f"Starting continuous loop (tick interval={self.interval_seconds}s, "
            f"stats interval={self.stats_interval_seconds}s)"
        )

        next_tick = next_stats = time.monotonic()
        while self._running:
            now = time.monotonic()
            if now >= next_tick:
                self.fire_tick()
                next_tick = now + self.interval_seconds
            if self.stats_enabled and now >= next_stats:
                self.poll_stats()
                next_stats = now + self.stats_interval_seconds
            wake_at = min(next_tick, next_stats) if self.stats_enabled else next_tick
            time.sleep(max(0.05, wake_at - time.monotonic()))

        self.shutdown()
        logger.info("Adjuster loop stopped cleanly.")

    def stop(self) -> None:
        self._running = False

    def shutdown(self, timeout: float = 30.0) -> None:
        for thread in self._tick_threads:
            thread.join(timeout=timeout)
        self.adjuster.stop(timeout=timeout)

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def _handle(signum, frame):
            logger.info(f"Received signal {signum}, stopping...")
            self.stop()

        signal.signal(signal.SIGTERM, _handle)
        signal.signal(signal.SIGINT, _handle)


def main():
    """Entry point"""
    import argparse
    import sys

    parser = argparse.ArgumentParser(description="venue-rebalancer position adjuster")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--once", action="store_true", help="Run a single rebalancing pass and exit")
    parser.add_argument("--validate", action="store_true", help="Validate config and exit")

    args = parser.parse_args()

    if args.validate:
        from tools.config_validator import validate_all_configs
        logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
        errors = validate_all_configs(args.config_dir)
        for error in errors:
            print(f"  • {error}")
        sys.exit(1 if errors else 0)

    loop = AdjusterLoop(config_dir=args.config_dir)

    if args.once:
        loop.run_once()
        loop.shutdown()
    else:
        loop.run_forever()


if __name__ == "__main__":
    main()
