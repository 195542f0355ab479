"""
venue-rebalancer Core: Position Adjuster

Periodically compares each venue's base asset position with its target band
and dispatches corrective market orders.

Flow of one tick:
1. Reentrancy guard (force-cleared after too many overlapping ticks)
2. Warm-up damping (only every Nth tick runs)
3. Skip while arbitrage pairs are open
4. After a settle delay, evaluate every enabled venue outside its no-trade periods
5. Dispatch corrective orders on a worker pool without waiting for them
6. Cooldown, then clear the guard

Venue orders are fire-and-forget: the iteration finishes (and logs so) while
orders may still be in flight. Their failures are reported from the worker
thread. wait_for_orders() drains them.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set

from core.config_store import ConfigStore
from core.exceptions import VenueOrderError
from core.venues import (
    MarginMode,
    SkippedOrder,
    VenueAction,
    VenueAdapter,
    VenueConfig,
    execute_action,
    rebalancer_for,
)
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder, TickStats

logger = logging.getLogger(__name__)


class PositionProvider(Protocol):
    def get_positions(self) -> Mapping[str, float]: ...


class ActivePairStore(Protocol):
    def get_active_pair_count(self) -> int: ...


@dataclass
class LoopState:
    """Reentrancy state, mutated only inside tick()"""
    is_running: bool = False
    retry_count: int = 0
    skip_count: int = 0
    generation: int = 0


@dataclass
class AdjusterSettings:
    settle_seconds: float = 5.0
    cooldown_seconds: float = 5.0
    warmup_ticks: int = 30
    max_overlap_retries: int = 30
    max_workers: int = 4

    @classmethod
    def from_config(cls, loop_cfg: Optional[Dict[str, Any]]) -> "AdjusterSettings":
        loop_cfg = loop_cfg or {}
        defaults = cls()
        return cls(
            settle_seconds=float(loop_cfg.get("settle_seconds", defaults.settle_seconds)),
            cooldown_seconds=float(loop_cfg.get("cooldown_seconds", defaults.cooldown_seconds)),
            warmup_ticks=int(loop_cfg.get("warmup_ticks", defaults.warmup_ticks)),
            max_overlap_retries=int(loop_cfg.get("max_overlap_retries", defaults.max_overlap_retries)),
            max_workers=int(loop_cfg.get("max_workers", defaults.max_workers)),
        )


@dataclass
class TickResult:
    """Outcome of one tick"""
    status: str  # overlap | guard_reset | warmup | active_pairs | adjusted | error
    evaluated: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    actions: List[VenueAction] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class OrderOutcome:
    action: VenueAction
    success: bool
    response: Any = None
    error: Optional[str] = None


class PositionAdjuster:
    """
    Position rebalancing control loop.

    Owns its LoopState exclusively. Venue configs, positions and the active
    pair count are read fresh from collaborators every iteration.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        position_provider: PositionProvider,
        active_pair_store: ActivePairStore,
        adapters: Mapping[str, VenueAdapter],
        settings: Optional[AdjusterSettings] = None,
        metrics: Optional[MetricsRecorder] = None,
        alerts: Optional[AlertService] = None,
    ):
        self.config_store = config_store
        self.position_provider = position_provider
        self.active_pair_store = active_pair_store
        self.adapters = adapters
        self.settings = settings or AdjusterSettings()
        self.metrics = metrics
        self.alerts = alerts
        self.state = LoopState()

        self._executor = ThreadPoolExecutor(
            max_workers=max(1, self.settings.max_workers),
            thread_name_prefix="venue-order",
        )
        self._inflight: Set[Future] = set()
        self._inflight_lock = threading.Lock()

    def start(self) -> None:
        logger.debug("Starting Position Adjuster...")
        logger.debug("Started Position Adjuster.")

    def stop(self, timeout: Optional[float] = None) -> None:
        logger.debug("Stopping Position Adjuster...")
        if not self.wait_for_orders(timeout):
            logger.warning("Stopping with venue orders still in flight")
        self._executor.shutdown(wait=timeout is None)
        logger.debug("Stopped Position Adjuster.")

    def tick(self, now: Optional[datetime] = None) -> TickResult:
        """
        Run one scheduled iteration.

        Args:
            now: Time used for no-trade period checks (defaults to UTC now)

        Returns:
            TickResult describing what happened
        """
        state = self.state
        if state.is_running:
            if state.retry_count > self.settings.max_overlap_retries:
                self._force_clear_guard()
                return self._finish(TickResult(status="guard_reset"))
            state.retry_count += 1
            logger.debug(
                "Position adjuster is already running. Skipped iteration (%d overlapping).",
                state.retry_count,
            )
            return self._finish(TickResult(status="overlap"))

        if state.skip_count < self.settings.warmup_ticks:
            state.skip_count += 1
            return self._finish(TickResult(status="warmup"))
        state.skip_count = 0

        return self.run_once(now)

    def run_once(self, now: Optional[datetime] = None) -> TickResult:
        """Run the rebalancing pass immediately, skipping warm-up damping."""
        state = self.state
        state.is_running = True
        state.retry_count = 0
        state.generation += 1
        generation = state.generation

        start = time.monotonic()
        result = TickResult(status="adjusted")
        try:
            active_pairs = self.active_pair_store.get_active_pair_count()
            if active_pairs:
                logger.info(f"{active_pairs} active pair(s). Skipping position adjustment.")
                result.status = "active_pairs"
            else:
                logger.info(f"No pairs right now. Checking balances after {self.settings.settle_seconds:g} sec...")
                time.sleep(self.settings.settle_seconds)
                self._adjust(result, now or datetime.now(timezone.utc))
            logger.debug("Adjusted.")
        except Exception as exc:
            logger.error(f"Position adjuster iteration failed: {exc}", exc_info=True)
            result.status = "error"
            result.error = str(exc)
        finally:
            time.sleep(self.settings.cooldown_seconds)
            if state.generation == generation:
                state.is_running = False
            else:
                logger.warning("Stale iteration finished after a forced guard reset; leaving guard to the newer one")
            logger.info("Finished Position Adjuster")
        return self._finish(result, time.monotonic() - start)

    def wait_for_orders(self, timeout: Optional[float] = None) -> bool:
        """
        Block until dispatched venue orders complete.

        Returns:
            True if nothing is left in flight
        """
        with self._inflight_lock:
            pending = set(self._inflight)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        with self._inflight_lock:
            self._inflight -= {f for f in pending if f.done()}
        return not not_done

    def _adjust(self, result: TickResult, now: datetime) -> None:
        positions = self.position_provider.get_positions()
        for config in self.config_store.enabled_venues():
            if not config.is_tradable_at(now):
                logger.info(f"{config.venue} is inside a no-trade period. Skipping.")
                result.skipped[config.venue] = "no_trade_period"
                continue
            try:
                action = self._evaluate_venue(config, positions, result)
            except Exception as exc:
                logger.error(f"Failed to evaluate {config.venue}: {exc}", exc_info=True)
                result.skipped[config.venue] = "evaluation_error"
                continue
            if action is None:
                continue
            try:
                self._dispatch(action, config.margin_mode)
            except Exception as exc:
                logger.error(f"Failed to dispatch {action.kind} for {config.venue}: {exc}", exc_info=True)
                result.skipped[config.venue] = "dispatch_error"
                continue
            result.actions.append(action)

    def _evaluate_venue(
        self,
        config: VenueConfig,
        positions: Mapping[str, float],
        result: TickResult,
    ) -> Optional[VenueAction]:
        result.evaluated.append(config.venue)
        observed = positions.get(config.venue)
        if observed is None:
            logger.warning(f"Unable to find base ccy position in {config.venue}. {dict(positions)}")
            result.skipped[config.venue] = "position_unknown"
            return None
        if config.venue not in self.adapters:
            logger.warning(f"No adapter for {config.venue}. Skipping.")
            result.skipped[config.venue] = "no_adapter"
            return None

        logger.info(f"Base position for {config.venue}: {observed}")
        action = rebalancer_for(config.margin_mode).evaluate(config, observed)
        if action is None:
            logger.debug(f"{config.venue} within band; no action")
        else:
            logger.info(
                f"Adjusting position for {config.venue}: {action.kind} "
                f"(position={observed}, target={action.target_position})"
            )
        return action

    def _dispatch(self, action: VenueAction, mode: MarginMode) -> Future:
        adapter = self.adapters[action.venue]
        future = self._executor.submit(self._run_action, action, adapter, mode)
        with self._inflight_lock:
            self._inflight = {f for f in self._inflight if not f.done()}
            self._inflight.add(future)
        return future

    def _run_action(self, action: VenueAction, adapter: VenueAdapter, mode: MarginMode) -> OrderOutcome:
        try:
            response = execute_action(action, adapter, mode)
        except VenueOrderError as exc:
            logger.error(f"Order failed on {action.venue}: {exc}", exc_info=True)
            if self.metrics:
                self.metrics.record_venue_action(action.venue, str(action.kind), "failed")
            if self.alerts:
                self.alerts.notify(
                    AlertSeverity.WARNING,
                    "Position adjustment failed",
                    f"{action.venue}: {action.kind} failed",
                    {"venue": action.venue, "action": str(action.kind), "error": str(exc)},
                )
            return OrderOutcome(action=action, success=False, error=str(exc))

        if isinstance(response, SkippedOrder):
            logger.info(f"No order placed for {action.venue} ({action.kind}): {response.reason}")
            if self.metrics:
                self.metrics.record_venue_action(action.venue, str(action.kind), "skipped")
            return OrderOutcome(action=action, success=True, response=response)

        logger.info(f"Done adjusting {action.venue} ({action.kind}): {response}")
        if self.metrics:
            self.metrics.record_venue_action(action.venue, str(action.kind), "ok")
        return OrderOutcome(action=action, success=True, response=response)

    def _force_clear_guard(self) -> None:
        state = self.state
        logger.error(
            "POSITION ADJUSTER GUARD STUCK: still running after %d overlapping ticks; forcing reset",
            state.retry_count,
        )
        state.is_running = False
        if self.metrics:
            self.metrics.record_guard_reset()
        if self.alerts:
            self.alerts.notify(
                AlertSeverity.CRITICAL,
                "Position adjuster guard reset",
                f"Previous iteration did not finish after {state.retry_count} overlapping ticks",
                {"retry_count": state.retry_count, "generation": state.generation},
            )

    def _finish(self, result: TickResult, duration: float = 0.0) -> TickResult:
        if self.metrics:
            self.metrics.observe_tick(
                TickStats(
                    status=result.status,
                    venues_evaluated=len(result.evaluated),
                    actions_dispatched=len(result.actions),
                    duration_seconds=duration,
                )
            )
        return result
