"""
venue-rebalancer Core: Venues

Venue configuration, no-trade (blackout) periods and the per-margin-mode
rebalancing behaviours.

Each margin mode maps to one Rebalancer:
- CASH: hysteresis band around half of max_long_position (sell above 60%,
  buy below 40%, dead zone in between)
- NET_OUT: close the whole position once it exceeds a small epsilon
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from core.exceptions import VenueOrderError

logger = logging.getLogger(__name__)

CASH_UPPER_RATIO = 0.60
CASH_LOWER_RATIO = 0.40
NET_OUT_EPSILON = 0.005


def parse_timestamp(value: Any) -> datetime:
    """ISO-8601 to datetime, accepting a trailing Z for UTC."""
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class MarginMode(Enum):
    CASH = "cash"
    NET_OUT = "net_out"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value

    @classmethod
    def from_string(cls, value: str) -> "MarginMode":
        normalized = (value or "").strip().lower().replace("-", "_")
        if normalized == "netout":
            normalized = "net_out"
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"Unknown margin mode: {value!r}")


@dataclass(frozen=True)
class BlackoutPeriod:
    """Raw [start, end] pair from config; parsed lazily so bad input never blocks trading"""
    start: str
    end: str

    def parse(self) -> Optional[Tuple[datetime, datetime]]:
        """Return (start, end) datetimes, or None if the period is invalid."""
        try:
            start = parse_timestamp(self.start)
            end = parse_timestamp(self.end)
        except (TypeError, ValueError):
            return None
        if (start.tzinfo is None) != (end.tzinfo is None):
            # The naive end is local wall-clock time
            start, end = start.astimezone(), end.astimezone()
        if end < start:
            return None
        return start, end

    def contains(self, moment: datetime) -> Optional[bool]:
        """
        Check whether moment falls inside [start, end).

        Returns None when the period cannot be parsed.
        """
        parsed = self.parse()
        if parsed is None:
            return None
        start, end = parsed
        if start.tzinfo is None:
            # Naive periods are in local wall-clock time
            moment = moment.astimezone().replace(tzinfo=None) if moment.tzinfo else moment
        elif moment.tzinfo is None:
            moment = moment.astimezone()
        return start <= moment < end


@dataclass
class VenueConfig:
    """Per-venue rebalancing settings"""
    venue: str
    enabled: bool
    margin_mode: MarginMode
    max_long_position: float
    no_trade_periods: List[BlackoutPeriod] = field(default_factory=list)
    api_key: str = ""
    api_secret: str = ""
    buy_in_quote: bool = False
    paper_position: float = 0.0
    paper_rate: float = 0.0

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "VenueConfig":
        periods = [
            BlackoutPeriod(start=str(p[0]), end=str(p[1])) if isinstance(p, (list, tuple)) and len(p) == 2
            else BlackoutPeriod(start=str(p), end="")
            for p in (raw.get("no_trade_periods") or [])
        ]
        key_env = raw.get("api_key_env")
        secret_env = raw.get("api_secret_env")
        return cls(
            venue=str(raw["venue"]),
            enabled=bool(raw.get("enabled", True)),
            margin_mode=MarginMode.from_string(raw.get("margin_mode", "cash")),
            max_long_position=float(raw.get("max_long_position", 0.0)),
            no_trade_periods=periods,
            api_key=os.getenv(key_env, "") if key_env else "",
            api_secret=os.getenv(secret_env, "") if secret_env else "",
            buy_in_quote=bool(raw.get("buy_in_quote", False)),
            paper_position=float(raw.get("paper_position", 0.0)),
            paper_rate=float(raw.get("paper_rate", 0.0)),
        )

    def is_tradable_at(self, moment: Optional[datetime] = None) -> bool:
        """True when moment is outside every configured no-trade period."""
        if not self.no_trade_periods:
            return True
        moment = moment or datetime.now(timezone.utc)
        for period in self.no_trade_periods:
            inside = period.contains(moment)
            if inside is None:
                logger.warning(
                    "Invalid no_trade_periods entry for %s: [%s, %s]. Ignoring the config.",
                    self.venue, period.start, period.end,
                )
                continue
            if inside:
                return False
        return True


class VenueAdapter(Protocol):
    """Order and balance access for one venue. Every call succeeds or raises."""

    buy_in_quote: bool

    def base_position(self) -> float: ...

    def free_base_amount(self) -> float: ...

    def rate(self) -> float: ...

    def market_sell(self, amount: float) -> Any: ...

    def market_buy(self, amount_or_notional: float) -> Any: ...

    def close_all(self) -> Any: ...


class ActionKind(Enum):
    SELL = "sell"
    BUY = "buy"
    CLOSE_ALL = "close_all"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


@dataclass(frozen=True)
class SkippedOrder:
    """Returned by a rebalancer that decided not to place an order"""
    reason: str


@dataclass(frozen=True)
class VenueAction:
    """Corrective action decided for one venue"""
    venue: str
    kind: ActionKind
    observed: float
    target_position: float = 0.0


class Rebalancer:
    """Evaluate-and-correct behaviour for one margin mode."""

    mode: MarginMode

    def evaluate(self, config: VenueConfig, observed: float) -> Optional[VenueAction]:
        raise NotImplementedError

    def apply(self, action: VenueAction, adapter: VenueAdapter) -> Any:
        raise NotImplementedError


class CashRebalancer(Rebalancer):
    mode = MarginMode.CASH

    def evaluate(self, config: VenueConfig, observed: float) -> Optional[VenueAction]:
        target = config.max_long_position
        half = target / 2
        if observed > target * CASH_UPPER_RATIO:
            return VenueAction(config.venue, ActionKind.SELL, observed, half)
        if observed < target * CASH_LOWER_RATIO:
            return VenueAction(config.venue, ActionKind.BUY, observed, half)
        return None

    def apply(self, action: VenueAction, adapter: VenueAdapter) -> Any:
        free_amount = adapter.free_base_amount()
        if action.kind is ActionKind.SELL:
            amount = free_amount - action.target_position
            if amount <= 0:
                logger.warning(
                    "%s: free amount %.8f already at or below target %.8f; not selling",
                    action.venue, free_amount, action.target_position,
                )
                return SkippedOrder(f"free amount {free_amount} at or below target")
            logger.info("%s: selling %.8f at market", action.venue, amount)
            return adapter.market_sell(amount)

        amount = action.target_position - free_amount
        if amount <= 0:
            logger.warning(
                "%s: free amount %.8f already at or above target %.8f; not buying",
                action.venue, free_amount, action.target_position,
            )
            return SkippedOrder(f"free amount {free_amount} at or above target")
        if adapter.buy_in_quote:
            rate = adapter.rate()
            notional = amount * rate
            logger.info("%s: buying %.8f at market (notional %.2f @ %.2f)", action.venue, amount, notional, rate)
            return adapter.market_buy(notional)
        logger.info("%s: buying %.8f at market", action.venue, amount)
        return adapter.market_buy(amount)


class NetOutRebalancer(Rebalancer):
    mode = MarginMode.NET_OUT

    def evaluate(self, config: VenueConfig, observed: float) -> Optional[VenueAction]:
        if abs(observed) > NET_OUT_EPSILON:
            return VenueAction(config.venue, ActionKind.CLOSE_ALL, observed)
        return None

    def apply(self, action: VenueAction, adapter: VenueAdapter) -> Any:
        logger.info("%s: closing all positions (position=%.8f)", action.venue, action.observed)
        return adapter.close_all()


REBALANCERS: Dict[MarginMode, Rebalancer] = {
    MarginMode.CASH: CashRebalancer(),
    MarginMode.NET_OUT: NetOutRebalancer(),
}


def rebalancer_for(mode: MarginMode) -> Rebalancer:
    try:
        return REBALANCERS[mode]
    except KeyError:
        raise ValueError(f"No rebalancer for margin mode {mode}") from None


def execute_action(action: VenueAction, adapter: VenueAdapter, mode: MarginMode) -> Any:
    """Apply an action, wrapping any venue failure in VenueOrderError."""
    try:
        return rebalancer_for(mode).apply(action, adapter)
    except VenueOrderError:
        raise
    except Exception as exc:
        raise VenueOrderError(action.venue, str(action.kind), exc) from exc


AdapterFactory = Callable[[VenueConfig], VenueAdapter]

_ADAPTER_FACTORIES: Dict[str, AdapterFactory] = {}


def register_adapter_factory(venue: str, factory: AdapterFactory) -> None:
    """Register how to build a live adapter for a venue id."""
    _ADAPTER_FACTORIES[venue] = factory


def unregister_adapter_factory(venue: str) -> None:
    _ADAPTER_FACTORIES.pop(venue, None)


def build_live_adapters(configs: Sequence[VenueConfig]) -> Dict[str, VenueAdapter]:
    adapters: Dict[str, VenueAdapter] = {}
    missing = []
    for config in configs:
        factory = _ADAPTER_FACTORIES.get(config.venue)
        if factory is None:
            missing.append(config.venue)
            continue
        adapters[config.venue] = factory(config)
    if missing:
        raise ValueError(f"No live adapter registered for venue(s): {', '.join(missing)}")
    return adapters
