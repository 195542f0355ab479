"""
venue-rebalancer Core: Paper Venue

In-memory venue adapter for PAPER mode. Implements the same interface as a
live venue adapter but fills market orders instantly at a fixed rate.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from core.exceptions import VenueOrderError
from core.venues import VenueConfig

logger = logging.getLogger(__name__)


@dataclass
class PaperOrder:
    """Simulated order, filled on submission"""
    order_id: str
    venue: str
    side: str  # "buy" | "sell" | "close_all"
    amount: float
    notional: Optional[float] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PaperVenueAdapter:
    """
    Simulated venue holding a single base-asset position.

    Set fail_next to make the next order raise, to exercise failure paths.
    """

    def __init__(self, venue: str, position: float = 0.0, rate: float = 1.0, buy_in_quote: bool = False):
        self.venue = venue
        self.buy_in_quote = buy_in_quote
        self._position = float(position)
        self._rate = float(rate) if rate else 1.0
        self._lock = threading.Lock()
        self.orders: List[PaperOrder] = []
        self.fail_next: Optional[str] = None
        logger.info(f"Initialized PaperVenueAdapter {venue} (position={position}, rate={self._rate})")

    @classmethod
    def from_config(cls, config: VenueConfig) -> "PaperVenueAdapter":
        return cls(
            venue=config.venue,
            position=config.paper_position,
            rate=config.paper_rate,
            buy_in_quote=config.buy_in_quote,
        )

    def base_position(self) -> float:
        with self._lock:
            return self._position

    def free_base_amount(self) -> float:
        # Paper venues never hold base asset in open orders
        return self.base_position()

    def rate(self) -> float:
        return self._rate

    def set_position(self, position: float) -> None:
        with self._lock:
            self._position = float(position)

    def market_sell(self, amount: float) -> PaperOrder:
        if amount <= 0:
            raise VenueOrderError(self.venue, "sell", ValueError(f"invalid amount {amount}"))
        self._maybe_fail("sell")
        with self._lock:
            self._position -= amount
            order = self._record("sell", amount)
        logger.info(f"[PAPER] {self.venue}: sold {amount:.8f} -> position {self._position:.8f}")
        return order

    def market_buy(self, amount_or_notional: float) -> PaperOrder:
        if amount_or_notional <= 0:
            raise VenueOrderError(self.venue, "buy", ValueError(f"invalid amount {amount_or_notional}"))
        self._maybe_fail("buy")
        if self.buy_in_quote:
            amount = amount_or_notional / self._rate
            notional: Optional[float] = amount_or_notional
        else:
            amount = amount_or_notional
            notional = None
        with self._lock:
            self._position += amount
            order = self._record("buy", amount, notional)
        logger.info(f"[PAPER] {self.venue}: bought {amount:.8f} -> position {self._position:.8f}")
        return order

    def close_all(self) -> PaperOrder:
        self._maybe_fail("close_all")
        with self._lock:
            closed = self._position
            self._position = 0.0
            order = self._record("close_all", abs(closed))
        logger.info(f"[PAPER] {self.venue}: closed position of {closed:.8f}")
        return order

    def _maybe_fail(self, action: str) -> None:
        if self.fail_next:
            reason, self.fail_next = self.fail_next, None
            raise VenueOrderError(self.venue, action, RuntimeError(reason))

    def _record(self, side: str, amount: float, notional: Optional[float] = None) -> PaperOrder:
        order = PaperOrder(
            order_id=f"paper-{uuid.uuid4().hex[:12]}",
            venue=self.venue,
            side=side,
            amount=amount,
            notional=notional,
        )
        self.orders.append(order)
        return order
