"""
Exchange Gateway

The core only talks to the exchange through ExchangeGateway:
    place_order / cancel_order / get_balance (+ optional get_fill_price)

SimulatedGateway is the paper/backtest implementation. Fills are pure
threshold crossings against the last observed quote - no queue position,
no depth, no partial fills:
- BUY LIMIT fills at the ask once ask <= limit (immediately if already so)
- SELL LIMIT fills at the bid (ask if no bid) once it is >= limit
- MARKET fills immediately if the taker side has a quote, otherwise it is
  killed. A SELL takes the bid (the ask when the data carries no bids); a
  BUY is booked at the intent price, which is the ask the detector saw or
  the dual hedge level
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Union

from .errors import BotError, OrderRejectedError, TransientGatewayError
from .models import (
    CancelResult, MarketSnapshot, OrderIntent, OrderSide, OrderStyle,
    TokenQuote, SHARE_EPS,
)

logger = logging.getLogger(__name__)

PRICE_EPS = 1e-9


def buy_limit_crosses(ask: Optional[float], limit: float) -> bool:
    return ask is not None and ask <= limit + PRICE_EPS


def sell_limit_crosses(bid: Optional[float], limit: float) -> bool:
    return bid is not None and bid >= limit - PRICE_EPS


def price_at_or_above(price: Optional[float], level: float) -> bool:
    return price is not None and price >= level - PRICE_EPS


def price_at_or_below(price: Optional[float], level: float) -> bool:
    return price is not None and price <= level + PRICE_EPS


class ExchangeGateway(ABC):
    """Order placement, cancellation and balance queries."""

    name = "gateway"

    @abstractmethod
    def place_order(self, token_id: str, side: OrderSide, style: OrderStyle,
                    size: float, price: float) -> str:
        """
        Place an order and return its reference.

        Raises TransientGatewayError (retry later) or OrderRejectedError.
        """

    @abstractmethod
    def cancel_order(self, order_ref: str) -> CancelResult:
        """Cancel an order. Raises TransientGatewayError if unconfirmed."""

    @abstractmethod
    def get_balance(self, token_id: str) -> float:
        """Shares of token_id currently owned."""

    def get_fill_price(self, order_ref: str) -> Optional[float]:
        """Execution price of a filled order, if the venue reports it."""
        return None

    def observe(self, snapshot: MarketSnapshot):
        """Feed a new snapshot (simulated venues match resting orders here)."""

    def place_intent(self, intent: OrderIntent) -> str:
        return self.place_order(intent.token_id, intent.side, intent.style, intent.size, intent.price)


# =============================================================================
# Simulated venue
# =============================================================================

class SimOrderStatus(Enum):
    OPEN = "OPEN"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"


@dataclass
class SimOrder:
    """A simulated order."""
    order_ref: str
    token_id: str
    side: OrderSide
    style: OrderStyle
    price: float
    size: float
    status: SimOrderStatus = SimOrderStatus.OPEN
    fill_price: Optional[float] = None
    fill_elapsed: Optional[float] = None


@dataclass
class SimFill:
    order_ref: str
    token_id: str
    side: OrderSide
    size: float
    price: float
    elapsed_seconds: Optional[float] = None


class SimulatedGateway(ExchangeGateway):
    """
    Paper venue driven by observed snapshots.

    Deterministic: order refs are sequential and resting orders are matched
    in placement order.
    """

    name = "simulated"

    def __init__(self, starting_cash: Optional[float] = None):
        self.cash = starting_cash  # None = unlimited
        self._quotes: Dict[str, TokenQuote] = {}
        self._balances: Dict[str, float] = defaultdict(float)
        self._orders: Dict[str, SimOrder] = {}
        self._seq = 0
        self._elapsed: Optional[float] = None
        self.fills: List[SimFill] = []

    # --- market data ---

    def observe(self, snapshot: MarketSnapshot):
        self._elapsed = snapshot.elapsed_seconds
        for token_id, quote in snapshot.quotes.items():
            self._quotes[token_id] = quote
        for order in list(self._orders.values()):
            if order.status is SimOrderStatus.OPEN and order.token_id in snapshot.quotes:
                self._try_match(order)

    def set_quote(self, token_id: str, bid: Optional[float], ask: Optional[float]):
        """Set a quote directly (tests and manual paper runs)."""
        self._quotes[token_id] = TokenQuote(token_id=token_id, bid=bid, ask=ask)

    # --- gateway interface ---

    def place_order(self, token_id: str, side: OrderSide, style: OrderStyle,
                    size: float, price: float) -> str:
        if size <= 0:
            raise OrderRejectedError(f"invalid size {size}")

        if side is OrderSide.SELL:
            available = self._balances[token_id] - self._resting_sells(token_id)
            if size > available + SHARE_EPS:
                raise OrderRejectedError(
                    f"not enough balance: sell {size:.4f}, available {available:.4f}"
                )
        elif self.cash is not None and size * price > self.cash - self._resting_buys_notional() + SHARE_EPS:
            raise OrderRejectedError(f"not enough cash for {size:.4f} @ {price:.2f}")

        self._seq += 1
        order = SimOrder(
            order_ref=f"SIM-{self._seq:06d}",
            token_id=token_id,
            side=side,
            style=style,
            price=price,
            size=size,
        )

        if style is OrderStyle.MARKET:
            quote = self._quotes.get(token_id)
            taker = None
            if quote is not None:
                taker = quote.ask if side is OrderSide.BUY else (quote.bid if quote.bid is not None else quote.ask)
            if taker is None:
                raise OrderRejectedError(f"MARKET killed: no {('ask' if side is OrderSide.BUY else 'bid')} for {token_id[:10]}")
            self._orders[order.order_ref] = order
            self._fill(order, price if side is OrderSide.BUY else taker)
        else:
            self._orders[order.order_ref] = order
            self._try_match(order)

        return order.order_ref

    def cancel_order(self, order_ref: str) -> CancelResult:
        order = self._orders.get(order_ref)
        if order is None:
            return CancelResult.NOT_FOUND
        if order.status is SimOrderStatus.FILLED:
            return CancelResult.ALREADY_FILLED
        order.status = SimOrderStatus.CANCELLED
        return CancelResult.CANCELLED

    def get_balance(self, token_id: str) -> float:
        return self._balances[token_id]

    def get_fill_price(self, order_ref: str) -> Optional[float]:
        order = self._orders.get(order_ref)
        return order.fill_price if order else None

    # --- helpers ---

    def open_orders(self, token_id: Optional[str] = None) -> List[SimOrder]:
        return [
            o for o in self._orders.values()
            if o.status is SimOrderStatus.OPEN and (token_id is None or o.token_id == token_id)
        ]

    def order(self, order_ref: str) -> Optional[SimOrder]:
        return self._orders.get(order_ref)

    def _resting_sells(self, token_id: str) -> float:
        return sum(o.size for o in self.open_orders(token_id) if o.side is OrderSide.SELL)

    def _resting_buys_notional(self) -> float:
        return sum(o.size * o.price for o in self.open_orders() if o.side is OrderSide.BUY)

    def _try_match(self, order: SimOrder):
        quote = self._quotes.get(order.token_id)
        if quote is None:
            return
        if order.side is OrderSide.BUY:
            if buy_limit_crosses(quote.ask, order.price):
                self._fill(order, quote.ask)
        else:
            bid = quote.bid if quote.bid is not None else quote.ask
            if sell_limit_crosses(bid, order.price):
                self._fill(order, bid)

    def _fill(self, order: SimOrder, price: float):
        order.status = SimOrderStatus.FILLED
        order.fill_price = price
        order.fill_elapsed = self._elapsed
        if order.side is OrderSide.BUY:
            self._balances[order.token_id] += order.size
            if self.cash is not None:
                self.cash -= order.size * price
        else:
            self._balances[order.token_id] -= order.size
            if self.cash is not None:
                self.cash += order.size * price
        self.fills.append(SimFill(order.order_ref, order.token_id, order.side,
                                  order.size, price, self._elapsed))
        logger.debug(f"SIM fill {order.order_ref} {order.side.value} {order.size:.2f} @ {price:.2f}")


# =============================================================================
# Dispatch
# =============================================================================

PlaceResult = Union[str, BotError]


class OrderDispatcher:
    """
    Sends a batch of order intents, optionally in parallel.

    Results come back in input order; each is an order ref or the BotError
    raised for that intent. A call that exceeds the timeout is reported as
    TransientGatewayError and never as a fill.
    """

    def __init__(self, max_workers: int = 1, timeout: float = 5.0):
        self.max_workers = max_workers
        self.timeout = timeout
        self._pool: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def place_all(self, gateway: ExchangeGateway, intents: List[OrderIntent]) -> List[PlaceResult]:
        if self.max_workers <= 1 or len(intents) <= 1:
            return [self._place_one(gateway, intent) for intent in intents]

        pool = self._get_pool()
        futures = [pool.submit(gateway.place_intent, intent) for intent in intents]
        results: List[PlaceResult] = []
        for intent, future in zip(intents, futures):
            try:
                results.append(future.result(timeout=self.timeout))
            except FuturesTimeout:
                future.cancel()
                results.append(TransientGatewayError(
                    f"place_order timed out after {self.timeout:.1f}s ({intent.key})"
                ))
            except BotError as e:
                results.append(e)
        return results

    def _place_one(self, gateway: ExchangeGateway, intent: OrderIntent) -> PlaceResult:
        try:
            return gateway.place_intent(intent)
        except BotError as e:
            return e

    def _get_pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self.max_workers,
                                                thread_name_prefix="order")
            return self._pool

    def shutdown(self):
        with self._lock:
            if self._pool is not None:
                self._pool.shutdown(wait=True)
                self._pool = None
