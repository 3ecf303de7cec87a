"""
Core data model.

MarketPeriod / TokenQuote / MarketSnapshot describe what the feed sees.
TrackingKey / OrderIntent / TradeRecord describe what the bot holds.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from .errors import StateTransitionError

PRICE_TICK = 0.01
SHARE_EPS = 1e-6


def round_price(price: float) -> float:
    """Snap a price to the 1c tick."""
    return round(round(price / PRICE_TICK) * PRICE_TICK, 2)


class Outcome(Enum):
    UP = "Up"
    DOWN = "Down"

    @property
    def opposite(self) -> "Outcome":
        return Outcome.DOWN if self is Outcome.UP else Outcome.UP


class OrderSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderStyle(Enum):
    MARKET = "MARKET"  # takes liquidity now, unfilled remainder is killed
    LIMIT = "LIMIT"    # rests if not marketable


class Role(Enum):
    PRIMARY = "primary"
    OPPOSITE = "opposite"
    OPPOSITE_LIMIT = "opposite_limit"


class OrderPurpose(Enum):
    ENTRY = "entry"
    PROFIT_TARGET = "profit_target"
    STOP_LOSS = "stop_loss"
    HEDGE_ENTRY = "hedge_entry"
    HEDGE_EXIT = "hedge_exit"


class CancelResult(Enum):
    CANCELLED = "cancelled"
    ALREADY_FILLED = "already_filled"
    NOT_FOUND = "not_found"


# =============================================================================
# Market data
# =============================================================================

@dataclass(frozen=True)
class MarketPeriod:
    """One 15-minute Up/Down market."""
    period_ts: int  # window start, unix seconds
    asset: str
    up_token_id: str
    down_token_id: str
    condition_id: str = ""
    slug: str = ""
    duration_seconds: int = 900

    @property
    def end_ts(self) -> int:
        return self.period_ts + self.duration_seconds

    @property
    def window_id(self) -> str:
        start = datetime.fromtimestamp(self.period_ts, tz=timezone.utc)
        return f"{self.asset.upper()}_{start.strftime('%Y-%m-%d_%H:%M')}"

    def token_id(self, outcome: Outcome) -> str:
        return self.up_token_id if outcome is Outcome.UP else self.down_token_id


@dataclass
class TokenQuote:
    token_id: str
    bid: Optional[float] = None
    ask: Optional[float] = None


@dataclass
class MarketSnapshot:
    """Bid/ask for both tokens of a period at one instant."""
    period: MarketPeriod
    quotes: Dict[str, TokenQuote]
    elapsed_seconds: float
    remaining_seconds: float
    timestamp: float = field(default_factory=time.time)

    @property
    def elapsed_minutes(self) -> float:
        return self.elapsed_seconds / 60.0

    def quote(self, outcome: Outcome) -> TokenQuote:
        token_id = self.period.token_id(outcome)
        return self.quotes.get(token_id) or TokenQuote(token_id=token_id)

    def quote_for_token(self, token_id: str) -> TokenQuote:
        return self.quotes.get(token_id) or TokenQuote(token_id=token_id)

    @classmethod
    def from_prices(cls, period: MarketPeriod, elapsed_seconds: float,
                    ask_up: Optional[float], ask_down: Optional[float],
                    bid_up: Optional[float] = None, bid_down: Optional[float] = None,
                    timestamp: Optional[float] = None) -> "MarketSnapshot":
        """Build a snapshot from raw prices (used by replays and tests)."""
        quotes = {
            period.up_token_id: TokenQuote(period.up_token_id, bid=bid_up, ask=ask_up),
            period.down_token_id: TokenQuote(period.down_token_id, bid=bid_down, ask=ask_down),
        }
        return cls(
            period=period,
            quotes=quotes,
            elapsed_seconds=elapsed_seconds,
            remaining_seconds=max(0.0, period.duration_seconds - elapsed_seconds),
            timestamp=timestamp if timestamp is not None else period.period_ts + elapsed_seconds,
        )


# =============================================================================
# Orders and positions
# =============================================================================

@dataclass(frozen=True)
class TrackingKey:
    """Identity of one position lifecycle: (period, token, role)."""
    period_ts: int
    token_id: str
    role: Role = Role.PRIMARY

    @property
    def sort_key(self) -> Tuple[int, str, str]:
        return (self.period_ts, self.token_id, self.role.value)

    def __str__(self):
        return f"{self.period_ts}_{self.token_id[:10]}_{self.role.value}"


@dataclass
class OrderIntent:
    """An order the bot wants placed. Ephemeral."""
    key: TrackingKey
    side: OrderSide
    style: OrderStyle
    price: float
    size: float
    purpose: OrderPurpose = OrderPurpose.ENTRY
    outcome: Optional[Outcome] = None
    # worst acceptable price for a MARKET order on a live venue (None = price)
    max_price: Optional[float] = None

    @property
    def token_id(self) -> str:
        return self.key.token_id

    def __repr__(self):
        return (f"OrderIntent({self.side.value} {self.style.value} {self.size:.2f}"
                f" @ {self.price:.2f} {self.purpose.value} {self.key})")


@dataclass
class OpenOrder:
    """An acknowledged order owned by a TradeRecord."""
    order_ref: str
    purpose: OrderPurpose
    side: OrderSide
    style: OrderStyle
    price: float
    size: float
    placed_at: float = field(default_factory=time.time)


class TradeState(Enum):
    AWAITING_ENTRY = "awaiting_entry"
    ENTRY_PENDING = "entry_pending"
    HEDGE_WATCH = "hedge_watch"
    HEDGE_REPLACED = "hedge_replaced"
    HELD = "held"
    EXIT_PENDING = "exit_pending"
    CLOSED_SOLD = "closed_sold"
    CLOSED_STOPPED = "closed_stopped"
    CLOSED_HEDGED = "closed_hedged"
    CLOSED_RESOLVED = "closed_resolved"
    CLOSED_CANCELLED = "closed_cancelled"
    FROZEN = "frozen"


TERMINAL_STATES = {
    TradeState.CLOSED_SOLD,
    TradeState.CLOSED_STOPPED,
    TradeState.CLOSED_HEDGED,
    TradeState.CLOSED_RESOLVED,
    TradeState.CLOSED_CANCELLED,
    TradeState.FROZEN,
}

# States waiting for shares to arrive
ENTRY_STATES = {
    TradeState.ENTRY_PENDING,
    TradeState.HEDGE_WATCH,
    TradeState.HEDGE_REPLACED,
}

# States holding shares
POSITION_STATES = {TradeState.HELD, TradeState.EXIT_PENDING}

_STATE_RANK = {
    TradeState.AWAITING_ENTRY: 0,
    TradeState.ENTRY_PENDING: 1,
    TradeState.HEDGE_WATCH: 2,
    TradeState.HEDGE_REPLACED: 3,
    TradeState.HELD: 4,
    TradeState.EXIT_PENDING: 5,
}
_TERMINAL_RANK = 6


def state_rank(state: TradeState) -> int:
    return _STATE_RANK.get(state, _TERMINAL_RANK)


@dataclass
class TradeRecord:
    """
    Lifecycle of one position under a TrackingKey.

    Shares and average entry price are fixed when the entry fill is
    observed; exits only ever consume those shares.
    """
    key: TrackingKey
    outcome: Outcome
    asset: str = ""
    state: TradeState = TradeState.AWAITING_ENTRY

    # Entry
    entry_style: Optional[OrderStyle] = None
    entry_price: float = 0.0     # intended price
    target_shares: float = 0.0
    pending_intent: Optional[OrderIntent] = None
    attempts: int = 0

    # Position
    shares: float = 0.0
    avg_entry_price: float = 0.0
    sold_shares: float = 0.0
    filled_at: Optional[float] = None

    # Outstanding orders by ref
    open_orders: Dict[str, OpenOrder] = field(default_factory=dict)

    # Follow-up flags
    exit_orders_placed: bool = False
    stop_triggered: bool = False
    exit_abandoned: bool = False
    exit_attempts: int = 0
    hedge_armed: bool = False
    hedge_attempts: int = 0

    # Outcome
    proceeds: float = 0.0
    exit_price: Optional[float] = None
    resolved_value: float = 0.0
    paired_key: Optional[TrackingKey] = None
    note: str = ""
    history: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def token_id(self) -> str:
        return self.key.token_id

    @property
    def period_ts(self) -> int:
        return self.key.period_ts

    @property
    def role(self) -> Role:
        return self.key.role

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_live(self) -> bool:
        return not self.is_terminal

    @property
    def has_position(self) -> bool:
        return self.state in POSITION_STATES

    @property
    def was_filled(self) -> bool:
        return self.filled_at is not None

    @property
    def held_shares(self) -> float:
        return max(0.0, self.shares - self.sold_shares)

    @property
    def cost(self) -> float:
        return self.shares * self.avg_entry_price if self.was_filled else 0.0

    @property
    def value(self) -> float:
        return self.proceeds + self.resolved_value

    @property
    def pnl(self) -> float:
        return self.value - self.cost

    @property
    def committed_sell_shares(self) -> float:
        return sum(o.size for o in self.open_orders.values() if o.side is OrderSide.SELL)

    @property
    def entry_order(self) -> Optional[OpenOrder]:
        for order in self.open_orders.values():
            if order.side is OrderSide.BUY:
                return order
        return None

    def orders_for(self, purpose: OrderPurpose) -> List[OpenOrder]:
        return [o for o in self.open_orders.values() if o.purpose is purpose]

    def transition(self, new_state: TradeState, reason: str = ""):
        """Advance the state. Raises StateTransitionError on regressions."""
        if self.is_terminal:
            raise StateTransitionError(
                f"{self.key}: {self.state.value} is terminal, cannot move to {new_state.value}"
            )
        if new_state is not TradeState.FROZEN and state_rank(new_state) <= state_rank(self.state):
            raise StateTransitionError(
                f"{self.key}: illegal transition {self.state.value} -> {new_state.value}"
            )
        self.history.append((new_state.value, reason))
        self.state = new_state

    def to_dict(self) -> dict:
        return {
            "key": str(self.key),
            "period_ts": self.period_ts,
            "token_id": self.token_id,
            "role": self.role.value,
            "outcome": self.outcome.value,
            "asset": self.asset,
            "state": self.state.value,
            "entry_style": self.entry_style.value if self.entry_style else None,
            "entry_price": self.entry_price,
            "shares": self.shares,
            "avg_entry_price": self.avg_entry_price,
            "exit_price": self.exit_price,
            "cost": self.cost,
            "value": self.value,
            "pnl": self.pnl,
            "note": self.note,
        }


@dataclass
class PeriodTriggerState:
    """
    Entry bookkeeping for one (period, asset, strategy).

    Dual entry fires once per period. Filtered entry tracks tokens with an
    open entry cycle (fired) and tokens that exited and must see the price
    drop below the trigger again before re-entering (needs_reset).
    """
    period_ts: int
    strategy: str
    fired: bool = False
    fired_tokens: Set[str] = field(default_factory=set)
    needs_reset: Set[str] = field(default_factory=set)

    def is_fired(self, token_id: Optional[str] = None) -> bool:
        if token_id is None:
            return self.fired
        return self.fired or token_id in self.fired_tokens

    def mark_fired(self, token_id: Optional[str] = None):
        if token_id is None:
            self.fired = True
        else:
            self.fired_tokens.add(token_id)

    def mark_exited(self, token_id: str):
        """Exit completed for token: re-entry waits for a reset."""
        self.fired_tokens.discard(token_id)
        self.needs_reset.add(token_id)
