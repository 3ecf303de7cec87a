"""
Trade State Machine

One TradeRecord per TrackingKey (period, token, role):

    AWAITING_ENTRY -> ENTRY_PENDING -> HELD -> EXIT_PENDING -> CLOSED_SOLD
                                                            -> CLOSED_STOPPED
                                                            -> CLOSED_HEDGED
    dual-limit hedge:  ENTRY_PENDING -> HEDGE_WATCH -> HEDGE_REPLACED -> HELD
    any live state  -> CLOSED_RESOLVED / CLOSED_CANCELLED (period end)
                    -> FROZEN (anomaly, manual review)

States only move forward; a closed record is archived and a re-entry gets a
fresh record.

Fill detection is balance polling, not order callbacks: every reconcile()
diffs the owned balance per token against the last known value and maps an
increase onto the single record waiting for an entry fill, and a decrease
onto the single record with a live sell. Entry and exit sizes are always
the full position, so a partial fill cannot be told apart from a full one
while only one exit order is live. Anything the tracked orders cannot
explain is an anomaly and freezes the affected keys.

Exit policies (StrategyConfig.exit_policy):
- HOLD: nothing to do until resolution
- TARGET_STOP: profit-target limit at sell_price, stop on ask <= stop_loss_price
- CROSS_HEDGE: as TARGET_STOP, and a primary stop rolls into the opposite
  token (buy at 1-stop, or take profit at 1-stop+margin if already held);
  the opposite position takes profit at 1-stop+margin and has its own
  stop at 1-stop-margin
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import BotConfig, EntryPolicy, ExitPolicy
from .errors import OrderRejectedError, StateAnomalyError, TransientGatewayError
from .gateway import ExchangeGateway, OrderDispatcher, price_at_or_above, price_at_or_below
from .metrics import MetricsLogger
from .models import (
    CancelResult, MarketSnapshot, OpenOrder, OrderIntent, OrderPurpose,
    OrderSide, OrderStyle, Outcome, Role, TokenQuote, TrackingKey,
    TradeRecord, TradeState, ENTRY_STATES, SHARE_EPS,
)

logger = logging.getLogger(__name__)

PNL_EPS = 1e-9


def classify_pnl(pnl: float) -> str:
    """'win' / 'loss' / 'flat' for a period P&L."""
    if pnl > PNL_EPS:
        return "win"
    if pnl < -PNL_EPS:
        return "loss"
    return "flat"


def determine_winner(ask_up: Optional[float], ask_down: Optional[float],
                     threshold: float = 0.5) -> Optional[Outcome]:
    """
    Winner from the final asks of a period.

    A side at 1.0, or above the threshold while the other is at or below
    it, wins. Otherwise the higher ask wins; a tie (or missing data) is
    undetermined.
    """
    if ask_up is None or ask_down is None:
        return None
    if ask_up >= 1.0 or (ask_up > threshold and ask_down <= threshold):
        return Outcome.UP
    if ask_down >= 1.0 or (ask_down > threshold and ask_up <= threshold):
        return Outcome.DOWN
    if ask_up > ask_down:
        return Outcome.UP
    if ask_down > ask_up:
        return Outcome.DOWN
    return None


@dataclass
class PeriodSummary:
    """Settled result of one period under the state machine."""
    period_ts: int
    winner: Optional[Outcome]
    records: List[TradeRecord] = field(default_factory=list)

    @property
    def cost(self) -> float:
        return sum(r.cost for r in self.records)

    @property
    def value(self) -> float:
        return sum(r.value for r in self.records)

    @property
    def pnl(self) -> float:
        return self.value - self.cost

    @property
    def classification(self) -> str:
        return classify_pnl(self.pnl)

    @property
    def filled_outcomes(self) -> List[str]:
        return sorted({r.outcome.value for r in self.records if r.was_filled})


class TradeStateMachine:
    """
    Owns the TradeRecord map. Driven once per tick by the scheduler:

        accept_entries(intents) -> reconcile() -> manage(snapshot)
        ... resolve_period() when the window is over
    """

    def __init__(self, config: BotConfig, gateway: ExchangeGateway,
                 metrics: Optional[MetricsLogger] = None,
                 dispatcher: Optional[OrderDispatcher] = None):
        self.config = config
        self.strategy = config.strategy
        self.gateway = gateway
        self.metrics = metrics or MetricsLogger()
        self.dispatcher = dispatcher or OrderDispatcher(max_workers=1,
                                                        timeout=config.order_timeout_seconds)

        self.records: Dict[TrackingKey, TradeRecord] = {}
        self.archive: List[TradeRecord] = []
        self._known_balances: Dict[str, float] = {}
        self._exited: List[TradeRecord] = []
        # orders of closed records whose cancel was never confirmed
        self._stale_orders: Dict[str, TradeRecord] = {}

    # =========================================================================
    # Queries
    # =========================================================================

    def live_records(self, period_ts: Optional[int] = None) -> List[TradeRecord]:
        records = [
            r for r in self.records.values()
            if r.is_live and (period_ts is None or r.period_ts == period_ts)
        ]
        return sorted(records, key=lambda r: r.key.sort_key)

    def find_live(self, period_ts: int, token_id: str) -> Optional[TradeRecord]:
        """The live record on a token (there is at most one)."""
        for record in self.live_records(period_ts):
            if record.token_id == token_id:
                return record
        return None

    def period_records(self, period_ts: int) -> List[TradeRecord]:
        """Live and archived records of a period."""
        archived = [r for r in self.archive if r.period_ts == period_ts]
        return archived + self.live_records(period_ts)

    def drain_exits(self) -> List[TradeRecord]:
        """Records closed by a sell/stop/hedge exit since the last call."""
        exited, self._exited = self._exited, []
        return exited

    # =========================================================================
    # Entries
    # =========================================================================

    def accept_entries(self, intents: List[OrderIntent], asset: str = "") -> List[TradeRecord]:
        """
        Create records for detector intents and submit their orders.

        An intent is dropped if its key, or any other key on the same token,
        already has a live record.
        """
        accepted = []
        for intent in intents:
            if intent.key in self.records or self.find_live(intent.key.period_ts, intent.token_id):
                logger.debug(f"Skipping {intent}: token already has a live record")
                continue
            record = TradeRecord(
                key=intent.key,
                outcome=intent.outcome or Outcome.UP,
                asset=asset,
                entry_style=intent.style,
                entry_price=intent.price,
                target_shares=intent.size,
                pending_intent=intent,
            )
            self.records[intent.key] = record
            accepted.append(record)
            self.metrics.log_entry_intent(str(intent.key), intent.side.value, intent.style.value,
                                          intent.price, intent.size, None, None)

        if self.strategy.entry_policy is EntryPolicy.DUAL:
            self._pair_dual_records(accepted)

        self._submit(accepted)
        return accepted

    def _pair_dual_records(self, records: List[TradeRecord]):
        by_period: Dict[int, List[TradeRecord]] = {}
        for record in records:
            by_period.setdefault(record.period_ts, []).append(record)
        for pair in by_period.values():
            if len(pair) == 2:
                pair[0].paired_key = pair[1].key
                pair[1].paired_key = pair[0].key

    def _submit(self, records: List[TradeRecord]):
        """Send the pending entry intent of each record (concurrently if configured)."""
        ready = []
        for record in records:
            if record.pending_intent is None or not record.is_live:
                continue
            if not self._ensure_baseline(record.token_id):
                continue
            ready.append(record)
        if not ready:
            return

        results = self.dispatcher.place_all(self.gateway, [r.pending_intent for r in ready])
        for record, result in zip(ready, results):
            self._apply_entry_result(record, result)

    def _ensure_baseline(self, token_id: str) -> bool:
        """Remember the pre-trade balance so later deltas are ours."""
        if token_id in self._known_balances:
            return True
        try:
            self._known_balances[token_id] = self.gateway.get_balance(token_id)
            return True
        except TransientGatewayError as e:
            logger.warning(f"Balance baseline for {token_id[:10]} unavailable: {e}")
            return False

    def _apply_entry_result(self, record: TradeRecord, result):
        intent = record.pending_intent
        hedge_retry = record.state is TradeState.HEDGE_REPLACED

        if isinstance(result, TransientGatewayError):
            logger.warning(f"{record.key}: entry not sent ({result}), retrying next tick")
            self.metrics.log_order_reject(str(record.key), intent.purpose.value, str(result), True)
            if hedge_retry:
                record.pending_intent = None
            return

        if isinstance(result, OrderRejectedError):
            self.metrics.log_order_reject(str(record.key), intent.purpose.value, str(result), False)
            if hedge_retry:
                record.pending_intent = None
                record.hedge_attempts += 1
                attempts = record.hedge_attempts
            else:
                record.attempts += 1
                attempts = record.attempts
            if attempts >= self.config.max_order_attempts:
                logger.error(f"{record.key}: {intent.purpose.value} rejected {attempts}x ({result}), abandoning")
                self._close(record, TradeState.CLOSED_CANCELLED, f"{intent.purpose.value} rejected: {result}")
            else:
                logger.warning(f"{record.key}: {intent.purpose.value} rejected ({result}), "
                               f"attempt {attempts}/{self.config.max_order_attempts}")
            return

        if isinstance(result, Exception):
            raise result

        order_ref = result
        record.open_orders[order_ref] = OpenOrder(
            order_ref=order_ref,
            purpose=intent.purpose,
            side=intent.side,
            style=intent.style,
            price=intent.price,
            size=intent.size,
        )
        record.pending_intent = None
        self.metrics.log_order_submit(order_ref, str(record.key), intent.side.value,
                                      intent.style.value, intent.price, intent.size,
                                      intent.purpose.value)
        logger.info(f"{record.key}: {intent.style.value} BUY {intent.size:.2f} @ "
                    f"{intent.price:.2f} sent ({order_ref})")
        if record.state is TradeState.AWAITING_ENTRY:
            self._transition(record, TradeState.ENTRY_PENDING, f"{intent.style.value} @ {intent.price:.2f}")

    def _retry_pending(self, period_ts: int, snapshot: MarketSnapshot):
        retry = []
        for record in self.live_records(period_ts):
            if record.state is not TradeState.AWAITING_ENTRY or record.pending_intent is None:
                continue
            intent = record.pending_intent
            ask = snapshot.quote_for_token(record.token_id).ask
            if intent.style is OrderStyle.MARKET and ask is not None:
                intent.price = ask
            retry.append(record)
        self._submit(retry)

    # =========================================================================
    # Reconciliation (balance polling)
    # =========================================================================

    def reconcile(self, period_ts: Optional[int] = None):
        """Diff owned balances per token and apply fills. Idempotent."""
        self._sweep_stale_orders()
        tokens = sorted({r.token_id for r in self.live_records(period_ts)})
        for token_id in tokens:
            try:
                balance = self.gateway.get_balance(token_id)
            except TransientGatewayError as e:
                logger.warning(f"Balance poll failed for {token_id[:10]}: {e}")
                continue

            known = self._known_balances.get(token_id, 0.0)
            delta = balance - known
            if abs(delta) <= SHARE_EPS:
                continue
            self._known_balances[token_id] = balance

            try:
                if delta > 0:
                    self._on_balance_increase(token_id, delta)
                else:
                    self._on_balance_decrease(token_id, -delta, balance)
            except StateAnomalyError as e:
                self._anomaly(token_id, str(e), e.keys)

    def _on_balance_increase(self, token_id: str, delta: float):
        live = [r for r in self.live_records() if r.token_id == token_id]
        waiting = [r for r in live if r.state in ENTRY_STATES and r.entry_order is not None]
        holding = [r for r in live if r.has_position]

        if len(waiting) != 1 or holding:
            raise StateAnomalyError(
                f"+{delta:.4f} shares with {len(waiting)} waiting and {len(holding)} holding records",
                keys=[r.key for r in live],
            )
        self._mark_filled(waiting[0], delta)

    def _mark_filled(self, record: TradeRecord, shares: float):
        order = record.entry_order
        price = self._fill_price(order)

        if abs(shares - order.size) > SHARE_EPS:
            logger.warning(f"{record.key}: balance moved {shares:.4f}, order was {order.size:.4f}; "
                           f"taking the observed amount")

        del record.open_orders[order.order_ref]
        record.shares = shares
        record.avg_entry_price = price
        record.filled_at = time.time()
        self.metrics.log_fill(str(record.key), "BUY", shares, price)
        logger.info(f"{record.key}: FILLED {record.outcome.value} {shares:.2f} @ {price:.2f}")
        self._transition(record, TradeState.HELD, f"{order.purpose.value} filled @ {price:.2f}")

        if self.strategy.hedge_enabled and record.paired_key is not None:
            partner = self.records.get(record.paired_key)
            if partner is not None and partner.state is TradeState.ENTRY_PENDING:
                self._transition(partner, TradeState.HEDGE_WATCH, f"partner {record.outcome.value} filled")

    def _on_balance_decrease(self, token_id: str, sold: float, balance: float):
        live = [r for r in self.live_records() if r.token_id == token_id]
        stale = [ref for ref, r in self._stale_orders.items() if r.token_id == token_id]
        if stale:
            # a sell left over from a closed record may be the one that executed
            raise StateAnomalyError(f"-{sold:.4f} shares while {len(stale)} stale order(s) "
                                    f"may still be live", keys=[r.key for r in live])
        holding = [r for r in live if r.has_position]
        if len(holding) != 1:
            raise StateAnomalyError(f"-{sold:.4f} shares with {len(holding)} holding records",
                                    keys=[r.key for r in live])
        record = holding[0]
        sells = [o for o in record.open_orders.values() if o.side is OrderSide.SELL]
        if not sells:
            raise StateAnomalyError(f"-{sold:.4f} shares of {record.key} without a live sell",
                                    keys=[record.key])
        if sold > record.held_shares + SHARE_EPS:
            raise StateAnomalyError(f"-{sold:.4f} shares but {record.key} only holds "
                                    f"{record.held_shares:.4f}", keys=[record.key])

        # With target+stop both live the stop is only sent after the target
        # was confirmed cancelled, so a stop order present means it executed.
        stop_orders = [o for o in sells if o.purpose is OrderPurpose.STOP_LOSS]
        executed = stop_orders[0] if stop_orders else sells[0]
        price = self._fill_price(executed)

        record.sold_shares += sold
        record.proceeds += sold * price
        remaining = record.held_shares
        self.metrics.log_fill(str(record.key), "SELL", sold, price, partial=remaining > SHARE_EPS)

        if remaining > SHARE_EPS:
            logger.warning(f"{record.key}: partial exit {sold:.4f} @ {price:.2f}, "
                           f"{remaining:.4f} left")
            if executed.style is OrderStyle.MARKET:
                # the unfilled part of a market order is killed, a later tick stops the rest
                del record.open_orders[executed.order_ref]
                record.stop_triggered = False
            return

        del record.open_orders[executed.order_ref]
        record.exit_price = price
        if executed.purpose is OrderPurpose.STOP_LOSS:
            state = TradeState.CLOSED_STOPPED
        elif executed.purpose is OrderPurpose.HEDGE_EXIT:
            state = TradeState.CLOSED_HEDGED
        else:
            state = TradeState.CLOSED_SOLD
        logger.info(f"{record.key}: EXIT {executed.purpose.value} {sold:.2f} @ {price:.2f} "
                    f"(pnl {record.pnl:+.4f})")
        self._close(record, state, f"{executed.purpose.value} filled @ {price:.2f}")
        self._exited.append(record)

    def _sweep_stale_orders(self):
        """Retry cancels left unconfirmed when their record closed."""
        for order_ref, record in list(self._stale_orders.items()):
            try:
                result = self.gateway.cancel_order(order_ref)
            except TransientGatewayError as e:
                logger.warning(f"{record.key}: stale {order_ref} still unconfirmed ({e})")
                continue
            del self._stale_orders[order_ref]
            self.metrics.log_cancel(order_ref, str(record.key), result.value, "stale retry")
            if result is CancelResult.ALREADY_FILLED:
                live = [r for r in self.live_records() if r.token_id == record.token_id]
                self._anomaly(record.token_id, f"stale {order_ref} of closed {record.key} filled",
                              [r.key for r in live])

    def _fill_price(self, order: OpenOrder) -> float:
        try:
            price = self.gateway.get_fill_price(order.order_ref)
        except TransientGatewayError as e:
            logger.debug(f"Fill price lookup failed for {order.order_ref}: {e}")
            price = None
        return price if price is not None else order.price

    def _anomaly(self, token_id: str, message: str, keys: List[TrackingKey]):
        logger.error(f"ANOMALY on {token_id[:10]}: {message} - freezing {len(keys)} record(s)")
        self.metrics.log_anomaly(token_id, message, [str(k) for k in keys])
        for key in keys:
            record = self.records.get(key)
            if record is not None and record.is_live:
                self._close(record, TradeState.FROZEN, message)

    # =========================================================================
    # Position management
    # =========================================================================

    def manage(self, snapshot: MarketSnapshot):
        """Follow-up orders for one period's records, given the latest quotes."""
        period_ts = snapshot.period.period_ts
        self._retry_pending(period_ts, snapshot)

        for record in self.live_records(period_ts):
            if not record.has_position or record.is_terminal:
                continue
            quote = snapshot.quote_for_token(record.token_id)
            if record.role is Role.OPPOSITE_LIMIT:
                self._manage_hedge_position(record, quote)
            else:
                self._manage_position(record, quote, snapshot)

        if self.strategy.hedge_enabled and self.strategy.entry_policy is EntryPolicy.DUAL:
            self._manage_dual_hedge(snapshot)

    def _stop_enabled(self, record: TradeRecord) -> bool:
        return (self.config.stop_loss_price is not None
                and record.outcome.value in self.config.stop_loss_outcomes)

    def _manage_position(self, record: TradeRecord, quote: TokenQuote, snapshot: MarketSnapshot):
        if self.strategy.exit_policy is ExitPolicy.HOLD or record.exit_abandoned:
            return

        if (self._stop_enabled(record) and not record.stop_triggered
                and price_at_or_below(quote.ask, self.config.stop_loss_price)):
            self._trigger_stop(record, quote, snapshot)
            return

        if not record.open_orders and not record.stop_triggered:
            self._place_profit_target(record)

    def _place_profit_target(self, record: TradeRecord):
        intent = OrderIntent(
            key=record.key,
            side=OrderSide.SELL,
            style=OrderStyle.LIMIT,
            price=self.config.sell_price,
            size=record.held_shares,
            purpose=OrderPurpose.PROFIT_TARGET,
            outcome=record.outcome,
        )
        if self._place_exit(record, intent) is None:
            return
        record.exit_orders_placed = True
        if record.state is TradeState.HELD:
            self._transition(record, TradeState.EXIT_PENDING,
                             f"target {self.config.sell_price:.2f}"
                             + (f", stop {self.config.stop_loss_price:.2f}" if self._stop_enabled(record) else ""))

    def _place_exit(self, record: TradeRecord, intent: OrderIntent) -> Optional[str]:
        """Send a SELL for the record. Never commits more shares than are held."""
        if record.committed_sell_shares + intent.size > record.held_shares + SHARE_EPS:
            logger.error(f"{record.key}: refusing {intent} - would sell "
                         f"{record.committed_sell_shares + intent.size:.4f} of {record.held_shares:.4f}")
            return None

        try:
            order_ref = self.gateway.place_intent(intent)
        except TransientGatewayError as e:
            logger.warning(f"{record.key}: {intent.purpose.value} not sent ({e}), retrying next tick")
            self.metrics.log_order_reject(str(record.key), intent.purpose.value, str(e), True)
            return None
        except OrderRejectedError as e:
            record.exit_attempts += 1
            self.metrics.log_order_reject(str(record.key), intent.purpose.value, str(e), False)
            if record.exit_attempts >= self.config.max_order_attempts:
                record.exit_abandoned = True
                logger.error(f"{record.key}: exit rejected {record.exit_attempts}x ({e}), "
                             f"holding to resolution")
            else:
                logger.warning(f"{record.key}: {intent.purpose.value} rejected ({e})")
            return None

        record.open_orders[order_ref] = OpenOrder(
            order_ref=order_ref,
            purpose=intent.purpose,
            side=intent.side,
            style=intent.style,
            price=intent.price,
            size=intent.size,
        )
        self.metrics.log_order_submit(order_ref, str(record.key), intent.side.value,
                                      intent.style.value, intent.price, intent.size,
                                      intent.purpose.value)
        logger.info(f"{record.key}: {intent.style.value} SELL {intent.size:.2f} @ "
                    f"{intent.price:.2f} ({intent.purpose.value}, {order_ref})")
        return order_ref

    def _cancel(self, record: TradeRecord, order: OpenOrder, reason: str) -> Optional[CancelResult]:
        """Cancel one order. None means unconfirmed - caller retries next tick."""
        try:
            result = self.gateway.cancel_order(order.order_ref)
        except TransientGatewayError as e:
            logger.warning(f"{record.key}: cancel {order.order_ref} unconfirmed ({e})")
            return None
        self.metrics.log_cancel(order.order_ref, str(record.key), result.value, reason)
        if result is not CancelResult.ALREADY_FILLED:
            record.open_orders.pop(order.order_ref, None)
        return result

    def _trigger_stop(self, record: TradeRecord, quote: TokenQuote,
                      snapshot: Optional[MarketSnapshot], stop_price: Optional[float] = None):
        """
        Market-sell the position. Resting sells are cancelled first and the
        stop only goes out once every cancel is confirmed.
        """
        stop_price = stop_price if stop_price is not None else self.config.stop_loss_price
        resting = [o for o in record.open_orders.values() if o.side is OrderSide.SELL]
        for order in resting:
            result = self._cancel(record, order, f"stop {stop_price:.2f} hit")
            if result is None:
                return
            if result is CancelResult.ALREADY_FILLED:
                logger.info(f"{record.key}: {order.purpose.value} already filled, no stop needed")
                return

        # A market sell executes against the bid; history without bids only has the ask
        sell_at = quote.bid if quote.bid is not None else quote.ask
        intent = OrderIntent(
            key=record.key,
            side=OrderSide.SELL,
            style=OrderStyle.MARKET,
            price=sell_at,
            size=record.held_shares,
            purpose=OrderPurpose.STOP_LOSS,
            outcome=record.outcome,
        )
        if self._place_exit(record, intent) is None:
            return

        record.stop_triggered = True
        logger.warning(f"{record.key}: STOP {record.outcome.value} ask {quote.ask:.2f} <= {stop_price:.2f}, "
                       f"selling at {sell_at:.2f}")
        if record.state is TradeState.HELD:
            self._transition(record, TradeState.EXIT_PENDING, f"stop @ {sell_at:.2f}")

        if (self.strategy.exit_policy is ExitPolicy.CROSS_HEDGE
                and record.role is Role.PRIMARY and snapshot is not None):
            self._hedge_after_stop(record, snapshot)

    # --- cross-token hedge ---

    def _hedge_after_stop(self, primary: TradeRecord, snapshot: MarketSnapshot):
        period = snapshot.period
        opposite_outcome = primary.outcome.opposite
        opposite_token = period.token_id(opposite_outcome)
        existing = self.find_live(period.period_ts, opposite_token)

        if existing is not None:
            if existing.state is TradeState.HELD and not existing.open_orders:
                self._place_hedge_exit(existing)
            else:
                logger.info(f"{primary.key}: opposite {existing.key} is {existing.state.value}, no hedge action")
            return

        if not primary.was_filled:
            raise StateAnomalyError(f"hedge requested for unfilled {primary.key}", keys=[primary.key])

        key = TrackingKey(period.period_ts, opposite_token, Role.OPPOSITE_LIMIT)
        intent = OrderIntent(
            key=key,
            side=OrderSide.BUY,
            style=OrderStyle.LIMIT,
            price=self.config.hedge_entry_price,
            size=primary.shares,
            purpose=OrderPurpose.HEDGE_ENTRY,
            outcome=opposite_outcome,
        )
        record = TradeRecord(
            key=key,
            outcome=opposite_outcome,
            asset=primary.asset,
            entry_style=OrderStyle.LIMIT,
            entry_price=intent.price,
            target_shares=intent.size,
            pending_intent=intent,
            paired_key=primary.key,
        )
        self.records[key] = record
        logger.info(f"{primary.key}: hedging with {opposite_outcome.value} BUY "
                    f"{intent.size:.2f} @ {intent.price:.2f}")
        self._submit([record])

    def _place_hedge_exit(self, record: TradeRecord):
        """Take-profit on an opposite-token position at (1 - stop) + margin."""
        intent = OrderIntent(
            key=record.key,
            side=OrderSide.SELL,
            style=OrderStyle.LIMIT,
            price=self.config.hedge_exit_price,
            size=record.held_shares,
            purpose=OrderPurpose.HEDGE_EXIT,
            outcome=record.outcome,
        )
        if self._place_exit(record, intent) is None:
            return
        record.exit_orders_placed = True
        if record.state is TradeState.HELD:
            self._transition(record, TradeState.EXIT_PENDING, f"hedge take-profit {intent.price:.2f}")

    def _manage_hedge_position(self, record: TradeRecord, quote: TokenQuote):
        """Opposite-token position: take-profit at 1-stop+margin, stop at 1-stop-margin."""
        stop = self.config.hedge_stop_price
        if stop is None or record.stop_triggered or record.exit_abandoned:
            return
        if price_at_or_below(quote.ask, stop):
            self._trigger_stop(record, quote, None, stop_price=stop)
            return
        if not record.open_orders:
            self._place_hedge_exit(record)

    # --- dual-limit hedge ---

    def _manage_dual_hedge(self, snapshot: MarketSnapshot):
        """
        After the hedge minute with exactly one side filled: cancel the
        other side's resting limit and, once the cancel is confirmed, buy it
        when its ask reaches the hedge price.
        """
        cfg = self.config
        period_ts = snapshot.period.period_ts
        if snapshot.elapsed_minutes < cfg.dual_limit_hedge_after_minutes:
            return

        pair = [r for r in self.period_records(period_ts) if r.role in (Role.PRIMARY, Role.OPPOSITE)]
        filled = [r for r in pair if r.was_filled]
        waiting = [r for r in pair if r.state in ENTRY_STATES]
        if len(filled) != 1 or len(waiting) != 1:
            return
        record = waiting[0]

        if record.state in (TradeState.ENTRY_PENDING, TradeState.HEDGE_WATCH):
            order = record.entry_order
            if order is not None:
                result = self._cancel(record, order, "hedge replace")
                if result is None:
                    return
                if result is CancelResult.ALREADY_FILLED:
                    logger.info(f"{record.key}: entry filled before cancel, no hedge needed")
                    return
            self._transition(record, TradeState.HEDGE_REPLACED,
                             f"cancelled {record.entry_price:.2f}, hedge at {cfg.dual_limit_hedge_price:.2f}")
            record.hedge_armed = True

        if record.state is TradeState.HEDGE_REPLACED and record.entry_order is None:
            ask = snapshot.quote_for_token(record.token_id).ask
            if price_at_or_above(ask, cfg.dual_limit_hedge_price):
                # Booked at the hedge level; a live venue may take up to the ask
                record.pending_intent = OrderIntent(
                    key=record.key,
                    side=OrderSide.BUY,
                    style=OrderStyle.MARKET,
                    price=cfg.dual_limit_hedge_price,
                    size=record.target_shares,
                    purpose=OrderPurpose.HEDGE_ENTRY,
                    outcome=record.outcome,
                    max_price=max(ask, cfg.dual_limit_hedge_price),
                )
                logger.info(f"{record.key}: hedge trigger ask {ask:.2f} >= {cfg.dual_limit_hedge_price:.2f}")
                self._submit([record])

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def resolve_period(self, period_ts: int, winner: Optional[Outcome]) -> PeriodSummary:
        """
        Settle a finished period: held shares pay 1.0 if their side won,
        unfilled entries are cancelled. An undetermined winner pays nothing.
        """
        self.reconcile(period_ts)

        for record in self.live_records(period_ts):
            if record.has_position:
                payout = 1.0 if winner is record.outcome else 0.0
                record.resolved_value = record.held_shares * payout
                self._close(record, TradeState.CLOSED_RESOLVED,
                            f"resolved {winner.value if winner else 'unknown'}")
            else:
                self._close(record, TradeState.CLOSED_CANCELLED, "period ended before fill")

        records = sorted(self.period_records(period_ts), key=lambda r: r.key.sort_key)
        for record in records:
            self._known_balances.pop(record.token_id, None)
        for order_ref, record in list(self._stale_orders.items()):
            if record.period_ts == period_ts:
                logger.warning(f"{record.key}: stale {order_ref} never confirmed cancelled, "
                               f"dropped with the period")
                del self._stale_orders[order_ref]
        return PeriodSummary(period_ts=period_ts, winner=winner, records=records)

    def _transition(self, record: TradeRecord, new_state: TradeState, reason: str = ""):
        old = record.state
        record.transition(new_state, reason)
        self.metrics.log_state_change(str(record.key), old.value, new_state.value, reason)
        logger.debug(f"{record.key}: {old.value} -> {new_state.value} ({reason})")

    def _close(self, record: TradeRecord, state: TradeState, reason: str):
        """Terminal transition: cancel what is still resting, archive the record."""
        self._transition(record, state, reason)
        for order_ref in list(record.open_orders):
            try:
                result = self.gateway.cancel_order(order_ref)
                self.metrics.log_cancel(order_ref, str(record.key), result.value, "record closed")
            except TransientGatewayError as e:
                logger.warning(f"{record.key}: could not cancel stale {order_ref} ({e}), retrying")
                self._stale_orders[order_ref] = record
        record.open_orders.clear()
        record.pending_intent = None
        record.note = reason

        if self.records.get(record.key) is record:
            del self.records[record.key]
        self.archive.append(record)
