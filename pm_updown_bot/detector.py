"""
Opportunity Detector

Turns a market snapshot into entry intents.

Two gating policies:
- FILTERED: per side, bid in [trigger_price, max_buy_price], enough time left.
  After an exit the token must trade back below the trigger before it can
  fire again (reset-after-sell), so one spike cannot re-trigger us.
- DUAL: once the time gate opens, one entry per side with no price filter,
  once per period.

Order-type decision (per side): ask in [T, 1.0] -> MARKET at ask, since a
limit at T would just sit under the book. Otherwise LIMIT at T, which still
executes immediately at the lower ask but caps the price if it runs away.
"""

import logging
from typing import List, Optional, Tuple

from .config import BotConfig, EntryPolicy, EntryStyle
from .models import (
    MarketSnapshot, OrderIntent, OrderPurpose, OrderSide, OrderStyle,
    Outcome, PeriodTriggerState, Role, TrackingKey,
)

logger = logging.getLogger(__name__)


def decide_order_style(ask: Optional[float], entry_price: float) -> Tuple[OrderStyle, float]:
    """
    MARKET at ask iff entry_price <= ask <= 1.0, else LIMIT at entry_price.

    The upper bound never binds for a valid ask; it is kept so an ask
    above 1.0 from a bad book falls back to the capped limit.
    """
    if ask is not None and entry_price <= ask <= 1.0:
        return OrderStyle.MARKET, ask
    return OrderStyle.LIMIT, entry_price


class OpportunityDetector:
    """Stateless apart from the PeriodTriggerState passed in."""

    def __init__(self, config: BotConfig):
        self.config = config
        self.strategy = config.strategy

    def detect(self, snapshot: MarketSnapshot, trigger: PeriodTriggerState) -> List[OrderIntent]:
        """Evaluate one snapshot. May mark `trigger` fired."""
        if snapshot.remaining_seconds <= 0:
            return []
        if snapshot.elapsed_seconds < self.config.min_elapsed_minutes * 60:
            return []

        if self.strategy.entry_policy is EntryPolicy.DUAL:
            return self._detect_dual(snapshot, trigger)
        return self._detect_filtered(snapshot, trigger)

    def _detect_filtered(self, snapshot: MarketSnapshot, trigger: PeriodTriggerState) -> List[OrderIntent]:
        cfg = self.config
        intents = []

        for outcome in (Outcome.UP, Outcome.DOWN):
            quote = snapshot.quote(outcome)
            token_id = quote.token_id
            bid = quote.bid
            if bid is None:
                continue

            if token_id in trigger.needs_reset:
                if bid < cfg.trigger_price:
                    trigger.needs_reset.discard(token_id)
                    logger.info(f"{snapshot.period.window_id} {outcome.value}: reset "
                                f"(bid {bid:.2f} < {cfg.trigger_price:.2f}), re-entry allowed")
                continue

            if trigger.is_fired(token_id):
                continue
            if not cfg.trigger_price <= bid <= cfg.max_buy_price:
                continue
            if snapshot.remaining_seconds < cfg.min_time_remaining_seconds:
                logger.debug(f"{outcome.value} bid {bid:.2f} qualifies but only "
                             f"{snapshot.remaining_seconds:.0f}s left")
                continue

            intent = self._entry_intent(snapshot, outcome, Role.PRIMARY, cfg.trigger_price)
            trigger.mark_fired(token_id)
            intents.append(intent)
            logger.info(f"{snapshot.period.window_id} {outcome.value}: bid {bid:.2f} in "
                        f"[{cfg.trigger_price:.2f}, {cfg.max_buy_price:.2f}] -> {intent}")

        return intents

    def _detect_dual(self, snapshot: MarketSnapshot, trigger: PeriodTriggerState) -> List[OrderIntent]:
        if trigger.is_fired():
            return []

        price = self.config.dual_limit_price
        shares = self.config.dual_shares
        intents = [
            self._entry_intent(snapshot, Outcome.UP, Role.PRIMARY, price, shares),
            self._entry_intent(snapshot, Outcome.DOWN, Role.OPPOSITE, price, shares),
        ]
        trigger.mark_fired()
        logger.info(f"{snapshot.period.window_id}: dual entry {shares:.2f} shares each side @ {price:.2f}")
        return intents

    def _entry_intent(self, snapshot: MarketSnapshot, outcome: Outcome, role: Role,
                      entry_price: float, shares: Optional[float] = None) -> OrderIntent:
        ask = snapshot.quote(outcome).ask
        if self.strategy.entry_style is EntryStyle.AUTO:
            style, price = decide_order_style(ask, entry_price)
        else:
            style, price = OrderStyle.LIMIT, entry_price

        if shares is None:
            shares = round(self.config.fixed_trade_amount / price, 2)

        key = TrackingKey(snapshot.period.period_ts, snapshot.period.token_id(outcome), role)
        return OrderIntent(
            key=key,
            side=OrderSide.BUY,
            style=style,
            price=price,
            size=shares,
            purpose=OrderPurpose.ENTRY,
            outcome=outcome,
        )
