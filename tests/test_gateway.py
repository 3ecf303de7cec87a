"""
Tests for the simulated venue and the order dispatcher.

Fill rules are threshold crossings against the last observed quote.
"""

import time

import pytest

from pm_updown_bot.errors import OrderRejectedError, TransientGatewayError
from pm_updown_bot.gateway import (
    ExchangeGateway, OrderDispatcher, SimOrderStatus, SimulatedGateway,
)
from pm_updown_bot.models import (
    CancelResult, OrderIntent, OrderSide, OrderStyle, TrackingKey,
)

TOKEN = "TOKEN000000000001"


class TestSimulatedLimitOrders:
    """LIMIT orders rest until the quote crosses."""

    def setup_method(self):
        self.gw = SimulatedGateway()
        self.gw.set_quote(TOKEN, bid=0.94, ask=0.95)

    def test_buy_limit_rests_then_fills_at_ask(self, period, snap):
        gw = SimulatedGateway()
        gw.observe(snap(0, 0.95, 0.05))
        ref = gw.place_order(period.up_token_id, OrderSide.BUY, OrderStyle.LIMIT, 1.0, 0.87)
        assert gw.order(ref).status is SimOrderStatus.OPEN
        assert gw.get_balance(period.up_token_id) == 0

        gw.observe(snap(3, 0.90, 0.10))
        assert gw.order(ref).status is SimOrderStatus.OPEN

        gw.observe(snap(6, 0.86, 0.14))
        assert gw.order(ref).status is SimOrderStatus.FILLED
        assert gw.get_fill_price(ref) == pytest.approx(0.86)
        assert gw.get_balance(period.up_token_id) == pytest.approx(1.0)

    def test_marketable_buy_limit_fills_immediately_at_ask(self):
        ref = self.gw.place_order(TOKEN, OrderSide.BUY, OrderStyle.LIMIT, 2.0, 0.97)
        assert self.gw.order(ref).status is SimOrderStatus.FILLED
        assert self.gw.get_fill_price(ref) == pytest.approx(0.95)

    def test_sell_limit_fills_at_bid(self):
        self.gw.place_order(TOKEN, OrderSide.BUY, OrderStyle.LIMIT, 2.0, 0.95)
        ref = self.gw.place_order(TOKEN, OrderSide.SELL, OrderStyle.LIMIT, 2.0, 0.99)
        assert self.gw.order(ref).status is SimOrderStatus.OPEN

        self.gw.set_quote(TOKEN, bid=0.99, ask=1.0)
        self.gw._try_match(self.gw.order(ref))
        assert self.gw.order(ref).status is SimOrderStatus.FILLED
        assert self.gw.get_balance(TOKEN) == pytest.approx(0.0)

    def test_sell_limit_uses_ask_without_bid(self, period, snap):
        gw = SimulatedGateway()
        gw.observe(snap(0, 0.50, 0.50))
        gw.place_order(period.up_token_id, OrderSide.BUY, OrderStyle.LIMIT, 1.0, 0.50)
        ref = gw.place_order(period.up_token_id, OrderSide.SELL, OrderStyle.LIMIT, 1.0, 0.99)
        gw.observe(snap(14, 0.99, 0.01))
        assert gw.get_fill_price(ref) == pytest.approx(0.99)


class TestSimulatedMarketOrders:
    """MARKET fills now or is killed; sells take the bid."""

    def test_buy_booked_at_intent_price(self):
        gw = SimulatedGateway()
        gw.set_quote(TOKEN, bid=0.84, ask=0.86)
        ref = gw.place_order(TOKEN, OrderSide.BUY, OrderStyle.MARKET, 10, 0.85)
        assert gw.get_fill_price(ref) == pytest.approx(0.85)
        assert gw.get_balance(TOKEN) == pytest.approx(10)

    def test_sell_fills_at_bid(self):
        gw = SimulatedGateway(starting_cash=10.0)
        gw.set_quote(TOKEN, bid=0.92, ask=0.93)
        gw.place_order(TOKEN, OrderSide.BUY, OrderStyle.MARKET, 2, 0.93)

        gw.set_quote(TOKEN, bid=0.70, ask=0.85)
        ref = gw.place_order(TOKEN, OrderSide.SELL, OrderStyle.MARKET, 2, 0.85)
        assert gw.get_fill_price(ref) == pytest.approx(0.70)
        assert gw.cash == pytest.approx(10.0 - 2 * 0.93 + 2 * 0.70)

    def test_sell_uses_ask_when_data_has_no_bids(self):
        gw = SimulatedGateway()
        gw.set_quote(TOKEN, bid=None, ask=0.80)
        gw.place_order(TOKEN, OrderSide.BUY, OrderStyle.MARKET, 1, 0.80)
        ref = gw.place_order(TOKEN, OrderSide.SELL, OrderStyle.MARKET, 1, 0.80)
        assert gw.get_fill_price(ref) == pytest.approx(0.80)

    def test_killed_without_quote(self):
        gw = SimulatedGateway()
        with pytest.raises(OrderRejectedError):
            gw.place_order(TOKEN, OrderSide.BUY, OrderStyle.MARKET, 1, 0.5)

    def test_sell_killed_without_bid_or_ask(self):
        gw = SimulatedGateway()
        gw.set_quote(TOKEN, bid=None, ask=0.5)
        gw.place_order(TOKEN, OrderSide.BUY, OrderStyle.MARKET, 1, 0.5)
        gw.set_quote(TOKEN, bid=None, ask=None)
        with pytest.raises(OrderRejectedError):
            gw.place_order(TOKEN, OrderSide.SELL, OrderStyle.MARKET, 1, 0.4)


class TestSimulatedBalances:
    def test_sell_more_than_held_rejected(self):
        gw = SimulatedGateway()
        gw.set_quote(TOKEN, bid=0.5, ask=0.5)
        gw.place_order(TOKEN, OrderSide.BUY, OrderStyle.LIMIT, 1.0, 0.5)
        with pytest.raises(OrderRejectedError, match="not enough balance"):
            gw.place_order(TOKEN, OrderSide.SELL, OrderStyle.LIMIT, 1.5, 0.9)

    def test_resting_sells_count_against_balance(self):
        gw = SimulatedGateway()
        gw.set_quote(TOKEN, bid=0.5, ask=0.5)
        gw.place_order(TOKEN, OrderSide.BUY, OrderStyle.LIMIT, 1.0, 0.5)
        gw.place_order(TOKEN, OrderSide.SELL, OrderStyle.LIMIT, 1.0, 0.99)
        with pytest.raises(OrderRejectedError):
            gw.place_order(TOKEN, OrderSide.SELL, OrderStyle.MARKET, 1.0, 0.5)

    def test_cash_limit(self):
        gw = SimulatedGateway(starting_cash=1.0)
        gw.set_quote(TOKEN, bid=0.9, ask=0.95)
        with pytest.raises(OrderRejectedError):
            gw.place_order(TOKEN, OrderSide.BUY, OrderStyle.LIMIT, 2.0, 0.95)

    def test_invalid_size(self):
        with pytest.raises(OrderRejectedError):
            SimulatedGateway().place_order(TOKEN, OrderSide.BUY, OrderStyle.LIMIT, 0, 0.5)


class TestSimulatedCancel:
    def test_cancel_results(self):
        gw = SimulatedGateway()
        gw.set_quote(TOKEN, bid=0.5, ask=0.6)
        resting = gw.place_order(TOKEN, OrderSide.BUY, OrderStyle.LIMIT, 1.0, 0.45)
        filled = gw.place_order(TOKEN, OrderSide.BUY, OrderStyle.LIMIT, 1.0, 0.65)

        assert gw.cancel_order(resting) is CancelResult.CANCELLED
        assert gw.cancel_order(filled) is CancelResult.ALREADY_FILLED
        assert gw.cancel_order("SIM-999999") is CancelResult.NOT_FOUND

    def test_cancelled_order_never_fills(self, period, snap):
        gw = SimulatedGateway()
        gw.observe(snap(0, 0.50, 0.50))
        ref = gw.place_order(period.up_token_id, OrderSide.BUY, OrderStyle.LIMIT, 1.0, 0.45)
        gw.cancel_order(ref)
        gw.observe(snap(5, 0.30, 0.71))
        assert gw.get_balance(period.up_token_id) == 0
        assert gw.fills == []

    def test_refs_are_sequential(self):
        gw = SimulatedGateway()
        gw.set_quote(TOKEN, bid=0.5, ask=0.6)
        refs = [gw.place_order(TOKEN, OrderSide.BUY, OrderStyle.LIMIT, 1.0, 0.4) for _ in range(3)]
        assert refs == ["SIM-000001", "SIM-000002", "SIM-000003"]


class SlowGateway(ExchangeGateway):
    """Sleeps on one token, rejects another, accepts the rest."""

    name = "slow"

    def place_order(self, token_id, side, style, size, price):
        if token_id == "slow":
            time.sleep(0.5)
        if token_id == "bad":
            raise OrderRejectedError("not enough balance")
        return f"ref-{token_id}"

    def cancel_order(self, order_ref):
        return CancelResult.CANCELLED

    def get_balance(self, token_id):
        return 0.0


def _intent(token_id):
    return OrderIntent(key=TrackingKey(1, token_id), side=OrderSide.BUY,
                       style=OrderStyle.LIMIT, price=0.5, size=1.0)


class TestOrderDispatcher:
    """Batch placement keeps input order; timeouts are transient."""

    def test_sequential(self):
        dispatcher = OrderDispatcher(max_workers=1)
        results = dispatcher.place_all(SlowGateway(), [_intent("a"), _intent("bad"), _intent("b")])
        assert results[0] == "ref-a"
        assert isinstance(results[1], OrderRejectedError)
        assert results[2] == "ref-b"

    def test_parallel_timeout(self):
        dispatcher = OrderDispatcher(max_workers=3, timeout=0.05)
        try:
            results = dispatcher.place_all(SlowGateway(), [_intent("a"), _intent("slow"), _intent("bad")])
        finally:
            dispatcher.shutdown()
        assert results[0] == "ref-a"
        assert isinstance(results[1], TransientGatewayError)
        assert isinstance(results[2], OrderRejectedError)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
