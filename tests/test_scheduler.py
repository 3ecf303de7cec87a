"""Tests for the TradingLoop: period rollover, feed errors, kill switch."""

import pytest

from pm_updown_bot.config import BotConfig
from pm_updown_bot.errors import TransientGatewayError
from pm_updown_bot.feed import SnapshotFeed
from pm_updown_bot.gateway import SimulatedGateway
from pm_updown_bot.history import PriceRecorder
from pm_updown_bot.metrics import EventType, MetricsLogger
from pm_updown_bot.models import MarketPeriod, Outcome, TradeState
from pm_updown_bot.scheduler import TradingLoop


class ScriptedFeed(SnapshotFeed):
    """Returns one prepared batch per call; an Exception entry is raised."""

    def __init__(self, batches):
        self.batches = list(batches)

    def fetch_snapshots(self):
        batch = self.batches.pop(0) if self.batches else []
        if isinstance(batch, Exception):
            raise batch
        return batch


def next_period(period):
    ts = period.period_ts + 900
    return MarketPeriod(ts, period.asset, f"up-{ts}", f"down-{ts}")


class TestPeriodRollover:
    def setup_method(self):
        self.config = BotConfig(dual_limit_shares=2)
        self.config.apply_preset("dual_limit_nohedge")

    def test_previous_period_settled_on_rollover(self, period, snap):
        later = next_period(period)
        feed = ScriptedFeed([
            [snap(0, 0.40, 0.61)],
            [snap(14.9, 0.52, 0.49)],
            [snap(0, 0.50, 0.51, market=later)],
        ])
        metrics = MetricsLogger()
        loop = TradingLoop(self.config, SimulatedGateway(), feed=feed, metrics=metrics)
        for _ in range(3):
            loop.tick()

        assert len(loop.summaries) == 1
        summary = loop.summaries[0]
        assert summary.period_ts == period.period_ts
        assert summary.winner is Outcome.UP
        states = {r.outcome: r.state for r in summary.records}
        assert states == {Outcome.UP: TradeState.CLOSED_RESOLVED,
                          Outcome.DOWN: TradeState.CLOSED_CANCELLED}
        assert summary.pnl == pytest.approx(2 * (1.0 - 0.40))

        assert (period.period_ts, "btc") not in loop.triggers
        assert (later.period_ts, "btc") in loop.triggers
        assert loop.active_periods["btc"] == later
        assert metrics.counts[EventType.PERIOD_START] == 2
        assert metrics.counts[EventType.PERIOD_END] == 1

    def test_new_period_gets_fresh_trigger(self, period, snap):
        later = next_period(period)
        gw = SimulatedGateway()
        loop = TradingLoop(self.config, gw, feed=ScriptedFeed([
            [snap(0, 0.40, 0.41)],
            [snap(0, 0.40, 0.41, market=later)],
        ]))
        loop.tick()
        loop.tick()
        assert len(gw.fills) == 4


class TestTickErrors:
    def test_feed_outage_skips_tick(self, period, snap):
        loop = TradingLoop(BotConfig(), SimulatedGateway(), feed=ScriptedFeed([
            TransientGatewayError("gamma 503"),
            [snap(1, 0.5, 0.5)],
        ]))
        assert loop.tick() == 0
        assert loop.tick() == 1
        assert loop.error_count == 0

    def test_processing_error_counted_not_raised(self, period, snap, monkeypatch):
        loop = TradingLoop(BotConfig(), SimulatedGateway(), feed=ScriptedFeed([[snap(1, 0.5, 0.5)]]))

        def explode(snapshot):
            raise ValueError("bad snapshot")

        monkeypatch.setattr(loop, "process_snapshot", explode)
        assert loop.tick() == 0
        assert loop.error_count == 1
        assert loop.metrics.counts[EventType.ERROR] == 1

    def test_records_prices(self, period, snap, tmp_path):
        recorder = PriceRecorder(str(tmp_path))
        loop = TradingLoop(BotConfig(), SimulatedGateway(), recorder=recorder,
                           feed=ScriptedFeed([[snap(1, 0.5, 0.5, 0.49, 0.49)]]))
        loop.tick()
        assert recorder.path_for(period.period_ts).exists()


class TestRun:
    def test_max_ticks(self, snap):
        config = BotConfig(poll_interval_ms=100)
        loop = TradingLoop(config, SimulatedGateway(), feed=ScriptedFeed([]))
        loop.run(max_ticks=2)
        assert loop.tick_count == 2
        assert not loop.running

    def test_kill_switch(self, tmp_path):
        switch = tmp_path / "STOP_TRADING.txt"
        switch.write_text("stop")
        config = BotConfig(kill_switch_file=str(switch))
        loop = TradingLoop(config, SimulatedGateway(), feed=ScriptedFeed([]))
        loop.run(max_ticks=5)
        assert loop.tick_count == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
