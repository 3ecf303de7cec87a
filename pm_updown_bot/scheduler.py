"""
Trading Loop

Single poll loop per strategy instance. Each tick:
    1. fetch snapshots (one per asset)
    2. roll periods: resolve the finished one, open trigger state for the new one
    3. detector -> entry intents -> state machine (orders dispatched, awaited)
    4. reconcile balances, tell the detector about completed exits
    5. state machine follow-ups (targets, stops, hedges)

Ticks never overlap and all state changes happen on this thread. The
trigger map and the record map are owned here; nothing else writes them.
No error stops the loop: it is logged and the next tick runs.
"""

import logging
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .config import BotConfig
from .detector import OpportunityDetector
from .errors import BotError, TransientGatewayError
from .gateway import ExchangeGateway, OrderDispatcher, SimulatedGateway
from .history import PriceRecorder
from .metrics import MetricsLogger
from .models import MarketPeriod, MarketSnapshot, Outcome, PeriodTriggerState
from .trade_machine import PeriodSummary, TradeStateMachine, determine_winner

logger = logging.getLogger(__name__)


class TradingLoop:
    """Drives Detector + TradeStateMachine from a snapshot feed."""

    def __init__(self, config: BotConfig, gateway: ExchangeGateway, feed=None,
                 metrics: Optional[MetricsLogger] = None,
                 recorder: Optional[PriceRecorder] = None):
        self.config = config
        self.gateway = gateway
        self.feed = feed
        self.metrics = metrics or MetricsLogger()
        self.recorder = recorder

        # Simulated fills must stay deterministic: no thread pool
        workers = 1 if isinstance(gateway, SimulatedGateway) else config.max_workers
        self.dispatcher = OrderDispatcher(max_workers=workers, timeout=config.order_timeout_seconds)

        self.detector = OpportunityDetector(config)
        self.machine = TradeStateMachine(config, gateway, self.metrics, self.dispatcher)

        self.triggers: Dict[Tuple[int, str], PeriodTriggerState] = {}
        self.active_periods: Dict[str, MarketPeriod] = {}
        self.last_snapshots: Dict[str, MarketSnapshot] = {}
        self.summaries: List[PeriodSummary] = []

        self.running = True
        self.tick_count = 0
        self.error_count = 0

    # =========================================================================
    # Period lifecycle
    # =========================================================================

    def trigger_state(self, period: MarketPeriod) -> PeriodTriggerState:
        key = (period.period_ts, period.asset)
        if key not in self.triggers:
            self.triggers[key] = PeriodTriggerState(period.period_ts, self.config.strategy.name)
        return self.triggers[key]

    def start_period(self, period: MarketPeriod):
        self.active_periods[period.asset] = period
        self.trigger_state(period)
        self.metrics.log_period_start(period.window_id, period.period_ts,
                                      period.up_token_id, period.down_token_id)
        logger.info(f"New period {period.window_id} ({period.slug or period.period_ts})")

    def finish_period(self, period: MarketPeriod, winner: Optional[Outcome] = None) -> PeriodSummary:
        """Settle a period; the winner defaults to the last snapshot's asks."""
        if winner is None:
            snapshot = self.last_snapshots.get(period.asset)
            if snapshot is not None and snapshot.period.period_ts == period.period_ts:
                winner = determine_winner(snapshot.quote(Outcome.UP).ask,
                                          snapshot.quote(Outcome.DOWN).ask,
                                          self.config.resolution_threshold)

        summary = self.machine.resolve_period(period.period_ts, winner)
        self.triggers.pop((period.period_ts, period.asset), None)
        if self.active_periods.get(period.asset) == period:
            del self.active_periods[period.asset]
        self.summaries.append(summary)

        self.metrics.log_period_end(period.window_id, period.period_ts,
                                    winner.value if winner else None,
                                    summary.cost, summary.value, summary.pnl, len(summary.records))
        if summary.records:
            logger.info(f"Period {period.window_id} done: winner={winner.value if winner else '?'} "
                        f"cost=${summary.cost:.4f} value=${summary.value:.4f} pnl=${summary.pnl:+.4f}")
        return summary

    # =========================================================================
    # Per-snapshot pass
    # =========================================================================

    def process_snapshot(self, snapshot: MarketSnapshot):
        """One Detector -> StateMachine pass for one asset."""
        period = snapshot.period
        current = self.active_periods.get(period.asset)
        if current is None or current.period_ts != period.period_ts:
            if current is not None:
                self.finish_period(current)
            self.start_period(period)
        self.last_snapshots[period.asset] = snapshot

        trigger = self.trigger_state(period)
        intents = self.detector.detect(snapshot, trigger)
        if intents:
            self.machine.accept_entries(intents, asset=period.asset)

        self.machine.reconcile()
        for record in self.machine.drain_exits():
            state = self.triggers.get((record.period_ts, record.asset))
            if state is not None:
                state.mark_exited(record.token_id)

        self.machine.manage(snapshot)

    def tick(self) -> int:
        """Fetch and process one round of snapshots. Returns snapshots processed."""
        self.tick_count += 1
        try:
            snapshots = self.feed.fetch_snapshots()
        except TransientGatewayError as e:
            logger.warning(f"Feed unavailable: {e}")
            return 0

        if self.recorder and snapshots:
            self.recorder.record(snapshots)

        processed = 0
        for snapshot in snapshots:
            try:
                self.gateway.observe(snapshot)
                self.process_snapshot(snapshot)
                processed += 1
            except BotError as e:
                self.error_count += 1
                logger.error(f"{snapshot.period.window_id}: {e}")
                self.metrics.log_error(str(e), {"window_id": snapshot.period.window_id})
            except Exception as e:
                self.error_count += 1
                logger.exception(f"Unexpected error on {snapshot.period.window_id}: {e}")
                self.metrics.log_error(repr(e), {"window_id": snapshot.period.window_id})
        return processed

    def kill_switch_active(self) -> bool:
        if Path(self.config.kill_switch_file).exists():
            logger.critical(f"KILL SWITCH detected: {self.config.kill_switch_file}")
            return True
        return False

    def run(self, max_ticks: Optional[int] = None):
        """Poll until stopped, the kill switch appears, or max_ticks is reached."""
        interval = self.config.poll_interval_seconds
        logger.info(f"Loop started: strategy={self.config.strategy.name} "
                    f"gateway={self.gateway.name} interval={interval:.2f}s")
        try:
            while self.running:
                if self.kill_switch_active():
                    break
                if max_ticks is not None and self.tick_count >= max_ticks:
                    break
                started = time.time()
                self.tick()
                sleep_for = interval - (time.time() - started)
                if sleep_for > 0:
                    time.sleep(sleep_for)
        finally:
            self.stop()

    def stop(self):
        self.running = False
        self.dispatcher.shutdown()
        open_records = self.machine.live_records()
        if open_records:
            logger.warning(f"Stopping with {len(open_records)} open record(s):")
            for record in open_records:
                logger.warning(f"  {record.key} {record.state.value} "
                               f"{record.held_shares:.2f} sh @ {record.avg_entry_price:.2f}")
