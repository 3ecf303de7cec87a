"""
Backtest Simulator

Replays recorded periods through the live Detector + TradeStateMachine with
a SimulatedGateway (closed loop), so backtest and live share one set of
rules. Fills are threshold crossings only.

For the dual-limit strategy there is also an analytic replay
(replay_dual_limit) that walks the samples directly:
- both sides rest a limit at dual_limit_price once the entry gate opens
- a side fills at the first sample with ask <= entry, at that ask
- with hedging on, once exactly one side has filled and the hedge minute
  has passed, the other side fills when ask >= hedge_price, at hedge_price
- the winner is decided from the final asks; filled winner shares pay 1.00

Both paths must classify every period the same way; compare_results()
reports any period where they do not.

Periods with missing or short data are excluded, not counted as losses.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .config import BotConfig, EntryPolicy
from .errors import BacktestDataError, BotError
from .gateway import SimulatedGateway, buy_limit_crosses, price_at_or_above
from .history import PeriodSeries, PriceSample, load_history_dir
from .metrics import MetricsLogger
from .models import Outcome
from .scheduler import TradingLoop
from .trade_machine import PeriodSummary, classify_pnl, determine_winner

logger = logging.getLogger(__name__)

MIN_SAMPLES = 2


# ============================================================================
# Results
# ============================================================================

@dataclass
class SideFill:
    """A filled side of a period."""
    outcome: str
    shares: float
    price: float
    hedged: bool = False
    exit_value: float = 0.0
    state: str = ""

    @property
    def cost(self) -> float:
        return self.shares * self.price


@dataclass
class PeriodResult:
    period_ts: int
    asset: str
    winner: Optional[str]
    cost: float
    value: float
    fills: List[SideFill] = field(default_factory=list)

    @property
    def pnl(self) -> float:
        return self.value - self.cost

    @property
    def classification(self) -> str:
        return classify_pnl(self.pnl)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period_ts": self.period_ts,
            "asset": self.asset,
            "winner": self.winner,
            "cost": round(self.cost, 6),
            "value": round(self.value, 6),
            "pnl": round(self.pnl, 6),
            "classification": self.classification,
            "fills": [
                {"outcome": f.outcome, "shares": f.shares, "price": f.price,
                 "hedged": f.hedged, "state": f.state}
                for f in self.fills
            ],
        }


@dataclass
class BacktestResults:
    periods: List[PeriodResult] = field(default_factory=list)
    excluded: List[Tuple[str, str]] = field(default_factory=list)  # (period, reason)

    @property
    def total_cost(self) -> float:
        return sum(p.cost for p in self.periods)

    @property
    def total_value(self) -> float:
        return sum(p.value for p in self.periods)

    @property
    def total_pnl(self) -> float:
        return sum(p.pnl for p in self.periods)

    @property
    def winning_periods(self) -> int:
        return sum(1 for p in self.periods if p.classification == "win")

    @property
    def losing_periods(self) -> int:
        return sum(1 for p in self.periods if p.classification == "loss")

    @property
    def flat_periods(self) -> int:
        return sum(1 for p in self.periods if p.classification == "flat")

    @property
    def traded_periods(self) -> int:
        return sum(1 for p in self.periods if p.fills)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "periods": len(self.periods),
            "traded_periods": self.traded_periods,
            "excluded_periods": len(self.excluded),
            "total_cost": round(self.total_cost, 6),
            "total_value": round(self.total_value, 6),
            "total_pnl": round(self.total_pnl, 6),
            "winning_periods": self.winning_periods,
            "losing_periods": self.losing_periods,
            "flat_periods": self.flat_periods,
            "excluded": [{"period": p, "reason": r} for p, r in self.excluded],
            "results": [p.to_dict() for p in self.periods],
        }


def final_sample(series: PeriodSeries) -> PriceSample:
    """Last sample carrying both asks."""
    for sample in reversed(series.samples):
        if sample.ask_up is not None and sample.ask_down is not None:
            return sample
    raise BacktestDataError(f"{series.period_ts}: no sample with both asks")


def period_winner(series: PeriodSeries, threshold: float = 0.5) -> Outcome:
    """Validate a series and decide its winner. Raises BacktestDataError."""
    if len(series.samples) < MIN_SAMPLES:
        raise BacktestDataError(f"{series.period_ts}: only {len(series.samples)} sample(s)")
    last = final_sample(series)
    winner = determine_winner(last.ask_up, last.ask_down, threshold)
    if winner is None:
        raise BacktestDataError(
            f"{series.period_ts}: winner undetermined (up {last.ask_up}, down {last.ask_down})"
        )
    return winner


# ============================================================================
# Closed-loop simulator
# ============================================================================

class BacktestSimulator:
    """Runs the live rules over recorded periods against a SimulatedGateway."""

    def __init__(self, config: BotConfig, metrics: Optional[MetricsLogger] = None):
        self.config = config
        self.metrics = metrics or MetricsLogger()

    def run_period(self, series: PeriodSeries) -> PeriodResult:
        winner = period_winner(series, self.config.resolution_threshold)

        gateway = SimulatedGateway()
        loop = TradingLoop(self.config, gateway, metrics=self.metrics)
        period = series.market_period()
        for snapshot in series.snapshots():
            gateway.observe(snapshot)
            loop.process_snapshot(snapshot)

        summary = loop.finish_period(period, winner)
        result = result_from_summary(series, summary)
        self.metrics.log_backtest_period(series.period_ts, result.winner,
                                         result.cost, result.value, result.pnl)
        return result

    def run(self, series_list: List[PeriodSeries]) -> BacktestResults:
        results = BacktestResults()
        for series in sorted(series_list, key=lambda s: s.period_ts):
            try:
                results.periods.append(self.run_period(series))
            except BacktestDataError as e:
                logger.warning(f"Excluding period {series.period_ts}: {e}")
                results.excluded.append((str(series.period_ts), str(e)))
            except BotError as e:
                logger.error(f"Period {series.period_ts} failed: {e}")
                results.excluded.append((str(series.period_ts), f"error: {e}"))
        return results

    def run_dir(self, history_dir: str, asset: str = "btc") -> BacktestResults:
        series, errors = load_history_dir(history_dir, asset, self.config.period_seconds)
        results = self.run(series)
        results.excluded = errors + results.excluded
        return results


def result_from_summary(series: PeriodSeries, summary: PeriodSummary) -> PeriodResult:
    """Collapse state-machine records into a PeriodResult (Up before Down)."""
    fills = []
    for outcome in (Outcome.UP, Outcome.DOWN):
        for record in summary.records:
            if record.outcome is not outcome or not record.was_filled:
                continue
            fills.append(SideFill(
                outcome=outcome.value,
                shares=record.shares,
                price=record.avg_entry_price,
                hedged=record.hedge_armed,
                exit_value=record.value,
                state=record.state.value,
            ))
    return PeriodResult(
        period_ts=series.period_ts,
        asset=series.asset,
        winner=summary.winner.value if summary.winner else None,
        cost=_sum(f.cost for f in fills),
        value=_sum(f.exit_value for f in fills),
        fills=fills,
    )


def _sum(values) -> float:
    total = 0.0
    for v in values:
        total += v
    return total


# ============================================================================
# Analytic dual-limit replay
# ============================================================================

def replay_dual_limit(series: PeriodSeries, config: BotConfig) -> PeriodResult:
    """Walk the samples with the dual-limit rules directly. See module docstring."""
    winner = period_winner(series, config.resolution_threshold)

    entry = config.dual_limit_price
    hedge_price = config.dual_limit_hedge_price
    hedge_after = config.dual_limit_hedge_after_minutes
    hedge_on = config.strategy.hedge_enabled
    shares = config.dual_shares
    gate = config.min_elapsed_minutes * 60

    placed = False
    fills: Dict[Outcome, SideFill] = {}
    armed: Dict[Outcome, bool] = {Outcome.UP: False, Outcome.DOWN: False}

    for sample in series.samples:
        if not placed:
            remaining = series.duration_seconds - sample.elapsed_seconds
            if sample.elapsed_seconds < gate or remaining <= 0:
                continue
            placed = True

        asks = {Outcome.UP: sample.ask_up, Outcome.DOWN: sample.ask_down}
        for outcome in (Outcome.UP, Outcome.DOWN):
            if outcome in fills or armed[outcome]:
                continue
            if buy_limit_crosses(asks[outcome], entry):
                fills[outcome] = SideFill(outcome.value, shares, asks[outcome])

        if hedge_on and len(fills) == 1 and sample.elapsed_minutes >= hedge_after:
            other = next(o for o in (Outcome.UP, Outcome.DOWN) if o not in fills)
            armed[other] = True
            if price_at_or_above(asks[other], hedge_price):
                fills[other] = SideFill(other.value, shares, hedge_price, hedged=True)

    ordered = [fills[o] for o in (Outcome.UP, Outcome.DOWN) if o in fills]
    for fill in ordered:
        fill.exit_value = fill.shares * (1.0 if fill.outcome == winner.value else 0.0)
        fill.state = "closed_resolved"

    return PeriodResult(
        period_ts=series.period_ts,
        asset=series.asset,
        winner=winner.value,
        cost=_sum(f.cost for f in ordered),
        value=_sum(f.exit_value for f in ordered),
        fills=ordered,
    )


def run_analytic(series_list: List[PeriodSeries], config: BotConfig) -> BacktestResults:
    if config.strategy.entry_policy is not EntryPolicy.DUAL:
        raise BotError("analytic replay only models the dual-limit strategy")
    results = BacktestResults()
    for series in sorted(series_list, key=lambda s: s.period_ts):
        try:
            results.periods.append(replay_dual_limit(series, config))
        except BacktestDataError as e:
            results.excluded.append((str(series.period_ts), str(e)))
    return results


def compare_results(closed_loop: BacktestResults, analytic: BacktestResults) -> List[str]:
    """Periods where the two simulators disagree on classification or fills."""
    mismatches = []
    analytic_by_ts = {p.period_ts: p for p in analytic.periods}
    for period in closed_loop.periods:
        other = analytic_by_ts.pop(period.period_ts, None)
        if other is None:
            mismatches.append(f"{period.period_ts}: missing from analytic replay")
            continue
        if period.classification != other.classification:
            mismatches.append(f"{period.period_ts}: {period.classification} vs {other.classification}")
        elif [f.outcome for f in period.fills] != [f.outcome for f in other.fills]:
            mismatches.append(f"{period.period_ts}: filled sides differ")
    for ts in analytic_by_ts:
        mismatches.append(f"{ts}: missing from closed-loop run")
    return mismatches


# ============================================================================
# Report
# ============================================================================

def format_report(results: BacktestResults, config: BotConfig) -> str:
    s = config.strategy
    lines = [
        "=" * 72,
        f"BACKTEST: {s.name}",
        "=" * 72,
    ]
    if s.entry_policy is EntryPolicy.DUAL:
        lines.append(f"Entry: limit {config.dual_limit_price:.2f} both sides, "
                     f"{config.dual_shares:.2f} shares")
        if s.hedge_enabled:
            lines.append(f"Hedge: after {config.dual_limit_hedge_after_minutes:.0f}m at "
                         f"{config.dual_limit_hedge_price:.2f}")
    else:
        lines.append(f"Entry: bid [{config.trigger_price:.2f}, {config.max_buy_price:.2f}] "
                     f"after {config.min_elapsed_minutes:.0f}m, ${config.fixed_trade_amount:.2f}/trade")
        lines.append(f"Exit: {s.exit_policy.value} target {config.sell_price:.2f} stop {config.stop_loss_price}")
    lines.append("")
    lines.append(f"{'period':>12} {'winner':>6} {'fills':<18} {'cost':>9} {'value':>9} {'pnl':>9}")
    lines.append("-" * 72)

    for p in results.periods:
        fills = ",".join(f"{f.outcome[0]}@{f.price:.2f}{'h' if f.hedged else ''}" for f in p.fills) or "-"
        lines.append(f"{p.period_ts:>12} {p.winner or '?':>6} {fills:<18} "
                     f"{p.cost:>9.4f} {p.value:>9.4f} {p.pnl:>+9.4f}")

    lines.append("-" * 72)
    lines.append(f"Periods: {len(results.periods)} (traded {results.traded_periods}, "
                 f"excluded {len(results.excluded)})")
    lines.append(f"Total cost:  ${results.total_cost:.4f}")
    lines.append(f"Total value: ${results.total_value:.4f}")
    lines.append(f"Total P&L:   ${results.total_pnl:+.4f}")
    lines.append(f"Win/Loss/Flat: {results.winning_periods}/{results.losing_periods}/{results.flat_periods}")
    if results.excluded:
        lines.append("")
        lines.append("Excluded:")
        for period, reason in results.excluded:
            lines.append(f"  {period}: {reason}")
    lines.append("=" * 72)
    return "\n".join(lines)
