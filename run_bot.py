#!/usr/bin/env python3
"""
Polymarket 15-Minute Up/Down Bot - Main Runner

Modes:
    --mode paper    : Trade live markets against the simulated venue
    --mode live     : Place real orders (requires --yes-live and PM_PRIVATE_KEY)
    --mode record   : Append live snapshots to history/market_<ts>_prices.toml
    --mode backtest : Replay history files through the same rules

Usage:
    python run_bot.py --mode paper --strategy momentum
    python run_bot.py --mode paper --strategy dual_limit --record
    python run_bot.py --mode live --strategy momentum --yes-live
    python run_bot.py --mode record --history-dir history
    python run_bot.py --mode backtest --strategy dual_limit --compare
"""

import argparse
import json
import logging
import signal
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from pm_updown_bot.config import BotConfig, EntryPolicy, STRATEGY_PRESETS, load_config
from pm_updown_bot.errors import BotError, TransientGatewayError
from pm_updown_bot.metrics import MetricsLogger


# Global flag for graceful shutdown
running = True
active_loop = None


def signal_handler(signum, frame):
    """Handle Ctrl+C gracefully."""
    global running
    print("\n\nShutting down gracefully...")
    running = False
    if active_loop is not None:
        active_loop.running = False


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Configure logging."""
    log_format = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

    handlers = [
        logging.StreamHandler(sys.stdout),
    ]

    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=log_format,
        handlers=handlers,
    )

    # Reduce noise from requests library
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


def banner(title: str):
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)
    print(f"Started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")


def print_session_summary(loop):
    print("\n" + "=" * 60)
    print("SESSION SUMMARY")
    print("=" * 60)
    traded = [s for s in loop.summaries if s.records]
    total_pnl = sum(s.pnl for s in traded)
    print(f"Ticks: {loop.tick_count} (errors: {loop.error_count})")
    print(f"Periods settled: {len(loop.summaries)} (traded {len(traded)})")
    for summary in traded:
        winner = summary.winner.value if summary.winner else "?"
        print(f"  {summary.period_ts} winner={winner:<4} sides={','.join(summary.filled_outcomes) or '-'} "
              f"pnl=${summary.pnl:+.4f}")
    print(f"Total PnL: ${total_pnl:+.4f}")


def run_trading_mode(config: BotConfig, live: bool, record: bool, max_ticks: Optional[int]):
    """Paper or live trading on the current markets."""
    global active_loop

    from pm_updown_bot.feed import ClobSnapshotFeed
    from pm_updown_bot.gateway import SimulatedGateway
    from pm_updown_bot.history import PriceRecorder
    from pm_updown_bot.scheduler import TradingLoop

    banner(f"UP/DOWN BOT - {'LIVE TRADING' if live else 'PAPER TRADING'} MODE")
    config.print_summary()

    if live:
        from pm_updown_bot.clob_gateway import ClobGateway
        gateway = ClobGateway(config)
    else:
        gateway = SimulatedGateway()

    metrics = MetricsLogger(config.metrics_file)
    recorder = PriceRecorder(config.history_dir) if record else None
    loop = TradingLoop(config, gateway, feed=ClobSnapshotFeed(config),
                       metrics=metrics, recorder=recorder)
    active_loop = loop

    print(f"Kill switch: create {config.kill_switch_file} to stop")
    print("\nPress Ctrl+C to stop.\n")
    try:
        loop.run(max_ticks=max_ticks)
    finally:
        active_loop = None
        metrics.close()
        print_session_summary(loop)


def run_record_mode(config: BotConfig, max_ticks: Optional[int]):
    """Record snapshots for later backtests. No orders."""
    from pm_updown_bot.feed import ClobSnapshotFeed
    from pm_updown_bot.history import PriceRecorder

    banner("UP/DOWN BOT - RECORDING MODE")
    print(f"Assets: {', '.join(a.upper() for a in config.assets)}")
    print(f"Recording to: {config.history_dir}")
    print("\nPress Ctrl+C to stop.\n")

    feed = ClobSnapshotFeed(config)
    recorder = PriceRecorder(config.history_dir)
    interval = config.poll_interval_seconds
    ticks = 0

    while running and (max_ticks is None or ticks < max_ticks):
        if Path(config.kill_switch_file).exists():
            logging.critical(f"KILL SWITCH detected: {config.kill_switch_file}")
            break
        started = time.time()
        ticks += 1
        try:
            snapshots = feed.fetch_snapshots()
            if snapshots:
                recorder.record(snapshots)
            else:
                logging.info("No active market. Waiting...")
        except TransientGatewayError as e:
            logging.warning(f"Feed unavailable: {e}")
        except Exception as e:
            logging.error(f"Error in recording: {e}", exc_info=True)
        sleep_for = interval - (time.time() - started)
        if sleep_for > 0:
            time.sleep(sleep_for)

    print(f"\n{recorder.lines_written} lines saved to: {config.history_dir}")


def run_backtest_mode(config: BotConfig, asset: str, compare: bool, json_out: Optional[str]) -> int:
    """Replay the history directory. Returns the process exit code."""
    from pm_updown_bot.backtest import BacktestSimulator, compare_results, format_report, run_analytic
    from pm_updown_bot.history import load_history_dir

    banner("UP/DOWN BOT - BACKTEST MODE")
    print(f"History: {config.history_dir} ({asset.upper()})")

    metrics = MetricsLogger(config.metrics_file)
    simulator = BacktestSimulator(config, metrics)
    series, load_errors = load_history_dir(config.history_dir, asset, config.period_seconds)
    results = simulator.run(series)
    results.excluded = load_errors + results.excluded
    metrics.close()

    print(format_report(results, config))

    if json_out:
        with open(json_out, "w") as f:
            json.dump(results.to_dict(), f, indent=2)
        print(f"\nResults written to: {json_out}")

    if compare:
        if config.strategy.entry_policy is not EntryPolicy.DUAL:
            print("\n--compare only applies to dual-limit strategies")
            return 2
        analytic = run_analytic(series, config)
        mismatches = compare_results(results, analytic)
        print(f"\nAnalytic replay: {len(analytic.periods)} periods, "
              f"P&L ${analytic.total_pnl:+.4f}")
        if mismatches:
            print(f"MISMATCHES ({len(mismatches)}):")
            for line in mismatches:
                print(f"  {line}")
            return 1
        print("Closed-loop and analytic replays agree on every period.")
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Polymarket 15-Minute Up/Down Bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python run_bot.py --mode paper                         # Paper trade momentum
    python run_bot.py --mode paper --strategy dual_limit   # Paper trade dual limit
    python run_bot.py --mode record                        # Record prices
    python run_bot.py --mode backtest --compare            # Backtest history/
    python run_bot.py --mode live --yes-live               # REAL ORDERS
        """
    )

    parser.add_argument("--mode", choices=["paper", "live", "backtest", "record"],
                        default="paper",
                        help="Operating mode (default: paper)")
    parser.add_argument("--config", type=str, default=None,
                        help="Path to config YAML file")
    parser.add_argument("--strategy", choices=sorted(STRATEGY_PRESETS), default=None,
                        help="Strategy preset (overrides the config file)")
    parser.add_argument("--history-dir", type=str, default=None,
                        help="Price history directory")
    parser.add_argument("--asset", type=str, default=None,
                        help="Asset to backtest (default: first configured asset)")
    parser.add_argument("--ticks", type=int, default=None,
                        help="Stop after this many polls (paper/live/record)")
    parser.add_argument("--record", action="store_true",
                        help="Also record prices while trading")
    parser.add_argument("--compare", action="store_true",
                        help="Backtest: cross-check against the analytic dual-limit replay")
    parser.add_argument("--json", type=str, default=None,
                        help="Backtest: write results JSON to this path")
    parser.add_argument("--log-level", type=str, default=None,
                        help="Override log level (DEBUG, INFO, ...)")
    parser.add_argument("--yes-live", action="store_true",
                        help="Confirm that live mode may place real orders")

    args = parser.parse_args()

    # Load config
    try:
        config = load_config(args.config, args.strategy)
    except BotError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    # Apply overrides
    if args.history_dir:
        config.history_dir = args.history_dir
    if args.log_level:
        config.log_level = args.log_level
    if args.mode == "backtest":
        # backtests never touch the live log or metrics files
        config.log_file = None
        config.metrics_file = None

    problems = config.validate()
    if problems:
        print("ERROR: invalid configuration:")
        for problem in problems:
            print(f"  - {problem}")
        sys.exit(1)

    # Setup logging
    setup_logging(config.log_level, config.log_file)

    # Setup signal handlers
    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, 'SIGTERM'):
        signal.signal(signal.SIGTERM, signal_handler)

    # Run appropriate mode
    if args.mode == "backtest":
        asset = (args.asset or config.assets[0]).lower()
        sys.exit(run_backtest_mode(config, asset, args.compare, args.json))
    elif args.mode == "record":
        run_record_mode(config, args.ticks)
    elif args.mode == "live":
        if not args.yes_live:
            print("ERROR: live mode places real orders; pass --yes-live to confirm")
            sys.exit(1)
        if not config.private_key:
            print("ERROR: PM_PRIVATE_KEY not set")
            sys.exit(1)
        run_trading_mode(config, live=True, record=args.record, max_ticks=args.ticks)
    else:
        run_trading_mode(config, live=False, record=args.record, max_ticks=args.ticks)


if __name__ == "__main__":
    main()
