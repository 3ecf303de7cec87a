"""
Polymarket 15-Minute Up/Down Trading Bot

Directional and hedged trading on the 15-minute crypto Up/Down markets.

Strategies (see config.STRATEGY_PRESETS):
- momentum: buy the side bidding between trigger and max price late in the window,
  exit on profit target or stop-loss
- momentum_hedge: same entry, stop-loss rolls into a hedge on the opposite token
- dual_limit: rest limit buys on both sides at a cheap price, hedge the
  unfilled side if only one fills

The same detector and state machine drive live trading, paper trading and
the backtest simulator.
"""

__version__ = "1.0.0"
