"""
Error taxonomy for the trading core.

- TransientGatewayError: timeouts, rate limits, 5xx. Retry next tick.
- OrderRejectedError: exchange refused the order (balance, allowance, unmatched market order).
- StateAnomalyError: balances disagree with tracked orders. Key gets frozen.
- BacktestDataError: missing or short price series. Period is excluded.
"""


class BotError(Exception):
    """Base class for all bot errors."""


class TransientGatewayError(BotError):
    """Network or exchange hiccup. Never interpreted as a fill or a cancel."""


class OrderRejectedError(BotError):
    """Order was refused by the exchange."""


class StateAnomalyError(BotError):
    """Observed state cannot be explained by tracked orders."""

    def __init__(self, message: str, keys=()):
        super().__init__(message)
        self.keys = list(keys)


class StateTransitionError(BotError):
    """Illegal (backwards or post-terminal) state transition."""


class BacktestDataError(BotError):
    """Historical data for a period is missing or unusable."""


class ConfigError(BotError):
    """Invalid configuration."""
