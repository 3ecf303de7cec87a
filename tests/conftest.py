"""Shared fixtures for the Up/Down bot tests."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from pm_updown_bot.models import MarketPeriod, MarketSnapshot

PERIOD_TS = 1769549400  # 2026-01-27 21:30 UTC


@pytest.fixture
def period():
    return MarketPeriod(
        period_ts=PERIOD_TS,
        asset="btc",
        up_token_id="UPTOKEN0000000001",
        down_token_id="DOWNTOKEN00000002",
        slug=f"btc-updown-15m-{PERIOD_TS}",
    )


@pytest.fixture
def snap(period):
    """Factory: snap(minutes, ask_up, ask_down, bid_up=None, bid_down=None)."""
    def make(minutes, ask_up, ask_down, bid_up=None, bid_down=None, market=None):
        return MarketSnapshot.from_prices(
            market or period,
            minutes * 60.0,
            ask_up=ask_up,
            ask_down=ask_down,
            bid_up=bid_up,
            bid_down=bid_down,
        )
    return make
