"""Tests for market discovery and book quotes (HTTP mocked)."""

import json
from unittest.mock import Mock, patch

import pytest
import requests

from pm_updown_bot.config import BotConfig
from pm_updown_bot.errors import TransientGatewayError
from pm_updown_bot.feed import (
    ClobSnapshotFeed, current_period_ts, market_slug, parse_market, quote_from_book,
)
from pm_updown_bot.models import Outcome

TS = 1769549400

GAMMA_MARKET = {
    "slug": f"btc-updown-15m-{TS}",
    "conditionId": "0xcond",
    "outcomes": json.dumps(["Up", "Down"]),
    "clobTokenIds": json.dumps(["111", "222"]),
}

BOOKS = {
    "111": {"bids": [{"price": "0.48", "size": "10"}, {"price": "0.49", "size": "5"}],
            "asks": [{"price": "0.52", "size": "3"}, {"price": "0.51", "size": "8"}]},
    "222": {"bids": [{"price": "0.47", "size": "10"}], "asks": []},
}


def response(status, payload=None):
    resp = Mock()
    resp.status_code = status
    resp.json.return_value = payload
    return resp


def fake_session(markets=None, status=200):
    session = Mock()

    def get(url, params=None, timeout=None):
        if url.endswith("/markets"):
            return response(status, markets if markets is not None else [GAMMA_MARKET])
        if url.endswith("/book"):
            return response(status, BOOKS.get(params["token_id"], {}))
        return response(404)

    session.get.side_effect = get
    return session


class TestHelpers:
    def test_period_ts(self):
        assert current_period_ts(TS + 899) == TS
        assert current_period_ts(TS + 900) == TS + 900

    def test_slug(self):
        assert market_slug("BTC", TS) == f"btc-updown-15m-{TS}"

    def test_parse_market_json_strings(self):
        period = parse_market(GAMMA_MARKET, "btc", TS)
        assert period.up_token_id == "111"
        assert period.down_token_id == "222"
        assert period.condition_id == "0xcond"
        assert period.end_ts == TS + 900

    def test_parse_market_reversed_outcomes(self):
        market = dict(GAMMA_MARKET, outcomes=["Down", "Up"], clobTokenIds=["222", "111"])
        period = parse_market(market, "btc", TS)
        assert period.token_id(Outcome.UP) == "111"

    def test_parse_market_bad_tokens(self):
        assert parse_market(dict(GAMMA_MARKET, clobTokenIds="[1]"), "btc", TS) is None
        assert parse_market(dict(GAMMA_MARKET, clobTokenIds="not json"), "btc", TS) is None

    def test_quote_from_book(self):
        quote = quote_from_book("111", BOOKS["111"])
        assert quote.bid == pytest.approx(0.49)
        assert quote.ask == pytest.approx(0.51)
        empty = quote_from_book("x", {})
        assert empty.bid is None and empty.ask is None


class TestClobSnapshotFeed:
    def test_fetch_snapshots(self):
        config = BotConfig(assets=["btc"])
        feed = ClobSnapshotFeed(config, session=fake_session())
        with patch("pm_updown_bot.feed.time.time", return_value=TS + 120.0):
            snapshots = feed.fetch_snapshots()

        assert len(snapshots) == 1
        snap = snapshots[0]
        assert snap.period.period_ts == TS
        assert snap.elapsed_seconds == pytest.approx(120)
        assert snap.remaining_seconds == pytest.approx(780)
        assert snap.quote(Outcome.UP).ask == pytest.approx(0.51)
        assert snap.quote(Outcome.DOWN).ask is None
        assert snap.quote(Outcome.DOWN).bid == pytest.approx(0.47)

    def test_discovery_cached_per_period(self):
        session = fake_session()
        feed = ClobSnapshotFeed(BotConfig(), session=session)
        feed.discover("btc", TS)
        feed.discover("btc", TS)
        market_calls = [c for c in session.get.call_args_list if c.args[0].endswith("/markets")]
        assert len(market_calls) == 1

    def test_not_listed_yet(self):
        feed = ClobSnapshotFeed(BotConfig(), session=fake_session(markets=[]))
        assert feed.discover("btc", TS) is None

    def test_server_error_is_transient(self):
        feed = ClobSnapshotFeed(BotConfig(), session=fake_session(status=503))
        with pytest.raises(TransientGatewayError):
            feed.discover("btc", TS)

    def test_connection_error_is_transient(self):
        session = Mock()
        session.get.side_effect = requests.ConnectionError("down")
        feed = ClobSnapshotFeed(BotConfig(), session=session)
        with pytest.raises(TransientGatewayError):
            feed.fetch_quote("111")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
