"""
Market Snapshot Feed

Discovers the current 15-minute Up/Down market for each configured asset
and polls best bid/ask for both tokens.

Discovery is by slug: {asset}-updown-15m-{period_ts}, where period_ts is
the window start (now rounded down to 15 minutes). Gamma returns
clobTokenIds and outcomes as JSON-encoded strings.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import BotConfig
from .errors import TransientGatewayError
from .models import MarketPeriod, MarketSnapshot, TokenQuote

logger = logging.getLogger(__name__)


def current_period_ts(now: Optional[float] = None, period_seconds: int = 900) -> int:
    now = time.time() if now is None else now
    return int(now // period_seconds * period_seconds)


def market_slug(asset: str, period_ts: int) -> str:
    return f"{asset.lower()}-updown-15m-{period_ts}"


def create_session(retries: int = 2, backoff: float = 0.3) -> requests.Session:
    """Session with retry on 429/5xx for idempotent GETs."""
    session = requests.Session()
    retry_strategy = Retry(
        total=retries,
        backoff_factor=backoff,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET"],
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers.update({
        "User-Agent": "UpDownBot/1.0",
        "Accept": "application/json",
    })
    return session


class SnapshotFeed(ABC):
    @abstractmethod
    def fetch_snapshots(self) -> List[MarketSnapshot]:
        """One snapshot per tracked asset for its active period."""


class ClobSnapshotFeed(SnapshotFeed):
    """Gamma discovery + CLOB /book quotes."""

    def __init__(self, config: BotConfig, session: Optional[requests.Session] = None,
                 timeout: float = 5.0):
        self.config = config
        self.session = session or create_session()
        self.timeout = timeout
        self._periods: Dict[str, MarketPeriod] = {}

    def _get(self, url: str, params: Optional[dict] = None):
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientGatewayError(f"GET {url} failed: {e}") from e
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientGatewayError(f"GET {url} -> HTTP {response.status_code}")
        if response.status_code != 200:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TransientGatewayError(f"GET {url}: bad JSON ({e})") from e

    # === Discovery ===

    def discover(self, asset: str, period_ts: int) -> Optional[MarketPeriod]:
        """Resolve the market for (asset, period). None if not listed yet."""
        cached = self._periods.get(asset)
        if cached is not None and cached.period_ts == period_ts:
            return cached

        slug = market_slug(asset, period_ts)
        data = self._get(f"{self.config.gamma_host}/markets", params={"slug": slug})
        markets = data if isinstance(data, list) else ([data] if data else [])
        if not markets:
            logger.debug(f"No market for {slug} yet")
            return None

        period = parse_market(markets[0], asset, period_ts, self.config.period_seconds)
        if period is None:
            logger.warning(f"Market {slug} has no usable Up/Down token ids")
            return None
        self._periods[asset] = period
        logger.info(f"Discovered {slug}: up={period.up_token_id[:12]}... down={period.down_token_id[:12]}...")
        return period

    # === Quotes ===

    def fetch_quote(self, token_id: str) -> TokenQuote:
        book = self._get(f"{self.config.clob_host}/book", params={"token_id": token_id}) or {}
        return quote_from_book(token_id, book)

    def fetch_snapshots(self) -> List[MarketSnapshot]:
        now = time.time()
        period_ts = current_period_ts(now, self.config.period_seconds)
        snapshots = []
        for asset in self.config.assets:
            period = self.discover(asset, period_ts)
            if period is None:
                continue
            quotes = {
                period.up_token_id: self.fetch_quote(period.up_token_id),
                period.down_token_id: self.fetch_quote(period.down_token_id),
            }
            elapsed = now - period.period_ts
            snapshots.append(MarketSnapshot(
                period=period,
                quotes=quotes,
                elapsed_seconds=elapsed,
                remaining_seconds=max(0.0, period.end_ts - now),
                timestamp=now,
            ))
        return snapshots


def parse_market(market: dict, asset: str, period_ts: int,
                 period_seconds: int = 900) -> Optional[MarketPeriod]:
    """Build a MarketPeriod from a Gamma market object."""
    token_ids = market.get("clobTokenIds", [])
    outcomes = market.get("outcomes", [])
    try:
        if isinstance(token_ids, str):
            token_ids = json.loads(token_ids)
        if isinstance(outcomes, str):
            outcomes = json.loads(outcomes)
    except ValueError:
        return None
    if len(token_ids) != 2:
        return None

    by_outcome = {}
    for name, token_id in zip(outcomes, token_ids):
        by_outcome[str(name).lower()] = str(token_id)
    up = by_outcome.get("up", str(token_ids[0]))
    down = by_outcome.get("down", str(token_ids[1]))

    return MarketPeriod(
        period_ts=period_ts,
        asset=asset.lower(),
        up_token_id=up,
        down_token_id=down,
        condition_id=market.get("conditionId", ""),
        slug=market.get("slug", market_slug(asset, period_ts)),
        duration_seconds=period_seconds,
    )


def quote_from_book(token_id: str, book: dict) -> TokenQuote:
    """Best bid = highest bid, best ask = lowest ask."""
    bids = [float(level["price"]) for level in book.get("bids", []) if "price" in level]
    asks = [float(level["price"]) for level in book.get("asks", []) if "price" in level]
    return TokenQuote(
        token_id=token_id,
        bid=max(bids) if bids else None,
        ask=min(asks) if asks else None,
    )
