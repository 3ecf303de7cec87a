"""
Price History - recording and loading

One file per 15-minute period: history/market_{period_ts}_prices.toml
One line per poll, all tracked assets on the same line:

    [2026-01-27T21:30:02Z] 📊 BTC: U$0.49/$0.50 D$0.50/$0.51 | ETH: U$0.48/$0.49 D$0.51/$0.52 | ⏱️  14m 59s

Each side is $bid/$ask; a missing side or price is written N/A. The
remaining time is "Xm Ys" or "Ys". Despite the extension these are plain
text lines, kept that way so existing history files load unchanged.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from .errors import BacktestDataError
from .models import MarketPeriod, MarketSnapshot, Outcome

logger = logging.getLogger(__name__)

FILE_RE = re.compile(r"market_(\d+)_prices\.toml$")
TIMESTAMP_RE = re.compile(r"^\s*\[([^\]]+)\]")
REMAINING_RE = re.compile(r"⏱️?\s+(?:(\d+)m\s+)?(\d+)s")
PRICE = r"(?:\$?(N/A|\d+(?:\.\d+)?))"
SIDE = rf"(?:N/A|{PRICE}/{PRICE})"
ASSET_RE = re.compile(rf"\b([A-Z]{{2,6}}):\s*U({SIDE})\s+D({SIDE})")
SIDE_RE = re.compile(rf"^{PRICE}/{PRICE}$")


@dataclass
class PriceSample:
    """One observation of a period, as the backtest consumes it."""
    elapsed_seconds: float
    ask_up: Optional[float]
    ask_down: Optional[float]
    bid_up: Optional[float] = None
    bid_down: Optional[float] = None

    @property
    def elapsed_minutes(self) -> float:
        return self.elapsed_seconds / 60.0


@dataclass
class PeriodSeries:
    """Time-ordered samples for one asset in one period."""
    period_ts: int
    asset: str
    samples: List[PriceSample] = field(default_factory=list)
    duration_seconds: int = 900
    source: str = ""

    def market_period(self) -> MarketPeriod:
        """Synthetic MarketPeriod with stable token ids for replay."""
        prefix = f"{self.asset.lower()}-{self.period_ts}"
        return MarketPeriod(
            period_ts=self.period_ts,
            asset=self.asset.lower(),
            up_token_id=f"{prefix}-up",
            down_token_id=f"{prefix}-down",
            slug=f"{self.asset.lower()}-updown-15m-{self.period_ts}",
            duration_seconds=self.duration_seconds,
        )

    def snapshots(self) -> Iterator[MarketSnapshot]:
        period = self.market_period()
        for sample in self.samples:
            yield MarketSnapshot.from_prices(
                period,
                sample.elapsed_seconds,
                ask_up=sample.ask_up,
                ask_down=sample.ask_down,
                bid_up=sample.bid_up,
                bid_down=sample.bid_down,
            )

    @classmethod
    def from_tuples(cls, period_ts: int, rows: List[Tuple], asset: str = "btc",
                    duration_seconds: int = 900) -> "PeriodSeries":
        """Build from (elapsed_minutes, ask_up, ask_down) rows."""
        samples = [PriceSample(elapsed_seconds=row[0] * 60.0, ask_up=row[1], ask_down=row[2])
                   for row in rows]
        return cls(period_ts=period_ts, asset=asset, samples=samples,
                   duration_seconds=duration_seconds)


@dataclass
class PriceLine:
    """A parsed history line."""
    timestamp: datetime
    remaining_seconds: int
    prices: Dict[str, Tuple[Optional[float], Optional[float], Optional[float], Optional[float]]]


def _price(text: Optional[str]) -> Optional[float]:
    if text is None or text == "N/A":
        return None
    value = float(text)
    # old writers logged missing prices as 0.00
    return value if value > 0 else None


def _side(text: str) -> Tuple[Optional[float], Optional[float]]:
    match = SIDE_RE.match(text)
    if not match:
        return None, None
    return _price(match.group(1)), _price(match.group(2))


def parse_price_line(line: str) -> Optional[PriceLine]:
    """
    Parse one history line. Returns None for lines that are not price lines.

    prices maps asset (lower case) -> (up_bid, up_ask, down_bid, down_ask).
    """
    ts_match = TIMESTAMP_RE.match(line)
    remaining_match = REMAINING_RE.search(line)
    if not ts_match or not remaining_match:
        return None

    try:
        timestamp = datetime.strptime(ts_match.group(1), "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
    except ValueError:
        return None

    minutes, seconds = remaining_match.groups()
    remaining = int(minutes or 0) * 60 + int(seconds)

    prices = {}
    for match in ASSET_RE.finditer(line):
        asset = match.group(1).lower()
        up_bid, up_ask = _side(match.group(2))
        down_bid, down_ask = _side(match.group(5))
        prices[asset] = (up_bid, up_ask, down_bid, down_ask)

    return PriceLine(timestamp=timestamp, remaining_seconds=remaining, prices=prices)


def period_from_filename(path: Path) -> Optional[int]:
    match = FILE_RE.search(Path(path).name)
    return int(match.group(1)) if match else None


def load_period_file(path, asset: str = "btc", duration_seconds: int = 900) -> PeriodSeries:
    """
    Load one period file for one asset.

    Raises BacktestDataError if the file has no usable samples for the asset.
    """
    path = Path(path)
    period_ts = period_from_filename(path)
    if period_ts is None:
        raise BacktestDataError(f"{path.name}: not a market_<ts>_prices.toml file")

    asset = asset.lower()
    samples = []
    skipped = 0
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            parsed = parse_price_line(line)
            if parsed is None or asset not in parsed.prices:
                skipped += 1
                continue
            up_bid, up_ask, down_bid, down_ask = parsed.prices[asset]
            if up_ask is None and down_ask is None:
                skipped += 1
                continue
            elapsed = max(0, duration_seconds - parsed.remaining_seconds)
            samples.append(PriceSample(
                elapsed_seconds=float(elapsed),
                ask_up=up_ask,
                ask_down=down_ask,
                bid_up=up_bid,
                bid_down=down_bid,
            ))

    if not samples:
        raise BacktestDataError(f"{path.name}: no {asset.upper()} samples ({skipped} lines skipped)")

    # stable sort keeps file order for equal timestamps
    samples.sort(key=lambda s: s.elapsed_seconds)
    logger.debug(f"{path.name}: {len(samples)} samples, {skipped} skipped")
    return PeriodSeries(period_ts=period_ts, asset=asset, samples=samples,
                        duration_seconds=duration_seconds, source=str(path))


def find_history_files(history_dir) -> List[Path]:
    """Period files sorted by period timestamp."""
    history_dir = Path(history_dir)
    if not history_dir.exists():
        return []
    files = [p for p in history_dir.iterdir() if period_from_filename(p) is not None]
    return sorted(files, key=period_from_filename)


def load_history_dir(history_dir, asset: str = "btc",
                     duration_seconds: int = 900) -> Tuple[List[PeriodSeries], List[Tuple[str, str]]]:
    """
    Load every period file in a directory.

    Returns (series, errors) where errors lists (file, reason) for files
    that could not be used.
    """
    series, errors = [], []
    for path in find_history_files(history_dir):
        try:
            series.append(load_period_file(path, asset, duration_seconds))
        except (BacktestDataError, OSError) as e:
            logger.warning(f"Skipping {path.name}: {e}")
            errors.append((path.name, str(e)))
    return series, errors


# =============================================================================
# Recording
# =============================================================================

def format_remaining(seconds: float) -> str:
    seconds = max(0, int(seconds))
    if seconds >= 60:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds}s"


def _fmt_side(bid: Optional[float], ask: Optional[float]) -> str:
    if bid is None and ask is None:
        return "N/A"
    b = f"${bid:.2f}" if bid is not None else "N/A"
    a = f"${ask:.2f}" if ask is not None else "N/A"
    return f"{b}/{a}"


def format_price_line(snapshots: List[MarketSnapshot], now: Optional[datetime] = None) -> str:
    """Render one history line for the given per-asset snapshots."""
    now = now or datetime.now(timezone.utc)
    sections = []
    for snap in snapshots:
        up = snap.quote(Outcome.UP)
        down = snap.quote(Outcome.DOWN)
        sections.append(f"{snap.period.asset.upper()}: U{_fmt_side(up.bid, up.ask)} "
                        f"D{_fmt_side(down.bid, down.ask)}")
    remaining = min(s.remaining_seconds for s in snapshots) if snapshots else 0
    body = " | ".join(sections)
    return f"[{now.strftime('%Y-%m-%dT%H:%M:%SZ')}] 📊 {body} | ⏱️  {format_remaining(remaining)}"


class PriceRecorder:
    """Appends snapshot lines to history/market_{period_ts}_prices.toml."""

    def __init__(self, history_dir: str = "history"):
        self.history_dir = Path(history_dir)
        self.history_dir.mkdir(parents=True, exist_ok=True)
        self.lines_written = 0

    def path_for(self, period_ts: int) -> Path:
        return self.history_dir / f"market_{period_ts}_prices.toml"

    def record(self, snapshots: List[MarketSnapshot], now: Optional[datetime] = None):
        """Write one line per period present in the snapshots."""
        by_period: Dict[int, List[MarketSnapshot]] = {}
        for snap in snapshots:
            by_period.setdefault(snap.period.period_ts, []).append(snap)

        for period_ts, snaps in sorted(by_period.items()):
            line = format_price_line(snaps, now)
            try:
                with open(self.path_for(period_ts), "a", encoding="utf-8") as f:
                    f.write(line + "\n")
                self.lines_written += 1
            except OSError as e:
                logger.warning(f"Could not record prices for {period_ts}: {e}")
