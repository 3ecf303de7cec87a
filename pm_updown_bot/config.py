"""
Configuration for the Up/Down 15-Minute Bot.

All tunable knobs live here. Strategy variants are not subclasses: they are
a small closed set of policy parameters (StrategyConfig) consumed by the one
shared detector and state machine.
"""

import os
from dataclasses import dataclass, field, fields, asdict
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any
import yaml

from .errors import ConfigError


class EntryPolicy(Enum):
    FILTERED = "filtered"  # bid inside [trigger, max_buy], per side
    DUAL = "dual"          # both sides unconditionally, once per period


class EntryStyle(Enum):
    AUTO = "auto"    # MARKET at ask when ask >= T, else LIMIT at T
    LIMIT = "limit"  # always rest a LIMIT at T


class ExitPolicy(Enum):
    HOLD = "hold"                # hold to resolution
    TARGET_STOP = "target_stop"  # profit-target limit + stop-loss
    CROSS_HEDGE = "cross_hedge"  # target + stop that rolls into the opposite token


@dataclass
class StrategyConfig:
    """Policy parameters selecting a strategy variant."""
    name: str = "momentum"
    entry_policy: EntryPolicy = EntryPolicy.FILTERED
    entry_style: EntryStyle = EntryStyle.AUTO
    exit_policy: ExitPolicy = ExitPolicy.TARGET_STOP
    hedge_enabled: bool = False  # dual-limit hedge of the unfilled side

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StrategyConfig":
        return cls(
            name=data.get("name", "custom"),
            entry_policy=EntryPolicy(data.get("entry_policy", "filtered")),
            entry_style=EntryStyle(data.get("entry_style", "auto")),
            exit_policy=ExitPolicy(data.get("exit_policy", "target_stop")),
            hedge_enabled=bool(data.get("hedge_enabled", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "entry_policy": self.entry_policy.value,
            "entry_style": self.entry_style.value,
            "exit_policy": self.exit_policy.value,
            "hedge_enabled": self.hedge_enabled,
        }


STRATEGY_PRESETS: Dict[str, StrategyConfig] = {
    "momentum": StrategyConfig(
        name="momentum",
        entry_policy=EntryPolicy.FILTERED,
        entry_style=EntryStyle.AUTO,
        exit_policy=ExitPolicy.TARGET_STOP,
    ),
    "momentum_hedge": StrategyConfig(
        name="momentum_hedge",
        entry_policy=EntryPolicy.FILTERED,
        entry_style=EntryStyle.AUTO,
        exit_policy=ExitPolicy.CROSS_HEDGE,
    ),
    "dual_limit": StrategyConfig(
        name="dual_limit",
        entry_policy=EntryPolicy.DUAL,
        entry_style=EntryStyle.LIMIT,
        exit_policy=ExitPolicy.HOLD,
        hedge_enabled=True,
    ),
    "dual_limit_nohedge": StrategyConfig(
        name="dual_limit_nohedge",
        entry_policy=EntryPolicy.DUAL,
        entry_style=EntryStyle.LIMIT,
        exit_policy=ExitPolicy.HOLD,
        hedge_enabled=False,
    ),
}


@dataclass
class BotConfig:
    """
    Configuration for the Up/Down bot.

    Defaults follow the 90c momentum setup: enter late in the window when
    one side is bid at 0.90-0.95, take profit at 0.99, stop at 0.85.
    """

    # === API Endpoints ===
    gamma_host: str = "https://gamma-api.polymarket.com"
    clob_host: str = "https://clob.polymarket.com"
    chain_id: int = 137

    # === Credentials (env overrides: PM_PRIVATE_KEY, PM_FUNDER_ADDRESS, PM_SIGNATURE_TYPE) ===
    private_key: str = ""
    funder_address: str = ""
    signature_type: int = 2

    # === Polling ===
    poll_interval_ms: int = 1000
    period_seconds: int = 900

    # === Filtered entry ===
    min_elapsed_minutes: float = 10.0
    trigger_price: float = 0.90
    max_buy_price: float = 0.95
    min_time_remaining_seconds: float = 30.0

    # === Exits ===
    sell_price: float = 0.99
    stop_loss_price: Optional[float] = 0.85
    stop_loss_outcomes: List[str] = field(default_factory=lambda: ["Up", "Down"])
    hedge_margin: float = 0.10

    # === Sizing ===
    fixed_trade_amount: float = 1.0  # USD per entry

    # === Dual limit ===
    dual_limit_price: float = 0.45
    dual_limit_shares: Optional[float] = None  # None -> fixed_trade_amount / dual_limit_price
    dual_limit_hedge_after_minutes: float = 10.0
    dual_limit_hedge_price: float = 0.85

    # === Resolution ===
    resolution_threshold: float = 0.50

    # === Order handling ===
    max_order_attempts: int = 3
    order_timeout_seconds: float = 5.0
    max_workers: int = 4

    # === Markets ===
    assets: List[str] = field(default_factory=lambda: ["btc"])

    # === Strategy ===
    strategy: StrategyConfig = field(default_factory=lambda: StrategyConfig(**asdict(STRATEGY_PRESETS["momentum"])))

    # === Output ===
    history_dir: str = "history"
    metrics_file: Optional[str] = "updown_metrics.jsonl"
    log_level: str = "INFO"
    log_file: Optional[str] = "updown_bot.log"
    kill_switch_file: str = "STOP_TRADING.txt"

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def entry_price(self) -> float:
        """Entry price T for the active entry policy."""
        if self.strategy.entry_policy is EntryPolicy.DUAL:
            return self.dual_limit_price
        return self.trigger_price

    @property
    def dual_shares(self) -> float:
        if self.dual_limit_shares:
            return float(self.dual_limit_shares)
        return round(self.fixed_trade_amount / self.dual_limit_price, 2)

    @property
    def hedge_entry_price(self) -> Optional[float]:
        """Opposite-token buy after a stop: 1 - stop."""
        if self.stop_loss_price is None:
            return None
        return round(1.0 - self.stop_loss_price, 2)

    @property
    def hedge_exit_price(self) -> Optional[float]:
        """Profit-taking sell on a held opposite token: (1 - stop) + margin."""
        if self.stop_loss_price is None:
            return None
        return round(1.0 - self.stop_loss_price + self.hedge_margin, 2)

    @property
    def hedge_stop_price(self) -> Optional[float]:
        """Downside stop on the opposite token: (1 - stop) - margin."""
        if self.stop_loss_price is None:
            return None
        return round(1.0 - self.stop_loss_price - self.hedge_margin, 2)

    def apply_preset(self, name: str, explicit: Optional[Dict[str, Any]] = None) -> "BotConfig":
        """
        Switch to a named strategy preset.

        explicit holds values loaded from a config file; they win over the
        preset's own adjustments.
        """
        if name not in STRATEGY_PRESETS:
            raise ConfigError(f"Unknown strategy '{name}' (known: {', '.join(STRATEGY_PRESETS)})")
        preset = STRATEGY_PRESETS[name]
        self.strategy = StrategyConfig(**asdict(preset))
        if preset.entry_policy is EntryPolicy.DUAL:
            # Dual entries go in at the open
            self.min_elapsed_minutes = 0.0
        if explicit and "min_elapsed_minutes" in explicit:
            self.min_elapsed_minutes = explicit["min_elapsed_minutes"]
        return self

    def apply_env(self) -> "BotConfig":
        """Override credentials from environment."""
        self.private_key = os.getenv("PM_PRIVATE_KEY", self.private_key)
        self.funder_address = os.getenv("PM_FUNDER_ADDRESS", self.funder_address)
        sig = os.getenv("PM_SIGNATURE_TYPE")
        if sig:
            self.signature_type = int(sig)
        return self

    def validate(self) -> List[str]:
        """Return a list of config problems (empty if valid)."""
        errors = []
        for name in ("trigger_price", "max_buy_price", "sell_price",
                     "dual_limit_price", "dual_limit_hedge_price"):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                errors.append(f"{name}={value} must be in (0, 1]")
        if self.trigger_price > self.max_buy_price:
            errors.append(f"trigger_price {self.trigger_price} > max_buy_price {self.max_buy_price}")
        if self.stop_loss_price is not None:
            if not 0.0 < self.stop_loss_price < 1.0:
                errors.append(f"stop_loss_price={self.stop_loss_price} must be in (0, 1)")
            elif self.hedge_stop_price is not None and self.hedge_stop_price <= 0.0:
                errors.append("hedge_margin too large: opposite stop would be <= 0")
        if self.strategy.exit_policy is not ExitPolicy.HOLD and self.stop_loss_price is not None:
            if self.stop_loss_price >= self.sell_price:
                errors.append("stop_loss_price must be below sell_price")
        if self.strategy.hedge_enabled and self.dual_limit_hedge_price <= self.dual_limit_price:
            errors.append("dual_limit_hedge_price must be above dual_limit_price")
        if self.fixed_trade_amount <= 0:
            errors.append("fixed_trade_amount must be positive")
        if self.poll_interval_ms < 100:
            errors.append("poll_interval_ms must be >= 100")
        if self.max_order_attempts < 1:
            errors.append("max_order_attempts must be >= 1")
        for outcome in self.stop_loss_outcomes:
            if outcome not in ("Up", "Down"):
                errors.append(f"stop_loss_outcomes entry '{outcome}' must be Up or Down")
        if not self.assets:
            errors.append("assets must not be empty")
        return errors

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BotConfig":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known and k != "strategy"}
        config = cls(**kwargs)
        strategy = data.get("strategy")
        if isinstance(strategy, str):
            config.apply_preset(strategy, data)
        elif isinstance(strategy, dict):
            config.strategy = StrategyConfig.from_dict(strategy)
        return config

    @classmethod
    def from_yaml(cls, path: str) -> "BotConfig":
        """Load config from YAML file."""
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            if f.name in ("private_key",):
                continue
            value = getattr(self, f.name)
            data[f.name] = value.to_dict() if isinstance(value, StrategyConfig) else value
        return data

    def to_yaml(self, path: str):
        """Save config to YAML file (private key is never written)."""
        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def print_summary(self):
        """Print config summary for logging."""
        s = self.strategy
        print("\n=== Up/Down Bot Config ===")
        print(f"Strategy: {s.name} (entry={s.entry_policy.value}/{s.entry_style.value}, "
              f"exit={s.exit_policy.value}, hedge={'ON' if s.hedge_enabled else 'OFF'})")
        print(f"Assets: {', '.join(a.upper() for a in self.assets)}")
        print(f"Poll interval: {self.poll_interval_ms}ms")
        if s.entry_policy is EntryPolicy.FILTERED:
            print(f"Entry: bid in [{self.trigger_price:.2f}, {self.max_buy_price:.2f}] "
                  f"after {self.min_elapsed_minutes:.0f}m, >= {self.min_time_remaining_seconds:.0f}s left")
            print(f"Trade amount: ${self.fixed_trade_amount:.2f}")
        else:
            print(f"Entry: limit {self.dual_limit_price:.2f} both sides x {self.dual_shares:.2f} shares")
            if s.hedge_enabled:
                print(f"Hedge: after {self.dual_limit_hedge_after_minutes:.0f}m at {self.dual_limit_hedge_price:.2f}")
        if s.exit_policy is not ExitPolicy.HOLD:
            stop = f"{self.stop_loss_price:.2f}" if self.stop_loss_price is not None else "OFF"
            print(f"Exit: target {self.sell_price:.2f}, stop {stop}")
        if s.exit_policy is ExitPolicy.CROSS_HEDGE and self.stop_loss_price is not None:
            print(f"Cross hedge: buy {self.hedge_entry_price:.2f}, take {self.hedge_exit_price:.2f}, "
                  f"stop {self.hedge_stop_price:.2f}")
        print("==========================\n")


def load_config(path: Optional[str] = None, strategy: Optional[str] = None) -> BotConfig:
    """Load config from file (or defaults), then apply env and preset overrides."""
    data: Dict[str, Any] = {}
    if path and Path(path).exists():
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    config = BotConfig.from_dict(data)
    config.apply_env()
    if strategy:
        config.apply_preset(strategy, data)
    return config
