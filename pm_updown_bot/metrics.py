"""
Metrics Module - JSONL Logging

Logs every decision, order and state change to JSONL for later analysis.

Event types:
- PERIOD_START / PERIOD_END: market window lifecycle
- ENTRY_INTENT: detector fired
- ORDER_SUBMIT / ORDER_REJECT / ORDER_CANCEL: gateway traffic
- FILL: balance change attributed to a record
- STATE_CHANGE: TradeRecord transition
- ANOMALY: balance not explained by tracked orders (key frozen)
- BACKTEST_PERIOD: simulated period result
- ERROR: anything else that went wrong
"""

import json
import logging
from collections import Counter
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Event types for metrics logging."""
    PERIOD_START = "period_start"
    PERIOD_END = "period_end"
    ENTRY_INTENT = "entry_intent"
    ORDER_SUBMIT = "order_submit"
    ORDER_REJECT = "order_reject"
    ORDER_CANCEL = "order_cancel"
    FILL = "fill"
    STATE_CHANGE = "state_change"
    ANOMALY = "anomaly"
    BACKTEST_PERIOD = "backtest_period"
    ERROR = "error"


class MetricsLogger:
    """
    Appends one JSON object per event to a JSONL file.

    With no path the events are only counted, which is what the backtest
    and the unit tests use.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None
        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)

        self._event_seq = 0
        self.counts: Counter = Counter()

    def _write_event(self, event_type: EventType, data: Dict[str, Any]):
        """Write an event to the JSONL file."""
        self._event_seq += 1
        self.counts[event_type] += 1

        if not self.path:
            return

        event = {
            "seq": self._event_seq,
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event_type.value,
            **data
        }

        try:
            with open(self.path, "a") as f:
                f.write(json.dumps(event, default=str) + "\n")
        except OSError as e:
            logger.warning(f"Could not write metrics event: {e}")

    def log_period_start(self, window_id: str, period_ts: int,
                         up_token_id: str, down_token_id: str):
        self._write_event(EventType.PERIOD_START, {
            "window_id": window_id,
            "period_ts": period_ts,
            "up_token_id": up_token_id,
            "down_token_id": down_token_id,
        })

    def log_period_end(self, window_id: str, period_ts: int, winner: Optional[str],
                       cost: float, value: float, pnl: float, records: int):
        self._write_event(EventType.PERIOD_END, {
            "window_id": window_id,
            "period_ts": period_ts,
            "winner": winner,
            "cost": cost,
            "value": value,
            "pnl": pnl,
            "records": records,
        })

    def log_entry_intent(self, key: str, side: str, style: str,
                         price: float, size: float, bid: Optional[float], ask: Optional[float]):
        self._write_event(EventType.ENTRY_INTENT, {
            "key": key,
            "side": side,
            "style": style,
            "price": price,
            "size": size,
            "bid": bid,
            "ask": ask,
        })

    def log_order_submit(self, order_ref: str, key: str, side: str, style: str,
                         price: float, size: float, purpose: str):
        """Log order submission."""
        self._write_event(EventType.ORDER_SUBMIT, {
            "order_ref": order_ref,
            "key": key,
            "side": side,
            "style": style,
            "price": price,
            "size": size,
            "purpose": purpose,
        })

    def log_order_reject(self, key: str, purpose: str, error: str, transient: bool):
        self._write_event(EventType.ORDER_REJECT, {
            "key": key,
            "purpose": purpose,
            "error": error,
            "transient": transient,
        })

    def log_cancel(self, order_ref: str, key: str, result: str, reason: str):
        """Log order cancellation."""
        self._write_event(EventType.ORDER_CANCEL, {
            "order_ref": order_ref,
            "key": key,
            "result": result,
            "reason": reason,
        })

    def log_fill(self, key: str, side: str, shares: float, price: float, partial: bool = False):
        """Log a fill inferred from a balance change."""
        self._write_event(EventType.FILL, {
            "key": key,
            "side": side,
            "shares": shares,
            "price": price,
            "partial": partial,
        })

    def log_state_change(self, key: str, old_state: str, new_state: str, reason: str = ""):
        self._write_event(EventType.STATE_CHANGE, {
            "key": key,
            "from": old_state,
            "to": new_state,
            "reason": reason,
        })

    def log_anomaly(self, token_id: str, message: str, keys: Optional[list] = None):
        self._write_event(EventType.ANOMALY, {
            "token_id": token_id,
            "message": message,
            "frozen_keys": keys or [],
        })

    def log_backtest_period(self, period_ts: int, winner: Optional[str],
                            cost: float, value: float, pnl: float):
        self._write_event(EventType.BACKTEST_PERIOD, {
            "period_ts": period_ts,
            "winner": winner,
            "cost": cost,
            "value": value,
            "pnl": pnl,
        })

    def log_error(self, error: str, context: Dict[str, Any] = None):
        """Log an error."""
        self._write_event(EventType.ERROR, {
            "error": error,
            "context": context or {},
        })

    def close(self):
        logger.debug(f"Metrics closed after {self._event_seq} events")
