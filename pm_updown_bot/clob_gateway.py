"""
CLOB Gateway
============
Live ExchangeGateway on top of py-clob-client.

- LIMIT -> GTC order at the limit price (rests if not marketable)
- MARKET -> FAK market order capped at the worst acceptable price (takes
  what is there now, the rest is killed)
- cancel -> client.cancel(); "matched" in not_canceled means already filled
- balance -> CONDITIONAL balance for the token, in 1e6 units
"""

import logging
import math
import time
from typing import Optional

import requests
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    ApiCreds, BalanceAllowanceParams, MarketOrderArgs, OrderArgs, OrderType,
)
from py_clob_client.exceptions import PolyApiException
from py_clob_client.order_builder.constants import BUY, SELL

from .config import BotConfig
from .errors import OrderRejectedError, TransientGatewayError
from .gateway import ExchangeGateway
from .models import CancelResult, OrderIntent, OrderSide, OrderStyle, round_price

logger = logging.getLogger(__name__)

REJECT_MARKERS = ("not enough balance", "allowance", "insufficient", "invalid", "min size",
                  "couldn't be fully filled", "fok", "fak", "no match",
                  "no orders found")


def classify_error(error: Exception) -> Exception:
    """Map a client/transport failure onto the bot's error taxonomy."""
    if isinstance(error, (requests.Timeout, requests.ConnectionError)):
        return TransientGatewayError(str(error))
    if isinstance(error, PolyApiException):
        status = getattr(error, "status_code", None)
        if status is None or status == 429 or status >= 500:
            return TransientGatewayError(f"HTTP {status}: {error}")
        return OrderRejectedError(f"HTTP {status}: {error}")
    message = str(error).lower()
    if any(marker in message for marker in REJECT_MARKERS):
        return OrderRejectedError(str(error))
    return TransientGatewayError(str(error))


class ClobGateway(ExchangeGateway):
    """Places real orders. Only constructed in live mode."""

    name = "clob"

    def __init__(self, config: BotConfig, client: Optional[ClobClient] = None):
        self.config = config
        self.client = client or self._init_client()
        self._last_request_time = 0.0
        self._min_request_interval = 0.1  # 100ms between requests

    def _init_client(self) -> ClobClient:
        if not self.config.private_key:
            raise OrderRejectedError("PM_PRIVATE_KEY not set, cannot trade live")
        client = ClobClient(
            host=self.config.clob_host,
            key=self.config.private_key,
            chain_id=self.config.chain_id,
            signature_type=self.config.signature_type,
            funder=self.config.funder_address or None,
        )
        creds: ApiCreds = client.create_or_derive_api_creds()
        client.set_api_creds(creds)
        logger.info(f"CLOB client ready (funder={self.config.funder_address[:10]}...)")
        return client

    def _rate_limit(self):
        """Enforce minimum time between requests"""
        now = time.time()
        elapsed = now - self._last_request_time
        if elapsed < self._min_request_interval:
            time.sleep(self._min_request_interval - elapsed)
        self._last_request_time = time.time()

    def place_intent(self, intent: OrderIntent) -> str:
        return self.place_order(intent.token_id, intent.side, intent.style, intent.size,
                                intent.price, max_price=intent.max_price)

    def place_order(self, token_id: str, side: OrderSide, style: OrderStyle,
                    size: float, price: float, max_price: Optional[float] = None) -> str:
        """
        LIMIT posts a GTC order at price. MARKET posts a FAK market order
        whose worst acceptable price is max_price (or price): the bid for a
        stop sell, at least the ask for a buy.
        """
        # Floor to 2dp so we never ask for more than we hold
        size = math.floor(size * 100 + 1e-6) / 100
        if size <= 0:
            raise OrderRejectedError(f"size rounds to zero ({size})")
        order_side = BUY if side is OrderSide.BUY else SELL

        self._rate_limit()
        try:
            if style is OrderStyle.MARKET:
                worst = round_price(max_price if max_price is not None else price)
                # BUY amounts are dollars, SELL amounts are shares
                amount = round(size * worst, 2) if side is OrderSide.BUY else size
                args = MarketOrderArgs(token_id=token_id, amount=amount, side=order_side,
                                       price=worst, order_type=OrderType.FAK)
                signed = self.client.create_market_order(args)
                result = self.client.post_order(signed, OrderType.FAK)
            else:
                price = round_price(price)
                args = OrderArgs(token_id=token_id, price=price, size=size, side=order_side)
                signed = self.client.create_order(args)
                result = self.client.post_order(signed, OrderType.GTC)
        except Exception as e:
            raise classify_error(e) from e

        if not result or not result.get("success"):
            error_msg = (result or {}).get("errorMsg") or str(result)
            raise classify_error(RuntimeError(error_msg))

        order_id = result.get("orderID")
        status = str(result.get("status", "")).lower()
        if style is OrderStyle.MARKET and status not in ("matched", "filled", "delayed"):
            raise OrderRejectedError(f"market order not filled (status={status or 'unknown'})")

        logger.debug(f"Posted {side.value} {style.value} {size} @ {price} -> {order_id} ({status})")
        return order_id

    def cancel_order(self, order_ref: str) -> CancelResult:
        self._rate_limit()
        try:
            result = self.client.cancel(order_ref) or {}
        except Exception as e:
            raise TransientGatewayError(f"cancel {order_ref[:16]} failed: {e}") from e

        if order_ref in (result.get("canceled") or []):
            return CancelResult.CANCELLED

        not_canceled = result.get("not_canceled") or {}
        reason = str(not_canceled.get(order_ref, "")).lower()
        if "matched" in reason or "filled" in reason:
            return CancelResult.ALREADY_FILLED
        if "not found" in reason or "already canceled" in reason:
            return CancelResult.NOT_FOUND
        raise TransientGatewayError(f"cancel {order_ref[:16]} unconfirmed: {reason or result}")

    def get_balance(self, token_id: str) -> float:
        self._rate_limit()
        try:
            params = BalanceAllowanceParams(asset_type="CONDITIONAL", token_id=token_id)
            self.client.update_balance_allowance(params)
            result = self.client.get_balance_allowance(params) or {}
        except Exception as e:
            raise TransientGatewayError(f"balance {token_id[:10]} failed: {e}") from e
        return float(result.get("balance", "0") or "0") / 1e6

    def get_fill_price(self, order_ref: str) -> Optional[float]:
        self._rate_limit()
        try:
            order = self.client.get_order(order_ref)
        except Exception as e:
            raise TransientGatewayError(f"get_order {order_ref[:16]} failed: {e}") from e
        if not order or float(order.get("size_matched", 0) or 0) <= 0:
            return None
        return float(order.get("price", 0)) or None
