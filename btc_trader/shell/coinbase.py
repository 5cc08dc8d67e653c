"""Coinbase Exchange REST client.

Serves as the PriceSource in every mode and as the ExchangeClient in live mode.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from btc_trader.shell.config import ExchangeConfig
from btc_trader.shell.contract import (
    Balances,
    BuyFill,
    ExchangeError,
    InsufficientBalanceError,
    PriceQuote,
    RateLimitError,
    SellFill,
)

log = structlog.get_logger()


class CoinbaseREST:
    """Coinbase Exchange REST API client."""

    def __init__(self, config: ExchangeConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._base_url = config.rest_url.rstrip("/")
        self._product_id = config.product_id
        self._asset, self._fiat = config.product_id.split("-", 1)
        self._api_key = config.api_key
        self._secret = config.api_secret
        self._passphrase = config.passphrase
        self._fill_timeout = config.fill_timeout_seconds
        self._client = httpx.AsyncClient(timeout=30.0, transport=transport)

    @property
    def simulated(self) -> bool:
        return False

    async def close(self) -> None:
        await self._client.aclose()

    def _sign(self, timestamp: str, method: str, path: str, body: str) -> dict[str, str]:
        message = (timestamp + method.upper() + path + body).encode()
        mac = hmac.new(base64.b64decode(self._secret), message, hashlib.sha256)
        return {
            "CB-ACCESS-KEY": self._api_key,
            "CB-ACCESS-SIGN": base64.b64encode(mac.digest()).decode(),
            "CB-ACCESS-TIMESTAMP": timestamp,
            "CB-ACCESS-PASSPHRASE": self._passphrase,
            "Content-Type": "application/json",
        }

    @staticmethod
    def _raise_for(resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        try:
            body = resp.json()
        except ValueError:
            body = None
        message = body.get("message", resp.text) if isinstance(body, dict) else resp.text
        if resp.status_code == 429:
            raise RateLimitError(f"Coinbase rate limit: {message}")
        if "insufficient" in message.lower():
            raise InsufficientBalanceError(f"Coinbase: {message}")
        raise ExchangeError(f"Coinbase API error {resp.status_code}: {message}")

    async def public(self, path: str) -> Any:
        try:
            resp = await self._client.get(f"{self._base_url}{path}")
        except httpx.TransportError as e:
            raise ExchangeError(f"Coinbase unreachable: {e}") from e
        self._raise_for(resp)
        return resp.json()

    async def private(self, method: str, path: str, data: dict | None = None) -> Any:
        body = json.dumps(data) if data is not None else ""
        headers = self._sign(str(time.time()), method, path, body)
        try:
            resp = await self._client.request(
                method, f"{self._base_url}{path}", content=body or None, headers=headers,
            )
        except httpx.TransportError as e:
            raise ExchangeError(f"Coinbase unreachable: {e}") from e
        self._raise_for(resp)
        return resp.json()

    async def get_current_price(self) -> PriceQuote:
        ticker = await self.public(f"/products/{self._product_id}/ticker")
        price = float(ticker["price"])
        ts = ticker.get("time")
        return PriceQuote(
            price=price,
            bid=float(ticker.get("bid", price)),
            ask=float(ticker.get("ask", price)),
            timestamp=datetime.fromisoformat(ts) if ts else datetime.now(timezone.utc),
        )

    async def get_balances(self) -> Balances:
        accounts = await self.private("GET", "/accounts")
        available = {a["currency"]: float(a.get("available", 0)) for a in accounts}
        return Balances(
            fiat_available=available.get(self._fiat, 0.0),
            asset_available=available.get(self._asset, 0.0),
        )

    async def _place_market_order(self, side: str, **amount: str) -> dict:
        order = await self.private("POST", "/orders", {
            "type": "market",
            "side": side,
            "product_id": self._product_id,
            **amount,
        })
        order_id = order["id"]
        log.info("coinbase.order_placed", side=side, order_id=order_id, **amount)
        return await self._confirm_fill(order_id)

    async def _confirm_fill(self, order_id: str) -> dict:
        """Poll until the order is done. Market orders normally settle within a second."""
        deadline = time.monotonic() + self._fill_timeout
        while True:
            order = await self.private("GET", f"/orders/{order_id}")
            if order.get("status") == "done":
                if order.get("done_reason") != "filled" or float(order.get("filled_size", 0)) <= 0:
                    raise ExchangeError(f"Order {order_id} ended without a fill: {order.get('done_reason')}")
                return order
            if time.monotonic() > deadline:
                raise ExchangeError(f"Order {order_id} not filled within {self._fill_timeout}s")
            await asyncio.sleep(1.0)

    async def buy(self, fiat_amount: float) -> BuyFill:
        order = await self._place_market_order("buy", funds=f"{fiat_amount:.2f}")
        size = float(order["filled_size"])
        value = float(order["executed_value"])
        return BuyFill(
            asset_received=size,
            unit_price=value / size,
            fees=float(order.get("fill_fees", 0)),
            order_id=order["id"],
            simulated=False,
        )

    async def sell(self, asset_amount: float) -> SellFill:
        order = await self._place_market_order("sell", size=f"{asset_amount:.8f}")
        size = float(order["filled_size"])
        value = float(order["executed_value"])
        fees = float(order.get("fill_fees", 0))
        return SellFill(
            fiat_received=value - fees,
            unit_price=value / size,
            fees=fees,
            order_id=order["id"],
            simulated=False,
        )
