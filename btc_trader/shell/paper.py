"""Paper exchange — simulated fills against live prices. The default (dry run) mode."""

from __future__ import annotations

import time

import structlog

from btc_trader.shell.contract import (
    Balances,
    BuyFill,
    InsufficientBalanceError,
    PriceSource,
    SellFill,
    ValidationError,
)
from btc_trader.shell.fees import FeeModel

log = structlog.get_logger()


class PaperExchange:
    """Buys at the ask and sells at the bid, charging the configured trading fee and spread."""

    def __init__(
        self,
        price_source: PriceSource,
        fee_model: FeeModel,
        fiat_balance: float = 0.0,
        asset_balance: float = 0.0,
    ) -> None:
        self._prices = price_source
        self._fees = fee_model
        self._fiat = fiat_balance
        self._asset = asset_balance

    @property
    def simulated(self) -> bool:
        return True

    def set_balances(self, fiat_balance: float, asset_balance: float) -> None:
        self._fiat = fiat_balance
        self._asset = asset_balance
        log.info("paper.balances_set", fiat=round(fiat_balance, 2), asset=asset_balance)

    async def get_balances(self) -> Balances:
        return Balances(fiat_available=self._fiat, asset_available=self._asset)

    async def buy(self, fiat_amount: float) -> BuyFill:
        if fiat_amount <= 0:
            raise ValidationError(f"Buy amount must be > 0, got {fiat_amount}")
        if fiat_amount > self._fiat + 1e-9:
            raise InsufficientBalanceError(
                f"Paper balance £{self._fiat:.2f} cannot cover £{fiat_amount:.2f}"
            )
        quote = await self._prices.get_current_price()
        fees = self._fees.buy_fees(fiat_amount)
        asset = (fiat_amount - fees) / quote.ask
        self._fiat -= fiat_amount
        self._asset += asset
        log.info("paper.buy", fiat=round(fiat_amount, 2), asset=round(asset, 8),
                 price=quote.ask, fees=round(fees, 4))
        return BuyFill(asset, quote.ask, fees, f"paper_{int(time.time() * 1000)}", True)

    async def sell(self, asset_amount: float) -> SellFill:
        if asset_amount <= 0:
            raise ValidationError(f"Sell amount must be > 0, got {asset_amount}")
        if asset_amount > self._asset + 1e-12:
            raise InsufficientBalanceError(
                f"Paper balance {self._asset:.8f} BTC cannot cover {asset_amount:.8f}"
            )
        quote = await self._prices.get_current_price()
        gross = asset_amount * quote.bid
        fees = gross * self._fees.rate
        self._asset -= asset_amount
        self._fiat += gross - fees
        log.info("paper.sell", asset=round(asset_amount, 8), fiat=round(gross - fees, 2),
                 price=quote.bid, fees=round(fees, 4))
        return SellFill(gross - fees, quote.bid, fees, f"paper_{int(time.time() * 1000)}", True)

    async def close(self) -> None:
        return None
