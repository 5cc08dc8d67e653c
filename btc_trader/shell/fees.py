"""Fee model — one attribution model used for sell triggers and lot sales alike."""

from __future__ import annotations

from dataclasses import dataclass

from btc_trader.shell.config import FeeConfig


@dataclass(frozen=True)
class FeeModel:
    trading_fee: float = 0.005
    spread: float = 0.0025
    withdrawal_fee: float = 0.15

    @classmethod
    def from_config(cls, config: FeeConfig) -> FeeModel:
        return cls(config.trading_fee, config.spread, config.withdrawal_fee)

    @property
    def rate(self) -> float:
        return self.trading_fee + self.spread

    def buy_fees(self, fiat_amount: float) -> float:
        """Trading fee plus spread cost on a market buy of fiat_amount."""
        return fiat_amount * self.rate

    def sell_fees(self, sale_value: float) -> float:
        """Estimated cost of turning sale_value of BTC back into withdrawable fiat."""
        if sale_value <= 0:
            return 0.0
        return sale_value * self.rate + self.withdrawal_fee

    def net_profit(self, gross_profit: float, sale_value: float) -> float:
        return gross_profit - self.sell_fees(sale_value)
