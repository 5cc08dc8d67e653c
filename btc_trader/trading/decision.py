"""Decision Engine — pure buy/sell evaluation against the configured rules.

Nothing here executes or remembers anything. The same inputs always give the
same TradingDecision, so every rule can be tested directly.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from btc_trader.shell.config import BuyingConfig, SafetyConfig, SellingConfig
from btc_trader.shell.contract import ActionType, Balances
from btc_trader.shell.fees import FeeModel


class ReasonCode(Enum):
    # Buy triggers
    PRICE_BELOW_THRESHOLD = "price_below_threshold"
    PRICE_DROP_FROM_HIGH = "price_drop_from_high"
    NEAR_SUPPORT_LEVEL = "near_support_level"
    # Buy blockers
    BUYING_DISABLED = "buying_disabled"
    NO_SELL_YET = "no_sell_yet"
    POST_SELL_DROP_TOO_SMALL = "post_sell_drop_too_small"
    INSUFFICIENT_FIAT = "insufficient_fiat"
    DAILY_BUY_LIMIT = "daily_buy_limit"
    BUY_GAP_NOT_ELAPSED = "buy_gap_not_elapsed"
    MAX_HOLDING_REACHED = "max_holding_reached"
    # Sell triggers
    PRICE_ABOVE_THRESHOLD = "price_above_threshold"
    NET_PROFIT_TARGET = "net_profit_target"
    PRICE_GAIN_FROM_LOW = "price_gain_from_low"
    STOP_LOSS = "stop_loss"
    # Sell blockers
    SELLING_DISABLED = "selling_disabled"
    NO_ASSET = "no_asset"
    DAILY_SELL_LIMIT = "daily_sell_limit"
    # Shared blockers
    TRADE_COOLDOWN = "trade_cooldown"
    DAILY_TRADE_LIMIT = "daily_trade_limit"


_TEMPLATES: dict[ReasonCode, str] = {
    ReasonCode.PRICE_BELOW_THRESHOLD: "Price below buy threshold (£{value:,.2f}).",
    ReasonCode.PRICE_DROP_FROM_HIGH: "Price dropped {value:.2f}% from recent high.",
    ReasonCode.NEAR_SUPPORT_LEVEL: "Price near support level £{value:,.2f}.",
    ReasonCode.BUYING_DISABLED: "Buying is disabled.",
    ReasonCode.NO_SELL_YET: "Buying disabled until first profitable sell.",
    ReasonCode.POST_SELL_DROP_TOO_SMALL: "Only £{value:,.2f} below the last sell price.",
    ReasonCode.INSUFFICIENT_FIAT: "Insufficient balance (£{value:,.2f} available).",
    ReasonCode.DAILY_BUY_LIMIT: "Daily buying limit reached.",
    ReasonCode.BUY_GAP_NOT_ELAPSED: "Last buy was {value:.0f} minutes ago.",
    ReasonCode.MAX_HOLDING_REACHED: "Maximum BTC holding reached ({value:.6f} BTC).",
    ReasonCode.PRICE_ABOVE_THRESHOLD: "Price above sell threshold (£{value:,.2f}).",
    ReasonCode.NET_PROFIT_TARGET: "Net profit target reached.",
    ReasonCode.PRICE_GAIN_FROM_LOW: "Price rose {value:.2f}% from recent low.",
    ReasonCode.STOP_LOSS: "Stop loss: price down {value:.2f}% from recent high.",
    ReasonCode.SELLING_DISABLED: "Selling is disabled.",
    ReasonCode.NO_ASSET: "No BTC available to sell.",
    ReasonCode.DAILY_SELL_LIMIT: "Daily sell limit reached.",
    ReasonCode.TRADE_COOLDOWN: "Trade cooldown active ({value:.0f} minutes since last trade).",
    ReasonCode.DAILY_TRADE_LIMIT: "Daily trade limit reached ({value:.0f} trades).",
}

BUY_TRIGGERS = frozenset({
    ReasonCode.PRICE_BELOW_THRESHOLD, ReasonCode.PRICE_DROP_FROM_HIGH, ReasonCode.NEAR_SUPPORT_LEVEL,
})
SELL_TRIGGERS = frozenset({
    ReasonCode.PRICE_ABOVE_THRESHOLD, ReasonCode.NET_PROFIT_TARGET,
    ReasonCode.PRICE_GAIN_FROM_LOW, ReasonCode.STOP_LOSS,
})


@dataclass(frozen=True)
class Reason:
    code: ReasonCode
    action: ActionType
    value: Optional[float] = None

    def describe(self) -> str:
        template = _TEMPLATES[self.code]
        if "{value" not in template:
            return template
        return template.format(value=self.value if self.value is not None else 0.0)

    @property
    def is_trigger(self) -> bool:
        return self.code in BUY_TRIGGERS or self.code in SELL_TRIGGERS


@dataclass(frozen=True)
class MarketState:
    price: float
    recent_high: Optional[float] = None
    recent_low: Optional[float] = None


@dataclass(frozen=True)
class TradingActivity:
    """Today's counters and the last trade facts, as TradeHistory reports them."""
    today_buy_fiat: float = 0.0
    today_buy_count: int = 0
    today_sell_count: int = 0
    today_trade_count: int = 0
    last_buy_at: Optional[datetime] = None
    last_trade_at: Optional[datetime] = None
    last_sell_price: Optional[float] = None


@dataclass(frozen=True)
class TradingDecision:
    should_buy: bool
    should_sell: bool
    reasons: tuple[Reason, ...] = ()

    def for_action(self, action: ActionType) -> tuple[Reason, ...]:
        return tuple(r for r in self.reasons if r.action == action)

    def codes(self) -> list[ReasonCode]:
        return [r.code for r in self.reasons]

    def describe(self, action: ActionType | None = None) -> list[str]:
        reasons = self.reasons if action is None else self.for_action(action)
        return [r.describe() for r in reasons]


class DecisionEngine:
    """Evaluates buy and sell rules. Holds configuration only."""

    def __init__(
        self,
        buying: BuyingConfig,
        selling: SellingConfig,
        safety: SafetyConfig,
        fee_model: FeeModel | None = None,
    ) -> None:
        self._buying = buying
        self._selling = selling
        self._safety = safety
        self._fees = fee_model or FeeModel()

    def evaluate(
        self,
        market: MarketState,
        balances: Balances,
        current_profit: float,
        activity: TradingActivity,
        now: datetime,
    ) -> TradingDecision:
        shared = self._shared_blockers(activity, now)
        should_buy, buy_reasons = self._evaluate_buy(market, balances, activity, now, shared)
        should_sell, sell_reasons = self._evaluate_sell(market, balances, current_profit, activity, shared)
        return TradingDecision(should_buy, should_sell, tuple(buy_reasons + sell_reasons))

    def _shared_blockers(self, activity: TradingActivity, now: datetime) -> list[tuple[ReasonCode, float]]:
        blockers = []
        if activity.last_trade_at is not None:
            minutes = (now - activity.last_trade_at).total_seconds() / 60
            if minutes < self._safety.cooldown_between_trades_minutes:
                blockers.append((ReasonCode.TRADE_COOLDOWN, minutes))
        if activity.today_trade_count >= self._safety.max_daily_trades:
            blockers.append((ReasonCode.DAILY_TRADE_LIMIT, float(activity.today_trade_count)))
        return blockers

    def _evaluate_buy(
        self,
        market: MarketState,
        balances: Balances,
        activity: TradingActivity,
        now: datetime,
        shared: list[tuple[ReasonCode, float]],
    ) -> tuple[bool, list[Reason]]:
        cfg = self._buying
        price = market.price
        buy = ActionType.BUY

        triggers: list[Reason] = []
        if price <= cfg.price_threshold:
            triggers.append(Reason(ReasonCode.PRICE_BELOW_THRESHOLD, buy, cfg.price_threshold))
        if market.recent_high:
            drop = (market.recent_high - price) / market.recent_high * 100
            if drop >= cfg.percentage_drop:
                triggers.append(Reason(ReasonCode.PRICE_DROP_FROM_HIGH, buy, drop))
        if cfg.support_level_buying:
            for level in cfg.support_levels:
                if level > 0 and abs(price - level) / level * 100 <= cfg.support_tolerance_pct:
                    triggers.append(Reason(ReasonCode.NEAR_SUPPORT_LEVEL, buy, level))
                    break

        blockers: list[Reason] = []
        if not cfg.enabled:
            blockers.append(Reason(ReasonCode.BUYING_DISABLED, buy))
        if activity.last_sell_price is None:
            blockers.append(Reason(ReasonCode.NO_SELL_YET, buy))
        elif activity.last_sell_price - price < cfg.post_sell_drop_threshold:
            blockers.append(Reason(ReasonCode.POST_SELL_DROP_TOO_SMALL, buy,
                                   activity.last_sell_price - price))
        if balances.fiat_available < cfg.max_buy_amount + cfg.min_account_balance:
            blockers.append(Reason(ReasonCode.INSUFFICIENT_FIAT, buy, balances.fiat_available))
        if (activity.today_buy_fiat + cfg.max_buy_amount > cfg.max_daily_buying
                or activity.today_buy_count >= cfg.max_daily_buy_trades):
            blockers.append(Reason(ReasonCode.DAILY_BUY_LIMIT, buy, activity.today_buy_fiat))
        if activity.last_buy_at is not None:
            since = now - activity.last_buy_at
            if since < timedelta(minutes=cfg.min_gap_between_buys_minutes):
                blockers.append(Reason(ReasonCode.BUY_GAP_NOT_ELAPSED, buy, since.total_seconds() / 60))
        if balances.asset_available >= cfg.max_btc_holding:
            blockers.append(Reason(ReasonCode.MAX_HOLDING_REACHED, buy, balances.asset_available))
        blockers.extend(Reason(code, buy, value) for code, value in shared)

        should_buy = bool(triggers) and not blockers
        if triggers:
            return should_buy, triggers + blockers
        # The first-sell rule is always reported so the operator can see why nothing buys
        return False, [b for b in blockers if b.code == ReasonCode.NO_SELL_YET]

    def _evaluate_sell(
        self,
        market: MarketState,
        balances: Balances,
        current_profit: float,
        activity: TradingActivity,
        shared: list[tuple[ReasonCode, float]],
    ) -> tuple[bool, list[Reason]]:
        cfg = self._selling
        price = market.price
        sell = ActionType.SELL

        triggers: list[Reason] = []
        if price >= cfg.price_threshold:
            triggers.append(Reason(ReasonCode.PRICE_ABOVE_THRESHOLD, sell, cfg.price_threshold))
        fee_load = self._fees.sell_fees(balances.asset_available * price)
        net_profit = current_profit - fee_load
        if net_profit >= cfg.profit_target:
            triggers.append(Reason(ReasonCode.NET_PROFIT_TARGET, sell, net_profit))
        if market.recent_low:
            gain = (price - market.recent_low) / market.recent_low * 100
            if gain >= cfg.percentage_gain:
                triggers.append(Reason(ReasonCode.PRICE_GAIN_FROM_LOW, sell, gain))
        if cfg.stop_loss_enabled and market.recent_high:
            drop = (market.recent_high - price) / market.recent_high * 100
            if drop >= cfg.stop_loss_percent:
                triggers.append(Reason(ReasonCode.STOP_LOSS, sell, drop))

        if not triggers:
            return False, []

        blockers: list[Reason] = []
        if not cfg.enabled:
            blockers.append(Reason(ReasonCode.SELLING_DISABLED, sell))
        if balances.asset_available <= 0:
            blockers.append(Reason(ReasonCode.NO_ASSET, sell))
        if activity.today_sell_count >= cfg.max_daily_sell_trades:
            blockers.append(Reason(ReasonCode.DAILY_SELL_LIMIT, sell, float(activity.today_sell_count)))
        blockers.extend(Reason(code, sell, value) for code, value in shared)

        return not blockers, triggers + blockers
