"""Decision engine tests: buy/sell triggers, blockers and reason reporting."""

from datetime import datetime, timedelta, timezone

import pytest

NOW = datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc)


def _engine(fee_model=None, buying=None, selling=None, safety=None):
    from btc_trader.shell.config import BuyingConfig, SafetyConfig, SellingConfig
    from btc_trader.trading.decision import DecisionEngine
    return DecisionEngine(buying or BuyingConfig(), selling or SellingConfig(),
                          safety or SafetyConfig(), fee_model)


def _balances(fiat=200.0, asset=0.001):
    from btc_trader.shell.contract import Balances
    return Balances(fiat_available=fiat, asset_available=asset)


def test_net_profit_target_fires_sell():
    from btc_trader.shell.contract import ActionType
    from btc_trader.shell.fees import FeeModel
    from btc_trader.trading.decision import MarketState, ReasonCode, TradingActivity

    engine = _engine(FeeModel(0.0, 0.0, 5.0))
    # Baseline 250, value 275: profit 25, fees 5, net 20 >= 10
    decision = engine.evaluate(MarketState(price=80000.0), _balances(35.0, 0.003),
                               25.0, TradingActivity(), NOW)

    assert decision.should_sell
    assert ReasonCode.NET_PROFIT_TARGET in decision.codes()
    assert "Net profit target reached." in decision.describe(ActionType.SELL)


def test_net_profit_below_target_after_fees_does_not_sell():
    from btc_trader.shell.contract import ActionType
    from btc_trader.shell.fees import FeeModel
    from btc_trader.trading.decision import MarketState, TradingActivity

    engine = _engine(FeeModel(0.0, 0.0, 5.0))
    decision = engine.evaluate(MarketState(price=80000.0), _balances(35.0, 0.003),
                               14.0, TradingActivity(), NOW)

    assert not decision.should_sell
    assert decision.for_action(ActionType.SELL) == ()


def test_no_sell_yet_forces_buy_off():
    from btc_trader.shell.contract import ActionType
    from btc_trader.trading.decision import MarketState, ReasonCode, TradingActivity

    engine = _engine()
    # Far below the buy threshold and a big drop from the recent high
    market = MarketState(price=50000.0, recent_high=80000.0, recent_low=50000.0)
    decision = engine.evaluate(market, _balances(500.0, 0.0), 0.0, TradingActivity(), NOW)

    assert not decision.should_buy
    assert ReasonCode.NO_SELL_YET in decision.codes()
    assert ReasonCode.PRICE_BELOW_THRESHOLD in decision.codes()
    assert "Buying disabled until first profitable sell." in decision.describe(ActionType.BUY)


def test_no_sell_yet_reported_even_without_trigger():
    from btc_trader.trading.decision import MarketState, ReasonCode, TradingActivity

    engine = _engine()
    decision = engine.evaluate(MarketState(price=85000.0), _balances(500.0, 0.0), 0.0,
                               TradingActivity(), NOW)

    assert not decision.should_buy
    assert decision.codes() == [ReasonCode.NO_SELL_YET]


def test_buy_after_profitable_sell_and_sufficient_drop():
    from btc_trader.trading.decision import MarketState, ReasonCode, TradingActivity

    engine = _engine()
    activity = TradingActivity(last_sell_price=72000.0)
    decision = engine.evaluate(MarketState(price=69000.0), _balances(500.0, 0.0), 0.0, activity, NOW)

    assert decision.should_buy
    assert decision.codes() == [ReasonCode.PRICE_BELOW_THRESHOLD]


@pytest.mark.parametrize("activity_kwargs,balances_kwargs,expected", [
    ({"last_sell_price": 69005.0}, {}, "POST_SELL_DROP_TOO_SMALL"),
    ({}, {"fiat": 55.0}, "INSUFFICIENT_FIAT"),
    ({"today_buy_fiat": 60.0}, {}, "DAILY_BUY_LIMIT"),
    ({"today_buy_count": 5}, {}, "DAILY_BUY_LIMIT"),
    ({"last_buy_at": NOW - timedelta(minutes=30)}, {}, "BUY_GAP_NOT_ELAPSED"),
    ({}, {"asset": 0.05}, "MAX_HOLDING_REACHED"),
    ({"last_trade_at": NOW - timedelta(minutes=2)}, {}, "TRADE_COOLDOWN"),
    ({"today_trade_count": 10}, {}, "DAILY_TRADE_LIMIT"),
])
def test_buy_blockers(activity_kwargs, balances_kwargs, expected):
    from btc_trader.trading.decision import MarketState, ReasonCode, TradingActivity

    engine = _engine()
    activity = TradingActivity(**{"last_sell_price": 72000.0, **activity_kwargs})
    balances = _balances(**{"fiat": 500.0, "asset": 0.0, **balances_kwargs})
    decision = engine.evaluate(MarketState(price=69000.0), balances, 0.0, activity, NOW)

    assert not decision.should_buy
    assert ReasonCode[expected] in decision.codes()


def test_buying_disabled_blocks():
    from btc_trader.shell.config import BuyingConfig
    from btc_trader.trading.decision import MarketState, ReasonCode, TradingActivity

    engine = _engine(buying=BuyingConfig(enabled=False))
    decision = engine.evaluate(MarketState(price=60000.0), _balances(500.0, 0.0), 0.0,
                               TradingActivity(last_sell_price=80000.0), NOW)

    assert not decision.should_buy
    assert ReasonCode.BUYING_DISABLED in decision.codes()


def test_support_level_trigger():
    from btc_trader.shell.config import BuyingConfig
    from btc_trader.trading.decision import MarketState, ReasonCode, TradingActivity

    buying = BuyingConfig(price_threshold=60000.0, support_level_buying=True,
                          support_levels=[75000.0], support_tolerance_pct=1.0)
    engine = _engine(buying=buying)
    decision = engine.evaluate(MarketState(price=75500.0), _balances(500.0, 0.0), 0.0,
                               TradingActivity(last_sell_price=90000.0), NOW)

    assert decision.should_buy
    assert decision.codes() == [ReasonCode.NEAR_SUPPORT_LEVEL]


def test_sell_triggers_and_blockers():
    from btc_trader.shell.config import SellingConfig
    from btc_trader.trading.decision import MarketState, ReasonCode, TradingActivity

    engine = _engine(selling=SellingConfig(stop_loss_enabled=True, stop_loss_percent=10.0))

    above = engine.evaluate(MarketState(price=95000.0, recent_low=88000.0), _balances(), 0.0,
                            TradingActivity(), NOW)
    assert above.should_sell
    assert ReasonCode.PRICE_ABOVE_THRESHOLD in above.codes()
    assert ReasonCode.PRICE_GAIN_FROM_LOW in above.codes()

    stop = engine.evaluate(MarketState(price=70000.0, recent_high=80000.0), _balances(), 0.0,
                           TradingActivity(), NOW)
    assert stop.should_sell
    assert ReasonCode.STOP_LOSS in stop.codes()

    empty = engine.evaluate(MarketState(price=95000.0), _balances(asset=0.0), 0.0,
                            TradingActivity(), NOW)
    assert not empty.should_sell
    assert ReasonCode.NO_ASSET in empty.codes()

    capped = engine.evaluate(MarketState(price=95000.0), _balances(), 0.0,
                             TradingActivity(today_sell_count=5), NOW)
    assert not capped.should_sell
    assert ReasonCode.DAILY_SELL_LIMIT in capped.codes()


def test_evaluate_is_deterministic():
    from btc_trader.trading.decision import MarketState, TradingActivity

    engine = _engine()
    args = (MarketState(price=69000.0, recent_high=75000.0, recent_low=68000.0),
            _balances(500.0, 0.002), 3.0,
            TradingActivity(last_sell_price=72000.0, last_trade_at=NOW - timedelta(hours=3)), NOW)

    assert engine.evaluate(*args) == engine.evaluate(*args)
