"""Orchestrator tests: full polling cycles against the paper exchange."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

START = datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc)


class FakePrices:
    def __init__(self, price):
        self.price = price
        self.fail = False

    async def get_current_price(self):
        from btc_trader.shell.contract import ExchangeError, PriceQuote
        if self.fail:
            raise ExchangeError("ticker unavailable")
        return PriceQuote(self.price, self.price - 10, self.price + 10, START)


class Clock:
    def __init__(self):
        self.now = START

    def __call__(self):
        return self.now


def _build(price=80000.0, manual=False, timing_enabled=False):
    from btc_trader.orchestrator.orchestrator import Orchestrator
    from btc_trader.shell.config import Config
    from btc_trader.shell.fees import FeeModel
    from btc_trader.shell.history import TradeHistory
    from btc_trader.shell.paper import PaperExchange
    from btc_trader.trading.alerts import PriceAlertMonitor
    from btc_trader.trading.decision import DecisionEngine
    from btc_trader.trading.ledger import LotLedger
    from btc_trader.trading.profit import ProfitAccount
    from btc_trader.trading.timing import TimingGate

    config = Config()
    config.timing.enabled = timing_enabled
    config.timing.trading_hours_enabled = False
    config.timing.avoid_weekends = False
    config.timing.hesitation.enabled = False
    config.timing.emergency.enabled = False
    config.buying.randomize_amount = False
    config.selling.randomize_amount = False
    config.safety.require_manual_approval = manual

    fees = FeeModel.from_config(config.fees)
    prices = FakePrices(price)
    exchange = PaperExchange(prices, fees)
    ledger = LotLedger(fee_model=fees)
    profit = ProfitAccount(config.profit)
    history = TradeHistory(tz_name=config.timezone)
    gate = TimingGate(config.timing, config.polling, config.timezone)
    engine = DecisionEngine(config.buying, config.selling, config.safety, fees)
    notifier = AsyncMock()
    clock = Clock()
    orch = Orchestrator(config, prices, exchange, ledger, profit, gate, engine,
                        PriceAlertMonitor([]), history, notifier, clock=clock)
    return orch, prices, exchange, ledger, profit, history, gate, notifier, clock


@pytest.mark.asyncio
async def test_reset_seeds_fiat_and_initial_lot():
    orch, prices, exchange, ledger, profit, history, *_ = _build()

    snapshot = await orch.reset_account(50.0, 200.0)

    assert snapshot.total_value == pytest.approx(250.0)
    assert profit.baseline == pytest.approx(250.0)
    lots = ledger.open_lots()
    assert len(lots) == 1
    assert lots[0].tag == "initial"
    assert lots[0].asset_amount == pytest.approx(0.0025)
    balances = await exchange.get_balances()
    assert balances.fiat_available == 50.0


@pytest.mark.asyncio
async def test_reset_refused_for_live_exchange():
    from btc_trader.shell.contract import ValidationError

    orch, *_ = _build()
    orch._exchange = MagicMock(simulated=False)
    with pytest.raises(ValidationError):
        await orch.reset_account(50.0, 200.0)


@pytest.mark.asyncio
async def test_first_cycle_never_buys_before_a_sell():
    from btc_trader.trading.decision import ReasonCode

    orch, prices, exchange, ledger, profit, history, gate, notifier, clock = _build(price=60000.0)
    await orch.reset_account(500.0, 0.0)

    result = await orch.run_cycle()

    assert not result.decision.should_buy
    assert ReasonCode.NO_SELL_YET in result.decision.codes()
    assert result.scheduled is None
    assert history.trades == []
    notifier.cycle_complete.assert_awaited_once()


@pytest.mark.asyncio
async def test_sell_then_buy_round_trip():
    from btc_trader.shell.contract import ActionType
    from btc_trader.trading.timing import ActionState

    orch, prices, exchange, ledger, profit, history, gate, notifier, clock = _build()
    await orch.reset_account(50.0, 200.0)

    # Price above the sell threshold
    prices.price = 90000.0
    result = await orch.run_cycle()
    assert result.decision.should_sell
    assert await result.scheduled.wait() == ActionState.COMPLETED

    assert [t.side for t in history.trades] == [ActionType.SELL]
    assert history.trades[0].profit is not None
    assert ledger.open_asset_total() == pytest.approx(0.0, abs=1e-5)
    sold = [lot for lot in ledger.lots if lot.sold_price is not None]
    assert sold and sold[0].sold_price == 89990.0
    assert notifier.trade_executed.await_args.args[0] == ActionType.SELL

    # After the cooldown, a big drop below the buy threshold buys again
    clock.now = START + timedelta(minutes=10)
    prices.price = 69000.0
    result = await orch.run_cycle()
    assert result.decision.should_buy
    assert await result.scheduled.wait() == ActionState.COMPLETED

    assert [t.side for t in history.trades] == [ActionType.SELL, ActionType.BUY]
    new_lot = ledger.open_lots()[-1]
    assert new_lot.tag == "auto"
    assert new_lot.fiat_amount == 50.0
    assert profit.latest.source == "buy"


@pytest.mark.asyncio
async def test_external_balance_drop_reconciles_lots():
    from btc_trader.shell.contract import LotStatus

    orch, prices, exchange, ledger, *_ = _build()
    await orch.reset_account(50.0, 200.0)
    exchange.set_balances(50.0, 0.001)

    result = await orch.run_cycle()

    assert len(result.reconciled) == 1
    lot = ledger.lots[0]
    assert lot.status == LotStatus.PARTIAL
    assert lot.asset_amount == pytest.approx(0.001)


@pytest.mark.asyncio
async def test_manual_approval_waits_for_operator():
    from btc_trader.shell.contract import ActionType, NotFoundError

    orch, prices, exchange, ledger, profit, history, gate, notifier, clock = _build(manual=True)
    await orch.reset_account(50.0, 200.0)
    prices.price = 90000.0

    result = await orch.run_cycle()

    assert result.scheduled is None
    assert gate.pending() == []
    pending = orch.pending_approval
    assert pending.action == ActionType.SELL
    notifier.approval_required.assert_awaited_once()
    assert history.trades == []

    with pytest.raises(NotFoundError):
        await orch.approve(ActionType.BUY)

    sale = await orch.approve(ActionType.SELL)
    assert sale.asset_amount == pending.amount
    assert orch.pending_approval is None
    with pytest.raises(NotFoundError):
        orch.reject()


@pytest.mark.asyncio
async def test_pending_approval_is_kept_until_it_expires():
    orch, prices, exchange, ledger, profit, history, gate, notifier, clock = _build(manual=True)
    await orch.reset_account(50.0, 200.0)
    prices.price = 90000.0

    for _ in range(3):
        await orch.run_cycle()
        clock.now += timedelta(minutes=1)

    first = orch.pending_approval
    assert notifier.approval_required.await_count == 1
    assert first.expires_at == first.created_at + timedelta(minutes=15)

    clock.now = first.expires_at
    await orch.run_cycle()

    assert notifier.approval_required.await_count == 2
    assert orch.pending_approval is not first
    assert orch.pending_approval.created_at == first.expires_at


@pytest.mark.asyncio
async def test_expired_approval_is_refused():
    from btc_trader.shell.contract import ActionType, ValidationError

    orch, prices, exchange, ledger, profit, history, gate, notifier, clock = _build(manual=True)
    await orch.reset_account(50.0, 200.0)
    prices.price = 90000.0
    await orch.run_cycle()

    clock.now += timedelta(minutes=20)
    with pytest.raises(ValidationError, match="expired"):
        await orch.approve(ActionType.SELL)

    assert orch.pending_approval is None
    assert history.trades == []
    assert (await exchange.get_balances()).asset_available == pytest.approx(0.0025)


@pytest.mark.asyncio
async def test_sells_skip_approval_when_only_buys_need_it():
    from btc_trader.shell.contract import ActionType
    from btc_trader.trading.timing import ActionState

    orch, prices, exchange, ledger, profit, history, gate, notifier, clock = _build(manual=True)
    orch._config.safety.require_sell_approval = False
    await orch.reset_account(50.0, 200.0)
    prices.price = 90000.0

    result = await orch.run_cycle()

    assert orch.pending_approval is None
    notifier.approval_required.assert_not_awaited()
    assert await result.scheduled.wait() == ActionState.COMPLETED
    assert [t.side for t in history.trades] == [ActionType.SELL]


@pytest.mark.asyncio
async def test_paused_orchestrator_does_not_propose():
    orch, prices, exchange, ledger, profit, history, gate, *_ = _build()
    await orch.reset_account(50.0, 200.0)
    prices.price = 90000.0
    orch.pause()

    result = await orch.run_cycle()

    assert result.decision.should_sell
    assert result.scheduled is None
    assert gate.pending() == []
    orch.resume()
    assert not orch.is_paused


@pytest.mark.asyncio
async def test_price_failure_skips_cycle():
    orch, prices, *_ = _build()
    prices.fail = True
    assert await orch.run_cycle() is None


@pytest.mark.asyncio
async def test_execute_buy_limits():
    from btc_trader.shell.contract import ValidationError

    orch, prices, exchange, ledger, *_ = _build()
    await orch.reset_account(500.0, 0.0)

    with pytest.raises(ValidationError):
        await orch.execute_buy(75.0)
    with pytest.raises(ValidationError):
        await orch.execute_buy(0)

    lot = await orch.execute_buy(75.0, emergency=True)
    assert lot.fiat_amount == 75.0
    assert (await exchange.get_balances()).fiat_available == pytest.approx(425.0)


@pytest.mark.asyncio
async def test_sell_aborted_on_invariant_violation():
    from btc_trader.shell.contract import InvariantViolation

    orch, prices, exchange, ledger, *_ = _build()
    await orch.reset_account(50.0, 200.0)

    with patch.object(ledger, "compute_cost_basis", return_value=float("nan")):
        with pytest.raises(InvariantViolation):
            await orch.execute_sell(0.001)

    assert (await exchange.get_balances()).asset_available == pytest.approx(0.0025)
    assert ledger.open_asset_total() == pytest.approx(0.0025)


@pytest.mark.asyncio
async def test_sell_specific_lot():
    from btc_trader.shell.contract import LotStatus, NotFoundError

    orch, prices, exchange, ledger, profit, history, *_ = _build()
    await orch.reset_account(50.0, 200.0)
    lot_id = ledger.open_lots()[0].id
    prices.price = 88000.0

    sale = await orch.sell_specific_lot(lot_id)

    assert sale.lot_ids == (lot_id,)
    assert ledger.get(lot_id).status == LotStatus.SOLD
    assert history.trades[-1].reason == f"Manual sale of lot {lot_id}."
    with pytest.raises(NotFoundError):
        await orch.sell_specific_lot(lot_id)


@pytest.mark.asyncio
async def test_stop_cancels_scheduled_actions():
    from btc_trader.trading.timing import ActionState

    orch, prices, exchange, ledger, profit, history, gate, *_ = _build(timing_enabled=True)

    async def never(_seconds):
        await asyncio.Event().wait()

    gate._sleep = never
    await orch.reset_account(50.0, 200.0)
    prices.price = 90000.0

    result = await orch.run_cycle()
    await asyncio.sleep(0)

    assert result.scheduled.state == ActionState.SCHEDULED
    assert orch.stop() == 1
    assert await result.scheduled.wait() == ActionState.CANCELLED
    assert history.trades == []


@pytest.mark.asyncio
async def test_ready_lots_and_daily_summary():
    orch, prices, exchange, ledger, profit, history, gate, notifier, clock = _build()
    await orch.reset_account(50.0, 200.0)
    prices.price = 100000.0

    await orch.check_ready_lots()
    notifier.lots_ready.assert_awaited_once()

    text = orch.daily_summary_text()
    assert text.startswith("Daily summary")
    assert "Open lots: 1" in text
    await orch.send_daily_summary()
    notifier.daily_summary.assert_awaited_once()
