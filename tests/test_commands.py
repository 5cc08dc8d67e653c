"""Telegram command tests with mocked updates."""

from unittest.mock import AsyncMock, MagicMock

import pytest


def _update(user_id=1):
    update = MagicMock()
    update.effective_user.id = user_id
    update.message.reply_text = AsyncMock()
    return update


async def _commands(allowed=(1,)):
    from btc_trader.shell.config import Config
    from btc_trader.shell.history import TradeHistory
    from btc_trader.telegram.commands import BotCommands
    from btc_trader.trading.ledger import LotLedger
    from btc_trader.trading.profit import ProfitAccount
    from btc_trader.trading.timing import TimingGate

    config = Config()
    config.telegram.allowed_user_ids = list(allowed)
    ledger = LotLedger()
    await ledger.record_lot(200.0, 0.0025, 80000.0, tag="initial")
    profit = ProfitAccount(config.profit)
    await profit.record_balance(50.0, 0.0025, 80000.0)
    orchestrator = MagicMock()
    orchestrator.last_cycle = {}
    orchestrator.is_paused = False
    orchestrator.pending_approval = None
    gate = TimingGate(config.timing, config.polling, config.timezone)
    commands = BotCommands(config, orchestrator, ledger, profit, TradeHistory(), gate)
    return commands, orchestrator, ledger


@pytest.mark.asyncio
async def test_unauthorized_users_are_ignored():
    commands, orchestrator, _ = await _commands()
    update = _update(user_id=99)

    await commands.cmd_pause(update, MagicMock())

    update.message.reply_text.assert_not_called()
    orchestrator.pause.assert_not_called()


@pytest.mark.asyncio
async def test_no_allowed_ids_rejects_everyone():
    commands, _, _ = await _commands(allowed=())
    update = _update()
    await commands.cmd_help(update, MagicMock())
    update.message.reply_text.assert_not_called()


@pytest.mark.asyncio
async def test_pause_and_resume():
    commands, orchestrator, _ = await _commands()

    await commands.cmd_pause(_update(), MagicMock())
    orchestrator.pause.assert_called_once()
    await commands.cmd_resume(_update(), MagicMock())
    orchestrator.resume.assert_called_once()


@pytest.mark.asyncio
async def test_lots_uses_last_snapshot_price():
    commands, _, ledger = await _commands()
    update = _update()

    await commands.cmd_lots(update, MagicMock())

    text = update.message.reply_text.call_args.args[0]
    assert "1 open lots" in text
    assert ledger.open_lots()[0].id in text


@pytest.mark.asyncio
async def test_profit_and_trades_views():
    commands, _, _ = await _commands()

    update = _update()
    await commands.cmd_profit(update, MagicMock())
    assert "Baseline: £250.00" in update.message.reply_text.call_args.args[0]

    update = _update()
    await commands.cmd_trades(update, MagicMock())
    update.message.reply_text.assert_awaited_once_with("No trades yet.")


@pytest.mark.asyncio
async def test_selllot_reports_errors():
    from btc_trader.shell.contract import NotFoundError

    commands, orchestrator, _ = await _commands()
    orchestrator.sell_specific_lot = AsyncMock(side_effect=NotFoundError("No open lot with id x"))

    update = _update()
    context = MagicMock(args=[])
    await commands.cmd_selllot(update, context)
    assert "Usage" in update.message.reply_text.call_args.args[0]

    update = _update()
    context = MagicMock(args=["x"])
    await commands.cmd_selllot(update, context)
    assert update.message.reply_text.call_args.args[0] == "Sell failed: No open lot with id x"


@pytest.mark.asyncio
async def test_approval_replies():
    from btc_trader.shell.contract import ActionType, NotFoundError

    commands, orchestrator, _ = await _commands()
    orchestrator.approve = AsyncMock()
    await commands.cmd_buy_yes(_update(), MagicMock())
    orchestrator.approve.assert_awaited_once_with(ActionType.BUY)

    orchestrator.reject.side_effect = NotFoundError("Nothing is awaiting approval")
    update = _update()
    await commands.cmd_no(update, MagicMock())
    update.message.reply_text.assert_awaited_once_with("Nothing is awaiting approval")
