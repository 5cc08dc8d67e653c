"""Telegram Command Handlers — operator interface to the trader.

Read-only views of lots, profit and timing, plus pause/resume, manual
approval replies and single-lot sales.
"""

from __future__ import annotations

import structlog
from telegram import Update
from telegram.ext import ContextTypes

from btc_trader.orchestrator.orchestrator import Orchestrator
from btc_trader.shell.config import Config
from btc_trader.shell.contract import ActionType, TraderError
from btc_trader.shell.history import TradeHistory
from btc_trader.trading.ledger import LotLedger
from btc_trader.trading.profit import ProfitAccount
from btc_trader.trading.timing import TimingGate

log = structlog.get_logger()


class BotCommands:
    """Handles all Telegram bot commands."""

    def __init__(
        self,
        config: Config,
        orchestrator: Orchestrator,
        ledger: LotLedger,
        profit: ProfitAccount,
        history: TradeHistory,
        gate: TimingGate,
    ) -> None:
        self._config = config
        self._orchestrator = orchestrator
        self._ledger = ledger
        self._profit = profit
        self._history = history
        self._gate = gate

    async def _send_long(self, update: Update, text: str, max_len: int = 4000) -> None:
        """Send a message, chunking if it exceeds Telegram's limit."""
        if len(text) <= max_len:
            await update.message.reply_text(text)
            return
        chunks = [text[i:i + max_len] for i in range(0, len(text), max_len)]
        for i, chunk in enumerate(chunks):
            prefix = "" if i == 0 else f"(part {i+1}/{len(chunks)})\n"
            await update.message.reply_text(prefix + chunk)

    def _authorized(self, update: Update) -> bool:
        """Check if user is authorized. Rejects all users if no IDs configured."""
        allowed = self._config.telegram.allowed_user_ids
        if not allowed:
            return False
        return bool(update.effective_user and update.effective_user.id in allowed)

    def _price(self) -> float:
        price = self._orchestrator.last_cycle.get("price")
        if price:
            return price
        latest = self._profit.latest
        return latest.unit_price if latest else 0.0

    async def cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        await update.message.reply_text(
            f"BTC trader ({self._config.mode})\n\n"
            "Commands:\n"
            "/status - Trading status\n"
            "/profit - Profit and milestones\n"
            "/lots - Open purchase lots\n"
            "/trades - Recent trades\n"
            "/timing - Trading window and pending actions\n"
            "/selllot <id> - Sell one lot\n"
            "/buy_yes /sell_yes /no - Answer an approval request\n"
            "/pause - Pause trading\n"
            "/resume - Resume trading"
        )

    async def cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        cycle = self._orchestrator.last_cycle
        lines = [f"Mode: {self._config.mode}",
                 "Status: PAUSED" if self._orchestrator.is_paused else "Status: ACTIVE"]
        if cycle:
            lines.append(f"Last check: {cycle['timestamp']}")
            lines.append(f"BTC: £{cycle['price']:,.2f}")
            if cycle["reasons"]:
                lines.append("Signals: " + " ".join(cycle["reasons"]))
        else:
            lines.append("No price check yet")
        pending = self._orchestrator.pending_approval
        if pending:
            lines.append(
                f"Awaiting approval: {pending.action.value} {pending.amount} "
                f"(expires {pending.expires_at:%H:%M} UTC)"
            )
        await update.message.reply_text("\n".join(lines))

    async def cmd_profit(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        stats = self._profit.stats()
        trades = self._history.stats()
        if stats.baseline is None:
            await update.message.reply_text("No balance recorded yet.")
            return
        lines = [
            f"Baseline: £{stats.baseline:,.2f}",
            f"Current: £{stats.current_value:,.2f}",
            f"Profit: £{stats.current_profit:+.2f} ({stats.profit_percent:+.2f}%)",
            f"Trades: {trades['trades']} ({trades['buys']} buys, {trades['sells']} sells)",
            f"Realized: £{trades['realized_profit']:+.2f}, fees £{trades['total_fees']:.2f}",
            f"Milestones ({stats.milestone_mode}): "
            + (", ".join(f"£{m:,.0f}" for m in stats.milestones_reached) or "none"),
        ]
        if stats.next_milestone is not None:
            lines.append(f"Next milestone: £{stats.next_milestone:,.0f}")
        await update.message.reply_text("\n".join(lines))

    async def cmd_lots(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        price = self._price()
        if not price:
            await update.message.reply_text("No price yet.")
            return
        views = self._ledger.profit_snapshot(price, profit_target=self._config.profit.lot_profit_target)
        if not views:
            await update.message.reply_text("No open lots.")
            return
        summary = self._ledger.summary(price)
        lines = [
            f"{summary.lot_count} open lots, {summary.total_asset:.8f} BTC",
            f"Invested £{summary.total_invested:,.2f}, avg £{summary.average_buy_price:,.2f}",
            f"Value £{summary.current_value:,.2f} ({summary.total_profit:+.2f})",
            "",
        ]
        for v in views:
            lines.append(
                f"{v.lot_id} [{v.tag}] {v.status}\n"
                f"  {v.asset_amount:.8f} BTC @ £{v.unit_price:,.2f}, {v.days_held}d\n"
                f"  net £{v.net_profit:+.2f}, target at £{v.price_needed:,.2f}"
            )
        await self._send_long(update, "\n".join(lines))

    async def cmd_trades(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        recent = self._history.recent(10)
        if not recent:
            await update.message.reply_text("No trades yet.")
            return
        lines = []
        for t in reversed(recent):
            sim = " (sim)" if t.simulated else ""
            line = (f"{t.timestamp:%m-%d %H:%M} {t.side.value.upper()}{sim} "
                    f"{t.asset_amount:.6f} BTC £{t.fiat_amount:,.2f} @ £{t.unit_price:,.0f}")
            if t.profit is not None:
                line += f" net £{t.profit:+.2f}"
            lines.append(line)
        await update.message.reply_text("\n".join(lines))

    async def cmd_timing(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        status = self._gate.status()
        lines = [
            f"Local time: {status['local_time']}",
            "Window: OPEN" if status["window_open"]
            else f"Window: CLOSED (opens in {status['minutes_until_window']} min)",
        ]
        for p in status["pending_actions"]:
            lines.append(f"Pending {p['action']} ({p['state']}, {p['delay_minutes']} min delay)")
        await update.message.reply_text("\n".join(lines))

    async def cmd_selllot(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        if not context.args:
            await update.message.reply_text("Usage: /selllot <lot id>")
            return
        try:
            sale = await self._orchestrator.sell_specific_lot(context.args[0])
        except TraderError as e:
            await update.message.reply_text(f"Sell failed: {e}")
            return
        await update.message.reply_text(
            f"Sold {sale.asset_amount:.8f} BTC, net £{sale.net_profit:+.2f}"
        )

    async def _approve(self, update: Update, action: ActionType) -> None:
        if not self._authorized(update):
            return
        try:
            await self._orchestrator.approve(action)
        except TraderError as e:
            await update.message.reply_text(f"Not executed: {e}")

    async def cmd_buy_yes(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._approve(update, ActionType.BUY)

    async def cmd_sell_yes(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._approve(update, ActionType.SELL)

    async def cmd_no(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        try:
            pending = self._orchestrator.reject()
        except TraderError as e:
            await update.message.reply_text(str(e))
            return
        await update.message.reply_text(f"Skipped {pending.action.value}.")

    async def cmd_pause(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        self._orchestrator.pause()
        await update.message.reply_text("Trading paused. Price checks continue.")

    async def cmd_resume(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        self._orchestrator.resume()
        await update.message.reply_text("Trading resumed.")
