"""Notifications — every trading event is logged, and sent to Telegram if enabled.

Telegram is filtered by config (telegram.notifications section). Without a
Telegram application the message text goes to the log only (console mode).
Delivery is best-effort: failures are retried, then logged and dropped.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from btc_trader.shell.contract import ActionType, Balances, Priority

if TYPE_CHECKING:
    from telegram.ext import Application

    from btc_trader.shell.config import NotificationConfig
    from btc_trader.trading.alerts import PriceAlert
    from btc_trader.trading.ledger import LotProfitView
    from btc_trader.trading.profit import MilestoneRecord

log = structlog.get_logger()

_PRIORITY_PREFIX = {
    Priority.LOW: "",
    Priority.MEDIUM: "",
    Priority.HIGH: "IMPORTANT: ",
    Priority.CRITICAL: "URGENT: ",
}


class Notifier:
    """Event formatting and delivery for Telegram (filtered) and the log (always)."""

    def __init__(
        self,
        chat_id: str = "",
        tg_filter: NotificationConfig | None = None,
        app: Application | None = None,
    ) -> None:
        self._chat_id = chat_id
        self._app = app
        self._tg_filter = tg_filter

    def set_app(self, app: Application | None) -> None:
        self._app = app

    def _should_telegram(self, event_name: str) -> bool:
        if self._tg_filter is None:
            return True
        return getattr(self._tg_filter, event_name, True)

    async def _send_telegram(self, text: str) -> None:
        if not self._app or not self._chat_id:
            log.info("notifier.console", text=text)
            return
        for attempt in range(3):
            try:
                await self._app.bot.send_message(chat_id=self._chat_id, text=text[:4096])
                return
            except Exception as e:
                if attempt < 2:
                    log.warning("notifier.send_retry", attempt=attempt + 1, error=str(e))
                    await asyncio.sleep(2 ** attempt)
                else:
                    log.error("notifier.send_failed", error=str(e))

    async def send(self, message: str, priority: Priority = Priority.MEDIUM) -> None:
        """Unfiltered delivery of a free-form message."""
        await self._send_telegram(_PRIORITY_PREFIX[priority] + message)

    async def _dispatch(
        self, event_name: str, data: dict, text: str, priority: Priority = Priority.MEDIUM,
    ) -> None:
        log.info(f"notify.{event_name}", **data)
        if self._should_telegram(event_name):
            await self.send(text, priority)

    # --- Trade Events ---

    async def trade_executed(
        self,
        action: ActionType,
        fiat_amount: float,
        asset_amount: float,
        unit_price: float,
        fees: float,
        simulated: bool,
        reasons: list[str],
        before: Balances,
        after: Balances,
        profit: float | None = None,
    ) -> None:
        mode = "SIMULATED" if simulated else "LIVE"
        verb = "Bought" if action == ActionType.BUY else "Sold"
        lines = [
            f"{mode} {action.value.upper()}",
            f"{verb} {asset_amount:.8f} BTC for £{fiat_amount:,.2f} @ £{unit_price:,.2f}",
            f"Fees: £{fees:.2f}",
        ]
        if profit is not None:
            lines.append(f"Net profit: £{profit:+.2f}")
        lines.append(f"Balance: £{after.fiat_available:,.2f} + {after.asset_available:.8f} BTC")
        if reasons:
            lines.append("Why: " + " ".join(reasons))
        await self._dispatch(
            "trade_executed",
            {"action": action.value, "fiat": round(fiat_amount, 2), "asset": asset_amount,
             "price": unit_price, "fees": round(fees, 4), "simulated": simulated, "profit": profit,
             "fiat_before": before.fiat_available, "asset_before": before.asset_available,
             "fiat_after": after.fiat_available, "asset_after": after.asset_available},
            "\n".join(lines),
            Priority.HIGH,
        )

    async def approval_required(
        self, action: ActionType, amount: float, price: float, reasons: list[str],
    ) -> None:
        if action == ActionType.BUY:
            what = f"Buy £{amount:,.2f} of BTC"
            reply = "/buy_yes"
        else:
            what = f"Sell {amount:.6f} BTC (~£{amount * price:,.2f})"
            reply = "/sell_yes"
        text = (
            f"APPROVAL NEEDED\n{what} at £{price:,.2f}\n"
            + "\n".join(f"- {r}" for r in reasons)
            + f"\nReply {reply} to execute or /no to skip."
        )
        await self._dispatch(
            "approval_required",
            {"action": action.value, "amount": amount, "price": price},
            text,
            Priority.HIGH,
        )

    async def trade_deferred(self, action: ActionType, reason: str) -> None:
        await self._dispatch(
            "trade_deferred",
            {"action": action.value, "reason": reason},
            f"{action.value.capitalize()} deferred: {reason.replace('_', ' ')}",
            Priority.LOW,
        )

    async def trade_failed(self, action: ActionType, error: str) -> None:
        await self._dispatch(
            "system_error",
            {"action": action.value, "error": error},
            f"{action.value.upper()} FAILED\n{error[:500]}",
            Priority.CRITICAL,
        )

    # --- Price / Profit Events ---

    async def price_alert(self, alert: PriceAlert) -> None:
        await self._dispatch(
            "price_alert",
            {"kind": alert.rule.kind.value, "trigger": alert.rule.trigger, "price": alert.price},
            alert.text(),
            alert.rule.priority,
        )

    async def milestone_reached(self, record: MilestoneRecord, profit_percent: float) -> None:
        await self._dispatch(
            "milestone_reached",
            {"value": record.value, "mode": record.mode, "profit": round(record.profit, 2)},
            f"Milestone reached: £{record.value:,.0f} profit\n"
            f"Current profit: £{record.profit:+.2f} ({profit_percent:+.2f}%)",
            Priority.HIGH,
        )

    async def profit_alert(self, state: str, profit: float, profit_percent: float) -> None:
        head = "Profit threshold reached" if state == "profit" else "Loss threshold reached"
        await self._dispatch(
            "profit_alert",
            {"state": state, "profit": round(profit, 2)},
            f"{head}: £{profit:+.2f} ({profit_percent:+.2f}%)",
            Priority.MEDIUM if state == "profit" else Priority.HIGH,
        )

    async def lots_ready(self, views: list[LotProfitView], unit_price: float) -> None:
        if not views:
            return
        lines = [f"{len(views)} lot(s) ready to sell at £{unit_price:,.2f}"]
        for v in views:
            lines.append(
                f"{v.lot_id}: {v.asset_amount:.8f} BTC bought @ £{v.unit_price:,.2f}, "
                f"net £{v.net_profit:+.2f} after £{v.sale_fees:.2f} fees"
            )
        lines.append("Use /selllot <id> to sell one.")
        await self._dispatch(
            "lots_ready",
            {"lots": [v.lot_id for v in views], "price": unit_price},
            "\n".join(lines),
        )

    async def cycle_complete(self, price: float, profit: float) -> None:
        await self._dispatch(
            "cycle_complete",
            {"price": price, "profit": round(profit, 2)},
            f"Cycle: BTC £{price:,.2f}, profit £{profit:+.2f}",
            Priority.LOW,
        )

    # --- System Events ---

    async def system_online(self, mode: str, portfolio_value: float, open_lots: int) -> None:
        await self._dispatch(
            "system_online",
            {"mode": mode, "portfolio_value": portfolio_value, "open_lots": open_lots},
            f"BTC trader online ({mode})\nPortfolio: £{portfolio_value:,.2f}\nOpen lots: {open_lots}",
        )

    async def system_shutdown(self) -> None:
        await self._dispatch("system_shutdown", {}, "BTC trader shutting down")

    async def system_error(self, message: str) -> None:
        await self._dispatch(
            "system_error", {"message": message[:500]}, f"ERROR: {message[:1000]}", Priority.CRITICAL,
        )

    async def daily_summary(self, summary: str) -> None:
        await self._dispatch("daily_summary", {"summary": summary[:500]}, summary)
