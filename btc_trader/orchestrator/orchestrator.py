"""Orchestrator — runs the polling cycle and executes the trades it decides on.

One cycle: price -> recent high/low -> balances (reconcile lots if BTC left
the account outside our control) -> profit snapshot and milestones -> price
alerts -> decision -> manual approval or timing gate. Executions hold the
trade lock from the exchange call until the ledger, history and profit
account have all been updated, so a concurrent poll never sees half a trade.
"""

from __future__ import annotations

import asyncio
import math
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from btc_trader.shell.config import Config
from btc_trader.shell.contract import (
    ActionType,
    Balances,
    ExchangeClient,
    InvariantViolation,
    NotFoundError,
    PriceQuote,
    PriceSource,
    ValidationError,
)
from btc_trader.shell.history import TradeHistory, TradeRecord
from btc_trader.telegram.notifications import Notifier
from btc_trader.trading.alerts import PriceAlert, PriceAlertMonitor
from btc_trader.trading.decision import (
    DecisionEngine,
    MarketState,
    Reason,
    TradingDecision,
)
from btc_trader.trading.ledger import DUST, Lot, LotLedger, SaleResult
from btc_trader.trading.profit import MilestoneRecord, ProfitAccount, ProfitSnapshot
from btc_trader.trading.timing import ActionState, ScheduledAction, TimingGate

log = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class CycleResult:
    quote: PriceQuote
    balances: Balances
    snapshot: ProfitSnapshot
    decision: TradingDecision
    scheduled: Optional[ScheduledAction] = None
    alerts: list[PriceAlert] = field(default_factory=list)
    milestones: list[MilestoneRecord] = field(default_factory=list)
    reconciled: list[Lot] = field(default_factory=list)


@dataclass(frozen=True)
class PendingApproval:
    action: ActionType
    amount: float          # fiat for buys, BTC for sells
    price: float
    reasons: tuple[Reason, ...]
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class Orchestrator:
    """Wires the trading core to the exchange and the notifier."""

    def __init__(
        self,
        config: Config,
        price_source: PriceSource,
        exchange: ExchangeClient,
        ledger: LotLedger,
        profit: ProfitAccount,
        gate: TimingGate,
        engine: DecisionEngine,
        alerts: PriceAlertMonitor,
        history: TradeHistory,
        notifier: Notifier,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._prices = price_source
        self._exchange = exchange
        self._ledger = ledger
        self._profit = profit
        self._gate = gate
        self._engine = engine
        self._alerts = alerts
        self._history = history
        self._notifier = notifier
        self._rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._trade_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._running = False
        self._paused = False
        self._recent_high: float | None = None
        self._recent_low: float | None = None
        self._previous_price: float | None = None
        self._pending_approval: PendingApproval | None = None
        self._last_cycle: dict = {}

    # --- State ---

    @property
    def is_paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        self._paused = True
        log.info("orchestrator.paused")

    def resume(self) -> None:
        self._paused = False
        log.info("orchestrator.resumed")

    @property
    def pending_approval(self) -> PendingApproval | None:
        return self._pending_approval

    @property
    def last_cycle(self) -> dict:
        return dict(self._last_cycle)

    def _update_range(self, price: float) -> None:
        self._recent_high = price if self._recent_high is None else max(self._recent_high, price)
        self._recent_low = price if self._recent_low is None else min(self._recent_low, price)

    def _reset_range(self, price: float) -> None:
        """After a trade, percentage triggers measure from the trade price."""
        self._recent_high = price
        self._recent_low = price

    # --- Polling cycle ---

    async def run_cycle(self) -> CycleResult | None:
        self._gate.mark_poll()
        now = self._clock()
        try:
            quote = await self._prices.get_current_price()
        except Exception as e:
            log.warning("cycle.price_failed", error=str(e), error_type=type(e).__name__)
            return None
        self._update_range(quote.price)

        async with self._trade_lock:
            try:
                balances = await self._exchange.get_balances()
            except Exception as e:
                log.warning("cycle.balances_failed", error=str(e), error_type=type(e).__name__)
                return None
            reconciled = await self._reconcile(balances)
            snapshot = await self._profit.record_balance(
                balances.fiat_available, balances.asset_available, quote.price, source="poll",
            )
            profit = self._profit.current_profit()
            milestones = await self._profit.check_milestones(profit, now)

        for record in milestones:
            await self._notifier.milestone_reached(record, self._profit.profit_percent())
        alert_state = self._profit.check_profit_alert(profit)
        if alert_state:
            await self._notifier.profit_alert(alert_state, profit, self._profit.profit_percent())

        alerts = self._alerts.evaluate(quote.price, self._previous_price, now)
        for alert in alerts:
            await self._notifier.price_alert(alert)

        decision = self._engine.evaluate(
            MarketState(quote.price, self._recent_high, self._recent_low),
            balances,
            profit,
            self._history.activity(now),
            now,
        )
        log.info("cycle.decision", price=quote.price, should_buy=decision.should_buy,
                 should_sell=decision.should_sell, reasons=decision.describe())

        scheduled = None
        if self._paused:
            if decision.should_buy or decision.should_sell:
                log.info("cycle.paused_skip")
        elif decision.should_buy:
            scheduled = await self._propose(ActionType.BUY, decision, quote, balances)
        elif decision.should_sell:
            scheduled = await self._propose(ActionType.SELL, decision, quote, balances)

        self._gate.record_observation(quote.price)
        self._previous_price = quote.price
        self._last_cycle = {
            "timestamp": now.isoformat(),
            "price": quote.price,
            "recent_high": self._recent_high,
            "recent_low": self._recent_low,
            "profit": round(profit, 2),
            "should_buy": decision.should_buy,
            "should_sell": decision.should_sell,
            "reasons": decision.describe(),
        }
        log.info("cycle.complete", price=quote.price, profit=round(profit, 2),
                 fiat=round(balances.fiat_available, 2), asset=balances.asset_available)
        await self._notifier.cycle_complete(quote.price, profit)

        return CycleResult(quote, balances, snapshot, decision, scheduled, alerts, milestones, reconciled)

    async def _reconcile(self, balances: Balances) -> list[Lot]:
        tracked = self._ledger.open_asset_total()
        if tracked - balances.asset_available <= DUST:
            return []
        log.warning("cycle.external_balance_drop", ledger=tracked, exchange=balances.asset_available)
        return await self._ledger.consume_after_external_sale(balances.asset_available)

    async def _propose(
        self, action: ActionType, decision: TradingDecision, quote: PriceQuote, balances: Balances,
    ) -> ScheduledAction | None:
        if any(sa.action == action for sa in self._gate.pending()):
            log.info("cycle.action_already_pending", action=action.value)
            return None

        needs_approval = self._needs_approval(action)
        if needs_approval and self._pending_approval is not None:
            now = self._clock()
            if not self._pending_approval.is_expired(now):
                log.info("cycle.approval_already_pending", action=action.value,
                         pending=self._pending_approval.action.value)
                return None
            log.info("approval.expired", action=self._pending_approval.action.value,
                     amount=self._pending_approval.amount)
            self._pending_approval = None

        reasons = decision.for_action(action)
        if action == ActionType.BUY:
            amount = self._buy_amount()
        else:
            amount = self._sell_amount(balances.asset_available)
            if amount <= 0:
                log.info("cycle.sell_amount_too_small", available=balances.asset_available)
                return None
            try:
                self._check_sale(amount, quote.price)
            except InvariantViolation:
                return None

        if needs_approval:
            now = self._clock()
            timeout = timedelta(minutes=self._config.safety.approval_timeout_minutes)
            self._pending_approval = PendingApproval(
                action, amount, quote.price, reasons, now, now + timeout,
            )
            log.info("approval.requested", action=action.value, amount=amount,
                     expires_at=self._pending_approval.expires_at.isoformat())
            await self._notifier.approval_required(
                action, amount, quote.price, [r.describe() for r in reasons if r.is_trigger],
            )
            return None

        execute = self.execute_buy if action == ActionType.BUY else self.execute_sell

        async def callback():
            return await self._guarded(action, execute(amount, reasons))

        sa = self._gate.schedule(action, callback, quote)
        if sa.state == ActionState.DEFERRED:
            await self._notifier.trade_deferred(action, sa.gate_reason.value)
        return sa

    async def _guarded(self, action: ActionType, execution: Awaitable[T]) -> T:
        """Tell the operator about failed executions, then let the gate record the failure."""
        try:
            return await execution
        except Exception as e:
            await self._notifier.trade_failed(action, str(e))
            raise

    # --- Sizing ---

    def _buy_amount(self) -> float:
        cfg = self._config.buying
        if not cfg.randomize_amount:
            return cfg.max_buy_amount
        low = max(cfg.min_buy_amount, cfg.max_buy_amount * 0.4)
        return float(min(round(self._rng.uniform(low, cfg.max_buy_amount)), cfg.max_buy_amount))

    def _sell_amount(self, available: float) -> float:
        cfg = self._config.selling
        high = min(cfg.max_sell_amount, available)
        if not cfg.randomize_amount:
            amount = high
        else:
            amount = self._rng.uniform(min(cfg.min_sell_amount, high), high)
        return math.floor(amount * 1e6) / 1e6

    # --- Execution ---

    def _check_sale(self, asset_amount: float, unit_price: float) -> float:
        """Cost basis for a sale, or InvariantViolation if the numbers cannot be right."""
        cost = self._ledger.compute_cost_basis(asset_amount)
        sale_value = asset_amount * unit_price
        profit = sale_value - cost
        if not (math.isfinite(cost) and math.isfinite(sale_value)) or cost < 0 or profit > sale_value + 1e-9:
            log.critical("trade.invariant_violation", asset=asset_amount, price=unit_price,
                         cost_basis=cost, sale_value=sale_value, profit=profit)
            raise InvariantViolation(
                f"Sale of {asset_amount} BTC at £{unit_price:,.2f} gives profit £{profit:,.2f} "
                f"above sale value £{sale_value:,.2f}"
            )
        return cost

    async def _balances_after(self, estimate: Balances) -> Balances:
        try:
            return await self._exchange.get_balances()
        except Exception as e:
            log.warning("trade.balance_refresh_failed", error=str(e))
            return estimate

    async def execute_buy(
        self,
        fiat_amount: float,
        reasons: tuple[Reason, ...] = (),
        emergency: bool = False,
        tag: str = "auto",
    ) -> Lot:
        max_buy = self._config.buying.max_buy_amount
        if fiat_amount <= 0:
            raise ValidationError(f"Buy amount must be > 0, got {fiat_amount}")
        if fiat_amount > max_buy and not emergency:
            raise ValidationError(f"Buy £{fiat_amount:.2f} exceeds the £{max_buy:.2f} limit")

        texts = [r.describe() for r in reasons if r.is_trigger]
        async with self._trade_lock:
            before = await self._exchange.get_balances()
            fill = await self._exchange.buy(fiat_amount)
            lot = await self._ledger.record_lot(
                fiat_amount, fill.asset_received, fiat_amount / fill.asset_received, tag,
            )
            now = self._clock()
            await self._history.record(TradeRecord(
                timestamp=now, side=ActionType.BUY, fiat_amount=fiat_amount,
                asset_amount=fill.asset_received, unit_price=fill.unit_price, fees=fill.fees,
                simulated=fill.simulated, order_id=fill.order_id, reason=" ".join(texts),
            ))
            after = await self._balances_after(Balances(
                before.fiat_available - fiat_amount, before.asset_available + fill.asset_received,
            ))
            await self._profit.record_balance(
                after.fiat_available, after.asset_available, fill.unit_price, source="buy",
            )
            self._reset_range(fill.unit_price)

        log.info("trade.buy", simulated=fill.simulated, emergency=emergency, fiat=round(fiat_amount, 2),
                 asset=fill.asset_received, price=fill.unit_price, fees=round(fill.fees, 4),
                 lot_id=lot.id, fiat_before=before.fiat_available, asset_before=before.asset_available,
                 fiat_after=after.fiat_available, asset_after=after.asset_available)
        await self._notifier.trade_executed(
            ActionType.BUY, fiat_amount, fill.asset_received, fill.unit_price, fill.fees,
            fill.simulated, texts, before, after,
        )
        return lot

    async def execute_sell(self, asset_amount: float, reasons: tuple[Reason, ...] = ()) -> SaleResult:
        max_trade = self._config.safety.max_trade_amount
        if asset_amount <= 0:
            raise ValidationError(f"Sell amount must be > 0, got {asset_amount}")
        if asset_amount > max_trade:
            raise ValidationError(f"Sell {asset_amount:.8f} BTC exceeds the {max_trade} BTC limit")

        texts = [r.describe() for r in reasons if r.is_trigger]
        async with self._trade_lock:
            quote = await self._prices.get_current_price()
            self._check_sale(asset_amount, quote.price)
            before = await self._exchange.get_balances()
            fill = await self._exchange.sell(asset_amount)
            sale = await self._ledger.consume_fifo(asset_amount, fill.unit_price)
            await self._record_sale(fill, sale, texts)
            after = await self._balances_after(Balances(
                before.fiat_available + fill.fiat_received, before.asset_available - asset_amount,
            ))
            await self._profit.record_balance(
                after.fiat_available, after.asset_available, fill.unit_price, source="sell",
            )
            self._reset_range(fill.unit_price)

        self._log_sale(fill, sale, before, after)
        await self._notifier.trade_executed(
            ActionType.SELL, fill.fiat_received, asset_amount, fill.unit_price, fill.fees,
            fill.simulated, texts, before, after, profit=sale.net_profit,
        )
        return sale

    async def sell_specific_lot(self, lot_id: str) -> SaleResult:
        """Sell exactly one open lot at market (operator request)."""
        lot = self._ledger.get(lot_id)
        if not lot.is_open:
            raise NotFoundError(f"Lot {lot_id} is {lot.status.value}")

        async with self._trade_lock:
            quote = await self._prices.get_current_price()
            self._check_sale(lot.asset_amount, quote.price)
            before = await self._exchange.get_balances()
            fill = await self._exchange.sell(lot.asset_amount)
            sale = await self._ledger.sell_lot(lot_id, fill.unit_price)
            texts = [f"Manual sale of lot {lot_id}."]
            await self._record_sale(fill, sale, texts)
            after = await self._balances_after(Balances(
                before.fiat_available + fill.fiat_received, before.asset_available - sale.asset_amount,
            ))
            await self._profit.record_balance(
                after.fiat_available, after.asset_available, fill.unit_price, source="sell_lot",
            )

        self._log_sale(fill, sale, before, after)
        await self._notifier.trade_executed(
            ActionType.SELL, fill.fiat_received, sale.asset_amount, fill.unit_price, fill.fees,
            fill.simulated, texts, before, after, profit=sale.net_profit,
        )
        return sale

    async def _record_sale(self, fill, sale: SaleResult, texts: list[str]) -> None:
        await self._history.record(TradeRecord(
            timestamp=self._clock(), side=ActionType.SELL, fiat_amount=fill.fiat_received,
            asset_amount=sale.asset_amount, unit_price=fill.unit_price, fees=fill.fees,
            simulated=fill.simulated, order_id=fill.order_id, profit=sale.net_profit,
            reason=" ".join(texts),
        ))

    @staticmethod
    def _log_sale(fill, sale: SaleResult, before: Balances, after: Balances) -> None:
        log.info("trade.sell", simulated=fill.simulated, asset=sale.asset_amount,
                 fiat=round(fill.fiat_received, 2), price=fill.unit_price, fees=round(fill.fees, 4),
                 cost_basis=round(sale.cost_basis, 2), net_profit=round(sale.net_profit, 2),
                 lots=list(sale.lot_ids), fiat_before=before.fiat_available,
                 asset_before=before.asset_available, fiat_after=after.fiat_available,
                 asset_after=after.asset_available)

    # --- Manual approval ---

    def _needs_approval(self, action: ActionType) -> bool:
        safety = self._config.safety
        if not safety.require_manual_approval:
            return False
        if action == ActionType.BUY:
            return safety.require_buy_approval
        return safety.require_sell_approval

    async def approve(self, action: ActionType) -> Lot | SaleResult:
        pending = self._pending_approval
        if pending is None or pending.action != action:
            raise NotFoundError(f"No pending {action.value} awaiting approval")
        self._pending_approval = None
        if pending.is_expired(self._clock()):
            log.info("approval.expired", action=action.value, amount=pending.amount)
            raise ValidationError(
                f"The {action.value} approval expired at {pending.expires_at:%H:%M} UTC; "
                "wait for the next proposal"
            )
        log.info("approval.accepted", action=action.value, amount=pending.amount)
        if action == ActionType.BUY:
            return await self.execute_buy(pending.amount, pending.reasons, tag="manual")
        return await self.execute_sell(pending.amount, pending.reasons)

    def reject(self) -> PendingApproval:
        pending = self._pending_approval
        if pending is None:
            raise NotFoundError("Nothing is awaiting approval")
        self._pending_approval = None
        log.info("approval.rejected", action=pending.action.value, amount=pending.amount)
        return pending

    # --- Account management ---

    async def reset_account(self, seed_fiat: float, seed_asset_value: float) -> ProfitSnapshot:
        """Start a fresh simulated account: clear history, seed fiat and one initial lot."""
        if not self._exchange.simulated:
            raise ValidationError("Account reset is only available in dry-run mode")

        async with self._trade_lock:
            quote = await self._prices.get_current_price()
            await self._ledger.clear()
            await self._profit.reset_all()
            await self._history.clear()
            asset = seed_asset_value / quote.price if seed_asset_value > 0 else 0.0
            self._exchange.set_balances(seed_fiat, asset)
            if asset > 0:
                await self._ledger.record_lot(seed_asset_value, asset, quote.price, tag="initial")
            snapshot = await self._profit.record_balance(seed_fiat, asset, quote.price, source="reset")
            self._reset_range(quote.price)
            self._previous_price = None
            self._pending_approval = None

        log.warning("account.reset", fiat=seed_fiat, asset=asset, price=quote.price,
                    baseline=round(snapshot.total_value, 2))
        return snapshot

    async def check_ready_lots(self) -> None:
        """Hourly: tell the operator about lots that would clear the per-lot profit target."""
        try:
            quote = await self._prices.get_current_price()
        except Exception as e:
            log.warning("lots.price_failed", error=str(e))
            return
        views = self._ledger.ready_to_sell(quote.price, self._config.profit.lot_profit_target, self._clock())
        if views:
            await self._notifier.lots_ready(views, quote.price)

    def daily_summary_text(self) -> str:
        stats = self._profit.stats()
        activity = self._history.activity(self._clock())
        price = self._last_cycle.get("price") or (self._profit.latest.unit_price if self._profit.latest else 0.0)
        summary = self._ledger.summary(price) if price else None
        lines = [
            "Daily summary",
            f"BTC: £{price:,.2f}",
            f"Portfolio: £{stats.current_value:,.2f} (profit £{stats.current_profit:+.2f}, "
            f"{stats.profit_percent:+.2f}%)",
            f"Trades today: {activity.today_trade_count} "
            f"({activity.today_buy_count} buys, {activity.today_sell_count} sells)",
        ]
        if summary:
            lines.append(
                f"Open lots: {summary.lot_count}, {summary.total_asset:.8f} BTC, "
                f"unrealized £{summary.total_profit:+.2f}"
            )
        if stats.next_milestone is not None:
            lines.append(f"Next milestone: £{stats.next_milestone:,.0f}")
        return "\n".join(lines)

    async def send_daily_summary(self) -> None:
        await self._notifier.daily_summary(self.daily_summary_text())

    # --- Loop ---

    async def run_forever(self) -> None:
        """Poll until stop(). The next cycle is only scheduled once the current one finishes."""
        self._running = True
        self._stop_event.clear()
        while self._running:
            try:
                await self.run_cycle()
            except Exception as e:
                log.error("cycle.failed", error=str(e), error_type=type(e).__name__, exc_info=True)
                await self._notifier.system_error(f"Polling cycle failed: {e}")
            if not self._running:
                break
            interval = self._gate.next_poll_interval()
            log.debug("cycle.sleep", seconds=round(interval))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> int:
        """Stop polling and cancel every scheduled action. Returns how many were cancelled."""
        self._running = False
        self._stop_event.set()
        return self._gate.cancel_all_pending()
