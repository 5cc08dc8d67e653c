"""Lot Ledger — per-purchase cost basis with FIFO consumption.

Every buy becomes a lot. Sells and unexplained balance drops consume lots;
consumed and sold lots are kept as history and never touched again.
"""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog

from btc_trader.shell.contract import (
    OPEN_STATUSES,
    LotStatus,
    NotFoundError,
    Store,
    ValidationError,
    parse_ts,
)
from btc_trader.shell.fees import FeeModel

log = structlog.get_logger()

DUST = 1e-8
BREAK_EVEN_BAND = 5.0   # net loss (fiat) still reported as break-even


def _new_lot_id() -> str:
    return f"pay_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass
class Lot:
    id: str
    timestamp: datetime
    fiat_amount: float
    asset_amount: float
    unit_price: float
    tag: str
    status: LotStatus = LotStatus.ACTIVE
    original_fiat_amount: float = 0.0
    original_asset_amount: float = 0.0
    sold_at: Optional[datetime] = None
    sold_price: Optional[float] = None
    sold_value: Optional[float] = None
    profit: Optional[float] = None
    net_profit: Optional[float] = None
    sale_fees: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_record(self) -> dict[str, Any]:
        rec = asdict(self)
        rec["timestamp"] = self.timestamp.isoformat()
        rec["status"] = self.status.value
        rec["sold_at"] = self.sold_at.isoformat() if self.sold_at else None
        return rec

    @classmethod
    def from_record(cls, rec: dict[str, Any]) -> Lot:
        data = dict(rec)
        data["timestamp"] = parse_ts(data["timestamp"])
        data["status"] = LotStatus(data.get("status", "active"))
        data["sold_at"] = parse_ts(data.get("sold_at"))
        return cls(**data)


@dataclass(frozen=True)
class SaleResult:
    lot_ids: tuple[str, ...]
    asset_amount: float
    unit_price: float
    cost_basis: float
    sale_value: float
    fees: float
    gross_profit: float
    net_profit: float


@dataclass(frozen=True)
class LotProfitView:
    lot_id: str
    tag: str
    status: str               # ready-to-sell | profitable | break-even | loss
    asset_amount: float
    fiat_amount: float
    unit_price: float
    current_value: float
    profit: float
    profit_percent: float
    price_change: float
    price_change_percent: float
    needed_profit: float
    price_needed: float
    sale_fees: float
    net_profit: float
    sale_needed: float
    days_held: int


@dataclass(frozen=True)
class LedgerSummary:
    lot_count: int
    total_invested: float
    total_asset: float
    current_value: float
    total_profit: float
    profit_percent: float
    average_buy_price: float
    profitable_lots: int
    loss_lots: int


class LotLedger:
    """Owns the lot collection. Mutations persist best-effort through the store."""

    def __init__(
        self,
        store: Store | None = None,
        fee_model: FeeModel | None = None,
        alert_cooldown: timedelta = timedelta(hours=1),
    ) -> None:
        self.store = store
        self.fee_model = fee_model or FeeModel()
        self.alert_cooldown = alert_cooldown
        self._lots: list[Lot] = []
        self._last_alert: dict[str, datetime] = {}

    async def load(self) -> None:
        if self.store is None:
            return
        try:
            records = await self.store.load()
        except Exception as e:
            log.error("ledger.load_failed", error=str(e))
            return
        self._lots = [Lot.from_record(r) for r in records]
        log.info("ledger.loaded", lots=len(self._lots), open=len(self.open_lots()))

    async def _persist(self) -> None:
        if self.store is None:
            return
        try:
            await self.store.save([lot.to_record() for lot in self._lots])
        except Exception as e:
            log.error("ledger.save_failed", error=str(e), lots=len(self._lots))

    # --- Queries ---

    @property
    def lots(self) -> list[Lot]:
        return list(self._lots)

    def open_lots(self) -> list[Lot]:
        """Open lots oldest-first. Ties keep insertion order."""
        return sorted((lot for lot in self._lots if lot.is_open), key=lambda lot: lot.timestamp)

    def get(self, lot_id: str) -> Lot:
        for lot in self._lots:
            if lot.id == lot_id:
                return lot
        raise NotFoundError(f"Lot {lot_id} not found")

    def open_asset_total(self) -> float:
        return sum(lot.asset_amount for lot in self.open_lots())

    def open_cost_basis(self) -> float:
        return sum(lot.fiat_amount for lot in self.open_lots())

    def compute_cost_basis(self, asset_amount: float) -> float:
        """FIFO cost of selling asset_amount from the oldest open lots. Read-only."""
        if asset_amount <= 0:
            return 0.0
        remaining = asset_amount
        cost = 0.0
        for lot in self.open_lots():
            take = min(remaining, lot.asset_amount)
            cost += take * (lot.fiat_amount / lot.asset_amount)
            remaining -= take
            if remaining <= DUST:
                break
        if remaining > DUST:
            log.warning("ledger.cost_basis_uncovered", requested=asset_amount, uncovered=remaining)
        return cost

    # --- Mutations ---

    async def record_lot(
        self,
        fiat_amount: float,
        asset_amount: float,
        unit_price: float,
        tag: str = "manual",
        timestamp: datetime | None = None,
    ) -> Lot:
        if not (fiat_amount > 0 and asset_amount > 0):
            raise ValidationError(
                f"Lot needs positive amounts, got fiat={fiat_amount} asset={asset_amount}"
            )
        lot = Lot(
            id=_new_lot_id(),
            timestamp=timestamp or datetime.now(timezone.utc),
            fiat_amount=fiat_amount,
            asset_amount=asset_amount,
            unit_price=unit_price,
            tag=tag,
            original_fiat_amount=fiat_amount,
            original_asset_amount=asset_amount,
        )
        self._lots.append(lot)
        log.info("ledger.lot_recorded", lot_id=lot.id, fiat=round(fiat_amount, 2),
                 asset=asset_amount, price=round(unit_price, 2), tag=tag)
        await self._persist()
        return lot

    async def consume_after_external_sale(self, remaining_asset_balance: float) -> list[Lot]:
        """Reconcile open lots against the asset balance actually held.

        Oldest lots are kept whole while they fit in the balance, the first lot
        that overflows is truncated to the leftover (partial), everything newer
        is consumed. Repeating the call with the same balance changes nothing.
        Returns the lots whose state changed.
        """
        if not math.isfinite(remaining_asset_balance):
            log.warning("ledger.reconcile_invalid_balance", balance=remaining_asset_balance)
            return []

        open_lots = self.open_lots()
        if not open_lots:
            log.info("ledger.reconcile_empty", balance=remaining_asset_balance)
            return []

        changed: list[Lot] = []
        if remaining_asset_balance <= 0:
            for lot in open_lots:
                lot.status = LotStatus.CONSUMED
                changed.append(lot)
        else:
            total = sum(lot.asset_amount for lot in open_lots)
            if remaining_asset_balance >= total - DUST:
                log.debug("ledger.reconcile_noop", balance=remaining_asset_balance, ledger=total)
                return []

            running = 0.0
            boundary_passed = False
            for lot in open_lots:
                if boundary_passed:
                    lot.status = LotStatus.CONSUMED
                    changed.append(lot)
                elif running + lot.asset_amount <= remaining_asset_balance + DUST:
                    running += lot.asset_amount
                else:
                    boundary_passed = True
                    leftover = remaining_asset_balance - running
                    if leftover > DUST:
                        self._truncate(lot, leftover)
                    else:
                        lot.status = LotStatus.CONSUMED
                    changed.append(lot)

        log.info("ledger.reconciled", balance=remaining_asset_balance, changed=len(changed),
                 remaining_open=len(self.open_lots()))
        await self._persist()
        return changed

    async def consume_fifo(self, asset_amount: float, unit_price: float) -> SaleResult:
        """Apply a tracked aggregate sell to the oldest open lots first."""
        if asset_amount <= 0:
            raise ValidationError(f"Sell amount must be > 0, got {asset_amount}")

        cost_basis = self.compute_cost_basis(asset_amount)
        now = datetime.now(timezone.utc)
        remaining = asset_amount
        touched: list[str] = []
        for lot in self.open_lots():
            if remaining <= DUST:
                break
            take = min(remaining, lot.asset_amount)
            if take >= lot.asset_amount - DUST:
                value = lot.asset_amount * unit_price
                share = lot.asset_amount / asset_amount
                self._mark_sold(lot, unit_price, now, value * self.fee_model.rate
                                + self.fee_model.withdrawal_fee * share)
            else:
                self._truncate(lot, lot.asset_amount - take)
            remaining -= take
            touched.append(lot.id)

        sale_value = asset_amount * unit_price
        fees = self.fee_model.sell_fees(sale_value)
        result = SaleResult(
            lot_ids=tuple(touched),
            asset_amount=asset_amount,
            unit_price=unit_price,
            cost_basis=cost_basis,
            sale_value=sale_value,
            fees=fees,
            gross_profit=sale_value - cost_basis,
            net_profit=sale_value - cost_basis - fees,
        )
        log.info("ledger.fifo_consumed", asset=asset_amount, lots=len(touched),
                 cost_basis=round(cost_basis, 2), net_profit=round(result.net_profit, 2))
        await self._persist()
        return result

    async def sell_lot(self, lot_id: str, unit_price: float) -> SaleResult:
        lot = next((x for x in self._lots if x.id == lot_id and x.is_open), None)
        if lot is None:
            raise NotFoundError(f"No open lot with id {lot_id}")

        sale_value = lot.asset_amount * unit_price
        fees = self.fee_model.sell_fees(sale_value)
        self._mark_sold(lot, unit_price, datetime.now(timezone.utc), fees)
        result = SaleResult(
            lot_ids=(lot.id,),
            asset_amount=lot.asset_amount,
            unit_price=unit_price,
            cost_basis=lot.fiat_amount,
            sale_value=sale_value,
            fees=fees,
            gross_profit=lot.profit,
            net_profit=lot.net_profit,
        )
        log.info("ledger.lot_sold", lot_id=lot.id, price=round(unit_price, 2),
                 profit=round(result.gross_profit, 2), net_profit=round(result.net_profit, 2))
        await self._persist()
        return result

    async def clear(self) -> None:
        count = len(self._lots)
        self._lots = []
        self._last_alert.clear()
        log.warning("ledger.cleared", lots=count)
        await self._persist()

    def _truncate(self, lot: Lot, new_amount: float) -> None:
        lot.fiat_amount = lot.fiat_amount * (new_amount / lot.asset_amount)
        lot.asset_amount = new_amount
        lot.status = LotStatus.PARTIAL

    @staticmethod
    def _mark_sold(lot: Lot, unit_price: float, when: datetime, fees: float) -> None:
        value = lot.asset_amount * unit_price
        lot.status = LotStatus.SOLD
        lot.sold_at = when
        lot.sold_price = unit_price
        lot.sold_value = value
        lot.profit = value - lot.fiat_amount
        lot.sale_fees = fees
        lot.net_profit = lot.profit - fees

    # --- Profit views ---

    def profit_snapshot(
        self,
        unit_price: float,
        fee_model: FeeModel | None = None,
        profit_target: float = 10.0,
        now: datetime | None = None,
    ) -> list[LotProfitView]:
        fee_model = fee_model or self.fee_model
        now = now or datetime.now(timezone.utc)
        views = []
        for lot in self.open_lots():
            value = lot.asset_amount * unit_price
            profit = value - lot.fiat_amount
            fees = fee_model.sell_fees(value)
            net = profit - fees
            if net >= profit_target:
                status = "ready-to-sell"
            elif net > 0:
                status = "profitable"
            elif net > -BREAK_EVEN_BAND:
                status = "break-even"
            else:
                status = "loss"
            views.append(LotProfitView(
                lot_id=lot.id,
                tag=lot.tag,
                status=status,
                asset_amount=lot.asset_amount,
                fiat_amount=lot.fiat_amount,
                unit_price=lot.unit_price,
                current_value=value,
                profit=profit,
                profit_percent=(profit / lot.fiat_amount * 100) if lot.fiat_amount else 0.0,
                price_change=unit_price - lot.unit_price,
                price_change_percent=((unit_price - lot.unit_price) / lot.unit_price * 100)
                if lot.unit_price else 0.0,
                needed_profit=max(0.0, profit_target - profit),
                price_needed=(lot.fiat_amount + profit_target) / lot.asset_amount,
                sale_fees=fees,
                net_profit=net,
                sale_needed=lot.fiat_amount + profit_target + fees,
                days_held=math.ceil(abs((now - lot.timestamp).total_seconds()) / 86400),
            ))
        return views

    def summary(self, unit_price: float) -> LedgerSummary:
        open_lots = self.open_lots()
        invested = sum(lot.fiat_amount for lot in open_lots)
        asset = sum(lot.asset_amount for lot in open_lots)
        value = asset * unit_price
        profitable = sum(1 for lot in open_lots if lot.asset_amount * unit_price > lot.fiat_amount)
        return LedgerSummary(
            lot_count=len(open_lots),
            total_invested=invested,
            total_asset=asset,
            current_value=value,
            total_profit=value - invested,
            profit_percent=((value - invested) / invested * 100) if invested else 0.0,
            average_buy_price=(invested / asset) if asset else 0.0,
            profitable_lots=profitable,
            loss_lots=len(open_lots) - profitable,
        )

    def ready_to_sell(
        self, unit_price: float, profit_target: float, now: datetime | None = None,
    ) -> list[LotProfitView]:
        """Lots whose net profit meets the target, at most one alert per lot per cooldown."""
        now = now or datetime.now(timezone.utc)
        ready = []
        for view in self.profit_snapshot(unit_price, profit_target=profit_target, now=now):
            if view.status != "ready-to-sell":
                continue
            last = self._last_alert.get(view.lot_id)
            if last is not None and now - last < self.alert_cooldown:
                continue
            self._last_alert[view.lot_id] = now
            ready.append(view)
        return ready
