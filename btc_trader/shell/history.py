"""Trade history — journal of executed trades and the daily counters derived from it."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

import structlog

from btc_trader.shell.contract import ActionType, Store, parse_ts
from btc_trader.trading.decision import TradingActivity

log = structlog.get_logger()


@dataclass(frozen=True)
class TradeRecord:
    timestamp: datetime
    side: ActionType
    fiat_amount: float
    asset_amount: float
    unit_price: float
    fees: float
    simulated: bool
    order_id: str = ""
    profit: Optional[float] = None      # realized net profit, sells only
    reason: str = ""

    def to_record(self) -> dict[str, Any]:
        rec = asdict(self)
        rec["timestamp"] = self.timestamp.isoformat()
        rec["side"] = self.side.value
        return rec

    @classmethod
    def from_record(cls, rec: dict[str, Any]) -> TradeRecord:
        return cls(**{**rec, "timestamp": parse_ts(rec["timestamp"]), "side": ActionType(rec["side"])})


class TradeHistory:
    """Counters reset at local midnight because they are computed from the journal."""

    def __init__(self, store: Store | None = None, tz_name: str = "Europe/London") -> None:
        self._store = store
        self._tz = ZoneInfo(tz_name)
        self._trades: list[TradeRecord] = []

    async def load(self) -> None:
        if self._store is None:
            return
        try:
            self._trades = [TradeRecord.from_record(r) for r in await self._store.load()]
        except Exception as e:
            log.error("history.load_failed", error=str(e))
            return
        log.info("history.loaded", trades=len(self._trades))

    async def _persist(self) -> None:
        if self._store is None:
            return
        try:
            await self._store.save([t.to_record() for t in self._trades])
        except Exception as e:
            log.error("history.save_failed", error=str(e))

    async def record(self, trade: TradeRecord) -> None:
        self._trades.append(trade)
        await self._persist()

    async def clear(self) -> None:
        self._trades = []
        await self._persist()

    @property
    def trades(self) -> list[TradeRecord]:
        return list(self._trades)

    def recent(self, limit: int = 10) -> list[TradeRecord]:
        return self._trades[-limit:]

    def _today(self, now: datetime) -> list[TradeRecord]:
        day = now.astimezone(self._tz).date()
        return [t for t in self._trades if t.timestamp.astimezone(self._tz).date() == day]

    def activity(self, now: datetime | None = None) -> TradingActivity:
        now = now or datetime.now(timezone.utc)
        today = self._today(now)
        buys = [t for t in today if t.side == ActionType.BUY]
        sells = [t for t in today if t.side == ActionType.SELL]
        last_buy = next((t for t in reversed(self._trades) if t.side == ActionType.BUY), None)
        last_sell = next((t for t in reversed(self._trades) if t.side == ActionType.SELL), None)
        return TradingActivity(
            today_buy_fiat=sum(t.fiat_amount for t in buys),
            today_buy_count=len(buys),
            today_sell_count=len(sells),
            today_trade_count=len(today),
            last_buy_at=last_buy.timestamp if last_buy else None,
            last_trade_at=self._trades[-1].timestamp if self._trades else None,
            last_sell_price=last_sell.unit_price if last_sell else None,
        )

    def stats(self) -> dict:
        sells = [t for t in self._trades if t.side == ActionType.SELL and t.profit is not None]
        wins = sum(1 for t in sells if t.profit > 0)
        return {
            "trades": len(self._trades),
            "buys": sum(1 for t in self._trades if t.side == ActionType.BUY),
            "sells": sum(1 for t in self._trades if t.side == ActionType.SELL),
            "total_fees": sum(t.fees for t in self._trades),
            "realized_profit": sum(t.profit for t in sells),
            "win_rate": (wins / len(sells) * 100) if sells else 0.0,
        }
