"""Profit Account — baseline, balance snapshots and milestone alerts.

Profit is always total portfolio value (fiat + BTC at market) minus the
baseline. The baseline is the first snapshot's value unless set explicitly.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from btc_trader.shell.config import ProfitConfig
from btc_trader.shell.contract import Store, parse_ts

log = structlog.get_logger()

MAX_SNAPSHOTS = 5000  # baseline lives in the state store, so old snapshots can roll off


@dataclass(frozen=True)
class ProfitSnapshot:
    timestamp: datetime
    source: str
    fiat_balance: float
    asset_balance: float
    unit_price: float
    total_value: float
    profit: float

    def to_record(self) -> dict[str, Any]:
        rec = asdict(self)
        rec["timestamp"] = self.timestamp.isoformat()
        return rec

    @classmethod
    def from_record(cls, rec: dict[str, Any]) -> ProfitSnapshot:
        return cls(**{**rec, "timestamp": parse_ts(rec["timestamp"])})


@dataclass(frozen=True)
class MilestoneRecord:
    value: float
    mode: str
    profit: float
    timestamp: datetime

    def to_record(self) -> dict[str, Any]:
        rec = asdict(self)
        rec["timestamp"] = self.timestamp.isoformat()
        return rec

    @classmethod
    def from_record(cls, rec: dict[str, Any]) -> MilestoneRecord:
        return cls(**{**rec, "timestamp": parse_ts(rec["timestamp"])})


@dataclass(frozen=True)
class ProfitStats:
    baseline: Optional[float]
    current_value: float
    current_profit: float
    profit_percent: float
    snapshots: int
    milestones_reached: list[float]
    next_milestone: Optional[float]
    milestone_mode: str
    threshold_progress: float   # percent of the profit alert threshold reached


class ProfitAccount:
    """Owns snapshot history, the baseline and milestone records."""

    def __init__(
        self,
        config: ProfitConfig,
        snapshot_store: Store | None = None,
        milestone_store: Store | None = None,
        state_store: Store | None = None,
    ) -> None:
        self._config = config
        self._snapshot_store = snapshot_store
        self._milestone_store = milestone_store
        self._state_store = state_store
        self._baseline: float | None = None
        self._snapshots: list[ProfitSnapshot] = []
        self._milestones: list[MilestoneRecord] = []
        self._static_armed = True
        self._alert_state = "none"   # none | profit | loss

    async def load(self) -> None:
        try:
            if self._snapshot_store:
                self._snapshots = [ProfitSnapshot.from_record(r) for r in await self._snapshot_store.load()]
            if self._milestone_store:
                self._milestones = [MilestoneRecord.from_record(r) for r in await self._milestone_store.load()]
            if self._state_store:
                state = await self._state_store.load()
                if state:
                    self._baseline = state[0].get("baseline")
                    self._static_armed = state[0].get("static_armed", True)
        except Exception as e:
            log.error("profit.load_failed", error=str(e))
            return

        if self._baseline is None and self._snapshots:
            self._baseline = self._snapshots[0].total_value
        log.info("profit.loaded", baseline=self._baseline, snapshots=len(self._snapshots),
                 milestones=len(self._milestones))

    async def _save(self, store: Store | None, records: list[dict]) -> None:
        if store is None:
            return
        try:
            await store.save(records)
        except Exception as e:
            log.error("profit.save_failed", store=getattr(store, "name", "?"), error=str(e))

    async def _append_snapshot(self, snapshot: ProfitSnapshot) -> None:
        # Snapshots are never mutated, so only the new one is written
        if self._snapshot_store is None:
            return
        try:
            await self._snapshot_store.append(snapshot.to_record(), keep=MAX_SNAPSHOTS)
        except Exception as e:
            log.error("profit.save_failed", store=getattr(self._snapshot_store, "name", "?"), error=str(e))

    async def _save_state(self) -> None:
        await self._save(self._state_store, [
            {"baseline": self._baseline, "static_armed": self._static_armed}
        ])

    # --- Queries ---

    @property
    def baseline(self) -> float | None:
        return self._baseline

    @property
    def snapshots(self) -> list[ProfitSnapshot]:
        return list(self._snapshots)

    @property
    def milestones(self) -> list[MilestoneRecord]:
        return list(self._milestones)

    @property
    def latest(self) -> ProfitSnapshot | None:
        return self._snapshots[-1] if self._snapshots else None

    def current_value(self) -> float:
        if self._snapshots:
            return self._snapshots[-1].total_value
        return self._baseline or 0.0

    def current_profit(self) -> float:
        if self._baseline is None or not self._snapshots:
            return 0.0
        return self._snapshots[-1].total_value - self._baseline

    def profit_percent(self) -> float:
        if not self._baseline:
            return 0.0
        return self.current_profit() / self._baseline * 100

    def _reached(self) -> set[float]:
        mode = self._config.milestone_mode
        return {m.value for m in self._milestones if m.mode == mode}

    def next_milestone(self) -> float | None:
        profit = self.current_profit()
        mode = self._config.milestone_mode
        if mode == "fixed":
            step = self._config.fixed_increment
            return (math.floor(profit / step) + 1) * step
        if mode == "static":
            return self._config.static_amount
        reached = self._reached()
        for value in sorted(self._config.milestones):
            if value > profit and value not in reached:
                return value
        return None

    def stats(self) -> ProfitStats:
        profit = self.current_profit()
        threshold = self._config.alert_threshold
        return ProfitStats(
            baseline=self._baseline,
            current_value=self.current_value(),
            current_profit=profit,
            profit_percent=self.profit_percent(),
            snapshots=len(self._snapshots),
            milestones_reached=sorted(self._reached()),
            next_milestone=self.next_milestone(),
            milestone_mode=self._config.milestone_mode,
            threshold_progress=(profit / threshold * 100) if threshold else 0.0,
        )

    # --- Mutations ---

    async def record_balance(
        self,
        fiat_balance: float,
        asset_balance: float,
        unit_price: float,
        source: str = "poll",
        timestamp: datetime | None = None,
    ) -> ProfitSnapshot:
        total = fiat_balance + asset_balance * unit_price
        new_baseline = self._baseline is None
        if new_baseline:
            self._baseline = total
        snapshot = ProfitSnapshot(
            timestamp=timestamp or datetime.now(timezone.utc),
            source=source,
            fiat_balance=fiat_balance,
            asset_balance=asset_balance,
            unit_price=unit_price,
            total_value=total,
            profit=0.0 if new_baseline else total - self._baseline,
        )
        self._snapshots.append(snapshot)
        if len(self._snapshots) > MAX_SNAPSHOTS:
            self._snapshots = self._snapshots[-MAX_SNAPSHOTS:]

        if new_baseline:
            log.info("profit.baseline_set", baseline=round(total, 2), source=source)
            await self._save_state()
        await self._append_snapshot(snapshot)
        return snapshot

    async def check_milestones(
        self, current_profit: float, now: datetime | None = None,
    ) -> list[MilestoneRecord]:
        """Return the milestones newly reached at this profit level (and record them)."""
        now = now or datetime.now(timezone.utc)
        mode = self._config.milestone_mode
        fired: list[float] = []
        state_changed = False

        if mode == "progressive":
            reached = self._reached()
            fired = [m for m in sorted(self._config.milestones)
                     if current_profit >= m and m not in reached]
        elif mode == "fixed":
            step = self._config.fixed_increment
            bracket = math.floor(current_profit / step) * step
            if bracket > 0 and bracket not in self._reached():
                fired = [bracket]
        elif mode == "static":
            target = self._config.static_amount
            if current_profit >= target:
                if self._static_armed:
                    fired = [target]
                    self._static_armed = False
                    state_changed = True
            elif not self._static_armed:
                self._static_armed = True
                state_changed = True

        records = [MilestoneRecord(value=v, mode=mode, profit=current_profit, timestamp=now)
                   for v in fired]
        if records:
            self._milestones.extend(records)
            for r in records:
                log.info("profit.milestone", value=r.value, mode=mode, profit=round(current_profit, 2))
            await self._save(self._milestone_store, [m.to_record() for m in self._milestones])
        if state_changed:
            await self._save_state()
        return records

    def check_profit_alert(self, current_profit: float) -> str | None:
        """'profit' or 'loss' when profit first moves past ±alert_threshold, else None."""
        threshold = self._config.alert_threshold
        if current_profit >= threshold:
            state = "profit"
        elif current_profit <= -threshold:
            state = "loss"
        else:
            state = "none"
        changed = state != self._alert_state
        self._alert_state = state
        if changed and state != "none":
            log.info("profit.threshold_alert", state=state, profit=round(current_profit, 2))
            return state
        return None

    async def set_baseline(self, amount: float) -> None:
        """Override the baseline. Existing snapshots keep the profit they were recorded with."""
        old = self._baseline
        self._baseline = amount
        log.warning("profit.baseline_override", old=old, new=amount)
        await self._save_state()

    async def reset_all(self) -> None:
        self._baseline = None
        self._snapshots = []
        self._milestones = []
        self._static_armed = True
        self._alert_state = "none"
        log.warning("profit.reset")
        await self._save(self._snapshot_store, [])
        await self._save(self._milestone_store, [])
        await self._save_state()
