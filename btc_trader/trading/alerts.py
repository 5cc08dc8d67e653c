"""Price alerts — multi-threshold drop/rise rules and large percentage moves."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

import structlog

from btc_trader.shell.config import ThresholdsConfig
from btc_trader.shell.contract import Priority

log = structlog.get_logger()


class AlertKind(Enum):
    DROP = "drop"
    RISE = "rise"
    PERCENT_DROP = "percentage_drop"
    PERCENT_RISE = "percentage_rise"


@dataclass(frozen=True)
class ThresholdRule:
    kind: AlertKind
    trigger: float           # price for DROP/RISE, percent for the percentage kinds
    priority: Priority = Priority.MEDIUM
    message: str = ""
    cooldown: timedelta = timedelta(minutes=60)

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.trigger}"

    def matches(self, price: float, change_pct: float | None) -> bool:
        if self.kind == AlertKind.DROP:
            return price <= self.trigger
        if self.kind == AlertKind.RISE:
            return price >= self.trigger
        if change_pct is None:
            return False
        if self.kind == AlertKind.PERCENT_DROP:
            return change_pct <= -self.trigger
        return change_pct >= self.trigger


@dataclass(frozen=True)
class PriceAlert:
    rule: ThresholdRule
    price: float
    change_pct: Optional[float]
    timestamp: datetime

    def text(self) -> str:
        kind = self.rule.kind
        if kind in (AlertKind.DROP, AlertKind.RISE):
            direction = "below" if kind == AlertKind.DROP else "above"
            head = f"BTC £{self.price:,.2f} is {direction} £{self.rule.trigger:,.2f}"
        else:
            head = f"BTC moved {self.change_pct:+.2f}% to £{self.price:,.2f}"
        return f"{head}\n{self.rule.message}" if self.rule.message else head


class PriceAlertMonitor:
    """Fires configured rules; a fired rule stays silent until its cooldown elapses."""

    def __init__(self, rules: list[ThresholdRule]) -> None:
        self._rules = rules
        self._last_fired: dict[str, datetime] = {}

    @classmethod
    def from_config(
        cls, thresholds: ThresholdsConfig, buy_threshold: float, sell_threshold: float,
    ) -> PriceAlertMonitor:
        if not thresholds.loaded:
            log.warning("alerts.thresholds_defaulted", buy=buy_threshold, sell=sell_threshold)
            return cls([
                ThresholdRule(AlertKind.DROP, buy_threshold, Priority.HIGH,
                              "Price reached the buy threshold."),
                ThresholdRule(AlertKind.RISE, sell_threshold, Priority.HIGH,
                              "Price reached the sell threshold."),
            ])

        rules = [
            ThresholdRule(AlertKind.DROP, r.price, r.priority, r.message,
                          timedelta(minutes=r.cooldown_minutes))
            for r in thresholds.drop
        ] + [
            ThresholdRule(AlertKind.RISE, r.price, r.priority, r.message,
                          timedelta(minutes=r.cooldown_minutes))
            for r in thresholds.rise
        ]
        pct = thresholds.percentage
        if pct.enabled:
            cooldown = timedelta(minutes=pct.cooldown_minutes)
            rules.append(ThresholdRule(AlertKind.PERCENT_DROP, pct.significant_drop, Priority.HIGH,
                                       "Significant price drop.", cooldown))
            rules.append(ThresholdRule(AlertKind.PERCENT_RISE, pct.significant_rise, Priority.HIGH,
                                       "Significant price rise.", cooldown))
        log.info("alerts.loaded", rules=len(rules))
        return cls(rules)

    @property
    def rules(self) -> list[ThresholdRule]:
        return list(self._rules)

    def evaluate(self, price: float, previous_price: float | None, now: datetime) -> list[PriceAlert]:
        change_pct = None
        if previous_price:
            change_pct = (price - previous_price) / previous_price * 100

        fired = []
        for rule in self._rules:
            if not rule.matches(price, change_pct):
                continue
            last = self._last_fired.get(rule.key)
            if last is not None and now - last < rule.cooldown:
                continue
            self._last_fired[rule.key] = now
            fired.append(PriceAlert(rule, price, change_pct, now))
            log.info("alerts.fired", kind=rule.kind.value, trigger=rule.trigger,
                     price=price, priority=rule.priority.value)
        return fired
