"""Timing Gate — trading windows and human-like scheduling of trade actions.

Checks run in a fixed order: emergency override, weekend, trading hours.
Allowed actions are delayed by a random amount (plus an occasional
hesitation) and re-checked when the delay expires; a closed window at that
point reschedules the action after a fixed backoff.
"""

from __future__ import annotations

import asyncio
import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

import structlog

from btc_trader.shell.config import PollingConfig, TimingConfig
from btc_trader.shell.contract import ActionType, PriceQuote

log = structlog.get_logger()

MAX_HESITATION_HISTORY = 100


class GateReason(Enum):
    EMERGENCY = "emergency_override"
    WEEKEND = "weekend"
    OUTSIDE_HOURS = "outside_trading_hours"
    OPEN = "trading_window_open"
    DISABLED = "timing_disabled"


class ActionState(Enum):
    PROPOSED = "proposed"
    DEFERRED = "deferred"
    SCHEDULED = "scheduled"
    RESCHEDULED = "rescheduled"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class GateResult:
    allowed: bool
    reason: GateReason


@dataclass
class ScheduledAction:
    id: str
    action: ActionType
    created_at: datetime
    state: ActionState = ActionState.PROPOSED
    gate_reason: Optional[GateReason] = None
    delay_seconds: float = 0.0
    hesitation_seconds: float = 0.0
    reschedules: int = 0
    result: Any = None
    error: str = ""
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def total_delay(self) -> float:
        return self.delay_seconds + self.hesitation_seconds

    async def wait(self) -> ActionState:
        """Wait for the action to finish (or be cancelled) and return its final state."""
        if self.task is not None:
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        return self.state


class TimingGate:
    """Owns the trading-window rules, pending action timers and polling cadence."""

    def __init__(
        self,
        config: TimingConfig,
        polling: PollingConfig,
        tz_name: str = "Europe/London",
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._polling = polling
        self._tz = ZoneInfo(tz_name)
        self._rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
        self._monotonic: Callable[[], float] = time.monotonic
        self._last_price: float | None = None
        self._last_poll: float | None = None
        self._pending: dict[str, ScheduledAction] = {}
        self._hesitations: list[dict] = []

    # --- Gate checks ---

    def record_observation(self, price: float) -> None:
        """Remember the price the next emergency check compares against."""
        self._last_price = price

    @property
    def last_observation(self) -> float | None:
        return self._last_price

    def check_emergency(self, quote: PriceQuote, action: ActionType) -> bool:
        em = self._config.emergency
        if not em.enabled or not self._last_price:
            return False
        change = (quote.price - self._last_price) / self._last_price
        if change < em.price_jump_threshold:
            return False
        if em.allow_sell_only and action != ActionType.SELL:
            log.info("gate.emergency_buy_blocked", change=round(change, 4))
            return False
        log.warning("gate.emergency_override", action=action.value, change=round(change, 4),
                    last=self._last_price, price=quote.price)
        return True

    def _window_check(self, when: datetime) -> GateResult:
        local = when.astimezone(self._tz)
        if self._config.avoid_weekends and local.weekday() >= 5:
            return GateResult(False, GateReason.WEEKEND)
        if self._config.trading_hours_enabled:
            if not (self._config.start_hour <= local.hour < self._config.end_hour):
                return GateResult(False, GateReason.OUTSIDE_HOURS)
        return GateResult(True, GateReason.OPEN)

    def is_trading_allowed(
        self, quote: PriceQuote, action: ActionType, now: datetime | None = None,
    ) -> GateResult:
        if self.check_emergency(quote, action):
            return GateResult(True, GateReason.EMERGENCY)
        return self._window_check(now or self._clock())

    def is_trading_allowed_at(self, when: datetime) -> bool:
        """Window rules only (no emergency override) for an arbitrary instant."""
        return self._window_check(when).allowed

    def time_until_next_window(self, now: datetime | None = None) -> timedelta:
        now = now or self._clock()
        if self.is_trading_allowed_at(now):
            return timedelta(0)
        candidate = now.replace(minute=0, second=0, microsecond=0)
        for _ in range(24 * 8):
            candidate += timedelta(hours=1)
            if self.is_trading_allowed_at(candidate):
                return candidate - now
        # Rules never open (e.g. start_hour == end_hour)
        return timedelta(days=7)

    # --- Randomized delays ---

    def draw_delay(self, action: ActionType | None = None) -> tuple[float, float]:
        """Return (base delay, hesitation) in seconds."""
        delay = self._rng.uniform(self._config.min_delay_seconds, self._config.max_delay_seconds)
        hesitation = 0.0
        hes = self._config.hesitation
        if hes.enabled and self._rng.random() < hes.chance:
            hesitation = self._rng.uniform(hes.min_seconds, hes.max_seconds)
            self._hesitations.append({
                "timestamp": self._clock().isoformat(),
                "action": action.value if action else None,
                "seconds": round(hesitation, 1),
            })
            del self._hesitations[:-MAX_HESITATION_HISTORY]
            log.info("gate.hesitation", action=action.value if action else None,
                     seconds=round(hesitation))
        return delay, hesitation

    def mark_poll(self) -> None:
        """Record the start of a polling cycle."""
        self._last_poll = self._monotonic()

    def next_poll_interval(self) -> float:
        """Seconds until the next polling cycle, never closer than min_gap to the last one."""
        p = self._polling
        if p.random_enabled:
            interval = self._rng.uniform(p.min_interval_seconds, p.max_interval_seconds)
        else:
            interval = p.interval_seconds * self._rng.uniform(0.8, 1.2)
        if self._last_poll is not None:
            elapsed = self._monotonic() - self._last_poll
            interval = max(interval, p.min_gap_seconds - elapsed)
        return max(interval, 0.0)

    # --- Scheduling ---

    def schedule(
        self,
        action: ActionType,
        callback: Callable[[], Awaitable[Any]],
        quote: PriceQuote,
        now: datetime | None = None,
    ) -> ScheduledAction:
        now = now or self._clock()
        sa = ScheduledAction(
            id=f"{action.value}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}",
            action=action,
            created_at=now,
        )
        if self._config.enabled:
            check = self.is_trading_allowed(quote, action, now)
        else:
            # No windows, no delay, no re-check
            check = GateResult(True, GateReason.DISABLED)
        sa.gate_reason = check.reason
        if not check.allowed:
            sa.state = ActionState.DEFERRED
            wait = self.time_until_next_window(now)
            log.info("gate.deferred", action=action.value, reason=check.reason.value,
                     next_window_minutes=round(wait.total_seconds() / 60))
            return sa

        emergency = check.reason == GateReason.EMERGENCY
        immediate = emergency or check.reason == GateReason.DISABLED
        if not immediate:
            sa.delay_seconds, sa.hesitation_seconds = self.draw_delay(action)

        sa.state = ActionState.SCHEDULED
        self._pending[sa.id] = sa
        sa.task = asyncio.create_task(self._run(sa, callback, quote, skip_recheck=immediate))
        log.info("gate.scheduled", action_id=sa.id, action=action.value,
                 delay_minutes=round(sa.total_delay / 60, 1), emergency=emergency)
        return sa

    async def _run(
        self,
        sa: ScheduledAction,
        callback: Callable[[], Awaitable[Any]],
        quote: PriceQuote,
        skip_recheck: bool = False,
    ) -> None:
        try:
            delay = sa.total_delay
            while True:
                if delay > 0:
                    await self._sleep(delay)
                if skip_recheck:
                    break
                check = self.is_trading_allowed(quote, sa.action)
                if check.allowed:
                    break
                sa.state = ActionState.RESCHEDULED
                sa.reschedules += 1
                delay = self._config.reschedule_backoff_seconds
                log.info("gate.rescheduled", action_id=sa.id, reason=check.reason.value,
                         retry_minutes=round(delay / 60), attempt=sa.reschedules)

            sa.state = ActionState.EXECUTING
            try:
                sa.result = await callback()
                sa.state = ActionState.COMPLETED
                log.info("gate.completed", action_id=sa.id, action=sa.action.value)
            except Exception as e:
                sa.state = ActionState.FAILED
                sa.error = str(e)
                log.error("gate.action_failed", action_id=sa.id, action=sa.action.value,
                          error=str(e), error_type=type(e).__name__)
        except asyncio.CancelledError:
            sa.state = ActionState.CANCELLED
            log.info("gate.cancelled", action_id=sa.id, action=sa.action.value)
            raise
        finally:
            self._pending.pop(sa.id, None)

    def pending(self) -> list[ScheduledAction]:
        return list(self._pending.values())

    def cancel_all_pending(self) -> int:
        """Cancel every action still waiting on a timer. Actions already executing finish."""
        cancelled = 0
        for sa in list(self._pending.values()):
            if sa.state == ActionState.EXECUTING:
                log.warning("gate.cancel_skipped_executing", action_id=sa.id)
                continue
            if sa.task is not None and not sa.task.done():
                sa.task.cancel()
                cancelled += 1
            # A task cancelled before its first step never reaches its own cleanup
            sa.state = ActionState.CANCELLED
            self._pending.pop(sa.id, None)
        log.info("gate.cancelled_all", count=cancelled)
        return cancelled

    @property
    def hesitation_history(self) -> list[dict]:
        return list(self._hesitations)

    def status(self) -> dict:
        now = self._clock()
        return {
            "timing_enabled": self._config.enabled,
            "window_open": self.is_trading_allowed_at(now),
            "minutes_until_window": round(self.time_until_next_window(now).total_seconds() / 60),
            "local_time": now.astimezone(self._tz).strftime("%a %H:%M %Z"),
            "pending_actions": [
                {"id": sa.id, "action": sa.action.value, "state": sa.state.value,
                 "delay_minutes": round(sa.total_delay / 60, 1)}
                for sa in self._pending.values()
            ],
            "hesitations": len(self._hesitations),
            "last_observation": self._last_price,
        }
