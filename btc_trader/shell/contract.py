"""Contract — shared types between the shell, the trading core and collaborators.

The core only talks to the outside world through the protocols defined here.
Exchange, storage and notification implementations live elsewhere in the shell.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol


# --- Errors ---

class TraderError(Exception):
    """Base class for all trading errors."""


class ValidationError(TraderError):
    """Caller asked for something the rules forbid. Nothing was mutated."""


class NotFoundError(ValidationError):
    """No open lot (or pending approval) matches the request."""


class InvariantViolation(TraderError):
    """Internal accounting produced a nonsensical result; the action is aborted."""


class ExchangeError(TraderError):
    """Exchange rejected the call or could not be reached."""


class InsufficientBalanceError(ExchangeError):
    pass


class RateLimitError(ExchangeError):
    pass


# --- Enums ---

class ActionType(Enum):
    BUY = "buy"
    SELL = "sell"


class LotStatus(Enum):
    ACTIVE = "active"
    PARTIAL = "partial"
    CONSUMED = "consumed"
    SOLD = "sold"


OPEN_STATUSES = (LotStatus.ACTIVE, LotStatus.PARTIAL)


class Priority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# --- Market / exchange data ---

@dataclass(frozen=True)
class PriceQuote:
    price: float
    bid: float
    ask: float
    timestamp: datetime


@dataclass(frozen=True)
class Balances:
    fiat_available: float
    asset_available: float

    def total_value(self, unit_price: float) -> float:
        return self.fiat_available + self.asset_available * unit_price


@dataclass(frozen=True)
class BuyFill:
    asset_received: float
    unit_price: float
    fees: float
    order_id: str
    simulated: bool


@dataclass(frozen=True)
class SellFill:
    fiat_received: float
    unit_price: float
    fees: float
    order_id: str
    simulated: bool


# --- Collaborator protocols ---

class PriceSource(Protocol):
    async def get_current_price(self) -> PriceQuote: ...


class ExchangeClient(Protocol):
    @property
    def simulated(self) -> bool: ...

    async def get_balances(self) -> Balances: ...

    async def buy(self, fiat_amount: float) -> BuyFill: ...

    async def sell(self, asset_amount: float) -> SellFill: ...

    async def close(self) -> None: ...


class Store(Protocol):
    """Ordered collection of JSON-compatible records. Insertion order is chronological."""

    async def load(self) -> list[dict[str, Any]]: ...

    async def save(self, records: list[dict[str, Any]]) -> None: ...

    async def append(self, record: dict[str, Any], keep: int | None = None) -> None:
        """Add one record at the end, then drop all but the newest `keep`."""
        ...


class Notifier(Protocol):
    async def send(self, message: str, priority: Priority = Priority.MEDIUM) -> None: ...


# --- Helpers ---

def parse_ts(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp from a stored record."""
    if not value:
        return None
    return datetime.fromisoformat(value)
