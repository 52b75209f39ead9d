"""Data models for the ledger.

Plain dataclasses with explicit dict round-tripping. Money fields are
Decimal in memory and decimal strings on disk so nothing is lost to float
rounding.
"""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass, field, fields
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any


MIN_SCAN_INTERVAL_MIN = 1


class TradeAction(Enum):
    BUY = "buy"
    SELL = "sell"


class TradeStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TradeStatus.OPEN

    @property
    def is_realized(self) -> bool:
        """Terminal states that carry a P&L."""
        return self in (TradeStatus.CLOSED, TradeStatus.STOPPED)


def to_decimal(value: Any) -> Decimal:
    """Parse a price/amount. Floats go through str() to avoid binary noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, str):
        value = value.strip().lstrip("$").replace(",", "")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Not a decimal amount: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"Not a finite amount: {value!r}")
    return result


@dataclass
class Trade:
    symbol: str
    action: TradeAction
    amount: Decimal
    price: Decimal
    reason: str
    status: TradeStatus = TradeStatus.OPEN
    pnl: float | None = None
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    exit_price: Decimal | None = None
    closed_at: float | None = None
    error: str | None = None
    source: str = "auto"

    def __post_init__(self) -> None:
        self.symbol = self.symbol.strip().upper()
        self.action = TradeAction(self.action)
        self.status = TradeStatus(self.status)
        self.amount = to_decimal(self.amount)
        self.price = to_decimal(self.price)
        if self.exit_price is not None:
            self.exit_price = to_decimal(self.exit_price)

    @property
    def is_open(self) -> bool:
        return self.status is TradeStatus.OPEN

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "action": self.action.value,
            "amount": str(self.amount),
            "price": str(self.price),
            "reason": self.reason,
            "status": self.status.value,
            "pnl": self.pnl,
            "timestamp": self.timestamp,
            "exit_price": str(self.exit_price) if self.exit_price is not None else None,
            "closed_at": self.closed_at,
            "error": self.error,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Trade:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Settings:
    """Mutable trading settings. One instance per ledger."""
    max_market_cap: float = 40000.0
    max_buy_amount: Decimal = Decimal("5")
    take_profit_pct: float = 100.0
    stop_loss_pct: float = 30.0
    scan_interval_min: int = 30
    max_open_positions: int = 3
    auto_trade_enabled: bool = False

    def __post_init__(self) -> None:
        self.max_buy_amount = to_decimal(self.max_buy_amount)

    def to_dict(self) -> dict:
        return {
            "max_market_cap": self.max_market_cap,
            "max_buy_amount": str(self.max_buy_amount),
            "take_profit_pct": self.take_profit_pct,
            "stop_loss_pct": self.stop_loss_pct,
            "scan_interval_min": self.scan_interval_min,
            "max_open_positions": self.max_open_positions,
            "auto_trade_enabled": self.auto_trade_enabled,
        }

    @classmethod
    def from_dict(cls, data: dict, defaults: Settings | None = None) -> Settings:
        base = (defaults or cls()).to_dict()
        base.update({k: v for k, v in data.items() if k in base})
        return cls(**base)

    def apply(self, updates: dict[str, Any]) -> dict[str, Any]:
        """Validate and apply a partial update. Returns the coerced values applied.

        Nothing is applied unless every key validates.
        """
        coerced: dict[str, Any] = {}
        for key, value in updates.items():
            if value is None:
                continue
            coerced[key] = _coerce_setting(key, value)
        for key, value in coerced.items():
            setattr(self, key, value)
        return coerced


def _finite(key: str, value: Any) -> float:
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"{key} must be a finite number")
    return number


def _integer(key: str, value: Any) -> int:
    try:
        return int(value)
    except OverflowError as e:
        raise ValueError(f"{key} must be a finite number") from e


def _coerce_setting(key: str, value: Any) -> Any:
    if key == "max_market_cap":
        cap = _finite(key, value)
        if cap <= 0:
            raise ValueError("max_market_cap must be > 0")
        return cap
    if key == "max_buy_amount":
        amount = to_decimal(value)
        if amount <= 0:
            raise ValueError("max_buy_amount must be > 0")
        return amount
    if key == "take_profit_pct":
        pct = _finite(key, value)
        if pct <= 0:
            raise ValueError("take_profit_pct must be > 0")
        return pct
    if key == "stop_loss_pct":
        pct = _finite(key, value)
        if not 0 < pct <= 100:
            raise ValueError("stop_loss_pct must be between 0 and 100")
        return pct
    if key == "scan_interval_min":
        return max(MIN_SCAN_INTERVAL_MIN, _integer(key, value))
    if key == "max_open_positions":
        count = _integer(key, value)
        if count < 1:
            raise ValueError("max_open_positions must be >= 1")
        return count
    if key == "auto_trade_enabled":
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "on", "yes")
        return bool(value)
    raise ValueError(f"Unknown setting: {key}")


@dataclass
class Ledger:
    """Aggregate root. `trades` is the source of truth; the stats are caches."""
    trades: list[Trade] = field(default_factory=list)
    settings: Settings = field(default_factory=Settings)
    learnings: list[str] = field(default_factory=list)
    total_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0

    def next_timestamp(self) -> float:
        """Wall-clock time, never earlier than the newest trade."""
        now = time.time()
        if self.trades:
            return max(now, self.trades[-1].timestamp)
        return now

    def open_trade_for(self, symbol: str) -> Trade | None:
        symbol = symbol.strip().upper()
        for trade in self.trades:
            if trade.symbol == symbol and trade.is_open:
                return trade
        return None

    def add_learning(self, text: str, limit: int = 100) -> None:
        self.learnings.append(text)
        if len(self.learnings) > limit:
            del self.learnings[:-limit]

    def to_dict(self) -> dict:
        return {
            "trades": [t.to_dict() for t in self.trades],
            "settings": self.settings.to_dict(),
            "learnings": list(self.learnings),
            "total_trades": self.total_trades,
            "win_rate": self.win_rate,
            "total_pnl": self.total_pnl,
        }

    @classmethod
    def from_dict(cls, data: dict, defaults: Settings | None = None) -> Ledger:
        return cls(
            trades=[Trade.from_dict(t) for t in data.get("trades", [])],
            settings=Settings.from_dict(data.get("settings", {}), defaults),
            learnings=list(data.get("learnings", [])),
            total_trades=data.get("total_trades", 0),
            win_rate=data.get("win_rate", 0.0),
            total_pnl=data.get("total_pnl", 0.0),
        )


@dataclass
class Candidate:
    """A scored buy candidate produced by the scanner."""
    symbol: str
    price: Decimal
    amount: Decimal
    score: float = 0.0
    market_cap: float | None = None
    volume_24h: float = 0.0
    change_24h: float = 0.0
    liquidity: float = 0.0
    reason: str = ""

    def __post_init__(self) -> None:
        self.symbol = self.symbol.strip().upper()
        self.price = to_decimal(self.price)
        self.amount = to_decimal(self.amount)
