"""Position lifecycle: open, evaluate, close.

Owns every Trade state transition:
  open -> closed   (take-profit hit or explicit sell)
  open -> stopped  (stop-loss hit)
  failed           (buy order never confirmed; recorded, excluded from P&L)
Terminal states are final. Every mutation is flushed to the ledger store.
"""

from __future__ import annotations

import asyncio
import time
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

import structlog

from tradeagent.shell.errors import (
    ExecutionError, InvalidTransition, LedgerPersistError, PositionRejected,
)
from tradeagent.shell.execution import ActionExecutor
from tradeagent.shell.ledger import LedgerStore
from tradeagent.shell.models import (
    Candidate, Ledger, Settings, Trade, TradeAction, TradeStatus, to_decimal,
)
from tradeagent.trading.performance import get_open_positions

log = structlog.get_logger()

PriceSource = Callable[[str], Awaitable[Decimal | None]]


class Notify(Protocol):
    async def notify(self, text: str) -> None: ...


class Decision(Enum):
    HOLD = "hold"
    CLOSE = "close"
    STOP = "stop"


_CLOSE_STATUS = {
    Decision.CLOSE: TradeStatus.CLOSED,
    Decision.STOP: TradeStatus.STOPPED,
}


def change_pct(trade: Trade, price: Any) -> Decimal:
    """Signed percentage move from entry, positive when the position gains."""
    move = (to_decimal(price) - trade.price) / trade.price * 100
    return -move if trade.action is TradeAction.SELL else move


class PositionManager:
    """Opens and closes positions against the ledger and the executor."""

    def __init__(
        self,
        ledger: Ledger,
        store: LedgerStore,
        executor: ActionExecutor,
        notifier: Notify | None = None,
    ) -> None:
        self._ledger = ledger
        self._store = store
        self._executor = executor
        self._notifier = notifier
        # Serializes order execution across the scheduler and chat-invoked skills
        self._trade_lock = asyncio.Lock()

    @property
    def open_positions(self) -> list[Trade]:
        return get_open_positions(self._ledger)

    def _check_limits(self, candidate: Candidate, settings: Settings) -> None:
        open_count = len(self.open_positions)
        if open_count >= settings.max_open_positions:
            raise PositionRejected(
                f"max open positions reached ({open_count}/{settings.max_open_positions})"
            )
        if candidate.amount > settings.max_buy_amount:
            raise PositionRejected(
                f"amount ${candidate.amount} exceeds max buy amount ${settings.max_buy_amount}"
            )
        if candidate.amount <= 0:
            raise PositionRejected("amount must be positive")
        if candidate.price <= 0:
            raise PositionRejected(f"no valid price for {candidate.symbol}")
        if self._ledger.open_trade_for(candidate.symbol):
            raise PositionRejected(f"already holding an open {candidate.symbol} position")

    async def open_position(
        self,
        candidate: Candidate,
        settings: Settings | None = None,
        source: str = "auto",
    ) -> Trade:
        """Buy `candidate` and record it.

        Raises PositionRejected when a risk rule refuses the trade. An
        executor failure returns a persisted `failed` trade instead of raising.
        """
        settings = settings or self._ledger.settings
        async with self._trade_lock:
            self._check_limits(candidate, settings)

            try:
                await self._executor.invoke("buy", {
                    "symbol": candidate.symbol,
                    "amount": str(candidate.amount),
                    "price": str(candidate.price),
                })
            except ExecutionError as e:
                trade = self._record(candidate, TradeStatus.FAILED, source, error=str(e))
                await self._store.save(self._ledger)
                log.warning("positions.open_failed", symbol=trade.symbol, error=str(e))
                await self._notify(
                    f"Buy failed: {trade.symbol} ${trade.amount}\n{e}\n\n"
                    "Check the wallet balance, then retry manually."
                )
                return trade

            trade = self._record(candidate, TradeStatus.OPEN, source)
            await self._store.save(self._ledger)

        log.info("positions.opened", symbol=trade.symbol, amount=str(trade.amount),
                 price=str(trade.price), source=source)
        await self._notify(
            f"Opened {trade.symbol}: ${trade.amount} @ {trade.price}\nReason: {trade.reason}"
        )
        return trade

    def _record(self, candidate: Candidate, status: TradeStatus, source: str,
                error: str | None = None) -> Trade:
        trade = Trade(
            symbol=candidate.symbol,
            action=TradeAction.BUY,
            amount=candidate.amount,
            price=candidate.price,
            reason=candidate.reason,
            status=status,
            timestamp=self._ledger.next_timestamp(),
            error=error,
            source=source,
        )
        self._ledger.trades.append(trade)
        return trade

    def evaluate_position(self, trade: Trade, current_price: Any,
                          settings: Settings | None = None) -> Decision:
        """Stop-loss is checked first, so it wins when both thresholds are met."""
        if not trade.is_open:
            raise InvalidTransition(f"{trade.symbol} is {trade.status.value}, not open")
        settings = settings or self._ledger.settings
        change = change_pct(trade, current_price)

        if -change >= to_decimal(settings.stop_loss_pct):
            return Decision.STOP
        if change >= to_decimal(settings.take_profit_pct):
            return Decision.CLOSE
        return Decision.HOLD

    async def close_position(self, trade: Trade, exit_price: Any,
                             kind: Decision | TradeStatus) -> Trade:
        """Realize P&L and move the trade to its terminal state."""
        status = _CLOSE_STATUS.get(kind) if isinstance(kind, Decision) else kind
        if status not in (TradeStatus.CLOSED, TradeStatus.STOPPED):
            raise InvalidTransition(f"cannot close a position with {kind}")
        if not trade.is_open:
            raise InvalidTransition(f"{trade.symbol} is already {trade.status.value}")

        exit_price = to_decimal(exit_price)
        trade.pnl = float(round(change_pct(trade, exit_price), 4))
        trade.exit_price = exit_price
        trade.status = status
        trade.closed_at = time.time()
        await self._store.save(self._ledger)

        log.info("positions.closed", symbol=trade.symbol, status=status.value,
                 entry=str(trade.price), exit=str(exit_price), pnl=trade.pnl)
        return trade

    async def sell_position(self, symbol: str, exit_price: Any,
                            reason: str = "manual sell") -> Trade:
        """Explicit sell of an open position. The trade stays open if the order fails."""
        async with self._trade_lock:
            trade = self._ledger.open_trade_for(symbol)
            if trade is None:
                raise PositionRejected(f"no open {symbol.upper()} position")
            await self._executor.invoke("sell", {
                "symbol": trade.symbol, "percentage": 100, "reason": reason,
            })
            await self.close_position(trade, exit_price, TradeStatus.CLOSED)

        await self._notify(f"Sold {trade.symbol} @ {trade.exit_price} ({trade.pnl:+.2f}%)")
        return trade

    async def monitor_positions(self, price_source: PriceSource) -> list[tuple[Trade, Decision]]:
        """Evaluate every open position and close the ones that hit a threshold."""
        closed: list[tuple[Trade, Decision]] = []

        for trade in list(self.open_positions):
            try:
                price = await price_source(trade.symbol)
            except Exception as e:
                log.warning("positions.price_unavailable", symbol=trade.symbol, error=str(e))
                continue
            if price is None:
                log.warning("positions.price_unavailable", symbol=trade.symbol)
                continue

            try:
                decision = self.evaluate_position(trade, price)
            except (ArithmeticError, ValueError, InvalidTransition) as e:
                log.error("positions.evaluate_failed", symbol=trade.symbol, error=str(e))
                continue
            if decision is Decision.HOLD:
                continue

            label = "Stop-loss" if decision is Decision.STOP else "Take-profit"
            async with self._trade_lock:
                if not trade.is_open:
                    continue
                try:
                    await self._executor.invoke("sell", {
                        "symbol": trade.symbol, "percentage": 100, "reason": decision.value,
                    })
                except ExecutionError as e:
                    log.error("positions.close_failed", symbol=trade.symbol,
                              decision=decision.value, error=str(e))
                    await self._notify(
                        f"{label} sell for {trade.symbol} failed: {e}\n"
                        "Position stays open; it will be re-checked next scan."
                    )
                    continue
                try:
                    await self.close_position(trade, price, decision)
                except LedgerPersistError as e:
                    log.error("positions.persist_failed", symbol=trade.symbol,
                              decision=decision.value, error=str(e))
                    await self._notify(
                        f"{label} sold {trade.symbol} but the ledger could not be saved: {e}"
                    )
                    continue

            closed.append((trade, decision))
            await self._notify(
                f"{label} hit on {trade.symbol}: exit {trade.exit_price} ({trade.pnl:+.2f}%)"
            )

        return closed

    async def _notify(self, text: str) -> None:
        if not self._notifier:
            return
        try:
            await self._notifier.notify(text)
        except Exception as e:
            log.warning("positions.notify_failed", error=str(e))
