"""Performance aggregation over the ledger.

Pure functions. Nothing here mutates a trade; `refresh_stats` only writes the
cached aggregate fields on the ledger.
"""

from __future__ import annotations

from tradeagent.shell.models import Ledger, Trade, TradeStatus


def realized_trades(ledger: Ledger) -> list[Trade]:
    """Closed and stopped trades. Failed trades never count towards P&L."""
    return [t for t in ledger.trades if t.status.is_realized]


def compute_stats(ledger: Ledger) -> tuple[int, float, float]:
    """Return (total_trades, win_rate, total_pnl).

    win_rate is a fraction in [0, 1] and is 0 when nothing has closed yet.
    total_pnl is the sum of per-trade percentage P&L.
    """
    total = sum(1 for t in ledger.trades if t.status is not TradeStatus.FAILED)
    closed = realized_trades(ledger)
    if not closed:
        return total, 0.0, 0.0
    wins = sum(1 for t in closed if (t.pnl or 0) > 0)
    pnl = sum(t.pnl or 0.0 for t in closed)
    return total, wins / len(closed), round(pnl, 4)


def refresh_stats(ledger: Ledger) -> None:
    ledger.total_trades, ledger.win_rate, ledger.total_pnl = compute_stats(ledger)


def get_open_positions(ledger: Ledger) -> list[Trade]:
    return [t for t in ledger.trades if t.is_open]


def get_trade_history(ledger: Ledger, limit: int = 10) -> list[Trade]:
    """Most recent first, at most `limit` entries."""
    if limit <= 0:
        return []
    return list(reversed(ledger.trades))[:limit]


def format_trade(trade: Trade) -> str:
    pnl = f" | P&L: {trade.pnl:+.2f}%" if trade.pnl is not None else ""
    return f"{trade.symbol}: {trade.action.value} ${trade.amount} @ {trade.price} | {trade.status.value}{pnl}"


def format_position(trade: Trade) -> str:
    reason = trade.reason[:50] if trade.reason else "no reason recorded"
    return f"{trade.symbol}: ${trade.amount} @ {trade.price} ({reason})"


def get_performance_summary(ledger: Ledger) -> str:
    total, win_rate, total_pnl = compute_stats(ledger)
    closed = realized_trades(ledger)
    open_count = len(get_open_positions(ledger))
    failed = sum(1 for t in ledger.trades if t.status is TradeStatus.FAILED)
    stopped = sum(1 for t in closed if t.status is TradeStatus.STOPPED)
    s = ledger.settings

    lines = [
        "Trading Performance",
        f"Total Trades: {total}",
        f"Open Positions: {open_count}/{s.max_open_positions}",
        f"Closed: {len(closed)} ({stopped} stopped out)",
        f"Win Rate: {win_rate * 100:.1f}%",
        f"Total P&L: {total_pnl:+.2f}%",
    ]
    if failed:
        lines.append(f"Failed Orders: {failed}")
    if closed:
        best = max(closed, key=lambda t: t.pnl or 0)
        worst = min(closed, key=lambda t: t.pnl or 0)
        lines.append(f"Best: {best.symbol} {best.pnl:+.2f}% | Worst: {worst.symbol} {worst.pnl:+.2f}%")
    lines += [
        "",
        "Settings",
        f"Auto-Trade: {'ON' if s.auto_trade_enabled else 'OFF'}",
        f"Max Market Cap: ${s.max_market_cap:,.0f}",
        f"Buy Amount: ${s.max_buy_amount}",
        f"Take Profit: {s.take_profit_pct:g}% | Stop Loss: {s.stop_loss_pct:g}%",
        f"Scan Interval: {s.scan_interval_min} min",
    ]
    return "\n".join(lines)
