"""Ledger persistence and performance aggregation."""

import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from tradeagent.shell.errors import LedgerPersistError
from tradeagent.shell.ledger import LedgerStore, serialize
from tradeagent.shell.models import Ledger, Settings, Trade, TradeAction, TradeStatus
from tradeagent.trading.performance import (
    compute_stats, get_open_positions, get_performance_summary, get_trade_history,
)


def _trade(symbol, status=TradeStatus.OPEN, pnl=None, ts=0.0):
    return Trade(symbol=symbol, action=TradeAction.BUY, amount="5", price="1.0",
                 reason="test", status=status, pnl=pnl, timestamp=ts)


# --- Store ---

@pytest.mark.asyncio
async def test_load_without_prior_state_returns_defaults(store, settings):
    ledger = await store.load()
    assert ledger.trades == []
    assert ledger.learnings == []
    assert ledger.settings == settings
    assert ledger.win_rate == 0.0


@pytest.mark.asyncio
async def test_load_corrupt_document_fails_soft(db, store):
    await db.execute("INSERT INTO ledger (id, document) VALUES (1, ?)", ("{not json",))
    await db.commit()
    ledger = await store.load()
    assert ledger.trades == []


@pytest.mark.asyncio
async def test_save_then_load_round_trip(store):
    ledger = await store.load()
    ledger.trades.append(_trade("PEPE", TradeStatus.CLOSED, pnl=50.0, ts=1.0))
    ledger.trades.append(_trade("DEGEN", ts=2.0))
    ledger.learnings.append("[2026-01-01] likes memecoins")
    ledger.settings.max_buy_amount = Decimal("2.50")
    await store.save(ledger)

    loaded = await store.load()
    assert [t.symbol for t in loaded.trades] == ["PEPE", "DEGEN"]
    assert loaded.trades[0].status is TradeStatus.CLOSED
    assert loaded.trades[1].amount == Decimal("5")
    assert loaded.settings.max_buy_amount == Decimal("2.50")
    assert loaded.learnings == ["[2026-01-01] likes memecoins"]
    assert loaded.total_trades == 2
    assert loaded.win_rate == 1.0


@pytest.mark.asyncio
async def test_save_of_unmodified_load_is_idempotent(store):
    ledger = await store.load()
    ledger.trades.append(_trade("PEPE", TradeStatus.STOPPED, pnl=-35.0, ts=1.0))
    await store.save(ledger)
    first = await store.read_document()

    await store.save(await store.load())
    assert await store.read_document() == first


@pytest.mark.asyncio
async def test_save_failure_propagates():
    db = AsyncMock()
    db.execute.side_effect = RuntimeError("disk full")
    store = LedgerStore(db, Settings())
    with pytest.raises(LedgerPersistError, match="disk full"):
        await store.save(Ledger())


def test_money_fields_serialize_as_strings():
    ledger = Ledger(trades=[_trade("PEPE")])
    doc = json.loads(serialize(ledger))
    assert doc["trades"][0]["amount"] == "5"
    assert doc["trades"][0]["price"] == "1.0"
    assert doc["settings"]["max_buy_amount"] == "5"


# --- Aggregation ---

def test_win_rate_zero_when_nothing_closed():
    ledger = Ledger(trades=[_trade("A"), _trade("B")])
    total, win_rate, pnl = compute_stats(ledger)
    assert (total, win_rate, pnl) == (2, 0.0, 0.0)


def test_win_rate_counts_closed_and_stopped_only():
    ledger = Ledger(trades=[
        _trade("A", TradeStatus.CLOSED, pnl=100.0),
        _trade("B", TradeStatus.STOPPED, pnl=-30.0),
        _trade("C", TradeStatus.CLOSED, pnl=12.5),
        _trade("D"),
        _trade("E", TradeStatus.FAILED),
    ])
    total, win_rate, pnl = compute_stats(ledger)
    assert total == 4
    assert win_rate == pytest.approx(2 / 3)
    assert pnl == pytest.approx(82.5)


def test_open_positions_keep_insertion_order():
    ledger = Ledger(trades=[_trade("A"), _trade("B", TradeStatus.CLOSED, pnl=1.0), _trade("C")])
    assert [t.symbol for t in get_open_positions(ledger)] == ["A", "C"]


def test_trade_history_most_recent_first():
    ledger = Ledger(trades=[_trade(s, ts=i) for i, s in enumerate("ABCDEFGHIJKL")])
    history = get_trade_history(ledger)
    assert len(history) == 10
    assert history[0].symbol == "L"
    assert [t.symbol for t in get_trade_history(ledger, 3)] == ["L", "K", "J"]
    assert get_trade_history(ledger, 0) == []
    assert get_trade_history(ledger, -1) == []


def test_performance_summary_text():
    ledger = Ledger(trades=[
        _trade("WIN", TradeStatus.CLOSED, pnl=100.0),
        _trade("LOSS", TradeStatus.STOPPED, pnl=-30.0),
    ])
    summary = get_performance_summary(ledger)
    assert "Win Rate: 50.0%" in summary
    assert "Total P&L: +70.00%" in summary
    assert "Best: WIN" in summary
    assert "Auto-Trade: OFF" in summary


def test_settings_apply_is_all_or_nothing():
    s = Settings()
    with pytest.raises(ValueError):
        s.apply({"take_profit_pct": 50, "stop_loss_pct": 150})
    assert s.take_profit_pct == 100.0

    applied = s.apply({"scan_interval_min": 0, "max_buy_amount": "$7.5"})
    assert applied == {"scan_interval_min": 1, "max_buy_amount": Decimal("7.5")}
    assert s.scan_interval_min == 1


def test_settings_reject_unknown_key():
    with pytest.raises(ValueError, match="Unknown setting"):
        Settings().apply({"leverage": 10})


@pytest.mark.parametrize("key,value", [
    ("take_profit_pct", "nan"),
    ("take_profit_pct", float("inf")),
    ("stop_loss_pct", "nan"),
    ("max_market_cap", "inf"),
    ("max_buy_amount", "Infinity"),
    ("scan_interval_min", float("inf")),
    ("max_open_positions", float("inf")),
])
def test_settings_reject_non_finite_values(key, value):
    s = Settings()
    before = s.to_dict()
    with pytest.raises(ValueError):
        s.apply({key: value})
    assert s.to_dict() == before
