"""Scanner scoring, parsing, and the auto-trade gate."""

import asyncio
import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from tradeagent.shell.bankr import BankrClient, PromptResult
from tradeagent.shell.config import BankrConfig, ScannerConfig
from tradeagent.shell.errors import ConfigurationError, ResearchError
from tradeagent.trading.positions import PositionManager
from tradeagent.trading.scanner import (
    MarketScanner, parse_candidates, parse_price, score_candidate,
)

TOKENS = [
    {"symbol": "$HOT", "price": "0.0012", "market_cap": 30000, "volume_24h": 1_000_000,
     "change_24h": 60, "liquidity": 2_000_000},
    {"symbol": "WARM", "price": 0.5, "market_cap": 20000, "volume_24h": 100_000,
     "change_24h": 40, "liquidity": 50_000},
    {"symbol": "COLD", "price": 1, "market_cap": 10000, "volume_24h": 500,
     "change_24h": -20, "liquidity": 800},
    {"symbol": "BIG", "price": 3, "market_cap": 9_000_000, "volume_24h": 5_000_000,
     "change_24h": 80, "liquidity": 5_000_000},
    {"symbol": "ZERO", "price": 0, "market_cap": 100, "volume_24h": 5_000_000,
     "change_24h": 80, "liquidity": 5_000_000},
]


def _research(tokens=TOKENS):
    research = MagicMock()
    research.configured = True
    research.ask = AsyncMock(return_value="Here you go:\n" + json.dumps(tokens) + "\nDYOR")
    research.prompt = AsyncMock(return_value=PromptResult(success=True, response="$0.0042"))
    return research


def test_score_bounds():
    assert score_candidate(1_000_000, 50, 1_000_000) == 100.0
    assert score_candidate(0, -10, 0) == 0.0
    assert score_candidate(1_000_000, 0, 0) == 40.0
    assert score_candidate(10**8, 500, 10**8) == 100.0


def test_parse_candidates_from_prose():
    items = parse_candidates('Top picks: [{"symbol": "A", "price": 1}, {"price": 2}, "junk"] done')
    assert items == [{"symbol": "A", "price": 1}]


def test_parse_candidates_rejects_missing_list():
    with pytest.raises(ResearchError):
        parse_candidates("no tokens found today")
    with pytest.raises(ResearchError):
        parse_candidates("[oops, not json]")


def test_parse_price():
    assert parse_price("The price is $0.00042 right now") == Decimal("0.00042")
    assert parse_price("1,234.5") == Decimal("1234.5")
    assert parse_price("unknown") is None
    assert parse_price("0") is None


@pytest.mark.asyncio
async def test_find_candidates_filters_and_ranks(ledger, store, executor):
    scanner = MarketScanner(ledger, _research(), PositionManager(ledger, store, executor),
                            ScannerConfig(score_threshold=60, max_candidates=10))
    candidates = await scanner.find_candidates()
    assert [c.symbol for c in candidates] == ["HOT", "WARM"]
    assert candidates[0].score >= candidates[1].score
    assert all(c.amount == ledger.settings.max_buy_amount for c in candidates)


@pytest.mark.asyncio
async def test_scan_with_auto_trade_off_opens_nothing(ledger, store, executor, backend):
    scanner = MarketScanner(ledger, _research(), PositionManager(ledger, store, executor))
    report = await scanner.run_scan()
    assert len(report.candidates) == 2
    assert report.opened == []
    assert backend.calls == []
    assert "Auto-trade is OFF" in report.render(scanner.threshold)


@pytest.mark.asyncio
async def test_scan_with_auto_trade_on_opens_positions(ledger, store, executor, backend):
    ledger.settings.auto_trade_enabled = True
    ledger.settings.max_open_positions = 1
    scanner = MarketScanner(ledger, _research(), PositionManager(ledger, store, executor))

    report = await scanner.run_scan()
    assert [t.symbol for t in report.opened] == ["HOT"]
    assert report.rejected[0][0] == "WARM"
    assert "max open positions" in report.rejected[0][1]
    assert len(backend.calls) == 1


@pytest.mark.asyncio
async def test_scan_reports_research_errors(ledger, store, executor):
    research = _research()
    research.ask.side_effect = ResearchError("timeout after 120s")
    scanner = MarketScanner(ledger, research, PositionManager(ledger, store, executor))
    text = await scanner.scan_market()
    assert text.startswith("Scan failed: timeout after 120s")

    research.ask.side_effect = ConfigurationError("Bankr API not configured")
    report = await scanner.run_scan()
    assert "not configured" in report.error


@pytest.mark.asyncio
async def test_scan_with_malformed_research_payload(ledger, store, executor):
    client = httpx.AsyncClient(transport=httpx.MockTransport(
        lambda request: httpx.Response(200, json=[])
    ))
    research = BankrClient(BankrConfig(api_key="test-key", poll_interval=0.01, job_timeout=0.1),
                           client)
    scanner = MarketScanner(ledger, research, PositionManager(ledger, store, executor))
    text = await scanner.scan_market()
    assert text.startswith("Scan failed")
    assert "unexpected Bankr response" in text
    await research.close()


@pytest.mark.asyncio
async def test_repeated_scans_hold_one_position_per_symbol(ledger, store, executor, backend):
    ledger.settings.auto_trade_enabled = True
    ledger.settings.max_open_positions = 5
    scanner = MarketScanner(ledger, _research(), PositionManager(ledger, store, executor))

    first = await scanner.run_scan()
    assert sorted(t.symbol for t in first.opened) == ["HOT", "WARM"]

    second = await scanner.run_scan()
    assert second.opened == []
    assert {symbol for symbol, _ in second.rejected} == {"HOT", "WARM"}
    assert all("already holding" in reason for _, reason in second.rejected)
    assert len(backend.calls) == 2

    open_symbols = [t.symbol for t in ledger.trades if t.is_open]
    assert sorted(open_symbols) == ["HOT", "WARM"]


@pytest.mark.asyncio
async def test_concurrent_scans_do_not_double_buy(ledger, store, executor, backend):
    ledger.settings.auto_trade_enabled = True
    ledger.settings.max_open_positions = 5
    scanner = MarketScanner(ledger, _research(), PositionManager(ledger, store, executor))

    reports = await asyncio.gather(scanner.run_scan(), scanner.run_scan())
    opened = [t.symbol for r in reports for t in r.opened]
    rejected = [symbol for r in reports for symbol, _ in r.rejected]
    assert sorted(opened) == ["HOT", "WARM"]
    assert sorted(rejected) == ["HOT", "WARM"]

    open_symbols = [t.symbol for t in ledger.trades if t.is_open]
    assert sorted(open_symbols) == ["HOT", "WARM"]


@pytest.mark.asyncio
async def test_fetch_price(ledger, store, executor):
    research = _research()
    scanner = MarketScanner(ledger, research, PositionManager(ledger, store, executor))
    assert await scanner.fetch_price("PEPE") == Decimal("0.0042")

    research.prompt.return_value = PromptResult(success=False, error="job failed")
    assert await scanner.fetch_price("PEPE") is None
