"""Market scanner: find, score and (optionally) buy low-cap candidates.

One scan is one research prompt. Candidates come back as a JSON array,
are filtered by the market-cap ceiling, scored 0-100 and ranked. When
auto-trade is on, every candidate above the threshold goes to the
position manager, which rejects duplicates and over-limit buys.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from decimal import Decimal

import structlog

from tradeagent.shell.bankr import BankrClient
from tradeagent.shell.config import ScannerConfig
from tradeagent.shell.errors import (
    CollaboratorError, ConfigurationError, PositionRejected, ResearchError,
)
from tradeagent.shell.models import Candidate, Ledger, Trade, TradeStatus, to_decimal
from tradeagent.trading.positions import PositionManager

log = structlog.get_logger()

# Fixed scoring weights (sum to 1.0)
SCORE_WEIGHTS = {"volume": 0.40, "momentum": 0.35, "liquidity": 0.25}

# Log-scale bands in USD: at or below the floor scores 0, at or above the ceiling 100
VOLUME_BAND = (1_000.0, 1_000_000.0)
LIQUIDITY_BAND = (1_000.0, 1_000_000.0)
# 24h change (%) that earns a full momentum score; losers score 0
MOMENTUM_CAP_PCT = 50.0

SCAN_PROMPT = (
    "Find trending or new tokens on Base with a market cap under ${max_cap:,.0f}. "
    "Focus on tokens with good volume and momentum. List up to {limit} tokens. "
    "Respond ONLY with a JSON array where each item has the keys: "
    "symbol, price, market_cap, volume_24h, change_24h, liquidity. "
    "Numbers must be plain numbers in USD (change_24h in percent)."
)

PRICE_PROMPT = (
    "What is the current price of {symbol} on Base in USD? "
    "Reply with just the number."
)

_NUMBER = re.compile(r"\$?\s*(\d[\d,]*(?:\.\d+)?(?:[eE][-+]?\d+)?)")


def _log_scale(value: float, band: tuple[float, float]) -> float:
    low, high = band
    if value <= low:
        return 0.0
    if value >= high:
        return 100.0
    return (math.log10(value) - math.log10(low)) / (math.log10(high) - math.log10(low)) * 100


def score_candidate(volume_24h: float, change_24h: float, liquidity: float) -> float:
    """Weighted 0-100 score from 24h volume, 24h momentum and liquidity."""
    volume = _log_scale(volume_24h, VOLUME_BAND)
    momentum = min(max(change_24h, 0.0), MOMENTUM_CAP_PCT) / MOMENTUM_CAP_PCT * 100
    liquidity_score = _log_scale(liquidity, LIQUIDITY_BAND)
    score = (
        SCORE_WEIGHTS["volume"] * volume
        + SCORE_WEIGHTS["momentum"] * momentum
        + SCORE_WEIGHTS["liquidity"] * liquidity_score
    )
    return round(score, 1)


def _num(value, default: float = 0.0) -> float:
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return float(value)
    match = _NUMBER.search(str(value))
    if not match:
        return default
    number = float(match.group(1).replace(",", ""))
    return -number if str(value).strip().startswith("-") else number


def parse_candidates(text: str) -> list[dict]:
    """Pull the JSON array of tokens out of a free-text research answer."""
    start, end = text.find("["), text.rfind("]")
    if start == -1 or end <= start:
        raise ResearchError("research response contained no token list")
    try:
        items = json.loads(text[start:end + 1])
    except ValueError as e:
        raise ResearchError(f"malformed token list: {e}") from e
    if not isinstance(items, list):
        raise ResearchError("token list is not an array")
    return [item for item in items if isinstance(item, dict) and item.get("symbol")]


def parse_price(text: str) -> Decimal | None:
    match = _NUMBER.search(text or "")
    if not match:
        return None
    price = to_decimal(match.group(1))
    return price if price > 0 else None


@dataclass
class ScanReport:
    candidates: list[Candidate] = field(default_factory=list)
    opened: list[Trade] = field(default_factory=list)
    failed: list[Trade] = field(default_factory=list)
    rejected: list[tuple[str, str]] = field(default_factory=list)
    auto_trade: bool = False
    error: str | None = None

    def render(self, threshold: float) -> str:
        if self.error:
            return f"Scan failed: {self.error}"
        if not self.candidates:
            return f"Scan complete: no tokens scored above {threshold:g}/100."

        lines = [f"Scan complete: {len(self.candidates)} candidate(s) above {threshold:g}/100"]
        for i, c in enumerate(self.candidates, 1):
            cap = f"${c.market_cap:,.0f}" if c.market_cap is not None else "n/a"
            lines.append(
                f"{i}. {c.symbol} score {c.score:.1f} | price {c.price} | mcap {cap} | "
                f"vol ${c.volume_24h:,.0f} | 24h {c.change_24h:+.1f}%"
            )
        if not self.auto_trade:
            lines.append("\nAuto-trade is OFF, no positions opened.")
            return "\n".join(lines)

        lines.append("")
        for t in self.opened:
            lines.append(f"Bought {t.symbol}: ${t.amount} @ {t.price}")
        for t in self.failed:
            lines.append(f"Buy failed {t.symbol}: {t.error}")
        for symbol, reason in self.rejected:
            lines.append(f"Skipped {symbol}: {reason}")
        return "\n".join(lines)


class MarketScanner:
    def __init__(
        self,
        ledger: Ledger,
        research: BankrClient,
        positions: PositionManager,
        config: ScannerConfig | None = None,
    ) -> None:
        self._ledger = ledger
        self._research = research
        self._positions = positions
        self._config = config or ScannerConfig()

    @property
    def threshold(self) -> float:
        return self._config.score_threshold

    async def find_candidates(self) -> list[Candidate]:
        """Ranked candidates at or above the score threshold."""
        settings = self._ledger.settings
        text = await self._research.ask(
            SCAN_PROMPT.format(max_cap=settings.max_market_cap, limit=self._config.max_candidates)
        )

        candidates: list[Candidate] = []
        for item in parse_candidates(text):
            market_cap = _num(item.get("market_cap"), default=-1.0)
            if market_cap > settings.max_market_cap:
                continue
            try:
                price = to_decimal(item.get("price", "0"))
            except ValueError:
                continue
            if price <= 0:
                continue
            volume = _num(item.get("volume_24h"))
            change = _num(item.get("change_24h"))
            liquidity = _num(item.get("liquidity"))
            score = score_candidate(volume, change, liquidity)
            if score < self._config.score_threshold:
                continue
            candidates.append(Candidate(
                symbol=str(item["symbol"]).lstrip("$"),
                price=price,
                amount=settings.max_buy_amount,
                score=score,
                market_cap=market_cap if market_cap >= 0 else None,
                volume_24h=volume,
                change_24h=change,
                liquidity=liquidity,
                reason=f"scan score {score:.1f} (vol ${volume:,.0f}, 24h {change:+.1f}%, liq ${liquidity:,.0f})",
            ))

        candidates.sort(key=lambda c: c.score, reverse=True)
        return candidates[: self._config.max_candidates]

    async def run_scan(self) -> ScanReport:
        settings = self._ledger.settings
        report = ScanReport(auto_trade=settings.auto_trade_enabled)

        try:
            report.candidates = await self.find_candidates()
        except ConfigurationError as e:
            report.error = f"{e}. Auto-trading needs research access."
            return report
        except CollaboratorError as e:
            log.warning("scan.research_failed", error=str(e))
            report.error = f"{e}. Try again in a few minutes."
            return report

        if settings.auto_trade_enabled:
            for candidate in report.candidates:
                try:
                    trade = await self._positions.open_position(candidate, settings)
                except PositionRejected as e:
                    report.rejected.append((candidate.symbol, str(e)))
                    continue
                if trade.status is TradeStatus.FAILED:
                    report.failed.append(trade)
                else:
                    report.opened.append(trade)

        log.info("scan.complete", candidates=len(report.candidates), opened=len(report.opened),
                 failed=len(report.failed), rejected=len(report.rejected))
        return report

    async def scan_market(self) -> str:
        report = await self.run_scan()
        return report.render(self.threshold)

    async def fetch_price(self, symbol: str) -> Decimal | None:
        """Current USD price via the research API, None when unavailable."""
        result = await self._research.prompt(PRICE_PROMPT.format(symbol=symbol))
        if not result.success:
            log.warning("scan.price_failed", symbol=symbol, error=result.error)
            return None
        return parse_price(result.response or "")
