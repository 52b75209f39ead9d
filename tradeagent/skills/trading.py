"""Trading, portfolio and research skills.

Registered once at startup. Every handler returns user-facing text; expected
failures (rejections, collaborator errors) become text here rather than
exceptions so the brain and the chat commands can relay them as-is.
"""

from __future__ import annotations

from typing import Any

import structlog

from tradeagent.shell.bankr import BankrClient
from tradeagent.shell.errors import CollaboratorError, PositionRejected
from tradeagent.shell.models import Candidate, Ledger, TradeStatus, to_decimal
from tradeagent.skills.registry import Skill, SkillParameter, SkillRegistry
from tradeagent.trading.autotrader import AutoTrader
from tradeagent.trading.performance import (
    format_position, format_trade, get_open_positions, get_performance_summary,
    get_trade_history,
)
from tradeagent.trading.positions import PositionManager
from tradeagent.trading.scanner import MarketScanner

log = structlog.get_logger()

# Skill parameter name -> Settings field
SETTING_PARAMS = {
    "max_market_cap": "max_market_cap",
    "buy_amount": "max_buy_amount",
    "take_profit_pct": "take_profit_pct",
    "stop_loss_pct": "stop_loss_pct",
    "scan_interval_min": "scan_interval_min",
    "max_open_positions": "max_open_positions",
}


def register_trading_skills(
    registry: SkillRegistry,
    *,
    ledger: Ledger,
    positions: PositionManager,
    scanner: MarketScanner,
    autotrader: AutoTrader,
    research: BankrClient,
) -> None:

    async def _research(prompt: str, label: str) -> str:
        if not research.configured:
            return "Research is disabled: Bankr API not configured (set BANKR_API_KEY)."
        result = await research.prompt(prompt)
        if result.success:
            return result.response or "No data"
        return f"{label} failed: {result.error}. Try again shortly."

    # --- Autonomous trading ---

    async def scan_market(params: dict[str, Any]) -> str:
        return await scanner.scan_market()

    async def toggle_autotrade(params: dict[str, Any]) -> str:
        return await autotrader.toggle_auto_trade(params["enabled"])

    async def update_trading_settings(params: dict[str, Any]) -> str:
        updates = {SETTING_PARAMS[k]: v for k, v in params.items() if k in SETTING_PARAMS}
        if not updates:
            return "Nothing to update. Provide at least one setting."
        return await autotrader.update_settings(updates)

    async def buy_token(params: dict[str, Any]) -> str:
        symbol = params["token"].lstrip("$").upper()
        try:
            amount = to_decimal(params.get("amount", ledger.settings.max_buy_amount))
        except ValueError as e:
            return str(e)
        price = await scanner.fetch_price(symbol)
        if price is None:
            return f"Could not get a price for {symbol}. Try research_token first."
        candidate = Candidate(
            symbol=symbol, price=price, amount=amount,
            reason=params.get("reason") or "manual buy via chat",
        )
        try:
            trade = await positions.open_position(candidate, source="manual")
        except PositionRejected as e:
            return f"Buy rejected: {e}"
        if trade.status is TradeStatus.FAILED:
            return f"Buy failed: {trade.error}\n\nCheck the wallet balance and try again."
        return f"Bought ${trade.amount} of {trade.symbol} @ {trade.price}"

    async def sell_position(params: dict[str, Any]) -> str:
        symbol = params["token"].lstrip("$").upper()
        if ledger.open_trade_for(symbol) is None:
            return f"No open {symbol} position."
        price = await scanner.fetch_price(symbol)
        if price is None:
            return f"Could not get a price for {symbol}; not selling blind. Try again shortly."
        try:
            trade = await positions.sell_position(symbol, price)
        except (PositionRejected, CollaboratorError) as e:
            return f"Sell failed: {e}. The position is still open."
        return f"Sold {trade.symbol} @ {trade.exit_price} ({trade.pnl:+.2f}%)"

    # --- Portfolio ---

    async def get_trading_performance(params: dict[str, Any]) -> str:
        return get_performance_summary(ledger)

    async def get_open_positions_skill(params: dict[str, Any]) -> str:
        open_trades = get_open_positions(ledger)
        if not open_trades:
            return "No open positions"
        return "\n".join(format_position(t) for t in open_trades)

    async def get_trade_history_skill(params: dict[str, Any]) -> str:
        trades = get_trade_history(ledger, params.get("limit", 10))
        if not trades:
            return "No trades yet"
        return "\n".join(format_trade(t) for t in trades)

    # --- Research ---

    async def research_token(params: dict[str, Any]) -> str:
        return await _research(
            f"Give me a comprehensive analysis of {params['token']}: current price, market cap, "
            "24h volume, 24h change, holder info, liquidity, and risk assessment. Be concise.",
            "Research",
        )

    async def get_trending_tokens(params: dict[str, Any]) -> str:
        return await _research(
            "What tokens are trending on Base right now? "
            "Show me the top 10 with their prices and 24h changes.",
            "Trending lookup",
        )

    async def find_lowcap_gems(params: dict[str, Any]) -> str:
        max_cap = params.get("max_mcap") or ledger.settings.max_market_cap
        return await _research(
            f"Find me trending or new tokens on Base with a market cap under ${max_cap:,.0f}. "
            "Show token name, symbol, price, market cap, 24h volume, and 24h change. "
            "Focus on tokens with good volume and momentum. List up to 10 tokens.",
            "Gem search",
        )

    async def research_prompt(params: dict[str, Any]) -> str:
        return await _research(params["prompt"], "Research prompt")

    skills = [
        Skill(
            name="scan_market",
            description="Run a full market scan to find and score low-cap trading opportunities on Base",
            category="trading",
            handler=scan_market,
        ),
        Skill(
            name="toggle_autotrade",
            description="Enable or disable autonomous auto-trading",
            category="trading",
            handler=toggle_autotrade,
            parameters=(
                SkillParameter("enabled", "boolean", "true to enable, false to disable", required=True),
            ),
        ),
        Skill(
            name="update_trading_settings",
            description="Update trading parameters like max market cap, buy amount, take profit %, "
                        "stop loss %, scan interval, max open positions",
            category="trading",
            handler=update_trading_settings,
            parameters=(
                SkillParameter("max_market_cap", "number", "Max market cap filter in dollars"),
                SkillParameter("buy_amount", "string", "Dollar amount per trade"),
                SkillParameter("take_profit_pct", "number", "Take profit percentage (e.g., 100 for 2x)"),
                SkillParameter("stop_loss_pct", "number", "Stop loss percentage (e.g., 30)"),
                SkillParameter("scan_interval_min", "integer", "Minutes between auto-scans"),
                SkillParameter("max_open_positions", "integer", "Maximum concurrent open positions"),
            ),
        ),
        Skill(
            name="buy_token",
            description="Open a position in a token at the current price (respects max buy amount "
                        "and max open positions)",
            category="trading",
            handler=buy_token,
            parameters=(
                SkillParameter("token", "string", "Token symbol to buy (e.g., PEPE, DEGEN)", required=True),
                SkillParameter("amount", "string", "Dollar amount to spend (defaults to the buy amount setting)"),
                SkillParameter("reason", "string", "Why this trade is being made"),
            ),
        ),
        Skill(
            name="sell_position",
            description="Close an open position at the current price",
            category="trading",
            handler=sell_position,
            parameters=(
                SkillParameter("token", "string", "Symbol of the open position to sell", required=True),
            ),
        ),
        Skill(
            name="get_trading_performance",
            description="Show trading performance stats: win rate, P&L, total trades, settings",
            handler=get_trading_performance,
        ),
        Skill(
            name="get_open_positions",
            description="Show all currently open trading positions",
            handler=get_open_positions_skill,
        ),
        Skill(
            name="get_trade_history",
            description="Show recent trade history with P&L",
            handler=get_trade_history_skill,
            parameters=(
                SkillParameter("limit", "integer", "Number of trades to show (default 10)"),
            ),
        ),
        Skill(
            name="research_token",
            description="Get detailed research on any token: price, market cap, volume, sentiment, risk",
            category="research",
            handler=research_token,
            parameters=(
                SkillParameter("token", "string", "Token name or symbol to research", required=True),
            ),
        ),
        Skill(
            name="get_trending_tokens",
            description="Find trending tokens on Base right now",
            category="research",
            handler=get_trending_tokens,
        ),
        Skill(
            name="find_lowcap_gems",
            description="Find low market cap tokens on Base (defaults to the max market cap setting)",
            category="research",
            handler=find_lowcap_gems,
            parameters=(
                SkillParameter("max_mcap", "number", "Maximum market cap in dollars"),
            ),
        ),
        Skill(
            name="research_prompt",
            description="Send a custom DeFi/trading research question that other skills don't cover",
            category="research",
            handler=research_prompt,
            parameters=(
                SkillParameter("prompt", "string", "The question to ask", required=True),
            ),
        ),
    ]
    for skill in skills:
        registry.register(skill)

    log.info("skills.registered", count=len(registry))
