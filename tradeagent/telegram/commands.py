"""Telegram command handlers.

Every command is a thin wrapper over a registered skill, so /scan and the
model's scan_market tool call run the same code. Free text goes to the
brain. Only configured user IDs get a reply.
"""

from __future__ import annotations

import structlog
from telegram import Update
from telegram.ext import ContextTypes

from tradeagent.orchestrator.brain import Brain
from tradeagent.shell.config import Config
from tradeagent.shell.errors import TradeAgentError
from tradeagent.shell.models import Ledger
from tradeagent.skills.registry import SkillRegistry
from tradeagent.skills.trading import SETTING_PARAMS

log = structlog.get_logger()

TELEGRAM_CHUNK = 4000

HELP_TEXT = (
    "Commands:\n"
    "/scan - Scan the market for low-cap opportunities\n"
    "/positions - Open positions\n"
    "/trades [n] - Recent trades\n"
    "/performance - Win rate, P&L and settings\n"
    "/autotrade on|off - Toggle autonomous trading\n"
    "/settings [key=value ...] - Show or change trading settings\n"
    "/learnings - What I've learned so far\n"
    "/help - This message\n\n"
    "Or just talk to me: \"buy $3 of DEGEN\", \"how are my trades doing?\""
)


def parse_settings_args(args: list[str]) -> tuple[dict[str, str], list[str]]:
    """Split `key=value` arguments into known updates and rejected tokens."""
    updates: dict[str, str] = {}
    rejected: list[str] = []
    for arg in args:
        key, sep, value = arg.partition("=")
        key = key.strip().lower()
        if not sep or not value.strip() or key not in SETTING_PARAMS:
            rejected.append(arg)
            continue
        updates[key] = value.strip()
    return updates, rejected


class BotCommands:
    def __init__(
        self,
        config: Config,
        ledger: Ledger,
        skills: SkillRegistry,
        brain: Brain | None = None,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._skills = skills
        self._brain = brain

    def _authorized(self, update: Update) -> bool:
        """Reject everyone when no user IDs are configured."""
        allowed = self._config.telegram.allowed_user_ids
        if not allowed:
            return False
        user = update.effective_user
        return bool(user and user.id in allowed)

    async def _send_long(self, update: Update, text: str, max_len: int = TELEGRAM_CHUNK) -> None:
        if len(text) <= max_len:
            await update.message.reply_text(text)
            return
        chunks = [text[i:i + max_len] for i in range(0, len(text), max_len)]
        for i, chunk in enumerate(chunks):
            prefix = "" if i == 0 else f"(part {i + 1}/{len(chunks)})\n"
            await update.message.reply_text(prefix + chunk)

    async def _run_skill(self, update: Update, name: str, params: dict | None = None) -> None:
        skill = self._skills.get(name)
        if skill is None:
            await update.message.reply_text(f"Skill unavailable: {name}")
            return
        try:
            text = await skill.execute(params)
        except (TradeAgentError, ValueError) as e:
            log.warning("telegram.skill_failed", skill=name, error=str(e))
            text = f"{name} failed: {e}"
        await self._send_long(update, text)

    async def cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        s = self._ledger.settings
        await update.message.reply_text(
            f"Trade agent online ({self._config.mode} mode).\n"
            f"Auto-trade is {'ON' if s.auto_trade_enabled else 'OFF'}, "
            f"${s.max_buy_amount} per trade, max market cap ${s.max_market_cap:,.0f}.\n\n"
            + HELP_TEXT
        )

    async def cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        await update.message.reply_text(HELP_TEXT)

    async def cmd_scan(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        await update.message.reply_text("Scanning the market...")
        await self._run_skill(update, "scan_market")

    async def cmd_positions(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        await self._run_skill(update, "get_open_positions")

    async def cmd_trades(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        params = {}
        if context.args:
            params["limit"] = context.args[0]
        await self._run_skill(update, "get_trade_history", params)

    async def cmd_performance(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        await self._run_skill(update, "get_trading_performance")

    async def cmd_autotrade(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        arg = context.args[0].lower() if context.args else ""
        if arg not in ("on", "off"):
            state = "ON" if self._ledger.settings.auto_trade_enabled else "OFF"
            await update.message.reply_text(f"Auto-trade is {state}. Usage: /autotrade on|off")
            return
        await self._run_skill(update, "toggle_autotrade", {"enabled": arg == "on"})

    async def cmd_settings(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        if not context.args:
            s = self._ledger.settings
            await update.message.reply_text(
                "Current settings:\n"
                f"max_market_cap={s.max_market_cap:g}\n"
                f"buy_amount={s.max_buy_amount}\n"
                f"take_profit_pct={s.take_profit_pct:g}\n"
                f"stop_loss_pct={s.stop_loss_pct:g}\n"
                f"scan_interval_min={s.scan_interval_min}\n"
                f"max_open_positions={s.max_open_positions}\n\n"
                "Change with /settings key=value [key=value ...]"
            )
            return

        updates, rejected = parse_settings_args(context.args)
        if rejected:
            await update.message.reply_text(
                f"Unrecognized: {' '.join(rejected)}\n"
                f"Known keys: {', '.join(SETTING_PARAMS)}"
            )
            return
        await self._run_skill(update, "update_trading_settings", updates)

    async def cmd_learnings(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        learnings = self._ledger.learnings[-15:]
        if not learnings:
            await update.message.reply_text("No learnings yet.")
            return
        await self._send_long(update, "Recent learnings:\n" + "\n".join(learnings))

    async def on_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Route free text to the brain."""
        if not self._authorized(update):
            return
        if self._brain is None:
            await update.message.reply_text("Chat is not available. Try /help for commands.")
            return
        user = update.effective_user
        name = user.first_name if user and user.first_name else "trader"
        reply = await self._brain.process_message(str(update.effective_chat.id), name, update.message.text)
        await self._send_long(update, reply)
