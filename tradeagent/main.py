"""Trade Agent — main entry point.

Wires the components, owns the scheduler, and runs until signalled.

Startup: load config -> connect DB -> load ledger -> build executor -> schedule auto-trade
         -> register skills -> connect AI -> start Telegram -> start scheduler
Shutdown: stop scheduler -> drain reflections -> stop Telegram -> close HTTP client -> close DB
"""

from __future__ import annotations

import asyncio
import signal

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from tradeagent.orchestrator.ai_client import AIClient
from tradeagent.orchestrator.brain import Brain
from tradeagent.shell.bankr import BankrClient
from tradeagent.shell.config import Config, load_config
from tradeagent.shell.database import Database
from tradeagent.shell.execution import ActionExecutor, BankrBackend, PaperBackend
from tradeagent.shell.ledger import LedgerStore
from tradeagent.shell.models import Ledger, Settings
from tradeagent.skills.registry import SkillRegistry
from tradeagent.skills.trading import register_trading_skills
from tradeagent.telegram.bot import TelegramBot
from tradeagent.telegram.commands import BotCommands
from tradeagent.telegram.notifications import Notifier
from tradeagent.trading.autotrader import AutoTrader
from tradeagent.trading.positions import PositionManager
from tradeagent.trading.scanner import MarketScanner
from tradeagent.utils.logging import setup_logging

log = structlog.get_logger()


def build_executor(config: Config, bankr: BankrClient) -> ActionExecutor:
    """Paper fills in paper mode, Bankr trade prompts in live mode."""
    if config.is_paper():
        return ActionExecutor(PaperBackend(), timeout=config.execution.timeout_seconds)
    # A live order is a polled job; the outer timeout must cover the whole poll
    timeout = max(config.execution.timeout_seconds, config.bankr.job_timeout)
    return ActionExecutor(BankrBackend(bankr), timeout=timeout)


class TradeAgent:
    """Main application — owns every component and their lifecycle."""

    def __init__(self, config: Config | None = None) -> None:
        self._config = config
        self._db: Database | None = None
        self._store: LedgerStore | None = None
        self._ledger: Ledger | None = None
        self._bankr: BankrClient | None = None
        self._notifier: Notifier | None = None
        self._positions: PositionManager | None = None
        self._scanner: MarketScanner | None = None
        self._autotrader: AutoTrader | None = None
        self._skills: SkillRegistry | None = None
        self._ai: AIClient | None = None
        self._brain: Brain | None = None
        self._telegram: TelegramBot | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._stop_event = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Full startup sequence. Returns once every component is up."""
        # 1. Config + logging
        if self._config is None:
            self._config = load_config()
        config = self._config
        setup_logging(config.log_level)
        log.info("agent.starting", mode=config.mode)

        # 2. Database + ledger
        self._db = Database(config.db_path)
        await self._db.connect()
        self._store = LedgerStore(self._db, Settings(**vars(config.trading)))
        self._ledger = await self._store.load()

        # 3. Collaborators
        self._bankr = BankrClient(config.bankr)
        if not self._bankr.configured:
            log.warning("bankr.disabled", reason="BANKR_API_KEY not set; scans and prices unavailable")
        executor = build_executor(config, self._bankr)
        self._notifier = Notifier(config.telegram.chat_id)

        # 4. Trading core
        self._positions = PositionManager(self._ledger, self._store, executor, self._notifier)
        self._scanner = MarketScanner(self._ledger, self._bankr, self._positions, config.scanner)
        self._scheduler = AsyncIOScheduler(timezone=config.timezone)
        self._autotrader = AutoTrader(
            self._ledger, self._store, self._scanner, self._positions,
            scheduler=self._scheduler, notifier=self._notifier,
        )
        self._autotrader.start()

        # 5. Skills
        self._skills = SkillRegistry()
        register_trading_skills(
            self._skills,
            ledger=self._ledger,
            positions=self._positions,
            scanner=self._scanner,
            autotrader=self._autotrader,
            research=self._bankr,
        )

        # 6. AI + brain
        self._ai = AIClient(config.ai, self._db)
        await self._ai.initialize()
        self._brain = Brain(self._ai, self._skills, self._ledger, self._store, config.brain)
        self._scheduler.add_job(
            self._ai.reset_daily_tokens, CronTrigger(hour=0, minute=0),
            id="token_reset", name="Daily Token Reset",
        )

        # 7. Telegram
        commands = BotCommands(config, self._ledger, self._skills, self._brain)
        self._telegram = TelegramBot(config.telegram, commands)
        app = self._telegram.build()
        self._notifier.set_app(app)
        await self._telegram.start()

        # 8. Scheduler
        self._scheduler.start()
        self._running = True
        log.info("agent.started", skills=len(self._skills),
                 open_positions=len(self._positions.open_positions),
                 auto_trade=self._ledger.settings.auto_trade_enabled)
        await self._notifier.notify(
            f"Trade agent online ({config.mode}). "
            f"Auto-trade {'ON' if self._ledger.settings.auto_trade_enabled else 'OFF'}, "
            f"{len(self._positions.open_positions)} open positions."
        )

    async def run_forever(self) -> None:
        await self._stop_event.wait()

    async def stop(self) -> None:
        """Graceful shutdown sequence."""
        log.info("agent.stopping")
        self._running = False

        if self._autotrader:
            self._autotrader.shutdown()
        if self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        if self._brain:
            await self._brain.wait_background()
        if self._telegram:
            try:
                await self._telegram.stop()
            except Exception as e:
                log.warning("shutdown.telegram_failed", error=str(e))
        if self._bankr:
            await self._bankr.close()
        if self._db:
            await self._db.close()

        self._stop_event.set()
        log.info("agent.stopped")


async def main() -> None:
    agent = TradeAgent()

    loop = asyncio.get_running_loop()
    _stop_task = None

    def signal_handler():
        nonlocal _stop_task
        if _stop_task is None:
            _stop_task = asyncio.create_task(agent.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await agent.start()
        await agent.run_forever()
    finally:
        if _stop_task is not None:
            await _stop_task
        else:
            await agent.stop()


def run() -> None:
    """Entry point for the console script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
