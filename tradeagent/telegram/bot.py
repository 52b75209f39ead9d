"""Telegram Bot — application setup and polling lifecycle."""

from __future__ import annotations

import structlog
from telegram.ext import Application, CommandHandler, MessageHandler, filters

from tradeagent.shell.config import TelegramConfig
from tradeagent.telegram.commands import BotCommands

log = structlog.get_logger()


class TelegramBot:
    def __init__(self, config: TelegramConfig, commands: BotCommands) -> None:
        self._config = config
        self._commands = commands
        self._app: Application | None = None

    def build(self) -> Application | None:
        """Build the application and register handlers. None when disabled."""
        if not self._config.enabled or not self._config.bot_token:
            log.info("telegram.disabled")
            return None

        app = Application.builder().token(self._config.bot_token).build()
        c = self._commands
        handlers = {
            "start": c.cmd_start,
            "help": c.cmd_help,
            "scan": c.cmd_scan,
            "positions": c.cmd_positions,
            "trades": c.cmd_trades,
            "performance": c.cmd_performance,
            "autotrade": c.cmd_autotrade,
            "settings": c.cmd_settings,
            "learnings": c.cmd_learnings,
        }
        for name, handler in handlers.items():
            app.add_handler(CommandHandler(name, handler))
        app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, c.on_text))

        self._app = app
        return app

    async def start(self) -> None:
        if self._app is None and self.build() is None:
            return
        await self._app.initialize()
        await self._app.start()
        await self._app.updater.start_polling(drop_pending_updates=True)
        log.info("telegram.started")

    async def stop(self) -> None:
        if self._app:
            await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()
            log.info("telegram.stopped")
