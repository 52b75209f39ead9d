"""Notifier that pushes trade events to the operator's Telegram chat.

Delivery is best-effort: a failed send is retried with backoff and then
logged. Callers never see an exception from here.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from telegram.ext import Application

log = structlog.get_logger()

TELEGRAM_MAX_LEN = 4096


class Notifier:
    def __init__(self, chat_id: str, app: Application | None = None, retries: int = 3) -> None:
        self._chat_id = chat_id
        self._app = app
        self._retries = retries

    def set_app(self, app: Application | None) -> None:
        self._app = app

    @property
    def enabled(self) -> bool:
        return bool(self._app and self._chat_id)

    async def notify(self, text: str) -> bool:
        """Send `text` to the configured chat. Returns True if delivered."""
        if not self.enabled:
            log.debug("notifier.skipped", reason="no app or chat id")
            return False
        for attempt in range(self._retries):
            try:
                await self._app.bot.send_message(chat_id=self._chat_id, text=text[:TELEGRAM_MAX_LEN])
                return True
            except Exception as e:
                if attempt < self._retries - 1:
                    log.warning("notifier.send_retry", attempt=attempt + 1, error=str(e))
                    await asyncio.sleep(2 ** attempt)
                else:
                    log.error("notifier.send_failed", error=str(e))
        return False
