"""Ledger store for the process-wide trade, settings and learnings document.

The ledger is read whole at startup and written whole after every mutation.
`load` fails soft: a missing or unreadable document yields a fresh ledger.
`save` fails loud: storage errors propagate as LedgerPersistError so the
caller can log or retry. The in-memory ledger stays authoritative either way.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

import structlog

from tradeagent.shell.database import Database
from tradeagent.shell.errors import LedgerPersistError
from tradeagent.shell.models import Ledger, Settings
from tradeagent.trading.performance import refresh_stats

log = structlog.get_logger()


def serialize(ledger: Ledger) -> str:
    return json.dumps(ledger.to_dict(), indent=2, sort_keys=True)


class LedgerStore:
    def __init__(self, db: Database, defaults: Settings | None = None) -> None:
        self._db = db
        self._defaults = defaults or Settings()

    def new_ledger(self) -> Ledger:
        return Ledger(settings=Settings.from_dict({}, self._defaults))

    async def read_document(self) -> str | None:
        row = await self._db.fetchone("SELECT document FROM ledger WHERE id = 1")
        return row["document"] if row else None

    async def load(self) -> Ledger:
        try:
            document = await self.read_document()
            if document is None:
                log.info("ledger.initialized", reason="no prior state")
                return self.new_ledger()
            ledger = Ledger.from_dict(json.loads(document), self._defaults)
        except Exception as e:
            log.error("ledger.load_failed", error=str(e), fallback="fresh ledger")
            return self.new_ledger()

        log.info("ledger.loaded", trades=len(ledger.trades), learnings=len(ledger.learnings))
        return ledger

    async def save(self, ledger: Ledger) -> None:
        refresh_stats(ledger)
        document = serialize(ledger)
        try:
            await self._db.execute(
                """INSERT INTO ledger (id, document, updated_at) VALUES (1, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET document = excluded.document,
                                                 updated_at = excluded.updated_at""",
                (document, datetime.now(timezone.utc).isoformat()),
            )
            await self._db.commit()
        except Exception as e:
            log.error("ledger.save_failed", error=str(e))
            raise LedgerPersistError(f"Ledger flush failed: {e}") from e
