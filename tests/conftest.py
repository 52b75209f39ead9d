"""Shared fixtures: a throwaway SQLite ledger and scriptable collaborators."""

import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio

from tradeagent.shell.database import Database
from tradeagent.shell.execution import ActionExecutor
from tradeagent.shell.ledger import LedgerStore
from tradeagent.shell.models import Settings


class RecordingBackend:
    """Execution backend that records calls and answers from a script."""

    def __init__(self, answer=None, delay: float = 0.0):
        self.calls: list[tuple[str, dict]] = []
        self.answer = answer if answer is not None else {"status": "filled"}
        self.delay = delay

    async def invoke(self, action_name, args):
        self.calls.append((action_name, dict(args)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.answer, Exception):
            raise self.answer
        return self.answer


class FakeNotifier:
    def __init__(self):
        self.messages: list[str] = []

    async def notify(self, text):
        self.messages.append(text)
        return True


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "agent.db"))
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def settings():
    return Settings(
        max_market_cap=40000.0,
        max_buy_amount=Decimal("5"),
        take_profit_pct=100.0,
        stop_loss_pct=30.0,
        scan_interval_min=30,
        max_open_positions=3,
        auto_trade_enabled=False,
    )


@pytest_asyncio.fixture
async def store(db, settings):
    return LedgerStore(db, settings)


@pytest_asyncio.fixture
async def ledger(store):
    return await store.load()


@pytest.fixture
def backend():
    return RecordingBackend()


@pytest.fixture
def executor(backend):
    return ActionExecutor(backend, timeout=5)


@pytest.fixture
def notifier():
    return FakeNotifier()
