"""Autonomous trading loop.

A single APScheduler interval job drives `tick()`. Each tick re-reads the
live settings: with auto-trade off it returns immediately without touching
any external service. A tick that fires while the previous one is still
running is skipped, never queued.
"""

from __future__ import annotations

import time
from enum import Enum

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tradeagent.shell.ledger import LedgerStore
from tradeagent.shell.models import MIN_SCAN_INTERVAL_MIN, Ledger
from tradeagent.trading.positions import Notify, PositionManager
from tradeagent.trading.scanner import MarketScanner, ScanReport

log = structlog.get_logger()

JOB_ID = "autotrade"


class TickState(Enum):
    IDLE = "idle"
    RUNNING = "running"


class AutoTrader:
    def __init__(
        self,
        ledger: Ledger,
        store: LedgerStore,
        scanner: MarketScanner,
        positions: PositionManager,
        scheduler: AsyncIOScheduler | None = None,
        notifier: Notify | None = None,
    ) -> None:
        self._ledger = ledger
        self._store = store
        self._scanner = scanner
        self._positions = positions
        self._scheduler = scheduler
        self._notifier = notifier
        self._state = TickState.IDLE
        self._last_tick_at: float | None = None
        self._last_report: ScanReport | None = None
        self._ticks_skipped = 0

    @property
    def state(self) -> TickState:
        return self._state

    @property
    def last_tick_at(self) -> float | None:
        return self._last_tick_at

    @property
    def interval_minutes(self) -> int:
        return max(MIN_SCAN_INTERVAL_MIN, int(self._ledger.settings.scan_interval_min))

    def start(self) -> None:
        """Register the interval job. The scheduler itself is started by the owner."""
        if self._scheduler is None:
            raise RuntimeError("AutoTrader has no scheduler")
        self._scheduler.add_job(
            self.tick, IntervalTrigger(minutes=self.interval_minutes),
            id=JOB_ID, name="Auto-Trade Scan",
            max_instances=1, coalesce=True, replace_existing=True,
        )
        log.info("autotrade.scheduled", interval_min=self.interval_minutes,
                 enabled=self._ledger.settings.auto_trade_enabled)

    def shutdown(self) -> None:
        if self._scheduler and self._scheduler.get_job(JOB_ID):
            self._scheduler.remove_job(JOB_ID)
            log.info("autotrade.unscheduled")

    async def tick(self) -> ScanReport | None:
        """One scheduled pass: monitor open positions, then scan for new ones."""
        if not self._ledger.settings.auto_trade_enabled:
            log.debug("autotrade.tick_skipped", reason="disabled")
            return None
        # Check-and-set with no await in between; the event loop makes this atomic
        if self._state is TickState.RUNNING:
            self._ticks_skipped += 1
            log.info("autotrade.tick_skipped", reason="previous tick in flight",
                     skipped=self._ticks_skipped)
            return None
        self._state = TickState.RUNNING

        log.info("autotrade.tick_start")
        try:
            closed = await self._positions.monitor_positions(self._scanner.fetch_price)
            report = await self._scanner.run_scan()
            self._last_report = report
            self._last_tick_at = time.time()

            if report.opened or report.failed:
                await self._notify("Auto-trade scan\n\n" + report.render(self._scanner.threshold))
            log.info("autotrade.tick_done", closed=len(closed), opened=len(report.opened))
            return report
        except Exception as e:
            # A tick must never take the scheduler down
            log.error("autotrade.tick_failed", error=str(e), type=type(e).__name__)
            return None
        finally:
            self._state = TickState.IDLE

    async def toggle_auto_trade(self, enabled: bool) -> str:
        self._ledger.settings.auto_trade_enabled = bool(enabled)
        await self._store.save(self._ledger)
        log.info("autotrade.toggled", enabled=bool(enabled))
        if enabled:
            return (
                f"Auto-trade ON. Scanning every {self.interval_minutes} min, "
                f"${self._ledger.settings.max_buy_amount} per trade, "
                f"max {self._ledger.settings.max_open_positions} open positions."
            )
        return "Auto-trade OFF. Open positions are kept; no new scans will run."

    async def update_settings(self, updates: dict) -> str:
        """Apply a partial settings update. Takes effect from the next tick."""
        try:
            applied = self._ledger.settings.apply(updates)
        except (ValueError, TypeError) as e:
            return f"Invalid setting: {e}"
        if not applied:
            return "No settings changed."

        await self._store.save(self._ledger)
        log.info("autotrade.settings_updated", **{k: str(v) for k, v in applied.items()})

        if "scan_interval_min" in applied:
            self._reschedule()

        changes = ", ".join(f"{k}={v}" for k, v in applied.items())
        return f"Settings updated: {changes}"

    def _reschedule(self) -> None:
        if self._scheduler is None or self._scheduler.get_job(JOB_ID) is None:
            return
        self._scheduler.reschedule_job(JOB_ID, trigger=IntervalTrigger(minutes=self.interval_minutes))
        log.info("autotrade.rescheduled", interval_min=self.interval_minutes)

    async def _notify(self, text: str) -> None:
        if not self._notifier:
            return
        try:
            await self._notifier.notify(text)
        except Exception as e:
            log.warning("autotrade.notify_failed", error=str(e))
