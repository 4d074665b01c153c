"""Per-owner lifecycle of running bot trades.

Each owner with active trades gets one asyncio task that, every tick,
re-reads the active trades, recomputes progress/remaining time for display and
settles whatever has become eligible. The task stops on its own once the owner
has no active trades left; ``ensure_running()`` starts it again after a new
trade is opened.
"""

from __future__ import annotations

import asyncio
import math
from contextlib import suppress
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from bottrade.infrastructure.logging.logging import get_logger
from bottrade.infrastructure.storage.sqlite_repository import SQLiteRepository
from bottrade.infrastructure.utils.timeutils import ensure_utc, format_hms, utc_now
from bottrade.models.errors import PersistenceFailure, TradeNotEligibleForSettlement
from bottrade.models.trade_models import (
    BotTrade,
    CloseSummary,
    SettlementReport,
    SettlementStatus,
    SweepReport,
    TradeProgress,
)
from bottrade.services.trading.applier import SettlementApplier
from bottrade.services.trading.settlement import remaining_seconds


READY_TO_CLOSE = "Ready to close"

SweepCallback = Callable[[str, SweepReport, int], None]


def compute_progress(trade: BotTrade, now: datetime) -> TradeProgress:
    now = ensure_utc(now)
    total = trade.timer_hours * 3600
    elapsed = (now - trade.open_time).total_seconds()
    fraction = min(max(elapsed / total, 0.0), 1.0)
    ready = trade.is_eligible(now)
    left = remaining_seconds(trade, now)
    return TradeProgress(
        trade_id=trade.id,
        progress_percent=int(math.floor(fraction * 100)),
        remaining_seconds=left,
        remaining_display=READY_TO_CLOSE if ready else format_hms(left),
        ready_to_close=ready,
        ends_at=trade.ends_at,
    )


class TradeLifecycleManager:
    def __init__(
        self,
        owner_id: str,
        repo: SQLiteRepository,
        applier: SettlementApplier,
        *,
        tick_interval_seconds: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
        on_sweep: Optional[SweepCallback] = None,
    ) -> None:
        self.owner_id = owner_id
        self.repo = repo
        self.applier = applier
        self.tick_interval_seconds = tick_interval_seconds
        self.clock = clock
        self.on_sweep = on_sweep
        self.log = get_logger("lifecycle", owner_id=owner_id)

        self._task: Optional[asyncio.Task] = None
        self._rearm = False
        self._inflight: Dict[str, asyncio.Future] = {}
        self._active: List[BotTrade] = []
        self._progress: Dict[str, TradeProgress] = {}
        self.failures: Dict[str, int] = {}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def busy(self) -> bool:
        return bool(self._inflight)

    @property
    def progress(self) -> List[TradeProgress]:
        """Progress as of the latest tick."""
        return list(self._progress.values())

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def refresh(self) -> List[TradeProgress]:
        trades = await asyncio.to_thread(self.repo.list_active_trades, self.owner_id)
        now = self.clock()
        self._active = trades
        self._progress = {t.id: compute_progress(t, now) for t in trades}
        return self.progress

    async def _settle_once(self, trade_id: str) -> SettlementReport:
        """Single-flight: concurrent callers for the same trade share one settlement."""
        fut = self._inflight.get(trade_id)
        if fut is None:
            fut = asyncio.ensure_future(
                asyncio.to_thread(self.applier.apply_settlement, trade_id, self.owner_id)
            )
            self._inflight[trade_id] = fut
            fut.add_done_callback(lambda _f, tid=trade_id: self._inflight.pop(tid, None))
        return await asyncio.shield(fut)

    async def close_trade(self, trade_id: str) -> SettlementReport:
        """Manual close. Raises TradeNotEligibleForSettlement before the timer ends."""
        report = await self._settle_once(trade_id)
        if report.applied:
            self.failures.pop(trade_id, None)
        await self.refresh()
        return report

    async def sweep(self) -> SweepReport:
        await self.refresh()
        now = self.clock()
        report = SweepReport()

        for trade in list(self._active):
            if not trade.is_eligible(now):
                report.pending += 1
                continue
            try:
                result = await self._settle_once(trade.id)
            except TradeNotEligibleForSettlement:
                report.pending += 1
                continue
            except PersistenceFailure as e:
                # left active; the next tick retries
                self.failures[trade.id] = self.failures.get(trade.id, 0) + 1
                report.failed.append(trade.id)
                self.log.error(
                    "settlement_failed",
                    trade_id=trade.id,
                    error=str(e),
                    attempts=self.failures[trade.id],
                )
                await self._journal_failure(trade.id, e)
                continue

            self.failures.pop(trade.id, None)
            if result.status == SettlementStatus.APPLIED:
                report.settled.append(trade.id)
                report.total_return += result.trade.return_amount or Decimal("0")
                report.total_profit += result.trade.profit
            else:
                report.already_settled.append(trade.id)

        if report.settled or report.already_settled:
            await self.refresh()

        if self.on_sweep is not None:
            self.on_sweep(self.owner_id, report, len(self._active))
        return report

    async def close_ready(self) -> CloseSummary:
        """Close every trade whose timer has ended."""
        report = await self.sweep()
        return CloseSummary(
            closed=len(report.settled),
            total_return=report.total_return,
            total_profit=report.total_profit,
            failed=len(report.failed),
        )

    async def _journal_failure(self, trade_id: str, error: PersistenceFailure) -> None:
        try:
            await asyncio.to_thread(
                self.repo.log_event,
                ts=self.clock().isoformat(),
                level="ERROR",
                type="settlement_error",
                message="Bot trade settlement failed, will retry",
                data={"trade_id": trade_id, "owner_id": self.owner_id, "error": str(error)},
            )
        except PersistenceFailure as e:
            self.log.error("journal_write_failed", trade_id=trade_id, error=str(e))

    # ---- scheduled task ----
    def ensure_running(self) -> bool:
        """Start the tick loop if it is not running. Must be called from the event loop."""
        if self.running:
            # a trade opened mid-sweep keeps the loop alive for another tick
            self._rearm = True
            return False
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"bot-trade-lifecycle:{self.owner_id}"
        )
        return True

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        self._task = None

    async def _run(self) -> None:
        self.log.info("lifecycle_started", tick_interval=self.tick_interval_seconds)
        try:
            while True:
                self._rearm = False
                try:
                    await self.sweep()
                except Exception as e:
                    self.log.error("lifecycle_tick_failed", error=str(e), error_type=type(e).__name__)
                else:
                    if not self._active and not self._rearm:
                        self.log.info("lifecycle_idle_stop")
                        return
                await asyncio.sleep(self.tick_interval_seconds)
        finally:
            if self._task is asyncio.current_task():
                self._task = None


class LifecycleRegistry:
    """One lifecycle manager per owner."""

    def __init__(
        self,
        repo: SQLiteRepository,
        applier: SettlementApplier,
        *,
        tick_interval_seconds: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
        on_sweep: Optional[SweepCallback] = None,
    ) -> None:
        self.repo = repo
        self.applier = applier
        self.tick_interval_seconds = tick_interval_seconds
        self.clock = clock
        self.on_sweep = on_sweep
        self._managers: Dict[str, TradeLifecycleManager] = {}

    @property
    def managers(self) -> Dict[str, TradeLifecycleManager]:
        return dict(self._managers)

    def get(self, owner_id: str) -> TradeLifecycleManager:
        mgr = self._managers.get(owner_id)
        if mgr is None:
            self.prune()
            mgr = TradeLifecycleManager(
                owner_id,
                self.repo,
                self.applier,
                tick_interval_seconds=self.tick_interval_seconds,
                clock=self.clock,
                on_sweep=self.on_sweep,
            )
            self._managers[owner_id] = mgr
        return mgr

    def prune(self) -> int:
        """Drop managers with no loop and no settlement in flight."""
        idle = [oid for oid, m in self._managers.items() if not m.running and not m.busy]
        for oid in idle:
            del self._managers[oid]
        return len(idle)

    async def resume(self) -> int:
        """Start managers for every owner that has active trades. Returns how many were started."""
        owners = await asyncio.to_thread(self.repo.list_owners_with_active_trades)
        started = 0
        for owner_id in owners:
            if self.get(owner_id).ensure_running():
                started += 1
        return started

    async def stop_all(self) -> None:
        for mgr in list(self._managers.values()):
            await mgr.stop()
