"""Bot trade service: the operations exposed to the API and the engine."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from bottrade.infrastructure.logging.logging import get_logger
from bottrade.infrastructure.storage.sqlite_repository import SQLiteRepository
from bottrade.infrastructure.utils.config import (
    BotTradeAppConfig,
    BotTradeSettings,
    BotTokenEntry,
    get_effective_bot_settings,
)
from bottrade.infrastructure.utils.timeutils import utc_now
from bottrade.models.errors import AmountOutOfRange, InsufficientFunds, TradeNotFound
from bottrade.models.trade_models import (
    BotToken,
    BotTrade,
    CloseSummary,
    CoinAllocation,
    SettlementReport,
    SweepReport,
    TradeProgress,
    TokenStatus,
    TradeStatus,
    UserBalances,
)
from bottrade.services.monitoring.metrics import MetricsSnapshot
from bottrade.services.monitoring.metrics_store import write_metrics
from bottrade.services.risk.killswitch import KillSwitch
from bottrade.services.trading.applier import SettlementApplier
from bottrade.services.trading.lifecycle import LifecycleRegistry, compute_progress
from bottrade.services.trading.opener import TradeOpener, to_amount
from bottrade.services.trading.settlement import allocate


@dataclass(frozen=True)
class TradeDetails:
    trade: BotTrade
    allocations: List[CoinAllocation]
    progress: Optional[TradeProgress]
    tokens: Dict[str, BotToken]


def token_from_entry(entry: BotTokenEntry) -> BotToken:
    return BotToken(
        symbol=entry.symbol,
        name=entry.name or entry.symbol,
        image_url=entry.image_url,
        status=TokenStatus(entry.status),
    )


class BotTradeService:
    def __init__(
        self,
        repo: SQLiteRepository,
        *,
        settings_provider: Callable[[], BotTradeSettings],
        killswitch: Optional[KillSwitch] = None,
        tick_interval_seconds: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
        metrics: Optional[MetricsSnapshot] = None,
        metrics_path: Optional[Path] = None,
        applier: Optional[SettlementApplier] = None,
    ) -> None:
        self.repo = repo
        self.settings_provider = settings_provider
        self.killswitch = killswitch
        self.clock = clock
        self.metrics = metrics or MetricsSnapshot()
        self.metrics_path = metrics_path
        self.log = get_logger("bot_trade_service")

        self.opener = TradeOpener(repo, settings_provider=settings_provider, killswitch=killswitch, clock=clock)
        self.applier = applier or SettlementApplier(repo, settings_provider=settings_provider, clock=clock)
        self.registry = LifecycleRegistry(
            repo,
            self.applier,
            tick_interval_seconds=tick_interval_seconds,
            clock=clock,
            on_sweep=self._on_sweep,
        )

    @classmethod
    def from_config(cls, config: BotTradeAppConfig) -> "BotTradeService":
        repo = SQLiteRepository(Path(config.database.path))
        repo.seed_tokens(token_from_entry(e) for e in config.bot_tokens)
        return cls(
            repo,
            settings_provider=lambda: get_effective_bot_settings(config),
            killswitch=KillSwitch(Path(config.kill_switch.state_path)),
            tick_interval_seconds=config.lifecycle.tick_interval_seconds,
            metrics=MetricsSnapshot(environment=config.environment),
            metrics_path=Path(config.monitoring.metrics_path),
        )

    def _on_sweep(self, owner_id: str, report: SweepReport, active_after: int) -> None:
        self.metrics.record_sweep(owner_id, report, active_after)
        if report.settled or report.failed:
            self.log.info(
                "sweep_done",
                owner_id=owner_id,
                settled=len(report.settled),
                failed=len(report.failed),
                pending=report.pending,
            )
        if self.metrics_path is not None:
            try:
                write_metrics(self.metrics_path, self.metrics.to_dict())
            except OSError as e:
                self.log.warning("metrics_write_failed", error=str(e))

    # ---- trades ----
    async def open_trade(
        self,
        owner_id: str,
        invest_amount: Any,
        coins: Iterable[str],
        timer_hours: Any,
    ) -> BotTrade:
        trade = await asyncio.to_thread(self.opener.open_trade, owner_id, invest_amount, list(coins), timer_hours)
        self.registry.get(owner_id).ensure_running()
        return trade

    async def list_trades(
        self,
        owner_id: str,
        *,
        status: Optional[TradeStatus] = None,
        limit: int = 200,
    ) -> List[BotTrade]:
        return await asyncio.to_thread(self.repo.list_trades, owner_id, status=status, limit=limit)

    async def get_trade_details(self, owner_id: str, trade_id: str) -> TradeDetails:
        trade = await asyncio.to_thread(self.repo.get_trade, trade_id, owner_id)
        if trade is None:
            raise TradeNotFound(trade_id)
        tokens = await self.tokens_for(trade.coins)
        if trade.is_active:
            return TradeDetails(trade, allocate(trade, Decimal("0")), compute_progress(trade, self.clock()), tokens)
        return TradeDetails(trade, allocate(trade, trade.profit), None, tokens)

    async def progress(self, owner_id: str) -> List[TradeProgress]:
        return await self.registry.get(owner_id).refresh()

    async def close_trade(self, owner_id: str, trade_id: str) -> SettlementReport:
        return await self.registry.get(owner_id).close_trade(trade_id)

    async def close_ready(self, owner_id: str) -> CloseSummary:
        return await self.registry.get(owner_id).close_ready()

    # ---- token catalog ----
    async def list_tokens(self, *, active_only: bool = True) -> List[BotToken]:
        return await asyncio.to_thread(self.repo.list_tokens, active_only=active_only)

    async def tokens_for(self, symbols: Iterable[str]) -> Dict[str, BotToken]:
        return await asyncio.to_thread(self.repo.get_tokens, list(symbols))

    async def upsert_token(self, entry: BotTokenEntry) -> BotToken:
        token = token_from_entry(entry)
        await asyncio.to_thread(self.repo.upsert_token, token)
        await asyncio.to_thread(
            self.repo.log_event,
            ts=self.clock().isoformat(),
            level="INFO",
            type="token_update",
            message=f"Bot token {token.symbol} saved",
            data={"symbol": token.symbol, "status": token.status.value},
        )
        return token

    # ---- balances ----
    async def balances(self, owner_id: str) -> UserBalances:
        return await asyncio.to_thread(self.repo.get_balances, owner_id)

    async def credit_main(self, owner_id: str, amount: Any, note: str = "") -> UserBalances:
        """Admin credit (or debit, when negative) of an owner's main balance."""
        value = to_amount(amount)
        if value == 0:
            raise AmountOutOfRange(value)

        def _apply() -> UserBalances:
            with self.repo.transaction():
                current = self.repo.get_balances(owner_id)
                if current.main_balance + value < 0:
                    raise InsufficientFunds(current.main_balance, -value)
                balances = self.repo.adjust_balances(owner_id, main_delta=value)
                self.repo.log_event(
                    ts=self.clock().isoformat(),
                    level="INFO",
                    type="balance_adjust",
                    message="Main balance adjusted by admin",
                    data={"owner_id": owner_id, "amount": str(value), "note": note},
                )
            return balances

        balances = await asyncio.to_thread(_apply)
        self.log.info("main_balance_adjusted", owner_id=owner_id, amount=str(value))
        return balances

    # ---- lifecycle ----
    async def resume(self) -> int:
        return await self.registry.resume()

    async def shutdown(self) -> None:
        await self.registry.stop_all()
        self.repo.close()
