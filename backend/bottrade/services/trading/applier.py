"""Applying a settlement to the store, exactly once per trade."""

from __future__ import annotations

import random
from datetime import datetime
from typing import Callable, Optional

from bottrade.infrastructure.logging.logging import get_logger, trade_context
from bottrade.infrastructure.storage.sqlite_repository import SQLiteRepository
from bottrade.infrastructure.utils.config import BotTradeSettings
from bottrade.infrastructure.utils.timeutils import utc_now
from bottrade.models.errors import TradeNotFound
from bottrade.models.trade_models import SettlementReport, SettlementStatus, TradeStatus
from bottrade.services.trading.settlement import settle


class SettlementApplier:
    """Settles one trade inside a single transaction.

    The status flip is a compare-and-swap on ``status = 'active'`` so that two
    sessions racing on the same trade settle it once; the loser gets an
    ALREADY_SETTLED report and moves no money.
    """

    def __init__(
        self,
        repo: SQLiteRepository,
        *,
        settings_provider: Callable[[], BotTradeSettings],
        clock: Callable[[], datetime] = utc_now,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.repo = repo
        self.settings_provider = settings_provider
        self.clock = clock
        self.rng = rng
        self.log = get_logger("settlement_applier")

    def apply_settlement(self, trade_id: str, owner_id: Optional[str] = None) -> SettlementReport:
        with self.repo.transaction():
            trade = self.repo.get_trade(trade_id, owner_id)
            if trade is None:
                raise TradeNotFound(trade_id)

            with trade_context(trade.owner_id, trade.id):
                if trade.status == TradeStatus.COMPLETED:
                    self.log.info("settlement_skipped_already_settled")
                    return SettlementReport(SettlementStatus.ALREADY_SETTLED, trade)

                now = self.clock()
                mode = self.settings_provider().bot_profit_mode
                result = settle(trade, mode, now=now, rng=self.rng)

                swapped = self.repo.complete_trade(
                    trade.id,
                    outcome=result.outcome,
                    profit=result.total_profit,
                    return_amount=result.return_amount,
                    close_time=now,
                )
                if not swapped:
                    self.log.info("settlement_lost_race")
                    current = self.repo.get_trade(trade.id) or trade
                    return SettlementReport(SettlementStatus.ALREADY_SETTLED, current)

                # the invested amount leaves bot balance; profit/loss only ever touches main
                self.repo.adjust_balances(
                    trade.owner_id,
                    main_delta=result.return_amount,
                    bot_delta=-trade.invest_amount,
                )
                self.repo.log_event(
                    ts=now.isoformat(),
                    level="INFO",
                    type="trade_close",
                    message=f"Bot trade settled ({result.outcome.value})",
                    data={
                        "trade_id": trade.id,
                        "owner_id": trade.owner_id,
                        "bot_profit_mode": mode,
                        "outcome": result.outcome.value,
                        "profit": str(result.total_profit),
                        "return_amount": str(result.return_amount),
                    },
                )

                trade.status = TradeStatus.COMPLETED
                trade.profit_or_lose = result.outcome
                trade.profit = result.total_profit
                trade.return_amount = result.return_amount
                trade.close_time = now

                self.log.info(
                    "trade_settled",
                    outcome=result.outcome.value,
                    profit=str(result.total_profit),
                    return_amount=str(result.return_amount),
                )
                return SettlementReport(SettlementStatus.APPLIED, trade, result)
