"""Open-trade firewall: every precondition a bot trade must pass before funds move."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from bottrade.infrastructure.utils.config import BotTradeSettings
from bottrade.models.errors import (
    AmountOutOfRange,
    BotTradeError,
    DailyLimitReached,
    InsufficientCoinSelection,
    InsufficientFunds,
)


@dataclass(frozen=True)
class OpenRequestSnapshot:
    main_balance: Decimal
    invest_amount: Decimal
    trades_today: int
    coin_count: int


@dataclass(frozen=True)
class RiskDecision:
    allowed: bool
    reason: str
    error: Optional[BotTradeError] = None


class RiskFirewall:
    """Checks run in a fixed order; the first failing check decides.

    A zero or negative amount passes the funds check and is caught by the range
    check, since min_trade_amount is always positive.
    """

    def __init__(self, settings: BotTradeSettings) -> None:
        self.min_trade_amount = settings.min_trade_amount
        self.max_trade_amount = settings.max_trade_amount
        self.daily_trade_limit = settings.daily_trade_limit
        self.min_coins = settings.min_coins

    def check(self, snapshot: OpenRequestSnapshot) -> RiskDecision:
        amount = snapshot.invest_amount

        if snapshot.main_balance < amount:
            return RiskDecision(
                False,
                f"insufficient_funds balance={snapshot.main_balance}",
                InsufficientFunds(snapshot.main_balance, amount),
            )

        if snapshot.trades_today >= self.daily_trade_limit:
            return RiskDecision(False, "daily_trade_limit_reached", DailyLimitReached(self.daily_trade_limit))

        if snapshot.coin_count < self.min_coins:
            return RiskDecision(
                False,
                f"not_enough_coins coins={snapshot.coin_count}",
                InsufficientCoinSelection(snapshot.coin_count, self.min_coins),
            )

        if not (self.min_trade_amount <= amount <= self.max_trade_amount):
            return RiskDecision(
                False,
                "amount_out_of_range",
                AmountOutOfRange(amount, self.min_trade_amount, self.max_trade_amount),
            )

        return RiskDecision(True, "ok")
