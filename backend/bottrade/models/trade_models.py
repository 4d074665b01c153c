"""Bot trade domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple


MONEY_QUANT = Decimal("0.01")
SHARE_QUANT = Decimal("0.000001")


class TradeStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class TradeOutcome(str, Enum):
    PENDING = "pending"
    PROFIT = "profit"
    LOSE = "lose"


class SettlementStatus(str, Enum):
    APPLIED = "applied"
    ALREADY_SETTLED = "already_settled"


class TokenStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass(frozen=True)
class BotToken:
    symbol: str
    name: str = ""
    image_url: Optional[str] = None
    status: TokenStatus = TokenStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == TokenStatus.ACTIVE


@dataclass(frozen=True)
class UserBalances:
    owner_id: str
    main_balance: Decimal = Decimal("0")
    bot_balance: Decimal = Decimal("0")


@dataclass
class BotTrade:
    id: str
    owner_id: str
    invest_amount: Decimal
    coins: Tuple[str, ...]
    timer_hours: int
    open_time: datetime
    profit_percent: Decimal
    status: TradeStatus = TradeStatus.ACTIVE
    profit_or_lose: TradeOutcome = TradeOutcome.PENDING
    return_amount: Optional[Decimal] = None
    profit: Decimal = Decimal("0")
    close_time: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.return_amount is None:
            self.return_amount = self.invest_amount

    @property
    def ends_at(self) -> datetime:
        return self.open_time + timedelta(hours=self.timer_hours)

    @property
    def is_active(self) -> bool:
        return self.status == TradeStatus.ACTIVE

    def is_eligible(self, now: datetime) -> bool:
        return now >= self.ends_at


@dataclass(frozen=True)
class CoinAllocation:
    coin: str
    invested_share: Decimal
    profit_share: Decimal

    @property
    def collected_share(self) -> Decimal:
        return self.invested_share + self.profit_share

    @property
    def is_profit(self) -> bool:
        return self.profit_share >= 0


@dataclass(frozen=True)
class Settlement:
    """Result of the pure settlement calculation (nothing persisted yet)."""

    outcome: TradeOutcome
    total_profit: Decimal
    return_amount: Decimal
    allocations: List[CoinAllocation] = field(default_factory=list)


@dataclass(frozen=True)
class SettlementReport:
    status: SettlementStatus
    trade: BotTrade
    settlement: Optional[Settlement] = None

    @property
    def applied(self) -> bool:
        return self.status == SettlementStatus.APPLIED


@dataclass(frozen=True)
class TradeProgress:
    trade_id: str
    progress_percent: int
    remaining_seconds: int
    remaining_display: str
    ready_to_close: bool
    ends_at: datetime


@dataclass
class SweepReport:
    settled: List[str] = field(default_factory=list)
    already_settled: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    pending: int = 0
    total_return: Decimal = Decimal("0")
    total_profit: Decimal = Decimal("0")

    @property
    def attempted(self) -> int:
        return len(self.settled) + len(self.already_settled) + len(self.failed)


@dataclass(frozen=True)
class CloseSummary:
    closed: int
    total_return: Decimal
    total_profit: Decimal
    failed: int = 0
