"""
Pytest fixtures for the bot trade backend.

Every test gets its own SQLite file under tmp_path and a controllable UTC
clock; nothing touches the real data/ directory.
"""
import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import List

import pytest

from bottrade.infrastructure.storage.sqlite_repository import SQLiteRepository
from bottrade.infrastructure.utils.config import BotTradeSettings, TimeProfitEntry
from bottrade.models.trade_models import BotToken, BotTrade
from bottrade.services.risk.killswitch import KillSwitch
from bottrade.services.trading.applier import SettlementApplier
from bottrade.services.trading.opener import TradeOpener


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


OWNER = "user-1"

COINS_10 = ["BTC", "ETH", "BNB", "SOL", "XRP", "ADA", "DOGE", "TRX", "DOT", "LTC"]


def seed_catalog(repo: SQLiteRepository) -> None:
    repo.seed_tokens(BotToken(symbol=s, name=s.title()) for s in COINS_10)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> BotTradeSettings:
    return BotTradeSettings(
        min_trade_amount=Decimal("10"),
        max_trade_amount=Decimal("5000"),
        daily_trade_limit=3,
        bot_profit_mode="profit",
        time_profit_table=[
            TimeProfitEntry(time_hours=1, profit_percentage=Decimal("10")),
            TimeProfitEntry(time_hours=6, profit_percentage=Decimal("15")),
            TimeProfitEntry(time_hours=24, profit_percentage=Decimal("20")),
        ],
    )


@pytest.fixture
def coins() -> List[str]:
    return list(COINS_10)


@pytest.fixture
def repo(tmp_path: Path):
    r = SQLiteRepository(tmp_path / "bot_trade.db")
    seed_catalog(r)
    yield r
    r.close()


@pytest.fixture
def funded_repo(repo: SQLiteRepository) -> SQLiteRepository:
    """Repository where OWNER has 1000 in main balance."""
    repo.adjust_balances(OWNER, main_delta=Decimal("1000"))
    return repo


@pytest.fixture
def killswitch(tmp_path: Path) -> KillSwitch:
    return KillSwitch(tmp_path / "killswitch.json")


@pytest.fixture
def opener(funded_repo, settings, clock, killswitch) -> TradeOpener:
    return TradeOpener(funded_repo, settings_provider=lambda: settings, killswitch=killswitch, clock=clock)


@pytest.fixture
def applier(funded_repo, settings, clock) -> SettlementApplier:
    return SettlementApplier(funded_repo, settings_provider=lambda: settings, clock=clock, rng=random.Random(7))


def make_trade(
    *,
    trade_id: str = "t-001",
    invest_amount: str = "100",
    coins: List[str] = None,
    timer_hours: int = 1,
    profit_percent: str = "10",
    open_time: datetime = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc),
) -> BotTrade:
    return BotTrade(
        id=trade_id,
        owner_id=OWNER,
        invest_amount=Decimal(invest_amount),
        coins=tuple(coins if coins is not None else COINS_10),
        timer_hours=timer_hours,
        open_time=open_time,
        profit_percent=Decimal(profit_percent),
    )
