"""Opening bot trades: validation plus the main -> bot balance move."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, List, Optional, Tuple

from bottrade.infrastructure.logging.logging import get_logger, trade_context
from bottrade.infrastructure.storage.sqlite_repository import SQLiteRepository
from bottrade.infrastructure.utils.config import BotTradeSettings
from bottrade.infrastructure.utils.timeutils import start_of_utc_day, utc_now
from bottrade.models.errors import AmountOutOfRange, InvalidTradeTimer, TradingSuspended, UnknownCoin
from bottrade.models.trade_models import BotTrade, TradeOutcome, TradeStatus
from bottrade.services.risk.killswitch import KillSwitch
from bottrade.services.risk.risk_firewall import OpenRequestSnapshot, RiskFirewall


def to_amount(value: Any) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise AmountOutOfRange(value) from None
    if not amount.is_finite():
        raise AmountOutOfRange(amount)
    return amount


def to_timer_hours(value: Any) -> int:
    if isinstance(value, bool):
        raise InvalidTradeTimer(value)
    try:
        hours = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidTradeTimer(value) from None
    if not hours.is_finite() or hours <= 0 or hours != hours.to_integral_value():
        raise InvalidTradeTimer(value)
    return int(hours)


def normalize_coins(coins: Iterable[str]) -> Tuple[str, ...]:
    """Upper-case, strip and de-duplicate symbols, keeping selection order."""
    out: List[str] = []
    for c in coins:
        sym = str(c).strip().upper()
        if sym and sym not in out:
            out.append(sym)
    return tuple(out)


class TradeOpener:
    def __init__(
        self,
        repo: SQLiteRepository,
        *,
        settings_provider: Callable[[], BotTradeSettings],
        killswitch: Optional[KillSwitch] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repo = repo
        self.settings_provider = settings_provider
        self.killswitch = killswitch
        self.clock = clock
        self.log = get_logger("trade_opener")

    def open_trade(
        self,
        owner_id: str,
        invest_amount: Any,
        coins: Iterable[str],
        timer_hours: Any,
    ) -> BotTrade:
        with trade_context(owner_id):
            if self.killswitch is not None and self.killswitch.enabled:
                self.log.warning("open_trade_suspended", reason=self.killswitch.state.reason)
                raise TradingSuspended(self.killswitch.state.reason)

            amount = to_amount(invest_amount)
            hours = to_timer_hours(timer_hours)
            symbols = normalize_coins(coins)

            settings = self.settings_provider()
            firewall = RiskFirewall(settings)
            now = self.clock()

            with self.repo.transaction():
                catalog = self.repo.get_tokens(symbols)
                unavailable = [s for s in symbols if s not in catalog or not catalog[s].is_active]
                if unavailable:
                    self.log.warning("open_trade_unknown_coins", coins=unavailable)
                    raise UnknownCoin(unavailable)

                balances = self.repo.get_balances(owner_id)
                trades_today = self.repo.count_trades_since(owner_id, start_of_utc_day(now))

                decision = firewall.check(
                    OpenRequestSnapshot(
                        main_balance=balances.main_balance,
                        invest_amount=amount,
                        trades_today=trades_today,
                        coin_count=len(symbols),
                    )
                )
                if not decision.allowed:
                    self.log.warning("open_trade_blocked", reason=decision.reason)
                    assert decision.error is not None
                    raise decision.error

                trade = BotTrade(
                    id=uuid.uuid4().hex,
                    owner_id=owner_id,
                    invest_amount=amount,
                    coins=symbols,
                    timer_hours=hours,
                    open_time=now,
                    profit_percent=settings.profit_percent_for(hours),
                    status=TradeStatus.ACTIVE,
                    profit_or_lose=TradeOutcome.PENDING,
                )
                self.repo.insert_trade(trade)
                self.repo.adjust_balances(owner_id, main_delta=-amount, bot_delta=amount)
                self.repo.log_event(
                    ts=now.isoformat(),
                    level="INFO",
                    type="trade_open",
                    message=f"Bot trade opened with {len(symbols)} coins",
                    data={
                        "trade_id": trade.id,
                        "owner_id": owner_id,
                        "invest_amount": str(amount),
                        "timer_hours": hours,
                        "profit_percent": str(trade.profit_percent),
                        "coins": list(symbols),
                    },
                )

            self.log.info(
                "trade_opened",
                trade_id=trade.id,
                invest_amount=str(amount),
                coins=len(symbols),
                timer_hours=hours,
                profit_percent=str(trade.profit_percent),
            )
            return trade
