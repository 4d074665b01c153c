"""Settlement calculation for bot trades (pure, no I/O).

Outcome odds depend on the configured bot profit mode. The profit percentage is
applied once to the whole invested amount, then the result is split across
the selected coins with a Dirichlet-style weighting. Every split is exact: all
shares but the last are quantized and the last share takes the residual.
"""

from __future__ import annotations

import math
import random
from datetime import datetime
from decimal import ROUND_DOWN, ROUND_HALF_EVEN, ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Sequence

from bottrade.infrastructure.utils.timeutils import ensure_utc
from bottrade.models.errors import TradeNotEligibleForSettlement
from bottrade.models.trade_models import (
    MONEY_QUANT,
    SHARE_QUANT,
    BotTrade,
    CoinAllocation,
    Settlement,
    TradeOutcome,
)


WIN_PROBABILITY: Dict[str, float] = {
    "profit": 0.85,
    "lose": 0.15,
}
DEFAULT_WIN_PROBABILITY = 0.50

DIRICHLET_ALPHA = 2.0

_system_rng = random.SystemRandom()


def win_probability(bot_profit_mode: Optional[str]) -> float:
    return WIN_PROBABILITY.get(str(bot_profit_mode or "").strip().lower(), DEFAULT_WIN_PROBABILITY)


def draw_outcome(bot_profit_mode: Optional[str], rng: random.Random) -> TradeOutcome:
    return TradeOutcome.PROFIT if rng.random() < win_probability(bot_profit_mode) else TradeOutcome.LOSE


def profit_magnitude(invest_amount: Decimal, profit_percent: Decimal) -> Decimal:
    """|profit| for a trade. Independent of how many coins were picked."""
    return (invest_amount * profit_percent / Decimal(100)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def split_equally(amount: Decimal, parts: int) -> List[Decimal]:
    if parts <= 0:
        return []
    base = (amount / parts).quantize(SHARE_QUANT, rounding=ROUND_DOWN)
    return [base] * (parts - 1) + [amount - base * (parts - 1)]


def coin_weight(trade_id: str, coin: str, index: int) -> float:
    """Gamma-distributed weight, deterministic in (trade_id, coin, index)."""
    rng = random.Random(f"{trade_id}:{coin}:{index}")
    return rng.gammavariate(DIRICHLET_ALPHA, 1.0)


def distribute(total: Decimal, weights: Sequence[float]) -> List[Decimal]:
    """Split ``total`` proportionally to ``weights``; the shares sum to ``total`` exactly."""
    if not weights:
        return []
    if total == 0:
        return [Decimal("0")] * len(weights)

    weight_sum = sum(Decimal(w) for w in weights)
    if weight_sum <= 0:
        return split_equally(total, len(weights))

    shares = [
        (total * Decimal(w) / weight_sum).quantize(SHARE_QUANT, rounding=ROUND_HALF_EVEN)
        for w in weights[:-1]
    ]
    shares.append(total - sum(shares, Decimal("0")))
    return shares


def allocate(trade: BotTrade, total_profit: Decimal) -> List[CoinAllocation]:
    coins = list(trade.coins)
    invested = split_equally(trade.invest_amount, len(coins))
    weights = [coin_weight(trade.id, coin, i) for i, coin in enumerate(coins)]
    profits = distribute(total_profit, weights)
    return [
        CoinAllocation(coin=coin, invested_share=inv, profit_share=prof)
        for coin, inv, prof in zip(coins, invested, profits)
    ]


def remaining_seconds(trade: BotTrade, now: datetime) -> int:
    left = (trade.ends_at - ensure_utc(now)).total_seconds()
    return max(0, math.ceil(left))


def settle(
    trade: BotTrade,
    bot_profit_mode: Optional[str],
    *,
    now: datetime,
    rng: Optional[random.Random] = None,
) -> Settlement:
    """Decide the outcome of an elapsed trade and compute its payout.

    Raises TradeNotEligibleForSettlement while the trade timer is still running.
    """
    now = ensure_utc(now)
    if not trade.is_eligible(now):
        raise TradeNotEligibleForSettlement(trade.id, remaining_seconds(trade, now))

    outcome = draw_outcome(bot_profit_mode, rng or _system_rng)
    magnitude = profit_magnitude(trade.invest_amount, trade.profit_percent)
    total_profit = magnitude if outcome == TradeOutcome.PROFIT or magnitude == 0 else -magnitude

    return Settlement(
        outcome=outcome,
        total_profit=total_profit,
        return_amount=trade.invest_amount + total_profit,
        allocations=allocate(trade, total_profit),
    )
