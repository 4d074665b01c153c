"""
Tests for opening bot trades.
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from bottrade.models.errors import (
    AmountOutOfRange,
    DailyLimitReached,
    InsufficientCoinSelection,
    InsufficientFunds,
    InvalidTradeTimer,
    PersistenceFailure,
    TradingSuspended,
    UnknownCoin,
)
from bottrade.models.trade_models import BotToken, TokenStatus, TradeOutcome, TradeStatus
from bottrade.services.trading.opener import normalize_coins, to_timer_hours
from conftest import OWNER


def _balances(repo):
    b = repo.get_balances(OWNER)
    return b.main_balance, b.bot_balance


class TestOpenTrade:
    """Happy path: validation passes and funds move from main to bot."""

    def test_moves_funds_and_persists_trade(self, opener, funded_repo, coins, clock):
        trade = opener.open_trade(OWNER, "100", coins, 1)

        assert _balances(funded_repo) == (Decimal("900"), Decimal("100"))
        stored = funded_repo.get_trade(trade.id, OWNER)
        assert stored is not None
        assert stored.status == TradeStatus.ACTIVE
        assert stored.profit_or_lose == TradeOutcome.PENDING
        assert stored.profit == Decimal("0")
        assert stored.return_amount == Decimal("100")
        assert stored.open_time == clock.now
        assert stored.coins == tuple(coins)

    def test_profit_percent_from_table(self, opener, coins):
        assert opener.open_trade(OWNER, 50, coins, 6).profit_percent == Decimal("15")

    def test_profit_percent_falls_back_to_default(self, opener, coins, settings):
        trade = opener.open_trade(OWNER, 50, coins, 2)
        assert trade.profit_percent == settings.default_profit_percent

    def test_journals_open_event(self, opener, funded_repo, coins):
        trade = opener.open_trade(OWNER, 100, coins, 1)
        events = funded_repo.list_events()
        assert events[0]["type"] == "trade_open"
        assert events[0]["data"]["trade_id"] == trade.id

    def test_whole_balance_can_be_invested(self, opener, funded_repo, coins):
        opener.open_trade(OWNER, "1000", coins, 1)
        assert _balances(funded_repo) == (Decimal("0"), Decimal("1000"))


class TestCoinSelection:
    def test_eight_coins_is_enough(self, opener, coins):
        opener.open_trade(OWNER, 100, coins[:8], 1)

    def test_seven_coins_rejected(self, opener, funded_repo, coins):
        with pytest.raises(InsufficientCoinSelection) as exc:
            opener.open_trade(OWNER, 100, coins[:7], 1)
        assert exc.value.selected == 7
        assert exc.value.required == 8
        assert _balances(funded_repo) == (Decimal("1000"), Decimal("0"))

    def test_duplicates_collapse_before_count(self, opener, coins):
        selection = coins[:7] + [coins[0].lower()]
        with pytest.raises(InsufficientCoinSelection):
            opener.open_trade(OWNER, 100, selection, 1)

    def test_normalize_coins(self):
        assert normalize_coins([" btc", "ETH", "eth", "", "Sol"]) == ("BTC", "ETH", "SOL")

    def test_symbol_outside_catalog_rejected(self, opener, funded_repo, coins):
        with pytest.raises(UnknownCoin) as exc:
            opener.open_trade(OWNER, 100, coins[:9] + ["FAKE"], 1)
        assert exc.value.symbols == ("FAKE",)
        assert _balances(funded_repo) == (Decimal("1000"), Decimal("0"))

    def test_inactive_token_rejected_before_coin_count(self, opener, funded_repo, coins):
        funded_repo.upsert_token(BotToken(symbol="DOGE", name="Dogecoin", status=TokenStatus.INACTIVE))
        with pytest.raises(UnknownCoin) as exc:
            opener.open_trade(OWNER, 100, ["BTC", "doge"], 1)
        assert exc.value.symbols == ("DOGE",)

    def test_reactivated_token_accepted(self, opener, funded_repo, coins):
        funded_repo.upsert_token(BotToken(symbol="BTC", status=TokenStatus.INACTIVE))
        funded_repo.upsert_token(BotToken(symbol="BTC", name="Bitcoin"))
        opener.open_trade(OWNER, 100, coins, 1)


class TestOpenValidation:
    """Checks run in order and a rejected open moves no funds."""

    def test_insufficient_funds(self, opener, funded_repo, coins):
        with pytest.raises(InsufficientFunds):
            opener.open_trade(OWNER, "1000.01", coins, 1)
        assert _balances(funded_repo) == (Decimal("1000"), Decimal("0"))

    def test_funds_checked_before_coin_count(self, opener, coins):
        with pytest.raises(InsufficientFunds):
            opener.open_trade(OWNER, 2000, coins[:3], 1)

    def test_owner_without_balance_row(self, opener, coins):
        with pytest.raises(InsufficientFunds):
            opener.open_trade("nobody", 10, coins, 1)

    def test_daily_limit_before_coin_count(self, opener, coins):
        for _ in range(3):
            opener.open_trade(OWNER, 10, coins, 1)
        with pytest.raises(DailyLimitReached) as exc:
            opener.open_trade(OWNER, 10, coins[:2], 1)
        assert exc.value.limit == 3

    def test_daily_limit_resets_at_utc_midnight(self, opener, coins, clock):
        clock.now = datetime(2026, 3, 10, 23, 50, tzinfo=timezone.utc)
        for _ in range(3):
            opener.open_trade(OWNER, 10, coins, 1)
        with pytest.raises(DailyLimitReached):
            opener.open_trade(OWNER, 10, coins, 1)

        clock.advance(minutes=20)
        opener.open_trade(OWNER, 10, coins, 1)

    def test_completed_trades_still_count(self, opener, applier, coins, clock):
        for _ in range(3):
            trade = opener.open_trade(OWNER, 10, coins, 1)
        clock.advance(hours=1)
        applier.apply_settlement(trade.id, OWNER)
        with pytest.raises(DailyLimitReached):
            opener.open_trade(OWNER, 10, coins, 1)

    @pytest.mark.parametrize("amount", ["9.99", "5000.01"])
    def test_amount_outside_range(self, opener, funded_repo, coins, amount):
        funded_repo.adjust_balances(OWNER, main_delta=Decimal("10000"))
        with pytest.raises(AmountOutOfRange):
            opener.open_trade(OWNER, amount, coins, 1)

    @pytest.mark.parametrize("amount", [0, "-5", "abc", None, "NaN", "Infinity"])
    def test_invalid_amount(self, opener, coins, amount):
        with pytest.raises(AmountOutOfRange):
            opener.open_trade(OWNER, amount, coins, 1)

    @pytest.mark.parametrize("timer", [0, -1, 1.5, "soon", True, None])
    def test_invalid_timer(self, opener, funded_repo, coins, timer):
        with pytest.raises(InvalidTradeTimer):
            opener.open_trade(OWNER, 100, coins, timer)
        assert funded_repo.list_trades(OWNER) == []

    def test_timer_accepts_integral_values(self):
        assert to_timer_hours("12") == 12
        assert to_timer_hours(24.0) == 24


class TestSuspension:
    def test_killswitch_blocks_open(self, opener, funded_repo, killswitch, coins):
        killswitch.enable("maintenance window")
        with pytest.raises(TradingSuspended) as exc:
            opener.open_trade(OWNER, 100, coins, 1)
        assert "maintenance window" in exc.value.message
        assert funded_repo.list_trades(OWNER) == []

    def test_disable_resumes_trading(self, opener, killswitch, coins):
        killswitch.enable()
        killswitch.disable()
        opener.open_trade(OWNER, 100, coins, 1)


class TestAtomicity:
    def test_failed_balance_write_rolls_back_insert(self, opener, funded_repo, coins, monkeypatch):
        def boom(*args, **kwargs):
            raise PersistenceFailure("adjust_balances", RuntimeError("disk full"))

        monkeypatch.setattr(funded_repo, "adjust_balances", boom)
        with pytest.raises(PersistenceFailure):
            opener.open_trade(OWNER, 100, coins, 1)
        monkeypatch.undo()

        assert funded_repo.list_trades(OWNER) == []
        assert _balances(funded_repo) == (Decimal("1000"), Decimal("0"))
        assert [e["type"] for e in funded_repo.list_events()] == []
