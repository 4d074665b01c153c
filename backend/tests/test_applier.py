"""
Tests for applying settlements to the store.
"""
import random
import threading
from decimal import Decimal

import pytest

from bottrade.infrastructure.storage.sqlite_repository import SQLiteRepository
from bottrade.models.errors import PersistenceFailure, TradeNotEligibleForSettlement, TradeNotFound
from bottrade.models.trade_models import SettlementStatus, TradeOutcome, TradeStatus
from bottrade.services.trading.applier import SettlementApplier
from conftest import OWNER, seed_catalog


class _FixedRandom(random.Random):
    def __init__(self, value: float):
        super().__init__(0)
        self.value = value

    def random(self):
        return self.value


@pytest.fixture
def open_trade(opener, coins):
    return opener.open_trade(OWNER, "100", coins, 1)


class TestApplySettlement:
    def test_not_eligible_changes_nothing(self, applier, funded_repo, open_trade, clock):
        clock.advance(minutes=30)
        with pytest.raises(TradeNotEligibleForSettlement) as exc:
            applier.apply_settlement(open_trade.id, OWNER)
        assert exc.value.remaining_seconds == 1800

        stored = funded_repo.get_trade(open_trade.id)
        assert stored.status == TradeStatus.ACTIVE
        b = funded_repo.get_balances(OWNER)
        assert (b.main_balance, b.bot_balance) == (Decimal("900"), Decimal("100"))

    def test_profit_credits_main_and_releases_bot(self, funded_repo, settings, clock, open_trade):
        applier = SettlementApplier(funded_repo, settings_provider=lambda: settings, clock=clock, rng=_FixedRandom(0.0))
        clock.advance(hours=1)

        report = applier.apply_settlement(open_trade.id, OWNER)

        assert report.status == SettlementStatus.APPLIED
        assert report.trade.profit_or_lose == TradeOutcome.PROFIT
        assert report.trade.profit == Decimal("10.00")
        assert report.trade.return_amount == Decimal("110.00")
        assert report.trade.close_time == clock.now
        b = funded_repo.get_balances(OWNER)
        assert b.main_balance == Decimal("1010.00")
        assert b.bot_balance == Decimal("0")

    def test_loss_credits_less_than_invested(self, funded_repo, settings, clock, open_trade):
        applier = SettlementApplier(funded_repo, settings_provider=lambda: settings, clock=clock, rng=_FixedRandom(0.99))
        clock.advance(hours=2)

        report = applier.apply_settlement(open_trade.id)

        assert report.trade.profit_or_lose == TradeOutcome.LOSE
        assert report.trade.profit == Decimal("-10.00")
        b = funded_repo.get_balances(OWNER)
        assert (b.main_balance, b.bot_balance) == (Decimal("990.00"), Decimal("0"))

    def test_persisted_state_matches_report(self, applier, funded_repo, open_trade, clock):
        clock.advance(hours=1)
        report = applier.apply_settlement(open_trade.id, OWNER)
        stored = funded_repo.get_trade(open_trade.id)
        assert stored.status == TradeStatus.COMPLETED
        assert stored.profit == report.trade.profit
        assert stored.return_amount == stored.invest_amount + stored.profit
        assert funded_repo.list_events()[0]["type"] == "trade_close"

    def test_allocations_sum_to_profit(self, applier, open_trade, clock):
        clock.advance(hours=1)
        report = applier.apply_settlement(open_trade.id, OWNER)
        shares = [a.profit_share for a in report.settlement.allocations]
        assert sum(shares, Decimal("0")) == report.trade.profit

    def test_mode_read_at_settlement_time(self, funded_repo, settings, clock, open_trade):
        applier = SettlementApplier(funded_repo, settings_provider=lambda: settings, clock=clock, rng=_FixedRandom(0.5))
        settings.bot_profit_mode = "lose"
        clock.advance(hours=1)
        assert applier.apply_settlement(open_trade.id).trade.profit_or_lose == TradeOutcome.LOSE


class TestIdempotence:
    def test_second_settle_is_no_op(self, applier, funded_repo, open_trade, clock):
        clock.advance(hours=1)
        first = applier.apply_settlement(open_trade.id, OWNER)
        after_first = funded_repo.get_balances(OWNER)

        second = applier.apply_settlement(open_trade.id, OWNER)

        assert first.applied
        assert second.status == SettlementStatus.ALREADY_SETTLED
        assert second.settlement is None
        assert second.trade.profit == first.trade.profit
        assert funded_repo.get_balances(OWNER) == after_first

    def test_lost_compare_and_swap(self, applier, funded_repo, open_trade, clock, monkeypatch):
        clock.advance(hours=1)
        monkeypatch.setattr(funded_repo, "complete_trade", lambda *a, **kw: False)

        report = applier.apply_settlement(open_trade.id, OWNER)

        assert report.status == SettlementStatus.ALREADY_SETTLED
        b = funded_repo.get_balances(OWNER)
        assert (b.main_balance, b.bot_balance) == (Decimal("900"), Decimal("100"))

    def test_two_sessions_race(self, tmp_path, settings, clock, coins):
        """Two connections to the same file settle the trade exactly once."""
        db = tmp_path / "race.db"
        repo_a = SQLiteRepository(db)
        repo_b = SQLiteRepository(db)
        try:
            seed_catalog(repo_a)
            repo_a.adjust_balances(OWNER, main_delta=Decimal("500"))
            from bottrade.services.trading.opener import TradeOpener

            trade = TradeOpener(repo_a, settings_provider=lambda: settings, clock=clock).open_trade(
                OWNER, 100, coins, 1
            )
            clock.advance(hours=1)

            appliers = [
                SettlementApplier(r, settings_provider=lambda: settings, clock=clock, rng=_FixedRandom(0.0))
                for r in (repo_a, repo_b)
            ]
            barrier = threading.Barrier(2)
            results = []

            def run(a):
                barrier.wait()
                results.append(a.apply_settlement(trade.id, OWNER).status)

            threads = [threading.Thread(target=run, args=(a,)) for a in appliers]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=30)

            assert sorted(s.value for s in results) == ["already_settled", "applied"]
            b = repo_b.get_balances(OWNER)
            assert (b.main_balance, b.bot_balance) == (Decimal("510.00"), Decimal("0"))
        finally:
            repo_a.close()
            repo_b.close()


class TestFailures:
    def test_unknown_trade(self, applier):
        with pytest.raises(TradeNotFound):
            applier.apply_settlement("missing")

    def test_wrong_owner(self, applier, open_trade, clock):
        clock.advance(hours=1)
        with pytest.raises(TradeNotFound):
            applier.apply_settlement(open_trade.id, "someone-else")

    def test_balance_failure_rolls_back_status(self, applier, funded_repo, open_trade, clock, monkeypatch):
        clock.advance(hours=1)

        def boom(*args, **kwargs):
            raise PersistenceFailure("adjust_balances", RuntimeError("disk I/O error"))

        monkeypatch.setattr(funded_repo, "adjust_balances", boom)
        with pytest.raises(PersistenceFailure):
            applier.apply_settlement(open_trade.id, OWNER)
        monkeypatch.undo()

        assert funded_repo.get_trade(open_trade.id).status == TradeStatus.ACTIVE
        b = funded_repo.get_balances(OWNER)
        assert (b.main_balance, b.bot_balance) == (Decimal("900"), Decimal("100"))

        # retry after the store recovers
        assert applier.apply_settlement(open_trade.id, OWNER).applied
