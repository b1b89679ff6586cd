"""
Budget ledger - caps, holds, commits and period roll.
"""

import math
import threading

import pytest

from agentsafe.core.budget import BudgetLedger, estimate_runway
from agentsafe.core.errors import LedgerInvariantError


@pytest.fixture
def small_ledger(clock):
    """Treasury below the per-action cap."""
    return BudgetLedger(treasury_usd=40, per_action_cap_usd=50, daily_burn_usd=40,
                        min_runway_days=1, clock=clock)


class TestCanSpend:

    def test_within_caps(self, ledger):
        check = ledger.can_spend(20)
        assert check.allowed
        assert check.remaining_usd == 500

    def test_per_action_cap(self, ledger):
        check = ledger.can_spend(60)
        assert not check.allowed
        assert "Per-action cap" in check.reason

    def test_treasury_below_cap_rejects(self, small_ledger):
        """Cost 45 is under the 50 cap but exceeds a 40 treasury."""
        check = small_ledger.can_spend(45)
        assert not check.allowed
        assert "Insufficient treasury" in check.reason

    def test_negative_amount(self, ledger):
        assert not ledger.can_spend(-1).allowed

    def test_runway_advisory_does_not_block(self, clock):
        ledger = BudgetLedger(treasury_usd=100, per_action_cap_usd=50, daily_burn_usd=60,
                              min_runway_days=3, clock=clock)
        check = ledger.can_spend(10)
        assert check.allowed
        assert check.runway_advisory
        assert "Runway" in check.reason

    def test_daily_burn_limit(self, clock):
        ledger = BudgetLedger(treasury_usd=10000, per_action_cap_usd=50, daily_burn_usd=200,
                              min_runway_days=0, clock=clock)
        for i in range(4):
            ledger.commit_spend(50, f"a{i}")

        check = ledger.can_spend(50)
        assert not check.allowed
        assert "Daily burn limit exceeded" in check.reason
        assert ledger.can_spend(0).allowed

    def test_daily_burn_limit_counts_holds(self, ledger):
        for i in range(4):
            assert ledger.reserve(f"a{i}", 50).allowed
        assert not ledger.reserve("a4", 1).allowed
        ledger.release("a0")
        assert ledger.reserve("a4", 1).allowed

    def test_daily_burn_limit_resets_next_period(self, ledger, clock):
        for i in range(4):
            ledger.commit_spend(50, f"a{i}")
        assert not ledger.can_spend(10).allowed
        clock.advance(hours=24)
        assert ledger.can_spend(10).allowed

    def test_projection_has_no_side_effects(self, ledger):
        for _ in range(10):
            ledger.can_spend(40)
        assert ledger.spent_today_usd == 0
        assert ledger.reserved_usd == 0


class TestHoldsAndCommits:

    def test_reserve_counts_against_treasury(self, small_ledger):
        assert small_ledger.reserve("a1", 30).allowed
        assert not small_ledger.can_spend(20).allowed
        small_ledger.release("a1")
        assert small_ledger.can_spend(20).allowed

    def test_commit_consumes_hold(self, small_ledger):
        small_ledger.reserve("a1", 30)
        small_ledger.commit_spend(30, "a1")
        assert small_ledger.spent_today_usd == 30
        assert small_ledger.reserved_usd == 0

    def test_double_commit_is_invariant_violation(self, ledger):
        ledger.commit_spend(10, "a1")
        with pytest.raises(LedgerInvariantError, match="already committed"):
            ledger.commit_spend(10, "a1")
        assert ledger.spent_today_usd == 10

    def test_commit_over_cap_raises(self, ledger):
        with pytest.raises(LedgerInvariantError):
            ledger.commit_spend(51, "a1")
        assert ledger.spent_today_usd == 0

    def test_commit_over_daily_burn_raises(self, ledger):
        for i in range(4):
            ledger.commit_spend(50, f"a{i}")
        with pytest.raises(LedgerInvariantError, match="daily burn limit"):
            ledger.commit_spend(50, "a4")
        assert ledger.spent_today_usd == 200

    def test_commit_over_treasury_raises(self, small_ledger):
        small_ledger.commit_spend(30, "a1")
        with pytest.raises(LedgerInvariantError):
            small_ledger.commit_spend(20, "a2")
        assert small_ledger.spent_today_usd == 30

    def test_concurrent_reservations_never_overspend(self, clock):
        ledger = BudgetLedger(treasury_usd=100, per_action_cap_usd=50, daily_burn_usd=100,
                              min_runway_days=0, clock=clock)
        granted = []

        def worker(i):
            if ledger.reserve(f"a{i}", 30).allowed:
                granted.append(i)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(granted) == 3
        for i in granted:
            ledger.commit_spend(30, f"a{i}")
        assert ledger.spent_today_usd <= ledger.treasury_usd


class TestPeriodRoll:

    def test_spend_resets_next_day_and_settles_treasury(self, ledger, clock):
        ledger.commit_spend(40, "a1")
        clock.advance(hours=24)

        assert ledger.can_spend(10).allowed
        assert ledger.spent_today_usd == 0
        assert ledger.treasury_usd == 460

    def test_no_roll_within_period(self, ledger, clock):
        ledger.commit_spend(40, "a1")
        clock.advance(hours=1)
        assert not ledger.roll_period()
        assert ledger.spent_today_usd == 40

    def test_committed_ids_survive_roll(self, ledger, clock):
        ledger.commit_spend(10, "a1")
        clock.advance(days=2)
        with pytest.raises(LedgerInvariantError):
            ledger.commit_spend(10, "a1")


class TestTreasuryAndSnapshot:

    def test_set_treasury_below_spent_rejected(self, ledger):
        ledger.commit_spend(40, "a1")
        with pytest.raises(ValueError):
            ledger.set_treasury(30)
        ledger.set_treasury(1000)
        assert ledger.treasury_usd == 1000

    def test_snapshot(self, ledger):
        ledger.commit_spend(20, "a1")
        snap = ledger.snapshot()
        assert snap["spent_today_usd"] == 20
        assert snap["remaining_usd"] == 480
        assert snap["reserved_usd"] == 0
        assert snap["daily_remaining_usd"] == 180
        assert snap["runway_days"] == 2.4

    def test_estimate_runway(self):
        assert estimate_runway(100, 0) == math.inf
        assert estimate_runway(100, 50) == 2
        assert estimate_runway(-5, 50) == 0
