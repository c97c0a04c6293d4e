"""
Tests for quota rollover.

Rollover is pure: it mutates a subscription-like object for a given day.
"""

from dataclasses import dataclass
from datetime import date, timedelta

from hypothesis import given
from hypothesis import strategies as st

from studio_billing.models.api import SubscriptionStatus
from studio_billing.services.rollover import (
    RolloverOutcome,
    apply_rollover,
    monthly_cycle,
    tally,
)

START = date(2026, 1, 1)


@dataclass
class Sub:
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    start_date: date = START
    end_date: date = START + timedelta(days=89)
    daily_credits: int = 10
    daily_remaining: int = 10
    monthly_credits: int = 300
    monthly_remaining: int = 300
    monthly_cycle_index: int = 0
    last_grant_date: date | None = START


class TestMonthlyCycle:
    def test_first_day_is_cycle_zero(self):
        assert monthly_cycle(START, START) == 0

    def test_day_29_still_cycle_zero(self):
        assert monthly_cycle(START, START + timedelta(days=29)) == 0

    def test_day_30_starts_cycle_one(self):
        assert monthly_cycle(START, START + timedelta(days=30)) == 1


class TestApplyRollover:
    def test_same_day_is_noop(self):
        sub = Sub(daily_remaining=3)

        outcome = apply_rollover(sub, START)

        assert outcome == RolloverOutcome()
        assert sub.daily_remaining == 3

    def test_new_day_resets_daily_to_full(self):
        """Unused daily credits are forfeited, not accumulated."""
        sub = Sub(daily_remaining=4)

        outcome = apply_rollover(sub, START + timedelta(days=1))

        assert outcome.daily_reset is True
        assert sub.daily_remaining == 10
        assert sub.last_grant_date == START + timedelta(days=1)

    def test_forfeiture_after_partial_spend(self):
        """5 of 30 spent, next cycle starts: remaining is 30, not 55."""
        sub = Sub(monthly_credits=30, monthly_remaining=25)

        apply_rollover(sub, START + timedelta(days=30))

        assert sub.monthly_remaining == 30
        assert sub.monthly_cycle_index == 1

    def test_monthly_not_reset_within_cycle(self):
        sub = Sub(monthly_remaining=100)

        outcome = apply_rollover(sub, START + timedelta(days=29))

        assert outcome.monthly_reset is False
        assert sub.monthly_remaining == 100

    def test_skipped_cycles_reset_once(self):
        sub = Sub(monthly_remaining=0)

        outcome = apply_rollover(sub, START + timedelta(days=65))

        assert outcome.monthly_reset is True
        assert sub.monthly_cycle_index == 2
        assert sub.monthly_remaining == 300

    def test_expires_after_end_date(self):
        sub = Sub(end_date=START + timedelta(days=9), daily_remaining=2)

        outcome = apply_rollover(sub, START + timedelta(days=10))

        assert outcome.expired is True
        assert sub.status == SubscriptionStatus.EXPIRED
        # Expired pools are not topped up
        assert sub.daily_remaining == 2

    def test_end_date_is_inclusive(self):
        sub = Sub(end_date=START + timedelta(days=9))

        outcome = apply_rollover(sub, START + timedelta(days=9))

        assert outcome.expired is False
        assert sub.status == SubscriptionStatus.ACTIVE

    def test_expired_subscription_untouched(self):
        sub = Sub(status=SubscriptionStatus.EXPIRED, daily_remaining=0)

        outcome = apply_rollover(sub, START + timedelta(days=3))

        assert outcome.changed is False
        assert sub.daily_remaining == 0

    def test_not_started_subscription_untouched(self):
        future = START + timedelta(days=5)
        sub = Sub(start_date=future, end_date=future + timedelta(days=29), last_grant_date=future)

        outcome = apply_rollover(sub, START)

        assert outcome.changed is False
        assert sub.status == SubscriptionStatus.ACTIVE

    def test_missing_last_grant_date_grants_daily(self):
        sub = Sub(last_grant_date=None, daily_remaining=0)

        outcome = apply_rollover(sub, START)

        assert outcome.daily_reset is True
        assert sub.daily_remaining == 10

    @given(days=st.integers(min_value=0, max_value=89))
    def test_applying_twice_is_idempotent(self, days: int):
        sub = Sub(daily_remaining=1, monthly_remaining=7)
        today = START + timedelta(days=days)

        apply_rollover(sub, today)
        snapshot = (sub.daily_remaining, sub.monthly_remaining, sub.monthly_cycle_index)
        second = apply_rollover(sub, today)

        assert second.changed is False
        assert (sub.daily_remaining, sub.monthly_remaining, sub.monthly_cycle_index) == snapshot

    @given(days=st.integers(min_value=0, max_value=200))
    def test_remaining_stays_within_bounds(self, days: int):
        sub = Sub(daily_remaining=0, monthly_remaining=0, end_date=START + timedelta(days=365))

        apply_rollover(sub, START + timedelta(days=days))

        assert 0 <= sub.daily_remaining <= sub.daily_credits
        assert 0 <= sub.monthly_remaining <= sub.monthly_credits


class TestTally:
    def test_counts_each_event(self):
        result = tally(
            [
                RolloverOutcome(expired=True),
                RolloverOutcome(daily_reset=True, monthly_reset=True),
                RolloverOutcome(daily_reset=True),
                RolloverOutcome(),
            ]
        )

        assert result.expired == 1
        assert result.daily_resets == 2
        assert result.monthly_resets == 1
