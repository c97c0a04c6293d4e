"""
Tests for credit allocation.

Deduction planning and refund planning are pure functions over pool state,
so they are covered with hypothesis as well as worked examples.
"""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from uuid import UUID, uuid4

import pytest
from hypothesis import given
from hypothesis import strategies as st

from studio_billing.exceptions import InsufficientCreditsError
from studio_billing.models.provenance import ProvenanceV2, SubscriptionAllocation
from studio_billing.services.allocation import (
    consumption_order,
    fallback_refund,
    plan_deduction,
    plan_refund,
)

BASE = date(2026, 1, 1)
CREATED = datetime(2026, 1, 1, tzinfo=UTC)


@dataclass
class Pool:
    daily_credits: int
    monthly_credits: int
    daily_remaining: int
    monthly_remaining: int
    end_date: date = BASE + timedelta(days=29)
    created_at: datetime = CREATED
    id: UUID = field(default_factory=uuid4)


def full_pool(daily: int, monthly: int, **kwargs) -> Pool:
    return Pool(daily, monthly, daily, monthly, **kwargs)


# ============================================================================
# Hypothesis Strategies
# ============================================================================


@st.composite
def pools(draw):
    daily = draw(st.integers(min_value=0, max_value=50))
    monthly = draw(st.integers(min_value=0, max_value=500))
    return Pool(
        daily_credits=daily,
        monthly_credits=monthly,
        daily_remaining=draw(st.integers(min_value=0, max_value=daily)),
        monthly_remaining=draw(st.integers(min_value=0, max_value=monthly)),
        end_date=BASE + timedelta(days=draw(st.integers(min_value=0, max_value=60))),
    )


pool_lists = st.lists(pools(), max_size=4)
purchased_amounts = st.integers(min_value=0, max_value=1000)


class TestConsumptionOrder:
    def test_soonest_ending_first(self):
        late = full_pool(10, 10, end_date=BASE + timedelta(days=40))
        early = full_pool(10, 10, end_date=BASE + timedelta(days=10))

        assert consumption_order([late, early]) == [early, late]

    def test_older_grant_breaks_end_date_tie(self):
        newer = full_pool(10, 10, created_at=CREATED + timedelta(hours=1))
        older = full_pool(10, 10)

        assert consumption_order([newer, older]) == [older, newer]


class TestPlanDeduction:
    def test_daily_before_monthly(self):
        """25 with daily 10 and monthly 300: 10 daily + 15 monthly."""
        pool = full_pool(10, 300)

        plan = plan_deduction([pool], purchased=0, amount=25)

        assert plan == ProvenanceV2(
            purchased=0,
            subscriptions=(SubscriptionAllocation(subscription_id=pool.id, daily=10, monthly=15),),
        )

    def test_purchased_used_last(self):
        pool = full_pool(10, 0)

        plan = plan_deduction([pool], purchased=50, amount=30)

        assert plan.purchased == 20
        assert plan.subscriptions[0].daily == 10

    def test_purchased_only(self):
        plan = plan_deduction([], purchased=100, amount=30)

        assert plan == ProvenanceV2(purchased=30)

    def test_spans_subscriptions_in_order(self):
        first = full_pool(5, 0, end_date=BASE + timedelta(days=5))
        second = full_pool(5, 20, end_date=BASE + timedelta(days=50))

        plan = plan_deduction([second, first], purchased=0, amount=12)

        assert [a.subscription_id for a in plan.subscriptions] == [first.id, second.id]
        assert plan.subscriptions[0].total == 5
        assert plan.subscriptions[1] == SubscriptionAllocation(
            subscription_id=second.id, daily=5, monthly=2
        )

    def test_empty_pools_are_omitted(self):
        empty = Pool(10, 10, 0, 0)

        plan = plan_deduction([empty], purchased=5, amount=5)

        assert plan.subscriptions == ()

    def test_zero_amount(self):
        plan = plan_deduction([full_pool(10, 10)], purchased=0, amount=0)

        assert plan == ProvenanceV2(purchased=0)

    def test_insufficient_credits(self):
        with pytest.raises(InsufficientCreditsError) as exc_info:
            plan_deduction([full_pool(5, 5)], purchased=3, amount=14)

        assert exc_info.value.balance == 13
        assert exc_info.value.required == 14

    @given(subs=pool_lists, purchased=purchased_amounts, data=st.data())
    def test_plan_totals_amount_and_respects_pools(self, subs, purchased, data):
        available = purchased + sum(s.daily_remaining + s.monthly_remaining for s in subs)
        amount = data.draw(st.integers(min_value=0, max_value=available))

        plan = plan_deduction(subs, purchased, amount)

        assert plan.total == amount
        assert plan.purchased <= purchased
        by_id = {s.id: s for s in subs}
        for alloc in plan.subscriptions:
            assert alloc.daily <= by_id[alloc.subscription_id].daily_remaining
            assert alloc.monthly <= by_id[alloc.subscription_id].monthly_remaining

    @given(subs=pool_lists, purchased=purchased_amounts)
    def test_purchased_untouched_while_subscriptions_cover(self, subs, purchased):
        subscription_total = sum(s.daily_remaining + s.monthly_remaining for s in subs)

        plan = plan_deduction(subs, purchased, subscription_total)

        assert plan.purchased == 0


class TestPlanRefund:
    def test_restores_recorded_pools(self):
        """10 daily + 20 purchased goes back to 10 daily + 20 purchased."""
        pool = Pool(10, 300, 0, 300)
        provenance = ProvenanceV2(
            purchased=20,
            subscriptions=(SubscriptionAllocation(subscription_id=pool.id, daily=10, monthly=0),),
        )

        plan = plan_refund(provenance, {pool.id: pool})

        assert plan.purchased == 20
        assert plan.subscriptions == provenance.subscriptions
        assert plan.redirected == 0
        assert plan.used_provenance is True

    def test_missing_subscription_redirects_to_purchased(self):
        provenance = ProvenanceV2(
            purchased=0,
            subscriptions=(SubscriptionAllocation(subscription_id=uuid4(), daily=10, monthly=5),),
        )

        plan = plan_refund(provenance, {})

        assert plan.purchased == 15
        assert plan.redirected == 15
        assert plan.subscriptions == ()

    def test_overflow_after_reset_is_capped(self):
        """Pool was reset to full since the deduction: nothing fits, all goes to purchased."""
        pool = full_pool(10, 300)
        provenance = ProvenanceV2(
            purchased=0,
            subscriptions=(SubscriptionAllocation(subscription_id=pool.id, daily=10, monthly=0),),
        )

        plan = plan_refund(provenance, {pool.id: pool})

        assert plan.purchased == 10
        assert plan.redirected == 10

    def test_partial_headroom(self):
        pool = Pool(10, 300, 7, 300)
        provenance = ProvenanceV2(
            purchased=0,
            subscriptions=(SubscriptionAllocation(subscription_id=pool.id, daily=10, monthly=0),),
        )

        plan = plan_refund(provenance, {pool.id: pool})

        assert plan.subscriptions[0].daily == 3
        assert plan.purchased == 7

    @given(subs=pool_lists, purchased=purchased_amounts, data=st.data())
    def test_deduct_then_refund_restores_every_pool(self, subs, purchased, data):
        available = purchased + sum(s.daily_remaining + s.monthly_remaining for s in subs)
        amount = data.draw(st.integers(min_value=0, max_value=available))
        before = [(s.daily_remaining, s.monthly_remaining) for s in subs]

        provenance = plan_deduction(subs, purchased, amount)
        by_id = {s.id: s for s in subs}
        for alloc in provenance.subscriptions:
            by_id[alloc.subscription_id].daily_remaining -= alloc.daily
            by_id[alloc.subscription_id].monthly_remaining -= alloc.monthly

        plan = plan_refund(provenance, by_id)
        for alloc in plan.subscriptions:
            by_id[alloc.subscription_id].daily_remaining += alloc.daily
            by_id[alloc.subscription_id].monthly_remaining += alloc.monthly

        assert plan.total == amount
        assert plan.redirected == 0
        assert plan.purchased == provenance.purchased
        assert [(s.daily_remaining, s.monthly_remaining) for s in subs] == before


class TestFallbackRefund:
    def test_everything_to_purchased(self):
        plan = fallback_refund(30, "amount_mismatch")

        assert plan.purchased == 30
        assert plan.subscriptions == ()
        assert plan.used_provenance is False

    def test_metadata_records_reason(self):
        source = uuid4()

        metadata = fallback_refund(30, "unrecognized_provenance").to_metadata(source)

        assert metadata["source_transaction_id"] == str(source)
        assert metadata["restoration"] == "purchased_fallback"
        assert metadata["fallback_reason"] == "unrecognized_provenance"
        assert metadata["redeposit"]["purchased"] == 30
