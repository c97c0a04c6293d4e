"""
Credit Allocation - decide which pools a deduction draws from and where a
refund goes back to.

Deductions spend subscriptions first (soonest-ending first, daily before
monthly within each) and purchased credits last. Refunds restore a
deduction's recorded provenance, capped at each pool's reset amount, and
send whatever cannot be restored to purchased credits.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Protocol
from uuid import UUID

from studio_billing.exceptions import InsufficientCreditsError
from studio_billing.models.provenance import ProvenanceV2, SubscriptionAllocation


class PoolSubscription(Protocol):
    """The subscription fields allocation reads."""

    id: UUID
    end_date: date
    created_at: datetime
    daily_credits: int
    daily_remaining: int
    monthly_credits: int
    monthly_remaining: int


def consumption_order(subscriptions: Sequence[PoolSubscription]) -> list[PoolSubscription]:
    """Soonest-ending first, then oldest grant, then id for a stable tie-break."""
    return sorted(subscriptions, key=lambda s: (s.end_date, s.created_at, str(s.id)))


def plan_deduction(
    subscriptions: Sequence[PoolSubscription], purchased: int, amount: int
) -> ProvenanceV2:
    """
    Greedy allocation of amount across the given (spendable) pools.

    Raises:
        InsufficientCreditsError: pools cannot cover amount
    """
    available = purchased + sum(s.daily_remaining + s.monthly_remaining for s in subscriptions)
    if available < amount:
        raise InsufficientCreditsError(available, amount)

    remaining = amount
    allocations: list[SubscriptionAllocation] = []
    for subscription in consumption_order(subscriptions):
        if remaining == 0:
            break
        daily = min(subscription.daily_remaining, remaining)
        remaining -= daily
        monthly = min(subscription.monthly_remaining, remaining)
        remaining -= monthly
        if daily or monthly:
            allocations.append(
                SubscriptionAllocation(
                    subscription_id=subscription.id, daily=daily, monthly=monthly
                )
            )

    return ProvenanceV2(purchased=remaining, subscriptions=tuple(allocations))


@dataclass(frozen=True)
class RefundPlan:
    """Where a refund's credits are redeposited."""

    purchased: int
    subscriptions: tuple[SubscriptionAllocation, ...]
    redirected: int = 0
    fallback_reason: str | None = None

    @property
    def total(self) -> int:
        return self.purchased + sum(alloc.total for alloc in self.subscriptions)

    @property
    def used_provenance(self) -> bool:
        return self.fallback_reason is None

    def to_metadata(self, source_transaction_id: UUID | None) -> dict[str, Any]:
        """Serialize for the refund transaction's metadata column."""
        return {
            "source_transaction_id": str(source_transaction_id) if source_transaction_id else None,
            "restoration": "provenance" if self.used_provenance else "purchased_fallback",
            "fallback_reason": self.fallback_reason,
            "redirected_to_purchased": self.redirected,
            "redeposit": ProvenanceV2(
                purchased=self.purchased, subscriptions=self.subscriptions
            ).to_metadata(),
        }


def fallback_refund(amount: int, reason: str) -> RefundPlan:
    """Whole amount to purchased credits."""
    return RefundPlan(purchased=amount, subscriptions=(), fallback_reason=reason)


def plan_refund(
    provenance: ProvenanceV2, subscriptions: Mapping[UUID, PoolSubscription]
) -> RefundPlan:
    """
    Restore each allocation into its pool.

    subscriptions holds the pools that may receive credits back (active and
    started). A portion whose subscription is absent, or that would push a
    pool above its reset amount, goes to purchased instead.
    """
    headroom: dict[tuple[UUID, str], int] = {}
    for sub_id, sub in subscriptions.items():
        headroom[(sub_id, "daily")] = sub.daily_credits - sub.daily_remaining
        headroom[(sub_id, "monthly")] = sub.monthly_credits - sub.monthly_remaining

    purchased = provenance.purchased
    redirected = 0
    restored: list[SubscriptionAllocation] = []

    for alloc in provenance.subscriptions:
        if alloc.subscription_id not in subscriptions:
            redirected += alloc.total
            continue

        daily_room = headroom[(alloc.subscription_id, "daily")]
        monthly_room = headroom[(alloc.subscription_id, "monthly")]
        daily = min(alloc.daily, daily_room)
        monthly = min(alloc.monthly, monthly_room)
        headroom[(alloc.subscription_id, "daily")] = daily_room - daily
        headroom[(alloc.subscription_id, "monthly")] = monthly_room - monthly
        redirected += alloc.total - daily - monthly

        if daily or monthly:
            restored.append(
                SubscriptionAllocation(
                    subscription_id=alloc.subscription_id, daily=daily, monthly=monthly
                )
            )

    return RefundPlan(
        purchased=purchased + redirected,
        subscriptions=tuple(restored),
        redirected=redirected,
    )
