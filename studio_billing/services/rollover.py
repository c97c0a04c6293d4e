"""
Quota Rollover - bring a subscription's allowances up to date for a given day.

Runs against locked subscription rows at the start of every wallet operation
and from the periodic sweep. Applying it twice for the same day is a no-op.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Protocol

from studio_billing.models.api import SubscriptionStatus

MONTHLY_CYCLE_DAYS = 30


def utc_today() -> date:
    """Current calendar day in UTC."""
    return datetime.now(UTC).date()


class RollableSubscription(Protocol):
    """The subscription fields rollover reads and writes."""

    status: SubscriptionStatus
    start_date: date
    end_date: date
    daily_credits: int
    daily_remaining: int
    monthly_credits: int
    monthly_remaining: int
    monthly_cycle_index: int
    last_grant_date: date | None


@dataclass(frozen=True)
class RolloverOutcome:
    """What rollover changed on one subscription."""

    expired: bool = False
    daily_reset: bool = False
    monthly_reset: bool = False

    @property
    def changed(self) -> bool:
        return self.expired or self.daily_reset or self.monthly_reset


@dataclass(frozen=True)
class RolloverTally:
    """Aggregate of many rollover outcomes."""

    expired: int = 0
    daily_resets: int = 0
    monthly_resets: int = 0


def monthly_cycle(start_date: date, today: date) -> int:
    """Index of the 30-day cycle that contains today."""
    return (today - start_date).days // MONTHLY_CYCLE_DAYS


def is_started(subscription: RollableSubscription, today: date) -> bool:
    return subscription.start_date <= today


def apply_rollover(subscription: RollableSubscription, today: date) -> RolloverOutcome:
    """
    Expire, then top up daily and monthly allowances.

    Allowances reset to full rather than accumulate: unused credits from the
    previous period are forfeited. Subscriptions that have not started yet are
    left untouched.
    """
    if subscription.status != SubscriptionStatus.ACTIVE:
        return RolloverOutcome()

    if subscription.end_date < today:
        subscription.status = SubscriptionStatus.EXPIRED
        return RolloverOutcome(expired=True)

    if not is_started(subscription, today):
        return RolloverOutcome()

    daily_reset = False
    if subscription.last_grant_date is None or subscription.last_grant_date < today:
        subscription.daily_remaining = subscription.daily_credits
        subscription.last_grant_date = today
        daily_reset = True

    monthly_reset = False
    cycle = monthly_cycle(subscription.start_date, today)
    if cycle > subscription.monthly_cycle_index:
        subscription.monthly_remaining = subscription.monthly_credits
        subscription.monthly_cycle_index = cycle
        monthly_reset = True

    return RolloverOutcome(daily_reset=daily_reset, monthly_reset=monthly_reset)


def tally(outcomes: Iterable[RolloverOutcome]) -> RolloverTally:
    expired = daily = monthly = 0
    for outcome in outcomes:
        expired += outcome.expired
        daily += outcome.daily_reset
        monthly += outcome.monthly_reset
    return RolloverTally(expired=expired, daily_resets=daily, monthly_resets=monthly)
