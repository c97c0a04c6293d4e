"""
Tests for SubscriptionService: grants and the rollover sweep.
"""

from datetime import timedelta

import pytest

from studio_billing.db.models import UserSubscription
from studio_billing.exceptions import WalletNotFoundError
from studio_billing.models.api import SubscriptionStatus, TransactionType
from studio_billing.models.domain import SubscriptionGrant
from studio_billing.services.subscriptions import SubscriptionService
from studio_billing.services.wallet import WalletService
from tests.conftest import TODAY, make_subscription, make_wallet

GRANT = SubscriptionGrant(
    package_id="pro-monthly", daily_credits=10, monthly_credits=300, duration_days=30
)


@pytest.fixture
def subscription_service(db_session) -> SubscriptionService:
    return SubscriptionService(db_session)


class TestSubscriptionGrant:
    def test_rejects_empty_package(self):
        with pytest.raises(ValueError):
            SubscriptionGrant(package_id="", daily_credits=1, monthly_credits=1, duration_days=1)

    def test_rejects_negative_allowance(self):
        with pytest.raises(ValueError):
            SubscriptionGrant(package_id="p", daily_credits=-1, monthly_credits=1, duration_days=1)

    def test_rejects_non_positive_duration(self):
        with pytest.raises(ValueError):
            SubscriptionGrant(package_id="p", daily_credits=1, monthly_credits=1, duration_days=0)


class TestGrantSubscription:
    async def test_grant_starts_full(self, subscription_service, database):
        make_wallet(database, purchased=5)

        result = await subscription_service.grant_subscription("user-1", GRANT, order_id="ord-1")

        assert result.start_date == TODAY
        assert result.end_date == TODAY + timedelta(days=29)
        assert result.new_balance == 5 + 10 + 300
        sub = database.rows[(UserSubscription, result.subscription_id)]
        assert sub.daily_remaining == 10
        assert sub.monthly_remaining == 300
        assert sub.order_id == "ord-1"
        assert sub.status == SubscriptionStatus.ACTIVE

    async def test_opening_credits_recorded(self, subscription_service, database):
        make_wallet(database)

        result = await subscription_service.grant_subscription("user-1", GRANT)

        [opening] = database.transactions("user-1")
        assert opening.id == result.opening_transaction_id
        assert opening.type == TransactionType.ADDITION
        assert opening.amount == 310
        assert opening.balance_before == 0
        assert opening.balance_after == 310
        assert opening.reference_type == "subscription"
        assert opening.transaction_metadata["opening_credits"] == 310

    async def test_future_start_records_nothing(self, subscription_service, database):
        make_wallet(database, purchased=2)

        result = await subscription_service.grant_subscription(
            "user-1", GRANT, start_date=TODAY + timedelta(days=7)
        )

        assert result.opening_transaction_id is None
        assert result.new_balance == 2
        assert database.transactions() == []

    async def test_already_over_rejected(self, subscription_service, database):
        make_wallet(database)

        with pytest.raises(ValueError):
            await subscription_service.grant_subscription(
                "user-1", GRANT, start_date=TODAY - timedelta(days=30)
            )

    async def test_missing_wallet(self, subscription_service):
        with pytest.raises(WalletNotFoundError):
            await subscription_service.grant_subscription("nobody", GRANT)

    async def test_concurrent_subscriptions_stack(self, subscription_service, database):
        make_wallet(database)
        make_subscription(database, daily=5, monthly=50)

        result = await subscription_service.grant_subscription("user-1", GRANT)

        assert result.new_balance == 55 + 310
        snapshot = await WalletService(database.session()).get_wallet("user-1")
        assert len(snapshot.subscriptions) == 2


class TestSweep:
    async def test_resets_and_expires(self, subscription_service, database):
        make_wallet(database)
        make_wallet(database, "user-2")
        stale = make_subscription(
            database,
            daily_remaining=0,
            start=TODAY - timedelta(days=31),
            end=TODAY + timedelta(days=30),
            last_grant_date=TODAY - timedelta(days=2),
            monthly_remaining=12,
        )
        finished = make_subscription(
            database,
            user_id="user-2",
            start=TODAY - timedelta(days=30),
            end=TODAY - timedelta(days=1),
        )

        result = await subscription_service.sweep()

        assert result.users_processed == 2
        assert result.expired == 1
        assert result.daily_resets == 1
        assert result.monthly_resets == 1
        assert stale.daily_remaining == 10
        assert stale.monthly_remaining == 300
        assert finished.status == SubscriptionStatus.EXPIRED

    async def test_second_sweep_same_day_changes_nothing(self, subscription_service, database):
        make_wallet(database)
        make_subscription(database, last_grant_date=TODAY - timedelta(days=1))

        await subscription_service.sweep()
        result = await subscription_service.sweep()

        assert result.users_processed == 1
        assert (result.expired, result.daily_resets, result.monthly_resets) == (0, 0, 0)

    async def test_missing_wallet_skipped(self, subscription_service, database):
        make_subscription(database, user_id="ghost")
        make_wallet(database)
        make_subscription(database)

        result = await subscription_service.sweep()

        assert result.users_processed == 1
