"""
Subscription Service - grant subscriptions and keep allowances fresh.

Grants run under the same per-user lock as every wallet mutation. The sweep
walks every user with an active subscription and applies rollover so that
read-only displays never show stale allowances.
"""

from datetime import date, timedelta
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.db.models import UserSubscription, utc_now
from studio_billing.exceptions import WalletNotFoundError
from studio_billing.models.api import SubscriptionStatus, TransactionType
from studio_billing.models.domain import GrantResult, SubscriptionGrant, SweepResult
from studio_billing.observability.logging import get_logger
from studio_billing.observability.metrics import metrics
from studio_billing.services.rollover import utc_today
from studio_billing.services.wallet import WalletService

logger = get_logger(__name__)

SUBSCRIPTION_REFERENCE = "subscription"


class SubscriptionService:
    """Subscription grants and the proactive rollover sweep."""

    def __init__(self, session: AsyncSession, wallet: WalletService | None = None) -> None:
        self.session = session
        self.wallet = wallet or WalletService(session)

    async def grant_subscription(
        self,
        user_id: str,
        grant: SubscriptionGrant,
        order_id: str | None = None,
        start_date: date | None = None,
    ) -> GrantResult:
        """
        Create an active subscription with full allowances.

        end_date is inclusive (start + duration - 1). When the subscription
        starts today or earlier its opening credits are recorded as one
        addition transaction; a future-dated subscription contributes nothing
        until it starts.

        Raises:
            WalletNotFoundError: user has no wallet
            ValueError: the grant would already be over
        """
        today = utc_today()
        start = start_date or today
        end = start + timedelta(days=grant.duration_days - 1)
        if end < today:
            raise ValueError(f"Subscription ending {end.isoformat()} would already be expired")

        pools = await self.wallet.lock_pools(user_id, today)
        balance_before = pools.balance

        now = utc_now()
        subscription = UserSubscription(
            id=uuid4(),
            user_id=user_id,
            package_id=grant.package_id,
            order_id=order_id,
            start_date=start,
            end_date=end,
            daily_credits=grant.daily_credits,
            daily_remaining=grant.daily_credits,
            monthly_credits=grant.monthly_credits,
            monthly_remaining=grant.monthly_credits,
            monthly_cycle_index=0,
            last_grant_date=start,
            status=SubscriptionStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )
        self.session.add(subscription)
        pools.subscriptions.append(subscription)

        opening_credits = pools.balance - balance_before
        opening_transaction_id = None
        if opening_credits:
            transaction = await self.wallet.record_transaction(
                user_id=user_id,
                transaction_type=TransactionType.ADDITION,
                amount=opening_credits,
                balance_before=balance_before,
                balance_after=pools.balance,
                reason=f"Subscription {grant.package_id} opening credits",
                reference_type=SUBSCRIPTION_REFERENCE,
                reference_id=str(subscription.id),
                metadata={
                    "opening_credits": opening_credits,
                    "package_id": grant.package_id,
                    "order_id": order_id,
                    "daily_credits": grant.daily_credits,
                    "monthly_credits": grant.monthly_credits,
                },
            )
            opening_transaction_id = transaction.id
        else:
            await self.session.flush()

        new_balance = pools.balance
        await self.session.commit()

        if opening_credits:
            metrics.record_transaction(TransactionType.ADDITION.value, opening_credits)
        logger.info(
            "subscription_granted",
            user_id=user_id,
            subscription_id=str(subscription.id),
            package_id=grant.package_id,
            order_id=order_id,
            start_date=start.isoformat(),
            end_date=end.isoformat(),
            opening_credits=opening_credits,
        )
        return GrantResult(
            subscription_id=subscription.id,
            start_date=start,
            end_date=end,
            opening_transaction_id=opening_transaction_id,
            new_balance=new_balance,
        )

    async def sweep(self, today: date | None = None) -> SweepResult:
        """
        Roll every active subscription forward to today.

        Each user is processed and committed under their own lock; a user
        whose wallet vanished mid-sweep is skipped.
        """
        today = today or utc_today()
        user_ids = await self._users_with_active_subscriptions()

        processed = expired = daily = monthly = 0
        for user_id in user_ids:
            try:
                pools = await self.wallet.lock_pools(user_id, today)
            except WalletNotFoundError:
                logger.warning("sweep_wallet_missing", user_id=user_id)
                await self.session.rollback()
                continue
            await self.session.commit()
            processed += 1
            expired += pools.rollover.expired
            daily += pools.rollover.daily_resets
            monthly += pools.rollover.monthly_resets

        result = SweepResult(
            users_processed=processed,
            expired=expired,
            daily_resets=daily,
            monthly_resets=monthly,
        )
        logger.info(
            "subscription_sweep_complete",
            today=today.isoformat(),
            users_processed=processed,
            expired=expired,
            daily_resets=daily,
            monthly_resets=monthly,
        )
        return result

    async def _users_with_active_subscriptions(self) -> list[str]:
        stmt = (
            select(UserSubscription.user_id)
            .where(UserSubscription.status == SubscriptionStatus.ACTIVE)
            .distinct()
            .order_by(UserSubscription.user_id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
