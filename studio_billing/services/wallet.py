"""
Wallet Service - credit ledger across purchased and subscription pools.

NO DICTIONARIES - All operations use strongly typed domain models.

Every mutating operation:
1. Locks the user's wallet row, then their subscription rows (SELECT FOR UPDATE)
2. Runs quota rollover on the locked subscriptions
3. Mutates pools and appends one ledger transaction
4. Flushes, reads back and verifies invariants
5. Commits (unless the caller owns the transaction)
"""

from dataclasses import dataclass
from datetime import date
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.db.models import CreditTransaction, UserSubscription, WalletAccount, utc_now
from studio_billing.exceptions import (
    DataIntegrityError,
    InsufficientCreditsError,
    InvalidAmountError,
    WalletNotFoundError,
    WriteVerificationError,
)
from studio_billing.models.api import SubscriptionStatus, TransactionType
from studio_billing.models.domain import (
    SubscriptionPool,
    TransactionData,
    TransactionResult,
    WalletSnapshot,
)
from studio_billing.models.provenance import UnrecognizedProvenance, parse_provenance
from studio_billing.observability.logging import get_logger
from studio_billing.observability.metrics import metrics
from studio_billing.services.allocation import (
    RefundPlan,
    consumption_order,
    fallback_refund,
    plan_deduction,
    plan_refund,
)
from studio_billing.services.rollover import (
    RolloverTally,
    apply_rollover,
    is_started,
    tally,
    utc_today,
)

logger = get_logger(__name__)

CREDIT_TRANSACTION_REFERENCE = "credit_transaction"


def validate_amount(amount: object) -> int:
    """
    Credit amounts are non-negative integers.

    Raises:
        InvalidAmountError: negative, non-integer, or bool
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise InvalidAmountError(amount)
    return amount


@dataclass
class LockedPools:
    """A user's wallet row and active subscription rows, locked and rolled over."""

    wallet: WalletAccount
    subscriptions: list[UserSubscription]
    today: date
    rollover: RolloverTally

    @property
    def spendable(self) -> list[UserSubscription]:
        """Active subscriptions that have started; these count toward the balance."""
        return [s for s in self.subscriptions if is_started(s, self.today)]

    @property
    def balance(self) -> int:
        return self.wallet.purchased_credits + sum(
            s.daily_remaining + s.monthly_remaining for s in self.spendable
        )


class WalletService:
    """
    Wallet service with write verification.

    All write operations follow the pattern:
    1. Execute write
    2. Flush to database
    3. Read back and verify
    4. Validate invariants
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize wallet service with database session."""
        self.session = session

    async def ensure_wallet(self, user_id: str) -> WalletSnapshot:
        """
        Get existing wallet or create an empty one.

        Safe against two requests creating the same wallet concurrently.
        """
        existing = await self.session.get(WalletAccount, user_id)
        if existing is None:
            now = utc_now()
            self.session.add(
                WalletAccount(user_id=user_id, purchased_credits=0, created_at=now, updated_at=now)
            )
            try:
                await self.session.flush()
            except IntegrityError:
                # Race condition - wallet created by another request
                await self.session.rollback()
                logger.info("wallet_create_race_resolved", user_id=user_id)
            else:
                if await self.session.get(WalletAccount, user_id) is None:
                    raise WriteVerificationError(f"Wallet {user_id} not found after insert")
                await self.session.commit()
                logger.info("wallet_created", user_id=user_id)

        return await self.get_wallet(user_id)

    async def get_wallet(self, user_id: str) -> WalletSnapshot:
        """
        Current balance broken down by pool. Persists any rollover it applies.

        Raises:
            WalletNotFoundError: user has no wallet
        """
        pools = await self.lock_pools(user_id)
        snapshot = self._snapshot(pools)
        await self.session.commit()
        return snapshot

    async def get_balance(self, user_id: str) -> int:
        """
        Total spendable credits.

        Raises:
            WalletNotFoundError: user has no wallet
        """
        return (await self.get_wallet(user_id)).balance

    async def deduct(
        self,
        user_id: str,
        amount: int,
        reason: str,
        reference_type: str | None = None,
        reference_id: str | None = None,
        commit: bool = True,
    ) -> TransactionResult:
        """
        Spend credits, subscriptions first, purchased last.

        The deduction's metadata records which pools were drawn from so a
        later refund can put the credits back where they came from.

        With commit=False the caller owns the transaction and the wallet row
        stays locked until it commits.

        Raises:
            InvalidAmountError: amount is negative or not an integer
            WalletNotFoundError: user has no wallet
            InsufficientCreditsError: total balance < amount (nothing is changed)
        """
        validate_amount(amount)
        pools = await self.lock_pools(user_id)
        balance_before = pools.balance

        if balance_before < amount:
            metrics.insufficient_credits_total.inc()
            logger.info(
                "deduction_rejected_insufficient_credits",
                user_id=user_id,
                balance=balance_before,
                required=amount,
            )
            raise InsufficientCreditsError(balance_before, amount)

        spendable = pools.spendable
        provenance = plan_deduction(spendable, pools.wallet.purchased_credits, amount)
        by_id = {s.id: s for s in spendable}
        for alloc in provenance.subscriptions:
            subscription = by_id[alloc.subscription_id]
            subscription.daily_remaining -= alloc.daily
            subscription.monthly_remaining -= alloc.monthly
        pools.wallet.purchased_credits -= provenance.purchased

        balance_after = balance_before - amount
        transaction = await self.record_transaction(
            user_id=user_id,
            transaction_type=TransactionType.DEDUCTION,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            metadata=provenance.to_metadata(),
        )
        await self._verify_pools(pools, balance_after)
        if commit:
            await self.session.commit()

        metrics.record_transaction(TransactionType.DEDUCTION.value, amount)
        logger.info(
            "credits_deducted",
            user_id=user_id,
            transaction_id=str(transaction.id),
            amount=amount,
            from_subscriptions=amount - provenance.purchased,
            from_purchased=provenance.purchased,
            balance_after=balance_after,
        )
        return TransactionResult(transaction_id=transaction.id, new_balance=balance_after)

    async def refund(
        self,
        user_id: str,
        amount: int,
        reason: str,
        reference_type: str | None = None,
        reference_id: str | None = None,
        source_transaction_id: UUID | None = None,
        commit: bool = True,
    ) -> TransactionResult:
        """
        Return credits, restoring the source deduction's provenance when possible.

        The source deduction comes from source_transaction_id, or from
        reference_id when reference_type is "credit_transaction". Provenance is
        only trusted when the source is a deduction of this user whose recorded
        allocation totals exactly amount; otherwise everything goes to
        purchased credits.

        With commit=False the caller owns the transaction (the refund is only
        flushed), so a task transition and its refund commit together.

        Raises:
            InvalidAmountError: amount is negative or not an integer
            WalletNotFoundError: user has no wallet
        """
        validate_amount(amount)
        if source_transaction_id is None:
            source_transaction_id = _infer_source(reference_type, reference_id)

        pools = await self.lock_pools(user_id)
        balance_before = pools.balance

        plan, source = await self._plan_refund(user_id, amount, source_transaction_id, pools)

        by_id = {s.id: s for s in pools.spendable}
        for alloc in plan.subscriptions:
            subscription = by_id[alloc.subscription_id]
            subscription.daily_remaining += alloc.daily
            subscription.monthly_remaining += alloc.monthly
        pools.wallet.purchased_credits += plan.purchased

        balance_after = balance_before + amount
        transaction = await self.record_transaction(
            user_id=user_id,
            transaction_type=TransactionType.REFUND,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            source_transaction_id=source.id if source is not None else None,
            metadata=plan.to_metadata(source_transaction_id),
        )
        await self._verify_pools(pools, balance_after)
        if commit:
            await self.session.commit()

        metrics.record_transaction(TransactionType.REFUND.value, amount)
        if plan.fallback_reason is not None:
            metrics.refund_fallbacks_total.labels(cause=plan.fallback_reason).inc()
        elif plan.redirected:
            metrics.refund_fallbacks_total.labels(cause="stale_pool").inc()
        logger.info(
            "credits_refunded",
            user_id=user_id,
            transaction_id=str(transaction.id),
            source_transaction_id=str(source_transaction_id) if source_transaction_id else None,
            amount=amount,
            restoration="provenance" if plan.used_provenance else "purchased_fallback",
            fallback_reason=plan.fallback_reason,
            redirected_to_purchased=plan.redirected,
            balance_after=balance_after,
        )
        return TransactionResult(transaction_id=transaction.id, new_balance=balance_after)

    async def add_credits(
        self,
        user_id: str,
        amount: int,
        reason: str,
        reference_type: str | None = None,
        reference_id: str | None = None,
    ) -> TransactionResult:
        """
        Add purchased (never-expiring) credits.

        Raises:
            InvalidAmountError: amount is negative or not an integer
            WalletNotFoundError: user has no wallet
        """
        validate_amount(amount)
        pools = await self.lock_pools(user_id)
        balance_before = pools.balance

        pools.wallet.purchased_credits += amount
        balance_after = balance_before + amount

        transaction = await self.record_transaction(
            user_id=user_id,
            transaction_type=TransactionType.ADDITION,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
        )
        await self._verify_pools(pools, balance_after)
        await self.session.commit()

        metrics.record_transaction(TransactionType.ADDITION.value, amount)
        logger.info(
            "credits_added",
            user_id=user_id,
            transaction_id=str(transaction.id),
            amount=amount,
            balance_after=balance_after,
        )
        return TransactionResult(transaction_id=transaction.id, new_balance=balance_after)

    async def get_history(self, user_id: str, limit: int = 50) -> list[TransactionData]:
        """Ledger entries for a user, most recent first."""
        stmt = (
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [_transaction_to_domain(row) for row in result.scalars().all()]

    # ========================================================================
    # Building blocks shared with SubscriptionService
    # ========================================================================

    async def lock_pools(self, user_id: str, today: date | None = None) -> LockedPools:
        """
        Lock wallet then subscriptions and roll allowances forward to today.

        Raises:
            WalletNotFoundError: user has no wallet
        """
        today = today or utc_today()
        wallet = await self._lock_wallet(user_id)
        if wallet is None:
            raise WalletNotFoundError(user_id)

        subscriptions = await self._lock_subscriptions(user_id)
        rollover = tally(apply_rollover(s, today) for s in subscriptions)
        if rollover.expired or rollover.daily_resets or rollover.monthly_resets:
            metrics.record_rollover(
                rollover.expired, rollover.daily_resets, rollover.monthly_resets
            )
            logger.info(
                "subscription_rollover_applied",
                user_id=user_id,
                expired=rollover.expired,
                daily_resets=rollover.daily_resets,
                monthly_resets=rollover.monthly_resets,
            )

        active = [s for s in subscriptions if s.status == SubscriptionStatus.ACTIVE]
        return LockedPools(wallet=wallet, subscriptions=active, today=today, rollover=rollover)

    async def record_transaction(
        self,
        user_id: str,
        transaction_type: TransactionType,
        amount: int,
        balance_before: int,
        balance_after: int,
        reason: str,
        reference_type: str | None = None,
        reference_id: str | None = None,
        source_transaction_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditTransaction:
        """Append one ledger row and verify it was written."""
        transaction = CreditTransaction(
            id=uuid4(),
            user_id=user_id,
            type=transaction_type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            source_transaction_id=source_transaction_id,
            transaction_metadata=metadata,
            created_at=utc_now(),
        )
        self.session.add(transaction)
        await self.session.flush()

        verified = await self.session.get(CreditTransaction, transaction.id)
        if verified is None:
            metrics.db_write_verifications_total.labels(success="False").inc()
            raise WriteVerificationError(f"Credit transaction {transaction.id} not found after insert")
        metrics.db_write_verifications_total.labels(success="True").inc()
        return verified

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _plan_refund(
        self,
        user_id: str,
        amount: int,
        source_transaction_id: UUID | None,
        pools: LockedPools,
    ) -> tuple[RefundPlan, CreditTransaction | None]:
        if source_transaction_id is None:
            return fallback_refund(amount, "no_source_transaction"), None

        source = await self._find_transaction(source_transaction_id)
        if source is None or source.user_id != user_id:
            return fallback_refund(amount, "source_not_found"), None
        if source.type != TransactionType.DEDUCTION:
            return fallback_refund(amount, "source_not_deduction"), source

        provenance = parse_provenance(source.transaction_metadata)
        if isinstance(provenance, UnrecognizedProvenance):
            return fallback_refund(amount, "unrecognized_provenance"), source
        if provenance.total != amount:
            return fallback_refund(amount, "amount_mismatch"), source

        plan = plan_refund(provenance.normalized(), {s.id: s for s in pools.spendable})
        return plan, source

    async def _verify_pools(self, pools: LockedPools, expected_balance: int) -> None:
        verified_wallet = await self.session.get(WalletAccount, pools.wallet.user_id)
        if verified_wallet is None:
            raise WriteVerificationError(f"Wallet {pools.wallet.user_id} disappeared after update")

        if verified_wallet.purchased_credits < 0:
            raise DataIntegrityError(
                f"Purchased credits negative: {verified_wallet.purchased_credits}"
            )
        for s in pools.subscriptions:
            if not 0 <= s.daily_remaining <= s.daily_credits:
                raise DataIntegrityError(
                    f"Subscription {s.id} daily out of bounds: "
                    f"{s.daily_remaining}/{s.daily_credits}"
                )
            if not 0 <= s.monthly_remaining <= s.monthly_credits:
                raise DataIntegrityError(
                    f"Subscription {s.id} monthly out of bounds: "
                    f"{s.monthly_remaining}/{s.monthly_credits}"
                )

        if pools.balance != expected_balance:
            raise DataIntegrityError(
                f"Balance mismatch: expected {expected_balance}, got {pools.balance}"
            )

    def _snapshot(self, pools: LockedPools) -> WalletSnapshot:
        return WalletSnapshot(
            user_id=pools.wallet.user_id,
            purchased_credits=pools.wallet.purchased_credits,
            subscriptions=tuple(
                SubscriptionPool(
                    subscription_id=s.id,
                    package_id=s.package_id,
                    start_date=s.start_date,
                    end_date=s.end_date,
                    daily_credits=s.daily_credits,
                    daily_remaining=s.daily_remaining,
                    monthly_credits=s.monthly_credits,
                    monthly_remaining=s.monthly_remaining,
                )
                for s in consumption_order(pools.spendable)
            ),
        )

    async def _lock_wallet(self, user_id: str) -> WalletAccount | None:
        """Lock wallet row for update (SELECT FOR UPDATE)."""
        stmt = select(WalletAccount).where(WalletAccount.user_id == user_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_subscriptions(self, user_id: str) -> list[UserSubscription]:
        """Lock the user's active subscription rows, always in the same order."""
        stmt = (
            select(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.status == SubscriptionStatus.ACTIVE,
            )
            .order_by(
                UserSubscription.end_date, UserSubscription.created_at, UserSubscription.id
            )
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def _find_transaction(self, transaction_id: UUID) -> CreditTransaction | None:
        return await self.session.get(CreditTransaction, transaction_id)


def _infer_source(reference_type: str | None, reference_id: str | None) -> UUID | None:
    if reference_type != CREDIT_TRANSACTION_REFERENCE or not reference_id:
        return None
    try:
        return UUID(reference_id)
    except ValueError:
        return None


def _transaction_to_domain(row: CreditTransaction) -> TransactionData:
    return TransactionData(
        transaction_id=row.id,
        user_id=row.user_id,
        type=TransactionType(row.type),
        amount=row.amount,
        balance_before=row.balance_before,
        balance_after=row.balance_after,
        reason=row.reason,
        reference_type=row.reference_type,
        reference_id=row.reference_id,
        source_transaction_id=row.source_transaction_id,
        created_at=row.created_at,
    )
