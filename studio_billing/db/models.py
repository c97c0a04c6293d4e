"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
The one exception is credit_transactions.metadata, which holds versioned
provenance that is decoded by studio_billing.models.provenance.
"""

from datetime import UTC, date, datetime
from typing import Any, ClassVar
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from studio_billing.models.api import SubscriptionStatus, TaskKind, TaskStatus, TransactionType


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _string_enum(enum_cls: type, name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        values_callable=lambda x: [e.value for e in x],
    )


class WalletAccount(Base):
    """
    ORM model for wallet_accounts table.

    One row per user. Holds the purchased (never-expiring) balance and is the
    row every wallet mutation locks first.
    """

    __tablename__ = "wallet_accounts"

    # Primary Key - the external user id
    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Balance
    purchased_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("purchased_credits >= 0", name="ck_wallet_purchased_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<WalletAccount(user_id={self.user_id}, purchased={self.purchased_credits})>"


class UserSubscription(Base):
    """
    ORM model for wallet_subscriptions table.

    A subscription grant with a daily allowance (reset every UTC day) and a
    monthly allowance (reset every 30 days from start_date).
    """

    __tablename__ = "wallet_subscriptions"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Owner
    user_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("wallet_accounts.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    package_id: Mapped[str] = mapped_column(String(100), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Validity window (end_date inclusive)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    # Allowances
    daily_credits: Mapped[int] = mapped_column(Integer, nullable=False)
    daily_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    monthly_credits: Mapped[int] = mapped_column(Integer, nullable=False)
    monthly_remaining: Mapped[int] = mapped_column(Integer, nullable=False)

    # Rollover bookkeeping
    monthly_cycle_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_grant_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    status: Mapped[SubscriptionStatus] = mapped_column(
        _string_enum(SubscriptionStatus, "subscription_status"),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("daily_credits >= 0", name="ck_subscription_daily_credits_non_negative"),
        CheckConstraint(
            "monthly_credits >= 0", name="ck_subscription_monthly_credits_non_negative"
        ),
        CheckConstraint(
            "daily_remaining >= 0 AND daily_remaining <= daily_credits",
            name="ck_subscription_daily_remaining_bounds",
        ),
        CheckConstraint(
            "monthly_remaining >= 0 AND monthly_remaining <= monthly_credits",
            name="ck_subscription_monthly_remaining_bounds",
        ),
        CheckConstraint("monthly_cycle_index >= 0", name="ck_subscription_cycle_non_negative"),
        CheckConstraint("end_date >= start_date", name="ck_subscription_dates_ordered"),
        Index("idx_wallet_subscriptions_user_status", "user_id", "status"),
        Index("idx_wallet_subscriptions_end_date", "end_date"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UserSubscription(id={self.id}, user_id={self.user_id}, "
            f"daily={self.daily_remaining}/{self.daily_credits}, "
            f"monthly={self.monthly_remaining}/{self.monthly_credits}, status={self.status})>"
        )


class CreditTransaction(Base):
    """
    ORM model for credit_transactions table.

    Append-only ledger of every deduction, addition and refund. Balances are
    the wallet total across all pools.
    """

    __tablename__ = "credit_transactions"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    user_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("wallet_accounts.user_id", ondelete="CASCADE"),
        nullable=False,
    )

    type: Mapped[TransactionType] = mapped_column(
        _string_enum(TransactionType, "transaction_type"), nullable=False
    )

    # Amount and balance snapshots
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    reason: Mapped[str] = mapped_column(Text, nullable=False)
    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Refunds only: the deduction being reversed
    source_transaction_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("credit_transactions.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Note: Database column is "metadata", Python uses "transaction_metadata" to avoid
    # clashing with DeclarativeBase.metadata
    transaction_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONB, nullable=True
    )

    # Audit timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_credit_transaction_amount_non_negative"),
        CheckConstraint("balance_after >= 0", name="ck_credit_transaction_balance_non_negative"),
        CheckConstraint(
            "(type = 'deduction' AND balance_after = balance_before - amount) OR "
            "(type IN ('addition', 'refund') AND balance_after = balance_before + amount)",
            name="ck_credit_transaction_balance_delta",
        ),
        Index("idx_credit_transactions_user_created", "user_id", "created_at"),
        Index(
            "idx_credit_transactions_source",
            "source_transaction_id",
            postgresql_where=(source_transaction_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditTransaction(id={self.id}, user_id={self.user_id}, type={self.type}, "
            f"amount={self.amount}, balance_after={self.balance_after})>"
        )


class GenerationTaskMixin:
    """Columns shared by video_tasks and image_tasks."""

    KIND: ClassVar[TaskKind]

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Request
    mode: Mapped[str] = mapped_column(String(50), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    aspect_ratio: Mapped[str | None] = mapped_column(String(20), nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    source_asset_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Provider job (NULL until the provider accepts the submission)
    provider_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    status: Mapped[TaskStatus] = mapped_column(
        _string_enum(TaskStatus, "task_status"), nullable=False, default=TaskStatus.PENDING
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Results
    provider_result_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Funding
    credit_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    credit_transaction_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("credit_transactions.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Retry bookkeeping
    generate_retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    callback_retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<{type(self).__name__}(id={self.id}, user_id={self.user_id}, "
            f"status={self.status}, provider_task_id={self.provider_task_id})>"
        )


class VideoTask(GenerationTaskMixin, Base):
    """ORM model for video_tasks table."""

    __tablename__ = "video_tasks"
    KIND = TaskKind.VIDEO

    __table_args__ = (
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_video_task_progress"),
        CheckConstraint("credit_cost >= 0", name="ck_video_task_cost_non_negative"),
        Index("idx_video_tasks_user_created", "user_id", "created_at"),
    )


class ImageTask(GenerationTaskMixin, Base):
    """ORM model for image_tasks table."""

    __tablename__ = "image_tasks"
    KIND = TaskKind.IMAGE

    __table_args__ = (
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_image_task_progress"),
        CheckConstraint("credit_cost >= 0", name="ck_image_task_cost_non_negative"),
        Index("idx_image_tasks_user_created", "user_id", "created_at"),
    )


GenerationTask = VideoTask | ImageTask

TASK_MODELS: dict[TaskKind, type[VideoTask] | type[ImageTask]] = {
    TaskKind.VIDEO: VideoTask,
    TaskKind.IMAGE: ImageTask,
}


class SystemConfig(Base):
    """
    ORM model for system_config table.

    Admin-tunable key/value settings (credit costs, provider switches).
    """

    __tablename__ = "system_config"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<SystemConfig(key={self.key}, value={self.value})>"
