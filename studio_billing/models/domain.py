"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import date, datetime
from uuid import UUID

from studio_billing.models.api import ProviderState, TaskKind, TaskStatus, TransactionType

TERMINAL_TASK_STATUSES = frozenset({TaskStatus.SUCCEEDED, TaskStatus.ERROR})


@dataclass(frozen=True)
class TransactionResult:
    """Outcome of a wallet mutation."""

    transaction_id: UUID
    new_balance: int


@dataclass(frozen=True)
class SubscriptionPool:
    """Remaining allowance of one active subscription at a point in time."""

    subscription_id: UUID
    package_id: str
    start_date: date
    end_date: date
    daily_credits: int
    daily_remaining: int
    monthly_credits: int
    monthly_remaining: int

    @property
    def remaining(self) -> int:
        return self.daily_remaining + self.monthly_remaining


@dataclass(frozen=True)
class WalletSnapshot:
    """Immutable wallet state broken down by credit source."""

    user_id: str
    purchased_credits: int
    subscriptions: tuple[SubscriptionPool, ...]

    def __post_init__(self) -> None:
        """Validate balance constraints."""
        if self.purchased_credits < 0:
            raise ValueError(f"Purchased credits cannot be negative: {self.purchased_credits}")

    @property
    def balance(self) -> int:
        """Total spendable credits across all pools."""
        return self.purchased_credits + sum(pool.remaining for pool in self.subscriptions)


@dataclass(frozen=True)
class TransactionData:
    """Immutable credit transaction after persistence."""

    transaction_id: UUID
    user_id: str
    type: TransactionType
    amount: int
    balance_before: int
    balance_after: int
    reason: str
    reference_type: str | None
    reference_id: str | None
    source_transaction_id: UUID | None
    created_at: datetime


@dataclass(frozen=True)
class SubscriptionGrant:
    """Domain model for a subscription purchase before persistence - immutable intent."""

    package_id: str
    daily_credits: int
    monthly_credits: int
    duration_days: int

    def __post_init__(self) -> None:
        """Validate grant constraints."""
        if not self.package_id:
            raise ValueError("package_id cannot be empty")
        if self.daily_credits < 0 or self.monthly_credits < 0:
            raise ValueError(
                f"Allowances cannot be negative: daily={self.daily_credits}, "
                f"monthly={self.monthly_credits}"
            )
        if self.duration_days <= 0:
            raise ValueError(f"Duration must be positive: {self.duration_days}")


@dataclass(frozen=True)
class GrantResult:
    """Outcome of granting a subscription."""

    subscription_id: UUID
    start_date: date
    end_date: date
    opening_transaction_id: UUID | None
    new_balance: int


@dataclass(frozen=True)
class SweepResult:
    """Totals from one proactive rollover sweep."""

    users_processed: int = 0
    expired: int = 0
    daily_resets: int = 0
    monthly_resets: int = 0


# ============================================================================
# Generation Task Models
# ============================================================================


@dataclass(frozen=True)
class GenerationParams:
    """What the user asked to generate."""

    prompt: str
    mode: str = "fast"
    model: str | None = None
    aspect_ratio: str = "16:9"
    duration_seconds: int | None = None
    source_asset_url: str | None = None

    def __post_init__(self) -> None:
        """Validate generation parameters."""
        if not self.prompt or not self.prompt.strip():
            raise ValueError("Prompt cannot be empty")
        if self.duration_seconds is not None and self.duration_seconds <= 0:
            raise ValueError(f"Duration must be positive: {self.duration_seconds}")


@dataclass(frozen=True)
class Created:
    """Task exists locally but no provider job has been accepted yet."""


@dataclass(frozen=True)
class Submitted:
    """Provider accepted the job under this identifier."""

    provider_job_id: str


SubmissionState = Created | Submitted


@dataclass(frozen=True)
class TaskData:
    """Immutable generation task snapshot."""

    task_id: UUID
    kind: TaskKind
    user_id: str
    status: TaskStatus
    progress: int
    mode: str
    model: str
    prompt: str
    aspect_ratio: str | None
    duration_seconds: int | None
    source_asset_url: str | None
    submission: SubmissionState
    provider_result_url: str | None
    result_url: str | None
    error_message: str | None
    credit_cost: int
    credit_transaction_id: UUID | None
    generate_retry_count: int
    callback_retry_count: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    @property
    def provider_job_id(self) -> str | None:
        if isinstance(self.submission, Submitted):
            return self.submission.provider_job_id
        return None


@dataclass(frozen=True)
class ProviderJobRequest:
    """Everything the provider needs to start a job."""

    task_id: UUID
    kind: TaskKind
    model: str
    prompt: str
    aspect_ratio: str | None
    duration_seconds: int | None
    source_asset_url: str | None
    callback_url: str | None


@dataclass(frozen=True)
class ProviderStatus:
    """Normalized status report from the provider (callback or poll)."""

    provider_job_id: str
    state: ProviderState
    progress: int | None = None
    result_url: str | None = None
    error_message: str | None = None

    def __post_init__(self) -> None:
        """Validate progress bounds."""
        if self.progress is not None and not 0 <= self.progress <= 100:
            raise ValueError(f"Progress must be within 0-100: {self.progress}")
