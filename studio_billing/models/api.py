"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

import json
from datetime import date
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from studio_billing.observability.logging import get_logger

logger = get_logger(__name__)


class TransactionType(str, Enum):
    """Credit transaction type enumeration."""

    DEDUCTION = "deduction"
    ADDITION = "addition"
    REFUND = "refund"


class SubscriptionStatus(str, Enum):
    """Subscription status enumeration. Only ever moves active -> expired."""

    ACTIVE = "active"
    EXPIRED = "expired"


class TaskStatus(str, Enum):
    """Generation task status enumeration."""

    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    ERROR = "error"


class TaskKind(str, Enum):
    """Kind of generation a task produces."""

    VIDEO = "video"
    IMAGE = "image"


class ProviderState(str, Enum):
    """Normalized provider-side job state."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    ERROR = "error"


# ============================================================================
# Wallet Models
# ============================================================================


class DeductRequest(BaseModel):
    """POST /v1/wallets/{user_id}/deductions request body."""

    amount: int = Field(..., ge=0)
    reason: str = Field(..., min_length=1, max_length=500)
    reference_type: str | None = Field(None, max_length=50)
    reference_id: str | None = Field(None, max_length=255)


class RefundRequest(BaseModel):
    """POST /v1/wallets/{user_id}/refunds request body."""

    amount: int = Field(..., ge=0)
    reason: str = Field(..., min_length=1, max_length=500)
    reference_type: str | None = Field(None, max_length=50)
    reference_id: str | None = Field(None, max_length=255)
    source_transaction_id: UUID | None = Field(
        None, description="Deduction being reversed; provenance is restored when it matches"
    )


class AddCreditsRequest(BaseModel):
    """POST /v1/wallets/{user_id}/additions request body."""

    amount: int = Field(..., ge=0)
    reason: str = Field(..., min_length=1, max_length=500)
    reference_type: str | None = Field(None, max_length=50)
    reference_id: str | None = Field(None, max_length=255)


class TransactionResponse(BaseModel):
    """Response for any wallet mutation."""

    transaction_id: UUID
    new_balance: int


class SubscriptionPoolResponse(BaseModel):
    """Remaining allowance of one active subscription."""

    subscription_id: UUID
    package_id: str
    start_date: date
    end_date: date
    daily_credits: int
    daily_remaining: int
    monthly_credits: int
    monthly_remaining: int


class WalletResponse(BaseModel):
    """GET /v1/wallets/{user_id} response."""

    user_id: str
    balance: int = Field(..., description="Total available credits across all pools")
    purchased_credits: int
    subscriptions: list[SubscriptionPoolResponse]


class TransactionItem(BaseModel):
    """Single credit transaction in history."""

    transaction_id: UUID
    type: TransactionType
    amount: int
    balance_before: int
    balance_after: int
    reason: str
    reference_type: str | None
    reference_id: str | None
    source_transaction_id: UUID | None
    created_at: str  # ISO 8601 timestamp


class TransactionListResponse(BaseModel):
    """GET /v1/wallets/{user_id}/transactions response (newest first)."""

    transactions: list[TransactionItem]


class GrantSubscriptionRequest(BaseModel):
    """POST /v1/wallets/{user_id}/subscriptions request body."""

    package_id: str = Field(..., min_length=1, max_length=100)
    daily_credits: int = Field(..., ge=0)
    monthly_credits: int = Field(..., ge=0)
    duration_days: int = Field(..., gt=0)
    order_id: str | None = Field(None, max_length=255)
    start_date: date | None = None


class SubscriptionResponse(BaseModel):
    """POST /v1/wallets/{user_id}/subscriptions response."""

    subscription_id: UUID
    start_date: date
    end_date: date
    opening_transaction_id: UUID | None
    new_balance: int


# ============================================================================
# Generation Models
# ============================================================================


class GenerationRequest(BaseModel):
    """POST /v1/generations/{kind} request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    prompt: str = Field(..., min_length=1, max_length=5000)
    mode: str = Field("fast", max_length=50, description="video: fast|quality, image: generate|edit")
    model: str | None = Field(None, max_length=100)
    aspect_ratio: str = Field("16:9", max_length=20)
    duration_seconds: int | None = Field(None, gt=0, le=60)
    source_asset_url: str | None = Field(None, max_length=2048)

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        """Reject whitespace-only prompts."""
        if not v.strip():
            raise ValueError("prompt cannot be blank")
        return v.strip()


class TaskResponse(BaseModel):
    """Generation task status response."""

    task_id: UUID
    kind: TaskKind
    status: TaskStatus
    progress: int
    model: str
    result_url: str | None
    error_message: str | None
    credit_cost: int
    created_at: str
    completed_at: str | None


class TaskListResponse(BaseModel):
    """GET /v1/generations/{kind}?user_id= response."""

    tasks: list[TaskResponse]


class ProviderCallbackPayload(BaseModel):
    """
    POST /v1/callbacks/provider request body.

    Accepts the provider's own field names alongside ours, either flat or
    wrapped in its {"code", "msg", "data": {...}} envelope.
    """

    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(..., validation_alias=AliasChoices("task_id", "taskId"))
    state: str = Field(..., validation_alias=AliasChoices("state", "status"))
    progress: int | None = Field(None, ge=0, le=100)
    result_url: str | None = Field(
        None, validation_alias=AliasChoices("result_url", "video_url", "image_url")
    )
    error_message: str | None = Field(
        None, validation_alias=AliasChoices("error_message", "failMsg", "error")
    )

    @model_validator(mode="before")
    @classmethod
    def unwrap_envelope(cls, values: Any) -> Any:
        """Lift data.* to the top level and pull the result URL out of resultJson."""
        if not isinstance(values, dict):
            return values
        merged = {key: value for key, value in values.items() if key != "data"}
        data = values.get("data")
        if isinstance(data, dict):
            for key, value in data.items():
                merged.setdefault(key, value)
        if not any(merged.get(key) for key in ("result_url", "video_url", "image_url")):
            url = first_result_url(merged.get("resultJson"))
            if url:
                merged["result_url"] = url
        return merged


class CallbackResponse(BaseModel):
    """POST /v1/callbacks/provider response."""

    received: bool = True


# ============================================================================
# Admin Models
# ============================================================================


class SweepResponse(BaseModel):
    """POST /v1/admin/subscriptions/sweep response."""

    users_processed: int
    expired: int
    daily_resets: int
    monthly_resets: int


class SettingsUpdateRequest(BaseModel):
    """PATCH /v1/admin/settings request body - only supplied fields change."""

    video_fast_credit_cost: int | None = Field(None, ge=0)
    video_quality_credit_cost: int | None = Field(None, ge=0)
    image_credit_cost: int | None = Field(None, ge=0)
    provider_enabled: bool | None = None
    updated_by: str | None = Field(None, max_length=255)


class SettingsResponse(BaseModel):
    """Current system settings."""

    video_fast_credit_cost: int
    video_quality_credit_cost: int
    image_credit_cost: int
    provider_enabled: bool


# ============================================================================
# Health Check Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str


# ============================================================================
# Error Models
# ============================================================================


class ErrorDetail(BaseModel):
    """Standard error response detail."""

    detail: str


class InsufficientCreditsDetail(BaseModel):
    """402 response body."""

    detail: str
    balance: int
    required: int


def first_result_url(result_json: Any) -> str | None:
    """resultJson arrives either as an object or as a JSON-encoded string."""
    if isinstance(result_json, str):
        try:
            result_json = json.loads(result_json)
        except ValueError:
            logger.warning("provider_result_json_unparseable")
            return None
    if not isinstance(result_json, dict):
        return None
    urls = result_json.get("resultUrls")
    if isinstance(urls, list) and urls and isinstance(urls[0], str):
        return urls[0]
    return None
