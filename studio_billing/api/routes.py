"""
API Routes - internal wallet and generation endpoints.

NO DICTIONARIES - All requests/responses use Pydantic models.
Every route requires the internal service key; end-user auth happens in the
web layer that calls this service.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.api.dependencies import (
    get_history_service,
    get_subscription_service,
    get_task_service,
    get_wallet_service,
    require_service_key,
)
from studio_billing.db.session import get_read_db
from studio_billing.exceptions import (
    DataIntegrityError,
    InsufficientCreditsError,
    InvalidAmountError,
    ProviderError,
    TaskNotFoundError,
    WalletNotFoundError,
    WriteVerificationError,
)
from studio_billing.models.api import (
    AddCreditsRequest,
    DeductRequest,
    GenerationRequest,
    GrantSubscriptionRequest,
    HealthResponse,
    InsufficientCreditsDetail,
    RefundRequest,
    SubscriptionPoolResponse,
    SubscriptionResponse,
    TaskKind,
    TaskListResponse,
    TaskResponse,
    TransactionItem,
    TransactionListResponse,
    TransactionResponse,
    WalletResponse,
)
from studio_billing.models.domain import GenerationParams, SubscriptionGrant, TaskData
from studio_billing.observability.logging import get_logger
from studio_billing.services.subscriptions import SubscriptionService
from studio_billing.services.tasks import TaskService
from studio_billing.services.wallet import WalletService

logger = get_logger(__name__)

router = APIRouter()


def _insufficient_credits(exc: InsufficientCreditsError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        content=InsufficientCreditsDetail(
            detail="Insufficient credits", balance=exc.balance, required=exc.required
        ).model_dump(),
    )


def _wallet_not_found(exc: WalletNotFoundError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Wallet not found for user: {exc.user_id}",
    )


def _integrity_failure() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Database integrity error",
    )


def _task_response(task: TaskData) -> TaskResponse:
    return TaskResponse(
        task_id=task.task_id,
        kind=task.kind,
        status=task.status,
        progress=task.progress,
        model=task.model,
        result_url=task.result_url,
        error_message=task.error_message,
        credit_cost=task.credit_cost,
        created_at=task.created_at.isoformat(),
        completed_at=task.completed_at.isoformat() if task.completed_at else None,
    )


# ============================================================================
# Wallet
# ============================================================================


@router.get(
    "/v1/wallets/{user_id}",
    response_model=WalletResponse,
    dependencies=[Depends(require_service_key)],
)
async def get_wallet(
    user_id: str,
    service: WalletService = Depends(get_wallet_service),
) -> WalletResponse:
    """
    Balance broken down by pool.

    Write operation - applies any pending rollover.
    """
    try:
        snapshot = await service.get_wallet(user_id)
    except WalletNotFoundError as exc:
        raise _wallet_not_found(exc) from exc

    return WalletResponse(
        user_id=snapshot.user_id,
        balance=snapshot.balance,
        purchased_credits=snapshot.purchased_credits,
        subscriptions=[
            SubscriptionPoolResponse(
                subscription_id=pool.subscription_id,
                package_id=pool.package_id,
                start_date=pool.start_date,
                end_date=pool.end_date,
                daily_credits=pool.daily_credits,
                daily_remaining=pool.daily_remaining,
                monthly_credits=pool.monthly_credits,
                monthly_remaining=pool.monthly_remaining,
            )
            for pool in snapshot.subscriptions
        ],
    )


@router.get(
    "/v1/wallets/{user_id}/transactions",
    response_model=TransactionListResponse,
    dependencies=[Depends(require_service_key)],
)
async def get_transaction_history(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    service: WalletService = Depends(get_history_service),
) -> TransactionListResponse:
    """Ledger history, most recent first. Read operation - may use replica."""
    history = await service.get_history(user_id, limit=limit)
    return TransactionListResponse(
        transactions=[
            TransactionItem(
                transaction_id=item.transaction_id,
                type=item.type,
                amount=item.amount,
                balance_before=item.balance_before,
                balance_after=item.balance_after,
                reason=item.reason,
                reference_type=item.reference_type,
                reference_id=item.reference_id,
                source_transaction_id=item.source_transaction_id,
                created_at=item.created_at.isoformat(),
            )
            for item in history
        ]
    )


@router.post(
    "/v1/wallets/{user_id}/deductions",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_service_key)],
    responses={402: {"model": InsufficientCreditsDetail}},
)
async def deduct_credits(
    user_id: str,
    request: DeductRequest,
    service: WalletService = Depends(get_wallet_service),
) -> TransactionResponse | JSONResponse:
    """Spend credits, subscription allowances first."""
    try:
        result = await service.deduct(
            user_id,
            request.amount,
            request.reason,
            reference_type=request.reference_type,
            reference_id=request.reference_id,
        )
    except InsufficientCreditsError as exc:
        return _insufficient_credits(exc)
    except WalletNotFoundError as exc:
        raise _wallet_not_found(exc) from exc
    except InvalidAmountError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        logger.error("deduction_integrity_failure", user_id=user_id, error=str(exc))
        raise _integrity_failure() from exc

    return TransactionResponse(transaction_id=result.transaction_id, new_balance=result.new_balance)


@router.post(
    "/v1/wallets/{user_id}/refunds",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_service_key)],
)
async def refund_credits(
    user_id: str,
    request: RefundRequest,
    service: WalletService = Depends(get_wallet_service),
) -> TransactionResponse:
    """Return credits, to their original pools when the source deduction is known."""
    try:
        result = await service.refund(
            user_id,
            request.amount,
            request.reason,
            reference_type=request.reference_type,
            reference_id=request.reference_id,
            source_transaction_id=request.source_transaction_id,
        )
    except WalletNotFoundError as exc:
        raise _wallet_not_found(exc) from exc
    except InvalidAmountError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        logger.error("refund_integrity_failure", user_id=user_id, error=str(exc))
        raise _integrity_failure() from exc

    return TransactionResponse(transaction_id=result.transaction_id, new_balance=result.new_balance)


@router.post(
    "/v1/wallets/{user_id}/additions",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_service_key)],
)
async def add_credits(
    user_id: str,
    request: AddCreditsRequest,
    service: WalletService = Depends(get_wallet_service),
) -> TransactionResponse:
    """
    Add purchased credits.

    Creates the wallet on a user's first purchase.
    """
    try:
        await service.ensure_wallet(user_id)
        result = await service.add_credits(
            user_id,
            request.amount,
            request.reason,
            reference_type=request.reference_type,
            reference_id=request.reference_id,
        )
    except InvalidAmountError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        logger.error("addition_integrity_failure", user_id=user_id, error=str(exc))
        raise _integrity_failure() from exc

    return TransactionResponse(transaction_id=result.transaction_id, new_balance=result.new_balance)


@router.post(
    "/v1/wallets/{user_id}/subscriptions",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_service_key)],
)
async def grant_subscription(
    user_id: str,
    request: GrantSubscriptionRequest,
    wallet: WalletService = Depends(get_wallet_service),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    """Activate a purchased subscription."""
    try:
        grant = SubscriptionGrant(
            package_id=request.package_id,
            daily_credits=request.daily_credits,
            monthly_credits=request.monthly_credits,
            duration_days=request.duration_days,
        )
        await wallet.ensure_wallet(user_id)
        result = await service.grant_subscription(
            user_id, grant, order_id=request.order_id, start_date=request.start_date
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except WalletNotFoundError as exc:
        raise _wallet_not_found(exc) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        logger.error("subscription_integrity_failure", user_id=user_id, error=str(exc))
        raise _integrity_failure() from exc

    return SubscriptionResponse(
        subscription_id=result.subscription_id,
        start_date=result.start_date,
        end_date=result.end_date,
        opening_transaction_id=result.opening_transaction_id,
        new_balance=result.new_balance,
    )


# ============================================================================
# Generations
# ============================================================================


@router.post(
    "/v1/generations/{kind}",
    response_model=TaskResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_service_key)],
    responses={402: {"model": InsufficientCreditsDetail}},
)
async def start_generation(
    kind: TaskKind,
    request: GenerationRequest,
    service: TaskService = Depends(get_task_service),
) -> TaskResponse | JSONResponse:
    """
    Pay for and submit one generation.

    The returned task is running, retrying, or (if the provider refused it
    outright) already failed and refunded.
    """
    try:
        params = GenerationParams(
            prompt=request.prompt,
            mode=request.mode,
            model=request.model,
            aspect_ratio=request.aspect_ratio,
            duration_seconds=request.duration_seconds,
            source_asset_url=request.source_asset_url,
        )
        task = await service.start_generation(request.user_id, kind, params)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except InsufficientCreditsError as exc:
        return _insufficient_credits(exc)
    except WalletNotFoundError as exc:
        raise _wallet_not_found(exc) from exc
    except ProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message
        ) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        logger.error("generation_integrity_failure", user_id=request.user_id, error=str(exc))
        raise _integrity_failure() from exc

    return _task_response(task)


@router.get(
    "/v1/generations/{kind}",
    response_model=TaskListResponse,
    dependencies=[Depends(require_service_key)],
)
async def list_generations(
    kind: TaskKind,
    user_id: str = Query(..., min_length=1),
    active_only: bool = Query(False),
    limit: int = Query(20, ge=1, le=100),
    service: TaskService = Depends(get_task_service),
) -> TaskListResponse:
    """A user's tasks of one kind, newest first."""
    if active_only:
        tasks = await service.list_active(user_id, kind)
    else:
        tasks = await service.list_for_user(user_id, kind, limit=limit)
    return TaskListResponse(tasks=[_task_response(task) for task in tasks])


@router.get(
    "/v1/generations/{kind}/{task_id}",
    response_model=TaskResponse,
    dependencies=[Depends(require_service_key)],
)
async def get_generation(
    kind: TaskKind,
    task_id: UUID,
    user_id: str = Query(..., min_length=1),
    service: TaskService = Depends(get_task_service),
) -> TaskResponse:
    """
    Task status.

    Active tasks are refreshed from the provider first, covering lost callbacks.
    """
    try:
        task = await service.get_by_id(task_id, kind)
        if task.user_id != user_id:
            raise TaskNotFoundError(task_id)
        if not task.is_terminal:
            task = await service.refresh_from_provider(task_id, kind)
    except TaskNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Task not found"
        ) from exc

    return _task_response(task)


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_check_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
