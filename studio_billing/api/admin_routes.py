"""
Admin API routes - rollover sweep and runtime settings.

Protected by the internal service key like the rest of the API.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.api.dependencies import (
    AppComponents,
    get_components,
    get_subscription_service,
    get_system_config_service,
    require_service_key,
)
from studio_billing.db.session import get_read_db
from studio_billing.models.api import SettingsResponse, SettingsUpdateRequest, SweepResponse
from studio_billing.observability.logging import get_logger
from studio_billing.services.settings_cache import (
    IMAGE_COST_KEY,
    PROVIDER_ENABLED_KEY,
    VIDEO_FAST_COST_KEY,
    VIDEO_QUALITY_COST_KEY,
    StudioSettings,
    SystemConfigService,
)
from studio_billing.services.subscriptions import SubscriptionService

logger = get_logger(__name__)
router = APIRouter(
    prefix="/v1/admin", tags=["admin"], dependencies=[Depends(require_service_key)]
)


def _settings_response(studio_settings: StudioSettings) -> SettingsResponse:
    return SettingsResponse(
        video_fast_credit_cost=studio_settings.video_fast_credit_cost,
        video_quality_credit_cost=studio_settings.video_quality_credit_cost,
        image_credit_cost=studio_settings.image_credit_cost,
        provider_enabled=studio_settings.provider_enabled,
    )


@router.post("/subscriptions/sweep", response_model=SweepResponse)
async def sweep_subscriptions(
    service: SubscriptionService = Depends(get_subscription_service),
) -> SweepResponse:
    """
    Expire and reset every active subscription up to today.

    Rollover also happens lazily on each wallet access; the sweep keeps
    stored state current for users who are not active.
    """
    result = await service.sweep()
    return SweepResponse(
        users_processed=result.users_processed,
        expired=result.expired,
        daily_resets=result.daily_resets,
        monthly_resets=result.monthly_resets,
    )


@router.get("/settings", response_model=SettingsResponse)
async def get_settings(
    db: AsyncSession = Depends(get_read_db),
    components: AppComponents = Depends(get_components),
) -> SettingsResponse:
    return _settings_response(await components.settings_cache.get(db))


@router.patch("/settings", response_model=SettingsResponse)
async def update_settings(
    request: SettingsUpdateRequest,
    service: SystemConfigService = Depends(get_system_config_service),
) -> SettingsResponse:
    """Change prices or switch generation on/off. Only supplied fields change."""
    values: dict[str, str] = {}
    if request.video_fast_credit_cost is not None:
        values[VIDEO_FAST_COST_KEY] = str(request.video_fast_credit_cost)
    if request.video_quality_credit_cost is not None:
        values[VIDEO_QUALITY_COST_KEY] = str(request.video_quality_credit_cost)
    if request.image_credit_cost is not None:
        values[IMAGE_COST_KEY] = str(request.image_credit_cost)
    if request.provider_enabled is not None:
        values[PROVIDER_ENABLED_KEY] = "true" if request.provider_enabled else "false"

    if not values:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="No settings supplied",
        )

    studio_settings = await service.update(values, updated_by=request.updated_by)
    logger.info(
        "admin_settings_updated", keys=sorted(values), updated_by=request.updated_by
    )
    return _settings_response(studio_settings)
