"""
Provider callback route.

The generation provider pushes job status here. Callbacks are authenticated
with a bearer token before the payload is trusted; unknown jobs are
acknowledged so the provider stops redelivering them.
"""

from fastapi import APIRouter, Depends

from studio_billing.api.dependencies import get_task_service, verify_provider_callback
from studio_billing.models.api import CallbackResponse, ProviderCallbackPayload
from studio_billing.models.domain import ProviderStatus
from studio_billing.observability.logging import get_logger
from studio_billing.services.provider_gateway import normalize_provider_state
from studio_billing.services.tasks import TaskService

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/callbacks", tags=["callbacks"])


@router.post(
    "/provider",
    response_model=CallbackResponse,
    dependencies=[Depends(verify_provider_callback)],
)
async def provider_callback(
    payload: ProviderCallbackPayload,
    service: TaskService = Depends(get_task_service),
) -> CallbackResponse:
    """Apply a pushed job status to the task that owns the job."""
    task = await service.get_by_provider_id(payload.task_id)
    if task is None:
        logger.warning("provider_callback_unknown_job", provider_job_id=payload.task_id)
        return CallbackResponse(received=False)

    status = ProviderStatus(
        provider_job_id=payload.task_id,
        state=normalize_provider_state(payload.state),
        progress=payload.progress,
        result_url=payload.result_url,
        error_message=payload.error_message,
    )
    logger.info(
        "provider_callback_received",
        task_id=str(task.task_id),
        provider_job_id=payload.task_id,
        state=status.state.value,
    )
    await service.apply_status_update(task.task_id, status, task.kind)
    return CallbackResponse()
