"""
Provider Gateway - the generation provider and asset storage seams.

TaskService depends only on the ProviderGateway and AssetStore protocols.
HttpProviderGateway talks to a KIE-style jobs API:

    POST {base}/jobs/createTask        -> {"code": 200, "data": {"taskId": "..."}}
    GET  {base}/jobs/recordInfo?taskId -> {"code": 200, "data": {"state": ..., "progress": ...,
                                           "failMsg": ..., "resultJson": {"resultUrls": [...]}}}
"""

import time
from typing import Any, Protocol
from uuid import UUID

import httpx

from studio_billing.config import Settings
from studio_billing.exceptions import ProviderError, ProviderUnavailableError
from studio_billing.models.api import ProviderState, TaskKind, first_result_url
from studio_billing.models.domain import ProviderJobRequest, ProviderStatus
from studio_billing.observability.logging import get_logger
from studio_billing.observability.metrics import metrics
from studio_billing.observability.tracing import trace_operation

logger = get_logger(__name__)

PROVIDER_OK_CODE = 200

_STATE_ALIASES: dict[str, ProviderState] = {
    "success": ProviderState.SUCCEEDED,
    "succeeded": ProviderState.SUCCEEDED,
    "completed": ProviderState.SUCCEEDED,
    "fail": ProviderState.ERROR,
    "failed": ProviderState.ERROR,
    "error": ProviderState.ERROR,
    "generating": ProviderState.RUNNING,
    "running": ProviderState.RUNNING,
    "processing": ProviderState.RUNNING,
    "waiting": ProviderState.PENDING,
    "queuing": ProviderState.PENDING,
    "queued": ProviderState.PENDING,
    "pending": ProviderState.PENDING,
}


def normalize_provider_state(raw: str | None) -> ProviderState:
    """Map a provider's state vocabulary onto ours. Unknown states are pending."""
    return _STATE_ALIASES.get((raw or "").strip().lower(), ProviderState.PENDING)


class ProviderGateway(Protocol):
    """Starts generation jobs and reports their status."""

    async def create_job(self, request: ProviderJobRequest) -> str:
        """Submit a job and return the provider's job id."""
        ...

    async def poll_status(self, provider_job_id: str) -> ProviderStatus:
        """Fetch the current status of a job."""
        ...


class AssetStore(Protocol):
    """Copies provider results into durable storage."""

    async def migrate(self, source_url: str, user_id: str, task_id: UUID) -> str:
        """Return the durable URL for source_url."""
        ...


class PassthroughAssetStore:
    """Used when no object storage is configured: keeps the provider URL."""

    async def migrate(self, source_url: str, user_id: str, task_id: UUID) -> str:
        return source_url


class HttpProviderGateway:
    """ProviderGateway over HTTP with httpx."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpProviderGateway":
        return cls(
            base_url=settings.provider_base_url,
            api_key=settings.provider_api_key,
            timeout_seconds=settings.provider_timeout_seconds,
        )

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def create_job(self, request: ProviderJobRequest) -> str:
        """
        Submit a generation job.

        Raises:
            ProviderUnavailableError: transport failure or 5xx
            ProviderError: the provider rejected the job (message is the provider's)
        """
        body: dict[str, Any] = {
            "model": provider_model_name(request),
            "input": _job_input(request),
        }
        if request.callback_url:
            body["callBackUrl"] = request.callback_url

        with trace_operation(
            "provider.create_job", task_id=str(request.task_id), model=body["model"]
        ) as span:
            data = await self._call("create_job", "POST", "/jobs/createTask", json=body)
            job_id = data.get("taskId") if isinstance(data, dict) else None
            if not job_id:
                raise ProviderError("Provider response did not include a task id")
            span.set_attribute("provider_job_id", str(job_id))

        logger.info(
            "provider_job_created",
            task_id=str(request.task_id),
            provider_job_id=job_id,
            model=body["model"],
        )
        return str(job_id)

    async def poll_status(self, provider_job_id: str) -> ProviderStatus:
        """
        Fetch a job's status.

        Raises:
            ProviderUnavailableError: transport failure or 5xx
            ProviderError: the provider rejected the query
        """
        with trace_operation("provider.poll_status", provider_job_id=provider_job_id):
            data = await self._call(
                "poll_status", "GET", "/jobs/recordInfo", params={"taskId": provider_job_id}
            )

        if not isinstance(data, dict):
            raise ProviderError("Provider status response had no data")

        progress = data.get("progress")
        return ProviderStatus(
            provider_job_id=provider_job_id,
            state=normalize_provider_state(data.get("state")),
            progress=_clamp_progress(progress),
            result_url=first_result_url(data.get("resultJson")),
            error_message=data.get("failMsg") or None,
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _call(self, operation: str, method: str, path: str, **kwargs: Any) -> Any:
        start = time.perf_counter()
        success = False
        try:
            try:
                response = await self.http_client.request(
                    method,
                    f"{self.base_url}{path}",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    **kwargs,
                )
            except httpx.TransportError as e:
                logger.warning("provider_unreachable", operation=operation, error=str(e))
                raise ProviderUnavailableError(f"Provider unreachable: {e}") from e

            if response.status_code >= 500:
                logger.warning(
                    "provider_server_error",
                    operation=operation,
                    status=response.status_code,
                    text=response.text[:500],
                )
                raise ProviderUnavailableError(f"Provider returned HTTP {response.status_code}")

            try:
                payload = response.json()
            except ValueError:
                payload = None

            if response.status_code >= 400:
                message = _payload_message(payload) or response.text[:500]
                raise ProviderError(message or f"Provider returned HTTP {response.status_code}")

            if not isinstance(payload, dict) or payload.get("code") != PROVIDER_OK_CODE:
                raise ProviderError(_payload_message(payload) or "Provider request failed")

            success = True
            return payload.get("data")
        finally:
            metrics.record_provider_call(operation, success, time.perf_counter() - start)


def provider_model_name(request: ProviderJobRequest) -> str:
    """Video models come in text-to-video and image-to-video variants."""
    if request.kind == TaskKind.VIDEO:
        variant = "image-to-video" if request.source_asset_url else "text-to-video"
        return f"{request.model}-{variant}"
    return request.model


def _job_input(request: ProviderJobRequest) -> dict[str, Any]:
    job_input: dict[str, Any] = {"prompt": request.prompt}
    if request.kind == TaskKind.VIDEO:
        job_input["aspect_ratio"] = "portrait" if request.aspect_ratio == "9:16" else "landscape"
        job_input["n_frames"] = "15" if request.duration_seconds == 15 else "10"
        job_input["remove_watermark"] = True
        if request.source_asset_url:
            job_input["image_urls"] = [request.source_asset_url]
    else:
        if request.aspect_ratio:
            job_input["image_size"] = request.aspect_ratio
        if request.source_asset_url:
            job_input["image_urls"] = [request.source_asset_url]
    return job_input


def _payload_message(payload: Any) -> str | None:
    if isinstance(payload, dict):
        message = payload.get("msg") or payload.get("message")
        if message:
            return str(message)
    return None


def _clamp_progress(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return max(0, min(100, int(value)))
