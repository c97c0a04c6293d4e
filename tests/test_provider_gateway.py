"""
Tests for the HTTP provider gateway, against httpx.MockTransport.
"""

import json
from uuid import uuid4

import httpx
import pytest

from studio_billing.exceptions import ProviderError, ProviderUnavailableError
from studio_billing.models.api import ProviderState, TaskKind
from studio_billing.models.domain import ProviderJobRequest
from studio_billing.services.provider_gateway import (
    HttpProviderGateway,
    PassthroughAssetStore,
    normalize_provider_state,
    provider_model_name,
)


def video_request(**overrides) -> ProviderJobRequest:
    fields = {
        "task_id": uuid4(),
        "kind": TaskKind.VIDEO,
        "model": "sora-2",
        "prompt": "a cat surfing",
        "aspect_ratio": "9:16",
        "duration_seconds": 15,
        "source_asset_url": None,
        "callback_url": "https://studio.test/v1/callbacks/provider",
    }
    fields.update(overrides)
    return ProviderJobRequest(**fields)


def gateway_for(handler) -> HttpProviderGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpProviderGateway("https://provider.test/api/v1/", "secret", http_client=client)


class TestCreateJob:
    async def test_posts_job_and_returns_id(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"code": 200, "data": {"taskId": "job-42"}})

        job_id = await gateway_for(handler).create_job(video_request())

        assert job_id == "job-42"
        assert seen["url"] == "https://provider.test/api/v1/jobs/createTask"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["model"] == "sora-2-text-to-video"
        assert seen["body"]["callBackUrl"] == "https://studio.test/v1/callbacks/provider"
        assert seen["body"]["input"] == {
            "prompt": "a cat surfing",
            "aspect_ratio": "portrait",
            "n_frames": "15",
            "remove_watermark": True,
        }

    async def test_provider_rejection_keeps_message(self):
        def handler(request):
            return httpx.Response(200, json={"code": 422, "msg": "prompt violates policy"})

        with pytest.raises(ProviderError) as exc_info:
            await gateway_for(handler).create_job(video_request())

        assert not isinstance(exc_info.value, ProviderUnavailableError)
        assert exc_info.value.message == "prompt violates policy"

    async def test_missing_task_id(self):
        def handler(request):
            return httpx.Response(200, json={"code": 200, "data": {}})

        with pytest.raises(ProviderError):
            await gateway_for(handler).create_job(video_request())

    async def test_server_error_is_unavailable(self):
        def handler(request):
            return httpx.Response(503, text="upstream overloaded")

        with pytest.raises(ProviderUnavailableError):
            await gateway_for(handler).create_job(video_request())

    async def test_transport_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderUnavailableError):
            await gateway_for(handler).create_job(video_request())

    async def test_client_error_uses_payload_message(self):
        def handler(request):
            return httpx.Response(401, json={"code": 401, "msg": "bad api key"})

        with pytest.raises(ProviderError) as exc_info:
            await gateway_for(handler).create_job(video_request())

        assert exc_info.value.message == "bad api key"


class TestPollStatus:
    async def test_success_with_string_result_json(self):
        def handler(request):
            assert request.url.params["taskId"] == "job-1"
            return httpx.Response(
                200,
                json={
                    "code": 200,
                    "data": {
                        "state": "success",
                        "progress": 100,
                        "resultJson": json.dumps({"resultUrls": ["https://files.test/v.mp4"]}),
                    },
                },
            )

        status = await gateway_for(handler).poll_status("job-1")

        assert status.state == ProviderState.SUCCEEDED
        assert status.result_url == "https://files.test/v.mp4"
        assert status.progress == 100

    async def test_failure_message_and_progress_clamp(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "code": 200,
                    "data": {"state": "fail", "progress": 140, "failMsg": "Failed to generate"},
                },
            )

        status = await gateway_for(handler).poll_status("job-1")

        assert status.state == ProviderState.ERROR
        assert status.progress == 100
        assert status.error_message == "Failed to generate"
        assert status.result_url is None

    async def test_missing_data(self):
        def handler(request):
            return httpx.Response(200, json={"code": 200, "data": None})

        with pytest.raises(ProviderError):
            await gateway_for(handler).poll_status("job-1")


class TestHelpers:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("success", ProviderState.SUCCEEDED),
            ("FAIL", ProviderState.ERROR),
            ("generating", ProviderState.RUNNING),
            ("waiting", ProviderState.PENDING),
            ("something-new", ProviderState.PENDING),
            (None, ProviderState.PENDING),
        ],
    )
    def test_normalize_provider_state(self, raw, expected):
        assert normalize_provider_state(raw) == expected

    def test_image_to_video_model(self):
        request = video_request(source_asset_url="https://files.test/cat.png")

        assert provider_model_name(request) == "sora-2-image-to-video"

    def test_image_model_unchanged(self):
        request = video_request(kind=TaskKind.IMAGE, model="gemini-2.5-flash-image")

        assert provider_model_name(request) == "gemini-2.5-flash-image"

    async def test_passthrough_store_keeps_url(self):
        store = PassthroughAssetStore()

        assert await store.migrate("https://files.test/a.png", "user-1", uuid4()) == (
            "https://files.test/a.png"
        )
