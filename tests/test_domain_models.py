"""
Tests for domain dataclasses and API request models.
"""

from uuid import uuid4

import pytest
from pydantic import ValidationError

from studio_billing.models.api import (
    GenerationRequest,
    GrantSubscriptionRequest,
    ProviderCallbackPayload,
    ProviderState,
    TaskStatus,
)
from studio_billing.models.domain import (
    Created,
    GenerationParams,
    ProviderStatus,
    SubscriptionPool,
    WalletSnapshot,
)
from tests.conftest import TODAY, task_data


def pool(daily_remaining: int, monthly_remaining: int) -> SubscriptionPool:
    return SubscriptionPool(
        subscription_id=uuid4(),
        package_id="pro-monthly",
        start_date=TODAY,
        end_date=TODAY,
        daily_credits=10,
        daily_remaining=daily_remaining,
        monthly_credits=300,
        monthly_remaining=monthly_remaining,
    )


class TestWalletSnapshot:
    def test_balance_sums_every_pool(self):
        snapshot = WalletSnapshot(
            user_id="user-1", purchased_credits=7, subscriptions=(pool(3, 100), pool(0, 20))
        )

        assert snapshot.balance == 130

    def test_negative_purchased_rejected(self):
        with pytest.raises(ValueError):
            WalletSnapshot(user_id="user-1", purchased_credits=-1, subscriptions=())


class TestGenerationParams:
    @pytest.mark.parametrize("prompt", ["", "   "])
    def test_blank_prompt(self, prompt):
        with pytest.raises(ValueError):
            GenerationParams(prompt=prompt)

    def test_non_positive_duration(self):
        with pytest.raises(ValueError):
            GenerationParams(prompt="x", duration_seconds=0)


class TestProviderStatus:
    @pytest.mark.parametrize("progress", [-1, 101])
    def test_progress_bounds(self, progress):
        with pytest.raises(ValueError):
            ProviderStatus(provider_job_id="job-1", state=ProviderState.RUNNING, progress=progress)


class TestTaskData:
    def test_submitted_task(self):
        task = task_data()

        assert task.provider_job_id == "job-1"
        assert task.is_terminal is False

    def test_created_task_has_no_job(self):
        task = task_data(submission=Created(), status=TaskStatus.PENDING)

        assert task.provider_job_id is None

    @pytest.mark.parametrize("status", [TaskStatus.SUCCEEDED, TaskStatus.ERROR])
    def test_terminal(self, status):
        assert task_data(status=status).is_terminal is True


class TestApiModels:
    def test_generation_prompt_is_stripped(self):
        request = GenerationRequest(user_id="user-1", prompt="  hello  ")

        assert request.prompt == "hello"
        assert request.mode == "fast"

    def test_generation_blank_prompt(self):
        with pytest.raises(ValidationError):
            GenerationRequest(user_id="user-1", prompt="   ")

    def test_grant_requires_positive_duration(self):
        with pytest.raises(ValidationError):
            GrantSubscriptionRequest(
                package_id="p", daily_credits=1, monthly_credits=1, duration_days=0
            )

    def test_callback_accepts_provider_field_names(self):
        payload = ProviderCallbackPayload.model_validate(
            {"taskId": "job-1", "status": "fail", "failMsg": "boom", "video_url": "https://v"}
        )

        assert payload.task_id == "job-1"
        assert payload.state == "fail"
        assert payload.error_message == "boom"
        assert payload.result_url == "https://v"

    @pytest.mark.parametrize(
        "result_json",
        [
            '{"resultUrls": ["https://files.test/v.mp4"]}',
            {"resultUrls": ["https://files.test/v.mp4"]},
        ],
    )
    def test_callback_unwraps_provider_envelope(self, result_json):
        payload = ProviderCallbackPayload.model_validate(
            {
                "code": 200,
                "msg": "success",
                "data": {"taskId": "job-1", "state": "success", "resultJson": result_json},
            }
        )

        assert payload.task_id == "job-1"
        assert payload.state == "success"
        assert payload.result_url == "https://files.test/v.mp4"

    def test_callback_envelope_failure(self):
        payload = ProviderCallbackPayload.model_validate(
            {
                "code": 501,
                "msg": "failed",
                "data": {"taskId": "job-1", "state": "fail", "failMsg": "Failed to generate"},
            }
        )

        assert payload.error_message == "Failed to generate"
        assert payload.result_url is None

    def test_callback_accepts_own_field_names(self):
        payload = ProviderCallbackPayload(task_id="job-1", state="success", progress=50)

        assert payload.progress == 50
