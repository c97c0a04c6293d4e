"""
Retry Policy - classify provider failures and decide whether to try again.

Provider failures fall into three classes by their message:
- resource allocation: the provider is temporarily out of capacity; retried
  with exponential backoff
- generation failure: usually content review; retried once, then surfaced
  with an actionable message
- anything else: surfaced immediately with the provider's message
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from studio_billing.config import Settings
from studio_billing.exceptions import ProviderError, ProviderUnavailableError

RESOURCE_ALLOCATION_MARKER = "resources are being allocated"
GENERATION_FAILED_MARKER = "failed to generate"

SERVICE_BUSY_MESSAGE = "The generation service is busy. Please try again later."
CONTENT_REVIEW_MESSAGE = (
    "The prompt did not pass content review. Try a more neutral description, "
    "avoid sensitive terms, or simplify the scene."
)
UNKNOWN_FAILURE_MESSAGE = "Generation failed"


class FailureClass(str, Enum):
    """Kind of provider failure."""

    RESOURCE = "resource"
    GENERATION = "generation"
    UNRECOGNIZED = "unrecognized"


def classify_failure(message: str | None) -> FailureClass:
    """Classify a provider error message (case-insensitive)."""
    text = (message or "").lower()
    if RESOURCE_ALLOCATION_MARKER in text:
        return FailureClass.RESOURCE
    if GENERATION_FAILED_MARKER in text:
        return FailureClass.GENERATION
    return FailureClass.UNRECOGNIZED


def classify_exception(error: ProviderError) -> FailureClass:
    """Connectivity and server-side failures count as resource failures."""
    if isinstance(error, ProviderUnavailableError):
        return FailureClass.RESOURCE
    return classify_failure(error.message)


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of applying the policy to one failure."""

    failure_class: FailureClass
    retry: bool
    delay_seconds: float = 0.0
    error_message: str | None = None


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits and delays."""

    max_resource_retries: int = 3
    max_generation_retries: int = 1
    resource_retry_base_delay: float = 30.0
    generation_retry_delay: float = 5.0
    stale_retry_grace: float = 300.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_resource_retries=settings.max_resource_retries,
            max_generation_retries=settings.max_generation_retries,
            resource_retry_base_delay=settings.resource_retry_base_delay,
            generation_retry_delay=settings.generation_retry_delay,
            stale_retry_grace=settings.stale_retry_grace_seconds,
        )

    @property
    def max_delay_seconds(self) -> float:
        """Longest delay any single retry can be scheduled with."""
        last_attempt = max(self.max_resource_retries - 1, 0)
        longest_backoff = self.resource_retry_base_delay * 2**last_attempt
        return max(longest_backoff, self.generation_retry_delay)

    def is_abandoned(self, since: datetime, now: datetime) -> bool:
        """
        Whether a retry scheduled at `since` should have fired by `now`.

        A task still waiting past this point lost its timer, typically to a
        process restart.
        """
        return (now - since).total_seconds() > self.max_delay_seconds + self.stale_retry_grace

    def decide(self, message: str | None, retries_so_far: int) -> RetryDecision:
        return self.decide_for(classify_failure(message), message, retries_so_far)

    def decide_for(
        self, failure_class: FailureClass, message: str | None, retries_so_far: int
    ) -> RetryDecision:
        """
        Decide for a failure that has already been retried retries_so_far times.

        When retry is False, error_message is what the task should show.
        """
        if failure_class == FailureClass.RESOURCE:
            if retries_so_far < self.max_resource_retries:
                return RetryDecision(
                    failure_class=failure_class,
                    retry=True,
                    delay_seconds=self.resource_retry_base_delay * 2**retries_so_far,
                )
            return RetryDecision(
                failure_class=failure_class, retry=False, error_message=SERVICE_BUSY_MESSAGE
            )

        if failure_class == FailureClass.GENERATION:
            if retries_so_far < self.max_generation_retries:
                return RetryDecision(
                    failure_class=failure_class,
                    retry=True,
                    delay_seconds=self.generation_retry_delay,
                )
            return RetryDecision(
                failure_class=failure_class, retry=False, error_message=CONTENT_REVIEW_MESSAGE
            )

        return RetryDecision(
            failure_class=failure_class,
            retry=False,
            error_message=message or UNKNOWN_FAILURE_MESSAGE,
        )
