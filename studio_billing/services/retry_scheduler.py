"""
Retry Scheduler - delayed resubmission of retrying tasks.

Each retry is an asyncio task that sleeps, then runs the resubmission with
its own database session. Retries do not survive a process restart; a task
still retrying well past its longest possible delay is failed and refunded
the next time its status is refreshed.
"""

import asyncio
from collections.abc import Awaitable, Callable
from uuid import UUID

from studio_billing.models.api import TaskKind
from studio_billing.observability.logging import get_logger
from studio_billing.observability.metrics import metrics

logger = get_logger(__name__)

ResubmitRunner = Callable[[TaskKind, UUID], Awaitable[object]]


class RetryScheduler:
    """Runs resubmissions after a delay, in the background."""

    def __init__(
        self,
        runner: ResubmitRunner,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._runner = runner
        self._sleep = sleep
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def schedule(self, kind: TaskKind, task_id: UUID, delay_seconds: float) -> None:
        """Resubmit task_id after delay_seconds."""
        job = asyncio.create_task(
            self._run(kind, task_id, delay_seconds), name=f"resubmit-{task_id}"
        )
        self._pending.add(job)
        job.add_done_callback(self._pending.discard)
        logger.debug("retry_scheduled", task_id=str(task_id), delay_seconds=delay_seconds)

    async def _run(self, kind: TaskKind, task_id: UUID, delay_seconds: float) -> None:
        await self._sleep(delay_seconds)
        try:
            await self._runner(kind, task_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Background job: nobody awaits it, so the failure is reported here
            metrics.record_error(type(e).__name__, "task_resubmit")
            logger.exception("task_resubmit_failed", task_id=str(task_id), kind=kind.value)

    async def wait_idle(self) -> None:
        """Wait for every scheduled resubmission to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding resubmissions."""
        jobs = list(self._pending)
        for job in jobs:
            job.cancel()
        await asyncio.gather(*jobs, return_exceptions=True)
        self._pending.clear()
        logger.info("retry_scheduler_stopped", cancelled=len(jobs))
