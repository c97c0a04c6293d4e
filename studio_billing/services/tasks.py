"""
Task Service - lifecycle of image/video generation tasks.

NO DICTIONARIES - All operations use strongly typed domain models.

    pending -> running -> (retrying -> running)* -> succeeded | error

Every task is funded by a deduction. Every transition into error refunds
that deduction in the same database transaction, under the task row lock,
so a racing callback and poll can never refund twice. Provider calls and
asset migration never run while a lock is held.
"""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.db.models import (
    TASK_MODELS,
    CreditTransaction,
    GenerationTask,
    utc_now,
)
from studio_billing.exceptions import (
    InvalidTaskTransitionError,
    ProviderError,
    TaskNotFoundError,
    TransactionNotFoundError,
    WriteVerificationError,
)
from studio_billing.models.api import ProviderState, TaskKind, TaskStatus, TransactionType
from studio_billing.models.domain import (
    Created,
    GenerationParams,
    ProviderJobRequest,
    ProviderStatus,
    Submitted,
    TaskData,
)
from studio_billing.observability.logging import get_logger, log_context
from studio_billing.observability.metrics import metrics
from studio_billing.services.provider_gateway import AssetStore, ProviderGateway
from studio_billing.services.retry_policy import (
    SERVICE_BUSY_MESSAGE,
    FailureClass,
    RetryDecision,
    RetryPolicy,
    classify_exception,
)
from studio_billing.services.retry_scheduler import RetryScheduler
from studio_billing.services.settings_cache import SettingsCache
from studio_billing.services.wallet import WalletService

logger = get_logger(__name__)

VIDEO_FAST_MODEL = "sora-2"
VIDEO_QUALITY_MODEL = "sora-2-pro"
DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image"
DEFAULT_VIDEO_DURATION = 10

MISSING_RESULT_MESSAGE = "Generation finished without a result"
PROVIDER_DISABLED_MESSAGE = "Generation is temporarily disabled"

ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.RETRYING)
SUBMITTABLE_STATUSES = (TaskStatus.PENDING, TaskStatus.RETRYING)


def resolve_model(kind: TaskKind, params: GenerationParams) -> str:
    """Model a generation runs on."""
    if kind == TaskKind.VIDEO:
        return VIDEO_QUALITY_MODEL if params.mode.lower() == "quality" else VIDEO_FAST_MODEL
    return params.model or DEFAULT_IMAGE_MODEL


def task_reference_type(kind: TaskKind) -> str:
    return f"{kind.value}_task"


class TaskService:
    """Creates generation tasks and drives them to a terminal state."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: ProviderGateway,
        asset_store: AssetStore,
        settings_cache: SettingsCache,
        scheduler: RetryScheduler,
        policy: RetryPolicy | None = None,
        callback_url: str | None = None,
        wallet: WalletService | None = None,
    ) -> None:
        self.session = session
        self.gateway = gateway
        self.asset_store = asset_store
        self.settings_cache = settings_cache
        self.scheduler = scheduler
        self.policy = policy or RetryPolicy()
        self.callback_url = callback_url
        self.wallet = wallet or WalletService(session)

    # ========================================================================
    # Creation
    # ========================================================================

    async def start_generation(
        self, user_id: str, kind: TaskKind, params: GenerationParams
    ) -> TaskData:
        """
        Price, pay for, record and submit one generation.

        The deduction and the pending task commit together, so a task row
        never exists without its payment and a payment never exists without
        its task.

        Raises:
            ProviderError: generation is switched off
            WalletNotFoundError: user has no wallet
            InsufficientCreditsError: balance below the generation's cost
        """
        studio_settings = await self.settings_cache.get(self.session)
        if not studio_settings.provider_enabled:
            raise ProviderError(PROVIDER_DISABLED_MESSAGE)

        cost = studio_settings.cost_for(kind, params.mode)
        task_id = uuid4()
        deduction = await self.wallet.deduct(
            user_id=user_id,
            amount=cost,
            reason=f"{kind.value.capitalize()} generation ({params.mode})",
            reference_type=task_reference_type(kind),
            reference_id=str(task_id),
            commit=False,
        )
        task = await self.create(
            user_id, kind, params, deduction.transaction_id, task_id=task_id
        )
        return await self.submit_to_provider(task.task_id, kind)

    async def create(
        self,
        user_id: str,
        kind: TaskKind,
        params: GenerationParams,
        funded_by_transaction_id: UUID,
        task_id: UUID | None = None,
    ) -> TaskData:
        """
        Insert a pending task bound to the deduction that paid for it.

        Raises:
            TransactionNotFoundError: no deduction of this user with that id
        """
        funding = await self.session.get(CreditTransaction, funded_by_transaction_id)
        if (
            funding is None
            or funding.user_id != user_id
            or funding.type != TransactionType.DEDUCTION
        ):
            raise TransactionNotFoundError(funded_by_transaction_id)

        model_cls = TASK_MODELS[kind]
        now = utc_now()
        task = model_cls(
            id=task_id or uuid4(),
            user_id=user_id,
            mode=params.mode,
            model=resolve_model(kind, params),
            prompt=params.prompt,
            aspect_ratio=params.aspect_ratio,
            duration_seconds=(
                params.duration_seconds or DEFAULT_VIDEO_DURATION
                if kind == TaskKind.VIDEO
                else None
            ),
            source_asset_url=params.source_asset_url,
            status=TaskStatus.PENDING,
            progress=0,
            credit_cost=funding.amount,
            credit_transaction_id=funding.id,
            generate_retry_count=0,
            callback_retry_count=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(task)
        await self.session.flush()

        verified = await self.session.get(model_cls, task.id)
        if verified is None:
            raise WriteVerificationError(f"Task {task.id} not found after insert")
        await self.session.commit()

        metrics.record_task_transition(kind.value, TaskStatus.PENDING.value)
        logger.info(
            "task_created",
            task_id=str(task.id),
            kind=kind.value,
            user_id=user_id,
            model=task.model,
            credit_cost=task.credit_cost,
            credit_transaction_id=str(funding.id),
        )
        return _task_to_domain(verified)

    # ========================================================================
    # Submission
    # ========================================================================

    async def submit_to_provider(self, task_id: UUID, kind: TaskKind | None = None) -> TaskData:
        """
        Send a pending or retrying task to the provider.

        On success the task is running with progress 0. On failure the retry
        policy either schedules another attempt or fails and refunds the task.

        Raises:
            TaskNotFoundError: no such task
            InvalidTaskTransitionError: task is not pending or retrying
        """
        task = await self._find_task(task_id, kind)
        if task.status not in SUBMITTABLE_STATUSES:
            raise InvalidTaskTransitionError(task.id, task.status.value, "submit")

        request = self._job_request(task)
        task_kind = task.KIND
        # Provider call happens with no lock held
        await self.session.rollback()
        try:
            job_id = await self.gateway.create_job(request)
        except ProviderError as e:
            failure_class = classify_exception(e)
            logger.warning(
                "task_submission_failed",
                task_id=str(task_id),
                kind=task_kind.value,
                error=e.message,
                failure_class=failure_class.value,
            )
            return await self._handle_submission_failure(
                task_kind, task_id, failure_class, e.message
            )
        except Exception as e:
            # Anything else still has to leave the task failed and refunded
            metrics.record_error(type(e).__name__, "provider_submit")
            logger.exception(
                "task_submission_crashed",
                task_id=str(task_id),
                kind=task_kind.value,
                error=str(e),
            )
            return await self._handle_submission_failure(
                task_kind, task_id, FailureClass.UNRECOGNIZED, str(e) or type(e).__name__
            )

        return await self._mark_submitted(task_kind, task_id, job_id)

    async def resubmit(self, task_id: UUID, kind: TaskKind | None = None) -> TaskData:
        """Background continuation for a retrying task; anything else is left alone."""
        task = await self._find_task(task_id, kind)
        if task.status != TaskStatus.RETRYING:
            logger.info(
                "task_resubmit_skipped", task_id=str(task_id), status=task.status.value
            )
            return _task_to_domain(task)
        return await self.submit_to_provider(task_id, task.KIND)

    # ========================================================================
    # Status updates (callback and poll)
    # ========================================================================

    async def apply_status_update(
        self, task_id: UUID, status: ProviderStatus, kind: TaskKind | None = None
    ) -> TaskData:
        """
        Apply a normalized provider status to a task.

        Ignored when the task is already terminal, when it is waiting to be
        resubmitted, or when the update is about a provider job other than
        the task's current one.

        Raises:
            TaskNotFoundError: no such task
        """
        with log_context(task_id=str(task_id), provider_job_id=status.provider_job_id):
            task = await self._lock_task(task_id, kind)

            ignore_reason = _ignore_reason(task, status.provider_job_id)
            if ignore_reason is not None:
                logger.info(
                    "task_status_update_ignored",
                    reason=ignore_reason,
                    status=task.status.value,
                    reported_state=status.state.value,
                )
                data = _task_to_domain(task)
                await self.session.rollback()
                return data

            if status.state == ProviderState.SUCCEEDED:
                if not status.result_url:
                    return await self._fail(task, MISSING_RESULT_MESSAGE)
                provider_url = status.result_url
                task_kind = task.KIND
                user_id = task.user_id
                # Release the row lock while the asset is copied
                await self.session.rollback()
                durable_url = await self._migrate_asset(provider_url, user_id, task_id)
                return await self._finish_success(
                    task_kind, task_id, status.provider_job_id, provider_url, durable_url
                )

            if status.state == ProviderState.ERROR:
                decision = self.policy.decide(status.error_message, task.callback_retry_count)
                if decision.retry:
                    task.callback_retry_count += 1
                    return await self._schedule_retry(task, decision)
                return await self._fail(task, decision.error_message)

            return await self._record_progress(task, status)

    async def refresh_from_provider(
        self, task_id: UUID, kind: TaskKind | None = None
    ) -> TaskData:
        """
        Polling fallback for missed callbacks.

        A task whose scheduled resubmission or first submission should have
        happened long ago lost it to a restart; it is failed and refunded
        here. Poll failures are logged and the stored state is returned.
        """
        task = await self._find_task(task_id, kind)
        if self._is_stranded(task, utc_now()):
            return await self._fail_stranded(task_id, task.KIND)

        data = _task_to_domain(task)
        if data.is_terminal or data.status == TaskStatus.RETRYING or data.provider_job_id is None:
            return data

        await self.session.rollback()
        try:
            status = await self.gateway.poll_status(data.provider_job_id)
        except ProviderError as e:
            logger.warning("task_poll_failed", task_id=str(task_id), error=e.message)
            return data

        return await self.apply_status_update(task_id, status, data.kind)

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_by_id(self, task_id: UUID, kind: TaskKind | None = None) -> TaskData:
        """
        Raises:
            TaskNotFoundError: no such task
        """
        return _task_to_domain(await self._find_task(task_id, kind))

    async def get_by_provider_id(self, provider_job_id: str) -> TaskData | None:
        for model_cls in TASK_MODELS.values():
            stmt = select(model_cls).where(model_cls.provider_task_id == provider_job_id)
            result = await self.session.execute(stmt)
            task = result.scalars().first()
            if task is not None:
                return _task_to_domain(task)
        return None

    async def list_for_user(
        self, user_id: str, kind: TaskKind, limit: int = 20
    ) -> list[TaskData]:
        """A user's tasks of one kind, newest first."""
        model_cls = TASK_MODELS[kind]
        stmt = (
            select(model_cls)
            .where(model_cls.user_id == user_id)
            .order_by(model_cls.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [_task_to_domain(task) for task in result.scalars().all()]

    async def list_active(self, user_id: str, kind: TaskKind) -> list[TaskData]:
        """A user's tasks of one kind that have not reached a terminal state."""
        model_cls = TASK_MODELS[kind]
        stmt = (
            select(model_cls)
            .where(model_cls.user_id == user_id, model_cls.status.in_(ACTIVE_STATUSES))
            .order_by(model_cls.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return [_task_to_domain(task) for task in result.scalars().all()]

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _handle_submission_failure(
        self, kind: TaskKind, task_id: UUID, failure_class: FailureClass, message: str
    ) -> TaskData:
        task = await self._lock_task(task_id, kind)
        if task.status not in SUBMITTABLE_STATUSES:
            data = _task_to_domain(task)
            await self.session.rollback()
            return data

        decision = self.policy.decide_for(failure_class, message, task.generate_retry_count)
        if decision.retry:
            task.generate_retry_count += 1
            return await self._schedule_retry(task, decision)
        return await self._fail(task, decision.error_message)

    def _is_stranded(self, task: GenerationTask, now: datetime) -> bool:
        """Waiting on a retry or submission that can no longer arrive."""
        if task.status == TaskStatus.RETRYING:
            since = task.last_retry_at or task.updated_at
        elif task.status == TaskStatus.PENDING and not task.provider_task_id:
            since = task.updated_at
        else:
            return False
        return self.policy.is_abandoned(since, now)

    async def _fail_stranded(self, task_id: UUID, kind: TaskKind) -> TaskData:
        task = await self._lock_task(task_id, kind)
        if not self._is_stranded(task, utc_now()):
            data = _task_to_domain(task)
            await self.session.rollback()
            return data

        logger.warning(
            "task_abandoned",
            task_id=str(task_id),
            kind=kind.value,
            status=task.status.value,
            last_retry_at=task.last_retry_at.isoformat() if task.last_retry_at else None,
        )
        return await self._fail(task, SERVICE_BUSY_MESSAGE)

    async def _mark_submitted(self, kind: TaskKind, task_id: UUID, job_id: str) -> TaskData:
        task = await self._lock_task(task_id, kind)
        if task.status not in SUBMITTABLE_STATUSES:
            logger.warning(
                "task_submitted_after_transition",
                task_id=str(task_id),
                status=task.status.value,
                provider_job_id=job_id,
            )
            data = _task_to_domain(task)
            await self.session.rollback()
            return data

        task.provider_task_id = job_id
        task.status = TaskStatus.RUNNING
        task.progress = 0
        task.error_message = None
        task.updated_at = utc_now()
        await self.session.flush()
        data = _task_to_domain(task)
        await self.session.commit()

        metrics.record_task_transition(kind.value, TaskStatus.RUNNING.value)
        logger.info(
            "task_submitted", task_id=str(task_id), kind=kind.value, provider_job_id=job_id
        )
        return data

    async def _schedule_retry(self, task: GenerationTask, decision: RetryDecision) -> TaskData:
        """Caller holds the task lock and has already bumped the retry counter."""
        now = utc_now()
        task.status = TaskStatus.RETRYING
        task.last_retry_at = now
        task.updated_at = now
        await self.session.flush()
        data = _task_to_domain(task)
        await self.session.commit()

        metrics.record_task_transition(data.kind.value, TaskStatus.RETRYING.value)
        metrics.task_retries_total.labels(
            kind=data.kind.value, failure_class=decision.failure_class.value
        ).inc()
        logger.info(
            "task_retry_scheduled",
            task_id=str(data.task_id),
            failure_class=decision.failure_class.value,
            delay_seconds=decision.delay_seconds,
            generate_retry_count=data.generate_retry_count,
            callback_retry_count=data.callback_retry_count,
        )
        self.scheduler.schedule(data.kind, data.task_id, decision.delay_seconds)
        return data

    async def _fail(self, task: GenerationTask, message: str | None) -> TaskData:
        """
        Move a locked task to error and refund it in the same transaction.

        Caller holds the task lock; the refund then locks the wallet.
        """
        now = utc_now()
        task.status = TaskStatus.ERROR
        task.error_message = message
        task.completed_at = now
        task.updated_at = now

        kind = task.KIND
        refund = await self.wallet.refund(
            user_id=task.user_id,
            amount=task.credit_cost,
            reason=f"Refund for failed {kind.value} generation",
            reference_type=task_reference_type(kind),
            reference_id=str(task.id),
            source_transaction_id=task.credit_transaction_id,
            commit=False,
        )
        await self.session.flush()
        data = _task_to_domain(task)
        await self.session.commit()

        metrics.record_task_transition(kind.value, TaskStatus.ERROR.value)
        logger.info(
            "task_failed_and_refunded",
            task_id=str(data.task_id),
            kind=kind.value,
            error_message=message,
            refund_transaction_id=str(refund.transaction_id),
            refunded=data.credit_cost,
        )
        return data

    async def _finish_success(
        self,
        kind: TaskKind,
        task_id: UUID,
        provider_job_id: str,
        provider_url: str,
        durable_url: str,
    ) -> TaskData:
        task = await self._lock_task(task_id, kind)
        ignore_reason = _ignore_reason(task, provider_job_id)
        if ignore_reason is not None:
            logger.info("task_success_superseded", task_id=str(task_id), reason=ignore_reason)
            data = _task_to_domain(task)
            await self.session.rollback()
            return data

        now = utc_now()
        task.status = TaskStatus.SUCCEEDED
        task.progress = 100
        task.provider_result_url = provider_url
        task.result_url = durable_url
        task.completed_at = now
        task.updated_at = now
        await self.session.flush()
        data = _task_to_domain(task)
        await self.session.commit()

        metrics.record_task_transition(kind.value, TaskStatus.SUCCEEDED.value)
        logger.info("task_succeeded", task_id=str(task_id), kind=kind.value)
        return data

    async def _record_progress(self, task: GenerationTask, status: ProviderStatus) -> TaskData:
        became_running = (
            status.state == ProviderState.RUNNING and task.status == TaskStatus.PENDING
        )
        if became_running:
            task.status = TaskStatus.RUNNING
        if status.progress is not None and status.progress > task.progress:
            # 100 is reserved for a stored result
            task.progress = min(status.progress, 99)
        task.updated_at = utc_now()
        await self.session.flush()
        data = _task_to_domain(task)
        await self.session.commit()

        if became_running:
            metrics.record_task_transition(data.kind.value, TaskStatus.RUNNING.value)
        return data

    async def _migrate_asset(self, source_url: str, user_id: str, task_id: UUID) -> str:
        """Best effort: a failed copy keeps the provider URL."""
        try:
            return await self.asset_store.migrate(source_url, user_id, task_id)
        except Exception as e:
            metrics.record_error(type(e).__name__, "asset_migration")
            logger.warning("asset_migration_failed", task_id=str(task_id), error=str(e))
            return source_url

    def _job_request(self, task: GenerationTask) -> ProviderJobRequest:
        return ProviderJobRequest(
            task_id=task.id,
            kind=task.KIND,
            model=task.model,
            prompt=task.prompt,
            aspect_ratio=task.aspect_ratio,
            duration_seconds=task.duration_seconds,
            source_asset_url=task.source_asset_url,
            callback_url=self.callback_url,
        )

    async def _find_task(self, task_id: UUID, kind: TaskKind | None) -> GenerationTask:
        kinds = [kind] if kind is not None else list(TASK_MODELS)
        for candidate in kinds:
            task = await self.session.get(TASK_MODELS[candidate], task_id)
            if task is not None:
                return task
        raise TaskNotFoundError(task_id)

    async def _lock_task(self, task_id: UUID, kind: TaskKind | None) -> GenerationTask:
        """Lock task row for update (SELECT FOR UPDATE) with fresh column values."""
        kinds = [kind] if kind is not None else list(TASK_MODELS)
        for candidate in kinds:
            model_cls = TASK_MODELS[candidate]
            stmt = (
                select(model_cls)
                .where(model_cls.id == task_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            task = result.scalar_one_or_none()
            if task is not None:
                return task
        raise TaskNotFoundError(task_id)


def _ignore_reason(task: GenerationTask, provider_job_id: str) -> str | None:
    if task.status in (TaskStatus.SUCCEEDED, TaskStatus.ERROR):
        return "terminal"
    if task.status == TaskStatus.RETRYING:
        return "retrying"
    if task.provider_task_id != provider_job_id:
        return "stale_provider_job"
    return None


def _task_to_domain(task: GenerationTask) -> TaskData:
    return TaskData(
        task_id=task.id,
        kind=task.KIND,
        user_id=task.user_id,
        status=TaskStatus(task.status),
        progress=task.progress,
        mode=task.mode,
        model=task.model,
        prompt=task.prompt,
        aspect_ratio=task.aspect_ratio,
        duration_seconds=task.duration_seconds,
        source_asset_url=task.source_asset_url,
        submission=(
            Submitted(provider_job_id=task.provider_task_id)
            if task.provider_task_id
            else Created()
        ),
        provider_result_url=task.provider_result_url,
        result_url=task.result_url,
        error_message=task.error_message,
        credit_cost=task.credit_cost,
        credit_transaction_id=task.credit_transaction_id,
        generate_retry_count=task.generate_retry_count,
        callback_retry_count=task.callback_retry_count,
        created_at=task.created_at,
        updated_at=task.updated_at,
        completed_at=task.completed_at,
    )
