"""Job lifecycle: creation, provider submission and reconciliation.

Webhooks, client status checks and the periodic sweep all end in
``JobLifecycleManager.reconcile``, so every trigger applies the same
normalization and the same side effects. The database is the only
synchronization point: each write is conditional on the job still carrying
the task id and status the reconciler read, and the single automatic
fallback is claimed with its own conditional update before it is submitted.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import urlencode
from uuid import UUID

import structlog

from tryon.core.config import Settings
from tryon.core.timezone import utcnow
from tryon.models.job import FallbackState, Job, JobStatus, JobType, Provider
from tryon.services.events import ProviderEvent
from tryon.services.exceptions import (
    JobInputError,
    JobNotFoundError,
    ProviderError,
)
from tryon.services.ledger import CreditLedger, DebitResult
from tryon.services.providers.base import SubmitRequest, TaskRef
from tryon.services.providers.registry import ProviderRegistry
from tryon.services.storage.materializer import ResultMaterializer

logger = structlog.get_logger()

HEALTH_CHECK_TASK_IDS = frozenset({"test", "health"})

# A fallback claim older than this is treated as abandoned by a crashed handler
FALLBACK_CLAIM_TIMEOUT = timedelta(minutes=5)


class EventSource(str, Enum):
    """What triggered a reconciliation."""

    WEBHOOK = "webhook"
    POLL = "poll"
    SWEEP = "sweep"
    SUBMIT = "submit"


@dataclass
class ReconcileOutcome:
    """Job state after reconciling one event."""

    job: Job
    applied: bool

    @property
    def status(self) -> JobStatus:
        return self.job.status


class JobLifecycleManager:
    """Owns every state change of a job after it is created."""

    def __init__(
        self,
        uow_factory: Callable[[], Any],
        registry: ProviderRegistry,
        materializer: ResultMaterializer,
        ledger: CreditLedger,
        public_base_url: str,
        webhook_token: str = "",
        job_credit_cost: int = 1,
    ):
        self.uow_factory = uow_factory
        self.registry = registry
        self.materializer = materializer
        self.ledger = ledger
        self.public_base_url = public_base_url.rstrip("/")
        self.webhook_token = webhook_token
        self.job_credit_cost = job_credit_cost

    @classmethod
    def from_settings(
        cls, settings: Settings, uow_factory: Callable[[], Any], registry: ProviderRegistry
    ) -> "JobLifecycleManager":
        return cls(
            uow_factory=uow_factory,
            registry=registry,
            materializer=ResultMaterializer(
                settings.supabase_url,
                settings.supabase_service_role_key,
                bucket=settings.storage_bucket,
                timeout=settings.provider_timeout_seconds,
            ),
            ledger=CreditLedger.from_settings(settings),
            public_base_url=settings.public_base_url,
            webhook_token=settings.provider_webhook_token,
            job_credit_cost=settings.job_credit_cost,
        )

    def callback_url(self, provider: Provider) -> str:
        url = f"{self.public_base_url}/webhooks/{provider.value}"
        if self.webhook_token:
            url += "?" + urlencode({"token": self.webhook_token})
        return url

    # Creation and submission

    async def create_job(
        self,
        user_id: UUID,
        job_type: JobType,
        image_urls: list[str],
        settings: Optional[dict] = None,
        title: str = "",
        provider: Optional[Provider] = None,
    ) -> tuple[Optional[Job], DebitResult]:
        """Debit the job cost and create the job in one transaction.

        When a provider is given the job is submitted right away.

        Args:
            user_id: Job owner
            job_type: Requested transformation
            image_urls: Source images already in durable storage
            settings: Job options (edit_type, prompt, aspect_ratio, ...)
            title: Display title
            provider: Optional provider to submit to immediately

        Returns:
            Tuple of (job or None when credits are insufficient, debit result)

        Raises:
            JobInputError: Inputs are incomplete (nothing is debited)
            CreditsNotInitializedError: User was never provisioned
            ProviderError: Immediate submission failed (job is stored as failed)
        """
        present = [url for url in image_urls if url]
        if len(present) < job_type.required_images:
            raise JobInputError(
                f"{job_type.value} requires {job_type.required_images} image(s), got {len(present)}"
            )
        job = Job(
            user_id=user_id,
            job_type=job_type,
            title=title,
            source_image_urls=present,
            settings=settings or {},
        )
        if provider is not None:
            self.registry.get(provider).validate(
                SubmitRequest(
                    job_id=job.id,
                    job_type=job_type,
                    image_urls=present,
                    callback_url=self.callback_url(provider),
                    settings=job.settings,
                )
            )

        async with await self.uow_factory() as uow:
            debit = await self.ledger.debit(
                uow,
                user_id,
                self.job_credit_cost,
                description=f"Job: {job_type.value}",
                reference_id=str(job.id),
            )
            if not debit.success:
                return None, debit
            await uow.jobs.add(job)

        logger.info(
            "job.created", job_id=str(job.id), user_id=str(user_id), job_type=job_type.value
        )

        if provider is not None:
            await self.submit(job.id, provider)
            job = await self.get_job(job.id)
        return job, debit

    async def submit(
        self, job_id: UUID, provider: Provider, user_id: Optional[UUID] = None
    ) -> TaskRef:
        """Start the provider task for a job that has not been submitted yet.

        A provider failure marks the job failed with the provider's error text
        before re-raising, so no job is left processing without a task.

        Args:
            job_id: Job to submit
            provider: Provider to submit to
            user_id: When given, the job must belong to this user

        Returns:
            Reference to the accepted provider task

        Raises:
            JobNotFoundError: Unknown job (or not owned by user_id)
            JobInputError: Incomplete inputs, or the job is failed/already submitted
            ProviderError: Provider call failed (job is now failed)
        """
        job = await self.get_job(job_id, user_id=user_id)
        if job.status is JobStatus.FAILED:
            raise JobInputError("Failed jobs cannot be resubmitted")
        if job.status is JobStatus.COMPLETED or job.external_task_id:
            raise JobInputError("Job already submitted")

        adapter = self.registry.get(provider)
        request = SubmitRequest(
            job_id=job.id,
            job_type=job.job_type,
            image_urls=list(job.source_image_urls),
            callback_url=self.callback_url(provider),
            settings=dict(job.settings),
        )
        adapter.validate(request)

        try:
            ref = await adapter.submit(request)
        except ProviderError as e:
            job.provider = provider
            job.mark_failed(str(e))
            async with await self.uow_factory() as uow:
                await uow.jobs.apply_transition(job, expected_task_id=None)
            logger.error(
                "job.submit_failed",
                job_id=str(job.id),
                provider=provider.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        job.provider = provider
        job.external_task_id = ref.task_id
        job.job_metadata = {
            **job.job_metadata,
            "provider_task": ref.raw,
            "processing_type": job.job_type.value,
            "model_used": ref.model,
            "api_provider": provider.value,
        }
        async with await self.uow_factory() as uow:
            attached = await uow.jobs.apply_transition(job, expected_task_id=None)
            if not attached:
                current = await uow.jobs.get_by_id(job.id)
                attached = current is not None and current.external_task_id == ref.task_id

        if not attached:
            logger.error("job.attach_lost", job_id=str(job.id), task_id=ref.task_id)
            raise JobInputError("Job already submitted")

        logger.info(
            "job.submitted", job_id=str(job.id), provider=provider.value, task_id=ref.task_id
        )

        if ref.event is not None:
            await self.reconcile(ref.event, EventSource.SUBMIT)
        return ref

    # Reconciliation

    async def reconcile(self, event: ProviderEvent, source: EventSource) -> ReconcileOutcome:
        """Apply one provider event to its job.

        - completed: materialize the result, then mark completed
        - failed: submit the single fallback when eligible, else mark failed
        - processing: refresh diagnostics only

        Events for a superseded task id and events for a terminal job are
        no-ops, which makes replays and webhook/poll races converge.

        Raises:
            JobNotFoundError: No job matches the event's job id or task id
        """
        async with await self.uow_factory() as uow:
            if event.job_id is not None:
                job = await uow.jobs.get_by_id(event.job_id)
            else:
                job = await uow.jobs.get_by_task_id(event.task_id)
        if job is None:
            raise JobNotFoundError(f"No job for task {event.task_id}")

        log = logger.bind(
            job_id=str(job.id),
            task_id=event.task_id,
            provider=event.provider.value,
            source=source.value,
        )

        if job.external_task_id is None and event.job_id == job.id:
            # Callback raced ahead of the submit that would attach this task id
            expected_task_id = None
            job.external_task_id = event.task_id
            job.provider = event.provider
        elif job.external_task_id != event.task_id:
            log.info("reconcile.stale_task", current_task_id=job.external_task_id)
            return ReconcileOutcome(job=job, applied=False)
        else:
            expected_task_id = event.task_id

        if job.status.is_terminal:
            log.info("reconcile.already_terminal", status=job.status.value)
            return ReconcileOutcome(job=job, applied=False)

        job.job_metadata = {
            **job.job_metadata,
            f"{event.provider.value}_last_event": event.raw,
            "last_event_source": source.value,
            "last_event_at": utcnow().isoformat(),
        }

        if event.status is JobStatus.COMPLETED:
            if job.job_type.produces_image and not event.result_url:
                log.warning("reconcile.missing_result_url")
                return await self._fail(
                    job,
                    event,
                    expected_task_id,
                    "Provider reported completion without a result image URL",
                    log,
                )
            return await self._complete(job, event, expected_task_id, log)

        if event.status is JobStatus.FAILED:
            return await self._fail(
                job, event, expected_task_id, event.error or "Task failed", log
            )

        log.debug("reconcile.still_processing")
        return await self._write(
            job, expected_task_id, log, expected_fallback_state=job.fallback_state
        )

    async def _complete(
        self, job: Job, event: ProviderEvent, expected_task_id: Optional[str], log
    ) -> ReconcileOutcome:
        result_url = event.result_url
        if result_url:
            result_url = await self.materializer.materialize(
                result_url, job.user_id, job.id, job.created_at
            )
        job.mark_completed(result_url, analysis=event.analysis)
        outcome = await self._write(
            job, expected_task_id, log, expected_fallback_state=job.fallback_state
        )
        if outcome.applied:
            log.info("reconcile.completed", result_url=result_url)
        return outcome

    async def _fail(
        self,
        job: Job,
        event: ProviderEvent,
        expected_task_id: Optional[str],
        error: str,
        log,
    ) -> ReconcileOutcome:
        if (
            job.fallback_state is FallbackState.FALLBACK_ATTEMPTED
            and job.previous_task_id is None
            and job.updated_at > utcnow() - FALLBACK_CLAIM_TIMEOUT
        ):
            # Another handler claimed the fallback and is still submitting it
            log.info("reconcile.fallback_in_flight")
            return ReconcileOutcome(job=job, applied=False)

        fallback = None
        images = [url for url in job.source_image_urls if url]
        if (
            job.fallback_state is FallbackState.FRESH
            and job.provider is not None
            and len(images) >= 2
        ):
            fallback = self.registry.fallback_for(job.provider, job.job_type)

        if fallback is None:
            observed = job.fallback_state
            job.mark_failed(error)
            outcome = await self._write(
                job, expected_task_id, log, expected_fallback_state=observed
            )
            if outcome.applied:
                log.info("reconcile.failed", error=error)
            return outcome

        async with await self.uow_factory() as uow:
            claimed = await uow.jobs.claim_fallback(job.id, expected_task_id)
        if not claimed:
            log.info("reconcile.fallback_already_claimed")
            return await self._current(job)

        request = SubmitRequest(
            job_id=job.id,
            job_type=job.job_type,
            image_urls=images,
            callback_url=self.callback_url(fallback.provider),
            settings=dict(job.settings),
        )
        try:
            ref = await fallback.submit(request)
        except (ProviderError, JobInputError) as e:
            job.fallback_state = FallbackState.FALLBACK_ATTEMPTED
            job.mark_failed(f"{error}; fallback to {fallback.provider.value} failed: {e}")
            job.job_metadata = {
                **job.job_metadata,
                "retried": True,
                "fallback_error": {"provider": fallback.provider.value, "error": str(e)},
            }
            log.error(
                "reconcile.fallback_submit_failed",
                fallback_provider=fallback.provider.value,
                error=str(e),
            )
            return await self._write(
                job, expected_task_id, log, expected_fallback_state=FallbackState.FALLBACK_ATTEMPTED
            )

        job.begin_fallback(ref.task_id, fallback.provider, ref.model)
        job.job_metadata = {**job.job_metadata, "fallback_reason": error}
        outcome = await self._write(
            job, expected_task_id, log, expected_fallback_state=FallbackState.FALLBACK_ATTEMPTED
        )
        if outcome.applied:
            log.info(
                "reconcile.fallback_submitted",
                fallback_provider=fallback.provider.value,
                fallback_task_id=ref.task_id,
                reason=error,
            )
        return outcome

    async def _write(
        self,
        job: Job,
        expected_task_id: Optional[str],
        log,
        expected_fallback_state: Optional[FallbackState] = None,
    ) -> ReconcileOutcome:
        async with await self.uow_factory() as uow:
            applied = await uow.jobs.apply_transition(
                job, expected_task_id, expected_fallback_state=expected_fallback_state
            )
        if not applied:
            log.info("reconcile.write_lost")
            return await self._current(job)
        return ReconcileOutcome(job=job, applied=True)

    async def _current(self, job: Job) -> ReconcileOutcome:
        async with await self.uow_factory() as uow:
            current = await uow.jobs.get_by_id(job.id)
        return ReconcileOutcome(job=current or job, applied=False)

    # Status and sweep

    async def get_status(
        self, provider: Provider, task_id: str, user_id: Optional[UUID] = None
    ) -> dict:
        """Client status check: stored state for terminal jobs, provider poll otherwise.

        Health check task ids never reach the database or the provider. A poll
        failure is logged and the stored state is returned.

        Raises:
            JobNotFoundError: No job carries this task id (or it belongs to another user)
        """
        if task_id in HEALTH_CHECK_TASK_IDS:
            return {
                "id": task_id,
                "status": "success",
                "message": f"{provider.value} API is healthy",
                "service": provider.value,
                "timestamp": utcnow().isoformat(),
            }

        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_task_id(task_id)
        if job is None or (user_id is not None and job.user_id != user_id):
            raise JobNotFoundError("Project not found")

        if job.status.is_terminal or job.external_task_id != task_id:
            return self.status_view(job, task_id)

        try:
            adapter = self.registry.get(job.provider or provider)
            event = await adapter.poll(task_id)
            outcome = await self.reconcile(event, EventSource.POLL)
            job = outcome.job
        except (ProviderError, JobInputError) as e:
            logger.warning("poll.failed", task_id=task_id, provider=provider.value, error=str(e))

        return self.status_view(job, task_id)

    @staticmethod
    def status_view(job: Job, task_id: str) -> dict:
        return {
            "id": task_id,
            "job_id": str(job.id),
            "task_id": job.external_task_id,
            "status": job.status.value,
            "result": job.result_url,
            "error": job.error_message,
            "analysis": job.analysis,
        }

    async def sweep(self, grace_seconds: int = 60, limit: int = 20) -> int:
        """Poll processing jobs whose webhook has not arrived within the grace window.

        Returns:
            Number of jobs whose state changed
        """
        cutoff = utcnow() - timedelta(seconds=grace_seconds)
        async with await self.uow_factory() as uow:
            jobs = await uow.jobs.claim_for_sweep(cutoff, limit=limit)

        changed = 0
        for job in jobs:
            if job.provider is None or job.external_task_id is None:
                continue
            try:
                adapter = self.registry.get(job.provider)
                event = await adapter.poll(job.external_task_id)
                outcome = await self.reconcile(event, EventSource.SWEEP)
            except (ProviderError, JobInputError, JobNotFoundError) as e:
                logger.warning(
                    "sweep.job_skipped",
                    job_id=str(job.id),
                    task_id=job.external_task_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            if outcome.applied and outcome.status is not JobStatus.PROCESSING:
                changed += 1

        logger.info("sweep.completed", polled=len(jobs), changed=changed)
        return changed

    # Reads for the owning user

    async def get_job(self, job_id: UUID, user_id: Optional[UUID] = None) -> Job:
        """Raises JobNotFoundError if missing or owned by someone else."""
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
        if job is None or (user_id is not None and job.user_id != user_id):
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def list_jobs(self, user_id: UUID, limit: int = 50) -> list[Job]:
        async with await self.uow_factory() as uow:
            return await uow.jobs.list_for_user(user_id, limit=limit)

    async def delete_job(self, job_id: UUID, user_id: UUID) -> None:
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
            if job is None or job.user_id != user_id:
                raise JobNotFoundError(f"Job {job_id} not found")
            await uow.jobs.delete(job)
        logger.info("job.deleted", job_id=str(job_id), user_id=str(user_id))
