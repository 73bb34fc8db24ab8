"""Job lifecycle reconciliation tests.

Tests focus on:
- Idempotent completion under webhook replay
- The single automatic fallback (kie <-> fashn) and its lineage
- Stale task ids and terminal jobs being no-ops
- Submission failures, credit checks and status polling
"""

import asyncio
import os
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import update

from conftest import (
    GARMENT_IMAGE,
    MODEL_IMAGE,
    completed_event,
    failed_event,
    seed_credits,
)
from tryon.core.timezone import utcnow
from tryon.models.job import FallbackState, Job, JobStatus, JobType, Provider
from tryon.services.events import ProviderEvent
from tryon.services.exceptions import (
    CreditsNotInitializedError,
    JobInputError,
    JobNotFoundError,
    ProviderError,
    ProviderResponseError,
    ProviderTimeoutError,
)
from tryon.services.lifecycle import FALLBACK_CLAIM_TIMEOUT, EventSource, JobLifecycleManager
from tryon.services.storage.materializer import ResultMaterializer


async def submitted_job(lifecycle, uow_factory, user_id, balance: int = 5):
    """Try-on job submitted to Kie.AI as kie-task-1."""
    await seed_credits(uow_factory, user_id, balance)
    job, debit = await lifecycle.create_job(
        user_id,
        JobType.VIRTUAL_TRYON,
        [MODEL_IMAGE, GARMENT_IMAGE],
        title="Summer dress",
        provider=Provider.KIE,
    )
    assert debit.success
    assert job.external_task_id == "kie-task-1"
    return job


@pytest.mark.asyncio
async def test_create_job_debits_and_submits(lifecycle, uow_factory, user_id, kie_adapter):
    job = await submitted_job(lifecycle, uow_factory, user_id)

    assert job.status is JobStatus.PROCESSING
    assert job.provider is Provider.KIE
    assert job.job_metadata["api_provider"] == "kie"
    assert job.job_metadata["processing_type"] == "virtual_tryon"
    assert kie_adapter.submitted[0].callback_url == "https://api.example.com/webhooks/kie"
    assert kie_adapter.submitted[0].image_urls == [MODEL_IMAGE, GARMENT_IMAGE]

    async with await uow_factory() as uow:
        credits = await uow.credits.get_by_user(user_id)
        usage = await uow.transactions.get_by_reference(str(job.id))
    assert credits.credits_balance == 4
    assert usage.credits_amount == -1


@pytest.mark.asyncio
async def test_completion_is_idempotent_under_replay(lifecycle, uow_factory, user_id):
    job = await submitted_job(lifecycle, uow_factory, user_id)
    event = completed_event(Provider.KIE, "kie-task-1")

    first = await lifecycle.reconcile(event, EventSource.WEBHOOK)
    second = await lifecycle.reconcile(event, EventSource.WEBHOOK)

    assert first.applied is True
    assert first.status is JobStatus.COMPLETED
    assert second.applied is False

    stored = await lifecycle.get_job(job.id)
    assert stored.status is JobStatus.COMPLETED
    assert stored.result_url == "https://cdn.example.com/r.png"
    assert stored.completed_at == first.job.completed_at
    assert stored.job_metadata["last_event_source"] == "webhook"


@pytest.mark.asyncio
async def test_late_failure_after_completion_is_ignored(lifecycle, uow_factory, user_id):
    job = await submitted_job(lifecycle, uow_factory, user_id)
    await lifecycle.reconcile(completed_event(Provider.KIE, "kie-task-1"), EventSource.WEBHOOK)

    outcome = await lifecycle.reconcile(
        failed_event(Provider.KIE, "kie-task-1"), EventSource.POLL
    )

    assert outcome.applied is False
    stored = await lifecycle.get_job(job.id)
    assert stored.status is JobStatus.COMPLETED
    assert stored.error_message is None


@pytest.mark.asyncio
async def test_processing_event_refreshes_diagnostics(lifecycle, uow_factory, user_id):
    job = await submitted_job(lifecycle, uow_factory, user_id)
    event = ProviderEvent(
        provider=Provider.KIE,
        task_id="kie-task-1",
        status=JobStatus.PROCESSING,
        raw={"data": {"taskId": "kie-task-1", "state": "generating"}},
    )

    outcome = await lifecycle.reconcile(event, EventSource.POLL)

    assert outcome.applied is True
    stored = await lifecycle.get_job(job.id)
    assert stored.status is JobStatus.PROCESSING
    assert stored.job_metadata["kie_last_event"]["data"]["state"] == "generating"
    assert stored.job_metadata["last_event_source"] == "poll"


@pytest.mark.asyncio
async def test_failure_submits_single_fallback(
    lifecycle, uow_factory, user_id, kie_adapter, fashn_adapter
):
    job = await submitted_job(lifecycle, uow_factory, user_id)

    outcome = await lifecycle.reconcile(
        failed_event(Provider.KIE, "kie-task-1", "Content policy"), EventSource.WEBHOOK
    )

    assert outcome.applied is True
    assert outcome.status is JobStatus.PROCESSING
    stored = await lifecycle.get_job(job.id)
    assert stored.provider is Provider.FASHN
    assert stored.external_task_id == "fashn-task-1"
    assert stored.previous_task_id == "kie-task-1"
    assert stored.fallback_state is FallbackState.FALLBACK_ATTEMPTED
    assert stored.retried is True
    assert stored.job_metadata["fallback_reason"] == "Content policy"
    assert stored.job_metadata["fallback_lineage"] == [
        {
            "original_task_id": "kie-task-1",
            "original_provider": "kie",
            "fallback_provider": "fashn",
            "fallback_model": "tryon-v1.6",
        }
    ]

    assert len(kie_adapter.submitted) == 1
    assert len(fashn_adapter.submitted) == 1
    assert fashn_adapter.submitted[0].callback_url == "https://api.example.com/webhooks/fashn"
    assert fashn_adapter.submitted[0].image_urls == [MODEL_IMAGE, GARMENT_IMAGE]


@pytest.mark.asyncio
async def test_fallback_fires_at_most_once(
    lifecycle, uow_factory, user_id, kie_adapter, fashn_adapter
):
    """kie fails, fallback to fashn fails too: the job fails with one lineage entry."""
    job = await submitted_job(lifecycle, uow_factory, user_id)
    await lifecycle.reconcile(failed_event(Provider.KIE, "kie-task-1"), EventSource.WEBHOOK)

    outcome = await lifecycle.reconcile(
        failed_event(Provider.FASHN, "fashn-task-1", "Pose not detected"), EventSource.WEBHOOK
    )

    assert outcome.applied is True
    assert outcome.status is JobStatus.FAILED
    stored = await lifecycle.get_job(job.id)
    assert stored.error_message == "Pose not detected"
    assert len(stored.job_metadata["fallback_lineage"]) == 1
    assert len(kie_adapter.submitted) == 1
    assert len(fashn_adapter.submitted) == 1


@pytest.mark.asyncio
async def test_replayed_failure_of_superseded_task_is_stale(
    lifecycle, uow_factory, user_id, fashn_adapter
):
    job = await submitted_job(lifecycle, uow_factory, user_id)
    event = failed_event(Provider.KIE, "kie-task-1")
    await lifecycle.reconcile(event, EventSource.WEBHOOK)

    replay = await lifecycle.reconcile(event, EventSource.WEBHOOK)

    assert replay.applied is False
    stored = await lifecycle.get_job(job.id)
    assert stored.status is JobStatus.PROCESSING
    assert stored.external_task_id == "fashn-task-1"
    assert len(fashn_adapter.submitted) == 1


@pytest.mark.asyncio
async def test_duplicate_failure_while_fallback_submits_is_ignored(
    lifecycle, uow_factory, user_id, fashn_adapter, monkeypatch
):
    """A second failed event lands while the first handler waits on the fallback provider."""
    job = await submitted_job(lifecycle, uow_factory, user_id)
    event = failed_event(Provider.KIE, "kie-task-1", "Content policy")
    entered = asyncio.Event()
    release = asyncio.Event()
    submit = fashn_adapter.submit

    async def held_submit(request):
        entered.set()
        await release.wait()
        return await submit(request)

    monkeypatch.setattr(fashn_adapter, "submit", held_submit)

    first = asyncio.create_task(lifecycle.reconcile(event, EventSource.WEBHOOK))
    await asyncio.wait_for(entered.wait(), timeout=5)

    duplicate = await lifecycle.reconcile(event, EventSource.POLL)

    assert duplicate.applied is False
    stored = await lifecycle.get_job(job.id)
    assert stored.status is JobStatus.PROCESSING
    assert stored.error_message is None

    release.set()
    outcome = await asyncio.wait_for(first, timeout=5)

    assert outcome.applied is True
    stored = await lifecycle.get_job(job.id)
    assert stored.status is JobStatus.PROCESSING
    assert stored.external_task_id == "fashn-task-1"
    assert stored.previous_task_id == "kie-task-1"
    assert stored.retried is True
    assert len(fashn_adapter.submitted) == 1

    done = await lifecycle.reconcile(
        completed_event(Provider.FASHN, "fashn-task-1"), EventSource.WEBHOOK
    )
    assert done.status is JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_abandoned_fallback_claim_lets_job_fail(
    lifecycle, uow_factory, user_id, fashn_adapter
):
    """A claim whose handler never finished stops blocking failures after a timeout."""
    job = await submitted_job(lifecycle, uow_factory, user_id)
    async with await uow_factory() as uow:
        assert await uow.jobs.claim_fallback(job.id, "kie-task-1")
        await uow.session.execute(
            update(Job)
            .where(Job.id == job.id)
            .values(updated_at=utcnow() - FALLBACK_CLAIM_TIMEOUT - timedelta(minutes=1))
            .execution_options(synchronize_session=False)
        )

    outcome = await lifecycle.reconcile(
        failed_event(Provider.KIE, "kie-task-1", "Task failed"), EventSource.SWEEP
    )

    assert outcome.applied is True
    assert outcome.status is JobStatus.FAILED
    stored = await lifecycle.get_job(job.id)
    assert stored.error_message == "Task failed"
    assert stored.fallback_state is FallbackState.FALLBACK_ATTEMPTED
    assert fashn_adapter.submitted == []


@pytest.mark.asyncio
async def test_fallback_submit_failure_fails_job(
    lifecycle, uow_factory, user_id, fashn_adapter
):
    job = await submitted_job(lifecycle, uow_factory, user_id)
    fashn_adapter.submit_error = ProviderResponseError("FASHN API Error (500): overloaded")

    outcome = await lifecycle.reconcile(
        failed_event(Provider.KIE, "kie-task-1", "Task failed"), EventSource.WEBHOOK
    )

    assert outcome.status is JobStatus.FAILED
    stored = await lifecycle.get_job(job.id)
    assert stored.error_message.startswith("Task failed; fallback to fashn failed")
    assert stored.fallback_state is FallbackState.FALLBACK_ATTEMPTED
    assert stored.retried is True
    assert stored.job_metadata["fallback_error"]["provider"] == "fashn"
    assert "fallback_lineage" not in stored.job_metadata


@pytest.mark.asyncio
async def test_single_image_job_fails_without_fallback(
    lifecycle, uow_factory, user_id, fashn_adapter
):
    await seed_credits(uow_factory, user_id, 5)
    job, _ = await lifecycle.create_job(
        user_id,
        JobType.PHOTO_EDIT,
        [MODEL_IMAGE],
        settings={"edit_type": "background", "prompt": "studio backdrop"},
        provider=Provider.KIE,
    )

    outcome = await lifecycle.reconcile(
        failed_event(Provider.KIE, job.external_task_id, "Bad prompt"), EventSource.WEBHOOK
    )

    assert outcome.status is JobStatus.FAILED
    assert outcome.job.fallback_state is FallbackState.TERMINAL
    assert outcome.job.retried is False
    assert fashn_adapter.submitted == []


@pytest.mark.asyncio
async def test_completion_without_result_url_counts_as_failure(lifecycle, uow_factory, user_id):
    job = await submitted_job(lifecycle, uow_factory, user_id)

    outcome = await lifecycle.reconcile(
        completed_event(Provider.KIE, "kie-task-1", result_url=None), EventSource.WEBHOOK
    )

    # No image means the job failed; the fallback still gets its one attempt
    assert outcome.applied is True
    stored = await lifecycle.get_job(job.id)
    assert stored.result_url is None
    assert stored.job_metadata["fallback_reason"] == (
        "Provider reported completion without a result image URL"
    )


@pytest.mark.asyncio
async def test_callback_before_task_attached(lifecycle, uow_factory, user_id):
    """Callback carries the job id in its metadata before submit attached the task id."""
    await seed_credits(uow_factory, user_id, 5)
    job, _ = await lifecycle.create_job(
        user_id, JobType.VIRTUAL_TRYON, [MODEL_IMAGE, GARMENT_IMAGE]
    )
    assert job.external_task_id is None

    event = completed_event(Provider.KIE, "kie-early")
    event.job_id = job.id
    outcome = await lifecycle.reconcile(event, EventSource.WEBHOOK)

    assert outcome.applied is True
    stored = await lifecycle.get_job(job.id)
    assert stored.status is JobStatus.COMPLETED
    assert stored.external_task_id == "kie-early"
    assert stored.provider is Provider.KIE


@pytest.mark.asyncio
async def test_unknown_task_raises(lifecycle):
    with pytest.raises(JobNotFoundError):
        await lifecycle.reconcile(completed_event(Provider.KIE, "nope"), EventSource.WEBHOOK)


@pytest.mark.asyncio
async def test_submit_failure_marks_job_failed(lifecycle, uow_factory, user_id, kie_adapter):
    await seed_credits(uow_factory, user_id, 5)
    kie_adapter.submit_error = ProviderTimeoutError("Kie.AI request timeout after 60s")

    with pytest.raises(ProviderError):
        await lifecycle.create_job(
            user_id, JobType.VIRTUAL_TRYON, [MODEL_IMAGE, GARMENT_IMAGE], provider=Provider.KIE
        )

    jobs = await lifecycle.list_jobs(user_id)
    assert len(jobs) == 1
    assert jobs[0].status is JobStatus.FAILED
    assert jobs[0].provider is Provider.KIE
    assert jobs[0].error_message == "Kie.AI request timeout after 60s"

    # The debit stands; failed jobs are not refunded
    async with await uow_factory() as uow:
        assert (await uow.credits.get_by_user(user_id)).credits_balance == 4

    with pytest.raises(JobInputError, match="cannot be resubmitted"):
        await lifecycle.submit(jobs[0].id, Provider.FASHN)


@pytest.mark.asyncio
async def test_job_cannot_be_submitted_twice(lifecycle, uow_factory, user_id):
    job = await submitted_job(lifecycle, uow_factory, user_id)

    with pytest.raises(JobInputError, match="already submitted"):
        await lifecycle.submit(job.id, Provider.KIE)


@pytest.mark.asyncio
async def test_submit_checks_ownership(lifecycle, uow_factory, user_id):
    await seed_credits(uow_factory, user_id, 5)
    job, _ = await lifecycle.create_job(
        user_id, JobType.VIRTUAL_TRYON, [MODEL_IMAGE, GARMENT_IMAGE]
    )

    with pytest.raises(JobNotFoundError):
        await lifecycle.submit(job.id, Provider.KIE, user_id=job.id)


@pytest.mark.asyncio
async def test_insufficient_credits_creates_nothing(lifecycle, uow_factory, user_id, kie_adapter):
    await seed_credits(uow_factory, user_id, 0)

    job, debit = await lifecycle.create_job(
        user_id, JobType.VIRTUAL_TRYON, [MODEL_IMAGE, GARMENT_IMAGE], provider=Provider.KIE
    )

    assert job is None
    assert debit.success is False
    assert debit.balance == 0
    assert await lifecycle.list_jobs(user_id) == []
    assert kie_adapter.submitted == []


@pytest.mark.asyncio
async def test_missing_images_rejected_before_debit(lifecycle, uow_factory, user_id):
    await seed_credits(uow_factory, user_id, 5)

    with pytest.raises(JobInputError, match="requires 2 image"):
        await lifecycle.create_job(user_id, JobType.MODEL_SWAP, [MODEL_IMAGE, ""])

    async with await uow_factory() as uow:
        assert (await uow.credits.get_by_user(user_id)).credits_balance == 5


@pytest.mark.asyncio
async def test_unprovisioned_user_cannot_create_jobs(lifecycle, user_id):
    with pytest.raises(CreditsNotInitializedError):
        await lifecycle.create_job(user_id, JobType.VIRTUAL_TRYON, [MODEL_IMAGE, GARMENT_IMAGE])


@pytest.mark.asyncio
async def test_synchronous_analysis_completes_on_submit(
    lifecycle, uow_factory, user_id, gemini_adapter
):
    await seed_credits(uow_factory, user_id, 5)
    gemini_adapter.next_event = ProviderEvent(
        provider=Provider.GEMINI,
        task_id="",
        status=JobStatus.COMPLETED,
        analysis="A linen shirt with a relaxed fit.",
    )

    job, _ = await lifecycle.create_job(
        user_id,
        JobType.GEMINI_ANALYSIS,
        [GARMENT_IMAGE],
        settings={"prompt": "Describe the garment"},
        provider=Provider.GEMINI,
    )

    assert job.status is JobStatus.COMPLETED
    assert job.analysis == "A linen shirt with a relaxed fit."
    assert job.result_url is None
    assert job.job_metadata["last_event_source"] == "submit"


@pytest.mark.asyncio
async def test_completion_materializes_into_storage(uow_factory, registry, ledger, user_id):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "GET":
            return httpx.Response(200, content=b"\xff\xd8jpeg")
        return httpx.Response(200, json={"Key": "tryon-images/x.jpg"})

    lifecycle = JobLifecycleManager(
        uow_factory=uow_factory,
        registry=registry,
        materializer=ResultMaterializer(
            "https://proj.supabase.co", "service-key", transport=httpx.MockTransport(handler)
        ),
        ledger=ledger,
        public_base_url="https://api.example.com",
    )
    job = await submitted_job(lifecycle, uow_factory, user_id)

    await lifecycle.reconcile(completed_event(Provider.KIE, "kie-task-1"), EventSource.WEBHOOK)

    stored = await lifecycle.get_job(job.id)
    assert stored.result_url.startswith(
        f"https://proj.supabase.co/storage/v1/object/public/tryon-images/{user_id}/results/"
        f"result_{job.id}_"
    )
    assert [r.method for r in requests] == ["GET", "POST"]
    assert requests[1].headers["x-upsert"] == "true"


@pytest.mark.asyncio
async def test_materialize_failure_keeps_provider_url(uow_factory, registry, ledger, user_id):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    lifecycle = JobLifecycleManager(
        uow_factory=uow_factory,
        registry=registry,
        materializer=ResultMaterializer(
            "https://proj.supabase.co", "service-key", transport=httpx.MockTransport(handler)
        ),
        ledger=ledger,
        public_base_url="https://api.example.com",
    )
    job = await submitted_job(lifecycle, uow_factory, user_id)

    outcome = await lifecycle.reconcile(
        completed_event(Provider.KIE, "kie-task-1"), EventSource.WEBHOOK
    )

    assert outcome.status is JobStatus.COMPLETED
    assert (await lifecycle.get_job(job.id)).result_url == "https://cdn.example.com/r.png"


@pytest.mark.asyncio
@pytest.mark.parametrize("task_id", ["test", "health"])
async def test_status_health_check_short_circuits(lifecycle, kie_adapter, task_id):
    status = await lifecycle.get_status(Provider.KIE, task_id)

    assert status["status"] == "success"
    assert status["service"] == "kie"
    assert kie_adapter.polled == []


@pytest.mark.asyncio
async def test_status_polls_until_terminal(lifecycle, uow_factory, user_id, kie_adapter):
    await submitted_job(lifecycle, uow_factory, user_id)
    kie_adapter.poll_events["kie-task-1"] = completed_event(Provider.KIE, "kie-task-1")

    first = await lifecycle.get_status(Provider.KIE, "kie-task-1", user_id=user_id)
    second = await lifecycle.get_status(Provider.KIE, "kie-task-1", user_id=user_id)

    assert first["status"] == "completed"
    assert first["result"] == "https://cdn.example.com/r.png"
    assert second == first
    assert kie_adapter.polled == ["kie-task-1"]


@pytest.mark.asyncio
async def test_status_poll_failure_returns_stored_state(
    lifecycle, uow_factory, user_id, kie_adapter
):
    await submitted_job(lifecycle, uow_factory, user_id)

    status = await lifecycle.get_status(Provider.KIE, "kie-task-1")

    assert status["status"] == "processing"
    assert kie_adapter.polled == ["kie-task-1"]


@pytest.mark.asyncio
async def test_status_hides_other_users_jobs(lifecycle, uow_factory, user_id):
    job = await submitted_job(lifecycle, uow_factory, user_id)

    with pytest.raises(JobNotFoundError):
        await lifecycle.get_status(Provider.KIE, "kie-task-1", user_id=job.id)


@pytest.mark.asyncio
async def test_sweep_polls_quiet_jobs(lifecycle, uow_factory, user_id, kie_adapter):
    await seed_credits(uow_factory, user_id, 5)
    for _ in range(2):
        await lifecycle.create_job(
            user_id, JobType.VIRTUAL_TRYON, [MODEL_IMAGE, GARMENT_IMAGE], provider=Provider.KIE
        )
    kie_adapter.poll_events["kie-task-1"] = completed_event(Provider.KIE, "kie-task-1")
    kie_adapter.poll_events["kie-task-2"] = ProviderEvent(
        provider=Provider.KIE, task_id="kie-task-2", status=JobStatus.PROCESSING
    )

    changed = await lifecycle.sweep(grace_seconds=0, limit=10)

    assert changed == 1
    assert sorted(kie_adapter.polled) == ["kie-task-1", "kie-task-2"]
    statuses = {job.external_task_id: job.status for job in await lifecycle.list_jobs(user_id)}
    assert statuses == {"kie-task-1": JobStatus.COMPLETED, "kie-task-2": JobStatus.PROCESSING}


@pytest.mark.asyncio
async def test_sweep_skips_jobs_inside_grace_window(lifecycle, uow_factory, user_id, kie_adapter):
    await submitted_job(lifecycle, uow_factory, user_id)

    assert await lifecycle.sweep(grace_seconds=3600) == 0
    assert kie_adapter.polled == []


@pytest.mark.asyncio
async def test_sweep_rotates_past_jobs_that_fail_to_poll(
    lifecycle, uow_factory, user_id, kie_adapter
):
    await seed_credits(uow_factory, user_id, 5)
    for _ in range(3):
        await lifecycle.create_job(
            user_id, JobType.VIRTUAL_TRYON, [MODEL_IMAGE, GARMENT_IMAGE], provider=Provider.KIE
        )
    # Only the newest job answers; polls for the two oldest keep erroring
    kie_adapter.poll_events["kie-task-3"] = completed_event(Provider.KIE, "kie-task-3")

    assert await lifecycle.sweep(grace_seconds=0, limit=2) == 0
    assert await lifecycle.sweep(grace_seconds=0, limit=2) == 1

    assert "kie-task-3" in kie_adapter.polled
    statuses = {job.external_task_id: job.status for job in await lifecycle.list_jobs(user_id)}
    assert statuses == {
        "kie-task-1": JobStatus.PROCESSING,
        "kie-task-2": JobStatus.PROCESSING,
        "kie-task-3": JobStatus.COMPLETED,
    }


@pytest.mark.asyncio
async def test_delete_job_checks_owner(lifecycle, uow_factory, user_id):
    job = await submitted_job(lifecycle, uow_factory, user_id)

    with pytest.raises(JobNotFoundError):
        await lifecycle.delete_job(job.id, job.id)

    await lifecycle.delete_job(job.id, user_id)
    assert await lifecycle.list_jobs(user_id) == []


@pytest.mark.asyncio
@pytest.mark.skipif(
    os.environ.get("TRYON_TEST_POSTGRES") != "1",
    reason="concurrent writers need PostgreSQL row locking",
)
async def test_racing_failure_events_claim_one_fallback(
    lifecycle, uow_factory, user_id, fashn_adapter
):
    job = await submitted_job(lifecycle, uow_factory, user_id)
    event = failed_event(Provider.KIE, "kie-task-1")

    outcomes = await asyncio.gather(
        lifecycle.reconcile(event, EventSource.WEBHOOK),
        lifecycle.reconcile(event, EventSource.POLL),
    )

    assert sum(1 for o in outcomes if o.applied) == 1
    assert len(fashn_adapter.submitted) == 1
    stored = await lifecycle.get_job(job.id)
    assert len(stored.job_metadata["fallback_lineage"]) == 1
