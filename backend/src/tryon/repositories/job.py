"""Job repository for the try-on backend.

Provides data access methods for Job entities. Every state write is a single
conditional UPDATE guarded by the job id, the expected provider task id and the
expected status, so stale or duplicate callbacks lose the race instead of
clobbering a newer attempt.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tryon.core.timezone import utcnow
from tryon.models.job import FallbackState, Job, JobStatus


def _task_guard(expected_task_id: Optional[str]):
    if expected_task_id is None:
        return Job.external_task_id.is_(None)  # type: ignore[union-attr]
    return Job.external_task_id == expected_task_id


class JobRepository:
    """Repository for Job entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: Job) -> Job:
        """Persist new job to database.

        Args:
            job: Job entity to persist

        Returns:
            Persisted job with generated ID
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> Job | None:
        """Retrieve job by UUID."""
        result = await self.session.execute(select(Job).where(Job.id == job_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_by_task_id(self, task_id: str) -> Job | None:
        """Retrieve the job owning a provider task id.

        Matches the current task id as well as a task id superseded by a
        fallback, so replayed callbacks for the old task still resolve to
        their job (and are then ignored as stale).

        Args:
            task_id: Provider task / prediction id

        Returns:
            Job if found, None otherwise
        """
        result = await self.session.execute(
            select(Job)
            .where(
                or_(
                    Job.external_task_id == task_id,  # type: ignore[arg-type]
                    Job.previous_task_id == task_id,  # type: ignore[arg-type]
                )
            )
            .order_by(Job.updated_at.desc())  # type: ignore[attr-defined]
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: UUID, limit: int = 50) -> list[Job]:
        """Retrieve a user's jobs, newest first."""
        result = await self.session.execute(
            select(Job)
            .where(Job.user_id == user_id)  # type: ignore[arg-type]
            .order_by(Job.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def claim_for_sweep(self, older_than: datetime, limit: int = 20) -> list[Job]:
        """Pick processing jobs that have gone quiet and stamp them as polled.

        Query explanation:
        - WHERE status = 'processing' AND external_task_id IS NOT NULL
        - AND updated_at < older_than: Skip jobs still inside the webhook grace window
        - AND COALESCE(last_polled_at, updated_at) < older_than: Poll each job at most
          once per window
        - ORDER BY COALESCE(last_polled_at, updated_at) ASC: Least recently looked at first

        Picked jobs get last_polled_at = now, so jobs whose poll keeps failing
        move behind the rest of the queue instead of filling every batch.

        Args:
            older_than: Only jobs last updated (and last polled) before this instant
            limit: Maximum number of jobs to retrieve

        Returns:
            List of jobs to poll
        """
        last_seen = func.coalesce(Job.last_polled_at, Job.updated_at)
        result = await self.session.execute(
            select(Job)
            .where(Job.status == JobStatus.PROCESSING)  # type: ignore[arg-type]
            .where(Job.external_task_id.is_not(None))  # type: ignore[union-attr]
            .where(Job.updated_at < older_than)  # type: ignore[arg-type]
            .where(last_seen < older_than)
            .order_by(last_seen.asc())
            .limit(limit)
        )
        jobs = list(result.scalars().all())
        if jobs:
            polled_at = utcnow()
            await self.session.execute(
                update(Job)
                .where(Job.id.in_([job.id for job in jobs]))  # type: ignore[attr-defined]
                .values(last_polled_at=polled_at)
                .execution_options(synchronize_session=False)
            )
            await self.session.flush()
        return jobs

    async def apply_transition(
        self,
        job: Job,
        expected_task_id: Optional[str],
        expected_status: JobStatus = JobStatus.PROCESSING,
        expected_fallback_state: Optional[FallbackState] = None,
    ) -> bool:
        """Write a job's in-memory state if the stored row still matches expectations.

        The caller mutates a detached Job through its transition methods, then
        hands it here. The UPDATE only applies when the stored row still has the
        expected task id and status (and fallback state, when given).

        Args:
            job: Detached job carrying the new state
            expected_task_id: Task id the stored row must still carry (None before submission)
            expected_status: Status the stored row must still carry
            expected_fallback_state: Optional fallback state guard

        Returns:
            True if the row was updated, False if another writer got there first
        """
        stmt = (
            update(Job)
            .where(Job.id == job.id)  # type: ignore[arg-type]
            .where(_task_guard(expected_task_id))
            .where(Job.status == expected_status)  # type: ignore[arg-type]
        )
        if expected_fallback_state is not None:
            stmt = stmt.where(Job.fallback_state == expected_fallback_state)  # type: ignore[arg-type]

        job.updated_at = utcnow()
        stmt = stmt.values(
            status=job.status,
            provider=job.provider,
            external_task_id=job.external_task_id,
            previous_task_id=job.previous_task_id,
            fallback_state=job.fallback_state,
            result_url=job.result_url,
            analysis=job.analysis,
            error_message=job.error_message,
            job_metadata=job.job_metadata,
            completed_at=job.completed_at,
            updated_at=job.updated_at,
        ).execution_options(synchronize_session=False)

        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def claim_fallback(self, job_id: UUID, expected_task_id: Optional[str]) -> bool:
        """Atomically consume the single fallback allowance of a job.

        Query:
            UPDATE jobs SET fallback_state = 'fallback_attempted'
            WHERE id = :job_id AND external_task_id = :expected_task_id
              AND status = 'processing' AND fallback_state = 'fresh'

        Returns:
            True if this caller owns the fallback, False if it was already used
        """
        result = await self.session.execute(
            update(Job)
            .where(Job.id == job_id)  # type: ignore[arg-type]
            .where(_task_guard(expected_task_id))
            .where(Job.status == JobStatus.PROCESSING)  # type: ignore[arg-type]
            .where(Job.fallback_state == FallbackState.FRESH)  # type: ignore[arg-type]
            .values(fallback_state=FallbackState.FALLBACK_ATTEMPTED, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def delete(self, job: Job) -> None:
        """Delete a job (user or admin initiated only)."""
        await self.session.delete(job)
        await self.session.flush()
