"""Delayed job queue backed by the scheduled_jobs table.

Producers enqueue inside their own transaction, so a job exists if and only
if the state change that scheduled it committed. The worker claims due jobs
with a conditional queued → running update that also starts a lease. A
worker that dies mid-job leaves its row running; once the lease runs out
the row is requeued. Execution is at-least-once, so every handler must be
safe to run twice.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.db.models import ScheduledJob, utcnow

# Job kinds
RETRY_DISPATCH = "retry_dispatch"
ESCALATE_DISPATCH = "escalate_dispatch"


class JobQueue:
    """Enqueue and claim scheduled jobs."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    async def enqueue(
        self,
        kind: str,
        payload: dict,
        run_at: Optional[datetime] = None,
    ) -> ScheduledJob:
        """Add a job to the caller's transaction (no commit)."""
        now = self.clock()
        job = ScheduledJob(
            kind=kind,
            payload=payload,
            run_at=run_at or now,
            status="queued",
            attempts=0,
            created_at=now,
        )
        self.db.add(job)
        await self.db.flush()
        return job

    async def list_jobs(
        self,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[ScheduledJob]:
        query = select(ScheduledJob).order_by(ScheduledJob.run_at, ScheduledJob.id).limit(limit)
        if kind:
            query = query.where(ScheduledJob.kind == kind)
        if status:
            query = query.where(ScheduledJob.status == status)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def due_job_ids(self, now: datetime, limit: int) -> list[int]:
        """Ids of queued jobs whose run_at has passed, oldest first."""
        result = await self.db.execute(
            select(ScheduledJob.id)
            .where(ScheduledJob.status == "queued", ScheduledJob.run_at <= now)
            .order_by(ScheduledJob.run_at, ScheduledJob.id)
            .limit(limit)
            .with_for_update(skip_locked=True)  # Skip rows another worker holds
        )
        return [row.id for row in result]

    async def requeue_expired(
        self,
        now: datetime,
        lease: timedelta,
        max_attempts: int,
    ) -> int:
        """Return running jobs whose lease ran out to the queue (no commit).

        Jobs that already used max_attempts are failed instead, so a job
        that kills its worker every time cannot loop forever. Returns the
        number requeued.
        """
        expired = (
            ScheduledJob.status == "running",
            ScheduledJob.started_at < now - lease,
        )
        await self.db.execute(
            update(ScheduledJob)
            .where(*expired, ScheduledJob.attempts >= max_attempts)
            .values(status="failed", completed_at=now, last_error="Lease expired")
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(
            update(ScheduledJob)
            .where(*expired)
            .values(status="queued", run_at=now, last_error="Lease expired; requeued")
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def claim(self, job_id: int) -> Optional[ScheduledJob]:
        """queued → running. Returns None if another worker got there first."""
        result = await self.db.execute(
            update(ScheduledJob)
            .where(ScheduledJob.id == job_id, ScheduledJob.status == "queued")
            .values(
                status="running",
                attempts=ScheduledJob.attempts + 1,
                started_at=self.clock(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            return None
        job = await self.db.get(ScheduledJob, job_id)
        await self.db.refresh(job)
        return job

    async def mark_done(self, job: ScheduledJob) -> None:
        job.status = "done"
        job.completed_at = self.clock()
        job.last_error = None
        await self.db.commit()

    async def mark_failed(
        self,
        job: ScheduledJob,
        error: str,
        max_attempts: int,
        retry_delay: timedelta,
    ) -> bool:
        """Requeue with a delay, or give up after max_attempts.

        Returns True if the job will run again.
        """
        job.last_error = error
        if job.attempts < max_attempts:
            job.status = "queued"
            job.run_at = self.clock() + retry_delay
            await self.db.commit()
            return True

        job.status = "failed"
        job.completed_at = self.clock()
        await self.db.commit()
        return False
