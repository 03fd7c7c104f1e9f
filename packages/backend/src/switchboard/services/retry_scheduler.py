"""Retry scheduler: exponential backoff for failed dispatches.

A retry is never a resurrected dispatch. The failed row stays failed
(status never moves backward); after the backoff delay a brand-new pending
dispatch is inserted with retry_count + 1 and original_dispatch_id pointing
at the failed one. Following original_dispatch_id walks the lineage back to
the first attempt.

  retry_count < max_retries  → next_retry_at = now + backoff, job queued
  retry_count >= max_retries → escalation job queued, no more clones

Backoff comes from a table indexed by retry_count and capped at its last
entry: with the default (60s, 300s, 900s), attempt 0 waits 1 minute,
attempt 1 waits 5, attempt 2 and beyond wait 15.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.config import settings
from switchboard.db.models import Agent, Dispatch, utcnow
from switchboard.events.store import AuditStore
from switchboard.events.types import (
    DISPATCH_ESCALATION_QUEUED,
    DISPATCH_RETRY_CREATED,
    DISPATCH_RETRY_SCHEDULED,
)
from switchboard.services.event_publisher import PRIORITY_LABELS, EventPublisher
from switchboard.worker.queue import ESCALATE_DISPATCH, RETRY_DISPATCH, JobQueue

logger = structlog.get_logger()


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff table and retry budget."""

    backoff_seconds: tuple[int, ...] = (60, 300, 900)
    max_retries: int = 3

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            backoff_seconds=tuple(settings.retry_backoff_seconds),
            max_retries=settings.max_retries,
        )

    def delay_for(self, retry_count: int) -> timedelta:
        """Backoff before the next attempt, capped at the table's last entry."""
        index = min(max(retry_count, 0), len(self.backoff_seconds) - 1)
        return timedelta(seconds=self.backoff_seconds[index])


@dataclass
class FailureDecision:
    """What the scheduler did with a failed dispatch."""

    action: str  # "retry" or "escalate"
    next_retry_at: Optional[datetime] = None
    job_id: Optional[int] = None


class RetryScheduler:
    """Schedules retry clones and escalations for failed dispatches."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utcnow,
        policy: Optional[RetryPolicy] = None,
    ):
        self.db = db
        self.clock = clock
        self.policy = policy or RetryPolicy.from_settings()
        self.audit = AuditStore(db)
        self.jobs = JobQueue(db, clock=clock)
        self.publisher = EventPublisher(db, clock=clock)

    # ─── Failure hand-off (runs inside Fail's transaction) ──

    async def on_failure(self, dispatch: Dispatch) -> FailureDecision:
        """Schedule a retry or an escalation for a just-failed dispatch.

        Does not commit; the caller commits this together with the
        failed status, so a failure is handled exactly once.
        """
        now = self.clock()

        if dispatch.retry_count < dispatch.max_retries:
            delay = self.policy.delay_for(dispatch.retry_count)
            next_retry_at = now + delay
            dispatch.next_retry_at = next_retry_at

            job = await self.jobs.enqueue(
                RETRY_DISPATCH, {"dispatch_id": dispatch.id}, run_at=next_retry_at
            )
            await self.audit.append(
                stream_id=f"dispatch:{dispatch.id}",
                event_type=DISPATCH_RETRY_SCHEDULED,
                data={
                    "retry_count": dispatch.retry_count,
                    "max_retries": dispatch.max_retries,
                    "delay_seconds": int(delay.total_seconds()),
                    "next_retry_at": next_retry_at.isoformat(),
                    "job_id": job.id,
                },
                at=now,
            )
            logger.info(
                "dispatch.retry_scheduled",
                dispatch_id=dispatch.id,
                retry_count=dispatch.retry_count,
                delay_seconds=int(delay.total_seconds()),
            )
            return FailureDecision("retry", next_retry_at=next_retry_at, job_id=job.id)

        job = await self.jobs.enqueue(ESCALATE_DISPATCH, {"dispatch_id": dispatch.id})
        await self.audit.append(
            stream_id=f"dispatch:{dispatch.id}",
            event_type=DISPATCH_ESCALATION_QUEUED,
            data={
                "retry_count": dispatch.retry_count,
                "max_retries": dispatch.max_retries,
                "job_id": job.id,
            },
            at=now,
        )
        logger.warning(
            "dispatch.retries_exhausted",
            dispatch_id=dispatch.id,
            retry_count=dispatch.retry_count,
            max_retries=dispatch.max_retries,
        )
        return FailureDecision("escalate", job_id=job.id)

    # ─── Deferred action ─────────────────────────────────

    async def create_retry_clone(self, origin_id: int) -> Optional[Dispatch]:
        """Insert the retry clone for a failed dispatch.

        Safe to run more than once: returns the existing clone if there is
        one, and does nothing if the origin is gone or not failed.
        """
        origin = await self.db.get(Dispatch, origin_id, populate_existing=True)
        if origin is None:
            logger.warning("dispatch.retry_origin_missing", dispatch_id=origin_id)
            return None

        if origin.status != "failed":
            logger.info(
                "dispatch.retry_skipped",
                dispatch_id=origin_id,
                status=origin.status,
            )
            return None

        existing = await self._existing_clone(origin_id)
        if existing is not None:
            if origin.next_retry_at is not None:
                origin.next_retry_at = None
                await self.db.commit()
            return existing

        now = self.clock()
        clone = Dispatch(
            agent_id=origin.agent_id,
            command=origin.command,
            payload=origin.payload,
            ticket_identifier=origin.ticket_identifier,
            priority=origin.priority,
            is_urgent=origin.is_urgent,
            status="pending",
            created_at=now,
            retry_count=origin.retry_count + 1,
            max_retries=origin.max_retries,
            original_dispatch_id=origin.id,
        )
        self.db.add(clone)
        try:
            await self.db.flush()
        except IntegrityError:
            # Another runner inserted the clone between our check and flush
            await self.db.rollback()
            return await self._existing_clone(origin_id)

        origin.next_retry_at = None
        await self.audit.append(
            stream_id=f"dispatch:{origin.id}",
            event_type=DISPATCH_RETRY_CREATED,
            data={"retry_dispatch_id": clone.id, "retry_count": clone.retry_count},
            at=now,
        )
        await self.db.commit()

        logger.info(
            "dispatch.retry_created",
            dispatch_id=clone.id,
            original_dispatch_id=origin.id,
            retry_count=clone.retry_count,
        )

        agent = await self.db.get(Agent, clone.agent_id)
        if agent is not None:
            await self.publisher.notify(
                "dispatch",
                agent.name,
                {
                    "dispatch_id": str(clone.id),
                    "message": (
                        f"Retry {clone.retry_count}/{clone.max_retries}: {clone.command}"
                    ),
                    "priority": PRIORITY_LABELS.get(clone.priority, "normal"),
                },
                refresh=(clone,),
            )
        return clone

    async def _existing_clone(self, origin_id: int) -> Optional[Dispatch]:
        result = await self.db.execute(
            select(Dispatch).where(Dispatch.original_dispatch_id == origin_id)
        )
        return result.scalars().first()
