"""Job worker: executes due scheduled jobs and periodic maintenance.

Two kinds of work:

1. Scheduled jobs (scheduled_jobs table), polled every poll_interval:
     retry_dispatch    → RetryScheduler.create_retry_clone
     escalate_dispatch → EscalationNotifier.escalate
   A job is claimed with a conditional queued → running update, executed
   in its own DB session, then marked done. A handler that raises is
   requeued after job_retry_delay_seconds until job_max_attempts. A job
   still running after job_lease_seconds is treated as abandoned and
   requeued.

2. Periodic loops, each on its own interval:
     event sweep        → EventPublisher.sweep_expired
     loop SLA monitor   → LoopMonitor.check_sla
     hourly aggregation → LoopAccounting.aggregate_hourly
     daily aggregation  → LoopAccounting.aggregate_daily

Usage:
    worker = JobWorker()
    asyncio.create_task(worker.run_loop())
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from switchboard.config import settings
from switchboard.db.engine import async_session_factory
from switchboard.db.models import ScheduledJob, utcnow
from switchboard.services.escalation import EscalationNotifier
from switchboard.services.event_publisher import EventPublisher
from switchboard.services.loop_metrics import LoopAccounting
from switchboard.services.loop_monitor import LoopMonitor
from switchboard.services.retry_scheduler import RetryScheduler
from switchboard.worker.queue import ESCALATE_DISPATCH, RETRY_DISPATCH, JobQueue

logger = structlog.get_logger()

Clock = Callable[[], datetime]
JobHandler = Callable[[AsyncSession, dict, Clock], Awaitable[Any]]
PeriodicTask = Callable[[AsyncSession, Clock], Awaitable[Any]]


# ─── Job handlers ───────────────────────────────────────────


async def handle_retry_dispatch(db: AsyncSession, payload: dict, clock: Clock) -> Any:
    clone = await RetryScheduler(db, clock=clock).create_retry_clone(payload["dispatch_id"])
    return clone.id if clone else None


async def handle_escalate_dispatch(db: AsyncSession, payload: dict, clock: Clock) -> Any:
    return await EscalationNotifier(db, clock=clock).escalate(payload["dispatch_id"])


JOB_HANDLERS: dict[str, JobHandler] = {
    RETRY_DISPATCH: handle_retry_dispatch,
    ESCALATE_DISPATCH: handle_escalate_dispatch,
}


# ─── Periodic tasks ─────────────────────────────────────────


async def sweep_events(db: AsyncSession, clock: Clock) -> Any:
    return await EventPublisher(db, clock=clock).sweep_expired()


async def check_loop_sla(db: AsyncSession, clock: Clock) -> Any:
    return len(await LoopMonitor(db, clock=clock).check_sla())


async def aggregate_hourly(db: AsyncSession, clock: Clock) -> Any:
    return await LoopAccounting(db, clock=clock).aggregate_hourly()


async def aggregate_daily(db: AsyncSession, clock: Clock) -> Any:
    return await LoopAccounting(db, clock=clock).aggregate_daily()


def default_periodic_tasks() -> dict[str, tuple[float, PeriodicTask]]:
    return {
        "event_sweep": (settings.event_sweep_interval, sweep_events),
        "loop_sla": (settings.loop_monitor_interval, check_loop_sla),
        "loop_hourly": (settings.hourly_aggregation_interval, aggregate_hourly),
        "loop_daily": (settings.daily_aggregation_interval, aggregate_daily),
    }


@dataclass
class WorkerStats:
    """Runtime statistics for monitoring."""
    jobs_done: int = 0
    jobs_requeued: int = 0
    jobs_failed: int = 0
    periodic_runs: int = 0
    errors: int = 0
    started_at: Optional[datetime] = None


class JobWorker:
    """Background worker for scheduled jobs and periodic maintenance.

    Each job and each periodic run gets its own DB session for
    transaction isolation. Safe to run several workers side by side.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        clock: Clock = utcnow,
        poll_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        handlers: Optional[dict[str, JobHandler]] = None,
        periodic: Optional[dict[str, tuple[float, PeriodicTask]]] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.poll_interval = poll_interval or settings.worker_poll_interval
        self.batch_size = batch_size or settings.worker_batch_size
        self.handlers = handlers if handlers is not None else dict(JOB_HANDLERS)
        self.periodic = periodic if periodic is not None else default_periodic_tasks()
        self.stats = WorkerStats()
        self._running = False

    # ─── Scheduled jobs ──────────────────────────────────

    async def process_due(self, now: Optional[datetime] = None) -> int:
        """Claim and run every job due at `now`. Returns jobs executed."""
        now = now or self.clock()
        async with self.session_factory() as db:
            queue = JobQueue(db, clock=self.clock)
            requeued = await queue.requeue_expired(
                now,
                lease=timedelta(seconds=settings.job_lease_seconds),
                max_attempts=settings.job_max_attempts,
            )
            if requeued:
                self.stats.jobs_requeued += requeued
                logger.warning("job.lease_expired", requeued=requeued)
            job_ids = await queue.due_job_ids(now, self.batch_size)

            claimed: list[ScheduledJob] = []
            for job_id in job_ids:
                job = await queue.claim(job_id)
                if job is not None:
                    claimed.append(job)
            await db.commit()  # handlers run in their own sessions

            for job in claimed:
                await self._execute(queue, job)
        return len(claimed)

    async def _execute(self, queue: JobQueue, job: ScheduledJob) -> None:
        log = logger.bind(job_id=job.id, kind=job.kind, attempt=job.attempts)
        handler = self.handlers.get(job.kind)
        if handler is None:
            await queue.mark_failed(job, f"Unknown job kind: {job.kind}", max_attempts=0, retry_delay=timedelta())
            self.stats.jobs_failed += 1
            log.error("job.unknown_kind")
            return

        try:
            async with self.session_factory() as db:
                outcome = await handler(db, job.payload, self.clock)
        except Exception as e:
            self.stats.errors += 1
            log.exception("job.error")
            requeued = await queue.mark_failed(
                job,
                str(e),
                max_attempts=settings.job_max_attempts,
                retry_delay=timedelta(seconds=settings.job_retry_delay_seconds),
            )
            if requeued:
                self.stats.jobs_requeued += 1
            else:
                self.stats.jobs_failed += 1
                log.error("job.gave_up", error=str(e))
            return

        await queue.mark_done(job)
        self.stats.jobs_done += 1
        log.info("job.done", outcome=outcome)

    # ─── Periodic tasks ──────────────────────────────────

    async def run_periodic(self, name: str) -> Any:
        """Run one periodic task now, in its own session."""
        _, task = self.periodic[name]
        async with self.session_factory() as db:
            result = await task(db, self.clock)
        self.stats.periodic_runs += 1
        return result

    async def _periodic_loop(self, name: str, interval: float) -> None:
        while self._running:
            try:
                await asyncio.sleep(interval)
                if not self._running:
                    break
                await self.run_periodic(name)
            except asyncio.CancelledError:
                break
            except Exception:
                self.stats.errors += 1
                logger.exception("worker.periodic_error", task=name)

    # ─── Lifecycle ───────────────────────────────────────

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.process_due()
            except asyncio.CancelledError:
                break
            except Exception:
                self.stats.errors += 1
                logger.exception("worker.poll_error")
            await asyncio.sleep(self.poll_interval)

    async def run_loop(self) -> None:
        """Main worker loop: job polling plus every periodic task."""
        self._running = True
        self.stats.started_at = self.clock()
        logger.info(
            "worker.started",
            poll_interval=self.poll_interval,
            periodic=sorted(self.periodic),
        )
        await asyncio.gather(
            self._poll_loop(),
            *(self._periodic_loop(name, interval) for name, (interval, _) in self.periodic.items()),
        )

    def stop(self) -> None:
        """Signal the worker to stop."""
        self._running = False
        logger.info("worker.stopping", **self.get_stats())

    def get_stats(self) -> dict:
        return {
            "jobs_done": self.stats.jobs_done,
            "jobs_requeued": self.stats.jobs_requeued,
            "jobs_failed": self.stats.jobs_failed,
            "periodic_runs": self.stats.periodic_runs,
            "errors": self.stats.errors,
            "started_at": self.stats.started_at.isoformat() if self.stats.started_at else None,
        }
