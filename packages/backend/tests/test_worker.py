"""Job worker tests: deferred retries and escalations, periodic tasks.

The worker runs each job in its own session from session_factory, so these
tests drive it against the per-test database with a fake clock.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from switchboard.db.models import AgentMessage, Dispatch, ScheduledJob
from switchboard.services.dispatch_service import DispatchService
from switchboard.services.event_publisher import EventPublisher
from switchboard.worker.queue import JobQueue
from switchboard.worker.runner import JobWorker


async def _fail(db, clock, agent, **kwargs):
    svc = DispatchService(db, clock=clock)
    d = await svc.create(agent.id, "run_tests", **kwargs)
    await svc.claim(d.id)
    return await svc.fail(d.id, "boom")


async def _job(session_factory, job_id):
    async with session_factory() as db:
        return await db.get(ScheduledJob, job_id)


@pytest.mark.asyncio
async def test_retry_job_waits_for_backoff(db_session, session_factory, clock, make_agent):
    agent = await make_agent("forge")
    origin = await _fail(db_session, clock, agent)
    worker = JobWorker(session_factory=session_factory, clock=clock, periodic={})

    clock.advance(seconds=30)
    assert await worker.process_due() == 0

    clock.advance(seconds=30)
    assert await worker.process_due() == 1

    async with session_factory() as db:
        clone = (
            await db.execute(select(Dispatch).where(Dispatch.original_dispatch_id == origin.id))
        ).scalars().one()
        jobs = (await db.execute(select(ScheduledJob))).scalars().all()
    assert clone.status == "pending"
    assert clone.retry_count == 1
    assert clone.created_at == clock.now
    assert [(j.kind, j.status, j.attempts) for j in jobs] == [("retry_dispatch", "done", 1)]
    assert worker.get_stats()["jobs_done"] == 1


@pytest.mark.asyncio
async def test_done_jobs_are_not_rerun(db_session, session_factory, clock, make_agent):
    agent = await make_agent("forge")
    await _fail(db_session, clock, agent)
    worker = JobWorker(session_factory=session_factory, clock=clock, periodic={})

    clock.advance(minutes=2)
    assert await worker.process_due() == 1
    assert await worker.process_due() == 0


@pytest.mark.asyncio
async def test_failing_handler_is_requeued_then_given_up(
    db_session, session_factory, clock, make_agent, monkeypatch
):
    from switchboard.config import settings

    monkeypatch.setattr(settings, "job_max_attempts", 2)
    monkeypatch.setattr(settings, "job_retry_delay_seconds", 10)

    async def broken(db, payload, clock):
        raise RuntimeError("handler exploded")

    agent = await make_agent("forge")
    await _fail(db_session, clock, agent)
    job_id = (await db_session.execute(select(ScheduledJob.id))).scalar_one()
    worker = JobWorker(
        session_factory=session_factory,
        clock=clock,
        handlers={"retry_dispatch": broken},
        periodic={},
    )

    clock.advance(seconds=60)
    assert await worker.process_due() == 1
    job = await _job(session_factory, job_id)
    assert job.status == "queued"
    assert job.attempts == 1
    assert job.last_error == "handler exploded"
    assert job.run_at == clock.now + timedelta(seconds=10)

    clock.advance(seconds=10)
    assert await worker.process_due() == 1
    job = await _job(session_factory, job_id)
    assert job.status == "failed"
    assert job.attempts == 2

    stats = worker.get_stats()
    assert stats["jobs_requeued"] == 1
    assert stats["jobs_failed"] == 1


@pytest.mark.asyncio
async def test_abandoned_job_is_requeued_after_lease(
    db_session, session_factory, clock, make_agent, monkeypatch
):
    from switchboard.config import settings

    monkeypatch.setattr(settings, "job_lease_seconds", 300)

    agent = await make_agent("forge")
    origin = await _fail(db_session, clock, agent)
    job_id = (await db_session.execute(select(ScheduledJob.id))).scalar_one()
    clock.advance(seconds=60)

    # A worker claims the job and dies before running it
    async with session_factory() as db:
        assert await JobQueue(db, clock=clock).claim(job_id) is not None

    worker = JobWorker(session_factory=session_factory, clock=clock, periodic={})
    assert await worker.process_due() == 0
    assert (await _job(session_factory, job_id)).status == "running"

    clock.advance(seconds=301)
    assert await worker.process_due() == 1

    async with session_factory() as db:
        clones = (
            await db.execute(select(Dispatch).where(Dispatch.original_dispatch_id == origin.id))
        ).scalars().all()
    job = await _job(session_factory, job_id)
    assert [c.retry_count for c in clones] == [1]
    assert (job.status, job.attempts) == ("done", 2)
    assert worker.get_stats()["jobs_requeued"] == 1


@pytest.mark.asyncio
async def test_abandoned_job_out_of_attempts_is_failed(
    db_session, session_factory, clock, make_agent, monkeypatch
):
    from switchboard.config import settings

    monkeypatch.setattr(settings, "job_lease_seconds", 300)
    monkeypatch.setattr(settings, "job_max_attempts", 1)

    agent = await make_agent("forge")
    await _fail(db_session, clock, agent)
    job_id = (await db_session.execute(select(ScheduledJob.id))).scalar_one()
    clock.advance(seconds=60)
    async with session_factory() as db:
        await JobQueue(db, clock=clock).claim(job_id)

    clock.advance(minutes=10)
    worker = JobWorker(session_factory=session_factory, clock=clock, periodic={})
    assert await worker.process_due() == 0

    job = await _job(session_factory, job_id)
    assert job.status == "failed"
    assert job.last_error == "Lease expired"


@pytest.mark.asyncio
async def test_unknown_job_kind_fails_immediately(db_session, session_factory, clock):
    job = await JobQueue(db_session, clock=clock).enqueue("mystery", {})
    await db_session.commit()

    worker = JobWorker(session_factory=session_factory, clock=clock, periodic={})
    assert await worker.process_due() == 1

    job = await _job(session_factory, job.id)
    assert job.status == "failed"
    assert "Unknown job kind" in job.last_error


@pytest.mark.asyncio
async def test_exhausted_dispatch_escalates_through_worker(
    db_session, session_factory, clock, make_agent
):
    agent = await make_agent("forge")
    await make_agent("max", role="manager")
    await _fail(db_session, clock, agent, max_retries=0)

    worker = JobWorker(session_factory=session_factory, clock=clock, periodic={})
    assert await worker.process_due() == 1

    async with session_factory() as db:
        messages = (await db.execute(select(AgentMessage))).scalars().all()
    assert len(messages) == 1
    assert messages[0].priority == "high"
    assert messages[0].content.startswith("Dispatch failed permanently for Forge")


@pytest.mark.asyncio
async def test_run_periodic_event_sweep(db_session, session_factory, clock):
    await EventPublisher(db_session, clock=clock).publish("mention", "forge", {"message": "hi"})
    worker = JobWorker(session_factory=session_factory, clock=clock)

    assert await worker.run_periodic("event_sweep") == 0
    clock.advance(seconds=301)
    assert await worker.run_periodic("event_sweep") == 1
    assert worker.get_stats()["periodic_runs"] == 2


@pytest.mark.asyncio
async def test_stop_before_run_loop_is_harmless(session_factory, clock):
    worker = JobWorker(session_factory=session_factory, clock=clock, periodic={})
    worker.stop()
    assert worker.get_stats()["started_at"] is None
