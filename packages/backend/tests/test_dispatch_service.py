"""Dispatch queue tests.

Covers:
1. Creating dispatches (defaults, priority bounds, ticket parsing)
2. Ticket-driven creation with open-dispatch deduplication
3. The pending → running → completed | failed state machine
4. Queue views (pending order, active, per agent)
5. Maintenance: duplicate cleanup, stuck cleanup, agent reset
6. Concurrent claims: exactly one caller wins
"""

import asyncio
import json
import uuid

import pytest
from sqlalchemy import select

from switchboard.db.models import AgentEvent, ScheduledJob
from switchboard.events.store import AuditStore
from switchboard.events.types import DISPATCH_DEDUPLICATED, DISPATCH_FORCE_FAILED
from switchboard.services.dispatch_service import RESET_ERROR, DispatchService
from switchboard.services.errors import (
    AgentNotFoundError,
    DispatchNotFoundError,
    InvalidTransitionError,
)


def _ticket(identifier: str, title: str = "Fix it") -> str:
    return json.dumps({"identifier": identifier, "title": title})


# ═══════════════════════════════════════════════════════════
# Create
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_create_defaults(db_session, clock, make_agent):
    agent = await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)

    d = await svc.create(agent.id, "run_tests")

    assert d.status == "pending"
    assert d.priority == 2
    assert d.is_urgent is False
    assert d.retry_count == 0
    assert d.max_retries == 3
    assert d.original_dispatch_id is None
    assert d.ticket_identifier is None
    assert d.created_at == clock.now


@pytest.mark.asyncio
async def test_create_priority_zero_is_urgent(db_session, clock, make_agent):
    agent = await make_agent("forge")
    d = await DispatchService(db_session, clock=clock).create(agent.id, "hotfix", priority=0)
    assert d.is_urgent is True


@pytest.mark.asyncio
async def test_create_rejects_out_of_range_priority(db_session, clock, make_agent):
    agent = await make_agent("forge")
    with pytest.raises(ValueError):
        await DispatchService(db_session, clock=clock).create(agent.id, "x", priority=7)


@pytest.mark.asyncio
async def test_create_unknown_agent(db_session, clock):
    with pytest.raises(AgentNotFoundError):
        await DispatchService(db_session, clock=clock).create(uuid.uuid4(), "x")


@pytest.mark.asyncio
async def test_create_parses_ticket_identifier(db_session, clock, make_agent):
    agent = await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)

    d1 = await svc.create(agent.id, "execute_ticket", payload=_ticket("ENG-42"))
    d2 = await svc.create(agent.id, "execute_ticket", payload='{"linearIdentifier": "ENG-7"}')
    d3 = await svc.create(agent.id, "execute_ticket", payload="not json at all")

    assert d1.ticket_identifier == "ENG-42"
    assert d2.ticket_identifier == "ENG-7"
    assert d3.ticket_identifier is None


@pytest.mark.asyncio
async def test_create_wakes_agent(db_session, clock, make_agent):
    agent = await make_agent("forge")
    d = await DispatchService(db_session, clock=clock).create(agent.id, "run_tests", priority=1)

    events = (await db_session.execute(select(AgentEvent))).scalars().all()
    assert len(events) == 1
    assert events[0].type == "dispatch"
    assert events[0].target_agent == "forge"
    assert events[0].payload["dispatch_id"] == str(d.id)
    assert events[0].payload["priority"] == "high"


# ═══════════════════════════════════════════════════════════
# Ticket dispatches
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_create_from_ticket_deduplicates_open_dispatch(db_session, clock, make_agent):
    await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)

    first = await svc.create_from_ticket("Forge", "ENG-1", "Broken login")
    second = await svc.create_from_ticket("forge", "ENG-1", "Broken login")

    assert first == second
    audit = await AuditStore(db_session).read_stream(f"dispatch:{first}")
    assert DISPATCH_DEDUPLICATED in [e.type for e in audit]


@pytest.mark.asyncio
async def test_create_from_ticket_after_completion_creates_new(db_session, clock, make_agent):
    await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)

    first = await svc.create_from_ticket("forge", "ENG-1", "Broken login")
    await svc.claim(first)
    await svc.complete(first, result="done")

    second = await svc.create_from_ticket("forge", "ENG-1", "Broken login")
    assert second != first


@pytest.mark.asyncio
async def test_create_from_ticket_unknown_agent_returns_none(db_session, clock):
    result = await DispatchService(db_session, clock=clock).create_from_ticket(
        "nobody", "ENG-1", "title"
    )
    assert result is None


# ═══════════════════════════════════════════════════════════
# State machine
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_claim_complete(db_session, clock, make_agent):
    agent = await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)
    d = await svc.create(agent.id, "run_tests")

    clock.advance(seconds=5)
    claimed = await svc.claim(d.id)
    assert claimed.status == "running"
    assert claimed.started_at == clock.now
    assert agent.status == "busy"

    clock.advance(seconds=30)
    done = await svc.complete(d.id, result="42 passed")
    assert done.status == "completed"
    assert done.result == "42 passed"
    assert done.completed_at == clock.now
    assert agent.status == "idle"


@pytest.mark.asyncio
async def test_agent_stays_busy_while_other_dispatch_runs(db_session, clock, make_agent):
    agent = await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)
    a = await svc.create(agent.id, "a")
    b = await svc.create(agent.id, "b")
    await svc.claim(a.id)
    await svc.claim(b.id)

    await svc.complete(a.id)
    assert agent.status == "busy"
    await svc.complete(b.id)
    assert agent.status == "idle"


@pytest.mark.asyncio
async def test_complete_pending_is_rejected_with_current_status(db_session, clock, make_agent):
    agent = await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)
    d = await svc.create(agent.id, "run_tests")

    with pytest.raises(InvalidTransitionError) as exc:
        await svc.complete(d.id)
    assert exc.value.current_status == "pending"


@pytest.mark.asyncio
async def test_claim_twice_is_rejected(db_session, clock, make_agent):
    agent = await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)
    d = await svc.create(agent.id, "run_tests")
    await svc.claim(d.id)

    with pytest.raises(InvalidTransitionError) as exc:
        await svc.claim(d.id)
    assert exc.value.current_status == "running"


@pytest.mark.asyncio
async def test_terminal_states_never_move(db_session, clock, make_agent):
    agent = await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)
    d = await svc.create(agent.id, "run_tests")
    await svc.claim(d.id)
    await svc.complete(d.id)

    for action in (svc.claim(d.id), svc.complete(d.id), svc.fail(d.id, "late")):
        with pytest.raises(InvalidTransitionError) as exc:
            await action
        assert exc.value.current_status == "completed"

    assert (await svc.get(d.id)).status == "completed"


@pytest.mark.asyncio
async def test_transition_unknown_dispatch(db_session, clock):
    svc = DispatchService(db_session, clock=clock)
    with pytest.raises(DispatchNotFoundError):
        await svc.claim(999)
    with pytest.raises(DispatchNotFoundError):
        await svc.get(999)


@pytest.mark.asyncio
async def test_fail_records_error_and_schedules_retry(db_session, clock, make_agent):
    agent = await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)
    d = await svc.create(agent.id, "run_tests")
    await svc.claim(d.id)

    failed = await svc.fail(d.id, "timeout")

    assert failed.status == "failed"
    assert failed.error == "timeout"
    assert failed.completed_at == clock.now
    jobs = (await db_session.execute(select(ScheduledJob))).scalars().all()
    assert [j.kind for j in jobs] == ["retry_dispatch"]


@pytest.mark.asyncio
async def test_failed_ticket_alerts_coordinator(db_session, clock, make_agent):
    agent = await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)
    d = await svc.create(agent.id, "execute_ticket", payload=_ticket("ENG-9"))
    await svc.claim(d.id)
    await svc.fail(d.id, "boom")

    alerts = (
        await db_session.execute(select(AgentEvent).where(AgentEvent.type == "system_alert"))
    ).scalars().all()
    assert len(alerts) == 1
    assert alerts[0].target_agent == "max"
    assert alerts[0].payload["metadata"]["ticket"] == "ENG-9"


# ═══════════════════════════════════════════════════════════
# Views
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_list_pending_orders_by_priority_then_age(db_session, clock, make_agent):
    agent = await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)

    low = await svc.create(agent.id, "low", priority=3)
    clock.advance(seconds=1)
    normal_old = await svc.create(agent.id, "normal-old", priority=2)
    clock.advance(seconds=1)
    urgent = await svc.create(agent.id, "urgent", priority=0)
    clock.advance(seconds=1)
    normal_new = await svc.create(agent.id, "normal-new", priority=2)
    running = await svc.create(agent.id, "running", priority=0)
    await svc.claim(running.id)

    pending = await svc.list_pending()
    assert [d.id for d in pending] == [urgent.id, normal_old.id, normal_new.id, low.id]


@pytest.mark.asyncio
async def test_list_active_running_first(db_session, clock, make_agent):
    agent = await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)
    a = await svc.create(agent.id, "a")
    clock.advance(seconds=1)
    b = await svc.create(agent.id, "b")
    clock.advance(seconds=1)
    c = await svc.create(agent.id, "c")
    await svc.claim(c.id)
    done = await svc.create(agent.id, "done")
    await svc.claim(done.id)
    await svc.complete(done.id)

    active = await svc.list_active()
    assert [d.id for d in active] == [c.id, a.id, b.id]


@pytest.mark.asyncio
async def test_list_by_agent_filters_status(db_session, clock, make_agent):
    forge = await make_agent("forge")
    other = await make_agent("atlas")
    svc = DispatchService(db_session, clock=clock)
    a = await svc.create(forge.id, "a")
    clock.advance(seconds=1)
    b = await svc.create(forge.id, "b")
    await svc.create(other.id, "elsewhere")
    await svc.claim(b.id)

    assert [d.id for d in await svc.list_by_agent(forge.id)] == [b.id, a.id]
    assert [d.id for d in await svc.list_by_agent(forge.id, status="pending")] == [a.id]
    with pytest.raises(ValueError):
        await svc.list_by_agent(forge.id, status="sleeping")


@pytest.mark.asyncio
async def test_queue_for_agent(db_session, clock, make_agent):
    agent = await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)
    await svc.create(agent.id, "execute_ticket", payload=_ticket("ENG-1"))
    await svc.create(agent.id, "execute_ticket", payload=_ticket("ENG-2"))
    running = await svc.create(agent.id, "execute_ticket", payload=_ticket("ENG-3"))
    await svc.claim(running.id)

    q = await svc.get_queue_for_agent("FORGE")
    assert q["agent_name"] == "forge"
    assert q["pending"] == 2
    assert q["running"] == 1
    assert sorted(q["pending_tickets"]) == ["ENG-1", "ENG-2"]

    with pytest.raises(AgentNotFoundError):
        await svc.get_queue_for_agent("ghost")


@pytest.mark.asyncio
async def test_lineage_of_single_dispatch(db_session, clock, make_agent):
    agent = await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)
    d = await svc.create(agent.id, "x")
    assert [x.id for x in await svc.get_lineage(d.id)] == [d.id]


# ═══════════════════════════════════════════════════════════
# Maintenance
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_cleanup_duplicates_keeps_oldest(db_session, clock, make_agent):
    agent = await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)
    keep = await svc.create(agent.id, "execute_ticket", payload=_ticket("ENG-5"))
    clock.advance(seconds=1)
    dup1 = await svc.create(agent.id, "execute_ticket", payload=_ticket("ENG-5"))
    clock.advance(seconds=1)
    dup2 = await svc.create(agent.id, "execute_ticket", payload=_ticket("ENG-5"))
    other = await svc.create(agent.id, "execute_ticket", payload=_ticket("ENG-6"))

    removed = await svc.cleanup_duplicates()

    assert removed == 2
    remaining = {d.id for d in await svc.list_pending()}
    assert remaining == {keep.id, other.id}
    for gone in (dup1.id, dup2.id):
        with pytest.raises(DispatchNotFoundError):
            await svc.get(gone)

    assert await svc.cleanup_duplicates() == 0


@pytest.mark.asyncio
async def test_cleanup_stuck_fails_without_retry(db_session, clock, make_agent):
    agent = await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)
    stuck = await svc.create(agent.id, "stuck")
    await svc.claim(stuck.id)
    clock.advance(minutes=45)
    fresh = await svc.create(agent.id, "fresh")
    await svc.claim(fresh.id)

    failed = await svc.cleanup_stuck_dispatches(max_age_minutes=30)

    assert failed == 1
    stuck = await svc.get(stuck.id)
    assert stuck.status == "failed"
    assert stuck.error == "Stuck dispatch: no result after 30 minutes"
    assert (await svc.get(fresh.id)).status == "running"

    jobs = (await db_session.execute(select(ScheduledJob))).scalars().all()
    assert jobs == []
    audit = await AuditStore(db_session).read_stream(f"dispatch:{stuck.id}")
    assert audit[-1].type == DISPATCH_FORCE_FAILED


@pytest.mark.asyncio
async def test_reset_agent_dispatches(db_session, clock, make_agent):
    agent = await make_agent("forge")
    svc = DispatchService(db_session, clock=clock)
    a = await svc.create(agent.id, "a")
    b = await svc.create(agent.id, "b")
    waiting = await svc.create(agent.id, "waiting")
    await svc.claim(a.id)
    await svc.claim(b.id)

    assert await svc.reset_agent_dispatches("forge") == 2
    assert (await svc.get(a.id)).error == RESET_ERROR
    assert (await svc.get(b.id)).status == "failed"
    assert (await svc.get(waiting.id)).status == "pending"
    assert agent.status == "idle"

    with pytest.raises(AgentNotFoundError):
        await svc.reset_agent_dispatches("ghost")


# ═══════════════════════════════════════════════════════════
# Concurrency
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_concurrent_claims_single_winner(session_factory, clock, make_agent):
    agent = await make_agent("forge")
    async with session_factory() as db:
        d = await DispatchService(db, clock=clock).create(agent.id, "race")

    async def attempt():
        async with session_factory() as db:
            try:
                await DispatchService(db, clock=clock).claim(d.id)
                return "won"
            except InvalidTransitionError as e:
                return e.current_status

    outcomes = await asyncio.gather(*(attempt() for _ in range(4)))

    assert sorted(outcomes) == ["running", "running", "running", "won"]
