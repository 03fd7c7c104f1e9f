"""Escalation tests: the coordinator hears about exhausted lineages once."""

import pytest
from sqlalchemy import select

from switchboard.db.models import AgentMessage
from switchboard.events.store import AuditStore
from switchboard.events.types import DISPATCH_ESCALATED, DISPATCH_ESCALATION_FAILED
from switchboard.services.dispatch_service import DispatchService
from switchboard.services.escalation import EscalationNotifier, escalation_content


async def _exhausted(db, clock, agent, **kwargs):
    svc = DispatchService(db, clock=clock)
    d = await svc.create(agent.id, "run_tests", max_retries=0, **kwargs)
    await svc.claim(d.id)
    return await svc.fail(d.id, "out of memory")


async def _messages(db):
    return list((await db.execute(select(AgentMessage))).scalars().all())


def test_escalation_content():
    content = escalation_content("Forge", "ENG-1", 3, None)
    assert content == (
        "Dispatch failed permanently for Forge\n"
        "Task: ENG-1\n"
        "Retries exhausted: 3\n"
        "Last error: unknown"
    )


@pytest.mark.asyncio
async def test_escalate_messages_coordinator(db_session, clock, make_agent):
    agent = await make_agent("forge")
    coordinator = await make_agent("max", role="manager")
    failed = await _exhausted(db_session, clock, agent, payload='{"identifier": "ENG-8"}')

    notifier = EscalationNotifier(db_session, clock=clock, coordinator="max")
    assert await notifier.escalate(failed.id) is True

    messages = await _messages(db_session)
    assert len(messages) == 1
    msg = messages[0]
    assert msg.to_agent_id == coordinator.id
    assert msg.from_agent_id is None  # system sender is not an agent
    assert msg.priority == "high"
    assert msg.content == escalation_content("Forge", "ENG-8", 0, "out of memory")

    audit = await AuditStore(db_session).read_stream(f"dispatch:{failed.id}")
    escalated = [e for e in audit if e.type == DISPATCH_ESCALATED]
    assert len(escalated) == 1
    assert escalated[0].data["message_id"] == msg.id


@pytest.mark.asyncio
async def test_escalate_is_sent_once(db_session, clock, make_agent):
    agent = await make_agent("forge")
    await make_agent("max", role="manager")
    failed = await _exhausted(db_session, clock, agent)

    notifier = EscalationNotifier(db_session, clock=clock, coordinator="max")
    assert await notifier.escalate(failed.id) is True
    assert await notifier.escalate(failed.id) is True

    assert len(await _messages(db_session)) == 1


@pytest.mark.asyncio
async def test_escalate_missing_coordinator_is_logged_not_raised(db_session, clock, make_agent):
    agent = await make_agent("forge")
    failed = await _exhausted(db_session, clock, agent)

    notifier = EscalationNotifier(db_session, clock=clock, coordinator="nobody")
    assert await notifier.escalate(failed.id) is False

    assert await _messages(db_session) == []
    assert (await DispatchService(db_session, clock=clock).get(failed.id)).status == "failed"
    audit = await AuditStore(db_session).read_stream(f"dispatch:{failed.id}")
    assert DISPATCH_ESCALATION_FAILED in [e.type for e in audit]
    assert DISPATCH_ESCALATED not in [e.type for e in audit]


@pytest.mark.asyncio
async def test_escalate_send_error_keeps_dispatch_loaded(db_session, clock, make_agent, monkeypatch):
    agent = await make_agent("forge")
    await make_agent("max", role="manager")
    failed = await _exhausted(db_session, clock, agent)

    notifier = EscalationNotifier(db_session, clock=clock, coordinator="max")

    async def broken_send(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(notifier.messaging, "send_direct_message", broken_send)
    assert await notifier.escalate(failed.id) is False

    # The rolled-back session must not leave the caller with expired rows
    assert failed.status == "failed"
    assert failed.error == "out of memory"
    audit = await AuditStore(db_session).read_stream(f"dispatch:{failed.id}")
    assert audit[-1].type == DISPATCH_ESCALATION_FAILED
    assert "database went away" in audit[-1].data["error"]


@pytest.mark.asyncio
async def test_escalate_skips_non_failed(db_session, clock, make_agent):
    agent = await make_agent("forge")
    await make_agent("max", role="manager")
    d = await DispatchService(db_session, clock=clock).create(agent.id, "x")

    notifier = EscalationNotifier(db_session, clock=clock, coordinator="max")
    assert await notifier.escalate(d.id) is False
    assert await notifier.escalate(4242) is False
    assert await _messages(db_session) == []
