"""Loop stage tests: messages move sent → seen → replied → acted → reported."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from switchboard.db.models import AgentEvent, LoopAlert
from switchboard.services.errors import (
    AgentNotFoundError,
    InvalidTransitionError,
    MessageNotFoundError,
)
from switchboard.services.messaging import MessageStatus, MessagingService


@pytest.mark.asyncio
async def test_send_direct_message(db_session, clock, make_agent):
    sender = await make_agent("forge")
    recipient = await make_agent("atlas")
    svc = MessagingService(db_session, clock=clock)

    msg = await svc.send_direct_message(
        "forge", "Atlas", "Please review ENG-4", priority="high",
        expected_reply_by=clock.now + timedelta(minutes=15),
    )

    assert msg.from_agent_id == sender.id
    assert msg.to_agent_id == recipient.id
    assert msg.status_code == MessageStatus.SENT
    assert msg.sent_at == clock.now
    assert msg.loop_broken is False

    events = (await db_session.execute(select(AgentEvent))).scalars().all()
    assert [(e.type, e.target_agent) for e in events] == [("mention", "atlas")]
    assert events[0].payload["metadata"]["message_id"] == msg.id


@pytest.mark.asyncio
async def test_send_to_unknown_agent(db_session, clock, make_agent):
    await make_agent("forge")
    with pytest.raises(AgentNotFoundError):
        await MessagingService(db_session, clock=clock).send_direct_message(
            "forge", "ghost", "hello?"
        )


@pytest.mark.asyncio
async def test_stages_advance_in_order(db_session, clock, make_agent):
    await make_agent("atlas")
    svc = MessagingService(db_session, clock=clock)
    msg = await svc.send_direct_message("forge", "atlas", "do it")

    stamps = {}
    for stage in ("seen", "replied", "acted", "reported"):
        clock.advance(minutes=1)
        msg = await svc.advance(msg.id, stage)
        stamps[stage] = clock.now

    assert msg.status_code == MessageStatus.REPORTED
    assert msg.seen_at == stamps["seen"]
    assert msg.replied_at == stamps["replied"]
    assert msg.acted_at == stamps["acted"]
    assert msg.reported_at == stamps["reported"]


@pytest.mark.asyncio
async def test_stage_skip_is_rejected(db_session, clock, make_agent):
    await make_agent("atlas")
    svc = MessagingService(db_session, clock=clock)
    msg = await svc.send_direct_message("forge", "atlas", "do it")

    with pytest.raises(InvalidTransitionError) as exc:
        await svc.advance(msg.id, "acted")
    assert exc.value.current_status == "sent"


@pytest.mark.asyncio
async def test_repeated_stage_is_a_noop(db_session, clock, make_agent):
    await make_agent("atlas")
    svc = MessagingService(db_session, clock=clock)
    msg = await svc.send_direct_message("forge", "atlas", "do it")
    first = (await svc.advance(msg.id, "seen")).seen_at

    clock.advance(minutes=5)
    msg = await svc.advance(msg.id, "seen")
    assert msg.seen_at == first


@pytest.mark.asyncio
async def test_stage_timestamps_never_go_backwards(db_session, clock, make_agent):
    await make_agent("atlas")
    svc = MessagingService(db_session, clock=clock)
    msg = await svc.send_direct_message("forge", "atlas", "do it")
    clock.advance(minutes=10)
    await svc.advance(msg.id, "seen")

    clock.advance(minutes=-5)  # clock skew
    msg = await svc.advance(msg.id, "replied")
    assert msg.replied_at >= msg.seen_at


@pytest.mark.asyncio
async def test_unknown_stage_and_message(db_session, clock, make_agent):
    await make_agent("atlas")
    svc = MessagingService(db_session, clock=clock)
    msg = await svc.send_direct_message("forge", "atlas", "do it")

    with pytest.raises(ValueError):
        await svc.advance(msg.id, "celebrated")
    with pytest.raises(MessageNotFoundError):
        await svc.advance(999, "seen")


@pytest.mark.asyncio
async def test_reaching_stage_resolves_matching_alert(db_session, clock, make_agent):
    await make_agent("atlas")
    svc = MessagingService(db_session, clock=clock)
    msg = await svc.send_direct_message("forge", "atlas", "do it")
    for alert_type in ("reply_overdue", "action_overdue"):
        db_session.add(LoopAlert(
            message_id=msg.id, agent_name="atlas", alert_type=alert_type,
            severity="warning", status="active", created_at=clock.now,
        ))
    await db_session.commit()

    await svc.advance(msg.id, "seen")
    clock.advance(minutes=3)
    await svc.advance(msg.id, "replied")

    alerts = {
        a.alert_type: a
        for a in (
            await db_session.execute(
                select(LoopAlert).execution_options(populate_existing=True)
            )
        ).scalars()
    }
    assert alerts["reply_overdue"].status == "resolved"
    assert alerts["reply_overdue"].resolved_at == clock.now
    assert alerts["action_overdue"].status == "active"


@pytest.mark.asyncio
async def test_mark_broken_and_inbox(db_session, clock, make_agent):
    await make_agent("atlas")
    svc = MessagingService(db_session, clock=clock)
    kept = await svc.send_direct_message("forge", "atlas", "one")
    clock.advance(seconds=1)
    broken = await svc.send_direct_message("forge", "atlas", "two")

    broken = await svc.mark_broken(broken.id, "owner left")
    assert broken.loop_broken is True
    assert broken.loop_broken_reason == "owner left"

    assert [m.id for m in await svc.inbox("atlas")] == [kept.id]
    assert [m.id for m in await svc.inbox("atlas", open_only=False)] == [broken.id, kept.id]


@pytest.mark.asyncio
async def test_broken_loop_rejects_stage_reports(db_session, clock, make_agent):
    await make_agent("atlas")
    svc = MessagingService(db_session, clock=clock)
    msg = await svc.send_direct_message("forge", "atlas", "hand over ENG-4")
    await svc.advance(msg.id, "seen")
    await svc.mark_broken(msg.id, "owner left")

    with pytest.raises(InvalidTransitionError) as exc:
        await svc.advance(msg.id, "replied")
    assert exc.value.current_status == "broken"

    with pytest.raises(InvalidTransitionError):
        await svc.advance(msg.id, "seen")

    msg = await svc.get(msg.id)
    assert msg.status_code == MessageStatus.SEEN
    assert msg.replied_at is None
