"""Loop accounting tests: rollups, dashboards and the SLA monitor."""

import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from switchboard.db.models import AgentEvent, AgentMessage, LoopMetric
from switchboard.services.loop_metrics import TEAM_BUCKET, LoopAccounting, count_breaches
from switchboard.services.loop_monitor import LoopMonitor
from switchboard.services.messaging import MessageStatus, MessagingService


@pytest_asyncio.fixture()
async def traffic(db_session, clock, make_agent):
    """Four messages sent at 10:00.

    closed  → atlas, every stage two minutes apart
    broken  → atlas, abandoned
    overdue → forge, reply expected by 10:05, never answered
    orphan  → an agent id the directory doesn't know
    """
    await make_agent("atlas")
    await make_agent("forge")
    await make_agent("max", role="manager")
    svc = MessagingService(db_session, clock=clock)
    start = clock.now

    closed = await svc.send_direct_message("max", "atlas", "ship it")
    broken = await svc.send_direct_message("max", "atlas", "never mind")
    overdue = await svc.send_direct_message(
        "max", "forge", "status?", expected_reply_by=start + timedelta(minutes=5)
    )
    orphan = AgentMessage(
        to_agent_id=uuid.uuid4(), content="hello?", priority="normal",
        status_code=MessageStatus.SENT, sent_at=start, loop_broken=False,
    )
    db_session.add(orphan)
    await db_session.commit()

    for stage in ("seen", "replied", "acted", "reported"):
        clock.advance(minutes=2)
        await svc.advance(closed.id, stage)
    await svc.mark_broken(broken.id, "superseded")

    clock.now = start + timedelta(minutes=30)
    return {"closed": closed, "broken": broken, "overdue": overdue, "orphan": orphan}


# ═══════════════════════════════════════════════════════════
# Aggregation
# ═══════════════════════════════════════════════════════════


def test_count_breaches(clock):
    msg = AgentMessage(
        sent_at=clock.now,
        expected_reply_by=clock.now + timedelta(minutes=5),
        expected_action_by=clock.now + timedelta(minutes=5),
        acted_at=clock.now + timedelta(minutes=1),
    )
    assert count_breaches(msg, clock.now + timedelta(minutes=5)) == 0  # not yet past
    assert count_breaches(msg, clock.now + timedelta(minutes=6)) == 1  # only the reply


@pytest.mark.asyncio
async def test_aggregate_hourly(db_session, clock, traffic):
    result = await LoopAccounting(db_session, clock=clock).aggregate_hourly()

    assert result == {"metrics_written": 3, "period_key": "2026-03-02T10"}
    rows = {
        m.agent_name: m
        for m in (await db_session.execute(select(LoopMetric))).scalars()
    }
    assert set(rows) == {"atlas", "forge", "unknown"}

    atlas = rows["atlas"]
    assert atlas.total_messages == 2
    assert atlas.loops_closed == 1
    assert atlas.loops_broken == 1
    assert atlas.completion_rate == 0.5
    assert atlas.avg_seen_time_ms == 120_000
    assert atlas.avg_report_time_ms == 120_000
    assert rows["forge"].sla_breaches == 1
    assert rows["forge"].avg_seen_time_ms is None
    assert rows["unknown"].total_messages == 1


@pytest.mark.asyncio
async def test_reaggregation_overwrites(db_session, clock, traffic):
    accounting = LoopAccounting(db_session, clock=clock)
    await accounting.aggregate_hourly()
    await MessagingService(db_session, clock=clock).advance(traffic["overdue"].id, "seen")
    await accounting.aggregate_hourly()

    count = await db_session.scalar(select(func.count()).select_from(LoopMetric))
    assert count == 3
    forge = (
        await db_session.execute(select(LoopMetric).where(LoopMetric.agent_name == "forge"))
    ).scalars().one()
    assert forge.avg_seen_time_ms == 30 * 60 * 1000


@pytest.mark.asyncio
async def test_aggregate_daily_adds_team_row(db_session, clock, traffic):
    result = await LoopAccounting(db_session, clock=clock).aggregate_daily()

    assert result["metrics_written"] == 4
    assert result["period_key"] == "2026-03-02"
    assert result["summary"] == {"total": 4, "closed": 1, "broken": 1, "sla_breaches": 1}

    team = (
        await db_session.execute(select(LoopMetric).where(LoopMetric.agent_name == TEAM_BUCKET))
    ).scalars().one()
    assert team.period == "daily"
    assert team.total_messages == 4
    assert team.completion_rate == 0.25


@pytest.mark.asyncio
async def test_hourly_window_excludes_older_messages(db_session, clock, traffic):
    clock.advance(hours=2)
    result = await LoopAccounting(db_session, clock=clock).aggregate_hourly()
    assert result["metrics_written"] == 0


# ═══════════════════════════════════════════════════════════
# Dashboards
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_dashboard_filters(db_session, clock, traffic):
    accounting = LoopAccounting(db_session, clock=clock)
    await accounting.aggregate_hourly()
    await accounting.aggregate_daily()

    atlas_hourly = await accounting.get_loop_dashboard(agent_name="ATLAS", period="hourly")
    assert [(m.agent_name, m.period) for m in atlas_hourly] == [("atlas", "hourly")]
    assert len(await accounting.get_loop_dashboard(period="daily")) == 4
    assert await accounting.get_loop_dashboard(agent_name="ghost") == []


@pytest.mark.asyncio
async def test_daily_summary(db_session, clock, traffic):
    summary = await LoopAccounting(db_session, clock=clock).get_daily_summary()

    assert summary["total_active"] == 2  # overdue + orphan
    assert summary["completed_today"] == 1
    assert summary["broken_today"] == 1
    assert summary["avg_completion_time_ms"] == 8 * 60 * 1000
    assert summary["as_of"] == clock.now


@pytest.mark.asyncio
async def test_agent_breakdown_sorted_by_completion(db_session, clock, traffic):
    rows = await LoopAccounting(db_session, clock=clock).get_agent_breakdown(since_days=7)

    assert rows[0]["agent_name"] == "atlas"
    assert rows[0]["completion_pct"] == 50
    assert rows[0]["avg_reply_time_ms"] == 120_000
    assert {r["agent_name"] for r in rows} == {"atlas", "forge", "unknown"}


# ═══════════════════════════════════════════════════════════
# SLA monitor
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_monitor_opens_one_warning_per_overdue_stage(db_session, clock, traffic):
    monitor = LoopMonitor(db_session, clock=clock, critical_after_minutes=60, coordinator="max")

    opened = await monitor.check_sla()
    assert [(a.agent_name, a.alert_type, a.severity, a.status) for a in opened] == [
        ("forge", "reply_overdue", "warning", "active")
    ]
    assert await monitor.check_sla() == []

    active = await LoopAccounting(db_session, clock=clock).get_active_alerts(agent_name="forge")
    assert [a.id for a in active] == [opened[0].id]


@pytest.mark.asyncio
async def test_monitor_escalates_critical_alerts(db_session, clock, traffic):
    monitor = LoopMonitor(db_session, clock=clock, critical_after_minutes=60, coordinator="max")
    [alert] = await monitor.check_sla()

    clock.advance(minutes=40)  # 65 minutes past the reply deadline
    changed = await monitor.check_sla()

    assert [a.id for a in changed] == [alert.id]
    assert alert.severity == "critical"
    assert alert.status == "escalated"
    assert alert.escalated_to == "max"

    events = (
        await db_session.execute(select(AgentEvent).where(AgentEvent.type == "system_alert"))
    ).scalars().all()
    assert [e.target_agent for e in events] == ["max"]
    assert events[0].payload["metadata"]["alert_id"] == alert.id

    unresolved = await LoopAccounting(db_session, clock=clock).get_unresolved_alerts()
    assert [(u["alert_id"], u["to_agent"], u["from_agent"]) for u in unresolved] == [
        (alert.id, "forge", "max")
    ]
    assert unresolved[0]["message_status_label"] == "sent"


@pytest.mark.asyncio
async def test_reply_resolves_escalated_alert(db_session, clock, traffic):
    monitor = LoopMonitor(db_session, clock=clock, critical_after_minutes=60, coordinator="max")
    clock.advance(hours=2)
    [alert] = await monitor.check_sla()
    assert alert.status == "escalated"

    svc = MessagingService(db_session, clock=clock)
    await svc.advance(traffic["overdue"].id, "seen")
    await svc.advance(traffic["overdue"].id, "replied")

    assert await LoopAccounting(db_session, clock=clock).get_unresolved_alerts() == []
    assert await monitor.check_sla() == []
