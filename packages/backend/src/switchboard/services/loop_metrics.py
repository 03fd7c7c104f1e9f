"""Loop accounting: hourly and daily rollups of message loops.

Read-only over agent_messages: stage transitions happen in the messaging
service; this module only counts. Two periodic jobs:

  aggregate_hourly(now) → one row per recipient for the current hour key
  aggregate_daily(now)  → one row per recipient for the day key, plus a
                          team-wide "__team__" row

Rows are upserted on (agent_name, period, period_key), so re-running a
window overwrites it instead of adding to it. Messages whose recipient
can't be resolved are counted under "unknown" so totals reconcile.

SLA breaches are evaluated against `now` at aggregation time: a deadline
counts once it has passed with its stage still missing.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.db.models import AgentMessage, LoopAlert, LoopMetric, utcnow
from switchboard.events.store import AuditStore
from switchboard.events.types import LOOP_METRICS_AGGREGATED
from switchboard.services.directory import UNKNOWN_AGENT, AgentDirectory
from switchboard.services.messaging import STATUS_LABELS, MessageStatus

logger = structlog.get_logger()

TEAM_BUCKET = "__team__"

HOURLY = "hourly"
DAILY = "daily"

HOUR_KEY_FORMAT = "%Y-%m-%dT%H"
DAY_KEY_FORMAT = "%Y-%m-%d"

# (earlier stage timestamp, later stage timestamp) per averaged interval
INTERVALS = {
    "seen": ("sent_at", "seen_at"),
    "reply": ("seen_at", "replied_at"),
    "action": ("replied_at", "acted_at"),
    "report": ("acted_at", "reported_at"),
}

# (deadline, stage timestamp that satisfies it)
DEADLINES = (
    ("expected_reply_by", "replied_at"),
    ("expected_action_by", "acted_at"),
    ("expected_report_by", "reported_at"),
)


def _ms(delta: timedelta) -> float:
    return delta.total_seconds() * 1000


def _avg(values: list[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def count_breaches(msg: AgentMessage, now: datetime) -> int:
    """Deadlines that passed before `now` without their stage being reached."""
    breaches = 0
    for deadline_attr, stage_attr in DEADLINES:
        deadline = getattr(msg, deadline_attr)
        if deadline is not None and getattr(msg, stage_attr) is None and now > deadline:
            breaches += 1
    return breaches


@dataclass
class LoopStats:
    """Running totals for one bucket of messages."""

    total: int = 0
    closed: int = 0
    broken: int = 0
    sla_breaches: int = 0
    durations: dict[str, list[float]] = field(
        default_factory=lambda: {name: [] for name in INTERVALS}
    )

    def add(self, msg: AgentMessage, now: datetime) -> None:
        self.total += 1
        if msg.status_code >= MessageStatus.REPORTED:
            self.closed += 1
        if msg.loop_broken:
            self.broken += 1
        for name, (start_attr, end_attr) in INTERVALS.items():
            start, end = getattr(msg, start_attr), getattr(msg, end_attr)
            if start is not None and end is not None:
                self.durations[name].append(_ms(end - start))
        self.sla_breaches += count_breaches(msg, now)

    @property
    def completion_rate(self) -> float:
        return self.closed / self.total if self.total else 0.0

    def average(self, interval: str) -> Optional[float]:
        return _avg(self.durations[interval])

    def as_row(self) -> dict[str, Any]:
        return {
            "total_messages": self.total,
            "loops_closed": self.closed,
            "loops_broken": self.broken,
            "avg_seen_time_ms": self.average("seen"),
            "avg_reply_time_ms": self.average("reply"),
            "avg_action_time_ms": self.average("action"),
            "avg_report_time_ms": self.average("report"),
            "sla_breaches": self.sla_breaches,
            "completion_rate": self.completion_rate,
        }


class LoopAccounting:
    """Aggregate loop metrics and serve the loop dashboards."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock
        self.audit = AuditStore(db)
        self.directory = AgentDirectory(db, clock=clock)

    # ─── Aggregation ─────────────────────────────────────

    async def aggregate_hourly(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Roll up the last 60 minutes per recipient under the hour key."""
        now = now or self.clock()
        hour_key = now.strftime(HOUR_KEY_FORMAT)

        per_agent = await self._stats_by_agent(now - timedelta(hours=1), now)
        for agent_name, stats in per_agent.items():
            await self._upsert(agent_name, HOURLY, hour_key, stats, now)

        await self._record_run(HOURLY, hour_key, len(per_agent), now)
        logger.info("loops.aggregated", period=HOURLY, period_key=hour_key, agents=len(per_agent))
        return {"metrics_written": len(per_agent), "period_key": hour_key}

    async def aggregate_daily(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Roll up the last 24 hours per recipient plus a team-wide row."""
        now = now or self.clock()
        day_key = now.strftime(DAY_KEY_FORMAT)

        per_agent = await self._stats_by_agent(now - timedelta(days=1), now)
        team = LoopStats()
        for agent_name, stats in per_agent.items():
            await self._upsert(agent_name, DAILY, day_key, stats, now)
            _merge(team, stats)
        await self._upsert(TEAM_BUCKET, DAILY, day_key, team, now)

        written = len(per_agent) + 1
        await self._record_run(DAILY, day_key, written, now)
        logger.info("loops.aggregated", period=DAILY, period_key=day_key, agents=len(per_agent))
        return {
            "metrics_written": written,
            "period_key": day_key,
            "summary": {
                "total": team.total,
                "closed": team.closed,
                "broken": team.broken,
                "sla_breaches": team.sla_breaches,
            },
        }

    async def _messages_since(self, since: datetime) -> list[AgentMessage]:
        result = await self.db.execute(
            select(AgentMessage)
            .where(AgentMessage.sent_at >= since)
            .order_by(AgentMessage.sent_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _recipient_names(self, messages: Iterable[AgentMessage]) -> dict:
        messages = list(messages)
        return await self.directory.names_for(
            [m.to_agent_id for m in messages] + [m.from_agent_id for m in messages]
        )

    async def _stats_by_agent(self, since: datetime, now: datetime) -> dict[str, LoopStats]:
        messages = await self._messages_since(since)
        names = await self._recipient_names(messages)

        per_agent: dict[str, LoopStats] = {}
        for msg in messages:
            agent_name = names.get(msg.to_agent_id, UNKNOWN_AGENT)
            per_agent.setdefault(agent_name, LoopStats()).add(msg, now)
        return per_agent

    async def _upsert(
        self,
        agent_name: str,
        period: str,
        period_key: str,
        stats: LoopStats,
        now: datetime,
    ) -> LoopMetric:
        """Overwrite the row for (agent, period, key), inserting it if new."""
        result = await self.db.execute(
            select(LoopMetric).where(
                LoopMetric.agent_name == agent_name,
                LoopMetric.period == period,
                LoopMetric.period_key == period_key,
            )
        )
        metric = result.scalars().first()
        if metric is None:
            metric = LoopMetric(agent_name=agent_name, period=period, period_key=period_key)
            self.db.add(metric)

        for key, value in stats.as_row().items():
            setattr(metric, key, value)
        metric.computed_at = now
        await self.db.flush()
        return metric

    async def _record_run(self, period: str, period_key: str, written: int, now: datetime) -> None:
        await self.audit.append(
            stream_id=f"loops:{period}",
            event_type=LOOP_METRICS_AGGREGATED,
            data={"period_key": period_key, "metrics_written": written},
            at=now,
        )
        await self.db.commit()

    # ─── Dashboards ──────────────────────────────────────

    async def get_loop_dashboard(
        self,
        agent_name: Optional[str] = None,
        period: Optional[str] = None,
        limit: int = 24,
    ) -> list[LoopMetric]:
        """Most recent metric rows, optionally for one agent and period."""
        query = (
            select(LoopMetric)
            .order_by(LoopMetric.period_key.desc(), LoopMetric.computed_at.desc(), LoopMetric.id.desc())
            .limit(limit)
        )
        if agent_name:
            query = query.where(func.lower(LoopMetric.agent_name) == agent_name.strip().lower())
        if period:
            query = query.where(LoopMetric.period == period)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_active_alerts(
        self,
        agent_name: Optional[str] = None,
        limit: int = 20,
    ) -> list[LoopAlert]:
        query = (
            select(LoopAlert)
            .where(LoopAlert.status == "active")
            .order_by(LoopAlert.created_at.desc(), LoopAlert.id.desc())
            .limit(limit)
        )
        if agent_name:
            query = query.where(func.lower(LoopAlert.agent_name) == agent_name.strip().lower())
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_daily_summary(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Header numbers: loops in flight, closed and broken today.

        Looks back seven days so long-running loops still count as active.
        """
        now = now or self.clock()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        messages = await self._messages_since(now - timedelta(days=7))

        active = completed = broken = 0
        completion_times: list[float] = []
        for msg in messages:
            if msg.status_code < MessageStatus.REPORTED and not msg.loop_broken:
                active += 1
            if (
                msg.status_code >= MessageStatus.REPORTED
                and msg.reported_at is not None
                and msg.reported_at >= start_of_day
            ):
                completed += 1
                completion_times.append(_ms(msg.reported_at - msg.sent_at))
            if msg.loop_broken and msg.sent_at >= start_of_day:
                broken += 1

        avg_completion = _avg(completion_times)
        return {
            "total_active": active,
            "completed_today": completed,
            "broken_today": broken,
            "avg_completion_time_ms": round(avg_completion) if avg_completion is not None else None,
            "as_of": now,
        }

    async def get_agent_breakdown(
        self,
        since_days: int = 7,
        now: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        """Per-agent loop performance, best completion rate first."""
        now = now or self.clock()
        per_agent = await self._stats_by_agent(now - timedelta(days=since_days), now)

        rows = []
        for agent_name, stats in per_agent.items():
            reply, action = stats.average("reply"), stats.average("action")
            rows.append({
                "agent_name": agent_name,
                "total": stats.total,
                "closed": stats.closed,
                "broken": stats.broken,
                "sla_breaches": stats.sla_breaches,
                "avg_reply_time_ms": round(reply) if reply is not None else None,
                "avg_action_time_ms": round(action) if action is not None else None,
                "completion_pct": round(stats.completion_rate * 100),
            })
        rows.sort(key=lambda row: row["completion_pct"], reverse=True)
        return rows

    async def get_unresolved_alerts(self, limit: int = 50) -> list[dict[str, Any]]:
        """Active and escalated alerts joined with their message."""
        result = await self.db.execute(
            select(LoopAlert, AgentMessage)
            .join(AgentMessage, AgentMessage.id == LoopAlert.message_id)
            .where(LoopAlert.status.in_(("active", "escalated")))
            .order_by(LoopAlert.created_at.desc(), LoopAlert.id.desc())
            .limit(limit)
        )
        rows = result.all()
        names = await self._recipient_names(msg for _, msg in rows)

        unresolved = []
        for alert, msg in rows:
            content = msg.content if len(msg.content) <= 120 else msg.content[:120] + "..."
            unresolved.append({
                "alert_id": alert.id,
                "alert_type": alert.alert_type,
                "severity": alert.severity,
                "status": alert.status,
                "escalated_to": alert.escalated_to,
                "created_at": alert.created_at,
                "message_id": msg.id,
                "from_agent": names.get(msg.from_agent_id, UNKNOWN_AGENT),
                "to_agent": names.get(msg.to_agent_id, UNKNOWN_AGENT),
                "content": content,
                "message_status": msg.status_code,
                "message_status_label": STATUS_LABELS.get(msg.status_code, "unknown"),
                "sent_at": msg.sent_at,
                "loop_broken": msg.loop_broken,
                "loop_broken_reason": msg.loop_broken_reason,
            })
        return unresolved


def _merge(team: LoopStats, stats: LoopStats) -> None:
    team.total += stats.total
    team.closed += stats.closed
    team.broken += stats.broken
    team.sla_breaches += stats.sla_breaches
    for name, values in stats.durations.items():
        team.durations[name].extend(values)
