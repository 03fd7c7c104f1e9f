"""Loop SLA monitor: opens alerts for overdue loop stages.

Runs periodically in the worker. For every open (unbroken, not yet
reported) message whose reply/action/report deadline has passed without
that stage, it opens one alert per (message, overdue stage). Alerts more
than `loop_alert_critical_minutes` overdue are critical and get escalated
to the coordinator with a system_alert event.

The messaging service resolves an alert when its stage is reached.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.config import settings
from switchboard.db.models import AgentMessage, LoopAlert, utcnow
from switchboard.events.store import AuditStore
from switchboard.events.types import LOOP_ALERT_OPENED
from switchboard.services.directory import UNKNOWN_AGENT, AgentDirectory
from switchboard.services.event_publisher import EventPublisher
from switchboard.services.messaging import MessageStatus

logger = structlog.get_logger()

# alert type → (deadline attribute, stage attribute)
OVERDUE_CHECKS = {
    "reply_overdue": ("expected_reply_by", "replied_at"),
    "action_overdue": ("expected_action_by", "acted_at"),
    "report_overdue": ("expected_report_by", "reported_at"),
}


class LoopMonitor:
    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utcnow,
        critical_after_minutes: Optional[int] = None,
        coordinator: Optional[str] = None,
    ):
        self.db = db
        self.clock = clock
        self.critical_after = timedelta(
            minutes=critical_after_minutes
            if critical_after_minutes is not None
            else settings.loop_alert_critical_minutes
        )
        self.coordinator = coordinator or settings.coordinator_agent
        self.audit = AuditStore(db)
        self.directory = AgentDirectory(db, clock=clock)
        self.publisher = EventPublisher(db, clock=clock)

    async def check_sla(self, now: Optional[datetime] = None) -> list[LoopAlert]:
        """Open alerts for overdue stages. Returns the alerts opened or escalated."""
        now = now or self.clock()

        result = await self.db.execute(
            select(AgentMessage).where(
                AgentMessage.loop_broken.is_(False),
                AgentMessage.status_code < MessageStatus.REPORTED,
                or_(
                    AgentMessage.expected_reply_by < now,
                    AgentMessage.expected_action_by < now,
                    AgentMessage.expected_report_by < now,
                ),
            )
        )
        messages = list(result.scalars().all())
        if not messages:
            return []

        names = await self.directory.names_for(m.to_agent_id for m in messages)
        existing = await self._existing_alerts([m.id for m in messages])

        changed: list[LoopAlert] = []
        for msg in messages:
            agent_name = names.get(msg.to_agent_id, UNKNOWN_AGENT)
            for alert_type, (deadline_attr, stage_attr) in OVERDUE_CHECKS.items():
                deadline = getattr(msg, deadline_attr)
                if deadline is None or getattr(msg, stage_attr) is not None or now <= deadline:
                    continue

                critical = now - deadline > self.critical_after
                alert = existing.get((msg.id, alert_type))
                if alert is None:
                    alert = LoopAlert(
                        message_id=msg.id,
                        agent_name=agent_name,
                        alert_type=alert_type,
                        severity="critical" if critical else "warning",
                        status="active",
                        created_at=now,
                    )
                    self.db.add(alert)
                    await self.db.flush()
                    await self.audit.append(
                        stream_id=f"loop:{msg.id}",
                        event_type=LOOP_ALERT_OPENED,
                        data={"alert_type": alert_type, "severity": alert.severity},
                        at=now,
                    )
                    changed.append(alert)
                elif alert.status == "active" and critical and alert.severity != "critical":
                    alert.severity = "critical"
                    changed.append(alert)

                if alert.status == "active" and alert.severity == "critical":
                    alert.status = "escalated"
                    alert.escalated_to = self.coordinator

        await self.db.commit()

        escalated = [a for a in changed if a.status == "escalated"]
        for alert in escalated:
            await self.publisher.notify(
                "system_alert",
                self.coordinator,
                {
                    "message": f"Loop {alert.message_id} for {alert.agent_name}: {alert.alert_type}",
                    "priority": "high",
                    "metadata": {"alert_id": alert.id, "message_id": alert.message_id},
                },
                refresh=changed,
            )

        if changed:
            logger.warning(
                "loops.sla_alerts",
                changed=len(changed),
                escalated=len(escalated),
            )
        return changed

    async def _existing_alerts(self, message_ids: list[int]) -> dict[tuple[int, str], LoopAlert]:
        result = await self.db.execute(
            select(LoopAlert)
            .where(LoopAlert.message_id.in_(message_ids))
            .execution_options(populate_existing=True)
        )
        return {(a.message_id, a.alert_type): a for a in result.scalars().all()}
