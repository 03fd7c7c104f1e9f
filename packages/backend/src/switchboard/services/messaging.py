"""Inter-agent messaging: direct messages and loop stage tracking.

Every message is a loop: sent → seen → replied → acted → reported. Agents
(or the webhooks relaying for them) report each stage as it happens;
stages are recorded strictly in order so stage timestamps only ever grow.
Reporting a stage the message already reached is a no-op, which keeps
at-least-once reporters harmless.

The escalation notifier uses send_direct_message to reach the coordinator.
"""

import enum
from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.db.models import AgentMessage, LoopAlert, utcnow
from switchboard.events.store import AuditStore
from switchboard.events.types import LOOP_BROKEN, LOOP_MESSAGE_SENT, LOOP_STAGE_REACHED
from switchboard.services.directory import AgentDirectory
from switchboard.services.errors import InvalidTransitionError, MessageNotFoundError
from switchboard.services.event_publisher import EventPublisher

logger = structlog.get_logger()


class MessageStatus(enum.IntEnum):
    SENT = 0
    SEEN = 1
    REPLIED = 2
    ACTED = 3
    REPORTED = 4


STATUS_LABELS = {status.value: status.name.lower() for status in MessageStatus}

# Stage name → (status, timestamp attribute)
STAGES: dict[str, tuple[MessageStatus, str]] = {
    "seen": (MessageStatus.SEEN, "seen_at"),
    "replied": (MessageStatus.REPLIED, "replied_at"),
    "acted": (MessageStatus.ACTED, "acted_at"),
    "reported": (MessageStatus.REPORTED, "reported_at"),
}

# Reaching a stage resolves the alert that was waiting for it
RESOLVES_ALERT = {
    "replied": "reply_overdue",
    "acted": "action_overdue",
    "reported": "report_overdue",
}

MESSAGE_PRIORITIES = ("low", "normal", "high", "urgent")


class MessagingService:
    """Send messages between agents and record their loop stages."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock
        self.audit = AuditStore(db)
        self.directory = AgentDirectory(db, clock=clock)
        self.publisher = EventPublisher(db, clock=clock)

    # ─── Send ────────────────────────────────────────────

    async def send_direct_message(
        self,
        from_agent: str,
        to_agent: str,
        content: str,
        priority: str = "normal",
        expected_reply_by: Optional[datetime] = None,
        expected_action_by: Optional[datetime] = None,
        expected_report_by: Optional[datetime] = None,
    ) -> AgentMessage:
        """Send a message and wake the recipient.

        Raises AgentNotFoundError if the recipient is unknown. The sender
        may be a non-agent (e.g. the system), in which case from_agent_id
        stays empty.
        """
        if priority not in MESSAGE_PRIORITIES:
            raise ValueError(f"Unknown message priority: {priority}")

        recipient = await self.directory.require_by_name(to_agent)
        sender = await self.directory.resolve_by_name(from_agent)

        msg = AgentMessage(
            from_agent_id=sender.id if sender else None,
            to_agent_id=recipient.id,
            content=content,
            priority=priority,
            status_code=MessageStatus.SENT,
            sent_at=self.clock(),
            expected_reply_by=expected_reply_by,
            expected_action_by=expected_action_by,
            expected_report_by=expected_report_by,
        )
        self.db.add(msg)
        await self.db.flush()

        await self.audit.append(
            stream_id=f"loop:{msg.id}",
            event_type=LOOP_MESSAGE_SENT,
            data={
                "from": from_agent,
                "to": recipient.name,
                "priority": priority,
            },
            at=msg.sent_at,
        )
        await self.db.commit()
        logger.info(
            "message.sent", message_id=msg.id, to=recipient.name, priority=priority
        )

        await self.publisher.notify(
            "mention",
            recipient.name,
            {
                "from_agent": from_agent,
                "message": content[:200],
                "priority": priority,
                "metadata": {"message_id": msg.id},
            },
            refresh=(msg,),
        )
        return msg

    # ─── Read ────────────────────────────────────────────

    async def get(self, message_id: int) -> AgentMessage:
        msg = await self.db.get(AgentMessage, message_id)
        if not msg:
            raise MessageNotFoundError(message_id)
        return msg

    async def inbox(
        self,
        agent_name: str,
        open_only: bool = True,
        limit: int = 50,
    ) -> list[AgentMessage]:
        """Messages addressed to an agent, newest first.

        open_only=True hides closed (reported) and broken loops.
        """
        agent = await self.directory.require_by_name(agent_name)
        query = (
            select(AgentMessage)
            .where(AgentMessage.to_agent_id == agent.id)
            .order_by(AgentMessage.sent_at.desc(), AgentMessage.id.desc())
            .limit(limit)
        )
        if open_only:
            query = query.where(
                AgentMessage.status_code < MessageStatus.REPORTED,
                AgentMessage.loop_broken.is_(False),
            )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ─── Stage transitions ───────────────────────────────

    async def advance(self, message_id: int, stage: str) -> AgentMessage:
        """Record that a message reached the next loop stage.

        Raises InvalidTransitionError when asked to skip a stage, or when
        the loop was already marked broken: a broken loop is closed for good.
        """
        if stage not in STAGES:
            raise ValueError(f"Unknown loop stage: {stage}")
        target, attr = STAGES[stage]

        msg = await self.get(message_id)
        if msg.loop_broken:
            raise InvalidTransitionError(
                f"Cannot mark message {message_id} as {stage}: "
                f"loop is broken ({msg.loop_broken_reason})",
                current_status="broken",
            )
        current = msg.status_code

        if current >= target:
            return msg  # already there

        if target != current + 1:
            raise InvalidTransitionError(
                f"Cannot mark message {message_id} as {stage}: "
                f"it is only {STATUS_LABELS[current]}",
                current_status=STATUS_LABELS[current],
            )

        # Keep stage timestamps monotone even if the clock steps back
        previous = _stage_timestamp(msg, current)
        now = self.clock()
        at = max(now, previous) if previous else now

        msg.status_code = target
        setattr(msg, attr, at)

        alert_type = RESOLVES_ALERT.get(stage)
        if alert_type:
            await self.db.execute(
                update(LoopAlert)
                .where(
                    LoopAlert.message_id == msg.id,
                    LoopAlert.alert_type == alert_type,
                    LoopAlert.status.in_(("active", "escalated")),
                )
                .values(status="resolved", resolved_at=at)
                .execution_options(synchronize_session=False)
            )

        await self.audit.append(
            stream_id=f"loop:{msg.id}",
            event_type=LOOP_STAGE_REACHED,
            data={"stage": stage, "from": STATUS_LABELS[current]},
            at=at,
        )
        await self.db.commit()
        logger.info("message.stage_reached", message_id=msg.id, stage=stage)
        return msg

    async def mark_broken(self, message_id: int, reason: str) -> AgentMessage:
        """Flag a loop as abandoned."""
        msg = await self.get(message_id)
        if msg.loop_broken:
            return msg

        msg.loop_broken = True
        msg.loop_broken_reason = reason
        await self.audit.append(
            stream_id=f"loop:{msg.id}",
            event_type=LOOP_BROKEN,
            data={"reason": reason, "status": STATUS_LABELS[msg.status_code]},
            at=self.clock(),
        )
        await self.db.commit()
        logger.warning("message.loop_broken", message_id=msg.id, reason=reason)
        return msg


def _stage_timestamp(msg: AgentMessage, status: int) -> Optional[datetime]:
    if status == MessageStatus.SENT:
        return msg.sent_at
    for stage_status, attr in STAGES.values():
        if stage_status == status:
            return getattr(msg, attr)
    return None
