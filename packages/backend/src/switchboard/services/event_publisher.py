"""Event publisher: short-lived wake-up notifications for agents.

Producers (dispatch creation, retries, escalations, direct messages) publish
an event; the target agent polls `subscribe(agent, since)` with the
timestamp it got back last time, which gives at-least-once delivery without
a persistent connection. When Redis is up, events are also pushed to the
agent's WebSocket channel.

Events are a convenience layer. They expire after a TTL, expired events are
never retried, and a failed publish never blocks the operation that
triggered it.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.config import settings
from switchboard.db.models import AgentEvent, utcnow
from switchboard.realtime.pubsub import publish_agent_event, redis_available
from switchboard.services.errors import EventNotFoundError

logger = structlog.get_logger()

EVENT_TYPES = (
    "task_assigned",
    "task_completed",
    "handoff",
    "mention",
    "approval_needed",
    "system_alert",
    "dispatch",
)

# Dispatch priority (0-3) → event priority label
PRIORITY_LABELS = {0: "urgent", 1: "high", 2: "normal", 3: "low"}


class EventPublisher:
    """Publish, subscribe, acknowledge and expire agent events."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utcnow,
        ttl_seconds: Optional[int] = None,
    ):
        self.db = db
        self.clock = clock
        self.ttl = timedelta(
            seconds=ttl_seconds if ttl_seconds is not None else settings.event_ttl_seconds
        )

    # ─── Publish ─────────────────────────────────────────

    async def publish(
        self,
        event_type: str,
        target_agent: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> int:
        """Insert a pending event for an agent. Returns the event id."""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")

        now = self.clock()
        event = AgentEvent(
            type=event_type,
            target_agent=target_agent.strip().lower(),
            payload=payload or {},
            status="pending",
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.db.add(event)
        await self.db.flush()
        await self.db.commit()

        await self._push(event)
        logger.debug("event.published", event_id=event.id, type=event_type, target=event.target_agent)
        return event.id

    async def notify(
        self,
        event_type: str,
        target_agent: str,
        payload: Optional[dict[str, Any]] = None,
        refresh: Iterable[object] = (),
    ) -> Optional[int]:
        """Best-effort publish: failures are logged, never raised.

        Callers have already committed their own state change, so a
        rollback here only discards the event. The rollback expires every
        loaded row; pass the rows the caller still reads as `refresh`.
        """
        try:
            return await self.publish(event_type, target_agent, payload)
        except Exception:
            logger.exception(
                "event.publish_failed", type=event_type, target=target_agent
            )
            await self.db.rollback()
            for obj in refresh:
                await self.db.refresh(obj)
            return None

    async def _push(self, event: AgentEvent) -> None:
        if not redis_available():
            return
        try:
            await publish_agent_event(event.target_agent, _serialize(event))
        except Exception as e:
            logger.warning("event.push_failed", event_id=event.id, error=str(e))

    # ─── Subscribe ───────────────────────────────────────

    async def subscribe(
        self,
        agent: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> tuple[list[AgentEvent], datetime]:
        """Pending events for an agent created after `since`, newest first.

        Returns (events, cursor). Pass the cursor back as the next `since`.
        """
        now = self.clock()
        query = (
            select(AgentEvent)
            .where(
                AgentEvent.target_agent == agent.strip().lower(),
                AgentEvent.status == "pending",
            )
            .order_by(AgentEvent.created_at.desc(), AgentEvent.id.desc())
            .limit(limit or settings.event_subscribe_limit)
        )
        if since is not None:
            query = query.where(AgentEvent.created_at > since)

        result = await self.db.execute(query)
        return list(result.scalars().all()), now

    async def history(self, agent: str, limit: int = 100) -> list[AgentEvent]:
        """All events for an agent regardless of status, newest first."""
        result = await self.db.execute(
            select(AgentEvent)
            .where(AgentEvent.target_agent == agent.strip().lower())
            .order_by(AgentEvent.created_at.desc(), AgentEvent.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # ─── Acknowledge ─────────────────────────────────────

    async def acknowledge(self, event_id: int) -> AgentEvent:
        """Mark an event delivered."""
        event = await self.db.get(AgentEvent, event_id)
        if not event:
            raise EventNotFoundError(event_id)

        if event.status != "delivered":
            event.status = "delivered"
            event.delivered_at = self.clock()
            await self.db.commit()
        return event

    # ─── Sweep ───────────────────────────────────────────

    async def sweep_expired(self) -> int:
        """Mark pending events past their TTL as expired. Returns count."""
        result = await self.db.execute(
            update(AgentEvent)
            .where(
                AgentEvent.status == "pending",
                AgentEvent.expires_at < self.clock(),
            )
            .values(status="expired")
        )
        await self.db.commit()
        expired = result.rowcount or 0
        if expired:
            logger.info("event.swept", expired=expired)
        return expired


def _serialize(event: AgentEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "type": event.type,
        "target_agent": event.target_agent,
        "payload": event.payload,
        "created_at": event.created_at.isoformat(),
    }
