"""Escalation notifier: tells the coordinator when a lineage gives up.

Runs as a deferred job once a failed dispatch has used its whole retry
budget. Sends one high-priority direct message to the coordinator agent
naming the agent, the task, the retries used and the last error.

Delivery is best-effort: a failure is logged and audited, the dispatch
stays failed, and nothing is retried automatically. An escalation that
already went out is never sent again, so the job can run more than once.
"""

from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.config import settings
from switchboard.db.models import AuditEvent, Dispatch, utcnow
from switchboard.events.store import AuditStore
from switchboard.events.types import DISPATCH_ESCALATED, DISPATCH_ESCALATION_FAILED
from switchboard.services.directory import AgentDirectory
from switchboard.services.errors import DeliveryFailure
from switchboard.services.messaging import MessagingService

logger = structlog.get_logger()


def escalation_content(
    agent_name: str,
    label: str,
    retries: int,
    error: Optional[str],
) -> str:
    return (
        f"Dispatch failed permanently for {agent_name}\n"
        f"Task: {label}\n"
        f"Retries exhausted: {retries}\n"
        f"Last error: {error or 'unknown'}"
    )


class EscalationNotifier:
    """Escalate exhausted dispatch lineages to the coordinator agent."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utcnow,
        coordinator: Optional[str] = None,
        sender: Optional[str] = None,
    ):
        self.db = db
        self.clock = clock
        self.coordinator = coordinator or settings.coordinator_agent
        self.sender = sender or settings.system_sender
        self.audit = AuditStore(db)
        self.directory = AgentDirectory(db, clock=clock)
        self.messaging = MessagingService(db, clock=clock)

    async def escalate(self, dispatch_id: int) -> bool:
        """Send the escalation for a failed dispatch.

        Returns True when the coordinator has been told (now or earlier),
        False when there was nothing to escalate or delivery failed.
        """
        dispatch = await self.db.get(Dispatch, dispatch_id, populate_existing=True)
        if dispatch is None or dispatch.status != "failed":
            logger.info("dispatch.escalation_skipped", dispatch_id=dispatch_id)
            return False

        if await self._already_escalated(dispatch_id):
            return True

        agent = await self.directory.get(dispatch.agent_id)
        agent_name = agent.display_name if agent else str(dispatch.agent_id)
        label = dispatch.ticket_identifier or dispatch.command
        retries = dispatch.retry_count
        content = escalation_content(agent_name, label, retries, dispatch.error)

        try:
            message_id = await self._deliver(dispatch, content)
        except DeliveryFailure as e:
            logger.error(
                "dispatch.escalation_failed",
                dispatch_id=dispatch_id,
                coordinator=self.coordinator,
                error=str(e),
            )
            await self.audit.append(
                stream_id=f"dispatch:{dispatch_id}",
                event_type=DISPATCH_ESCALATION_FAILED,
                data={"coordinator": self.coordinator, "error": str(e)},
                at=self.clock(),
            )
            await self.db.commit()
            return False

        await self.audit.append(
            stream_id=f"dispatch:{dispatch_id}",
            event_type=DISPATCH_ESCALATED,
            data={
                "coordinator": self.coordinator,
                "message_id": message_id,
                "label": label,
                "retries": retries,
            },
            at=self.clock(),
        )
        await self.db.commit()
        logger.warning(
            "dispatch.escalated",
            dispatch_id=dispatch_id,
            label=label,
            coordinator=self.coordinator,
        )
        return True

    async def _deliver(self, dispatch: Dispatch, content: str) -> int:
        """Message the coordinator. Raises DeliveryFailure.

        An unknown coordinator is caught before anything is written. Any
        other failure rolls the session back, which expires every loaded
        row, so the dispatch is reloaded for the caller.
        """
        if await self.directory.resolve_by_name(self.coordinator) is None:
            raise DeliveryFailure(f"Coordinator {self.coordinator} is not registered")

        try:
            msg = await self.messaging.send_direct_message(
                self.sender, self.coordinator, content, priority="high"
            )
        except Exception as e:
            await self.db.rollback()
            await self.db.refresh(dispatch)
            raise DeliveryFailure(
                f"Could not message {self.coordinator}: {e}"
            ) from e
        return msg.id

    async def _already_escalated(self, dispatch_id: int) -> bool:
        result = await self.db.execute(
            select(AuditEvent.id)
            .where(
                AuditEvent.stream_id == f"dispatch:{dispatch_id}",
                AuditEvent.type == DISPATCH_ESCALATED,
            )
            .limit(1)
        )
        return result.first() is not None
