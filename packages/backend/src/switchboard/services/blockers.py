"""Blocker detection: warn when a failed ticket may block others.

The dispatch service calls check_dependents_of_failed_task after a ticket
dispatch fails. This implementation has no dependency graph of its own, so
it raises a system alert for the coordinator, who knows which work hangs
off the ticket.
"""

from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.config import settings
from switchboard.db.models import utcnow
from switchboard.services.event_publisher import EventPublisher

logger = structlog.get_logger()


class BlockerDetector:
    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utcnow,
        coordinator: Optional[str] = None,
    ):
        self.db = db
        self.coordinator = coordinator or settings.coordinator_agent
        self.publisher = EventPublisher(db, clock=clock)

    async def check_dependents_of_failed_task(self, identifier: str) -> Optional[int]:
        """Alert the coordinator that dependents of a ticket may be blocked."""
        event_id = await self.publisher.publish(
            "system_alert",
            self.coordinator,
            {
                "message": f"{identifier} failed; tickets depending on it may be blocked",
                "priority": "high",
                "metadata": {"ticket": identifier},
            },
        )
        logger.info("blocker.check_requested", ticket=identifier, event_id=event_id)
        return event_id
