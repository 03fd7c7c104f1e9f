"""Audit store: append-only log of every state change.

Dispatch rows hold the current state; the audit stream holds how it got
there: "dispatch.created", "dispatch.claimed", "dispatch.failed",
"dispatch.retry_scheduled", "dispatch.retry_created", "dispatch.escalated".

Appends share the caller's session, so an audit row commits (or rolls back)
together with the transition it describes.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.db.models import AuditEvent


class AuditStore:
    """Append-only audit log backed by the main database."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(
        self,
        stream_id: str,
        event_type: str,
        data: dict,
        metadata: dict | None = None,
        at: Optional[datetime] = None,
    ) -> AuditEvent:
        """Append an event to a stream. Returns the created row."""
        event = AuditEvent(
            stream_id=stream_id,
            type=event_type,
            data=data,
            meta=metadata or {},
        )
        if at is not None:
            event.created_at = at
        self.db.add(event)
        await self.db.flush()  # get the auto-generated id
        return event

    async def read_stream(
        self,
        stream_id: str,
        after_id: int = 0,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Read events for one stream, optionally after a given position."""
        result = await self.db.execute(
            select(AuditEvent)
            .where(AuditEvent.stream_id == stream_id, AuditEvent.id > after_id)
            .order_by(AuditEvent.id)
            .limit(limit)
        )
        return list(result.scalars().all())
