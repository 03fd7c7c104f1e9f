"""Agent event API routes.

Agents poll GET /events/{agent}?since=<cursor> and pass the returned
cursor back next time. Acknowledged events stop showing up; unacknowledged
ones expire after their TTL.

/events/sweep is declared before /events/{agent} so "sweep" isn't read
as an agent name.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.api.errors import not_found
from switchboard.db.engine import get_db
from switchboard.schemas.event import (
    EventBatch,
    EventPublish,
    EventPublished,
    EventRead,
    SweepResult,
)
from switchboard.services.errors import NotFoundError
from switchboard.services.event_publisher import EventPublisher

router = APIRouter()


def _publisher(db: AsyncSession = Depends(get_db)) -> EventPublisher:
    return EventPublisher(db)


@router.post("/events", response_model=EventPublished, status_code=201)
async def publish_event(body: EventPublish, publisher: EventPublisher = Depends(_publisher)):
    try:
        event_id = await publisher.publish(
            body.type, body.target_agent, body.payload.model_dump(exclude_none=True)
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return EventPublished(event_id=event_id)


@router.post("/events/sweep", response_model=SweepResult)
async def sweep_expired_events(publisher: EventPublisher = Depends(_publisher)):
    """Mark pending events past their TTL as expired."""
    return SweepResult(expired=await publisher.sweep_expired())


@router.post("/events/{event_id}/ack", response_model=EventRead)
async def acknowledge_event(event_id: int, publisher: EventPublisher = Depends(_publisher)):
    try:
        return await publisher.acknowledge(event_id)
    except NotFoundError as e:
        raise not_found(e)


@router.get("/events/{agent}", response_model=EventBatch)
async def subscribe_events(
    agent: str,
    since: Optional[datetime] = Query(None, description="Cursor from the previous poll"),
    limit: Optional[int] = Query(None, ge=1, le=200),
    publisher: EventPublisher = Depends(_publisher),
):
    """Pending events for an agent created after `since`, newest first."""
    events, cursor = await publisher.subscribe(agent, since=since, limit=limit)
    return EventBatch(events=events, cursor=cursor)


@router.get("/events/{agent}/history", response_model=list[EventRead])
async def event_history(
    agent: str,
    limit: int = Query(100, ge=1, le=500),
    publisher: EventPublisher = Depends(_publisher),
):
    return await publisher.history(agent, limit=limit)
