"""Pydantic schemas for agent events."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

EVENT_TYPE_PATTERN = (
    r"^(task_assigned|task_completed|handoff|mention|approval_needed|system_alert|dispatch)$"
)


class EventPayload(BaseModel):
    """Known payload fields; anything else is kept as-is."""
    task_id: Optional[str] = None
    dispatch_id: Optional[str] = None
    from_agent: Optional[str] = None
    message: Optional[str] = None
    priority: Optional[str] = Field(None, pattern=r"^(low|normal|high|urgent)$")
    metadata: Optional[dict[str, Any]] = None

    model_config = {"extra": "allow"}


class EventPublish(BaseModel):
    type: str = Field(..., pattern=EVENT_TYPE_PATTERN)
    target_agent: str = Field(..., min_length=1)
    payload: EventPayload = Field(default_factory=EventPayload)


class EventPublished(BaseModel):
    event_id: int


class EventRead(BaseModel):
    id: int
    type: str
    target_agent: str
    payload: dict[str, Any]
    status: str
    created_at: datetime
    expires_at: datetime
    delivered_at: Optional[datetime]

    model_config = {"from_attributes": True}


class EventBatch(BaseModel):
    """Pass `cursor` back as `since` on the next poll."""
    events: list[EventRead]
    cursor: datetime


class SweepResult(BaseModel):
    expired: int
