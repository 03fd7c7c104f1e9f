"""Pydantic schemas for dispatches.

- DispatchCreate / TicketDispatchCreate: what you POST to queue work
- DispatchResult / DispatchFailure: bodies for complete and fail
- DispatchRead: what the API returns (agent_name joined in)
- AgentQueueRead: per-agent queue summary
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class DispatchCreate(BaseModel):
    agent_id: uuid.UUID
    command: str = Field(..., min_length=1, max_length=100)
    payload: Optional[str] = None
    priority: Optional[int] = Field(None, ge=0, le=3)  # 0=urgent … 3=low
    is_urgent: Optional[bool] = None
    max_retries: Optional[int] = Field(None, ge=0, le=20)


class TicketDispatchCreate(BaseModel):
    agent_name: str = Field(..., min_length=1)
    ticket_id: str = Field(..., min_length=1, max_length=100)
    title: str
    description: str = ""


class TicketDispatchResult(BaseModel):
    """dispatch_id is null when the agent name did not resolve."""
    dispatch_id: Optional[int]


class DispatchResult(BaseModel):
    result: Optional[str] = None


class DispatchFailure(BaseModel):
    error: str = Field(..., min_length=1)


class DispatchRead(BaseModel):
    id: int
    agent_id: uuid.UUID
    agent_name: Optional[str] = None
    command: str
    payload: Optional[str]
    ticket_identifier: Optional[str]
    priority: int
    is_urgent: bool
    status: str
    result: Optional[str]
    error: Optional[str]
    retry_count: int
    max_retries: int
    next_retry_at: Optional[datetime]
    original_dispatch_id: Optional[int]
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    model_config = {"from_attributes": True}


class AgentQueueRead(BaseModel):
    agent_id: uuid.UUID
    agent_name: str
    pending: int
    running: int
    pending_tickets: list[str]


class MaintenanceResult(BaseModel):
    affected: int
