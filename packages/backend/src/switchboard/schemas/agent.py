"""Pydantic schemas for the agent directory."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class AgentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_.-]+$")
    display_name: Optional[str] = Field(None, max_length=100)
    role: str = Field(default="engineer", max_length=50)


class Heartbeat(BaseModel):
    status: Optional[str] = Field(None, pattern=r"^(idle|busy|offline)$")


class AgentRead(BaseModel):
    id: uuid.UUID
    name: str
    display_name: str
    role: str
    status: str
    last_heartbeat: Optional[datetime]
    created_at: datetime
    online: bool = False

    model_config = {"from_attributes": True}
