"""Pydantic schemas for inter-agent messages and loop dashboards."""

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


# ─── Messages ────────────────────────────────────────────

class MessageCreate(BaseModel):
    from_agent: str = Field(..., min_length=1)
    to_agent: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    priority: str = Field(default="normal", pattern=r"^(low|normal|high|urgent)$")
    expected_reply_by: Optional[datetime] = None
    expected_action_by: Optional[datetime] = None
    expected_report_by: Optional[datetime] = None


class StageReport(BaseModel):
    stage: str = Field(..., pattern=r"^(seen|replied|acted|reported)$")


class LoopBreak(BaseModel):
    reason: str = Field(..., min_length=1)


class MessageRead(BaseModel):
    id: int
    from_agent_id: Optional[uuid.UUID]
    to_agent_id: Optional[uuid.UUID]
    content: str
    priority: str
    status_code: int
    sent_at: datetime
    seen_at: Optional[datetime]
    replied_at: Optional[datetime]
    acted_at: Optional[datetime]
    reported_at: Optional[datetime]
    expected_reply_by: Optional[datetime]
    expected_action_by: Optional[datetime]
    expected_report_by: Optional[datetime]
    loop_broken: bool
    loop_broken_reason: Optional[str]

    model_config = {"from_attributes": True}


# ─── Loop dashboards ─────────────────────────────────────

class LoopMetricRead(BaseModel):
    agent_name: str
    period: str
    period_key: str
    total_messages: int
    loops_closed: int
    loops_broken: int
    avg_seen_time_ms: Optional[float]
    avg_reply_time_ms: Optional[float]
    avg_action_time_ms: Optional[float]
    avg_report_time_ms: Optional[float]
    sla_breaches: int
    completion_rate: float
    computed_at: datetime

    model_config = {"from_attributes": True}


class LoopAlertRead(BaseModel):
    id: int
    message_id: int
    agent_name: str
    alert_type: str
    severity: str
    status: str
    escalated_to: Optional[str]
    created_at: datetime
    resolved_at: Optional[datetime]

    model_config = {"from_attributes": True}


class DailySummary(BaseModel):
    total_active: int
    completed_today: int
    broken_today: int
    avg_completion_time_ms: Optional[int]
    as_of: datetime


class AgentBreakdown(BaseModel):
    agent_name: str
    total: int
    closed: int
    broken: int
    sla_breaches: int
    avg_reply_time_ms: Optional[int]
    avg_action_time_ms: Optional[int]
    completion_pct: int


class UnresolvedAlert(BaseModel):
    alert_id: int
    alert_type: str
    severity: str
    status: str
    escalated_to: Optional[str]
    created_at: datetime
    message_id: int
    from_agent: str
    to_agent: str
    content: str
    message_status: int
    message_status_label: str
    sent_at: datetime
    loop_broken: bool
    loop_broken_reason: Optional[str]


class AggregationResult(BaseModel):
    metrics_written: int
    period_key: str
    summary: Optional[dict[str, Any]] = None
