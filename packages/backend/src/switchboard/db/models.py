"""SQLAlchemy ORM models: single source of truth for the database schema.

Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Each class = one table. Alembic migrations mirror these definitions.

Key concepts:
- UUID primary keys for agents and API keys, integer ids for queue rows
- JSONB on PostgreSQL (plain JSON elsewhere) for free-form payloads
- Timestamps are written by the services from an injectable clock, so
  tests can move time forward without sleeping
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from switchboard.db.types import JSONType, UTCDateTime


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


# ══════════════════════════════════════════════════════════════
# Agent directory
# ══════════════════════════════════════════════════════════════


class Agent(Base):
    """A named agent that dispatches are addressed to.

    Names are unique and matched case-insensitively (name_key holds the
    lowercased form). status: idle, busy, offline.
    """

    __tablename__ = "agents"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=new_uuid
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    name_key: Mapped[str] = mapped_column(
        String(100), unique=True, nullable=False
    )
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[str] = mapped_column(
        String(50), nullable=False, default="engineer"
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="idle"
    )  # idle, busy, offline
    last_heartbeat: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


# ══════════════════════════════════════════════════════════════
# Dispatch queue
# ══════════════════════════════════════════════════════════════


class Dispatch(Base):
    """A unit of work queued for one agent.

    State machine (never backward):
      pending → running → completed | failed

    A failed dispatch may spawn exactly one retry clone, a brand-new
    pending row with retry_count + 1 and original_dispatch_id pointing back.
    The unique constraint on original_dispatch_id makes clone creation
    idempotent per origin even under concurrent deferred actions.
    """

    __tablename__ = "dispatches"
    __table_args__ = (
        Index("idx_dispatches_status_priority", "status", "priority", "created_at"),
        Index("idx_dispatches_agent_status", "agent_id", "status"),
        Index("idx_dispatches_agent_ticket", "agent_id", "ticket_identifier"),
        UniqueConstraint("original_dispatch_id", name="uq_dispatches_retry_origin"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agents.id"), nullable=False
    )
    command: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Parsed once from payload at creation; None when payload has no ticket
    ticket_identifier: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True
    )
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=2
    )  # 0=urgent, 1=high, 2=normal, 3=low
    is_urgent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, running, completed, failed
    result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Retry lineage
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    original_dispatch_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("dispatches.id"), nullable=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )


class ScheduledJob(Base):
    """A deferred action: retry clone creation, escalation.

    The worker polls for due rows (run_at <= now) and executes them:
      queued → running → done | failed (requeued until attempts run out)

    started_at is the lease start: a job left running past the lease by a
    dead worker goes back to queued. Handlers must tolerate running more
    than once.
    """

    __tablename__ = "scheduled_jobs"
    __table_args__ = (
        Index("idx_scheduled_jobs_due", "status", "run_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    run_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="queued"
    )  # queued, running, done, failed
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )


# ══════════════════════════════════════════════════════════════
# Agent events (short-lived notifications)
# ══════════════════════════════════════════════════════════════


class AgentEvent(Base):
    """A best-effort wake-up notification for one agent.

    pending → delivered (acknowledged) | expired (TTL sweep).
    Losing one is fine: dispatches stay durable and can be polled.
    """

    __tablename__ = "agent_events"
    __table_args__ = (
        Index("idx_agent_events_target_status", "target_agent", "status", "created_at"),
        Index("idx_agent_events_status_expires", "status", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    target_agent: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, delivered, expired
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )


# ══════════════════════════════════════════════════════════════
# Loops: inter-agent messages, metrics, alerts
# ══════════════════════════════════════════════════════════════


class AgentMessage(Base):
    """One inter-agent message with accountability stages.

    status_code: SENT(0) < SEEN(1) < REPLIED(2) < ACTED(3) < REPORTED(4).
    Agent references are not foreign keys; a message may name an agent
    the directory no longer knows, and accounting buckets it as "unknown".
    """

    __tablename__ = "agent_messages"
    __table_args__ = (
        Index("idx_agent_messages_sent", "sent_at"),
        Index("idx_agent_messages_to", "to_agent_id", "status_code"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    from_agent_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    to_agent_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(
        String(10), nullable=False, default="normal"
    )  # low, normal, high, urgent
    status_code: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    sent_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    seen_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    replied_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    acted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    reported_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # SLA deadlines
    expected_reply_by: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    expected_action_by: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    expected_report_by: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )

    loop_broken: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    loop_broken_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class LoopMetric(Base):
    """Hourly or daily loop rollup for one agent (or a sentinel bucket).

    One row per (agent_name, period, period_key), recomputed in place.
    """

    __tablename__ = "loop_metrics"
    __table_args__ = (
        UniqueConstraint(
            "agent_name", "period", "period_key", name="uq_loop_metrics_agent_period"
        ),
        Index("idx_loop_metrics_period", "period", "period_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_name: Mapped[str] = mapped_column(String(100), nullable=False)
    period: Mapped[str] = mapped_column(String(10), nullable=False)  # hourly, daily
    period_key: Mapped[str] = mapped_column(String(20), nullable=False)
    total_messages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    loops_closed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    loops_broken: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_seen_time_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    avg_reply_time_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    avg_action_time_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    avg_report_time_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    sla_breaches: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    computed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class LoopAlert(Base):
    """An overdue loop stage flagged by the SLA monitor.

    status: active → resolved (stage reached) | escalated
    """

    __tablename__ = "loop_alerts"
    __table_args__ = (
        UniqueConstraint("message_id", "alert_type", name="uq_loop_alerts_message_type"),
        Index("idx_loop_alerts_status", "status", "created_at"),
        Index("idx_loop_alerts_agent", "agent_name", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("agent_messages.id"), nullable=False
    )
    agent_name: Mapped[str] = mapped_column(String(100), nullable=False)
    alert_type: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # reply_overdue, action_overdue, report_overdue
    severity: Mapped[str] = mapped_column(
        String(10), nullable=False, default="warning"
    )  # warning, critical
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="active"
    )  # active, escalated, resolved
    escalated_to: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )


# ══════════════════════════════════════════════════════════════
# Audit log + API keys
# ══════════════════════════════════════════════════════════════


class AuditEvent(Base):
    """Immutable audit log of every state change.

    Append-only. stream_id examples: "dispatch:42", "agent:sam", "loop:7"
    type examples: "dispatch.claimed", "dispatch.retry_scheduled"
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("idx_audit_events_stream", "stream_id", "id"),
        Index("idx_audit_events_type", "type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream_id: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict] = mapped_column(JSONType, nullable=False)
    meta: Mapped[dict] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    # Python attr is "meta" because "metadata" is reserved by SQLAlchemy.
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class ApiKey(Base):
    """API key identifying a caller (an agent, a webhook bridge, an operator).

    Only the salted hash is stored; the prefix helps humans tell keys apart.
    """

    __tablename__ = "api_keys"
    __table_args__ = (
        Index("idx_api_keys_prefix", "prefix"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    prefix: Mapped[str] = mapped_column(String(12), nullable=False)
    scopes: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    agent_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("agents.id"), nullable=True
    )  # set when the key belongs to an agent
    last_used_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
