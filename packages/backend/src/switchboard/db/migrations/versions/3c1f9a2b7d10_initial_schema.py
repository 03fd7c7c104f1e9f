"""Initial schema: agents, dispatch queue, scheduled jobs, events, loops, audit, API keys

Revision ID: 3c1f9a2b7d10
Revises:
Create Date: 2026-10-18 09:12:40.118204
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3c1f9a2b7d10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
TS = sa.DateTime(timezone=True)


def upgrade() -> None:
    # ─── Agent directory ─────────────────────────────────
    op.create_table(
        'agents',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('name_key', sa.String(length=100), nullable=False),
        sa.Column('display_name', sa.String(length=100), nullable=False),
        sa.Column('role', sa.String(length=50), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('last_heartbeat', TS, nullable=True),
        sa.Column('created_at', TS, nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name_key'),
    )

    # ─── Dispatch queue ──────────────────────────────────
    op.create_table(
        'dispatches',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('agent_id', sa.Uuid(), nullable=False),
        sa.Column('command', sa.String(length=100), nullable=False),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.Column('ticket_identifier', sa.String(length=100), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('is_urgent', sa.Boolean(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('result', sa.Text(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('max_retries', sa.Integer(), nullable=False),
        sa.Column('next_retry_at', TS, nullable=True),
        sa.Column('original_dispatch_id', sa.Integer(), nullable=True),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('started_at', TS, nullable=True),
        sa.Column('completed_at', TS, nullable=True),
        sa.ForeignKeyConstraint(['agent_id'], ['agents.id']),
        sa.ForeignKeyConstraint(['original_dispatch_id'], ['dispatches.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('original_dispatch_id', name='uq_dispatches_retry_origin'),
    )
    op.create_index('idx_dispatches_status_priority', 'dispatches', ['status', 'priority', 'created_at'])
    op.create_index('idx_dispatches_agent_status', 'dispatches', ['agent_id', 'status'])
    op.create_index('idx_dispatches_agent_ticket', 'dispatches', ['agent_id', 'ticket_identifier'])

    op.create_table(
        'scheduled_jobs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('kind', sa.String(length=50), nullable=False),
        sa.Column('payload', JSON, nullable=False),
        sa.Column('run_at', TS, nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('completed_at', TS, nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_scheduled_jobs_due', 'scheduled_jobs', ['status', 'run_at'])

    # ─── Agent events ────────────────────────────────────
    op.create_table(
        'agent_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('type', sa.String(length=30), nullable=False),
        sa.Column('target_agent', sa.String(length=100), nullable=False),
        sa.Column('payload', JSON, nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('expires_at', TS, nullable=False),
        sa.Column('delivered_at', TS, nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_agent_events_target_status', 'agent_events', ['target_agent', 'status', 'created_at'])
    op.create_index('idx_agent_events_status_expires', 'agent_events', ['status', 'expires_at'])

    # ─── Loops ───────────────────────────────────────────
    op.create_table(
        'agent_messages',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('from_agent_id', sa.Uuid(), nullable=True),
        sa.Column('to_agent_id', sa.Uuid(), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('priority', sa.String(length=10), nullable=False),
        sa.Column('status_code', sa.Integer(), nullable=False),
        sa.Column('sent_at', TS, nullable=False),
        sa.Column('seen_at', TS, nullable=True),
        sa.Column('replied_at', TS, nullable=True),
        sa.Column('acted_at', TS, nullable=True),
        sa.Column('reported_at', TS, nullable=True),
        sa.Column('expected_reply_by', TS, nullable=True),
        sa.Column('expected_action_by', TS, nullable=True),
        sa.Column('expected_report_by', TS, nullable=True),
        sa.Column('loop_broken', sa.Boolean(), nullable=False),
        sa.Column('loop_broken_reason', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_agent_messages_sent', 'agent_messages', ['sent_at'])
    op.create_index('idx_agent_messages_to', 'agent_messages', ['to_agent_id', 'status_code'])

    op.create_table(
        'loop_metrics',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('agent_name', sa.String(length=100), nullable=False),
        sa.Column('period', sa.String(length=10), nullable=False),
        sa.Column('period_key', sa.String(length=20), nullable=False),
        sa.Column('total_messages', sa.Integer(), nullable=False),
        sa.Column('loops_closed', sa.Integer(), nullable=False),
        sa.Column('loops_broken', sa.Integer(), nullable=False),
        sa.Column('avg_seen_time_ms', sa.Float(), nullable=True),
        sa.Column('avg_reply_time_ms', sa.Float(), nullable=True),
        sa.Column('avg_action_time_ms', sa.Float(), nullable=True),
        sa.Column('avg_report_time_ms', sa.Float(), nullable=True),
        sa.Column('sla_breaches', sa.Integer(), nullable=False),
        sa.Column('completion_rate', sa.Float(), nullable=False),
        sa.Column('computed_at', TS, nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('agent_name', 'period', 'period_key', name='uq_loop_metrics_agent_period'),
    )
    op.create_index('idx_loop_metrics_period', 'loop_metrics', ['period', 'period_key'])

    op.create_table(
        'loop_alerts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('message_id', sa.Integer(), nullable=False),
        sa.Column('agent_name', sa.String(length=100), nullable=False),
        sa.Column('alert_type', sa.String(length=30), nullable=False),
        sa.Column('severity', sa.String(length=10), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('escalated_to', sa.String(length=100), nullable=True),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('resolved_at', TS, nullable=True),
        sa.ForeignKeyConstraint(['message_id'], ['agent_messages.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('message_id', 'alert_type', name='uq_loop_alerts_message_type'),
    )
    op.create_index('idx_loop_alerts_status', 'loop_alerts', ['status', 'created_at'])
    op.create_index('idx_loop_alerts_agent', 'loop_alerts', ['agent_name', 'status'])

    # ─── Audit log + API keys ────────────────────────────
    op.create_table(
        'audit_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('stream_id', sa.String(length=200), nullable=False),
        sa.Column('type', sa.String(length=100), nullable=False),
        sa.Column('data', JSON, nullable=False),
        sa.Column('metadata', JSON, nullable=False),
        sa.Column('created_at', TS, nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_audit_events_stream', 'audit_events', ['stream_id', 'id'])
    op.create_index('idx_audit_events_type', 'audit_events', ['type'])

    op.create_table(
        'api_keys',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('key_hash', sa.String(length=255), nullable=False),
        sa.Column('prefix', sa.String(length=12), nullable=False),
        sa.Column('scopes', JSON, nullable=False),
        sa.Column('agent_id', sa.Uuid(), nullable=True),
        sa.Column('last_used_at', TS, nullable=True),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('expires_at', TS, nullable=True),
        sa.ForeignKeyConstraint(['agent_id'], ['agents.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('key_hash'),
    )
    op.create_index('idx_api_keys_prefix', 'api_keys', ['prefix'])


def downgrade() -> None:
    op.drop_table('api_keys')
    op.drop_table('audit_events')
    op.drop_table('loop_alerts')
    op.drop_table('loop_metrics')
    op.drop_table('agent_messages')
    op.drop_table('agent_events')
    op.drop_table('scheduled_jobs')
    op.drop_table('dispatches')
    op.drop_table('agents')
