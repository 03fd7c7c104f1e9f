"""Audit event type constants.

Centralizing event types as constants prevents typos and makes it easy
to discover every state change the system records.
"""

# ─── Agent directory ─────────────────────────────────────

AGENT_REGISTERED = "agent.registered"
AGENT_STATUS_CHANGED = "agent.status_changed"
AGENT_DISPATCHES_RESET = "agent.dispatches_reset"

# ─── Dispatch lifecycle ──────────────────────────────────

DISPATCH_CREATED = "dispatch.created"
DISPATCH_DEDUPLICATED = "dispatch.deduplicated"
DISPATCH_CLAIMED = "dispatch.claimed"
DISPATCH_COMPLETED = "dispatch.completed"
DISPATCH_FAILED = "dispatch.failed"
DISPATCH_FORCE_FAILED = "dispatch.force_failed"
DISPATCH_DUPLICATE_REMOVED = "dispatch.duplicate_removed"

# ─── Retry + escalation ──────────────────────────────────

DISPATCH_RETRY_SCHEDULED = "dispatch.retry_scheduled"
DISPATCH_RETRY_CREATED = "dispatch.retry_created"
DISPATCH_ESCALATION_QUEUED = "dispatch.escalation_queued"
DISPATCH_ESCALATED = "dispatch.escalated"
DISPATCH_ESCALATION_FAILED = "dispatch.escalation_failed"

# ─── Loops ───────────────────────────────────────────────

LOOP_MESSAGE_SENT = "loop.message_sent"
LOOP_STAGE_REACHED = "loop.stage_reached"
LOOP_BROKEN = "loop.broken"
LOOP_ALERT_OPENED = "loop.alert_opened"
LOOP_METRICS_AGGREGATED = "loop.metrics_aggregated"
