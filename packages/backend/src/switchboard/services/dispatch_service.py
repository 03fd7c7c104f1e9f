"""Dispatch service: the queue of work addressed to agents.

This is the CORE of switchboard. Every dispatch transition is:
1. Applied with a conditional UPDATE (… WHERE id = ? AND status = ?)
2. Checked by rowcount, so exactly one concurrent caller wins
3. Recorded as an immutable audit event in the same transaction

The state machine only moves forward:
  pending → running → completed | failed

A failed dispatch is never revived. The retry scheduler runs inside the
Fail transaction and either queues a retry clone (a new pending row in the
same lineage) or an escalation to the coordinator.

Maintenance operations (stuck cleanup, agent reset) force dispatches to
failed WITHOUT going through the retry scheduler; an operator re-triggers
them with retry_now if needed.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.config import settings
from switchboard.db.models import Dispatch, utcnow
from switchboard.events.store import AuditStore
from switchboard.events.types import (
    AGENT_DISPATCHES_RESET,
    DISPATCH_CLAIMED,
    DISPATCH_COMPLETED,
    DISPATCH_CREATED,
    DISPATCH_DEDUPLICATED,
    DISPATCH_DUPLICATE_REMOVED,
    DISPATCH_FAILED,
    DISPATCH_FORCE_FAILED,
)
from switchboard.services.blockers import BlockerDetector
from switchboard.services.directory import AgentDirectory
from switchboard.services.errors import DispatchNotFoundError, InvalidTransitionError
from switchboard.services.event_publisher import PRIORITY_LABELS, EventPublisher
from switchboard.services.payload import ticket_identifier, ticket_payload
from switchboard.services.retry_scheduler import RetryPolicy, RetryScheduler

logger = structlog.get_logger()

DISPATCH_STATUSES = ("pending", "running", "completed", "failed")

OPEN_STATUSES = ("pending", "running")

STUCK_ERROR = "Stuck dispatch: no result after {minutes} minutes"
RESET_ERROR = "Dispatch reset by operator"


class DispatchService:
    """Business logic for the dispatch queue and its state machine."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utcnow,
        policy: Optional[RetryPolicy] = None,
        blockers: Optional[BlockerDetector] = None,
    ):
        self.db = db
        self.clock = clock
        self.audit = AuditStore(db)
        self.directory = AgentDirectory(db, clock=clock)
        self.publisher = EventPublisher(db, clock=clock)
        self.retries = RetryScheduler(db, clock=clock, policy=policy)
        self.blockers = blockers or BlockerDetector(db, clock=clock)

    # ─── Create ──────────────────────────────────────────

    async def create(
        self,
        agent_id: uuid.UUID,
        command: str,
        payload: Optional[str] = None,
        priority: Optional[int] = None,
        is_urgent: Optional[bool] = None,
        max_retries: Optional[int] = None,
    ) -> Dispatch:
        """Queue a pending dispatch and wake the target agent.

        Raises AgentNotFoundError if agent_id does not exist.
        """
        agent = await self.directory.require(agent_id)

        if priority is None:
            priority = 2
        if priority not in PRIORITY_LABELS:
            raise ValueError(f"Priority must be 0-3, got {priority}")

        dispatch = Dispatch(
            agent_id=agent.id,
            command=command,
            payload=payload,
            ticket_identifier=ticket_identifier(payload),
            priority=priority,
            is_urgent=is_urgent if is_urgent is not None else priority == 0,
            status="pending",
            retry_count=0,
            max_retries=max_retries if max_retries is not None else settings.max_retries,
            created_at=self.clock(),
        )
        self.db.add(dispatch)
        await self.db.flush()  # get auto-generated ID

        await self.audit.append(
            stream_id=f"dispatch:{dispatch.id}",
            event_type=DISPATCH_CREATED,
            data={
                "agent": agent.name,
                "command": command,
                "priority": priority,
                "ticket": dispatch.ticket_identifier,
            },
            at=dispatch.created_at,
        )
        await self.db.commit()
        logger.info(
            "dispatch.created",
            dispatch_id=dispatch.id,
            agent=agent.name,
            command=command,
            priority=priority,
        )

        await self.publisher.notify(
            "dispatch",
            agent.name,
            {
                "dispatch_id": str(dispatch.id),
                "message": f"New dispatch: {command}",
                "priority": PRIORITY_LABELS[priority],
            },
            refresh=(dispatch,),
        )
        return dispatch

    async def create_from_ticket(
        self,
        agent_name: str,
        ticket_id: str,
        title: str,
        description: str = "",
    ) -> Optional[int]:
        """Queue an execute_ticket dispatch, unless one is already open.

        Returns the new (or existing) dispatch id, or None when the agent
        name does not resolve. Webhooks call this and cannot fix a bad
        name synchronously, so that case is logged rather than raised.
        """
        agent = await self.directory.resolve_by_name(agent_name)
        if not agent:
            logger.warning("dispatch.ticket_agent_missing", agent=agent_name, ticket=ticket_id)
            return None

        existing = await self._open_dispatch_for_ticket(agent.id, ticket_id)
        if existing is not None:
            await self.audit.append(
                stream_id=f"dispatch:{existing.id}",
                event_type=DISPATCH_DEDUPLICATED,
                data={"ticket": ticket_id, "status": existing.status},
                at=self.clock(),
            )
            await self.db.commit()
            logger.info("dispatch.deduplicated", dispatch_id=existing.id, ticket=ticket_id)
            return existing.id

        dispatch = await self.create(
            agent.id,
            "execute_ticket",
            payload=ticket_payload(ticket_id, title, description),
        )
        return dispatch.id

    async def _open_dispatch_for_ticket(
        self, agent_id: uuid.UUID, identifier: str
    ) -> Optional[Dispatch]:
        result = await self.db.execute(
            select(Dispatch)
            .where(
                Dispatch.agent_id == agent_id,
                Dispatch.ticket_identifier == identifier.strip(),
                Dispatch.status.in_(OPEN_STATUSES),
            )
            .order_by(Dispatch.created_at, Dispatch.id)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    # ─── Read ────────────────────────────────────────────

    async def get(self, dispatch_id: int) -> Dispatch:
        dispatch = await self.db.get(Dispatch, dispatch_id, populate_existing=True)
        if not dispatch:
            raise DispatchNotFoundError(dispatch_id)
        return dispatch

    async def get_lineage(self, dispatch_id: int) -> list[Dispatch]:
        """Every dispatch in the retry chain of dispatch_id, first attempt first."""
        dispatch = await self.get(dispatch_id)

        root = dispatch
        while root.original_dispatch_id is not None:
            parent = await self.db.get(
                Dispatch, root.original_dispatch_id, populate_existing=True
            )
            if parent is None:
                break
            root = parent

        lineage = [root]
        while True:
            result = await self.db.execute(
                select(Dispatch)
                .where(Dispatch.original_dispatch_id == lineage[-1].id)
                .execution_options(populate_existing=True)
            )
            clone = result.scalars().first()
            if clone is None:
                return lineage
            lineage.append(clone)

    async def list_pending(self, limit: Optional[int] = None) -> list[Dispatch]:
        """Pending dispatches, most urgent first, then oldest first."""
        result = await self.db.execute(
            select(Dispatch)
            .where(Dispatch.status == "pending")
            .order_by(Dispatch.priority, Dispatch.created_at, Dispatch.id)
            .limit(limit or settings.pending_page_size)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_active(self) -> list[Dispatch]:
        """What's in flight: running dispatches first, then pending, each oldest first."""
        running = await self.db.execute(
            select(Dispatch)
            .where(Dispatch.status == "running")
            .order_by(Dispatch.created_at, Dispatch.id)
            .limit(settings.active_running_limit)
            .execution_options(populate_existing=True)
        )
        pending = await self.db.execute(
            select(Dispatch)
            .where(Dispatch.status == "pending")
            .order_by(Dispatch.created_at, Dispatch.id)
            .limit(settings.active_pending_limit)
            .execution_options(populate_existing=True)
        )
        return list(running.scalars().all()) + list(pending.scalars().all())

    async def list_by_agent(
        self,
        agent_id: uuid.UUID,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[Dispatch]:
        """All dispatches for one agent, newest first."""
        query = (
            select(Dispatch)
            .where(Dispatch.agent_id == agent_id)
            .order_by(Dispatch.created_at.desc(), Dispatch.id.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        if status:
            if status not in DISPATCH_STATUSES:
                raise ValueError(f"Unknown dispatch status: {status}")
            query = query.where(Dispatch.status == status)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_queue_for_agent(self, agent_name: str) -> dict[str, Any]:
        """Pending/running counts and pending ticket ids for one agent.

        Raises AgentNotFoundError when the name does not resolve.
        """
        agent = await self.directory.require_by_name(agent_name)
        result = await self.db.execute(
            select(Dispatch.status, Dispatch.ticket_identifier)
            .where(
                Dispatch.agent_id == agent.id,
                Dispatch.status.in_(OPEN_STATUSES),
            )
            .order_by(Dispatch.priority, Dispatch.created_at)
        )
        rows = result.all()
        return {
            "agent_id": agent.id,
            "agent_name": agent.name,
            "pending": sum(1 for row in rows if row.status == "pending"),
            "running": sum(1 for row in rows if row.status == "running"),
            "pending_tickets": [
                row.ticket_identifier
                for row in rows
                if row.status == "pending" and row.ticket_identifier
            ],
        }

    # ─── Status changes (state machine) ──────────────────

    async def claim(self, dispatch_id: int) -> Dispatch:
        """pending → running. Exactly one concurrent caller succeeds."""
        now = self.clock()
        dispatch = await self._transition(
            dispatch_id, "pending", {"status": "running", "started_at": now}, verb="claim"
        )

        agent = await self.directory.get(dispatch.agent_id)
        if agent:
            await self.directory.set_status(agent, "busy", reason=f"dispatch:{dispatch.id}")

        await self.audit.append(
            stream_id=f"dispatch:{dispatch.id}",
            event_type=DISPATCH_CLAIMED,
            data={"agent_id": str(dispatch.agent_id)},
            at=now,
        )
        await self.db.commit()
        logger.info("dispatch.claimed", dispatch_id=dispatch.id)
        return dispatch

    async def complete(self, dispatch_id: int, result: Optional[str] = None) -> Dispatch:
        """running → completed."""
        now = self.clock()
        dispatch = await self._transition(
            dispatch_id,
            "running",
            {"status": "completed", "completed_at": now, "result": result},
            verb="complete",
        )
        await self._release_agent(dispatch)

        await self.audit.append(
            stream_id=f"dispatch:{dispatch.id}",
            event_type=DISPATCH_COMPLETED,
            data={"has_result": result is not None},
            at=now,
        )
        await self.db.commit()
        logger.info("dispatch.completed", dispatch_id=dispatch.id)
        return dispatch

    async def fail(self, dispatch_id: int, error: str) -> Dispatch:
        """running → failed, then retry or escalate.

        The failed status and the retry/escalation job commit together,
        so each failure is handled exactly once.
        """
        now = self.clock()
        dispatch = await self._transition(
            dispatch_id,
            "running",
            {"status": "failed", "completed_at": now, "error": error},
            verb="fail",
        )
        await self._release_agent(dispatch)

        await self.audit.append(
            stream_id=f"dispatch:{dispatch.id}",
            event_type=DISPATCH_FAILED,
            data={"error": error, "retry_count": dispatch.retry_count},
            at=now,
        )
        decision = await self.retries.on_failure(dispatch)
        await self.db.commit()
        logger.warning(
            "dispatch.failed",
            dispatch_id=dispatch.id,
            error=error,
            next_action=decision.action,
        )

        if dispatch.ticket_identifier:
            await self._notify_blockers(dispatch)
        return dispatch

    async def retry_now(self, dispatch_id: int) -> Dispatch:
        """Create the retry clone for a failed dispatch immediately.

        Returns the existing clone if the lineage was already retried.
        """
        dispatch = await self.get(dispatch_id)
        if dispatch.status != "failed":
            raise InvalidTransitionError(
                f"Cannot retry dispatch with status: {dispatch.status}",
                current_status=dispatch.status,
            )

        clone = await self.retries.create_retry_clone(dispatch_id)
        if clone is None:
            # Lost a race with a status change; report what we see now
            await self.db.refresh(dispatch)
            raise InvalidTransitionError(
                f"Cannot retry dispatch with status: {dispatch.status}",
                current_status=dispatch.status,
            )
        return clone

    async def _transition(
        self,
        dispatch_id: int,
        expected: str,
        values: dict[str, Any],
        verb: str,
    ) -> Dispatch:
        result = await self.db.execute(
            update(Dispatch)
            .where(Dispatch.id == dispatch_id, Dispatch.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            dispatch = await self.db.get(Dispatch, dispatch_id, populate_existing=True)
            if dispatch is None:
                raise DispatchNotFoundError(dispatch_id)
            raise InvalidTransitionError(
                f"Cannot {verb} dispatch with status: {dispatch.status}",
                current_status=dispatch.status,
            )

        return await self.db.get(Dispatch, dispatch_id, populate_existing=True)

    async def _release_agent(self, dispatch: Dispatch) -> None:
        """Put the agent back to idle once it has nothing else running."""
        still_running = await self.db.scalar(
            select(func.count())
            .select_from(Dispatch)
            .where(
                Dispatch.agent_id == dispatch.agent_id,
                Dispatch.status == "running",
                Dispatch.id != dispatch.id,
            )
        )
        if still_running:
            return
        agent = await self.directory.get(dispatch.agent_id)
        if agent and agent.status == "busy":
            await self.directory.set_status(agent, "idle", reason=f"dispatch:{dispatch.id}")

    async def _notify_blockers(self, dispatch: Dispatch) -> None:
        try:
            await self.blockers.check_dependents_of_failed_task(dispatch.ticket_identifier)
        except Exception:
            logger.exception(
                "dispatch.blocker_check_failed",
                dispatch_id=dispatch.id,
                ticket=dispatch.ticket_identifier,
            )
            await self.db.rollback()
            await self.db.refresh(dispatch)

    # ─── Maintenance ─────────────────────────────────────

    async def cleanup_duplicates(self) -> int:
        """Delete all but the oldest pending dispatch per (agent, ticket).

        Returns the number of dispatches removed.
        """
        result = await self.db.execute(
            select(Dispatch)
            .where(
                Dispatch.status == "pending",
                Dispatch.ticket_identifier.is_not(None),
            )
            .order_by(Dispatch.created_at, Dispatch.id)
        )
        seen: set[tuple[uuid.UUID, str]] = set()
        duplicates: list[Dispatch] = []
        for dispatch in result.scalars().all():
            key = (dispatch.agent_id, dispatch.ticket_identifier)
            if key in seen:
                duplicates.append(dispatch)
            else:
                seen.add(key)

        if not duplicates:
            return 0

        now = self.clock()
        for dispatch in duplicates:
            await self.audit.append(
                stream_id=f"dispatch:{dispatch.id}",
                event_type=DISPATCH_DUPLICATE_REMOVED,
                data={"ticket": dispatch.ticket_identifier},
                at=now,
            )
        await self.db.execute(
            delete(Dispatch)
            .where(
                Dispatch.id.in_([d.id for d in duplicates]),
                Dispatch.status == "pending",
            )
            .execution_options(synchronize_session=False)
        )
        for dispatch in duplicates:
            self.db.expunge(dispatch)
        await self.db.commit()

        logger.info("dispatch.duplicates_removed", removed=len(duplicates))
        return len(duplicates)

    async def cleanup_stuck_dispatches(self, max_age_minutes: Optional[int] = None) -> int:
        """Force-fail running dispatches older than the threshold.

        Age is measured from started_at, or created_at if never started.
        These dispatches are NOT retried. Returns the number failed.
        """
        minutes = max_age_minutes if max_age_minutes is not None else settings.stale_dispatch_minutes
        cutoff = self.clock() - timedelta(minutes=minutes)

        result = await self.db.execute(
            select(Dispatch.id).where(
                Dispatch.status == "running",
                or_(
                    Dispatch.started_at < cutoff,
                    and_(Dispatch.started_at.is_(None), Dispatch.created_at < cutoff),
                ),
            )
        )
        stuck_ids = [row.id for row in result]

        error = STUCK_ERROR.format(minutes=minutes)
        failed = 0
        for dispatch_id in stuck_ids:
            if await self._force_fail(dispatch_id, error, reason="stuck"):
                failed += 1
        await self.db.commit()

        if failed:
            logger.warning("dispatch.stuck_cleaned", failed=failed, max_age_minutes=minutes)
        return failed

    async def reset_agent_dispatches(self, agent_name: str) -> int:
        """Force-fail an agent's running dispatches and set it idle.

        Raises AgentNotFoundError when the name does not resolve.
        """
        agent = await self.directory.require_by_name(agent_name)
        result = await self.db.execute(
            select(Dispatch.id).where(
                Dispatch.agent_id == agent.id,
                Dispatch.status == "running",
            )
        )
        running_ids = [row.id for row in result]

        failed = 0
        for dispatch_id in running_ids:
            if await self._force_fail(dispatch_id, RESET_ERROR, reason="reset"):
                failed += 1

        await self.directory.set_status(agent, "idle", reason="reset")
        await self.audit.append(
            stream_id=f"agent:{agent.name_key}",
            event_type=AGENT_DISPATCHES_RESET,
            data={"failed": failed},
            at=self.clock(),
        )
        await self.db.commit()

        logger.warning("agent.dispatches_reset", agent=agent.name, failed=failed)
        return failed

    async def _force_fail(self, dispatch_id: int, error: str, reason: str) -> bool:
        """running → failed outside the retry path (no commit)."""
        now = self.clock()
        result = await self.db.execute(
            update(Dispatch)
            .where(Dispatch.id == dispatch_id, Dispatch.status == "running")
            .values(status="failed", completed_at=now, error=error)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        await self.audit.append(
            stream_id=f"dispatch:{dispatch_id}",
            event_type=DISPATCH_FORCE_FAILED,
            data={"error": error, "reason": reason},
            at=now,
        )
        return True
