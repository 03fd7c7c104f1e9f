"""Dispatch API routes.

These routes are the HTTP interface to the dispatch state machine. The
service does all the validation; routes translate HTTP to service calls
and service errors to status codes:
- 404 for unknown dispatches or agents
- 409 when a transition's precondition on status isn't met (the request
  is well-formed but conflicts with the current state)

/dispatches/pending and /dispatches/active are declared before
/dispatches/{dispatch_id} so they aren't parsed as ids.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.api.errors import conflict, not_found
from switchboard.auth.dependencies import require_scope
from switchboard.db.engine import get_db
from switchboard.db.models import Dispatch
from switchboard.schemas.dispatch import (
    DispatchCreate,
    DispatchFailure,
    DispatchRead,
    DispatchResult,
    MaintenanceResult,
    TicketDispatchCreate,
    TicketDispatchResult,
)
from switchboard.services.directory import UNKNOWN_AGENT
from switchboard.services.dispatch_service import DispatchService
from switchboard.services.errors import InvalidTransitionError, NotFoundError

router = APIRouter()


def _svc(db: AsyncSession = Depends(get_db)) -> DispatchService:
    return DispatchService(db)


async def _read(svc: DispatchService, dispatches: list[Dispatch]) -> list[DispatchRead]:
    """Serialize dispatches with their agent names joined in."""
    names = await svc.directory.names_for(d.agent_id for d in dispatches)
    return [
        DispatchRead.model_validate(d).model_copy(
            update={"agent_name": names.get(d.agent_id, UNKNOWN_AGENT)}
        )
        for d in dispatches
    ]


# ─── Create ──────────────────────────────────────────────


@router.post("/dispatches", response_model=DispatchRead, status_code=201)
async def create_dispatch(
    body: DispatchCreate,
    svc: DispatchService = Depends(_svc),
):
    """Queue a dispatch for an agent and wake it with a dispatch event."""
    try:
        dispatch = await svc.create(
            agent_id=body.agent_id,
            command=body.command,
            payload=body.payload,
            priority=body.priority,
            is_urgent=body.is_urgent,
            max_retries=body.max_retries,
        )
    except NotFoundError as e:
        raise not_found(e)
    return (await _read(svc, [dispatch]))[0]


@router.post("/dispatches/from-ticket", response_model=TicketDispatchResult)
async def create_dispatch_from_ticket(
    body: TicketDispatchCreate,
    svc: DispatchService = Depends(_svc),
):
    """Queue an execute_ticket dispatch, reusing an open one for the same ticket.

    Returns dispatch_id=null when the agent name does not resolve.
    """
    dispatch_id = await svc.create_from_ticket(
        agent_name=body.agent_name,
        ticket_id=body.ticket_id,
        title=body.title,
        description=body.description,
    )
    return TicketDispatchResult(dispatch_id=dispatch_id)


# ─── Queue views ─────────────────────────────────────────


@router.get("/dispatches/pending", response_model=list[DispatchRead])
async def list_pending_dispatches(
    limit: Optional[int] = Query(None, ge=1, le=200),
    svc: DispatchService = Depends(_svc),
):
    """Pending dispatches, most urgent first, oldest first within a priority."""
    return await _read(svc, await svc.list_pending(limit=limit))


@router.get("/dispatches/active", response_model=list[DispatchRead])
async def list_active_dispatches(svc: DispatchService = Depends(_svc)):
    """Running dispatches, then pending ones."""
    return await _read(svc, await svc.list_active())


# ─── Maintenance ─────────────────────────────────────────


@router.post(
    "/dispatches/maintenance/cleanup-duplicates",
    response_model=MaintenanceResult,
    dependencies=[Depends(require_scope("admin"))],
)
async def cleanup_duplicates(svc: DispatchService = Depends(_svc)):
    """Delete all but the oldest pending dispatch per (agent, ticket)."""
    return MaintenanceResult(affected=await svc.cleanup_duplicates())


@router.post(
    "/dispatches/maintenance/cleanup-stuck",
    response_model=MaintenanceResult,
    dependencies=[Depends(require_scope("admin"))],
)
async def cleanup_stuck(
    max_age_minutes: Optional[int] = Query(None, ge=1),
    svc: DispatchService = Depends(_svc),
):
    """Fail running dispatches older than max_age_minutes (no retries)."""
    return MaintenanceResult(
        affected=await svc.cleanup_stuck_dispatches(max_age_minutes=max_age_minutes)
    )


# ─── Single dispatch ─────────────────────────────────────


@router.get("/dispatches/{dispatch_id}", response_model=DispatchRead)
async def get_dispatch(dispatch_id: int, svc: DispatchService = Depends(_svc)):
    try:
        dispatch = await svc.get(dispatch_id)
    except NotFoundError as e:
        raise not_found(e)
    return (await _read(svc, [dispatch]))[0]


@router.get("/dispatches/{dispatch_id}/lineage", response_model=list[DispatchRead])
async def get_dispatch_lineage(dispatch_id: int, svc: DispatchService = Depends(_svc)):
    """The whole retry chain, first attempt first."""
    try:
        lineage = await svc.get_lineage(dispatch_id)
    except NotFoundError as e:
        raise not_found(e)
    return await _read(svc, lineage)


@router.post("/dispatches/{dispatch_id}/claim", response_model=DispatchRead)
async def claim_dispatch(dispatch_id: int, svc: DispatchService = Depends(_svc)):
    """pending → running. Concurrent claims: one 200, the rest 409."""
    try:
        dispatch = await svc.claim(dispatch_id)
    except NotFoundError as e:
        raise not_found(e)
    except InvalidTransitionError as e:
        raise conflict(e)
    return (await _read(svc, [dispatch]))[0]


@router.post("/dispatches/{dispatch_id}/complete", response_model=DispatchRead)
async def complete_dispatch(
    dispatch_id: int,
    body: DispatchResult,
    svc: DispatchService = Depends(_svc),
):
    try:
        dispatch = await svc.complete(dispatch_id, result=body.result)
    except NotFoundError as e:
        raise not_found(e)
    except InvalidTransitionError as e:
        raise conflict(e)
    return (await _read(svc, [dispatch]))[0]


@router.post("/dispatches/{dispatch_id}/fail", response_model=DispatchRead)
async def fail_dispatch(
    dispatch_id: int,
    body: DispatchFailure,
    svc: DispatchService = Depends(_svc),
):
    """running → failed. Schedules a retry, or an escalation once retries run out."""
    try:
        dispatch = await svc.fail(dispatch_id, error=body.error)
    except NotFoundError as e:
        raise not_found(e)
    except InvalidTransitionError as e:
        raise conflict(e)
    return (await _read(svc, [dispatch]))[0]


@router.post("/dispatches/{dispatch_id}/retry", response_model=DispatchRead, status_code=201)
async def retry_dispatch(dispatch_id: int, svc: DispatchService = Depends(_svc)):
    """Create the retry clone of a failed dispatch now, skipping the backoff."""
    try:
        clone = await svc.retry_now(dispatch_id)
    except NotFoundError as e:
        raise not_found(e)
    except InvalidTransitionError as e:
        raise conflict(e)
    return (await _read(svc, [clone]))[0]