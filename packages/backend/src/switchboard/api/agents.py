"""Agent directory API routes, plus the per-agent dispatch views."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.api.dispatches import _read
from switchboard.api.errors import not_found
from switchboard.auth.dependencies import require_scope
from switchboard.db.engine import get_db
from switchboard.schemas.agent import AgentCreate, AgentRead, Heartbeat
from switchboard.schemas.dispatch import AgentQueueRead, DispatchRead, MaintenanceResult
from switchboard.services.directory import AgentDirectory
from switchboard.services.dispatch_service import DispatchService
from switchboard.services.errors import NotFoundError

router = APIRouter()


def _directory(db: AsyncSession = Depends(get_db)) -> AgentDirectory:
    return AgentDirectory(db)


def _dispatch_svc(db: AsyncSession = Depends(get_db)) -> DispatchService:
    return DispatchService(db)


def _agent_read(directory: AgentDirectory, agent) -> AgentRead:
    return AgentRead.model_validate(agent).model_copy(
        update={"online": directory.is_online(agent)}
    )


@router.post("/agents", response_model=AgentRead, status_code=201)
async def register_agent(
    body: AgentCreate,
    directory: AgentDirectory = Depends(_directory),
):
    try:
        agent = await directory.register(
            name=body.name, display_name=body.display_name, role=body.role
        )
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _agent_read(directory, agent)


@router.get("/agents", response_model=list[AgentRead])
async def list_agents(
    status: Optional[str] = Query(None, pattern=r"^(idle|busy|offline)$"),
    directory: AgentDirectory = Depends(_directory),
):
    return [_agent_read(directory, a) for a in await directory.list_agents(status=status)]


# ─── By name ─────────────────────────────────────────────


@router.get("/agents/by-name/{name}/queue", response_model=AgentQueueRead)
async def get_agent_queue(name: str, svc: DispatchService = Depends(_dispatch_svc)):
    """Pending/running counts and pending tickets for one agent."""
    try:
        return await svc.get_queue_for_agent(name)
    except NotFoundError as e:
        raise not_found(e)


@router.post("/agents/by-name/{name}/heartbeat", response_model=AgentRead)
async def agent_heartbeat(
    name: str,
    body: Heartbeat,
    directory: AgentDirectory = Depends(_directory),
):
    try:
        agent = await directory.heartbeat(name, status=body.status)
    except NotFoundError as e:
        raise not_found(e)
    return _agent_read(directory, agent)


@router.post(
    "/agents/by-name/{name}/reset-dispatches",
    response_model=MaintenanceResult,
    dependencies=[Depends(require_scope("admin"))],
)
async def reset_agent_dispatches(name: str, svc: DispatchService = Depends(_dispatch_svc)):
    """Fail every running dispatch of a wedged agent and set it idle."""
    try:
        return MaintenanceResult(affected=await svc.reset_agent_dispatches(name))
    except NotFoundError as e:
        raise not_found(e)


# ─── By id ───────────────────────────────────────────────


@router.get("/agents/{agent_id}", response_model=AgentRead)
async def get_agent(agent_id: uuid.UUID, directory: AgentDirectory = Depends(_directory)):
    try:
        agent = await directory.require(agent_id)
    except NotFoundError as e:
        raise not_found(e)
    return _agent_read(directory, agent)


@router.get("/agents/{agent_id}/dispatches", response_model=list[DispatchRead])
async def list_agent_dispatches(
    agent_id: uuid.UUID,
    status: Optional[str] = Query(None, pattern=r"^(pending|running|completed|failed)$"),
    limit: int = Query(100, ge=1, le=500),
    svc: DispatchService = Depends(_dispatch_svc),
):
    """All dispatches for one agent, newest first."""
    return await _read(svc, await svc.list_by_agent(agent_id, status=status, limit=limit))
