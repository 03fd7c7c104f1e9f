"""Agent directory: named agents with identity and online state.

The dispatch core only reads from the directory (resolve by name, get by
id). Registration and heartbeats are here so the service can run on its own.
"""

import uuid
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.config import settings
from switchboard.db.models import Agent, utcnow
from switchboard.events.store import AuditStore
from switchboard.events.types import AGENT_REGISTERED, AGENT_STATUS_CHANGED
from switchboard.services.errors import AgentNotFoundError

logger = structlog.get_logger()

UNKNOWN_AGENT = "unknown"

AGENT_STATUSES = ("idle", "busy", "offline")


class AgentDirectory:
    """Lookup of agents by id or case-insensitive name."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utcnow,
        online_ttl_seconds: Optional[int] = None,
    ):
        self.db = db
        self.clock = clock
        self.audit = AuditStore(db)
        self.online_ttl = timedelta(
            seconds=online_ttl_seconds
            if online_ttl_seconds is not None
            else settings.agent_online_ttl_seconds
        )

    # ─── Read ────────────────────────────────────────────

    async def get(self, agent_id: uuid.UUID) -> Optional[Agent]:
        return await self.db.get(Agent, agent_id)

    async def require(self, agent_id: uuid.UUID) -> Agent:
        agent = await self.get(agent_id)
        if not agent:
            raise AgentNotFoundError(str(agent_id))
        return agent

    async def resolve_by_name(self, name: str) -> Optional[Agent]:
        """Find an agent by name, ignoring case."""
        result = await self.db.execute(
            select(Agent).where(Agent.name_key == name.strip().lower())
        )
        return result.scalars().first()

    async def require_by_name(self, name: str) -> Agent:
        agent = await self.resolve_by_name(name)
        if not agent:
            raise AgentNotFoundError(name)
        return agent

    async def list_agents(self, status: Optional[str] = None) -> list[Agent]:
        query = select(Agent).order_by(Agent.name_key)
        if status:
            query = query.where(Agent.status == status)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def names_for(self, agent_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, str]:
        """Map agent ids to names in one query. Unknown ids are omitted."""
        ids = {agent_id for agent_id in agent_ids if agent_id is not None}
        if not ids:
            return {}
        result = await self.db.execute(
            select(Agent.id, Agent.name).where(Agent.id.in_(ids))
        )
        return {row.id: row.name for row in result}

    def is_online(self, agent: Agent) -> bool:
        """Online = not explicitly offline and heartbeat within the TTL."""
        if agent.status == "offline" or agent.last_heartbeat is None:
            return False
        return self.clock() - agent.last_heartbeat <= self.online_ttl

    # ─── Write ───────────────────────────────────────────

    async def register(
        self,
        name: str,
        display_name: Optional[str] = None,
        role: str = "engineer",
    ) -> Agent:
        """Register a new agent. Raises ValueError if the name is taken."""
        if await self.resolve_by_name(name):
            raise ValueError(f"Agent name already registered: {name}")

        agent = Agent(
            name=name.strip(),
            name_key=name.strip().lower(),
            display_name=display_name or name.strip().capitalize(),
            role=role,
            status="idle",
            created_at=self.clock(),
        )
        self.db.add(agent)
        await self.db.flush()

        await self.audit.append(
            stream_id=f"agent:{agent.name_key}",
            event_type=AGENT_REGISTERED,
            data={"agent_id": str(agent.id), "name": agent.name, "role": role},
            at=self.clock(),
        )
        await self.db.commit()
        logger.info("agent.registered", agent=agent.name, agent_id=str(agent.id))
        return agent

    async def heartbeat(self, name: str, status: Optional[str] = None) -> Agent:
        """Record that an agent is alive, optionally updating its status."""
        agent = await self.require_by_name(name)
        agent.last_heartbeat = self.clock()
        if status and status != agent.status:
            await self._record_status(agent, status, reason="heartbeat")
        await self.db.commit()
        return agent

    async def set_status(self, agent: Agent, status: str, reason: str) -> None:
        """Change status within the caller's transaction (no commit)."""
        if agent.status != status:
            await self._record_status(agent, status, reason=reason)

    async def _record_status(self, agent: Agent, status: str, reason: str) -> None:
        if status not in AGENT_STATUSES:
            raise ValueError(f"Unknown agent status: {status}")
        old_status = agent.status
        agent.status = status
        await self.audit.append(
            stream_id=f"agent:{agent.name_key}",
            event_type=AGENT_STATUS_CHANGED,
            data={"from": old_status, "to": status, "reason": reason},
            at=self.clock(),
        )
