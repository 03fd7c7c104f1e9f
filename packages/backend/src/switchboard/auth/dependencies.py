"""FastAPI auth dependencies.

Used as Depends() in route handlers to resolve the caller from the
x-api-key header. Keys are looked up by their salted SHA-256 hash; the
plaintext is shown once, when the key is created, and never stored.
"""

import hashlib
import secrets
import uuid
from datetime import datetime
from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.config import settings
from switchboard.db.engine import get_db
from switchboard.db.models import ApiKey, utcnow

KEY_PREFIX = "sb_"


class CurrentIdentity:
    """The authenticated caller.

    agent_id is set when the key belongs to an agent; operator and
    webhook keys have none.
    """

    def __init__(
        self,
        name: str,
        key_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        scopes: Optional[list[str]] = None,
    ):
        self.name = name
        self.key_id = key_id
        self.agent_id = agent_id
        self.scopes = scopes or ["all"]

    def has_scope(self, scope: str) -> bool:
        return "all" in self.scopes or scope in self.scopes


def hash_api_key(key: str) -> str:
    return hashlib.sha256(f"{settings.api_key_salt}:{key}".encode()).hexdigest()


async def create_api_key(
    db: AsyncSession,
    name: str,
    scopes: Optional[list[str]] = None,
    agent_id: Optional[uuid.UUID] = None,
    expires_at: Optional[datetime] = None,
) -> tuple[ApiKey, str]:
    """Create a key. Returns (row, plaintext key)."""
    key = KEY_PREFIX + secrets.token_urlsafe(32)
    api_key = ApiKey(
        name=name,
        key_hash=hash_api_key(key),
        prefix=key[:12],
        scopes=scopes or ["all"],
        agent_id=agent_id,
        expires_at=expires_at,
    )
    db.add(api_key)
    await db.commit()
    return api_key, key


async def authenticate_api_key(key: str, db: AsyncSession) -> CurrentIdentity:
    """Resolve a plaintext key to an identity. Raises 401 on failure."""
    result = await db.execute(
        select(ApiKey).where(ApiKey.key_hash == hash_api_key(key))
    )
    api_key = result.scalars().first()

    if not api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")

    now = utcnow()
    if api_key.expires_at and api_key.expires_at < now:
        raise HTTPException(status_code=401, detail="API key has expired")

    api_key.last_used_at = now
    await db.commit()

    return CurrentIdentity(
        name=api_key.name,
        key_id=str(api_key.id),
        agent_id=str(api_key.agent_id) if api_key.agent_id else None,
        scopes=api_key.scopes or ["all"],
    )


async def get_current_user(
    x_api_key: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> CurrentIdentity:
    """Required auth: 401 without a valid x-api-key header."""
    if not x_api_key:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return await authenticate_api_key(x_api_key, db)


def require_scope(scope: str):
    """Dependency factory: 403 unless the caller holds `scope`."""

    async def _check(identity: CurrentIdentity = Depends(get_current_user)) -> CurrentIdentity:
        if not identity.has_scope(scope):
            raise HTTPException(status_code=403, detail=f"Missing scope: {scope}")
        return identity

    return _check
