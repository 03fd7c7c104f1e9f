"""Health check endpoint.

Verifies the server is running and reports whether the database and
Redis are reachable. Redis being down is "degraded", not "down": events
still work by polling.
"""

from fastapi import APIRouter
from sqlalchemy import text

from switchboard import __version__
from switchboard.db.engine import engine
from switchboard.realtime.pubsub import get_redis, redis_available

router = APIRouter()


@router.get("/health")
async def health_check():
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {e}"

    if redis_available():
        try:
            await get_redis().ping()
            checks["redis"] = "ok"
        except Exception as e:
            checks["redis"] = f"error: {e}"
    else:
        checks["redis"] = "disabled"

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k != "version"
    ) else "degraded"

    return {"status": status, **checks}
