"""API route aggregation.

All routers registered here get mounted in main.py.

Auth is applied at the include_router level using FastAPI's dependencies
parameter, which protects every route in a router without touching the
handlers. Health is open.
"""

from fastapi import APIRouter, Depends

from switchboard.api.agents import router as agents_router
from switchboard.api.dispatches import router as dispatches_router
from switchboard.api.events import router as events_router
from switchboard.api.health import router as health_router
from switchboard.api.loops import router as loops_router
from switchboard.api.messages import router as messages_router
from switchboard.auth.dependencies import get_current_user

# All protected routers require an API key
_auth = [Depends(get_current_user)]

api_router = APIRouter(prefix="/api/v1")

# Open routes, no auth required
api_router.include_router(health_router, tags=["health"])

# Protected routes
api_router.include_router(agents_router, tags=["agents"], dependencies=_auth)
api_router.include_router(dispatches_router, tags=["dispatches"], dependencies=_auth)
api_router.include_router(events_router, tags=["events"], dependencies=_auth)
api_router.include_router(messages_router, tags=["messages"], dependencies=_auth)
api_router.include_router(loops_router, tags=["loops"], dependencies=_auth)
