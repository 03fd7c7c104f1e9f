"""WebSocket endpoint: push delivery of agent events.

Each agent connects to /ws/agents/{name}?api_key=KEY. The handler:
1. Authenticates via API key query param (required outside development)
2. Subscribes to the agent's Redis pub/sub channel
3. Forwards every published event to the socket
4. Answers {"type": "ping"} with {"type": "pong"}

Push is an optimization: an agent that misses a message still finds the
event by polling GET /api/v1/events/{agent}?since=<cursor>.
"""

import asyncio
import json

import structlog
from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from switchboard.auth.dependencies import authenticate_api_key
from switchboard.config import settings
from switchboard.db.engine import async_session_factory
from switchboard.realtime.pubsub import agent_channel, get_redis, redis_available

logger = structlog.get_logger()
router = APIRouter()


@router.websocket("/ws/agents/{agent_name}")
async def agent_websocket(websocket: WebSocket, agent_name: str):
    """Forward an agent's Redis channel to its WebSocket.

    Two concurrent tasks run, Redis → socket and socket → pong; when
    either side finishes, the other is cancelled.
    """
    # ── Authentication ──────────────────────────────────────
    api_key = websocket.query_params.get("api_key")

    if not api_key and settings.environment != "development":
        await websocket.close(code=4001, reason="Authentication required")
        return

    if api_key:
        async with async_session_factory() as db:
            try:
                await authenticate_api_key(api_key, db)
            except HTTPException as e:
                await websocket.close(code=4001, reason=str(e.detail))
                return

    if not redis_available():
        await websocket.close(code=1013, reason="Push channel unavailable; poll instead")
        return

    # ── Connection accepted ─────────────────────────────────
    await websocket.accept()

    pubsub = get_redis().pubsub()
    channel = agent_channel(agent_name)
    await pubsub.subscribe(channel)
    logger.info("ws.connected", agent=agent_name)

    async def redis_listener():
        try:
            async for message in pubsub.listen():
                if message["type"] == "message":
                    await websocket.send_text(message["data"])
        except asyncio.CancelledError:
            pass

    async def client_listener():
        try:
            while True:
                data = await websocket.receive_text()
                try:
                    msg = json.loads(data)
                except json.JSONDecodeError:
                    continue
                if isinstance(msg, dict) and msg.get("type") == "ping":
                    await websocket.send_text(json.dumps({"type": "pong"}))
        except (WebSocketDisconnect, asyncio.CancelledError):
            pass

    redis_task = asyncio.create_task(redis_listener())
    client_task = asyncio.create_task(client_listener())

    try:
        done, pending = await asyncio.wait(
            [redis_task, client_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        logger.info("ws.disconnected", agent=agent_name)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
