"""Rate limiting middleware: Redis-based fixed window per minute.

Each caller gets a counter key like "switchboard:rl:{caller}:{bucket}:{minute}".
The caller is the API key prefix when present, else the client IP. Claim
calls get their own, stricter bucket so a spinning agent can't starve the
rest of the API.

Skips rate limiting entirely when Redis is unavailable (e.g., in tests).
"""

import time

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from switchboard.realtime.pubsub import get_redis, redis_available

logger = structlog.get_logger()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Redis-based rate limiting per caller per minute."""

    def __init__(self, app, default_rpm: int = 300, claim_rpm: int = 60):
        super().__init__(app)
        self.default_rpm = default_rpm
        self.claim_rpm = claim_rpm

    async def dispatch(self, request: Request, call_next) -> Response:
        if not redis_available():
            return await call_next(request)

        api_key = request.headers.get("x-api-key")
        if api_key:
            caller = f"key:{api_key[:12]}"
        else:
            caller = request.client.host if request.client else "unknown"

        is_claim = request.method == "POST" and request.url.path.endswith("/claim")
        rpm = self.claim_rpm if is_claim else self.default_rpm
        bucket = "claim" if is_claim else "api"

        window = int(time.time() // 60)
        key = f"switchboard:rl:{caller}:{bucket}:{window}"

        try:
            redis = get_redis()
            count = await redis.incr(key)
            if count == 1:
                await redis.expire(key, 120)  # 2-min TTL for safety
        except Exception as e:
            # Redis error, don't block the request
            logger.warning("rate_limit.redis_error", error=str(e))
            return await call_next(request)

        if count > rpm:
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later."},
                headers={"Retry-After": "60"},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(rpm)
        response.headers["X-RateLimit-Remaining"] = str(max(0, rpm - count))
        return response
