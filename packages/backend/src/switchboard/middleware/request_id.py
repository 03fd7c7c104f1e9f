"""Request ID middleware: one trace ID per request.

The ID comes from the caller's X-Request-ID header or is generated. It is
bound to structlog's contextvars together with the path and the caller's
key prefix, so every log line for a dispatch transition can be traced back
to the agent that triggered it. The ID is echoed on the response.
"""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from switchboard.auth.dependencies import KEY_PREFIX

REQUEST_ID_HEADER = "X-Request-ID"


def caller_prefix(request: Request) -> str | None:
    """Non-secret prefix of the caller's API key, for log correlation."""
    key = request.headers.get("x-api-key")
    if not key or not key.startswith(KEY_PREFIX):
        return None
    return key[:12]


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            caller=caller_prefix(request),
        )

        response: Response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
