"""Request ID middleware — correlate a write with the events it produced.

Learn: Every request gets an ID, either from the incoming X-Request-ID header
(the CRM app forwards its own) or auto-generated. It is bound to structlog's
contextvars, so the "notifier.published" and "cache.*" log lines emitted
while handling a change notification carry the same request_id as the
request that caused them.
"""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

HEADER = "X-Request-ID"


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(HEADER) or uuid.uuid4().hex

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=request.url.path,
        )

        response: Response = await call_next(request)
        response.headers[HEADER] = request_id
        return response
