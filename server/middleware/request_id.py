"""
Correlation IDs for decision API requests

Every request gets an X-Request-ID (client-supplied or generated) that is
bound into structlog contextvars, so ledger, round and store logs emitted
while serving it carry the same id. The id is echoed on the response.
"""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the lifetime of one request"""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id

        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id")


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")
