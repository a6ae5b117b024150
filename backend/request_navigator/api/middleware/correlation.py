"""
Correlation ID Middleware

Adds a correlation ID to each request so every log line of one API call
(and the notification it enqueues) can be tied together.
"""

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from ...utils.logger import set_correlation_id
from ...utils.idgen import generate_correlation_id

CORRELATION_HEADER = "X-Correlation-Id"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware that adds correlation ID to all requests.

    - Reuses the caller's X-Correlation-Id header when present
    - Generates a new ID otherwise
    - Echoes the ID in the response headers
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        correlation_id = (
            request.headers.get(CORRELATION_HEADER) or generate_correlation_id()
        )
        set_correlation_id(correlation_id)

        response = await call_next(request)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
