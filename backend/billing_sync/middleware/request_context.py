"""
Request context middleware for log correlation.

WHAT: Assigns every request an ID, exposes it through a ContextVar, and
logs one line per request with status and duration.

WHY: A single cron run or webhook delivery touches many subscriptions.
Tagging every log line of that run with the same request ID makes it
possible to follow one delivery through the logs. PayPal sends its own
transmission ID; when present it is reused so our logs line up with the
PayPal dashboard.
"""

import logging
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    """
    Container for request-scoped context data.

    Fields:
    - request_id: Correlation ID (incoming X-Request-ID, PayPal transmission id, or a new UUID)
    - path: Request path
    - method: HTTP method
    """

    request_id: str
    path: str
    method: str


_request_context: ContextVar[Optional[RequestContext]] = ContextVar(
    "request_context", default=None
)


def get_request_context() -> Optional[RequestContext]:
    """Get the current request context, or None outside a request."""
    return _request_context.get()


def get_request_id() -> Optional[str]:
    ctx = _request_context.get()
    return ctx.request_id if ctx else None


def resolve_request_id(request: Request) -> str:
    """
    Pick the correlation ID for a request.

    HOW: Checks, in order:
    1. X-Request-ID (set by our own callers / load balancer)
    2. PayPal-Transmission-Id (PayPal webhook deliveries)
    3. A fresh UUID4
    """
    for header in ("X-Request-ID", "PayPal-Transmission-Id"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    return str(uuid.uuid4())


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that captures the request context and logs completion.

    HOW: Stores context in both request.state (for handlers) and a
    ContextVar (for services that have no request object).
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        context = RequestContext(
            request_id=resolve_request_id(request),
            path=request.url.path,
            method=request.method,
        )
        request.state.context = context
        token = _request_context.set(context)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = context.request_id

            duration_ms = round((time.perf_counter() - started) * 1000, 1)
            logger.info(
                f"{context.method} {context.path} -> {response.status_code} ({duration_ms}ms)",
                extra={
                    "request_id": context.request_id,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                },
            )
            return response

        finally:
            _request_context.reset(token)
