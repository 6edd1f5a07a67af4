"""
Middleware package.

WHY: Middleware provides cross-cutting concerns (request correlation and
access logging) that apply to every request.
"""

from billing_sync.middleware.request_context import (
    RequestContextMiddleware,
    RequestContext,
    get_request_context,
    get_request_id,
)

__all__ = [
    "RequestContextMiddleware",
    "RequestContext",
    "get_request_context",
    "get_request_id",
]
