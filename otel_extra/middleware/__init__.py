"""Request span middleware.

Three hooks (SpanCreator, OnResponse, OnFailure) drive one RequestSpan per
inbound request; RequestSpanMiddleware wires them into any ASGI app.
"""

from otel_extra.middleware.asgi import RequestSpanMiddleware
from otel_extra.middleware.hooks import OnFailure, OnResponse, RequestInfo, SpanCreator
from otel_extra.middleware.span import RequestSpan, SpanState, classify_status

__all__ = [
    "OnFailure",
    "OnResponse",
    "RequestInfo",
    "RequestSpan",
    "RequestSpanMiddleware",
    "SpanCreator",
    "SpanState",
    "classify_status",
]
