"""
TraceKeeper — Request-Scoped Telemetry Lifecycle Coordinator
============================================================

What: Middleware that wraps a request handler so that its tracing transaction
      is created, finished and flushed to the collector before the host is
      allowed to treat the response as complete.
Why:  Serverless hosts may freeze or kill the process as soon as the response
      is sent; telemetry still sitting in a buffer at that point is lost.
Who:  Used by web applications (directly via `with_tracing`, or through the
      ASGI `TracingMiddleware`).

Architecture Note:

    ┌─────────────────────────────────────┐
    │  Middleware (wrap point, ASGI)      │  ← host-facing seams
    ├─────────────────────────────────────┤
    │  Services (scope, lifecycle,        │  ← coordination logic
    │  flush, error capture, backend)     │
    ├─────────────────────────────────────┤
    │  Models & Schemas (Transaction,     │  ← data
    │  TraceparentToken, descriptors)     │
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"

from tracekeeper.middleware.asgi import TracingMiddleware  # noqa: E402
from tracekeeper.middleware.wrapper import with_tracing  # noqa: E402

__all__ = ["TracingMiddleware", "with_tracing", "__version__"]
