# Middleware package init
"""
TraceKeeper — Middleware Package
================================

What:  The host-facing seams: the handler wrap point and the ASGI adapter.

Wrapping order (outside in):
    Host → [TracingMiddleware / with_tracing] → [FinalizingResponse] → Handler

    Response completion travels the other way:
    Handler calls end() → finish + flush → host's real completion
"""
