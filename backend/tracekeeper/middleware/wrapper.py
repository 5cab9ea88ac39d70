"""
TraceKeeper — Handler Wrap Point
================================

What:  `with_tracing(handler)` returns a handler with the same (request,
       response) signature that traces the request and holds the response
       open until its telemetry is flushed.
Why:   One wrap point composes every lifecycle concern so the wrapped
       handler stays unaware of instrumentation.

Flow:
    response → FinalizingResponse (interceptor)
      → isolate() opens a RequestScope
        → propagation header → TraceparentToken (or None)
        → transaction started in the scope, attached to the response
        → handler(request, response)
            success: return; completion runs through response.end()
            failure: ErrorCaptureBridge reports, sets 500, finish+flush,
                     the same error is re-raised
      → handler_returned(): phase 1 of the completion protocol, just
        before control goes back to the host
"""

import functools
import logging
from typing import Any, Awaitable, Callable, Optional

from tracekeeper.config import Settings, settings
from tracekeeper.middleware.finalization import FinalizingResponse
from tracekeeper.schemas.request import RequestDescriptor
from tracekeeper.schemas.traceparent import extract_traceparent
from tracekeeper.services.error_capture import WRAPPER_NAME, ErrorCaptureBridge
from tracekeeper.services.flush import FlushCoordinator
from tracekeeper.services.lifecycle import TransactionLifecycleManager
from tracekeeper.services.scope import RequestScope, isolate, request_event_processor
from tracekeeper.services.telemetry_base import TelemetryBackend

logger = logging.getLogger(__name__)

Handler = Callable[[Any, Any], Awaitable[Any]]


def with_tracing(
    handler: Handler,
    *,
    backend: Optional[TelemetryBackend] = None,
    config: Optional[Settings] = None,
    describe_request: Callable[[Any], RequestDescriptor] = RequestDescriptor.from_request,
    name: Optional[str] = None,
) -> Handler:
    """
    Wrap an async `handler(request, response)` with request tracing.

    Args:
        handler:           The business-logic handler
        backend:           Telemetry backend (default: shared OpenTelemetry backend)
        config:            Settings (default: module-level `settings`)
        describe_request:  Builds a RequestDescriptor from the host's request
        name:              Handler name reported with captured errors
                           (default: handler.__name__)

    The wrapped handler passes a FinalizingResponse to `handler`; calling
    `response.end(...)` on it runs the host's completion after the flush.
    """
    config = config or settings
    if backend is None:
        from tracekeeper.services.otel_backend import get_default_backend

        backend = get_default_backend()

    lifecycle = TransactionLifecycleManager(backend, op=config.transaction_op)
    coordinator = FlushCoordinator(backend, lifecycle, config)
    bridge = ErrorCaptureBridge(backend, wrapper_name=WRAPPER_NAME)
    handler_name = name or getattr(handler, "__name__", repr(handler))

    @functools.wraps(handler)
    async def traced_handler(request: Any, response: Any) -> Any:
        if isinstance(response, FinalizingResponse):
            augmented = response
        else:
            augmented = FinalizingResponse(response, coordinator)
        descriptor = describe_request(request)

        async def run_in_scope(scope: RequestScope) -> Any:
            scope.add_event_processor(request_event_processor(descriptor))

            if config.tracing_enabled:
                parent = None
                header_value = descriptor.header(config.trace_header)
                if header_value is not None:
                    parent = extract_traceparent(header_value)
                    if parent is not None:
                        logger.debug("Continuing trace %s", parent.trace_id)
                augmented.transaction = lifecycle.start_for_request(scope, descriptor, parent)

            try:
                return await handler(request, augmented)
            except Exception as exc:
                await bridge.handle_failure(exc, scope, augmented, handler_name)
                raise

        succeeded = False
        try:
            result = await isolate(descriptor, run_in_scope)
            succeeded = True
            return result
        finally:
            augmented.handler_returned(succeeded)

    return traced_handler
