"""
TraceKeeper — Request Scope Isolation
=====================================

What:  A request-local container (current transaction, request descriptor,
       event processors) and the `isolate()` boundary that gives every
       request its own.
Why:   In async Python, many requests execute interleaved on one thread.
       Trace state set while handling request A must never be visible while
       handling request B.
How:   `isolate()` runs the request in a fresh asyncio Task. A Task starts
       with a COPY of the current contextvars context, so the ContextVar set
       inside it is invisible outside it and to sibling tasks. Anything the
       request schedules from inside inherits the same copy.

The scope is passed explicitly (by parameter) to the components that need
it. `get_current_scope()` is read-only and exists for log correlation.
"""

import asyncio
import logging
from contextvars import ContextVar
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from tracekeeper.models.transaction import Transaction
from tracekeeper.schemas.request import RequestDescriptor

logger = logging.getLogger(__name__)

T = TypeVar("T")

Event = Dict[str, Any]
EventProcessor = Callable[[Event], Optional[Event]]

# ── Context Variable ──────────────────────────────────────────────────────
# Coroutine-local, NOT thread-local: each isolated task sees its own value
current_scope_var: ContextVar[Optional["RequestScope"]] = ContextVar(
    "tracekeeper_scope", default=None
)


class RequestScope:
    """
    Request-local state owned by exactly one request.

    Attributes:
        request:      Descriptor of the request this scope belongs to
        transaction:  Current transaction (None when tracing is disabled or
                      the backend could not start one)
    """

    def __init__(self, request: Optional[RequestDescriptor] = None):
        self.request = request
        self.transaction: Optional[Transaction] = None
        self._event_processors: List[EventProcessor] = []

    def set_transaction(self, transaction: Optional[Transaction]) -> None:
        self.transaction = transaction

    def add_event_processor(self, processor: EventProcessor) -> None:
        """Register a callback that annotates (or drops, by returning None) events."""
        self._event_processors.append(processor)

    def apply_event_processors(self, event: Event) -> Optional[Event]:
        """
        Run every processor in registration order.

        A processor returning None drops the event. A processor that raises is
        skipped; annotating an event must never lose it.
        """
        for processor in self._event_processors:
            try:
                result = processor(event)
            except Exception:
                logger.warning("Event processor %r failed; skipping it", processor, exc_info=True)
                continue
            if result is None:
                logger.debug("Event dropped by processor %r", processor)
                return None
            event = result
        return event


def get_current_scope() -> Optional[RequestScope]:
    return current_scope_var.get()


def request_event_processor(request: RequestDescriptor) -> EventProcessor:
    """Build a processor that attaches request data (minus credentials) to events."""

    def add_request_data(event: Event) -> Event:
        event.setdefault(
            "request",
            {
                "method": request.method,
                "url": request.url,
                "query": dict(request.query),
                "headers": request.safe_headers(),
            },
        )
        return event

    return add_request_data


async def isolate(
    request: Optional[RequestDescriptor],
    fn: Callable[[RequestScope], Awaitable[T]],
) -> T:
    """
    Run `fn(scope)` inside a new, isolated RequestScope and return its result.

    Exceptions raised by `fn` propagate unchanged; cancelling the caller
    cancels the isolated task.
    """
    scope = RequestScope(request)

    async def run_isolated() -> T:
        current_scope_var.set(scope)
        return await fn(scope)

    return await asyncio.create_task(run_isolated())
