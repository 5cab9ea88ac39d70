"""
TraceKeeper — Transaction Model
===============================

What:  One request's root span: identifiers, name, timing and HTTP status.
Why:   The lifecycle manager, the error bridge and the finalizing response all
       hold a reference to the same Transaction; its "finished" flag is what
       keeps the two completion paths (success and failure) from reporting it
       twice.
How:   Plain mutable object. The backend that created it passes an
       `on_finish` hook which exports the transaction when it is finished.

Lifecycle:
    1. Created by TelemetryBackend.start_transaction() at request entry
    2. http_status set from the response just before finish
    3. finish() stamps the end time and calls on_finish exactly once
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from tracekeeper.schemas.traceparent import TraceparentToken

FinishHook = Callable[["Transaction"], None]


def generate_trace_id() -> str:
    """32 lowercase hex digits."""
    return uuid.uuid4().hex


def generate_span_id() -> str:
    """16 lowercase hex digits."""
    return uuid.uuid4().hex[16:]


def span_status_for(http_status: int) -> str:
    """
    Map an HTTP status code to a span status name.

    The mapping follows the canonical status codes used by tracing
    collectors: anything below 400 is "ok".
    """
    if http_status < 400:
        return "ok"

    if 400 <= http_status < 500:
        return {
            401: "unauthenticated",
            403: "permission_denied",
            404: "not_found",
            409: "already_exists",
            413: "failed_precondition",
            429: "resource_exhausted",
        }.get(http_status, "invalid_argument")

    if 500 <= http_status < 600:
        return {
            501: "unimplemented",
            503: "unavailable",
            504: "deadline_exceeded",
        }.get(http_status, "internal_error")

    return "unknown_error"


class Transaction:
    """
    A named unit of tracing data for one request.

    Attributes:
        trace_id:         32-hex id shared by every span of the trace
        span_id:          16-hex id of this transaction's own span
        parent_span_id:   Caller's span id when continuing a trace
        name:             "<METHOD> <normalized path>"
        op:               Operation tag, e.g. "http.server"
        sampled:          Whether the backend records this transaction
        start_timestamp:  UTC datetime at creation
        timestamp:        UTC datetime at finish (None until finished)
        http_status:      Response status, set before finish
        status:           Span status derived from http_status
    """

    def __init__(
        self,
        name: str,
        op: str,
        trace_id: Optional[str] = None,
        span_id: Optional[str] = None,
        parent_span_id: Optional[str] = None,
        sampled: Optional[bool] = None,
        on_finish: Optional[FinishHook] = None,
    ):
        self.name = name
        self.op = op
        self.trace_id = trace_id or generate_trace_id()
        self.parent_span_id = parent_span_id
        self.span_id = span_id or generate_span_id()
        # A child never reuses its parent's span id
        while self.span_id == self.parent_span_id:
            self.span_id = generate_span_id()
        self.sampled = sampled
        self.start_timestamp = datetime.now(timezone.utc)
        self.timestamp: Optional[datetime] = None
        self.http_status: Optional[int] = None
        self.status: Optional[str] = None
        self._on_finish = on_finish
        self._finished = False

    @classmethod
    def continue_from(
        cls,
        token: TraceparentToken,
        name: str,
        op: str,
        on_finish: Optional[FinishHook] = None,
    ) -> "Transaction":
        """Create a child transaction of the span described by `token`."""
        return cls(
            name=name,
            op=op,
            trace_id=token.trace_id,
            parent_span_id=token.span_id,
            sampled=token.sampled,
            on_finish=on_finish,
        )

    @property
    def finished(self) -> bool:
        return self._finished

    def set_http_status(self, http_status: int) -> None:
        self.http_status = http_status
        self.status = span_status_for(http_status)

    def finish(self) -> bool:
        """
        Stamp the end time and hand the transaction to its backend.

        Returns False (and does nothing) when already finished.
        """
        if self._finished:
            return False
        self._finished = True
        self.timestamp = datetime.now(timezone.utc)
        if self._on_finish is not None:
            self._on_finish(self)
        return True

    def to_traceparent(self) -> str:
        """Propagation token naming this transaction as the parent."""
        return TraceparentToken(
            trace_id=self.trace_id, span_id=self.span_id, sampled=bool(self.sampled)
        ).to_header()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "name": self.name,
            "op": self.op,
            "start_timestamp": self.start_timestamp.isoformat(),
        }
        if self.parent_span_id:
            data["parent_span_id"] = self.parent_span_id
        if self.sampled is not None:
            data["sampled"] = self.sampled
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp.isoformat()
        if self.http_status is not None:
            data["http_status"] = self.http_status
            data["status"] = self.status
        return data

    def __repr__(self) -> str:
        return (
            f"<Transaction name={self.name!r} op={self.op!r} "
            f"trace_id={self.trace_id} span_id={self.span_id} finished={self._finished}>"
        )
