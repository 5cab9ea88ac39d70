"""
TraceKeeper — Trace Propagation Token
=====================================

What:  Parses and renders the inbound distributed-trace propagation token.
Why:   A request arriving from another instrumented service carries the
       caller's trace id and span id; continuing that trace links both sides
       in the collector.
How:   OpenTelemetry's W3C TraceContext propagator does the parsing and the
       rendering. Anything it rejects (bad shape, all-zero ids, version ff)
       is ignored and the request starts a fresh trace instead.

Wire Format:
    "<2-hex-version>-<32-hex-trace-id>-<16-hex-span-id>-<2-hex-flags>"
    e.g. "00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01"

    The lowest bit of flags is the upstream sampling decision.
"""

import logging
from typing import Dict, Optional

from opentelemetry.trace import (
    NonRecordingSpan,
    SpanContext,
    TraceFlags,
    format_span_id,
    format_trace_id,
    get_current_span,
    set_span_in_context,
)
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

TRACEPARENT_HEADER = "traceparent"

_propagator = TraceContextTextMapPropagator()


class TraceparentToken(BaseModel):
    """
    Parent identifiers extracted from a propagation header.

    Immutable once parsed: the token describes the caller's span, and the
    transaction built from it always gets a new span id of its own.
    """

    model_config = ConfigDict(frozen=True)

    trace_id: str = Field(pattern=r"^[0-9a-f]{32}$", description="Caller's trace id")
    span_id: str = Field(pattern=r"^[0-9a-f]{16}$", description="Caller's span id (our parent)")
    sampled: bool = Field(default=False, description="Upstream sampling decision")

    def to_span_context(self) -> SpanContext:
        """The caller's span as a remote OpenTelemetry SpanContext."""
        return SpanContext(
            trace_id=int(self.trace_id, 16),
            span_id=int(self.span_id, 16),
            is_remote=True,
            trace_flags=TraceFlags(TraceFlags.SAMPLED if self.sampled else TraceFlags.DEFAULT),
        )

    def to_header(self) -> str:
        """Render the token back into its wire format."""
        carrier: Dict[str, str] = {}
        _propagator.inject(carrier, context=set_span_in_context(NonRecordingSpan(self.to_span_context())))
        return carrier[TRACEPARENT_HEADER]


def extract_traceparent(header_value: Optional[str]) -> Optional[TraceparentToken]:
    """
    Parse a propagation header value into a `TraceparentToken`.

    Returns None for a missing header, a non-string value, or any malformed
    token. Never raises.
    """
    if header_value is None:
        return None

    if not isinstance(header_value, str):
        logger.info("Ignoring non-string trace header of type %s", type(header_value).__name__)
        return None

    # Only spaces and tabs may surround the token
    if "\n" in header_value or "\r" in header_value:
        logger.info("Ignoring trace header containing a line break %r", header_value[:128])
        return None

    context = _propagator.extract({TRACEPARENT_HEADER: header_value})
    span_context = get_current_span(context).get_span_context()
    if not span_context.is_valid:
        logger.info("Ignoring malformed trace header %r", header_value[:128])
        return None

    return TraceparentToken(
        trace_id=format_trace_id(span_context.trace_id),
        span_id=format_span_id(span_context.span_id),
        sampled=span_context.trace_flags.sampled,
    )
